"""Tests for call status transition rules (sync, no DB)."""

from datetime import datetime, timedelta, timezone

import pytest

from callbridge.calls.models import TERMINAL_STATUSES, CallStatus
from callbridge.calls.state_machine import (
    TransitionKind,
    compute_duration,
    plan_transition,
)

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class TestPlanTransition:
    @pytest.mark.parametrize(
        ("current", "reported"),
        [
            (CallStatus.INITIATED, CallStatus.RINGING),
            (CallStatus.INITIATED, CallStatus.IN_PROGRESS),
            (CallStatus.RINGING, CallStatus.IN_PROGRESS),
        ],
    )
    def test_forward_moves_apply(self, current: CallStatus, reported: CallStatus) -> None:
        result = plan_transition(current, reported)

        assert result.kind == TransitionKind.APPLIED
        assert result.changed is True
        assert result.previous == current
        assert result.current == reported

    @pytest.mark.parametrize("terminal", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
    def test_terminal_reachable_from_any_non_terminal(self, terminal: CallStatus) -> None:
        for current in (CallStatus.INITIATED, CallStatus.RINGING, CallStatus.IN_PROGRESS):
            assert plan_transition(current, terminal).kind == TransitionKind.APPLIED

    def test_late_ringing_after_in_progress_is_stale(self) -> None:
        result = plan_transition(CallStatus.IN_PROGRESS, CallStatus.RINGING)

        assert result.kind == TransitionKind.STALE
        assert result.changed is False
        assert result.current == CallStatus.IN_PROGRESS
        assert "arrived after" in (result.reason or "")

    def test_same_status_is_noop(self) -> None:
        result = plan_transition(CallStatus.RINGING, CallStatus.RINGING)

        assert result.kind == TransitionKind.NOOP
        assert result.changed is False

    def test_nothing_leaves_terminal(self) -> None:
        result = plan_transition(CallStatus.COMPLETED, CallStatus.IN_PROGRESS)

        assert result.kind == TransitionKind.REJECTED
        assert result.current == CallStatus.COMPLETED

    def test_terminal_to_other_terminal_rejected(self) -> None:
        result = plan_transition(CallStatus.NO_ANSWER, CallStatus.COMPLETED)

        assert result.kind == TransitionKind.REJECTED
        assert result.reason == "call already no-answer"

    def test_repeated_terminal_is_noop(self) -> None:
        assert plan_transition(CallStatus.FAILED, CallStatus.FAILED).kind == TransitionKind.NOOP

    def test_is_terminal_property(self) -> None:
        assert CallStatus.CANCELED.is_terminal is True
        assert CallStatus.RINGING.is_terminal is False


class TestComputeDuration:
    def test_reported_duration_wins(self) -> None:
        assert compute_duration(T0 + timedelta(seconds=90), T0, T0, reported=42) == 42

    def test_from_answer_time(self) -> None:
        start = T0 - timedelta(seconds=20)
        assert compute_duration(T0 + timedelta(seconds=65), T0, start) == 65

    def test_falls_back_to_start_time(self) -> None:
        assert compute_duration(T0 + timedelta(seconds=30), None, T0) == 30

    def test_never_negative(self) -> None:
        assert compute_duration(T0 - timedelta(seconds=5), T0, T0) == 0
        assert compute_duration(T0, T0, T0, reported=-3) == 0

    def test_no_reference_time(self) -> None:
        assert compute_duration(T0, None, None) == 0
