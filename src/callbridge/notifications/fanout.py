"""
Notification fan-out to connected agent consoles.

Each observer gets its own bounded queue drained by its own task, so
``publish`` never waits on a consumer: a full queue drops the message for
that observer only, and an observer whose send fails or times out is evicted.
Messages reach each observer in publish order.
"""

import asyncio
import itertools
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import anyio

from callbridge.calls.models import Call
from callbridge.permissions.models import CallPermission
from callbridge.shared.logging import get_logger

logger = get_logger(__name__)


class Observer(Protocol):
    async def send(self, message: dict[str, Any]) -> None:
        ...


class ObserverLimitError(Exception):
    """Raised when the observer registry is full."""


@dataclass
class _Subscription:
    observer_id: str
    observer: Observer
    queue: asyncio.Queue
    task: asyncio.Task | None = None
    dropped: int = 0
    delivered: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class NotificationFanout:
    """Bounded registry of observers with per-observer delivery queues."""

    def __init__(
        self,
        max_observers: int = 200,
        queue_size: int = 100,
        send_timeout_seconds: float = 5.0,
    ) -> None:
        self._max_observers = max_observers
        self._queue_size = queue_size
        self._send_timeout = send_timeout_seconds
        self._subscriptions: dict[str, _Subscription] = {}
        self._ids = itertools.count(1)

    def __len__(self) -> int:
        return len(self._subscriptions)

    def register(self, observer: Observer) -> str:
        """Add an observer and start its delivery task.

        Raises:
            ObserverLimitError: The registry already holds ``max_observers``.
        """
        if len(self._subscriptions) >= self._max_observers:
            raise ObserverLimitError(f"Observer limit reached ({self._max_observers})")

        observer_id = f"observer-{next(self._ids)}"
        subscription = _Subscription(
            observer_id=observer_id,
            observer=observer,
            queue=asyncio.Queue(maxsize=self._queue_size),
        )
        subscription.task = asyncio.create_task(
            self._drain(subscription), name=f"fanout-{observer_id}"
        )
        self._subscriptions[observer_id] = subscription
        logger.info("Observer registered", extra={"observer_id": observer_id, "observers": len(self)})
        return observer_id

    async def unregister(self, observer_id: str) -> None:
        subscription = self._subscriptions.pop(observer_id, None)
        if subscription is None:
            return
        await self._stop(subscription)
        logger.info("Observer unregistered", extra={"observer_id": observer_id, "observers": len(self)})

    def publish(self, message: dict[str, Any]) -> int:
        """Queue ``message`` for every observer; returns how many accepted it."""
        accepted = 0
        for subscription in list(self._subscriptions.values()):
            try:
                subscription.queue.put_nowait(message)
                accepted += 1
            except asyncio.QueueFull:
                subscription.dropped += 1
                logger.warning(
                    "Observer queue full; message dropped",
                    extra={
                        "observer_id": subscription.observer_id,
                        "dropped": subscription.dropped,
                    },
                )
        return accepted

    async def _drain(self, subscription: _Subscription) -> None:
        while True:
            message = await subscription.queue.get()
            try:
                with anyio.fail_after(self._send_timeout):
                    await subscription.observer.send(message)
            except Exception:
                logger.warning(
                    "Observer send failed; evicting",
                    extra={"observer_id": subscription.observer_id},
                    exc_info=True,
                )
                self._subscriptions.pop(subscription.observer_id, None)
                return
            subscription.delivered += 1

    async def _stop(self, subscription: _Subscription) -> None:
        task = subscription.task
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def close(self) -> None:
        subscriptions = list(self._subscriptions.values())
        self._subscriptions.clear()
        for subscription in subscriptions:
            await self._stop(subscription)


def call_digest(call: Call, event: str, **extra: Any) -> dict[str, Any]:
    """Compact, JSON-ready view of a call change for observers."""
    digest: dict[str, Any] = {
        "type": event,
        "call_id": str(call.id),
        "external_call_id": call.external_call_id,
        "direction": call.direction.value,
        "status": call.status.value,
        "contact_ref": call.contact_ref,
        "from_address": call.from_address,
        "to_address": call.to_address,
        "conference_name": call.conference_name,
        "agent_identity": call.get_meta("agent_identity"),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    digest.update(extra)
    return digest


def permission_digest(permission: CallPermission) -> dict[str, Any]:
    return {
        "type": "permission_updated",
        "permission_id": str(permission.id),
        "contact_ref": permission.contact_ref,
        "destination": permission.destination,
        "status": permission.status.value,
        "calls_used": permission.calls_used,
        "max_calls": permission.max_calls,
        "expires_at": permission.expires_at.isoformat(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


__all__ = [
    "NotificationFanout",
    "Observer",
    "ObserverLimitError",
    "call_digest",
    "permission_digest",
]
