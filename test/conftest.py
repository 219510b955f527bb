"""
Pytest configuration and fixtures.

Every test gets its own SQLite database file (aiosqlite) and fresh mock
collaborators; nothing talks to the network.
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import datetime
from typing import Any

import anyio
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

import callbridge.calls.models  # noqa: F401
import callbridge.permissions.models  # noqa: F401
from callbridge.calls.lifecycle import CallLifecycleManager
from callbridge.config import Settings
from callbridge.correlation.correlator import EventCorrelator
from callbridge.crm.memory_adapter import InMemoryCrm
from callbridge.messaging.mock_adapter import MockMessagingAdapter
from callbridge.notifications.fanout import NotificationFanout
from callbridge.permissions.ledger import PermissionLedger
from callbridge.permissions.models import CallPermission, ConsentDecision
from callbridge.shared.database import DatabaseManager
from callbridge.shared.locks import EntityLockRegistry
from callbridge.telephony.config import ProviderType, TelephonyConfig
from callbridge.telephony.mock_adapter import MockTelephonyAdapter

CONTACT = "contact-42"
DESTINATION = "+14155551234"
BUSINESS_NUMBER = "+14155550000"


class RecordingObserver:
    """Fan-out observer that keeps every message it receives."""

    def __init__(self) -> None:
        self.messages: list[dict[str, Any]] = []

    async def send(self, message: dict[str, Any]) -> None:
        self.messages.append(message)

    def types(self) -> list[str]:
        return [m["type"] for m in self.messages]

    async def wait_for(self, count: int, timeout: float = 1.0) -> None:
        with anyio.fail_after(timeout):
            while len(self.messages) < count:
                await asyncio.sleep(0.01)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'callbridge.db'}",
        consent_template_ref="HX_TEST_TEMPLATE",
        permission_max_requests_per_day=1,
        permission_max_requests_per_week=2,
        permission_ttl_days=7,
        permission_max_calls=5,
        permission_missed_call_threshold=4,
        fanout_max_observers=10,
        fanout_queue_size=10,
    )


@pytest.fixture
def telephony_config() -> TelephonyConfig:
    return TelephonyConfig(
        provider_type=ProviderType.MOCK,
        twilio_account_sid="AC_TEST_ACCOUNT_SID",
        twilio_auth_token="test_auth_token_12345",
        twilio_from_number=BUSINESS_NUMBER,
        webhook_base_url="https://bridge.example.com",
        validate_signatures=False,
    )


@pytest_asyncio.fixture
async def db(settings: Settings) -> AsyncIterator[DatabaseManager]:
    manager = DatabaseManager(settings.database_url)
    await manager.create_all()
    yield manager
    await manager.close()


@pytest.fixture
def locks() -> EntityLockRegistry:
    return EntityLockRegistry()


@pytest.fixture
def telephony() -> MockTelephonyAdapter:
    return MockTelephonyAdapter()


@pytest.fixture
def messaging() -> MockMessagingAdapter:
    return MockMessagingAdapter()


@pytest.fixture
def crm() -> InMemoryCrm:
    return InMemoryCrm()


@pytest_asyncio.fixture
async def fanout() -> AsyncIterator[NotificationFanout]:
    hub = NotificationFanout(max_observers=10, queue_size=10, send_timeout_seconds=1.0)
    yield hub
    await hub.close()


@pytest_asyncio.fixture
async def observer(fanout: NotificationFanout) -> RecordingObserver:
    recorder = RecordingObserver()
    fanout.register(recorder)
    return recorder


@pytest.fixture
def ledger(
    db: DatabaseManager,
    locks: EntityLockRegistry,
    messaging: MockMessagingAdapter,
    settings: Settings,
) -> PermissionLedger:
    return PermissionLedger(db.session_factory, locks, messaging, settings)


@pytest.fixture
def lifecycle(
    db: DatabaseManager,
    locks: EntityLockRegistry,
    ledger: PermissionLedger,
    telephony: MockTelephonyAdapter,
    fanout: NotificationFanout,
    telephony_config: TelephonyConfig,
    crm: InMemoryCrm,
    settings: Settings,
) -> CallLifecycleManager:
    return CallLifecycleManager(
        db.session_factory,
        locks,
        ledger,
        telephony,
        fanout,
        telephony_config,
        contact_resolver=crm,
        crm=crm,
        settings=settings,
    )


@pytest.fixture
def correlator(
    db: DatabaseManager,
    locks: EntityLockRegistry,
    lifecycle: CallLifecycleManager,
    ledger: PermissionLedger,
    fanout: NotificationFanout,
) -> EventCorrelator:
    return EventCorrelator(db.session_factory, locks, lifecycle, ledger, fanout)


@pytest.fixture
def approve(
    ledger: PermissionLedger,
) -> Callable[..., Awaitable[CallPermission]]:
    """Request and accept a permission for a pair."""

    async def _approve(
        contact_ref: str = CONTACT,
        destination: str = DESTINATION,
        now: datetime | None = None,
    ) -> CallPermission:
        await ledger.request_permission(contact_ref, destination, now=now)
        return await ledger.record_response(destination, ConsentDecision.ACCEPTED, now=now)

    return _approve


@pytest_asyncio.fixture
async def api_client(
    db: DatabaseManager,
    fanout: NotificationFanout,
    telephony: MockTelephonyAdapter,
    telephony_config: TelephonyConfig,
    messaging: MockMessagingAdapter,
    crm: InMemoryCrm,
    ledger: PermissionLedger,
    lifecycle: CallLifecycleManager,
    correlator: EventCorrelator,
) -> AsyncIterator[AsyncClient]:
    """HTTP client against the app with test services on ``app.state``.

    ASGITransport does not run the lifespan, so the state is set here.
    """
    from callbridge.main import create_app

    app = create_app()
    app.state.db = db
    app.state.fanout = fanout
    app.state.telephony = telephony
    app.state.telephony_config = telephony_config
    app.state.messaging = messaging
    app.state.crm = crm
    app.state.ledger = ledger
    app.state.lifecycle = lifecycle
    app.state.correlator = correlator

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
