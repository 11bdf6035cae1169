"""
Shared pytest fixtures for the order event broker tests.

Every test gets its own SQLite file under tmp_path, so tests never share
state. Dispatcher timings are shrunk so retries finish in milliseconds.
"""

import random
from pathlib import Path

import pytest

from broker.event_store import EventStore
from broker.service import OrderBroker
from broker.storage import Database
from handlers.channels import NotificationChannels
from shared.config import BrokerConfig, DispatcherConfig, StoreConfig
from shared.models import DeliveryPolicy, EventKind


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "order_broker.db"


@pytest.fixture
def fast_policy() -> DeliveryPolicy:
    """Policy with tiny backoffs so retries happen within a test."""
    return DeliveryPolicy(max_attempts=3, backoff_base=0.01, backoff_cap=0.05)


@pytest.fixture
def config(db_path: Path, fast_policy: DeliveryPolicy) -> BrokerConfig:
    return BrokerConfig(
        store=StoreConfig(db_path=db_path, synchronous="NORMAL"),
        dispatcher=DispatcherConfig(
            workers=4,
            poll_interval=0.05,
            handler_timeout=1.0,
            watchdog_interval=60.0,
            shutdown_grace=1.0,
            default_policy=fast_policy,
        ),
    )


@pytest.fixture
async def db(db_path: Path) -> Database:
    """Open database with the broker schema."""
    database = Database(db_path, synchronous="NORMAL")
    await database.open()
    yield database
    await database.close()


@pytest.fixture
async def store(db: Database) -> EventStore:
    event_store = EventStore(db, poll_interval=0.05)
    await event_store.open()
    return event_store


@pytest.fixture
async def broker(config: BrokerConfig) -> OrderBroker:
    """
    Opened broker with its dispatcher NOT started.

    Tests bind handlers and subscribe first, then call `await broker.start()`.
    """
    order_broker = OrderBroker(config)
    order_broker.dispatcher._rng = random.Random(7)
    await order_broker.open()
    yield order_broker
    await order_broker.close()


@pytest.fixture
def channels() -> NotificationChannels:
    """Fresh NotificationChannels facade for each test."""
    return NotificationChannels(email_fail_rate=0.0, sms_fail_rate=0.0)


# =============================================================================
# Payload Fixtures
# =============================================================================

@pytest.fixture
def alice_order() -> dict:
    """Created payload for Alice: email and SMS contact, small amount."""
    return {
        "customer_id": "cust-001",
        "customer_name": "Alice Johnson",
        "customer_email": "alice@example.com",
        "customer_phone": "+1-555-0101",
        "amount": 42.5,
    }


@pytest.fixture
def bob_order() -> dict:
    """Created payload for Bob: email only."""
    return {
        "customer_id": "cust-002",
        "customer_name": "Bob Smith",
        "customer_email": "bob@example.com",
        "amount": 1250.0,
    }


@pytest.fixture
def all_kinds() -> list[EventKind]:
    return list(EventKind)
