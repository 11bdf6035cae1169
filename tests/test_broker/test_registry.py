"""
Tests for the subscription registry.
"""

import pytest

from broker.registry import SubscriptionRegistry
from broker.storage import Database
from shared.errors import ValidationError
from shared.models import DeliveryPolicy, EventKind


@pytest.fixture
async def registry(db: Database, fast_policy: DeliveryPolicy) -> SubscriptionRegistry:
    reg = SubscriptionRegistry(db, default_policy=fast_policy)
    await reg.load()
    return reg


class TestRegister:
    """Tests for register / resolve."""

    @pytest.mark.asyncio
    async def test_register_and_resolve(self, registry: SubscriptionRegistry):
        await registry.register("payment", [EventKind.CREATED, "PaymentRequested"])
        await registry.register("notification", ["Created", "PaymentFailed"])

        assert registry.resolve(EventKind.CREATED) == {"payment", "notification"}
        assert registry.resolve(EventKind.PAYMENT_REQUESTED) == {"payment"}
        assert registry.resolve(EventKind.NOTIFICATION_SENT) == set()

    @pytest.mark.asyncio
    async def test_default_policy_applied(self, registry: SubscriptionRegistry, fast_policy):
        subscription = await registry.register("payment", [EventKind.CREATED])
        assert subscription.delivery_policy == fast_policy

    @pytest.mark.asyncio
    async def test_reregister_replaces_atomically(self, registry: SubscriptionRegistry):
        await registry.register("payment", [EventKind.CREATED])
        policy = DeliveryPolicy(max_attempts=9, backoff_base=1.0, backoff_cap=5.0)
        await registry.register("payment", [EventKind.PAYMENT_REQUESTED], policy)

        assert registry.resolve(EventKind.CREATED) == set()
        assert registry.resolve(EventKind.PAYMENT_REQUESTED) == {"payment"}
        assert registry.get("payment").delivery_policy.max_attempts == 9
        assert len(registry.subscriptions()) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "handler_id, kinds",
        [
            ("", [EventKind.CREATED]),
            ("payment", []),
            ("payment", ["Refunded"]),
        ],
    )
    async def test_rejects_invalid(self, registry: SubscriptionRegistry, handler_id, kinds):
        with pytest.raises(ValidationError):
            await registry.register(handler_id, kinds)
        assert registry.subscriptions() == []


class TestUnregister:
    """Tests for unregister."""

    @pytest.mark.asyncio
    async def test_unregister(self, registry: SubscriptionRegistry):
        await registry.register("payment", [EventKind.CREATED])

        removed = await registry.unregister("payment")

        assert removed.handler_id == "payment"
        assert registry.get("payment") is None
        assert registry.resolve(EventKind.CREATED) == set()

    @pytest.mark.asyncio
    async def test_unregister_unknown(self, registry: SubscriptionRegistry):
        assert await registry.unregister("ghost") is None


class TestPersistence:
    """Subscriptions survive a restart."""

    @pytest.mark.asyncio
    async def test_reload_from_database(self, db: Database, registry: SubscriptionRegistry):
        policy = DeliveryPolicy(max_attempts=2, backoff_base=0.25, backoff_cap=4.0)
        await registry.register("notification", [EventKind.CREATED, EventKind.PAYMENT_FAILED], policy)
        await registry.register("payment", [EventKind.CREATED])
        await registry.unregister("payment")

        fresh = SubscriptionRegistry(db)
        assert await fresh.load() == 1

        subscription = fresh.get("notification")
        assert subscription.event_kinds == frozenset({EventKind.CREATED, EventKind.PAYMENT_FAILED})
        assert subscription.delivery_policy == policy
