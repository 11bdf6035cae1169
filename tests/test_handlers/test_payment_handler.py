"""
Tests for the payment handler and simulated gateway.
"""

import random
from uuid import uuid4

import pytest

from broker.idempotency import IdempotencyCache
from broker.service import OrderBroker
from handlers.defaults import bind_default_handlers
from handlers.payment import GatewayUnavailable, PaymentGateway, PaymentHandler
from shared.errors import PermanentHandlerError, TransientHandlerError
from shared.models import DeliveryState, EventKind, OrderEvent


def make_event(kind: EventKind, payload: bytes, order_id: str = "ord-001") -> OrderEvent:
    return OrderEvent(
        event_id=uuid4(),
        order_id=order_id,
        kind=kind,
        payload=payload,
        sequence=1,
        position=1,
    )


class TestPaymentGateway:
    """Tests for the simulated gateway."""

    @pytest.mark.asyncio
    async def test_approves_and_declines(self):
        gateway = PaymentGateway(decline_over=100.0)

        approved = await gateway.charge("ord-001", 50.0, idempotency_key="a")
        declined = await gateway.charge("ord-002", 500.0, idempotency_key="b")

        assert approved.approved and approved.payment_id == "pay-0001"
        assert not declined.approved
        assert "declined" in declined.failure_reason

    @pytest.mark.asyncio
    async def test_same_key_charges_once(self):
        gateway = PaymentGateway()

        first = await gateway.charge("ord-001", 50.0, idempotency_key="k")
        second = await gateway.charge("ord-001", 50.0, idempotency_key="k")

        assert first == second
        assert len(gateway.charges) == 1

    @pytest.mark.asyncio
    async def test_outage(self):
        gateway = PaymentGateway(fail_rate=1.0, rng=random.Random(0))
        with pytest.raises(GatewayUnavailable):
            await gateway.charge("ord-001", 50.0, idempotency_key="k")


class TestPaymentHandler:
    """Tests for PaymentHandler.handle without a broker."""

    @pytest.mark.asyncio
    async def test_charges_created_event(self):
        gateway = PaymentGateway()
        handler = PaymentHandler(gateway)
        event = make_event(EventKind.CREATED, b'{"amount": 42.5}')

        ack = await handler.handle(event)

        assert ack.idempotency_key == f"payment:{event.event_id}"
        assert gateway.charges[0].amount == 42.5

    @pytest.mark.asyncio
    async def test_ignores_other_kinds(self):
        gateway = PaymentGateway()
        ack = await PaymentHandler(gateway).handle(make_event(EventKind.PAYMENT_FAILED, b"{}"))

        assert ack.idempotency_key is None
        assert gateway.charges == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [b"not json", b"[1, 2]", b"{}", b'{"amount": 0}', b'{"amount": "ten"}', b'{"amount": true}'],
    )
    async def test_unusable_payload_is_permanent(self, payload):
        with pytest.raises(PermanentHandlerError):
            await PaymentHandler(PaymentGateway()).handle(make_event(EventKind.CREATED, payload))

    @pytest.mark.asyncio
    async def test_gateway_outage_is_transient(self):
        handler = PaymentHandler(PaymentGateway(fail_rate=1.0))
        with pytest.raises(TransientHandlerError):
            await handler.handle(make_event(EventKind.CREATED, b'{"amount": 5}'))

    @pytest.mark.asyncio
    async def test_seen_key_is_skipped(self):
        gateway = PaymentGateway()
        cache = IdempotencyCache(horizon=60)
        handler = PaymentHandler(gateway, idempotency=cache)
        event = make_event(EventKind.CREATED, b'{"amount": 5}')
        cache.mark_seen(f"payment:{event.event_id}")

        ack = await handler.handle(event)

        assert ack.detail == "duplicate"
        assert gateway.charges == []


class TestPaymentFlow:
    """Payment handler wired into a running broker."""

    @pytest.mark.asyncio
    async def test_success_appends_payment_succeeded(self, broker: OrderBroker, alice_order):
        payment, _ = bind_default_handlers(broker)
        await broker.subscribe("payment", [EventKind.CREATED])
        await broker.start()

        await broker.append("ord-001", EventKind.CREATED, alice_order)
        assert await broker.dispatcher.wait_until_idle()

        events = await broker.store.read_order("ord-001")
        assert [e.kind for e in events] == [EventKind.CREATED, EventKind.PAYMENT_SUCCEEDED]
        outcome = events[1].payload_json()
        assert outcome["amount"] == 42.5
        assert outcome["customer_email"] == "alice@example.com"
        assert outcome["payment_id"] == "pay-0001"
        assert len(payment.gateway.charges) == 1

    @pytest.mark.asyncio
    async def test_decline_appends_payment_failed(self, broker: OrderBroker, bob_order):
        bind_default_handlers(broker, gateway=PaymentGateway(decline_over=1000.0))
        await broker.subscribe("payment", [EventKind.CREATED])
        await broker.start()

        created = await broker.append("ord-002", EventKind.CREATED, bob_order)
        assert await broker.dispatcher.wait_until_idle()

        events = await broker.store.read_order("ord-002")
        assert events[-1].kind == EventKind.PAYMENT_FAILED
        assert "declined" in events[-1].payload_json()["failure_reason"]
        # A decline is a business outcome; the delivery itself succeeded.
        record = await broker.dispatcher.get_delivery(created.event_id, "payment")
        assert record.state == DeliveryState.DELIVERED

    @pytest.mark.asyncio
    async def test_missing_amount_is_dead_lettered(self, broker: OrderBroker):
        bind_default_handlers(broker)
        await broker.subscribe("payment", [EventKind.CREATED])
        await broker.start()

        created = await broker.append("ord-003", EventKind.CREATED, {"customer_id": "cust-009"})
        assert await broker.dispatcher.wait_until_idle()

        record = await broker.dispatcher.get_delivery(created.event_id, "payment")
        assert record.state == DeliveryState.DEAD_LETTERED
        assert record.attempts == 1
        assert len(await broker.store.read_order("ord-003")) == 1
