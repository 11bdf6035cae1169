"""
Demonstration scripts for the order event broker.

These functions show the broker in action against a throwaway database.
Run them to see events being appended, fanned out to handlers, retried and
dead-lettered.
"""

import asyncio
import tempfile
from pathlib import Path

from broker.adapter import Ack, FunctionHandler
from broker.service import OrderBroker
from handlers.channels import NotificationChannels
from handlers.defaults import bind_default_handlers
from handlers.payment import PaymentGateway
from shared.config import BrokerConfig, DispatcherConfig, LoggingConfig, StoreConfig
from shared.errors import TransientHandlerError
from shared.logging_config import setup_logging
from shared.models import DeliveryPolicy, EventKind, OrderEvent

ALICE = {
    "customer_id": "cust-001",
    "customer_name": "Alice Johnson",
    "customer_email": "alice@example.com",
    "customer_phone": "+1-555-0101",
}
BOB = {
    "customer_id": "cust-002",
    "customer_name": "Bob Smith",
    "customer_email": "bob@example.com",
}


def _demo_config(workdir: Path) -> BrokerConfig:
    return BrokerConfig(
        store=StoreConfig(db_path=workdir / "demo.db", synchronous="NORMAL"),
        dispatcher=DispatcherConfig(
            poll_interval=0.05,
            default_policy=DeliveryPolicy(max_attempts=3, backoff_base=0.1, backoff_cap=1.0),
        ),
        logging=LoggingConfig(level="INFO"),
    )


def _banner(title: str) -> None:
    print("\n" + "=" * 70)
    print(title)
    print("=" * 70 + "\n")


def _section(text: str) -> None:
    print("-" * 70)
    print(text)
    print("-" * 70 + "\n")


async def _order_flow(workdir: Path) -> None:
    config = _demo_config(workdir)
    setup_logging(config.logging)

    broker = OrderBroker(config)
    channels = NotificationChannels()
    bind_default_handlers(broker, gateway=PaymentGateway(decline_over=1000.0), channels=channels)

    async with broker:
        await broker.subscribe("payment", [EventKind.CREATED])
        await broker.subscribe(
            "notification",
            [EventKind.CREATED, EventKind.PAYMENT_SUCCEEDED, EventKind.PAYMENT_FAILED],
        )
        print("Setup complete. payment and notification handlers are subscribed.\n")

        _section("ACTION: Alice orders $42.50, Bob orders $1,250.00 (over the card limit)")
        await broker.append("ord-001", EventKind.CREATED, {**ALICE, "amount": 42.50})
        await broker.append("ord-002", EventKind.CREATED, {**BOB, "amount": 1250.00})

        await broker.dispatcher.wait_until_idle(timeout=10.0)

        for order_id in ("ord-001", "ord-002"):
            print(f"\nEvent log for {order_id}:")
            for event in await broker.store.read_order(order_id):
                print(f"  #{event.sequence} {event.kind.value}")

        print("\nNotifications sent:")
        for msg in channels.get_all_sent_messages():
            print(f"  {msg}")

        stats = await broker.dispatcher.stats()
        print(f"\nDelivery counts: {stats}")


async def _retry(workdir: Path) -> None:
    config = _demo_config(workdir)
    setup_logging(config.logging)

    calls = {"count": 0}

    def flaky_shipping(event: OrderEvent) -> Ack:
        calls["count"] += 1
        if calls["count"] <= 2:
            raise TransientHandlerError(f"Warehouse API timeout (call {calls['count']})")
        return Ack(detail="shipment booked")

    broker = OrderBroker(config, handlers=[FunctionHandler("shipping", flaky_shipping)])
    async with broker:
        await broker.subscribe("shipping", [EventKind.PAYMENT_SUCCEEDED])

        _section("ACTION: PaymentSucceeded for ord-010; the warehouse API fails twice")
        event = await broker.append("ord-010", EventKind.PAYMENT_SUCCEEDED, {"amount": 19.99})
        await broker.dispatcher.wait_until_idle(timeout=10.0)

        record = await broker.dispatcher.get_delivery(event.event_id, "shipping")
        print(f"\nFinal state: {record.state.value} after {record.attempts} attempts")
        print(f"Last recorded error: {record.last_error}")


async def _dead_letter(workdir: Path) -> None:
    config = _demo_config(workdir)
    setup_logging(config.logging)

    fixed = {"deployed": False}

    def loyalty_points(event: OrderEvent) -> Ack:
        if not fixed["deployed"]:
            raise RuntimeError("loyalty service rejects currency 'EUR'")
        return Ack(detail="points credited")

    broker = OrderBroker(config, handlers=[FunctionHandler("loyalty", loyalty_points)])
    async with broker:
        await broker.subscribe(
            "loyalty",
            [EventKind.PAYMENT_SUCCEEDED],
            DeliveryPolicy(max_attempts=3, backoff_base=0.05, backoff_cap=0.2),
        )

        _section("ACTION: PaymentSucceeded for ord-020; the loyalty handler always fails")
        event = await broker.append("ord-020", EventKind.PAYMENT_SUCCEEDED, {"amount": 80, "currency": "EUR"})
        await broker.dispatcher.wait_until_idle(timeout=10.0)

        print("\nDead letters:")
        for record in await broker.dispatcher.dead_letters():
            print(f"  {record.handler_id} / {record.event_id}: {record.last_error}")

        _section("ACTION: Deploy a fix and retry the dead letter")
        fixed["deployed"] = True
        await broker.dispatcher.retry_dead_letter(event.event_id, "loyalty")
        await broker.dispatcher.wait_until_idle(timeout=10.0)

        record = await broker.dispatcher.get_delivery(event.event_id, "loyalty")
        print(f"\nAfter retry: {record.state.value} (attempts {record.attempts})")


def _run(scenario) -> None:
    with tempfile.TemporaryDirectory(prefix="order-broker-demo-") as tmp:
        asyncio.run(scenario(Path(tmp)))


def run_order_flow_demo():
    """
    Demonstrate the payment and notification flow.

    This shows:
    1. A producer appends Created events for two orders
    2. The payment handler charges them and appends PaymentSucceeded / PaymentFailed
    3. The notification handler tells each customer about every step
    """
    _banner("ORDER BROKER DEMO: Order Flow")
    _run(_order_flow)


def run_retry_demo():
    """Demonstrate transient failures retried with exponential backoff."""
    _banner("ORDER BROKER DEMO: Retry With Backoff")
    _run(_retry)


def run_dead_letter_demo():
    """Demonstrate dead-lettering after the retry budget and a manual retry."""
    _banner("ORDER BROKER DEMO: Dead Letter And Replay")
    _run(_dead_letter)


if __name__ == "__main__":
    run_order_flow_demo()
    run_retry_demo()
    run_dead_letter_demo()
