"""
Payment handler: charges orders when they are created or a payment is requested.

The handler charges through a PaymentGateway and records the business outcome
by appending PaymentSucceeded or PaymentFailed to the event store, which in
turn drives the notification handler.

Key points:
- A declined card is a business outcome, not a delivery failure: the handler
  acks and emits PaymentFailed
- An unreachable gateway is transient and retried by the dispatcher
- A payload without a usable amount can never succeed and is dead-lettered
- Charges are keyed by event id, both at the gateway and in the idempotency
  cache, so redeliveries never double-charge
"""

import logging
import random
from dataclasses import dataclass
from typing import Any, Optional

from broker.adapter import Ack
from broker.event_store import EventStore
from broker.idempotency import IdempotencyCache
from shared.errors import PermanentHandlerError, TransientHandlerError
from shared.models import EventKind, OrderEvent

logger = logging.getLogger("payment_handler")

# Fields copied from the triggering payload into the outcome event, so the
# notification handler does not need to look anything up.
_CARRIED_FIELDS = ("customer_id", "customer_name", "customer_email", "customer_phone")


class GatewayUnavailable(ConnectionError):
    """The payment processor could not be reached."""


@dataclass(frozen=True)
class PaymentResult:
    payment_id: str
    approved: bool
    amount: float
    failure_reason: Optional[str] = None


class PaymentGateway:
    """
    Simulated payment processor.

    Charges with the same idempotency key return the original result, the
    way real processors deduplicate retried requests.

    Example:
        gateway = PaymentGateway(decline_over=1000.0)
        result = await gateway.charge("ord-001", 42.0, idempotency_key="k1")
    """

    def __init__(
        self,
        decline_over: Optional[float] = None,
        fail_rate: float = 0.0,
        rng: Optional[random.Random] = None,
    ):
        """
        Args:
            decline_over: Decline any charge above this amount
            fail_rate: Probability (0.0 to 1.0) that a call raises GatewayUnavailable
            rng: Random source for simulated outages
        """
        self.decline_over = decline_over
        self.fail_rate = fail_rate
        self._rng = rng or random.Random()
        self._results: dict[str, PaymentResult] = {}
        self.charges: list[PaymentResult] = []

    async def charge(self, order_id: str, amount: float, idempotency_key: str) -> PaymentResult:
        if self.fail_rate > 0 and self._rng.random() < self.fail_rate:
            raise GatewayUnavailable("Payment gateway unavailable")
        if idempotency_key in self._results:
            return self._results[idempotency_key]

        payment_id = f"pay-{len(self._results) + 1:04d}"
        if self.decline_over is not None and amount > self.decline_over:
            result = PaymentResult(payment_id, False, amount, "Card declined: amount over limit")
        else:
            result = PaymentResult(payment_id, True, amount)
        self._results[idempotency_key] = result
        self.charges.append(result)
        logger.info(
            f"Charge {payment_id} for order {order_id}: "
            f"{'approved' if result.approved else 'declined'} ${amount:.2f}"
        )
        return result


def _parse_amount(data: Any) -> float:
    if not isinstance(data, dict):
        raise PermanentHandlerError("Payment payload must be a JSON object")
    amount = data.get("amount")
    if isinstance(amount, bool) or not isinstance(amount, (int, float)) or amount <= 0:
        raise PermanentHandlerError(f"Payment payload has no positive amount: {amount!r}")
    return float(amount)


class PaymentHandler:
    """
    Charges orders on Created / PaymentRequested events.

    Args:
        gateway: Payment processor to charge through
        producer: Event store to append PaymentSucceeded / PaymentFailed to;
                  None disables outcome events
        idempotency: Shared dedup cache
        handler_id: Id to bind and subscribe under
    """

    TRIGGERS = frozenset({EventKind.CREATED, EventKind.PAYMENT_REQUESTED})

    def __init__(
        self,
        gateway: PaymentGateway,
        producer: Optional[EventStore] = None,
        idempotency: Optional[IdempotencyCache] = None,
        handler_id: str = "payment",
    ):
        self.handler_id = handler_id
        self.gateway = gateway
        self.producer = producer
        self.idempotency = idempotency

    async def handle(self, event: OrderEvent) -> Ack:
        if event.kind not in self.TRIGGERS:
            return Ack(detail=f"ignored {event.kind.value}")

        try:
            data = event.payload_json()
        except ValueError as e:
            raise PermanentHandlerError(f"Payment payload is not JSON: {e}", self.handler_id) from e
        amount = _parse_amount(data)

        key = f"{self.handler_id}:{event.event_id}"
        if self.idempotency is not None and self.idempotency.seen(key):
            logger.info(f"Skipping duplicate payment for {event}")
            return Ack(idempotency_key=key, detail="duplicate")

        try:
            result = await self.gateway.charge(event.order_id, amount, idempotency_key=key)
        except GatewayUnavailable as e:
            raise TransientHandlerError(str(e), self.handler_id) from e

        if self.producer is not None:
            outcome: dict[str, Any] = {k: data[k] for k in _CARRIED_FIELDS if k in data}
            outcome.update(payment_id=result.payment_id, amount=result.amount)
            if result.approved:
                await self.producer.append(event.order_id, EventKind.PAYMENT_SUCCEEDED, outcome)
            else:
                outcome["failure_reason"] = result.failure_reason
                await self.producer.append(event.order_id, EventKind.PAYMENT_FAILED, outcome)

        return Ack(
            idempotency_key=key,
            detail=f"{result.payment_id} {'approved' if result.approved else 'declined'}",
        )
