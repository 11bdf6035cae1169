"""
Domain models for the order event broker.

These models describe the three records the broker works with: the immutable
order-lifecycle event, the per-handler delivery record derived from it, and the
subscription that links a handler to the event kinds it cares about.

Design decisions:
- Using Pydantic for validation and serialization
- Events and subscriptions are frozen; delivery records are snapshots read
  back from storage, never mutated in place
- Payloads are opaque bytes; the broker never looks inside them
- Timestamps are timezone-aware UTC datetimes
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class EventKind(str, Enum):
    """
    Order lifecycle event kinds.

    The string values are the wire names used by producers.
    """
    CREATED = "Created"
    PAYMENT_REQUESTED = "PaymentRequested"
    PAYMENT_SUCCEEDED = "PaymentSucceeded"
    PAYMENT_FAILED = "PaymentFailed"
    NOTIFICATION_SENT = "NotificationSent"


class DeliveryState(str, Enum):
    """
    Delivery record states.

    Pending -> InFlight -> Delivered is the happy path. A failed attempt moves
    InFlight back to Pending with a backoff delay, or to DeadLettered once the
    retry budget is spent. Failed is accepted when reading records but the
    dispatcher never writes it.
    """
    PENDING = "Pending"
    IN_FLIGHT = "InFlight"
    DELIVERED = "Delivered"
    FAILED = "Failed"
    DEAD_LETTERED = "DeadLettered"

    @property
    def is_terminal(self) -> bool:
        return self in (DeliveryState.DELIVERED, DeliveryState.DEAD_LETTERED)


# =============================================================================
# Core Records
# =============================================================================

class OrderEvent(BaseModel):
    """
    An order-lifecycle event as stored in the event log.

    Events are created by the event store on append and never change
    afterwards. `sequence` is strictly increasing per order starting at 1;
    `position` is the global append order and doubles as the read cursor.
    """
    event_id: UUID = Field(..., description="Globally unique event identifier")
    order_id: str = Field(..., min_length=1, description="Order this event belongs to")
    kind: EventKind = Field(..., description="Lifecycle event kind")
    payload: bytes = Field(default=b"", description="Opaque producer payload")
    sequence: int = Field(..., ge=1, description="Per-order sequence number")
    occurred_at: datetime = Field(default_factory=utcnow)
    position: int = Field(default=0, ge=0, description="Global append position")

    model_config = ConfigDict(frozen=True)

    def payload_json(self) -> Any:
        """
        Decode the payload as JSON.

        Raises:
            ValueError: If the payload is not valid UTF-8 JSON
        """
        if not self.payload:
            return None
        return json.loads(self.payload.decode("utf-8"))

    def __str__(self) -> str:
        return f"OrderEvent({self.kind.value}, order={self.order_id}, seq={self.sequence})"


class DeliveryPolicy(BaseModel):
    """Retry budget and backoff parameters for one subscription."""
    max_attempts: int = Field(default=5, ge=1, description="Attempts before dead-lettering")
    backoff_base: float = Field(default=0.5, gt=0, description="Base backoff delay in seconds")
    backoff_cap: float = Field(default=30.0, gt=0, description="Maximum backoff delay in seconds")

    model_config = ConfigDict(frozen=True)

    @property
    def redelivery_window(self) -> float:
        """Longest plausible time, in seconds, a delivery can keep being retried."""
        return self.backoff_cap * self.max_attempts


class Subscription(BaseModel):
    """
    A handler's interest in a set of event kinds.

    Subscriptions are replaced wholesale on re-registration; there is no
    partial update.
    """
    handler_id: str = Field(..., min_length=1)
    event_kinds: frozenset[EventKind] = Field(..., min_length=1)
    delivery_policy: DeliveryPolicy = Field(default_factory=DeliveryPolicy)
    registered_at: datetime = Field(default_factory=utcnow)

    model_config = ConfigDict(frozen=True)

    def matches(self, kind: EventKind) -> bool:
        return kind in self.event_kinds


class DeliveryRecord(BaseModel):
    """
    Delivery state of one event for one handler.

    Owned by the dispatcher. `order_id` and `sequence` are copied from the
    event so head-of-line ordering can be enforced per (order, handler) lane.
    """
    event_id: UUID
    handler_id: str
    order_id: str
    sequence: int
    state: DeliveryState = DeliveryState.PENDING
    attempts: int = Field(default=0, ge=0)
    next_attempt_at: datetime = Field(default_factory=utcnow)
    last_error: Optional[str] = None
    idempotency_key: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("state", mode="before")
    @classmethod
    def _coerce_state(cls, value: Any) -> Any:
        if isinstance(value, str):
            return DeliveryState(value)
        return value

    @property
    def lane(self) -> tuple[str, str]:
        """The (order_id, handler_id) ordering lane this record belongs to."""
        return (self.order_id, self.handler_id)

    @property
    def key(self) -> tuple[str, str]:
        return (str(self.event_id), self.handler_id)
