"""
Request and response models for the broker HTTP API.

JSON bodies use camelCase (orderId, handlerId, ...); the Python side keeps
snake_case through Pydantic aliases.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from shared.models import DeliveryPolicy, DeliveryRecord, DeliveryState, EventKind, OrderEvent, Subscription


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Events
# =============================================================================

class AppendEventRequest(ApiModel):
    """
    Producer request to append an event.

    `kind` is validated by the store so an unknown kind gets a 400 with the
    list of valid kinds. `sequence` is optional optimistic concurrency.
    """
    order_id: str = Field(..., min_length=1)
    kind: str
    payload: Any = None
    sequence: Optional[int] = Field(default=None, ge=1)


class EventResponse(ApiModel):
    event_id: UUID
    order_id: str
    kind: EventKind
    sequence: int
    position: int
    occurred_at: datetime
    payload: Any = None

    @classmethod
    def from_event(cls, event: OrderEvent) -> "EventResponse":
        try:
            payload = event.payload_json()
        except ValueError:
            payload = event.payload.decode("utf-8", errors="replace")
        return cls(
            event_id=event.event_id,
            order_id=event.order_id,
            kind=event.kind,
            sequence=event.sequence,
            position=event.position,
            occurred_at=event.occurred_at,
            payload=payload,
        )


class EventPage(ApiModel):
    events: list[EventResponse]
    next_cursor: int


# =============================================================================
# Subscriptions
# =============================================================================

class DeliveryPolicyModel(ApiModel):
    max_attempts: int = Field(default=5, ge=1)
    backoff_base: float = Field(default=0.5, gt=0)
    backoff_cap: float = Field(default=30.0, gt=0)

    def to_policy(self) -> DeliveryPolicy:
        return DeliveryPolicy(
            max_attempts=self.max_attempts,
            backoff_base=self.backoff_base,
            backoff_cap=self.backoff_cap,
        )

    @classmethod
    def from_policy(cls, policy: DeliveryPolicy) -> "DeliveryPolicyModel":
        return cls(
            max_attempts=policy.max_attempts,
            backoff_base=policy.backoff_base,
            backoff_cap=policy.backoff_cap,
        )


class SubscriptionRequest(ApiModel):
    handler_id: str = Field(..., min_length=1)
    event_kinds: list[str] = Field(..., min_length=1)
    delivery_policy: Optional[DeliveryPolicyModel] = None


class SubscriptionResponse(ApiModel):
    handler_id: str
    event_kinds: list[EventKind]
    delivery_policy: DeliveryPolicyModel
    registered_at: datetime

    @classmethod
    def from_subscription(cls, subscription: Subscription) -> "SubscriptionResponse":
        return cls(
            handler_id=subscription.handler_id,
            event_kinds=sorted(subscription.event_kinds, key=lambda k: k.value),
            delivery_policy=DeliveryPolicyModel.from_policy(subscription.delivery_policy),
            registered_at=subscription.registered_at,
        )


class UnsubscribeResponse(ApiModel):
    handler_id: str
    dead_lettered: int


# =============================================================================
# Deliveries
# =============================================================================

class DeliveryResponse(ApiModel):
    event_id: UUID
    handler_id: str
    order_id: str
    sequence: int
    state: DeliveryState
    attempts: int
    next_attempt_at: datetime
    last_error: Optional[str] = None
    idempotency_key: Optional[str] = None
    updated_at: datetime

    @classmethod
    def from_record(cls, record: DeliveryRecord) -> "DeliveryResponse":
        return cls(**record.model_dump())


class ReplayRequest(ApiModel):
    from_cursor: int = Field(default=0, ge=0)
    handler_id: Optional[str] = None


class ReplayResponse(ApiModel):
    created: int


class HealthResponse(ApiModel):
    status: str
    service: str
    deliveries: dict[str, int]
