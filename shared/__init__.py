"""
Shared definitions for the order event broker.

- Domain models (OrderEvent, DeliveryRecord, Subscription, DeliveryPolicy)
- Error taxonomy
- Configuration models and loader
- Logging setup
"""

from shared.config import BrokerConfig, load_config
from shared.errors import (
    BrokerError,
    ConflictError,
    HandlerError,
    NotFoundError,
    PermanentHandlerError,
    StorageError,
    TransientHandlerError,
    ValidationError,
)
from shared.models import (
    DeliveryPolicy,
    DeliveryRecord,
    DeliveryState,
    EventKind,
    OrderEvent,
    Subscription,
)

__all__ = [
    "BrokerConfig",
    "load_config",
    "BrokerError",
    "ConflictError",
    "HandlerError",
    "NotFoundError",
    "PermanentHandlerError",
    "StorageError",
    "TransientHandlerError",
    "ValidationError",
    "DeliveryPolicy",
    "DeliveryRecord",
    "DeliveryState",
    "EventKind",
    "OrderEvent",
    "Subscription",
]
