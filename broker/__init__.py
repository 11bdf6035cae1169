"""
Order event broker core.

This package implements durable store-then-dispatch delivery of order events:
- EventStore: append-only log with per-order sequence numbers
- SubscriptionRegistry: which handlers receive which event kinds
- Dispatcher: at-least-once delivery with retry, backoff and dead-lettering
- Handler runtime adapter: the contract handlers implement
- IdempotencyCache: shared dedup of redelivered events
"""

from broker.adapter import Ack, EventHandler, FunctionHandler, HandlerCatalog
from broker.dispatcher import Dispatcher, backoff_delay
from broker.event_store import EventStore
from broker.idempotency import IdempotencyCache, horizon_for
from broker.registry import SubscriptionRegistry
from broker.service import OrderBroker
from broker.storage import Database

__all__ = [
    "Ack",
    "EventHandler",
    "FunctionHandler",
    "HandlerCatalog",
    "Dispatcher",
    "backoff_delay",
    "EventStore",
    "IdempotencyCache",
    "horizon_for",
    "SubscriptionRegistry",
    "OrderBroker",
    "Database",
]
