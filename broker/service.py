"""
OrderBroker: one object that owns the database, store, registry, dispatcher,
idempotency cache and handler catalog.

The API server, CLI and demos all build an OrderBroker from a BrokerConfig
instead of reaching for module-level singletons.
"""

import logging
from typing import Any, Iterable, Optional, Union

from broker.adapter import EventHandler, HandlerCatalog
from broker.dispatcher import Dispatcher
from broker.event_store import EventStore
from broker.idempotency import IdempotencyCache
from broker.registry import SubscriptionRegistry
from broker.storage import Database
from shared.config import BrokerConfig
from shared.errors import NotFoundError
from shared.models import DeliveryPolicy, EventKind, OrderEvent, Subscription

logger = logging.getLogger("order_broker")


class OrderBroker:
    """
    Embeddable order event broker.

    Example:
        broker = OrderBroker(config, handlers=[PaymentHandler(...)])
        async with broker:
            await broker.subscribe("payment", [EventKind.CREATED])
            await broker.append("ord-001", EventKind.CREATED, {"amount": 10})
    """

    def __init__(
        self,
        config: Optional[BrokerConfig] = None,
        handlers: Optional[Iterable[EventHandler]] = None,
    ):
        self.config = config or BrokerConfig()
        store_cfg = self.config.store
        self.db = Database(
            store_cfg.db_path,
            busy_timeout=store_cfg.busy_timeout,
            synchronous=store_cfg.synchronous,
        )
        self.store = EventStore(self.db, poll_interval=self.config.dispatcher.poll_interval)
        self.registry = SubscriptionRegistry(self.db, self.config.dispatcher.default_policy)
        self.catalog = HandlerCatalog(list(handlers or []))
        self.idempotency = IdempotencyCache(
            horizon=self.config.idempotency_horizon(),
            max_entries=self.config.idempotency.max_entries,
        )
        self.dispatcher = Dispatcher(
            self.db,
            self.store,
            self.registry,
            self.catalog,
            config=self.config.dispatcher,
            idempotency=self.idempotency,
            retention_hours=store_cfg.retention_hours,
        )
        self._opened = False

    async def open(self) -> None:
        """Open storage and load subscriptions without starting delivery."""
        if self._opened:
            return
        await self.store.open()
        await self.registry.load()
        self._opened = True

    async def start(self) -> None:
        await self.open()
        await self.dispatcher.start()

    async def close(self) -> None:
        """Stop the dispatcher (draining in-flight work) and close storage."""
        await self.dispatcher.stop()
        await self.db.close()
        self._opened = False

    async def __aenter__(self) -> "OrderBroker":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # =========================================================================
    # Producer and consumer entry points
    # =========================================================================

    async def append(
        self,
        order_id: str,
        kind: Union[EventKind, str],
        payload: Any = b"",
        sequence: Optional[int] = None,
    ) -> OrderEvent:
        return await self.store.append(order_id, kind, payload, sequence=sequence)

    def bind(self, handler: EventHandler) -> None:
        """Make a handler implementation available for subscription."""
        self.catalog.bind(handler)

    async def subscribe(
        self,
        handler_id: str,
        event_kinds: Iterable[Union[EventKind, str]],
        policy: Optional[DeliveryPolicy] = None,
    ) -> Subscription:
        """
        Register a subscription for a bound handler.

        Raises:
            NotFoundError: If no implementation is bound for handler_id
        """
        if handler_id not in self.catalog:
            raise NotFoundError(f"No handler bound for {handler_id}")
        return await self.registry.register(handler_id, event_kinds, policy)

    async def unsubscribe(self, handler_id: str) -> int:
        return await self.dispatcher.unregister(handler_id)
