"""
Subscription registry: which handlers want which event kinds.

Design decisions:
- Subscriptions are persisted so a restart keeps the same routing
- Lookups are served from memory; a registration is visible only after its
  row is committed, and the in-memory swap is a single assignment so the
  dispatcher never sees a half-updated subscription
- Unregistering does not touch delivery records; the dispatcher drains them
"""

import json
import logging
from datetime import datetime, timezone
from typing import Iterable, Optional, Union

from broker.event_store import coerce_kind
from broker.storage import Database
from shared.errors import ValidationError
from shared.models import DeliveryPolicy, EventKind, Subscription, utcnow

logger = logging.getLogger("registry")


class SubscriptionRegistry:
    """
    Tracks handler subscriptions.

    Example:
        registry = SubscriptionRegistry(db)
        await registry.load()

        await registry.register(
            "payment",
            [EventKind.CREATED, EventKind.PAYMENT_REQUESTED],
            DeliveryPolicy(max_attempts=3),
        )
        registry.resolve(EventKind.CREATED)  # {"payment"}
    """

    def __init__(self, db: Database, default_policy: Optional[DeliveryPolicy] = None):
        self._db = db
        self._default_policy = default_policy or DeliveryPolicy()
        self._subscriptions: dict[str, Subscription] = {}

    async def load(self) -> int:
        """Load persisted subscriptions. Returns how many were loaded."""
        await self._db.open()
        rows = await self._db.fetchall(
            "SELECT handler_id, event_kinds, max_attempts, backoff_base, backoff_cap, registered_at "
            "FROM subscriptions"
        )
        loaded = {}
        for row in rows:
            loaded[row["handler_id"]] = Subscription(
                handler_id=row["handler_id"],
                event_kinds=frozenset(EventKind(k) for k in json.loads(row["event_kinds"])),
                delivery_policy=DeliveryPolicy(
                    max_attempts=row["max_attempts"],
                    backoff_base=row["backoff_base"],
                    backoff_cap=row["backoff_cap"],
                ),
                registered_at=datetime.fromtimestamp(row["registered_at"], tz=timezone.utc),
            )
        self._subscriptions = loaded
        logger.info(f"Loaded {len(loaded)} subscriptions")
        return len(loaded)

    async def register(
        self,
        handler_id: str,
        event_kinds: Iterable[Union[EventKind, str]],
        policy: Optional[DeliveryPolicy] = None,
    ) -> Subscription:
        """
        Register or replace a handler's subscription.

        Re-registering the same handler_id replaces its kinds and policy in
        one step.

        Raises:
            ValidationError: Empty handler id, no kinds, or an unknown kind
        """
        if not isinstance(handler_id, str) or not handler_id.strip():
            raise ValidationError("handler_id must be a non-empty string")
        kinds = frozenset(coerce_kind(k) for k in event_kinds)
        if not kinds:
            raise ValidationError(f"Subscription for {handler_id} must name at least one event kind")

        subscription = Subscription(
            handler_id=handler_id,
            event_kinds=kinds,
            delivery_policy=policy or self._default_policy,
            registered_at=utcnow(),
        )
        p = subscription.delivery_policy
        async with self._db.transaction() as conn:
            await conn.execute(
                """
                INSERT OR REPLACE INTO subscriptions
                    (handler_id, event_kinds, max_attempts, backoff_base, backoff_cap, registered_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    handler_id,
                    json.dumps(sorted(k.value for k in kinds)),
                    p.max_attempts,
                    p.backoff_base,
                    p.backoff_cap,
                    subscription.registered_at.timestamp(),
                ),
            )

        replaced = handler_id in self._subscriptions
        self._subscriptions = {**self._subscriptions, handler_id: subscription}
        logger.info(
            f"{'Replaced' if replaced else 'Registered'} subscription {handler_id} "
            f"for {sorted(k.value for k in kinds)}"
        )
        return subscription

    async def unregister(self, handler_id: str) -> Optional[Subscription]:
        """
        Remove a handler's subscription.

        Returns:
            The removed subscription, or None if the handler was not registered
        """
        existing = self._subscriptions.get(handler_id)
        if existing is None:
            return None
        async with self._db.transaction() as conn:
            await conn.execute("DELETE FROM subscriptions WHERE handler_id = ?", (handler_id,))
        remaining = dict(self._subscriptions)
        remaining.pop(handler_id, None)
        self._subscriptions = remaining
        logger.info(f"Unregistered subscription {handler_id}")
        return existing

    def resolve(self, kind: EventKind) -> set[str]:
        """Handler ids subscribed to an event kind."""
        return {s.handler_id for s in self._subscriptions.values() if s.matches(kind)}

    def get(self, handler_id: str) -> Optional[Subscription]:
        return self._subscriptions.get(handler_id)

    def subscriptions(self) -> list[Subscription]:
        return sorted(self._subscriptions.values(), key=lambda s: s.handler_id)
