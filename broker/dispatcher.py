"""
Dispatcher: at-least-once delivery of order events to subscribed handlers.

The dispatcher tails the event store, fans each event out into one delivery
record per subscribed handler, and runs a pool of worker tasks that invoke
handlers through the runtime adapter.

Delivery state machine (per record):
    Pending  --claimed-->            InFlight
    InFlight --handler succeeds-->   Delivered
    InFlight --fails, attempts<max-> Pending (after backoff)
    InFlight --fails, attempts>=max or permanent error--> DeadLettered

Design decisions:
- Records are durable; a restart turns InFlight back into Pending, costing at
  most one extra delivery attempt and never losing one
- Head-of-line ordering per (order_id, handler_id): the claim query refuses
  the next sequence while an earlier one is Pending or InFlight; different
  orders are delivered in parallel
- Only as many records are claimed as there are idle workers (backpressure)
- The scheduler sleeps until new work is fanned out, a worker finishes, or the
  next backoff expires, whichever is first; poll_interval bounds the sleep
- Handler errors are recorded on the record and logged, never raised to
  producers
"""

import asyncio
import logging
import random
import time
from datetime import timedelta
from typing import Optional, Union
from uuid import UUID

from broker.adapter import HandlerCatalog, invoke
from broker.deliveries import DeliveryTable
from broker.event_store import EventStore
from broker.idempotency import IdempotencyCache
from broker.registry import SubscriptionRegistry
from broker.storage import Database
from shared.config import DispatcherConfig
from shared.errors import (
    HandlerError,
    NotFoundError,
    PermanentHandlerError,
    StorageError,
    TransientHandlerError,
)
from shared.models import DeliveryPolicy, DeliveryRecord, DeliveryState, utcnow

logger = logging.getLogger("dispatcher")

UNREGISTERED = "handler unregistered"


def backoff_delay(policy: DeliveryPolicy, attempts: int, rng: Optional[random.Random] = None) -> float:
    """
    Exponential backoff with jitter.

    delay = min(backoff_cap, backoff_base * 2**attempts) * uniform(0.5, 1.5)
    """
    rng = rng or random
    exponent = min(max(attempts, 0), 62)
    base = min(policy.backoff_cap, policy.backoff_base * (2 ** exponent))
    return base * rng.uniform(0.5, 1.5)


def _describe(error: BaseException) -> str:
    if isinstance(error, HandlerError):
        return str(error) or type(error).__name__
    message = str(error)
    return f"{type(error).__name__}: {message}" if message else type(error).__name__


class Dispatcher:
    """
    Delivers events from the store to handlers in the catalog.

    Example:
        dispatcher = Dispatcher(db, store, registry, catalog, DispatcherConfig())
        await dispatcher.start()
        ...
        await dispatcher.stop()
    """

    def __init__(
        self,
        db: Database,
        store: EventStore,
        registry: SubscriptionRegistry,
        catalog: HandlerCatalog,
        config: Optional[DispatcherConfig] = None,
        idempotency: Optional[IdempotencyCache] = None,
        retention_hours: Optional[float] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Args:
            db: Broker database (shared with the store and registry)
            store: Event log to tail
            registry: Subscriptions used for fan-out and retry policy
            catalog: Handler implementations, looked up by handler id
            config: Delivery loop settings
            idempotency: Cache in which Ack idempotency keys are marked
            retention_hours: Compact delivered events older than this
            rng: Random source for backoff jitter
        """
        self.config = config or DispatcherConfig()
        self._store = store
        self._registry = registry
        self._catalog = catalog
        self._deliveries = DeliveryTable(db)
        self._idempotency = idempotency
        self._retention_hours = retention_hours
        self._rng = rng or random.Random()

        self._cursor = 0
        self._wake = asyncio.Event()
        self._queue: asyncio.Queue = asyncio.Queue()
        self._in_flight: dict[tuple[str, str], DeliveryRecord] = {}
        self._busy = 0
        self._loop_tasks: list[asyncio.Task] = []
        self._workers: list[asyncio.Task] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def cursor(self) -> int:
        """Position of the last event fanned out."""
        return self._cursor

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Recover interrupted deliveries and start the loops and workers."""
        if self._running:
            logger.warning("Dispatcher already started")
            return

        recovered = await self._deliveries.reset_in_flight()
        if recovered:
            logger.info(f"Recovered {recovered} interrupted deliveries")
        self._cursor = await self._deliveries.get_cursor()

        self._running = True
        self._queue = asyncio.Queue()
        self._in_flight.clear()
        self._busy = 0
        self._wake.set()
        self._loop_tasks = [
            asyncio.create_task(self._fanout_loop(), name="dispatcher-fanout"),
            asyncio.create_task(self._schedule_loop(), name="dispatcher-scheduler"),
            asyncio.create_task(self._watchdog_loop(), name="dispatcher-watchdog"),
        ]
        self._workers = [
            asyncio.create_task(self._worker_loop(), name=f"dispatcher-worker-{i}")
            for i in range(self.config.workers)
        ]
        logger.info(
            f"Dispatcher started at cursor {self._cursor} with {self.config.workers} workers"
        )

    async def stop(self, grace: Optional[float] = None) -> None:
        """
        Stop dispatching.

        New claims stop immediately. Work already claimed gets `grace`
        seconds (default: config.shutdown_grace) to finish; whatever is still
        unfinished afterwards is cancelled and returned to Pending.
        """
        if not self._running:
            return
        self._running = False
        grace = self.config.shutdown_grace if grace is None else grace

        for task in self._loop_tasks:
            task.cancel()
        await asyncio.gather(*self._loop_tasks, return_exceptions=True)
        self._loop_tasks = []

        if self._in_flight:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning(
                    f"Shutdown grace of {grace:g}s expired with {len(self._in_flight)} deliveries unfinished"
                )

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        leftovers = list(self._in_flight.values())
        self._in_flight.clear()
        self._busy = 0
        if leftovers:
            requeued = await self._deliveries.requeue(leftovers)
            logger.info(f"Requeued {requeued} unfinished deliveries")
        logger.info("Dispatcher stopped")

    # =========================================================================
    # Loops
    # =========================================================================

    async def _fanout_loop(self) -> None:
        """Tail the store and create delivery records for each new event."""
        while self._running:
            try:
                async for event in self._store.read_from(
                    self._cursor, follow=True, batch_size=self.config.batch_size
                ):
                    handler_ids = self._registry.resolve(event.kind)
                    created = await self._deliveries.fan_out(event, handler_ids)
                    self._cursor = event.position
                    if created:
                        logger.debug(f"Fanned out {event} to {sorted(handler_ids)}")
                        self._wake.set()
            except StorageError as e:
                logger.error(f"Fan-out failed at cursor {self._cursor}: {e}")
                await asyncio.sleep(self.config.poll_interval)

    async def _schedule_loop(self) -> None:
        """Claim due records up to the number of idle workers and queue them."""
        while self._running:
            timeout = self.config.poll_interval
            try:
                claimed = await self._claim_ready()
                if claimed:
                    timeout = 0.0 if self._busy < self.config.workers else timeout
                else:
                    timeout = await self._time_until_due()
            except StorageError as e:
                logger.error(f"Claiming deliveries failed: {e}")

            if timeout > 0:
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    pass
            self._wake.clear()

    async def _claim_ready(self) -> int:
        free = self.config.workers - self._busy
        if free <= 0:
            return 0
        records = await self._deliveries.claim_ready(
            time.time(), min(free, self.config.batch_size)
        )
        for record in records:
            self._busy += 1
            self._in_flight[record.key] = record
            self._queue.put_nowait(record)
        return len(records)

    async def _time_until_due(self) -> float:
        if self._busy >= self.config.workers:
            return self.config.poll_interval
        due = await self._deliveries.next_due()
        if due is None:
            return self.config.poll_interval
        return min(self.config.poll_interval, max(due - time.time(), 0.005))

    async def _worker_loop(self) -> None:
        while True:
            record = await self._queue.get()
            try:
                await self._deliver(record)
            except StorageError as e:
                # The record stays InFlight; restart or the watchdog returns it to Pending.
                logger.error(f"Could not record outcome for {record.handler_id}/{record.event_id}: {e}")
            except asyncio.CancelledError:
                self._queue.task_done()
                raise
            self._in_flight.pop(record.key, None)
            self._busy -= 1
            self._queue.task_done()
            self._wake.set()

    async def _watchdog_loop(self) -> None:
        """Return stale InFlight records to Pending and compact the log."""
        while self._running:
            await asyncio.sleep(self.config.watchdog_interval)
            try:
                reset = await self._deliveries.recover_stale(self.config.stale_timeout)
                if reset:
                    logger.warning(f"Watchdog returned {reset} stale deliveries to Pending")
                    self._wake.set()
                if self._retention_hours is not None:
                    await self.compact(self._retention_hours)
            except StorageError as e:
                logger.error(f"Watchdog failed: {e}")

    # =========================================================================
    # Delivery
    # =========================================================================

    async def _deliver(self, record: DeliveryRecord) -> None:
        subscription = self._registry.get(record.handler_id)
        if subscription is None:
            await self._dead_letter(record, UNREGISTERED)
            return

        event = await self._store.get(record.event_id)
        if event is None:
            await self._dead_letter(record, "event no longer in store")
            return

        handler = self._catalog.get(record.handler_id)
        try:
            if handler is None:
                raise TransientHandlerError(f"No handler bound for {record.handler_id}")
            ack = await invoke(handler, event, self.config.handler_timeout)
        except PermanentHandlerError as e:
            await self._dead_letter(record, _describe(e))
            return
        except Exception as e:
            await self._fail(record, _describe(e))
            return

        if await self._deliveries.mark_delivered(record, ack.idempotency_key):
            if ack.idempotency_key and self._idempotency is not None:
                self._idempotency.mark_seen(ack.idempotency_key)
            detail = f" ({ack.detail})" if ack.detail else ""
            logger.info(
                f"Delivered {event} to {record.handler_id} on attempt {record.attempts}{detail}"
            )

    async def _fail(self, record: DeliveryRecord, error: str) -> None:
        # The subscription may have been replaced or removed while the handler ran.
        subscription = self._registry.get(record.handler_id)
        if subscription is None:
            await self._dead_letter(record, f"{error}; {UNREGISTERED}")
            return

        policy = subscription.delivery_policy
        if record.attempts >= policy.max_attempts:
            await self._dead_letter(record, f"{error} (after {record.attempts} attempts)")
            return

        delay = backoff_delay(policy, record.attempts, self._rng)
        await self._deliveries.mark_retry(record, time.time() + delay, error)
        logger.warning(
            f"Delivery of {record.event_id} to {record.handler_id} failed "
            f"(attempt {record.attempts}/{policy.max_attempts}), retrying in {delay:.2f}s: {error}"
        )

    async def _dead_letter(self, record: DeliveryRecord, error: str) -> None:
        await self._deliveries.mark_dead_letter(record, error)
        logger.error(
            f"Dead-lettered {record.event_id} for {record.handler_id} "
            f"after {record.attempts} attempts: {error}"
        )

    # =========================================================================
    # Operations
    # =========================================================================

    async def unregister(self, handler_id: str) -> int:
        """
        Unregister a handler and drain its pending deliveries to DeadLettered.

        Deliveries already InFlight run to completion; if they fail they are
        dead-lettered rather than retried.

        Returns:
            Number of pending deliveries dead-lettered

        Raises:
            NotFoundError: If the handler is not registered
        """
        removed = await self._registry.unregister(handler_id)
        if removed is None:
            raise NotFoundError(f"No subscription for handler {handler_id}")
        drained = await self._deliveries.dead_letter_pending(handler_id, UNREGISTERED)
        if drained:
            logger.warning(f"Dead-lettered {drained} pending deliveries of unregistered {handler_id}")
        return drained

    async def replay(self, from_position: int = 0, handler_id: Optional[str] = None) -> int:
        """
        Rebuild missing delivery records from the log.

        Every retained event after `from_position` is matched against the
        current subscriptions (optionally only `handler_id`'s); records that
        do not exist yet are created as Pending. Existing records, delivered
        or not, are left alone.

        Returns:
            Number of records created
        """
        if handler_id is not None and self._registry.get(handler_id) is None:
            raise NotFoundError(f"No subscription for handler {handler_id}")
        created = 0
        async for event in self._store.read_from(from_position):
            handler_ids = self._registry.resolve(event.kind)
            if handler_id is not None:
                handler_ids &= {handler_id}
            if handler_ids:
                created += await self._deliveries.fan_out(event, handler_ids, cursor_name=None)
        if created:
            logger.info(f"Replay from position {from_position} created {created} deliveries")
            self._wake.set()
        return created

    async def retry_dead_letter(
        self, event_id: Union[UUID, str], handler_id: Optional[str] = None
    ) -> list[DeliveryRecord]:
        """
        Re-enqueue dead-lettered deliveries of an event with attempts reset to 0.

        Raises:
            NotFoundError: If the event has no matching dead-lettered deliveries
        """
        records = await self._deliveries.retry_dead_letters(event_id, handler_id)
        if not records:
            raise NotFoundError(f"No dead-lettered deliveries for event {event_id}")
        logger.info(
            f"Retrying {len(records)} dead-lettered deliveries of {event_id}: "
            f"{[r.handler_id for r in records]}"
        )
        self._wake.set()
        return records

    async def compact(self, retention_hours: float) -> int:
        """Compact delivered events older than the retention horizon."""
        older_than = utcnow() - timedelta(hours=retention_hours)
        cursor = max(self._cursor, await self._deliveries.get_cursor())
        return await self._store.compact(older_than, up_to_position=cursor)

    async def deliveries_for(self, event_id: Union[UUID, str]) -> list[DeliveryRecord]:
        """
        All delivery records of an event.

        Raises:
            NotFoundError: If the event is unknown and has no records
        """
        records = await self._deliveries.for_event(event_id)
        if not records and await self._store.get(event_id) is None:
            raise NotFoundError(f"Event not found: {event_id}")
        return records

    async def dead_letters(self, limit: int = 100, offset: int = 0) -> list[DeliveryRecord]:
        return await self._deliveries.dead_letters(limit=limit, offset=offset)

    async def get_delivery(self, event_id: Union[UUID, str], handler_id: str) -> Optional[DeliveryRecord]:
        return await self._deliveries.get(event_id, handler_id)

    async def stats(self) -> dict[str, int]:
        """Delivery counts per state plus loop gauges."""
        counts = await self._deliveries.counts()
        stats = {state.value: n for state, n in counts.items()}
        stats["cursor"] = self._cursor
        stats["busy_workers"] = self._busy
        return stats

    async def wait_until_idle(self, timeout: float = 5.0, interval: float = 0.02) -> bool:
        """
        Wait until every event is fanned out and no delivery is Pending or InFlight.

        Returns:
            True if the dispatcher went idle, False on timeout
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            head = await self._store.head()
            counts = await self._deliveries.counts()
            if (
                self._cursor >= head
                and counts[DeliveryState.PENDING] == 0
                and counts[DeliveryState.IN_FLIGHT] == 0
                and not self._in_flight
            ):
                return True
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(interval)
