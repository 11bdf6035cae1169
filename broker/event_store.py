"""
Durable, append-only event log for order-lifecycle events.

Producers append events here; the dispatcher tails the log to fan events out
to subscribed handlers. This replaces the managed event bus a cloud tutorial
would call directly: the log gives replay and crash recovery for free.

Design decisions:
- Sequence numbers are assigned inside the write transaction, so they are
  strictly increasing and gapless per order
- A caller may supply the sequence it expects (optimistic concurrency); any
  other value raises ConflictError
- An event is returned and exposed to readers only after its commit
- Readers page through the log by global position; tailing readers wake on
  append and fall back to a bounded poll for writes from other processes
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional, Union
from uuid import UUID, uuid4

from broker.storage import Database
from shared.errors import ConflictError, ValidationError
from shared.models import EventKind, OrderEvent, utcnow

logger = logging.getLogger("event_store")

_EVENT_COLUMNS = "position, event_id, order_id, kind, sequence, payload, occurred_at"


def coerce_kind(kind: Union[EventKind, str]) -> EventKind:
    """Parse an event kind by value ("PaymentRequested") or by name ("PAYMENT_REQUESTED")."""
    if isinstance(kind, EventKind):
        return kind
    if isinstance(kind, str):
        try:
            return EventKind(kind)
        except ValueError:
            if kind in EventKind.__members__:
                return EventKind[kind]
    valid = ", ".join(k.value for k in EventKind)
    raise ValidationError(f"Unknown event kind {kind!r}; expected one of: {valid}")


def encode_payload(payload: Any) -> bytes:
    """
    Turn a producer payload into opaque bytes.

    Bytes pass through untouched, strings are UTF-8 encoded, None becomes an
    empty payload and anything else is serialized as JSON.
    """
    if payload is None:
        return b""
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload)
    if isinstance(payload, str):
        return payload.encode("utf-8")
    try:
        return json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Payload is not JSON serializable: {e}") from e


def _to_epoch(value: datetime) -> float:
    return value.timestamp()


def _from_epoch(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _row_to_event(row) -> OrderEvent:
    return OrderEvent(
        position=row["position"],
        event_id=UUID(row["event_id"]),
        order_id=row["order_id"],
        kind=EventKind(row["kind"]),
        sequence=row["sequence"],
        payload=bytes(row["payload"]),
        occurred_at=_from_epoch(row["occurred_at"]),
    )


class EventStore:
    """
    Append-only event log backed by the broker database.

    Example:
        store = EventStore(db)
        await store.open()

        event = await store.append("ord-001", EventKind.CREATED, {"amount": 42})
        assert event.sequence == 1

        async for event in store.read_from(0):
            print(event)
    """

    def __init__(self, db: Database, poll_interval: float = 1.0):
        """
        Args:
            db: Open (or to-be-opened) broker database
            poll_interval: Longest time a tailing reader sleeps before re-checking
        """
        self._db = db
        self._poll_interval = poll_interval
        self._head = 0
        self._appended = asyncio.Condition()

    async def open(self) -> None:
        """Open the database if needed and load the current head position."""
        await self._db.open()
        self._head = await self.head()

    # =========================================================================
    # Writes
    # =========================================================================

    async def append(
        self,
        order_id: str,
        kind: Union[EventKind, str],
        payload: Any = b"",
        sequence: Optional[int] = None,
    ) -> OrderEvent:
        """
        Append an event to an order's stream.

        Args:
            order_id: The order the event belongs to
            kind: Event kind (enum or wire name)
            payload: Opaque payload (bytes, str, or JSON-serializable value)
            sequence: Expected sequence number; must equal the next one if given

        Returns:
            The committed OrderEvent with its sequence, event id and position

        Raises:
            ValidationError: Malformed order id, kind, payload or sequence
            ConflictError: Supplied sequence does not match the next sequence
            StorageError: The durable write failed
        """
        if not isinstance(order_id, str) or not order_id.strip():
            raise ValidationError("order_id must be a non-empty string")
        event_kind = coerce_kind(kind)
        data = encode_payload(payload)
        if sequence is not None and (isinstance(sequence, bool) or not isinstance(sequence, int) or sequence < 1):
            raise ValidationError(f"sequence must be a positive integer, got {sequence!r}")

        event_id = uuid4()
        occurred_at = utcnow()

        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                "SELECT COALESCE(MAX(sequence), 0) FROM events WHERE order_id = ?",
                (order_id,),
            )
            row = await cursor.fetchone()
            next_sequence = row[0] + 1
            if sequence is not None and sequence != next_sequence:
                raise ConflictError(order_id, expected=next_sequence, actual=sequence)

            cursor = await conn.execute(
                """
                INSERT INTO events (event_id, order_id, kind, sequence, payload, occurred_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    str(event_id),
                    order_id,
                    event_kind.value,
                    next_sequence,
                    data,
                    _to_epoch(occurred_at),
                ),
            )
            position = cursor.lastrowid

        event = OrderEvent(
            event_id=event_id,
            order_id=order_id,
            kind=event_kind,
            payload=data,
            sequence=next_sequence,
            occurred_at=occurred_at,
            position=position,
        )

        async with self._appended:
            self._head = max(self._head, position)
            self._appended.notify_all()

        logger.info(f"Appended {event} at position {position}")
        return event

    async def compact(self, older_than: datetime, up_to_position: int) -> int:
        """
        Delete old events whose deliveries have all completed.

        An event is kept if it is newer than `older_than`, lies beyond
        `up_to_position` (not yet fanned out), is the latest event of its
        order (it anchors the next sequence number), or has any delivery
        record that is not Delivered.

        Returns:
            Number of events removed
        """
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                """
                DELETE FROM events
                WHERE occurred_at < ?
                  AND position <= ?
                  AND sequence < (
                      SELECT MAX(e2.sequence) FROM events e2
                      WHERE e2.order_id = events.order_id
                  )
                  AND NOT EXISTS (
                      SELECT 1 FROM deliveries d
                      WHERE d.event_id = events.event_id AND d.state != 'Delivered'
                  )
                """,
                (_to_epoch(older_than), up_to_position),
            )
            removed = cursor.rowcount or 0
            await conn.execute(
                """
                DELETE FROM deliveries
                WHERE NOT EXISTS (SELECT 1 FROM events e WHERE e.event_id = deliveries.event_id)
                """
            )
        if removed:
            logger.info(f"Compacted {removed} events older than {older_than.isoformat()}")
        return removed

    # =========================================================================
    # Reads
    # =========================================================================

    async def head(self) -> int:
        """Position of the latest committed event (0 for an empty log)."""
        row = await self._db.fetchone("SELECT COALESCE(MAX(position), 0) FROM events")
        return row[0] if row else 0

    async def get(self, event_id: Union[UUID, str]) -> Optional[OrderEvent]:
        row = await self._db.fetchone(
            f"SELECT {_EVENT_COLUMNS} FROM events WHERE event_id = ?",
            (str(event_id),),
        )
        return _row_to_event(row) if row else None

    async def read_order(self, order_id: str) -> list[OrderEvent]:
        """All retained events of one order, in sequence order."""
        rows = await self._db.fetchall(
            f"SELECT {_EVENT_COLUMNS} FROM events WHERE order_id = ? ORDER BY sequence",
            (order_id,),
        )
        return [_row_to_event(row) for row in rows]

    async def read_from(
        self,
        cursor: int = 0,
        *,
        follow: bool = False,
        limit: Optional[int] = None,
        batch_size: int = 100,
    ) -> AsyncIterator[OrderEvent]:
        """
        Iterate events with position > cursor in global append order.

        Args:
            cursor: Position of the last event already seen (0 = from the start)
            follow: Keep tailing the log instead of stopping at the head
            limit: Stop after this many events
            batch_size: Rows fetched per query

        Any event's `position` is a valid cursor to resume from.
        """
        position = cursor
        yielded = 0
        while True:
            want = batch_size if limit is None else min(batch_size, limit - yielded)
            if want <= 0:
                return
            rows = await self._db.fetchall(
                f"SELECT {_EVENT_COLUMNS} FROM events WHERE position > ? ORDER BY position LIMIT ?",
                (position, want),
            )
            for row in rows:
                event = _row_to_event(row)
                position = event.position
                yielded += 1
                yield event
            if len(rows) == want:
                continue
            if not follow:
                return
            await self._wait_for_append(position)

    async def _wait_for_append(self, position: int) -> None:
        async with self._appended:
            try:
                await asyncio.wait_for(
                    self._appended.wait_for(lambda: self._head > position),
                    timeout=self._poll_interval,
                )
            except asyncio.TimeoutError:
                pass
