"""
Delivery-state table: one row per (event, handler) pair.

Only the dispatcher writes this table. Every state change is a single guarded
UPDATE, so a transition either happens completely or not at all and a crash
leaves each record in its last committed state.

Head-of-line ordering lives in the claim query: a record is claimable only
when no lower-sequence record of the same (order_id, handler_id) lane is
still Pending or InFlight.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Iterable, Optional, Union
from uuid import UUID

from broker.storage import Database
from shared.models import DeliveryRecord, DeliveryState, OrderEvent

logger = logging.getLogger("deliveries")

DISPATCH_CURSOR = "dispatcher"

_COLUMNS = (
    "event_id, handler_id, order_id, sequence, state, attempts, next_attempt_at, "
    "last_error, idempotency_key, updated_at"
)

_HEAD_OF_LINE = """
    NOT EXISTS (
        SELECT 1 FROM deliveries p
        WHERE p.order_id = d.order_id
          AND p.handler_id = d.handler_id
          AND p.sequence < d.sequence
          AND p.state IN ('Pending', 'InFlight')
    )
"""


def _ts(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _row_to_record(row) -> DeliveryRecord:
    return DeliveryRecord(
        event_id=UUID(row["event_id"]),
        handler_id=row["handler_id"],
        order_id=row["order_id"],
        sequence=row["sequence"],
        state=row["state"],
        attempts=row["attempts"],
        next_attempt_at=_ts(row["next_attempt_at"]),
        last_error=row["last_error"],
        idempotency_key=row["idempotency_key"],
        updated_at=_ts(row["updated_at"]),
    )


class DeliveryTable:
    """Persistence for DeliveryRecords and the dispatcher's tail cursor."""

    def __init__(self, db: Database):
        self._db = db

    # =========================================================================
    # Fan-out
    # =========================================================================

    async def get_cursor(self, name: str = DISPATCH_CURSOR) -> int:
        row = await self._db.fetchone("SELECT position FROM cursors WHERE name = ?", (name,))
        return row["position"] if row else 0

    async def fan_out(
        self,
        event: OrderEvent,
        handler_ids: Iterable[str],
        now: Optional[float] = None,
        cursor_name: Optional[str] = DISPATCH_CURSOR,
    ) -> int:
        """
        Create Pending records for an event and advance the tail cursor.

        Both happen in one transaction. Existing records are left untouched,
        so fanning out the same event twice is harmless.

        Returns:
            Number of records created
        """
        now = time.time() if now is None else now
        created = 0
        async with self._db.transaction() as conn:
            for handler_id in sorted(set(handler_ids)):
                cursor = await conn.execute(
                    """
                    INSERT OR IGNORE INTO deliveries
                        (event_id, handler_id, order_id, sequence, state, attempts,
                         next_attempt_at, updated_at)
                    VALUES (?, ?, ?, ?, 'Pending', 0, ?, ?)
                    """,
                    (str(event.event_id), handler_id, event.order_id, event.sequence, now, now),
                )
                created += cursor.rowcount or 0
            if cursor_name is not None:
                await conn.execute(
                    """
                    INSERT INTO cursors (name, position) VALUES (?, ?)
                    ON CONFLICT(name) DO UPDATE SET position = MAX(position, excluded.position)
                    """,
                    (cursor_name, event.position),
                )
        return created

    # =========================================================================
    # Claiming and transitions
    # =========================================================================

    async def claim_ready(self, now: float, limit: int) -> list[DeliveryRecord]:
        """
        Move up to `limit` due, unblocked Pending records to InFlight.

        Each claim counts as an attempt. At most one record per lane can be
        returned because the head-of-line check sees every lower sequence.
        """
        if limit <= 0:
            return []
        claimed: list[DeliveryRecord] = []
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                f"""
                SELECT {_COLUMNS} FROM deliveries d
                WHERE d.state = 'Pending' AND d.next_attempt_at <= ?
                  AND {_HEAD_OF_LINE}
                ORDER BY d.next_attempt_at, d.sequence
                LIMIT ?
                """,
                (now, limit),
            )
            rows = await cursor.fetchall()
            for row in rows:
                await conn.execute(
                    """
                    UPDATE deliveries
                    SET state = 'InFlight', attempts = attempts + 1,
                        in_flight_since = ?, updated_at = ?
                    WHERE event_id = ? AND handler_id = ? AND state = 'Pending'
                    """,
                    (now, now, row["event_id"], row["handler_id"]),
                )
                record = _row_to_record(row)
                claimed.append(
                    record.model_copy(
                        update={
                            "state": DeliveryState.IN_FLIGHT,
                            "attempts": record.attempts + 1,
                            "updated_at": _ts(now),
                        }
                    )
                )
        return claimed

    async def next_due(self) -> Optional[float]:
        """Earliest next_attempt_at among claimable Pending records, as epoch seconds."""
        row = await self._db.fetchone(
            f"SELECT MIN(d.next_attempt_at) FROM deliveries d "
            f"WHERE d.state = 'Pending' AND {_HEAD_OF_LINE}"
        )
        return row[0] if row and row[0] is not None else None

    async def _transition(self, sql: str, params: tuple) -> bool:
        async with self._db.transaction() as conn:
            cursor = await conn.execute(sql, params)
            return (cursor.rowcount or 0) > 0

    async def mark_delivered(
        self,
        record: DeliveryRecord,
        idempotency_key: Optional[str] = None,
        now: Optional[float] = None,
    ) -> bool:
        # Pending is accepted too: the watchdog may have requeued a slow attempt.
        now = time.time() if now is None else now
        return await self._transition(
            """
            UPDATE deliveries
            SET state = 'Delivered', idempotency_key = ?, in_flight_since = NULL, updated_at = ?
            WHERE event_id = ? AND handler_id = ? AND state IN ('InFlight', 'Pending')
            """,
            (idempotency_key, now, str(record.event_id), record.handler_id),
        )

    async def mark_retry(
        self,
        record: DeliveryRecord,
        next_attempt_at: float,
        error: str,
        now: Optional[float] = None,
    ) -> bool:
        now = time.time() if now is None else now
        return await self._transition(
            """
            UPDATE deliveries
            SET state = 'Pending', next_attempt_at = ?, last_error = ?,
                in_flight_since = NULL, updated_at = ?
            WHERE event_id = ? AND handler_id = ? AND state = 'InFlight'
            """,
            (next_attempt_at, error, now, str(record.event_id), record.handler_id),
        )

    async def mark_dead_letter(
        self,
        record: DeliveryRecord,
        error: str,
        now: Optional[float] = None,
    ) -> bool:
        now = time.time() if now is None else now
        return await self._transition(
            """
            UPDATE deliveries
            SET state = 'DeadLettered', last_error = ?, in_flight_since = NULL, updated_at = ?
            WHERE event_id = ? AND handler_id = ? AND state IN ('InFlight', 'Pending')
            """,
            (error, now, str(record.event_id), record.handler_id),
        )

    async def requeue(self, records: Iterable[DeliveryRecord], now: Optional[float] = None) -> int:
        """Return InFlight records to Pending, due immediately. Attempts are kept."""
        now = time.time() if now is None else now
        count = 0
        async with self._db.transaction() as conn:
            for record in records:
                cursor = await conn.execute(
                    """
                    UPDATE deliveries
                    SET state = 'Pending', next_attempt_at = ?, in_flight_since = NULL, updated_at = ?
                    WHERE event_id = ? AND handler_id = ? AND state = 'InFlight'
                    """,
                    (now, now, str(record.event_id), record.handler_id),
                )
                count += cursor.rowcount or 0
        return count

    async def reset_in_flight(self, now: Optional[float] = None) -> int:
        """Startup recovery: every InFlight record goes back to Pending."""
        now = time.time() if now is None else now
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE deliveries
                SET state = 'Pending', next_attempt_at = ?, in_flight_since = NULL, updated_at = ?
                WHERE state = 'InFlight'
                """,
                (now, now),
            )
            return cursor.rowcount or 0

    async def recover_stale(self, stale_threshold: float, now: Optional[float] = None) -> int:
        """Return records InFlight for longer than `stale_threshold` seconds to Pending."""
        now = time.time() if now is None else now
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE deliveries
                SET state = 'Pending', next_attempt_at = ?, in_flight_since = NULL, updated_at = ?,
                    last_error = 'stale: attempt abandoned'
                WHERE state = 'InFlight' AND in_flight_since < ?
                """,
                (now, now, now - stale_threshold),
            )
            return cursor.rowcount or 0

    async def dead_letter_pending(self, handler_id: str, reason: str, now: Optional[float] = None) -> int:
        """Dead-letter every Pending record of a handler (used when it unregisters)."""
        now = time.time() if now is None else now
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE deliveries
                SET state = 'DeadLettered', last_error = ?, updated_at = ?
                WHERE handler_id = ? AND state = 'Pending'
                """,
                (reason, now, handler_id),
            )
            return cursor.rowcount or 0

    async def retry_dead_letters(
        self,
        event_id: Union[UUID, str],
        handler_id: Optional[str] = None,
        now: Optional[float] = None,
    ) -> list[DeliveryRecord]:
        """
        Reset DeadLettered records of an event to Pending with attempts = 0.

        Args:
            event_id: Event whose dead letters to retry
            handler_id: Restrict to one handler; None retries all of them

        Returns:
            The reset records
        """
        now = time.time() if now is None else now
        params: list = [now, now, str(event_id)]
        handler_clause = ""
        if handler_id is not None:
            handler_clause = " AND handler_id = ?"
            params.append(handler_id)
        async with self._db.transaction() as conn:
            cursor = await conn.execute(
                f"""
                SELECT handler_id FROM deliveries
                WHERE state = 'DeadLettered' AND event_id = ?{handler_clause}
                """,
                params[2:],
            )
            handler_ids = [row["handler_id"] for row in await cursor.fetchall()]
            if not handler_ids:
                return []
            await conn.execute(
                f"""
                UPDATE deliveries
                SET state = 'Pending', attempts = 0, next_attempt_at = ?, updated_at = ?
                WHERE state = 'DeadLettered' AND event_id = ?{handler_clause}
                """,
                params,
            )
            placeholders = ",".join("?" * len(handler_ids))
            cursor = await conn.execute(
                f"SELECT {_COLUMNS} FROM deliveries "
                f"WHERE event_id = ? AND handler_id IN ({placeholders}) ORDER BY handler_id",
                [str(event_id), *handler_ids],
            )
            return [_row_to_record(row) for row in await cursor.fetchall()]

    # =========================================================================
    # Queries
    # =========================================================================

    async def get(self, event_id: Union[UUID, str], handler_id: str) -> Optional[DeliveryRecord]:
        row = await self._db.fetchone(
            f"SELECT {_COLUMNS} FROM deliveries WHERE event_id = ? AND handler_id = ?",
            (str(event_id), handler_id),
        )
        return _row_to_record(row) if row else None

    async def for_event(self, event_id: Union[UUID, str]) -> list[DeliveryRecord]:
        rows = await self._db.fetchall(
            f"SELECT {_COLUMNS} FROM deliveries WHERE event_id = ? ORDER BY handler_id",
            (str(event_id),),
        )
        return [_row_to_record(row) for row in rows]

    async def dead_letters(self, limit: int = 100, offset: int = 0) -> list[DeliveryRecord]:
        rows = await self._db.fetchall(
            f"SELECT {_COLUMNS} FROM deliveries WHERE state = 'DeadLettered' "
            f"ORDER BY updated_at, event_id, handler_id LIMIT ? OFFSET ?",
            (limit, offset),
        )
        return [_row_to_record(row) for row in rows]

    async def counts(self) -> dict[DeliveryState, int]:
        """Number of records per state (every state present, zero if none)."""
        rows = await self._db.fetchall("SELECT state, COUNT(*) AS n FROM deliveries GROUP BY state")
        counts = {state: 0 for state in DeliveryState}
        for row in rows:
            counts[DeliveryState(row["state"])] = row["n"]
        return counts
