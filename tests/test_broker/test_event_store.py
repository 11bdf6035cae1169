"""
Tests for the event store.

These tests verify per-order sequencing, optimistic concurrency, payload
handling, ordered reads and compaction.
"""

import asyncio
from datetime import timedelta

import pytest

from broker.event_store import EventStore, coerce_kind, encode_payload
from broker.storage import Database
from shared.errors import ConflictError, StorageError, ValidationError
from shared.models import EventKind, utcnow


class TestHelpers:
    """Tests for kind coercion and payload encoding."""

    def test_coerce_kind_accepts_wire_name_and_member_name(self):
        assert coerce_kind("PaymentSucceeded") is EventKind.PAYMENT_SUCCEEDED
        assert coerce_kind("PAYMENT_SUCCEEDED") is EventKind.PAYMENT_SUCCEEDED
        assert coerce_kind(EventKind.CREATED) is EventKind.CREATED

    def test_coerce_kind_rejects_unknown(self):
        with pytest.raises(ValidationError):
            coerce_kind("Shipped")

    def test_encode_payload(self):
        assert encode_payload(b"\x00\x01") == b"\x00\x01"
        assert encode_payload("hi") == b"hi"
        assert encode_payload(None) == b""
        assert encode_payload({"b": 1, "a": 2}) == b'{"a":2,"b":1}'

    def test_encode_payload_rejects_unserializable(self):
        with pytest.raises(ValidationError):
            encode_payload({"when": object()})


class TestAppend:
    """Tests for EventStore.append."""

    @pytest.mark.asyncio
    async def test_sequences_start_at_one_per_order(self, store: EventStore):
        a1 = await store.append("ord-A", EventKind.CREATED, {"amount": 1})
        b1 = await store.append("ord-B", EventKind.CREATED, {"amount": 2})
        a2 = await store.append("ord-A", EventKind.PAYMENT_REQUESTED)

        assert (a1.sequence, a2.sequence, b1.sequence) == (1, 2, 1)
        assert a1.position < b1.position < a2.position
        assert a1.event_id != a2.event_id

    @pytest.mark.asyncio
    async def test_payload_is_stored_as_bytes(self, store: EventStore):
        event = await store.append("ord-A", EventKind.CREATED, {"amount": 10})

        stored = await store.get(event.event_id)
        assert stored.payload == b'{"amount":10}'
        assert stored.payload_json() == {"amount": 10}

    @pytest.mark.asyncio
    async def test_expected_sequence_accepted(self, store: EventStore):
        await store.append("ord-A", EventKind.CREATED, sequence=1)
        event = await store.append("ord-A", EventKind.PAYMENT_REQUESTED, sequence=2)
        assert event.sequence == 2

    @pytest.mark.asyncio
    async def test_sequence_conflict(self, store: EventStore):
        await store.append("ord-A", EventKind.CREATED)

        with pytest.raises(ConflictError) as exc_info:
            await store.append("ord-A", EventKind.PAYMENT_REQUESTED, sequence=1)

        assert exc_info.value.expected == 2
        assert exc_info.value.actual == 1
        # The failed append leaves nothing behind.
        assert len(await store.read_order("ord-A")) == 1

    @pytest.mark.asyncio
    async def test_sequence_gap_is_a_conflict(self, store: EventStore):
        with pytest.raises(ConflictError):
            await store.append("ord-A", EventKind.CREATED, sequence=3)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("order_id", ["", "   ", None])
    async def test_rejects_bad_order_id(self, store: EventStore, order_id):
        with pytest.raises(ValidationError):
            await store.append(order_id, EventKind.CREATED)

    @pytest.mark.asyncio
    async def test_rejects_unknown_kind(self, store: EventStore):
        with pytest.raises(ValidationError):
            await store.append("ord-A", "Refunded")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("sequence", [0, -1, True, "2"])
    async def test_rejects_bad_sequence(self, store: EventStore, sequence):
        with pytest.raises(ValidationError):
            await store.append("ord-A", EventKind.CREATED, sequence=sequence)

    @pytest.mark.asyncio
    async def test_concurrent_appends_get_distinct_sequences(self, store: EventStore):
        events = await asyncio.gather(
            *(store.append("ord-A", EventKind.PAYMENT_REQUESTED) for _ in range(20))
        )
        assert sorted(e.sequence for e in events) == list(range(1, 21))

    @pytest.mark.asyncio
    async def test_append_on_closed_database_is_storage_error(self, db_path):
        store = EventStore(Database(db_path))
        with pytest.raises(StorageError):
            await store.append("ord-A", EventKind.CREATED)


class TestReads:
    """Tests for ordered reads and tailing."""

    @pytest.mark.asyncio
    async def test_read_order_in_sequence_order(self, store: EventStore):
        await store.append("ord-A", EventKind.CREATED)
        await store.append("ord-B", EventKind.CREATED)
        await store.append("ord-A", EventKind.PAYMENT_SUCCEEDED)

        events = await store.read_order("ord-A")
        assert [e.kind for e in events] == [EventKind.CREATED, EventKind.PAYMENT_SUCCEEDED]
        assert await store.read_order("ord-missing") == []

    @pytest.mark.asyncio
    async def test_read_from_cursor(self, store: EventStore):
        appended = [await store.append(f"ord-{i}", EventKind.CREATED) for i in range(5)]

        after_second = [e async for e in store.read_from(appended[1].position)]
        assert [e.event_id for e in after_second] == [e.event_id for e in appended[2:]]

        limited = [e async for e in store.read_from(0, limit=2, batch_size=1)]
        assert [e.event_id for e in limited] == [e.event_id for e in appended[:2]]

    @pytest.mark.asyncio
    async def test_head(self, store: EventStore):
        assert await store.head() == 0
        event = await store.append("ord-A", EventKind.CREATED)
        assert await store.head() == event.position

    @pytest.mark.asyncio
    async def test_follow_wakes_on_append(self, store: EventStore):
        received = []

        async def tail():
            async for event in store.read_from(0, follow=True):
                received.append(event)
                if len(received) == 2:
                    return

        task = asyncio.create_task(tail())
        await asyncio.sleep(0.01)
        await store.append("ord-A", EventKind.CREATED)
        await store.append("ord-A", EventKind.PAYMENT_REQUESTED)
        await asyncio.wait_for(task, timeout=2.0)

        assert [e.sequence for e in received] == [1, 2]

    @pytest.mark.asyncio
    async def test_get_unknown_event(self, store: EventStore):
        assert await store.get("00000000-0000-0000-0000-000000000000") is None


class TestCompaction:
    """Tests for EventStore.compact."""

    @pytest.mark.asyncio
    async def test_keeps_latest_event_per_order(self, store: EventStore):
        first = await store.append("ord-A", EventKind.CREATED)
        last = await store.append("ord-A", EventKind.PAYMENT_SUCCEEDED)

        removed = await store.compact(utcnow() + timedelta(seconds=1), up_to_position=last.position)

        assert removed == 1
        assert await store.get(first.event_id) is None
        assert [e.event_id for e in await store.read_order("ord-A")] == [last.event_id]
        # Sequencing continues after compaction.
        nxt = await store.append("ord-A", EventKind.NOTIFICATION_SENT)
        assert nxt.sequence == 3

    @pytest.mark.asyncio
    async def test_keeps_recent_and_unfanned_events(self, store: EventStore):
        await store.append("ord-A", EventKind.CREATED)
        last = await store.append("ord-A", EventKind.PAYMENT_SUCCEEDED)

        assert await store.compact(utcnow() - timedelta(hours=1), up_to_position=last.position) == 0
        assert await store.compact(utcnow() + timedelta(seconds=1), up_to_position=0) == 0

    @pytest.mark.asyncio
    async def test_keeps_events_with_undelivered_records(self, db: Database, store: EventStore):
        first = await store.append("ord-A", EventKind.CREATED)
        last = await store.append("ord-A", EventKind.PAYMENT_SUCCEEDED)
        async with db.transaction() as conn:
            await conn.execute(
                "INSERT INTO deliveries (event_id, handler_id, order_id, sequence, state, "
                "next_attempt_at, updated_at) VALUES (?, 'h', 'ord-A', 1, 'DeadLettered', 0, 0)",
                (str(first.event_id),),
            )

        removed = await store.compact(utcnow() + timedelta(seconds=1), up_to_position=last.position)

        assert removed == 0
        assert await store.get(first.event_id) is not None
