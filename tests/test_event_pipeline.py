# tests/test_event_pipeline.py
"""Unit tests for event storage, dedup and consumer acknowledgement."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import logging
import pytest
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock
from app.models.access_event import AccessEvent
from app.services.event_parser import ParsedAccessEvent
from app.services.event_pipeline import ConsumerAck, EventPipeline, contiguous_ack_offset


def make_event(offset, event_id=None, event_type="entry"):
    return ParsedAccessEvent(
        event_id=event_id or f"E-{offset}",
        branch_id="BR-001",
        event_type=event_type,
        event_time=datetime(2026, 2, 20, 10, 0),
        device_id="SN-1",
        person_id="P-1",
        offset=offset,
    )


class TestIngest:
    @pytest.mark.asyncio
    async def test_new_events_stored_and_processed(self, db):
        pipeline = EventPipeline()
        consumer = MagicMock(return_value=ConsumerAck.ACCEPTED)
        pipeline.on_event(consumer)

        result = await pipeline.ingest(db, [make_event(2), make_event(1)], source="poll")

        assert result.stored == 2
        assert result.accepted == ["E-1", "E-2"]
        assert [c.args[0].event_id for c in consumer.call_args_list] == ["E-1", "E-2"]
        rows = db.query(AccessEvent).order_by(AccessEvent.offset).all()
        assert [(r.event_id, r.source, r.processed) for r in rows] == [("E-1", "poll", True), ("E-2", "poll", True)]
        assert rows[0].processed_at is not None

    @pytest.mark.asyncio
    async def test_processed_event_never_redelivered(self, db):
        pipeline = EventPipeline()
        consumer = AsyncMock(return_value=ConsumerAck.ACCEPTED)
        pipeline.on_event(consumer)

        await pipeline.ingest(db, [make_event(1)], source="webhook")
        result = await pipeline.ingest(db, [make_event(1)], source="poll")

        assert result.duplicates == 1
        assert result.accepted == ["E-1"]
        consumer.assert_awaited_once()
        row = db.query(AccessEvent).one()
        assert row.source == "webhook"

    @pytest.mark.asyncio
    async def test_retry_leaves_event_unprocessed(self, db):
        pipeline = EventPipeline()
        answers = {"E-1": ConsumerAck.ACCEPTED, "E-2": ConsumerAck.RETRY}
        pipeline.on_event(lambda event: answers[event.event_id])

        result = await pipeline.ingest(db, [make_event(1), make_event(2)], source="poll")

        assert result.failed == ["E-2"]
        assert result.failed_offsets == {2}
        processed = {r.event_id: r.processed for r in db.query(AccessEvent).all()}
        assert processed == {"E-1": True, "E-2": False}

        answers["E-2"] = ConsumerAck.ACCEPTED
        retry = await pipeline.ingest(db, [make_event(2)], source="poll")
        assert retry.accepted == ["E-2"] and retry.stored == 0

    @pytest.mark.asyncio
    async def test_consumer_exception_logged_with_context(self, db, caplog):
        pipeline = EventPipeline()

        def broken(event):
            raise RuntimeError("database down")

        pipeline.on_event(broken)
        with caplog.at_level(logging.ERROR):
            result = await pipeline.ingest(db, [make_event(42)], source="poll")

        assert result.failed == ["E-42"]
        assert "E-42" in caplog.text
        assert "offset=42" in caplog.text
        assert "BR-001" in caplog.text

    @pytest.mark.asyncio
    async def test_all_consumers_must_accept(self, db):
        pipeline = EventPipeline()
        first = MagicMock(return_value=True)
        second = AsyncMock(return_value=False)
        pipeline.on_event(first)
        pipeline.on_event(second)

        result = await pipeline.ingest(db, [make_event(1)], source="poll")

        assert result.failed == ["E-1"]
        assert db.query(AccessEvent).one().processed is False

    @pytest.mark.asyncio
    async def test_unsubscribe(self, db):
        pipeline = EventPipeline()
        consumer = MagicMock(return_value=None)
        unsubscribe = pipeline.on_event(consumer)
        unsubscribe()

        result = await pipeline.ingest(db, [make_event(1)], source="poll")

        consumer.assert_not_called()
        assert result.accepted == ["E-1"]
        assert pipeline.consumers == []


class TestReplayPending:
    @pytest.mark.asyncio
    async def test_unprocessed_event_delivered_again(self, db):
        pipeline = EventPipeline()
        answers = {"E-1": ConsumerAck.RETRY}
        consumer = MagicMock(side_effect=lambda event: answers[event.event_id])
        pipeline.on_event(consumer)
        await pipeline.ingest(db, [make_event(1)], source="webhook")
        assert pipeline.has_pending(db, "BR-001")

        answers["E-1"] = ConsumerAck.ACCEPTED
        result = await pipeline.replay_pending(db, "BR-001")

        assert result.accepted == ["E-1"]
        assert not pipeline.has_pending(db, "BR-001")
        assert consumer.call_count == 2
        replayed = consumer.call_args.args[0]
        assert (replayed.event_id, replayed.event_type, replayed.person_id) == ("E-1", "entry", "P-1")

        again = await pipeline.replay_pending(db, "BR-001")
        assert again.received == 0
        assert consumer.call_count == 2

    @pytest.mark.asyncio
    async def test_replay_scoped_to_branch(self, db):
        pipeline = EventPipeline()
        pipeline.on_event(lambda event: False)
        await pipeline.ingest(db, [make_event(1)], source="webhook")

        result = await pipeline.replay_pending(db, "BR-OTHER")

        assert result.received == 0
        assert pipeline.has_pending(db, "BR-001")


class TestContiguousAckOffset:
    def test_all_accepted(self):
        assert contiguous_ack_offset([101, 102, 103], set()) == 103

    def test_stops_before_first_failure(self):
        assert contiguous_ack_offset([103, 101, 102], {102}) == 101

    def test_first_failed_means_nothing_to_ack(self):
        assert contiguous_ack_offset([101, 102], {101}) is None

    def test_messages_without_offset_ignored(self):
        assert contiguous_ack_offset([None, 5, None], set()) == 5
