"""
Event pipeline: the normalization/dedup stage shared by the polling and
webhook paths.

Each event is stored once (unique event_id) and handed to every subscribed
consumer until all of them accept it; only then is it marked processed.
Already processed events are never delivered again, so webhook + poll
double delivery and poll redelivery after a failed ack are both absorbed here.
Stored events left unprocessed are picked up again by replay_pending().

Consumers answer with a ConsumerAck so the pipeline can tell "delivered" from
"durably processed". Delivery is at-least-once: a consumer may see the same
event_id again after a RETRY or a crash, and must be idempotent on it.
"""

import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.models.access_event import AccessEvent
from app.services.event_parser import ParsedAccessEvent
from app.utils.logger import get_logger

logger = get_logger(__name__)


class ConsumerAck(str, Enum):
    ACCEPTED = "accepted"   # durably processed; do not deliver again
    RETRY = "retry"         # not processed; deliver again later


class EventConsumer(ABC):
    name = "consumer"

    @abstractmethod
    async def on_event(self, event: ParsedAccessEvent) -> ConsumerAck:
        ...


class _CallableConsumer(EventConsumer):
    """Adapts a plain function (sync or async) returning ConsumerAck / bool / None."""

    def __init__(self, fn: Callable[[ParsedAccessEvent], Any]):
        self.fn = fn
        self.name = getattr(fn, "__name__", repr(fn))

    async def on_event(self, event: ParsedAccessEvent) -> ConsumerAck:
        result = self.fn(event)
        if inspect.isawaitable(result):
            result = await result
        if result is None or result is True or result == ConsumerAck.ACCEPTED:
            return ConsumerAck.ACCEPTED
        return ConsumerAck.RETRY


ConsumerLike = Union[EventConsumer, Callable[[ParsedAccessEvent], Any]]


@dataclass
class IngestResult:
    received: int = 0
    stored: int = 0             # new rows written
    duplicates: int = 0         # already processed earlier, skipped
    accepted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    failed_offsets: set[int] = field(default_factory=set)


def contiguous_ack_offset(offsets: Iterable[Optional[int]], failed_offsets: set[int]) -> Optional[int]:
    """
    Highest offset that can be acknowledged: every offset at or below it was
    processed. Stops right before the first failed offset.
    """
    ack = None
    for offset in sorted(o for o in set(offsets) if o is not None):
        if offset in failed_offsets:
            break
        ack = offset
    return ack


def event_from_row(row: AccessEvent) -> ParsedAccessEvent:
    return ParsedAccessEvent(
        event_id=row.event_id,
        branch_id=row.branch_id,
        event_type=row.event_type,
        event_time=row.event_time,
        device_id=row.device_id,
        door_id=row.door_id,
        person_id=row.person_id,
        person_name=row.person_name,
        card_no=row.card_no,
        picture_url=row.picture_url,
        offset=row.offset,
        raw_payload=row.raw_payload,
    )


class EventPipeline:
    def __init__(self):
        self._consumers: list[EventConsumer] = []
        self._delivering: set[str] = set()

    def on_event(self, consumer: ConsumerLike) -> Callable[[], None]:
        """Subscribe a consumer. Returns a function that unsubscribes it."""
        wrapped = consumer if isinstance(consumer, EventConsumer) else _CallableConsumer(consumer)
        self._consumers.append(wrapped)
        logger.info(f"Event consumer subscribed: {wrapped.name}")

        def unsubscribe():
            if wrapped in self._consumers:
                self._consumers.remove(wrapped)
                logger.info(f"Event consumer unsubscribed: {wrapped.name}")

        return unsubscribe

    @property
    def consumers(self) -> list[EventConsumer]:
        return list(self._consumers)

    async def ingest(self, db: Session, events: list[ParsedAccessEvent], source: str) -> IngestResult:
        result = IngestResult(received=len(events))
        ordered = sorted(events, key=lambda e: (e.offset is None, e.offset or 0))

        for event in ordered:
            row, created = self._store(db, event, source)
            if created:
                result.stored += 1

            if row.processed:
                result.duplicates += 1
                result.accepted.append(event.event_id)
                continue
            await self._process(db, row, event, result)

        if result.failed:
            logger.warning(f"Ingest ({source}) for branch {events[0].branch_id}: "
                           f"{len(result.accepted)} processed, {len(result.failed)} pending retry")
        return result

    def has_pending(self, db: Session, branch_id: str) -> bool:
        return (db.query(AccessEvent.id)
                .filter(AccessEvent.branch_id == branch_id, AccessEvent.processed.is_(False))
                .first()) is not None

    async def replay_pending(self, db: Session, branch_id: str, limit: Optional[int] = None) -> IngestResult:
        """
        Redeliver stored events of a branch that are still unprocessed, oldest
        first. Covers events whose consumers asked for a retry on an ingress
        path that will not bring them again (webhook pushes).
        """
        rows = (db.query(AccessEvent)
                .filter(AccessEvent.branch_id == branch_id, AccessEvent.processed.is_(False))
                .order_by(AccessEvent.event_time, AccessEvent.id)
                .limit(limit or settings.PENDING_REPLAY_BATCH)
                .all())
        result = IngestResult(received=len(rows))
        for row in rows:
            await self._process(db, row, event_from_row(row), result)

        if rows:
            logger.info(f"Replayed {len(rows)} pending events for branch {branch_id}: "
                        f"{len(result.accepted)} processed, {len(result.failed)} still pending")
        return result

    async def _process(self, db: Session, row: AccessEvent, event: ParsedAccessEvent, result: IngestResult):
        if event.event_id in self._delivering:
            # Being delivered by the other ingress path right now
            logger.debug(f"Event {event.event_id} already in delivery, deferring")
            self._mark_failed(result, event)
            return

        self._delivering.add(event.event_id)
        try:
            ack = await self._deliver(event)
        finally:
            self._delivering.discard(event.event_id)

        if ack == ConsumerAck.ACCEPTED:
            row.processed = True
            row.processed_at = datetime.utcnow()
            db.commit()
            result.accepted.append(event.event_id)
        else:
            self._mark_failed(result, event)

    @staticmethod
    def _mark_failed(result: IngestResult, event: ParsedAccessEvent):
        result.failed.append(event.event_id)
        if event.offset is not None:
            result.failed_offsets.add(event.offset)

    @staticmethod
    def _store(db: Session, event: ParsedAccessEvent, source: str) -> tuple[AccessEvent, bool]:
        row = db.query(AccessEvent).filter(AccessEvent.event_id == event.event_id).first()
        if row is not None:
            return row, False

        row = AccessEvent(
            event_id=event.event_id,
            branch_id=event.branch_id,
            event_type=event.event_type,
            event_time=event.event_time,
            device_id=event.device_id,
            door_id=event.door_id,
            person_id=event.person_id,
            person_name=event.person_name,
            card_no=event.card_no,
            picture_url=event.picture_url,
            source=source,
            offset=event.offset,
            processed=False,
            raw_payload=event.raw_payload,
            created_at=datetime.utcnow(),
        )
        db.add(row)
        try:
            db.commit()
        except IntegrityError:
            # Stored concurrently through the other path
            db.rollback()
            return db.query(AccessEvent).filter(AccessEvent.event_id == event.event_id).one(), False
        return row, True

    async def _deliver(self, event: ParsedAccessEvent) -> ConsumerAck:
        for consumer in list(self._consumers):
            try:
                ack = await consumer.on_event(event)
            except Exception as e:
                logger.error(
                    f"Consumer {consumer.name} failed on event {event.event_id} "
                    f"(branch={event.branch_id}, offset={event.offset}): {e}",
                    exc_info=True,
                )
                return ConsumerAck.RETRY
            if ack != ConsumerAck.ACCEPTED:
                logger.warning(f"Consumer {consumer.name} asked to retry event {event.event_id} "
                               f"(branch={event.branch_id}, offset={event.offset})")
                return ConsumerAck.RETRY
        return ConsumerAck.ACCEPTED


event_pipeline = EventPipeline()
