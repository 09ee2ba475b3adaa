"""
Attendance recorder: turns access-control events into member check-ins.

  - entry  → opens a MemberAttendance row (check_in = event time)
  - exit   → closes the member's latest open row (check_out = event time)
  - denied → logged only

Recording is keyed by event id (source_event_id / checkout_event_id), so a
redelivered event changes nothing.
"""

from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.database import SessionLocal
from app.models.attendance import MemberAttendance
from app.models.person import Person
from app.services.event_parser import DENIED, ENTRY, EXIT, ParsedAccessEvent
from app.services.event_pipeline import ConsumerAck, EventConsumer
from app.utils.logger import get_logger

logger = get_logger(__name__)


def resolve_member_id(db: Session, branch_id: str, person_id: Optional[str]) -> Optional[str]:
    """Provider person id → member id. Devices may also report the person code, which is the member id."""
    if not person_id:
        return None
    person = (db.query(Person)
              .filter(Person.branch_id == branch_id,
                      or_(Person.person_id == person_id, Person.member_id == person_id))
              .first())
    return person.member_id if person else None


def record_entry(db: Session, event: ParsedAccessEvent, member_id: str) -> MemberAttendance:
    existing = (db.query(MemberAttendance)
                .filter(MemberAttendance.source_event_id == event.event_id)
                .first())
    if existing:
        return existing

    record = MemberAttendance(
        member_id=member_id,
        branch_id=event.branch_id,
        check_in=event.event_time,
        device_id=event.device_id,
        source_event_id=event.event_id,
        access_method="access_control",
        created_at=datetime.utcnow(),
    )
    db.add(record)
    db.commit()
    logger.info(f"Check-in: member={member_id} branch={event.branch_id} at {event.event_time}")
    return record


def record_exit(db: Session, event: ParsedAccessEvent, member_id: str) -> Optional[MemberAttendance]:
    already = (db.query(MemberAttendance)
               .filter(MemberAttendance.checkout_event_id == event.event_id)
               .first())
    if already:
        return already

    open_record = (
        db.query(MemberAttendance)
        .filter(
            MemberAttendance.member_id == member_id,
            MemberAttendance.branch_id == event.branch_id,
            MemberAttendance.check_out.is_(None),
            MemberAttendance.check_in <= event.event_time,
        )
        .order_by(MemberAttendance.check_in.desc())
        .first()
    )
    if open_record is None:
        logger.warning(f"Exit without open check-in: member={member_id} branch={event.branch_id}")
        return None

    open_record.check_out = event.event_time
    open_record.checkout_event_id = event.event_id
    db.commit()
    minutes = int((event.event_time - open_record.check_in).total_seconds() // 60)
    logger.info(f"Check-out: member={member_id} branch={event.branch_id} after {minutes} min")
    return open_record


class AttendanceRecorder(EventConsumer):
    name = "attendance"

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self.session_factory = session_factory

    async def on_event(self, event: ParsedAccessEvent) -> ConsumerAck:
        if event.event_type == DENIED:
            logger.info(f"Access denied: branch={event.branch_id} device={event.device_id} "
                        f"person={event.person_id} card={event.card_no}")
            return ConsumerAck.ACCEPTED

        db = self.session_factory()
        try:
            member_id = resolve_member_id(db, event.branch_id, event.person_id)
            if member_id is None:
                logger.warning(f"Event {event.event_id}: person {event.person_id} is not mapped "
                               f"to a member in branch {event.branch_id}, skipped")
                return ConsumerAck.ACCEPTED

            if event.event_type == ENTRY:
                record_entry(db, event, member_id)
            elif event.event_type == EXIT:
                record_exit(db, event, member_id)
            return ConsumerAck.ACCEPTED
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


attendance_recorder = AttendanceRecorder()
