"""
Member attendance produced from access-control entry/exit events.
source_event_id makes recording idempotent under at-least-once delivery.
"""

from sqlalchemy import Column, Integer, String, DateTime
from app.database import Base


class MemberAttendance(Base):
    __tablename__ = "member_attendance"

    id = Column(Integer, primary_key=True, autoincrement=True)
    member_id = Column(String(64), nullable=False, index=True)
    branch_id = Column(String(64), nullable=False, index=True)
    check_in = Column(DateTime, nullable=False)
    check_out = Column(DateTime)
    device_id = Column(String(100))
    source_event_id = Column(String(128), unique=True, index=True)
    checkout_event_id = Column(String(128), unique=True)
    access_method = Column(String(30), default="access_control", nullable=False)
    created_at = Column(DateTime, nullable=False)

    def __repr__(self):
        return f"<MemberAttendance member={self.member_id} in={self.check_in} out={self.check_out}>"
