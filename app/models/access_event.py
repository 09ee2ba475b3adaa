"""
Normalized access events received from the provider (poll or webhook).
event_id is unique: the same event arriving on both paths is stored once.
Rows are immutable apart from the processed/processed_at transition.
"""

from sqlalchemy import Column, Integer, BigInteger, String, DateTime, Boolean, Text
from app.database import Base


class AccessEvent(Base):
    __tablename__ = "access_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(128), nullable=False, unique=True, index=True)
    branch_id = Column(String(64), nullable=False, index=True)
    event_type = Column(String(20), nullable=False, index=True)    # entry | exit | denied
    event_time = Column(DateTime, nullable=False)
    device_id = Column(String(100))
    door_id = Column(String(50))
    person_id = Column(String(100), index=True)
    person_name = Column(String(255))
    card_no = Column(String(100))
    picture_url = Column(Text)
    source = Column(String(20), nullable=False)                    # poll | webhook
    offset = Column(BigInteger)
    processed = Column(Boolean, default=False, nullable=False)
    processed_at = Column(DateTime)
    raw_payload = Column(Text)
    created_at = Column(DateTime, nullable=False, index=True)

    def __repr__(self):
        return f"<AccessEvent {self.event_id} type={self.event_type} processed={self.processed}>"
