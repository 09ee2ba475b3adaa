"""
Last acknowledged message-queue offset per branch.
Written only after the provider accepted the acknowledgement, so a restart
resumes exactly where the previous process stopped.
"""

from sqlalchemy import Column, Integer, BigInteger, String, DateTime
from app.database import Base


class EventOffset(Base):
    __tablename__ = "event_offsets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    branch_id = Column(String(64), nullable=False, unique=True, index=True)
    subscription_id = Column(String(255))
    last_offset = Column(BigInteger, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False)

    def __repr__(self):
        return f"<EventOffset branch={self.branch_id} offset={self.last_offset}>"
