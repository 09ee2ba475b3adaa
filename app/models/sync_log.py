"""
Integration activity log shown on the settings screens: device syncs,
poll failures, subscription changes.
"""

from sqlalchemy import Column, Integer, String, DateTime, Text
from app.database import Base


class SyncLog(Base):
    __tablename__ = "sync_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    branch_id = Column(String(64), nullable=False, index=True)
    entity_type = Column(String(30), nullable=False)      # device | event | subscription
    status = Column(String(20), nullable=False)           # success | error
    message = Column(String(255), nullable=False)
    details = Column(Text)
    created_at = Column(DateTime, nullable=False, index=True)

    def __repr__(self):
        return f"<SyncLog {self.id} {self.entity_type} {self.status}>"
