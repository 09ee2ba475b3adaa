"""
Per-branch provider API credentials.
One row per branch. app_secret is write-only from the API's point of view and
never rendered by __repr__ or logged.
"""

from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text
from app.database import Base


class ProviderCredential(Base):
    __tablename__ = "provider_credentials"

    id = Column(Integer, primary_key=True, autoincrement=True)
    branch_id = Column(String(64), nullable=False, unique=True, index=True)
    api_base_url = Column(String(255), nullable=False)
    app_key = Column(String(255), nullable=False)
    app_secret = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    site_id = Column(String(100))
    site_name = Column(String(255))
    subscription_id = Column(String(255))          # Message-queue subscription
    last_sync = Column(DateTime)
    last_sync_status = Column(String(20))          # success | failed
    last_sync_error = Column(Text)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    def __repr__(self):
        return f"<ProviderCredential branch={self.branch_id} key={self.app_key} active={self.is_active}>"
