from pydantic import BaseModel
from datetime import datetime
from typing import Optional


class AccessEventOut(BaseModel):
    id: int
    event_id: str
    branch_id: str
    event_type: str
    event_time: datetime
    device_id: Optional[str]
    door_id: Optional[str]
    person_id: Optional[str]
    person_name: Optional[str]
    card_no: Optional[str]
    picture_url: Optional[str]
    source: str
    offset: Optional[int]
    processed: bool
    processed_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class PollerStatusOut(BaseModel):
    branch_id: str
    state: str
    running: bool
    last_offset: Optional[int]
    last_error: Optional[str]
    last_poll_at: Optional[datetime]
