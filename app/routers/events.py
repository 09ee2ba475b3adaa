# app/routers/events.py
"""
Normalized access event log.
GET /events - lists access events with optional filters.
"""

from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from app.database import get_db
from app.models.access_event import AccessEvent
from app.schemas.access_event import AccessEventOut

router = APIRouter()


@router.get("/events", response_model=list[AccessEventOut], summary="List access events")
def list_events(branch_id: Optional[str] = None, event_type: Optional[str] = None,
                processed: Optional[bool] = None, since: Optional[datetime] = None,
                limit: int = 50, db: Session = Depends(get_db)):
    """Newest first. Filter by branch, entry/exit/denied, processed flag or event time."""
    q = db.query(AccessEvent)
    if branch_id:
        q = q.filter(AccessEvent.branch_id == branch_id)
    if event_type:
        q = q.filter(AccessEvent.event_type == event_type)
    if processed is not None:
        q = q.filter(AccessEvent.processed.is_(processed))
    if since:
        q = q.filter(AccessEvent.event_time >= since)
    return q.order_by(AccessEvent.event_time.desc(), AccessEvent.id.desc()).limit(limit).all()
