# app/routers/poller.py
"""
Event polling control.
POST /branches/{id}/poller/start - idempotent
POST /branches/{id}/poller/stop
GET  /poller - state of every branch poller
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from app.database import get_db
from app.exceptions import MissingCredentialsError
from app.schemas.access_event import PollerStatusOut
from app.services.credential_store import require_active_credential
from app.services.event_poller import poller_supervisor

router = APIRouter()


@router.post("/branches/{branch_id}/poller/start", response_model=PollerStatusOut,
             summary="Start event polling for a branch")
async def start_poller(branch_id: str, db: Session = Depends(get_db)):
    try:
        require_active_credential(db, branch_id)
    except MissingCredentialsError as e:
        raise HTTPException(status_code=409, detail=e.reason)
    return poller_supervisor.start(branch_id).status()


@router.post("/branches/{branch_id}/poller/stop", response_model=PollerStatusOut,
             summary="Stop event polling for a branch")
async def stop_poller(branch_id: str):
    if not await poller_supervisor.stop(branch_id):
        raise HTTPException(status_code=404, detail="poller not started")
    return poller_supervisor.get(branch_id).status()


@router.get("/poller", response_model=list[PollerStatusOut], summary="Poller states")
def poller_status():
    return poller_supervisor.status()
