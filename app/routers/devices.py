# app/routers/devices.py
"""
Device registry endpoints.
GET  /branches/{id}/devices - cached devices (no provider call)
POST /branches/{id}/devices/sync - pull devices + doors from the provider
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from app.database import get_db
from app.exceptions import AuthError, MissingCredentialsError, SyncError
from app.schemas.device import DeviceOut
from app.services.device_registry import device_registry
from app.utils.logger import get_logger

router = APIRouter()
logger = get_logger(__name__)


@router.get("/branches/{branch_id}/devices", response_model=list[DeviceOut],
            summary="Cached devices for a branch")
def list_devices(branch_id: str, include_stale: bool = True, db: Session = Depends(get_db)):
    return device_registry.get_devices(db, branch_id, include_stale=include_stale)


@router.post("/branches/{branch_id}/devices/sync", response_model=list[DeviceOut],
             summary="Sync devices and doors from the provider")
async def sync_devices(branch_id: str, db: Session = Depends(get_db)):
    try:
        return await device_registry.sync_devices(db, branch_id)
    except MissingCredentialsError as e:
        raise HTTPException(status_code=409, detail=e.reason)
    except AuthError as e:
        raise HTTPException(status_code=502, detail=f"auth failed: {e.message}")
    except SyncError as e:
        raise HTTPException(status_code=502, detail=e.reason)
