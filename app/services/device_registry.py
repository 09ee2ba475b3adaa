"""
Device Registry: per-branch cache of provider devices and doors.

sync_devices() pulls the full device list (all pages) and every device's
door list first, and only then writes the cache in a single transaction.
A failure anywhere before the commit leaves the previous device set intact.

Devices missing from the provider's answer are flagged stale/offline, never
deleted, and door rows keep their ids so existing privileges stay valid.
"""

from datetime import datetime
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.exceptions import PartialDataError, ProviderError, ProviderUnreachableError
from app.models.device import REMOVED_DOOR_STATUS, Device, Door
from app.models.sync_log import SyncLog
from app.schemas.provider import ProviderDevice, ProviderDoor
from app.services.branch_router import BranchDeviceRouter
from app.services.credential_store import record_sync_status, require_active_credential
from app.services.provider_client import MAX_DEVICE_PAGES, ProviderClient
from app.utils.logger import get_logger

logger = get_logger(__name__)

_DEVICE_OFFLINE_CODES = {"EVZ20007", "DEVICE_OFFLINE"}

# (device, doors); doors is None when the door list could not be read
# because the device is offline; cached doors are then left as they are.
FetchedDevice = tuple[ProviderDevice, Optional[list[ProviderDoor]]]


class DeviceRegistry:
    def __init__(self, router: Optional[BranchDeviceRouter] = None):
        self.router = router or BranchDeviceRouter()

    def get_devices(self, db: Session, branch_id: str, include_stale: bool = True) -> list[Device]:
        """Cached devices for a branch. Never calls the provider."""
        q = db.query(Device).filter(Device.branch_id == branch_id)
        if not include_stale:
            q = q.filter(Device.is_stale.is_(False))
        return q.order_by(Device.serial_number).all()

    async def sync_devices(self, db: Session, branch_id: str) -> list[Device]:
        credential = require_active_credential(db, branch_id)

        try:
            fetched = await self.router.call_with_credential(
                credential, lambda client: self._fetch_all(client, branch_id)
            )
        except PartialDataError as e:
            self._record_failure(db, branch_id, e.reason)
            raise
        except ProviderError as e:
            self._record_failure(db, branch_id, str(e))
            raise ProviderUnreachableError(branch_id, str(e)) from e

        try:
            devices = self._apply(db, branch_id, fetched)
            record_sync_status(db, credential, ok=True)
            db.add(SyncLog(branch_id=branch_id, entity_type="device", status="success",
                           message=f"Synced {len(fetched)} devices",
                           created_at=datetime.utcnow()))
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.error(f"Device cache write failed for branch {branch_id}", exc_info=True)
            raise

        logger.info(f"Device sync for branch {branch_id}: {len(fetched)} from provider, "
                    f"{sum(1 for d in devices if d.is_stale)} stale")
        return devices

    # ── Provider side ────────────────────────────────────────────────────────
    async def _fetch_all(self, client: ProviderClient, branch_id: str) -> list[FetchedDevice]:
        page_size = settings.DEVICE_PAGE_SIZE
        parsed: dict[str, ProviderDevice] = {}

        for page_no in range(1, MAX_DEVICE_PAGES + 1):
            items, total = await client.list_devices(page_no=page_no, page_size=page_size)
            for raw in items:
                try:
                    device = ProviderDevice.model_validate(raw)
                except ValidationError as e:
                    logger.warning(f"Skipping unrecognised device payload for branch {branch_id}: "
                                   f"{e.error_count()} errors, keys={sorted(raw) if isinstance(raw, dict) else type(raw).__name__}")
                    continue
                parsed[device.serial_number] = device
            # Some provider builds leave the total out; a short page ends the list then
            if len(items) < page_size or (total is not None and page_no * page_size >= total):
                break

        fetched: list[FetchedDevice] = []
        failed: list[str] = []
        for device in parsed.values():
            if device.doors:
                fetched.append((device, device.doors))
                continue
            try:
                raw_doors = await client.list_doors(device.serial_number)
            except ProviderError as e:
                if e.code in _DEVICE_OFFLINE_CODES:
                    logger.info(f"Device {device.serial_number} offline, keeping cached doors")
                    fetched.append((device.model_copy(update={"is_online": False}), None))
                    continue
                logger.warning(f"Door list failed for device {device.serial_number}: {e}")
                failed.append(device.serial_number)
                continue
            fetched.append((device, self._parse_doors(raw_doors, device.serial_number)))

        if failed:
            raise PartialDataError(branch_id, f"door list unavailable for {len(failed)} device(s)",
                                   failed_devices=failed)
        return fetched

    @staticmethod
    def _parse_doors(raw_doors: list, serial: str) -> list[ProviderDoor]:
        doors = []
        for raw in raw_doors:
            try:
                doors.append(ProviderDoor.model_validate(raw))
            except ValidationError:
                logger.warning(f"Skipping unrecognised door payload on device {serial}: {raw!r}")
        return doors

    # ── Cache side ───────────────────────────────────────────────────────────
    def _apply(self, db: Session, branch_id: str, fetched: list[FetchedDevice]) -> list[Device]:
        now = datetime.utcnow()
        existing = {d.serial_number: d for d in
                    db.query(Device).filter(Device.branch_id == branch_id).all()}
        seen: set[str] = set()

        for remote, remote_doors in fetched:
            device = existing.get(remote.serial_number)
            if device is None:
                device = Device(branch_id=branch_id, serial_number=remote.serial_number)
                db.add(device)
                existing[remote.serial_number] = device
            device.name = remote.name or device.name or remote.serial_number
            device.device_type = remote.device_type or device.device_type
            device.is_online = remote.is_online
            device.is_cloud_managed = remote.is_cloud_managed
            device.is_stale = False
            device.last_synced_at = now
            if remote_doors is not None:
                self._apply_doors(device, remote_doors)
            seen.add(remote.serial_number)

        for serial, device in existing.items():
            if serial not in seen:
                if not device.is_stale:
                    logger.info(f"Device {serial} no longer reported by provider, marking stale")
                device.is_stale = True
                device.is_online = False

        db.flush()
        return sorted(existing.values(), key=lambda d: d.serial_number)

    @staticmethod
    def _apply_doors(device: Device, remote_doors: list[ProviderDoor]):
        by_no = {door.door_no: door for door in device.doors}
        reported = set()
        for remote in remote_doors:
            door = by_no.get(remote.door_no)
            if door is None:
                door = Door(door_no=remote.door_no)
                device.doors.append(door)
                by_no[remote.door_no] = door
            door.door_name = remote.door_name or door.door_name or f"Door {remote.door_no}"
            door.door_status = remote.door_status
            reported.add(remote.door_no)
        for door_no, door in by_no.items():
            if door_no not in reported:
                door.door_status = REMOVED_DOOR_STATUS

    @staticmethod
    def _record_failure(db: Session, branch_id: str, reason: str):
        db.rollback()
        credential = require_active_credential(db, branch_id)
        record_sync_status(db, credential, ok=False, error=reason)
        db.add(SyncLog(branch_id=branch_id, entity_type="device", status="error",
                       message="Device sync failed", details=reason, created_at=datetime.utcnow()))
        db.commit()
        logger.error(f"Device sync failed for branch {branch_id}: {reason}")


device_registry = DeviceRegistry()
