from pydantic import BaseModel
from datetime import datetime
from typing import Optional


class DoorOut(BaseModel):
    id: int
    door_no: int
    door_name: Optional[str]
    door_status: Optional[str]

    class Config:
        from_attributes = True


class DeviceOut(BaseModel):
    id: int
    branch_id: str
    serial_number: str
    name: Optional[str]
    device_type: Optional[str]
    is_online: bool
    is_cloud_managed: bool
    is_stale: bool
    last_synced_at: Optional[datetime]
    doors: list[DoorOut] = []

    class Config:
        from_attributes = True
