"""
Provider-boundary schemas.

Device, door and person payloads from the vendor API are loosely typed and
field names vary between firmware/API versions. Everything coming in is
validated here; payloads that do not fit are rejected (and logged by the
caller) instead of flowing inward as raw dicts.
"""

from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field, AliasChoices, field_validator

_ONLINE_VALUES = {"1", "true", "online", "on", "yes"}


class ProviderDoor(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    door_no: int = Field(validation_alias=AliasChoices("doorNo", "doorIndex", "doorIndexCode", "doorId"))
    door_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("doorName", "name"))
    door_status: Optional[str] = Field(default=None, validation_alias=AliasChoices("doorStatus", "status"))

    @field_validator("door_status", mode="before")
    @classmethod
    def _status_to_str(cls, v: Any) -> Optional[str]:
        return None if v is None else str(v)


class ProviderDevice(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    serial_number: str = Field(
        min_length=1,
        validation_alias=AliasChoices("deviceSerial", "deviceSerialNo", "serialNo", "serialNumber"),
    )
    name: Optional[str] = Field(default=None, validation_alias=AliasChoices("deviceName", "name"))
    device_type: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("deviceType", "deviceCategory", "model")
    )
    is_online: bool = Field(
        default=False, validation_alias=AliasChoices("onlineStatus", "isOnline", "online", "status")
    )
    is_cloud_managed: bool = Field(
        default=True, validation_alias=AliasChoices("isCloudManaged", "cloudManaged")
    )
    doors: list[ProviderDoor] = Field(default_factory=list, validation_alias=AliasChoices("doors", "doorList"))

    @field_validator("is_online", mode="before")
    @classmethod
    def _coerce_online(cls, v: Any) -> bool:
        if isinstance(v, bool):
            return v
        if v is None:
            return False
        return str(v).strip().lower() in _ONLINE_VALUES


class ProviderPerson(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    person_id: str = Field(min_length=1, validation_alias=AliasChoices("personId", "id"))

    @field_validator("person_id", mode="before")
    @classmethod
    def _id_to_str(cls, v: Any) -> str:
        return str(v) if v is not None else v


class ProviderMessage(BaseModel):
    """One message-queue item: an offset and an event payload (dict or JSON string)."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    offset: Optional[int] = None
    data: Any = Field(default=None, validation_alias=AliasChoices("data", "event", "payload"))
