from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional


class GrantAccessIn(BaseModel):
    door_ids: list[int] = Field(..., min_length=1)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    member_name: Optional[str] = None


class PrivilegeOut(BaseModel):
    id: int
    door_id: int
    valid_from: Optional[datetime]
    valid_until: Optional[datetime]
    access_level: int
    status: str

    class Config:
        from_attributes = True


class GrantAccessOut(BaseModel):
    member_id: str
    person_id: str
    granted: list[PrivilegeOut]
    failed: dict[int, str]


class RevokeAccessOut(BaseModel):
    member_id: str
    revoked: list[int]
    failed: dict[int, str]
