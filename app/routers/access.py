# app/routers/access.py
"""
Member door access.
POST   /branches/{id}/members/{member_id}/access - grant doors (per-door result)
DELETE /branches/{id}/members/{member_id}/access - revoke some or all doors
DELETE /branches/{id}/members/{member_id} - revoke all + delete the provider person
"""

from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from app.database import get_db
from app.exceptions import AuthError, MissingCredentialsError, PersonCreateFailedError, ProviderError
from app.schemas.access import GrantAccessIn, GrantAccessOut, PrivilegeOut, RevokeAccessOut
from app.services.access_mapper import access_mapper
from app.utils.logger import get_logger

router = APIRouter()
logger = get_logger(__name__)


@router.post("/branches/{branch_id}/members/{member_id}/access", response_model=GrantAccessOut,
             summary="Grant a member access to doors")
async def grant_access(branch_id: str, member_id: str, body: GrantAccessIn, db: Session = Depends(get_db)):
    """
    Doors are granted one by one. Doors that failed are listed in `failed`
    with their reason; doors that succeeded stay granted.
    """
    try:
        result = await access_mapper.grant_access(
            db, member_id, branch_id, body.door_ids,
            valid_from=body.valid_from, valid_until=body.valid_until, member_name=body.member_name,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except MissingCredentialsError as e:
        raise HTTPException(status_code=409, detail=e.reason)
    except PersonCreateFailedError as e:
        raise HTTPException(status_code=502, detail=f"person create failed: {e.reason}")
    except AuthError as e:
        raise HTTPException(status_code=502, detail=f"auth failed: {e.message}")

    return GrantAccessOut(
        member_id=member_id,
        person_id=result.person.person_id,
        granted=[PrivilegeOut.model_validate(p) for p in result.granted],
        failed=result.failures,
    )


@router.delete("/branches/{branch_id}/members/{member_id}/access", response_model=RevokeAccessOut,
               summary="Revoke a member's door access")
async def revoke_access(branch_id: str, member_id: str,
                        door_ids: Optional[list[int]] = Query(None, description="Omit to revoke every door"),
                        db: Session = Depends(get_db)):
    try:
        result = await access_mapper.revoke_access(db, member_id, branch_id, door_ids)
    except MissingCredentialsError as e:
        raise HTTPException(status_code=409, detail=e.reason)
    return RevokeAccessOut(member_id=member_id, revoked=result.revoked, failed=result.failures)


@router.delete("/branches/{branch_id}/members/{member_id}", response_model=RevokeAccessOut,
               summary="Remove a member from the branch's devices")
async def remove_member(branch_id: str, member_id: str, db: Session = Depends(get_db)):
    try:
        result = await access_mapper.remove_person(db, member_id, branch_id)
    except MissingCredentialsError as e:
        raise HTTPException(status_code=409, detail=e.reason)
    except (ProviderError, AuthError) as e:
        raise HTTPException(status_code=502, detail=str(e))
    return RevokeAccessOut(member_id=member_id, revoked=result.revoked, failed=result.failures)
