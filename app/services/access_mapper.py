"""
Person/Access Mapper: maps gym members to provider person records and grants
or revokes door privileges for them.

Grants are applied door by door. A door that fails is reported on its own and
does not undo doors that succeeded: a member with access to three of four
doors is better than a member locked out of all four.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.exceptions import AuthError, PersonCreateFailedError, PrivilegeAssignFailedError, ProviderError
from app.models.device import REMOVED_DOOR_STATUS
from app.models.person import AccessPrivilege, Person
from app.schemas.provider import ProviderPerson
from app.services.branch_router import BranchDeviceRouter, resolve_door
from app.services.credential_store import require_active_credential
from app.utils.logger import get_logger

logger = get_logger(__name__)

# Provider answers meaning "already gone"; a delete is then a no-op
_NOT_FOUND_CODES = {"0x4000109D", "PERSON_NOT_FOUND"}


@dataclass
class GrantResult:
    member_id: str
    person: Person
    granted: list[AccessPrivilege] = field(default_factory=list)
    failures: dict[int, str] = field(default_factory=dict)     # door_id -> reason

    @property
    def ok(self) -> bool:
        return not self.failures

    def raise_for_failures(self):
        if self.failures:
            raise PrivilegeAssignFailedError(self.member_id, dict(self.failures))


@dataclass
class RevokeResult:
    member_id: str
    revoked: list[int] = field(default_factory=list)
    failures: dict[int, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


def _naive_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def _unique(ids) -> list[int]:
    seen, out = set(), []
    for i in ids:
        if i not in seen:
            seen.add(i)
            out.append(i)
    return out


class AccessMapper:
    def __init__(self, router: Optional[BranchDeviceRouter] = None):
        self.router = router or BranchDeviceRouter()

    def get_person(self, db: Session, member_id: str, branch_id: str) -> Optional[Person]:
        return (db.query(Person)
                .filter(Person.branch_id == branch_id, Person.member_id == member_id)
                .first())

    async def ensure_person(self, db: Session, member_id: str, branch_id: str,
                            name: Optional[str] = None) -> Person:
        """Return the member's active provider person, creating it if needed."""
        person = self.get_person(db, member_id, branch_id)
        if person is not None and person.status == "active":
            return person

        credential = require_active_credential(db, branch_id)
        display_name = name or (person.name if person else None) or member_id
        try:
            data = await self.router.call_with_credential(
                credential, lambda client: client.add_person(member_id, display_name)
            )
            remote = ProviderPerson.model_validate(data)
        except ProviderError as e:
            logger.error(f"Person create failed for member {member_id} (branch {branch_id}): {e}")
            raise PersonCreateFailedError(member_id, branch_id, e.message) from e
        except ValidationError as e:
            raise PersonCreateFailedError(member_id, branch_id, "provider returned no person id") from e

        now = datetime.utcnow()
        if person is None:
            person = Person(member_id=member_id, branch_id=branch_id, created_at=now)
            db.add(person)
        person.person_id = remote.person_id
        person.name = display_name
        person.status = "active"
        person.updated_at = now
        db.commit()
        logger.info(f"Provider person {remote.person_id} created for member {member_id} (branch {branch_id})")
        return person

    async def grant_access(self, db: Session, member_id: str, branch_id: str, door_ids: list[int],
                           valid_from: Optional[datetime] = None, valid_until: Optional[datetime] = None,
                           member_name: Optional[str] = None) -> GrantResult:
        valid_from, valid_until = _naive_utc(valid_from), _naive_utc(valid_until)
        if valid_from and valid_until and valid_until <= valid_from:
            raise ValueError("valid_until must be later than valid_from")

        person = await self.ensure_person(db, member_id, branch_id, member_name)
        credential = require_active_credential(db, branch_id)
        result = GrantResult(member_id=member_id, person=person)

        for door_id in _unique(door_ids):
            door = resolve_door(db, branch_id, door_id)
            if door is None:
                result.failures[door_id] = "door not found in branch"
                continue
            if door.device.is_stale:
                result.failures[door_id] = "device no longer reported by provider"
                continue
            if door.door_status == REMOVED_DOOR_STATUS:
                result.failures[door_id] = "door removed from device"
                continue

            privilege = (db.query(AccessPrivilege)
                         .filter(AccessPrivilege.person_ref == person.id, AccessPrivilege.door_id == door.id)
                         .first())
            if (privilege is not None and privilege.status == "active"
                    and privilege.valid_from == valid_from and privilege.valid_until == valid_until):
                result.granted.append(privilege)
                continue

            serial, door_no = door.device.serial_number, door.door_no
            try:
                await self.router.call_with_credential(
                    credential,
                    lambda client: client.configure_privilege(person.person_id, serial, [door_no],
                                                              valid_from, valid_until),
                )
            except (ProviderError, AuthError) as e:
                logger.warning(f"Privilege for member {member_id} on door {door_id} "
                               f"({serial}#{door_no}) failed: {e}")
                result.failures[door_id] = getattr(e, "message", None) or str(e)
                continue

            if privilege is None:
                privilege = AccessPrivilege(person_ref=person.id, door_id=door.id)
                db.add(privilege)
            privilege.valid_from = valid_from
            privilege.valid_until = valid_until
            privilege.access_level = 1
            privilege.status = "active"
            privilege.last_sync = datetime.utcnow()
            db.commit()
            result.granted.append(privilege)

        logger.info(f"Grant for member {member_id} (branch {branch_id}): "
                    f"{len(result.granted)} granted, {len(result.failures)} failed")
        return result

    async def revoke_access(self, db: Session, member_id: str, branch_id: str,
                            door_ids: Optional[list[int]] = None) -> RevokeResult:
        """Remove privileges; door_ids=None removes all of the member's privileges in the branch."""
        result = RevokeResult(member_id=member_id)
        person = self.get_person(db, member_id, branch_id)
        if person is None:
            return result

        wanted = set(door_ids) if door_ids is not None else None
        privileges = [p for p in list(person.privileges) if wanted is None or p.door_id in wanted]
        if not privileges:
            return result

        credential = require_active_credential(db, branch_id)
        for privilege in privileges:
            door = privilege.door
            serial, door_no = door.device.serial_number, door.door_no
            try:
                await self.router.call_with_credential(
                    credential, lambda client: client.delete_privilege(person.person_id, serial, [door_no])
                )
            except ProviderError as e:
                if e.code not in _NOT_FOUND_CODES:
                    logger.warning(f"Revoke for member {member_id} on door {door.id} failed: {e}")
                    result.failures[door.id] = e.message
                    continue
            except AuthError as e:
                result.failures[door.id] = str(e)
                continue

            person.privileges.remove(privilege)
            db.commit()
            result.revoked.append(door.id)

        logger.info(f"Revoke for member {member_id} (branch {branch_id}): "
                    f"{len(result.revoked)} revoked, {len(result.failures)} failed")
        return result

    async def remove_person(self, db: Session, member_id: str, branch_id: str) -> RevokeResult:
        """Revoke everything, then delete the provider person. Stops if any revoke failed."""
        result = await self.revoke_access(db, member_id, branch_id)
        person = self.get_person(db, member_id, branch_id)
        if person is None or not result.ok or person.status != "active":
            return result

        credential = require_active_credential(db, branch_id)
        try:
            await self.router.call_with_credential(credential, lambda client: client.delete_person(person.person_id))
        except ProviderError as e:
            if e.code not in _NOT_FOUND_CODES:
                raise
        person.status = "inactive"
        person.updated_at = datetime.utcnow()
        db.commit()
        logger.info(f"Provider person {person.person_id} removed for member {member_id}")
        return result


access_mapper = AccessMapper()
