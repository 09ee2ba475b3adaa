"""
Mapping of internal members to provider person records, and the access
privileges granted to those persons on individual doors.
"""

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from app.database import Base


class Person(Base):
    __tablename__ = "persons"
    __table_args__ = (UniqueConstraint("branch_id", "member_id", name="uq_person_branch_member"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    person_id = Column(String(100), nullable=False, index=True)   # Provider-side id
    member_id = Column(String(64), nullable=False, index=True)
    branch_id = Column(String(64), nullable=False, index=True)
    name = Column(String(255))
    status = Column(String(20), default="active", nullable=False)   # active | inactive
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    privileges = relationship("AccessPrivilege", back_populates="person",
                              cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Person {self.person_id} member={self.member_id} branch={self.branch_id}>"


class AccessPrivilege(Base):
    __tablename__ = "access_privileges"
    __table_args__ = (UniqueConstraint("person_ref", "door_id", name="uq_privilege_person_door"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    person_ref = Column(Integer, ForeignKey("persons.id"), nullable=False, index=True)
    door_id = Column(Integer, ForeignKey("doors.id"), nullable=False, index=True)
    valid_from = Column(DateTime)
    valid_until = Column(DateTime)
    access_level = Column(Integer, default=1, nullable=False)
    status = Column(String(20), default="active", nullable=False)
    last_sync = Column(DateTime)

    person = relationship("Person", back_populates="privileges")
    door = relationship("Door")

    def __repr__(self):
        return f"<AccessPrivilege person={self.person_ref} door={self.door_id} level={self.access_level}>"
