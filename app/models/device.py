"""
Local cache of provider devices and their doors.
The provider is the source of truth; rows are only written by a device sync.
Devices the provider stops reporting are flagged stale, never deleted, so
door ids referenced by access privileges stay valid.
"""

from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from app.database import Base

REMOVED_DOOR_STATUS = "removed"     # door no longer reported by its device


class Device(Base):
    __tablename__ = "devices"
    __table_args__ = (UniqueConstraint("branch_id", "serial_number", name="uq_device_branch_serial"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    branch_id = Column(String(64), nullable=False, index=True)
    serial_number = Column(String(100), nullable=False)
    name = Column(String(255))
    device_type = Column(String(100))
    is_online = Column(Boolean, default=False, nullable=False)
    is_cloud_managed = Column(Boolean, default=True, nullable=False)
    is_stale = Column(Boolean, default=False, nullable=False)
    last_synced_at = Column(DateTime)

    doors = relationship("Door", back_populates="device", cascade="all, delete-orphan",
                         order_by="Door.door_no")

    def __repr__(self):
        return f"<Device {self.serial_number} branch={self.branch_id} online={self.is_online}>"


class Door(Base):
    __tablename__ = "doors"
    __table_args__ = (UniqueConstraint("device_id", "door_no", name="uq_door_device_no"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    device_id = Column(Integer, ForeignKey("devices.id"), nullable=False, index=True)
    door_no = Column(Integer, nullable=False)
    door_name = Column(String(255))
    door_status = Column(String(50))

    device = relationship("Device", back_populates="doors")

    def __repr__(self):
        return f"<Door {self.door_no} device={self.device_id} status={self.door_status}>"
