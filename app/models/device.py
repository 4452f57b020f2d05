from sqlalchemy import Column, String, DateTime, Float, Uuid
from sqlalchemy.sql import func
import uuid

from app.core.database import Base


class Device(Base):
    """Registered smart home device.

    Owned by the device registry; this service only reads it.
    """

    __tablename__ = "devices"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    device_id = Column(String(50), nullable=False, unique=True, index=True)
    name = Column(String(100), nullable=False)
    type = Column(String(100), nullable=False, index=True)
    room = Column(String(50), index=True)
    rated_power = Column(Float)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self) -> str:
        return f"<Device(id={self.device_id}, name={self.name}, type={self.type}, room={self.room})>"
