from sqlalchemy import Boolean, Column, DateTime, Float, Index, String, Uuid
import uuid

from app.core.database import Base


class Telemetry(Base):
    """One measurement sample reported by a device.

    ``id`` and ``received_at`` are assigned by the service when the sample is
    persisted. Rows are never updated; retention sweeps are the only deletes.
    """

    __tablename__ = "telemetry"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    device_id = Column(String(50), nullable=False, index=True)
    category = Column(String(100), nullable=False)
    value = Column(Float, nullable=False)  # watts for "power", % or degrees for other categories
    status = Column(Boolean, nullable=False, default=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    received_at = Column(DateTime(timezone=True), nullable=False, index=True)

    __table_args__ = (
        Index("ix_telemetry_device_category_timestamp", "device_id", "category", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<Telemetry(device_id={self.device_id}, category={self.category}, timestamp={self.timestamp}, value={self.value})>"
