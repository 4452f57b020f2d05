from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from datetime import date, datetime
import uuid

from app.core.timeutils import ensure_utc


class APIModel(BaseModel):
    """Base schema: snake_case in Python, camelCase on the wire"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TelemetryBase(APIModel):
    """Base telemetry schema.

    Only types are enforced here; business rules (value range, timestamp
    plausibility, device id format) are checked by the sample validator so
    batch errors can carry the record index.
    """
    device_id: str = Field(..., max_length=255)
    category: str = Field(..., min_length=1, max_length=100)
    value: float = Field(..., description="Measured value, watts for the 'power' category")
    status: bool = Field(True, description="Device on/off state at measurement time")
    timestamp: datetime

    @field_validator("timestamp")
    @classmethod
    def normalise_timestamp(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class TelemetryCreate(TelemetryBase):
    """Schema for one incoming sample"""
    pass


class DeviceSummary(APIModel):
    """Device metadata joined onto query results"""
    name: str
    type: str
    room: Optional[str] = None


class TelemetryResponse(TelemetryBase):
    """Schema for a stored sample"""
    model_config = ConfigDict(from_attributes=True, alias_generator=to_camel, populate_by_name=True)

    id: uuid.UUID
    received_at: datetime
    device: Optional[DeviceSummary] = None

    @field_validator("received_at")
    @classmethod
    def normalise_received_at(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class TelemetryBatch(APIModel):
    """Schema for batch ingestion; size limits are enforced by the service"""
    data: List[TelemetryCreate]


class SingleIngest(APIModel):
    kind: Literal["single"]
    sample: TelemetryCreate


class BatchIngest(APIModel):
    kind: Literal["batch"]
    data: List[TelemetryCreate]


IngestRequest = Annotated[Union[SingleIngest, BatchIngest], Field(discriminator="kind")]


class CategoryStats(APIModel):
    category: str
    count: int
    avg_value: float
    min_value: float
    max_value: float
    last_reading: datetime

    @field_validator("last_reading")
    @classmethod
    def normalise_last_reading(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class StatsPeriod(APIModel):
    start_time: datetime
    end_time: datetime
    hours: int


class DeviceStatsResponse(APIModel):
    """Per-category statistics for one device"""
    device_id: str
    period: StatsPeriod
    categories: List[CategoryStats]


class DeviceEnergy(APIModel):
    device_id: str
    sample_count: int
    energy_wh: float
    energy_kwh: float


class EnergyWindowResponse(APIModel):
    """Energy consumed over an arbitrary window"""
    start_time: datetime
    end_time: datetime
    energy_wh: float
    energy_kwh: float
    devices: List[DeviceEnergy]


class EnergyBucketResponse(APIModel):
    period_start: datetime
    period_end: datetime
    energy_wh: float
    energy_kwh: float


class DailyEnergyResponse(APIModel):
    """Energy bucketed by local calendar day"""
    timezone: str
    start_date: date
    end_date: date
    total_wh: float
    total_kwh: float
    buckets: List[EnergyBucketResponse]


class CleanupResponse(APIModel):
    message: str
    deleted_count: int
    days_to_keep: int


class BroadcastResponse(APIModel):
    message: str
    payload: Dict[str, Any]
    delivered: int


class HealthMetrics(APIModel):
    """Schema for service health metrics"""
    service: str
    status: str
    timestamp: datetime
    database_status: str
    rate_limit_backend: str
    redis_status: Optional[str] = None
    subscribers: int
