from fastapi import APIRouter, Depends, HTTPException, status, Query, Path
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional
from datetime import date, datetime
import logging
import uuid

from app.core.config import settings
from app.core.database import get_db
from app.core.deps import (
    RateLimit,
    energy_service,
    get_broadcaster,
    ingestion_service,
    query_service,
    retention_sweeper,
)
from app.core.exceptions import TelemetryServiceError
from app.core.redis_client import RedisService
from app.core.timeutils import utcnow
from app.schemas.telemetry import (
    BroadcastResponse,
    CleanupResponse,
    DailyEnergyResponse,
    DeviceStatsResponse,
    EnergyWindowResponse,
    HealthMetrics,
    IngestRequest,
    TelemetryBatch,
    TelemetryCreate,
    TelemetryResponse,
)
from app.services.broadcaster import TelemetryBroadcaster
from app.services.energy_service import EnergyService
from app.services.ingestion_service import IngestionService
from app.services.query_service import QueryService
from app.services.retention import RetentionSweeper
from app.services.telemetry_store import TelemetryStore

logger = logging.getLogger(__name__)

router = APIRouter()

single_ingest_limit = RateLimit("short", scope="ingest")
batch_ingest_limit = RateLimit("medium", scope="ingest-batch")
tagged_ingest_limit = RateLimit("medium", scope="ingest-tagged", limit=settings.RATE_LIMIT_TAGGED_LIMIT)
query_limit = RateLimit("medium", scope="query", limit=settings.RATE_LIMIT_QUERY_LIMIT)
stats_limit = RateLimit("medium", scope="stats", limit=settings.RATE_LIMIT_QUERY_LIMIT)
energy_limit = RateLimit("medium", scope="energy", limit=settings.RATE_LIMIT_QUERY_LIMIT)
cleanup_limit = RateLimit("long", scope="cleanup")


@router.post("/ingest", response_model=TelemetryResponse, status_code=status.HTTP_201_CREATED,
             dependencies=[Depends(single_ingest_limit)])
async def ingest_telemetry(
    telemetry_data: TelemetryCreate,
    service: IngestionService = Depends(ingestion_service),
):
    """Ingest a single telemetry sample"""
    try:
        record = await service.ingest_one(telemetry_data)
        return TelemetryResponse.model_validate(record)

    except TelemetryServiceError:
        raise
    except Exception as e:
        logger.error(f"Telemetry ingestion error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to ingest telemetry"
        )


@router.post("/ingest/batch", response_model=List[TelemetryResponse], status_code=status.HTTP_201_CREATED,
             dependencies=[Depends(batch_ingest_limit)])
async def ingest_telemetry_batch(
    batch_data: TelemetryBatch,
    service: IngestionService = Depends(ingestion_service),
):
    """Ingest a batch of telemetry samples"""
    try:
        records = await service.ingest_batch(batch_data.data)
        return [TelemetryResponse.model_validate(r) for r in records]

    except TelemetryServiceError:
        raise
    except Exception as e:
        logger.error(f"Batch telemetry ingestion error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to ingest telemetry batch"
        )


@router.post("/ingest/tagged", response_model=List[TelemetryResponse], status_code=status.HTTP_201_CREATED,
             dependencies=[Depends(tagged_ingest_limit)])
async def ingest_tagged_telemetry(
    payload: IngestRequest,
    service: IngestionService = Depends(ingestion_service),
):
    """Ingest a request tagged as either ``single`` or ``batch``"""
    try:
        records = await service.ingest(payload)
        return [TelemetryResponse.model_validate(r) for r in records]

    except TelemetryServiceError:
        raise
    except Exception as e:
        logger.error(f"Tagged telemetry ingestion error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to ingest telemetry"
        )


@router.get("/", response_model=List[TelemetryResponse], response_model_exclude_none=True,
            dependencies=[Depends(query_limit)])
async def get_telemetry(
    device_id: Optional[str] = Query(None, alias="deviceId", description="Filter by device ID"),
    device_type: Optional[str] = Query(None, alias="deviceType", description="Filter by device type"),
    room: Optional[str] = Query(None, description="Filter by room (case-insensitive)"),
    start_time: Optional[datetime] = Query(None, alias="startTime", description="Start of time range"),
    end_time: Optional[datetime] = Query(None, alias="endTime", description="End of time range"),
    include_device: bool = Query(False, alias="includeDevice", description="Attach device name/type/room"),
    service: QueryService = Depends(query_service),
):
    """Get telemetry data, newest first"""
    try:
        return await service.find(
            device_id=device_id,
            device_type=device_type,
            room=room,
            start_time=start_time,
            end_time=end_time,
            include_device=include_device,
        )

    except TelemetryServiceError:
        raise
    except Exception as e:
        logger.error(f"Get telemetry error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to retrieve telemetry data"
        )


@router.get("/devices/{device_id}/stats", response_model=DeviceStatsResponse,
            dependencies=[Depends(stats_limit)])
async def get_device_stats(
    device_id: str = Path(..., description="Device ID"),
    hours: int = Query(24, description="Look-back window in hours (1-168)"),
    service: QueryService = Depends(query_service),
):
    """Get per-category statistics for one device"""
    try:
        return await service.device_stats(device_id, hours)

    except TelemetryServiceError:
        raise
    except Exception as e:
        logger.error(f"Get device stats error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to retrieve device statistics"
        )


@router.get("/energy", response_model=EnergyWindowResponse, dependencies=[Depends(energy_limit)])
async def get_energy(
    start_time: datetime = Query(..., alias="startTime", description="Window start (inclusive)"),
    end_time: datetime = Query(..., alias="endTime", description="Window end (exclusive)"),
    device_id: Optional[str] = Query(None, alias="deviceId"),
    device_type: Optional[str] = Query(None, alias="deviceType"),
    room: Optional[str] = Query(None),
    service: EnergyService = Depends(energy_service),
):
    """Energy consumption over a time window"""
    try:
        return await service.window_energy(
            start_time, end_time, device_id=device_id, device_type=device_type, room=room
        )

    except TelemetryServiceError:
        raise
    except Exception as e:
        logger.error(f"Get energy error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to compute energy consumption"
        )


@router.get("/energy/daily", response_model=DailyEnergyResponse, dependencies=[Depends(energy_limit)])
async def get_daily_energy(
    start_date: date = Query(..., alias="startDate", description="First day (inclusive)"),
    end_date: date = Query(..., alias="endDate", description="Last day (inclusive)"),
    device_id: Optional[str] = Query(None, alias="deviceId"),
    device_type: Optional[str] = Query(None, alias="deviceType"),
    room: Optional[str] = Query(None),
    service: EnergyService = Depends(energy_service),
):
    """Energy consumption per calendar day"""
    try:
        return await service.daily_energy(
            start_date, end_date, device_id=device_id, device_type=device_type, room=room
        )

    except TelemetryServiceError:
        raise
    except Exception as e:
        logger.error(f"Get daily energy error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to compute daily energy consumption"
        )


@router.post("/cleanup", response_model=CleanupResponse, dependencies=[Depends(cleanup_limit)])
async def cleanup_telemetry(
    days_to_keep: int = Query(settings.DATA_RETENTION_DAYS, alias="daysToKeep",
                              description="Keep samples newer than this many days (1-365)"),
    sweeper: RetentionSweeper = Depends(retention_sweeper),
):
    """Delete telemetry older than the retention horizon"""
    try:
        deleted = await sweeper.delete_older_than(days_to_keep)
        return CleanupResponse(
            message=f"Cleaned up {deleted} old telemetry records",
            deleted_count=deleted,
            days_to_keep=days_to_keep,
        )

    except TelemetryServiceError:
        raise
    except Exception as e:
        logger.error(f"Telemetry cleanup error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to clean up telemetry data"
        )


@router.post("/test-broadcast", response_model=BroadcastResponse)
async def test_broadcast(broadcaster: TelemetryBroadcaster = Depends(get_broadcaster)):
    """Publish a synthetic sample to every connected observer"""
    now = utcnow()
    payload = TelemetryResponse(
        id=uuid.uuid4(),
        device_id="test-device",
        category="power",
        value=123.4,
        status=True,
        timestamp=now,
        received_at=now,
    ).model_dump(mode="json", by_alias=True, exclude_none=True)

    delivered = broadcaster.publish(payload)
    logger.info(f"Test broadcast delivered to {delivered} subscribers")
    return BroadcastResponse(message="Test broadcast sent", payload=payload, delivered=delivered)


@router.get("/health", response_model=HealthMetrics, response_model_exclude_none=True)
async def get_health_metrics(
    db: AsyncSession = Depends(get_db),
    broadcaster: TelemetryBroadcaster = Depends(get_broadcaster),
):
    """Telemetry module health"""
    database_ok = await TelemetryStore(db).ping()
    healthy = database_ok

    redis_status = None
    if settings.RATE_LIMIT_BACKEND == "redis":
        redis_ok = await RedisService().ping()
        redis_status = "healthy" if redis_ok else "unhealthy"
        healthy = healthy and redis_ok

    return HealthMetrics(
        service="telemetry",
        status="healthy" if healthy else "degraded",
        timestamp=utcnow(),
        database_status="healthy" if database_ok else "unhealthy",
        rate_limit_backend=settings.RATE_LIMIT_BACKEND,
        redis_status=redis_status,
        subscribers=broadcaster.subscriber_count,
    )
