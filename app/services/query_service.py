from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional, Tuple
from datetime import datetime, timedelta
import logging

from app.core.exceptions import InvalidQuery, InvalidStatsWindow
from app.core.timeutils import ensure_utc, utcnow
from app.schemas.telemetry import (
    CategoryStats, DeviceStatsResponse, DeviceSummary, StatsPeriod, TelemetryResponse
)
from app.services.device_registry import DeviceRegistry
from app.services.telemetry_store import TelemetryStore

logger = logging.getLogger(__name__)

MIN_STATS_HOURS = 1
MAX_STATS_HOURS = 168


def order_bounds(
    start: Optional[datetime], end: Optional[datetime]
) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Normalise bounds to UTC and swap them if they are inverted"""
    start, end = ensure_utc(start), ensure_utc(end)
    if start is not None and end is not None and start > end:
        return end, start
    return start, end


async def resolve_device_filter(
    registry: DeviceRegistry,
    device_id: Optional[str] = None,
    device_type: Optional[str] = None,
    room: Optional[str] = None,
) -> Optional[List[str]]:
    """Turn device/type/room filters into the device ids to query.

    ``None`` means no device restriction; an empty list means nothing can match.
    The registry is only consulted when type or room is given.
    """
    device_id = device_id.strip() if device_id else None
    device_type = device_type.strip() if device_type else None
    room = room.strip() if room else None

    if not device_type and not room:
        return [device_id] if device_id else None

    matching = {d.device_id for d in await registry.find_by_type_or_room(device_type, room)}
    if device_id:
        return [device_id] if device_id in matching else []
    return sorted(matching)


class QueryService:
    """Read side: filtered sample retrieval and per-device statistics"""

    def __init__(self, store: TelemetryStore, registry: DeviceRegistry):
        self.store = store
        self.registry = registry

    async def find(
        self,
        device_id: Optional[str] = None,
        device_type: Optional[str] = None,
        room: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        include_device: bool = False,
    ) -> List[TelemetryResponse]:
        """Samples matching the filters, newest first"""
        start_time, end_time = order_bounds(start_time, end_time)
        logger.debug(
            f"find called with filters: device_id={device_id} device_type={device_type} "
            f"room={room} start_time={start_time} end_time={end_time}"
        )

        device_ids = await resolve_device_filter(self.registry, device_id, device_type, room)
        if device_ids is not None and not device_ids:
            logger.debug("Device filter matched no devices")
            return []

        records = await self.store.find(device_ids, start_time, end_time)
        results = [TelemetryResponse.model_validate(r) for r in records]

        if include_device and results:
            devices = {
                d.device_id: d
                for d in await self.registry.find_many(r.device_id for r in results)
            }
            for item in results:
                device = devices.get(item.device_id)
                if device is not None:
                    item.device = DeviceSummary(name=device.name, type=device.type, room=device.room)

        logger.debug(f"find result count: {len(results)}")
        return results

    async def device_stats(self, device_id: str, hours: int = 24) -> DeviceStatsResponse:
        """Per-category count/avg/min/max/last reading over the last ``hours``"""
        if not device_id or not device_id.strip():
            raise InvalidQuery("Device ID is required")
        if not isinstance(hours, int) or not MIN_STATS_HOURS <= hours <= MAX_STATS_HOURS:
            raise InvalidStatsWindow(hours)

        device_id = device_id.strip()
        end_time = utcnow()
        start_time = end_time - timedelta(hours=hours)
        logger.info(f"Retrieving device stats for {device_id} over {hours} hours")

        rows = await self.store.category_stats(device_id, start_time, end_time)
        categories = [
            CategoryStats(
                category=row.category,
                count=int(row.sample_count),
                avg_value=float(row.avg_value),
                min_value=float(row.min_value),
                max_value=float(row.max_value),
                last_reading=row.last_reading,
            )
            for row in rows
        ]
        return DeviceStatsResponse(
            device_id=device_id,
            period=StatsPeriod(start_time=start_time, end_time=end_time, hours=hours),
            categories=categories,
        )


def get_query_service(db: AsyncSession) -> QueryService:
    """Dependency to get the query service"""
    return QueryService(TelemetryStore(db), DeviceRegistry(db))
