from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
from datetime import date, datetime
import logging
import math

from app.core.config import settings
from app.core.exceptions import InvalidQuery
from app.schemas.telemetry import (
    DailyEnergyResponse, DeviceEnergy, EnergyBucketResponse, EnergyWindowResponse
)
from app.services.device_registry import DeviceRegistry
from app.services.energy import (
    daily_buckets, integrate_window, local_day_bounds, present_kwh, present_wh
)
from app.services.query_service import order_bounds, resolve_device_filter
from app.services.telemetry_store import TelemetryStore

logger = logging.getLogger(__name__)


class EnergyService:
    """Energy consumption derived from stored power samples"""

    def __init__(
        self,
        store: TelemetryStore,
        registry: DeviceRegistry,
        category: str = settings.ENERGY_CATEGORY,
        timezone: str = settings.ENERGY_TIMEZONE,
        max_days: int = settings.ENERGY_MAX_DAYS,
    ):
        self.store = store
        self.registry = registry
        self.category = category
        self.timezone = timezone
        self.max_days = max_days

    async def window_energy(
        self,
        start_time: datetime,
        end_time: datetime,
        device_id: Optional[str] = None,
        device_type: Optional[str] = None,
        room: Optional[str] = None,
    ) -> EnergyWindowResponse:
        """Energy over ``[start_time, end_time)`` with a per-device breakdown"""
        if start_time is None or end_time is None:
            raise InvalidQuery("Both startTime and endTime are required")
        start_time, end_time = order_bounds(start_time, end_time)

        logger.info(f"Computing energy from {start_time} to {end_time}")

        samples = await self._load(start_time, end_time, device_id, device_type, room)
        total = integrate_window(samples, start_time, end_time)

        devices = [
            DeviceEnergy(
                device_id=device,
                sample_count=total.sample_counts.get(device, 0),
                energy_wh=present_wh(wh),
                energy_kwh=present_kwh(wh),
            )
            for device, wh in sorted(total.per_device_wh.items())
        ]
        return EnergyWindowResponse(
            start_time=start_time,
            end_time=end_time,
            energy_wh=present_wh(total.energy_wh),
            energy_kwh=present_kwh(total.energy_wh),
            devices=devices,
        )

    async def daily_energy(
        self,
        start_date: date,
        end_date: date,
        device_id: Optional[str] = None,
        device_type: Optional[str] = None,
        room: Optional[str] = None,
    ) -> DailyEnergyResponse:
        """One energy bucket per local calendar day, inclusive of both dates"""
        if start_date is None or end_date is None:
            raise InvalidQuery("Both startDate and endDate are required")
        if start_date > end_date:
            start_date, end_date = end_date, start_date

        days = (end_date - start_date).days + 1
        if days > self.max_days:
            raise InvalidQuery(f"Date range spans {days} days, the maximum is {self.max_days}")

        bounds = local_day_bounds(start_date, end_date, self.timezone)
        range_start, range_end = bounds[0][0], bounds[-1][1]
        logger.info(f"Computing daily energy for {days} days in {self.timezone}")

        samples = await self._load(range_start, range_end, device_id, device_type, room)
        buckets = daily_buckets(samples, start_date, end_date, self.timezone)

        total_wh = math.fsum(b.energy_wh for b in buckets)
        return DailyEnergyResponse(
            timezone=self.timezone,
            start_date=start_date,
            end_date=end_date,
            total_wh=present_wh(total_wh),
            total_kwh=present_kwh(total_wh),
            buckets=[
                EnergyBucketResponse(
                    period_start=b.period_start,
                    period_end=b.period_end,
                    energy_wh=present_wh(b.energy_wh),
                    energy_kwh=present_kwh(b.energy_wh),
                )
                for b in buckets
            ],
        )

    async def _load(self, start_time, end_time, device_id, device_type, room):
        device_ids = await resolve_device_filter(self.registry, device_id, device_type, room)
        if device_ids is not None and not device_ids:
            logger.debug("Device filter matched no devices")
            return []
        if start_time >= end_time:
            return []
        # The last reading before the window is held into it
        carried = await self.store.latest_before(
            start_time, category=self.category, device_ids=device_ids
        )
        inside = await self.store.find_in_window(
            start_time, end_time, category=self.category, device_ids=device_ids
        )
        return carried + inside


def get_energy_service(db: AsyncSession) -> EnergyService:
    """Dependency to get the energy service"""
    return EnergyService(TelemetryStore(db), DeviceRegistry(db))
