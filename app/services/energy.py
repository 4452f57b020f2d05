"""Energy from power samples by piecewise-constant integration.

Each power sample is held until the next sample of the same device (or the
end of the window), so a sample at ``t_i`` with value ``v_i`` contributes::

    v_i * hours([max(t_i, start), min(t_{i+1}, end)))

Energy is accumulated in Wh with ``math.fsum`` and only rounded when it is
presented. Day buckets rerun the exact same integration over each local
calendar day, so buckets that tile a window add up to the window total.
"""

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Dict, Iterable, List, Protocol, Sequence, Tuple

import pytz

from app.core.timeutils import ensure_utc

logger = logging.getLogger(__name__)

SECONDS_PER_HOUR = 3600.0


class PowerSample(Protocol):
    device_id: str
    timestamp: datetime
    value: float


@dataclass(frozen=True)
class EnergyBucket:
    period_start: datetime
    period_end: datetime
    energy_wh: float


@dataclass
class EnergyTotal:
    window_start: datetime
    window_end: datetime
    energy_wh: float = 0.0
    per_device_wh: Dict[str, float] = field(default_factory=dict)
    sample_counts: Dict[str, int] = field(default_factory=dict)


def present_wh(energy_wh: float) -> float:
    return round(energy_wh, 3)


def present_kwh(energy_wh: float) -> float:
    return round(energy_wh / 1000.0, 6)


def partition_by_device(samples: Iterable[PowerSample]) -> Dict[str, List[PowerSample]]:
    """Group samples per device, each group sorted by timestamp"""
    groups: Dict[str, List[PowerSample]] = defaultdict(list)
    for sample in samples:
        groups[sample.device_id].append(sample)
    for device_samples in groups.values():
        device_samples.sort(key=lambda s: ensure_utc(s.timestamp))
    return dict(groups)


def integrate_device_wh(
    samples: Sequence[PowerSample],
    window_start: datetime,
    window_end: datetime,
) -> float:
    """Wh for one device's samples over ``[window_start, window_end)``.

    Samples before the window carry their value into it until the next sample;
    samples at or after ``window_end`` are ignored.
    """
    window_start, window_end = ensure_utc(window_start), ensure_utc(window_end)
    if window_end <= window_start or not samples:
        return 0.0

    ordered = sorted(samples, key=lambda s: ensure_utc(s.timestamp))
    contributions = []
    for i, sample in enumerate(ordered):
        held_from = ensure_utc(sample.timestamp)
        if held_from >= window_end:
            break
        held_until = ensure_utc(ordered[i + 1].timestamp) if i + 1 < len(ordered) else window_end

        start = max(held_from, window_start)
        end = min(held_until, window_end)
        if end > start:
            hours = (end - start).total_seconds() / SECONDS_PER_HOUR
            contributions.append(float(sample.value) * hours)
    return math.fsum(contributions)


def integrate_window(
    samples: Iterable[PowerSample],
    window_start: datetime,
    window_end: datetime,
) -> EnergyTotal:
    """Total energy over a window, with a per-device breakdown"""
    window_start, window_end = ensure_utc(window_start), ensure_utc(window_end)
    total = EnergyTotal(window_start=window_start, window_end=window_end)

    for device_id, device_samples in partition_by_device(samples).items():
        total.per_device_wh[device_id] = integrate_device_wh(device_samples, window_start, window_end)
        total.sample_counts[device_id] = sum(
            1 for s in device_samples if window_start <= ensure_utc(s.timestamp) < window_end
        )

    total.energy_wh = math.fsum(total.per_device_wh.values())
    return total


def local_day_bounds(start_date: date, end_date: date, tz_name: str) -> List[Tuple[datetime, datetime]]:
    """Half-open ``[midnight, next midnight)`` intervals for each day, inclusive range.

    Boundaries are local midnights in ``tz_name``, so DST days last 23 or 25 hours.
    """
    tz = pytz.timezone(tz_name)
    bounds = []
    day = start_date
    while day <= end_date:
        local_start = tz.localize(datetime.combine(day, time.min))
        local_end = tz.localize(datetime.combine(day + timedelta(days=1), time.min))
        bounds.append((local_start, local_end))
        day += timedelta(days=1)
    return bounds


def daily_buckets(
    samples: Iterable[PowerSample],
    start_date: date,
    end_date: date,
    tz_name: str = "UTC",
) -> List[EnergyBucket]:
    """One bucket per local calendar day, never omitted.

    A day with no samples and nothing held into it from an earlier sample
    reports 0 Wh.
    """
    groups = partition_by_device(samples)
    buckets = []
    for local_start, local_end in local_day_bounds(start_date, end_date, tz_name):
        energy_wh = math.fsum(
            integrate_device_wh(device_samples, local_start, local_end)
            for device_samples in groups.values()
        )
        buckets.append(EnergyBucket(period_start=local_start, period_end=local_end, energy_wh=energy_wh))
    logger.debug(f"Computed {len(buckets)} daily energy buckets (tz={tz_name})")
    return buckets
