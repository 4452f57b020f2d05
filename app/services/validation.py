"""Business-rule checks for a single telemetry sample.

Only rules that protect the store are enforced here; type checking is done by
the request schemas.
"""

import re
from datetime import datetime, timedelta
from typing import Optional

from app.core.config import settings
from app.core.exceptions import InvalidDeviceId, TimestampImplausible, ValueOutOfRange
from app.core.timeutils import ensure_utc, utcnow
from app.schemas.telemetry import TelemetryBase

DEVICE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


def validate_sample(
    sample: TelemetryBase,
    index: Optional[int] = None,
    now: Optional[datetime] = None,
) -> None:
    """Raise the first business rule the sample violates.

    ``index`` is the 0-based position inside a batch; errors report it 1-based.
    """
    position = index + 1 if index is not None else None

    if not -settings.MAX_ABS_VALUE <= sample.value <= settings.MAX_ABS_VALUE:
        raise ValueOutOfRange(position)

    now = ensure_utc(now) if now is not None else utcnow()
    tolerance = timedelta(days=settings.TIMESTAMP_TOLERANCE_DAYS)
    timestamp = ensure_utc(sample.timestamp)
    if timestamp < now - tolerance or timestamp > now + tolerance:
        raise TimestampImplausible(position)

    if not DEVICE_ID_PATTERN.fullmatch(sample.device_id or ""):
        raise InvalidDeviceId(position)
