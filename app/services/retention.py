from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from datetime import timedelta
from typing import Optional
import asyncio
import logging

from app.core.database import AsyncSessionLocal
from app.core.exceptions import InvalidRetention
from app.core.timeutils import utcnow
from app.services.telemetry_store import TelemetryStore

logger = logging.getLogger(__name__)

MIN_DAYS_TO_KEEP = 1
MAX_DAYS_TO_KEEP = 365


class RetentionSweeper:
    """Deletes telemetry older than a retention horizon.

    Bound to a request's store when given one; otherwise every sweep opens its
    own session, which is what the background loop relies on.
    """

    def __init__(
        self,
        store: Optional[TelemetryStore] = None,
        session_factory: async_sessionmaker = AsyncSessionLocal,
    ):
        self.store = store
        self.session_factory = session_factory

    async def delete_older_than(self, days_to_keep: int) -> int:
        """Delete samples with timestamp before now - days_to_keep; returns the count"""
        if (
            isinstance(days_to_keep, bool)
            or not isinstance(days_to_keep, int)
            or not MIN_DAYS_TO_KEEP <= days_to_keep <= MAX_DAYS_TO_KEEP
        ):
            raise InvalidRetention(days_to_keep)

        cutoff = utcnow() - timedelta(days=days_to_keep)
        logger.info(f"Cleaning up telemetry older than {days_to_keep} days (before {cutoff.isoformat()})")

        if self.store is not None:
            deleted = await self.store.delete_before(cutoff)
        else:
            async with self.session_factory() as session:
                deleted = await TelemetryStore(session).delete_before(cutoff)

        logger.info(f"Cleaned up {deleted} old telemetry records")
        return deleted

    async def run_periodically(self, interval_seconds: float, days_to_keep: int) -> None:
        """Sweep every ``interval_seconds`` until cancelled"""
        logger.info(f"Retention sweep scheduled every {interval_seconds}s, keeping {days_to_keep} days")
        while True:
            try:
                await self.delete_older_than(days_to_keep)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Retention sweep failed: {e}")
            await asyncio.sleep(interval_seconds)


def get_retention_sweeper(db: AsyncSession) -> RetentionSweeper:
    """Dependency to get the retention sweeper"""
    return RetentionSweeper(TelemetryStore(db))
