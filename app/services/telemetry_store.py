"""Persistence of telemetry samples.

The store is the only shared mutable resource; concurrency control is left to
the database. Connection-level failures surface as ``StorageUnavailable`` and
are never retried here.
"""

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, and_, or_, delete, desc
from sqlalchemy.exc import (
    DBAPIError, DataError, IntegrityError, InterfaceError, OperationalError, SQLAlchemyError
)
from dataclasses import dataclass, field
from datetime import datetime
from typing import Collection, List, Optional, Sequence
import logging

from app.core.exceptions import StorageUnavailable, ValidationError
from app.core.timeutils import ensure_utc
from app.models.telemetry import Telemetry

logger = logging.getLogger(__name__)


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (OperationalError, InterfaceError, TimeoutError)):
        return True
    return isinstance(exc, DBAPIError) and exc.connection_invalidated


def _reason(exc: SQLAlchemyError) -> str:
    orig = getattr(exc, "orig", None)
    return str(orig if orig is not None else exc).splitlines()[0]


@dataclass
class InsertManyResult:
    inserted: List[Telemetry] = field(default_factory=list)
    failures: List[str] = field(default_factory=list)


class TelemetryStore:
    """Append-only telemetry persistence with range and match queries"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def insert_one(self, record: Telemetry) -> Telemetry:
        try:
            self.db.add(record)
            await self.db.commit()
            return record
        except (IntegrityError, DataError) as e:
            await self.db.rollback()
            raise ValidationError(f"Telemetry rejected by store: {_reason(e)}") from e
        except SQLAlchemyError as e:
            await self.db.rollback()
            if _is_transient(e):
                raise StorageUnavailable() from e
            raise

    async def insert_many(self, records: Sequence[Telemetry]) -> InsertManyResult:
        """Insert records with unordered semantics.

        One transaction is tried first. If the database rejects it because of a
        bad record, every record is retried in its own transaction so a single
        failure cannot block the others; the failures are collected, not raised.
        """
        if not records:
            return InsertManyResult()

        try:
            self.db.add_all(records)
            await self.db.commit()
            return InsertManyResult(inserted=list(records))
        except SQLAlchemyError as e:
            await self.db.rollback()
            if _is_transient(e):
                raise StorageUnavailable() from e
            logger.warning(f"Bulk insert of {len(records)} records rejected, retrying unordered: {_reason(e)}")

        result = InsertManyResult()
        for record in records:
            try:
                self.db.add(record)
                await self.db.commit()
                # Detach so later rollbacks in this loop do not expire it
                self.db.expunge(record)
                result.inserted.append(record)
            except SQLAlchemyError as e:
                await self.db.rollback()
                if _is_transient(e):
                    raise StorageUnavailable() from e
                result.failures.append(f"{record.device_id} at {record.timestamp.isoformat()}: {_reason(e)}")
        return result

    async def find(
        self,
        device_ids: Optional[Collection[str]] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
    ) -> List[Telemetry]:
        """Samples whose timestamp or received_at lies in the inclusive range, newest first"""
        stmt = select(Telemetry)
        if device_ids is not None:
            stmt = stmt.where(Telemetry.device_id.in_(list(device_ids)))

        start_time, end_time = ensure_utc(start_time), ensure_utc(end_time)
        if start_time is not None or end_time is not None:
            stmt = stmt.where(or_(
                _in_range(Telemetry.timestamp, start_time, end_time),
                _in_range(Telemetry.received_at, start_time, end_time),
            ))

        stmt = stmt.order_by(desc(Telemetry.timestamp))
        result = await self._execute(stmt)
        return list(result.scalars().all())

    async def find_in_window(
        self,
        start_time: datetime,
        end_time: datetime,
        category: Optional[str] = None,
        device_ids: Optional[Collection[str]] = None,
    ) -> List[Telemetry]:
        """Samples with start_time <= timestamp < end_time, oldest first"""
        stmt = select(Telemetry).where(and_(
            Telemetry.timestamp >= ensure_utc(start_time),
            Telemetry.timestamp < ensure_utc(end_time),
        ))
        if category is not None:
            stmt = stmt.where(Telemetry.category == category)
        if device_ids is not None:
            stmt = stmt.where(Telemetry.device_id.in_(list(device_ids)))
        stmt = stmt.order_by(Telemetry.device_id, Telemetry.timestamp)
        result = await self._execute(stmt)
        return list(result.scalars().all())

    async def latest_before(
        self,
        before: datetime,
        category: Optional[str] = None,
        device_ids: Optional[Collection[str]] = None,
    ) -> List[Telemetry]:
        """Each device's most recent sample with timestamp < before"""
        conditions = [Telemetry.timestamp < ensure_utc(before)]
        if category is not None:
            conditions.append(Telemetry.category == category)
        if device_ids is not None:
            conditions.append(Telemetry.device_id.in_(list(device_ids)))

        latest = (
            select(Telemetry.device_id, func.max(Telemetry.timestamp).label("last_timestamp"))
            .where(and_(*conditions))
            .group_by(Telemetry.device_id)
            .subquery()
        )
        stmt = select(Telemetry).join(latest, and_(
            Telemetry.device_id == latest.c.device_id,
            Telemetry.timestamp == latest.c.last_timestamp,
        ))
        if category is not None:
            stmt = stmt.where(Telemetry.category == category)
        stmt = stmt.order_by(Telemetry.device_id)
        result = await self._execute(stmt)
        return list(result.scalars().all())

    async def category_stats(self, device_id: str, start_time: datetime, end_time: datetime):
        """Per-category aggregates for one device; rows are (category, sample_count, avg, min, max, last)"""
        stmt = select(
            Telemetry.category,
            func.count(Telemetry.id).label("sample_count"),
            func.avg(Telemetry.value).label("avg_value"),
            func.min(Telemetry.value).label("min_value"),
            func.max(Telemetry.value).label("max_value"),
            func.max(Telemetry.timestamp).label("last_reading"),
        ).where(and_(
            Telemetry.device_id == device_id,
            Telemetry.timestamp >= ensure_utc(start_time),
            Telemetry.timestamp <= ensure_utc(end_time),
        )).group_by(Telemetry.category).order_by(Telemetry.category)
        result = await self._execute(stmt)
        return result.all()

    async def delete_before(self, cutoff: datetime) -> int:
        """Delete samples with timestamp strictly before the cutoff"""
        try:
            result = await self.db.execute(
                delete(Telemetry).where(Telemetry.timestamp < ensure_utc(cutoff))
            )
            await self.db.commit()
            return int(result.rowcount or 0)
        except SQLAlchemyError as e:
            await self.db.rollback()
            if _is_transient(e):
                raise StorageUnavailable() from e
            raise

    async def ping(self) -> bool:
        try:
            await self.db.execute(select(1))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Store health check failed: {e}")
            return False

    async def _execute(self, stmt):
        try:
            return await self.db.execute(stmt)
        except SQLAlchemyError as e:
            if _is_transient(e):
                logger.error(f"Telemetry store unavailable: {e}")
                raise StorageUnavailable() from e
            raise


def _in_range(column, start: Optional[datetime], end: Optional[datetime]):
    conditions = []
    if start is not None:
        conditions.append(column >= start)
    if end is not None:
        conditions.append(column <= end)
    return and_(*conditions)
