from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Sequence, Union
import logging
import uuid

from app.core.config import settings
from app.core.exceptions import (
    BatchTooLarge, EmptyBatch, NoValidRecords, PartialBatchFailure, UnknownDevice
)
from app.core.timeutils import utcnow
from app.models.telemetry import Telemetry
from app.schemas.telemetry import BatchIngest, SingleIngest, TelemetryCreate
from app.services.broadcaster import TelemetryBroadcaster
from app.services.device_registry import DeviceRegistry
from app.services.telemetry_store import TelemetryStore
from app.services.validation import validate_sample

logger = logging.getLogger(__name__)


class IngestionService:
    """Validates, persists and fans out incoming telemetry"""

    def __init__(
        self,
        store: TelemetryStore,
        registry: DeviceRegistry,
        broadcaster: TelemetryBroadcaster,
        max_batch_size: int = settings.MAX_BATCH_SIZE,
    ):
        self.store = store
        self.registry = registry
        self.broadcaster = broadcaster
        self.max_batch_size = max_batch_size

    async def ingest_one(self, sample: TelemetryCreate) -> Telemetry:
        """Validate and store a single sample, then publish it"""
        logger.info(f"Ingesting single telemetry for device: {sample.device_id}")

        validate_sample(sample)

        if not await self.registry.exists(sample.device_id):
            raise UnknownDevice(sample.device_id)

        record = await self.store.insert_one(self._to_record(sample))
        logger.info(f"Successfully ingested telemetry: {record.id}")

        self._publish(record)
        return record

    async def ingest_batch(self, samples: Sequence[TelemetryCreate]) -> List[Telemetry]:
        """Validate a batch as a unit and store it with partial-failure tolerance.

        Records for unknown devices are dropped with a warning. Storage failures
        of individual records are reported together in one ``PartialBatchFailure``
        after the surviving records have been stored and published.
        """
        if len(samples) == 0:
            raise EmptyBatch()
        if len(samples) > self.max_batch_size:
            raise BatchTooLarge(len(samples), self.max_batch_size)

        logger.info(f"Ingesting batch telemetry with {len(samples)} records")

        now = utcnow()
        for index, sample in enumerate(samples):
            validate_sample(sample, index=index, now=now)

        known = {
            device.device_id
            for device in await self.registry.find_many(s.device_id for s in samples)
        }
        accepted = []
        for sample in samples:
            if sample.device_id in known:
                accepted.append(sample)
            else:
                logger.warning(f"Skipping telemetry for unknown device '{sample.device_id}'")

        if not accepted:
            raise NoValidRecords(dropped=len(samples))

        result = await self.store.insert_many([self._to_record(s) for s in accepted])

        for record in result.inserted:
            self._publish(record)

        if result.failures:
            logger.error(
                f"Batch insert partially failed: {len(result.inserted)} stored, "
                f"{len(result.failures)} failed"
            )
            raise PartialBatchFailure(result.failures, inserted=result.inserted)

        logger.info(
            f"Successfully ingested {len(result.inserted)} telemetry records "
            f"({len(samples) - len(accepted)} dropped)"
        )
        return result.inserted

    async def ingest(self, request: Union[SingleIngest, BatchIngest]) -> List[Telemetry]:
        """Dispatch an explicitly tagged single/batch request"""
        if isinstance(request, SingleIngest):
            return [await self.ingest_one(request.sample)]
        return await self.ingest_batch(request.data)

    def _to_record(self, sample: TelemetryCreate) -> Telemetry:
        return Telemetry(
            id=uuid.uuid4(),
            device_id=sample.device_id,
            category=sample.category,
            value=sample.value,
            status=sample.status,
            timestamp=sample.timestamp,
            received_at=utcnow(),
        )

    def _publish(self, record: Telemetry) -> None:
        # Publish failures must never reach the ingestion caller
        try:
            self.broadcaster.publish(record)
        except Exception as e:
            logger.error(f"Failed to broadcast telemetry {record.id}: {e}")


def get_ingestion_service(db: AsyncSession, broadcaster: TelemetryBroadcaster) -> IngestionService:
    """Dependency to get the ingestion service"""
    return IngestionService(TelemetryStore(db), DeviceRegistry(db), broadcaster)
