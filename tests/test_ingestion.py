"""Tests for the ingestion pipeline: validation, referential checks, storage and fan-out."""

import logging
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from app.core.exceptions import (
    BatchTooLarge, EmptyBatch, NoValidRecords, PartialBatchFailure, UnknownDevice,
    ValueOutOfRange
)
from app.models.telemetry import Telemetry
from app.schemas.telemetry import BatchIngest, SingleIngest, TelemetryCreate
from app.services.broadcaster import TelemetryBroadcaster
from app.services.device_registry import DeviceRegistry
from app.services.ingestion_service import IngestionService
from app.services.telemetry_store import InsertManyResult, TelemetryStore
from tests.factories import make_record


class FakeRegistry:
    def __init__(self, known=("dev-001", "dev-002")):
        self.known = set(known)

    async def exists(self, device_id):
        return device_id in self.known

    async def find_many(self, device_ids):
        return [type("Device", (), {"device_id": d})() for d in set(device_ids) if d in self.known]


class FakeStore:
    def __init__(self, fail_device=None):
        self.fail_device = fail_device
        self.saved = []

    async def insert_one(self, record):
        self.saved.append(record)
        return record

    async def insert_many(self, records):
        result = InsertManyResult()
        for record in records:
            if record.device_id == self.fail_device:
                result.failures.append(f"{record.device_id}: rejected")
            else:
                self.saved.append(record)
                result.inserted.append(record)
        return result


class ExplodingBroadcaster:
    def publish(self, record):
        raise RuntimeError("socket gone")


def sample(now, device_id="dev-001", value=100.0, minutes=0):
    return TelemetryCreate(
        device_id=device_id,
        category="power",
        value=value,
        timestamp=now - timedelta(minutes=minutes),
    )


@pytest.fixture
def broadcaster():
    return TelemetryBroadcaster(queue_size=2000)


@pytest.fixture
def subscription(broadcaster):
    return broadcaster.subscribe(client="test")


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def service(store, broadcaster):
    return IngestionService(store, FakeRegistry(), broadcaster, max_batch_size=1000)


# ── Single ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_ingest_one_stores_and_publishes(service, store, subscription, now):
    record = await service.ingest_one(sample(now))

    assert store.saved == [record]
    assert record.id is not None
    assert record.received_at is not None
    assert subscription.queue.qsize() == 1
    event = subscription.queue.get_nowait()
    assert event["event"] == "telemetry:update"
    assert event["data"]["deviceId"] == "dev-001"


@pytest.mark.asyncio
async def test_ingest_one_rejects_out_of_range_value(service, store, subscription, now):
    with pytest.raises(ValueOutOfRange):
        await service.ingest_one(sample(now, value=1_000_001))
    assert store.saved == []
    assert subscription.queue.empty()


@pytest.mark.asyncio
async def test_ingest_one_rejects_unknown_device(service, store, now):
    with pytest.raises(UnknownDevice) as exc_info:
        await service.ingest_one(sample(now, device_id="ghost-1"))
    assert exc_info.value.status_code == 404
    assert store.saved == []


@pytest.mark.asyncio
async def test_publish_failure_does_not_fail_ingestion(store, now):
    service = IngestionService(store, FakeRegistry(), ExplodingBroadcaster())
    record = await service.ingest_one(sample(now))
    assert store.saved == [record]


# ── Batch ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_empty_batch_rejected(service):
    with pytest.raises(EmptyBatch):
        await service.ingest_batch([])


@pytest.mark.asyncio
async def test_oversized_batch_rejected(service, store, now):
    with pytest.raises(BatchTooLarge):
        await service.ingest_batch([sample(now, minutes=i % 60) for i in range(1001)])
    assert store.saved == []


@pytest.mark.asyncio
async def test_full_batch_publishes_each_record_once(service, store, subscription, now):
    batch = [sample(now, device_id=("dev-001", "dev-002")[i % 2], minutes=i) for i in range(1000)]

    records = await service.ingest_batch(batch)

    assert len(records) == 1000
    assert len(store.saved) == 1000
    assert subscription.queue.qsize() == 1000


@pytest.mark.asyncio
async def test_batch_validation_is_all_or_nothing(service, store, now):
    batch = [sample(now), sample(now, minutes=1), sample(now, value=-2e6, minutes=2)]
    with pytest.raises(ValueOutOfRange) as exc_info:
        await service.ingest_batch(batch)
    assert exc_info.value.index == 3
    assert store.saved == []


@pytest.mark.asyncio
async def test_unknown_devices_are_dropped_with_warning(service, store, subscription, now, caplog):
    batch = [sample(now), sample(now, device_id="dev-002"), sample(now, device_id="ghost-1")]

    with caplog.at_level(logging.WARNING, logger="app.services.ingestion_service"):
        records = await service.ingest_batch(batch)

    assert [r.device_id for r in records] == ["dev-001", "dev-002"]
    assert subscription.queue.qsize() == 2
    warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
    assert len(warnings) == 1
    assert "ghost-1" in warnings[0].getMessage()


@pytest.mark.asyncio
async def test_batch_of_only_unknown_devices(service, now):
    with pytest.raises(NoValidRecords):
        await service.ingest_batch([sample(now, device_id="ghost-1"), sample(now, device_id="ghost-2")])


@pytest.mark.asyncio
async def test_partial_storage_failure_reports_and_keeps_survivors(broadcaster, subscription, now):
    store = FakeStore(fail_device="dev-002")
    service = IngestionService(store, FakeRegistry(), broadcaster)

    with pytest.raises(PartialBatchFailure) as exc_info:
        await service.ingest_batch([sample(now), sample(now, device_id="dev-002"), sample(now, minutes=1)])

    error = exc_info.value
    assert str(error) == "Batch insert failed: dev-002: rejected"
    assert len(error.inserted) == 2
    body = error.to_dict()
    assert body["failed"] == 1
    assert body["insertedIds"] == [str(r.id) for r in store.saved]
    assert len(set(body["insertedIds"])) == 2
    assert subscription.queue.qsize() == 2


# ── Tagged requests ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_tagged_single_and_batch(service, store, now):
    single = await service.ingest(SingleIngest(kind="single", sample=sample(now)))
    batch = await service.ingest(BatchIngest(kind="batch", data=[sample(now, minutes=1), sample(now, minutes=2)]))

    assert len(single) == 1
    assert len(batch) == 2
    assert len(store.saved) == 3


# ── Real store ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_store_falls_back_to_per_record_inserts(db_session, devices, now):
    from app.core.database import AsyncSessionLocal

    existing = make_record("dev-001", 10.0, now - timedelta(minutes=5))
    async with AsyncSessionLocal() as other:
        other.add(existing)
        await other.commit()

    duplicate = make_record("dev-001", 20.0, now - timedelta(minutes=4))
    duplicate.id = existing.id
    good = [make_record("dev-002", 30.0, now - timedelta(minutes=3)),
            make_record("dev-003", 40.0, now - timedelta(minutes=2))]

    result = await TelemetryStore(db_session).insert_many([good[0], duplicate, good[1]])

    assert [r.device_id for r in result.inserted] == ["dev-002", "dev-003"]
    assert len(result.failures) == 1
    assert result.failures[0].startswith("dev-001 at ")

    count = await db_session.scalar(select(func.count(Telemetry.id)))
    assert count == 3


@pytest.mark.asyncio
async def test_ingest_batch_against_database(db_session, devices, broadcaster, subscription, now):
    service = IngestionService(TelemetryStore(db_session), DeviceRegistry(db_session), broadcaster)

    records = await service.ingest_batch([sample(now), sample(now, device_id="ghost-1", minutes=1)])

    assert len(records) == 1
    assert subscription.queue.qsize() == 1
    count = await db_session.scalar(select(func.count(Telemetry.id)))
    assert count == 1
