"""Tests for the query/filter engine and device statistics."""

from datetime import timedelta

import pytest

from app.core.exceptions import InvalidQuery, InvalidStatsWindow
from app.services.device_registry import DeviceRegistry
from app.services.query_service import QueryService
from app.services.telemetry_store import TelemetryStore
from tests.factories import make_record


@pytest.fixture
async def history(db_session, devices, now):
    """Samples spread over the last few hours, received when they were measured"""
    records = [
        make_record("dev-001", 100.0, now - timedelta(hours=3), received_at=now - timedelta(hours=3)),
        make_record("dev-001", 120.0, now - timedelta(hours=2), received_at=now - timedelta(hours=2)),
        make_record("dev-001", 21.5, now - timedelta(hours=2), category="temperature",
                    received_at=now - timedelta(hours=2)),
        make_record("dev-002", 1500.0, now - timedelta(hours=1), received_at=now - timedelta(hours=1)),
        make_record("dev-003", 60.0, now - timedelta(minutes=10), received_at=now - timedelta(minutes=10)),
    ]
    await TelemetryStore(db_session).insert_many(records)
    return records


@pytest.fixture
def query(db_session):
    return QueryService(TelemetryStore(db_session), DeviceRegistry(db_session))


@pytest.mark.asyncio
async def test_find_all_newest_first(query, history):
    results = await query.find()
    assert len(results) == 5
    timestamps = [r.timestamp for r in results]
    assert timestamps == sorted(timestamps, reverse=True)
    assert results[0].device_id == "dev-003"


@pytest.mark.asyncio
async def test_find_by_device_id(query, history):
    results = await query.find(device_id="dev-001")
    assert {r.device_id for r in results} == {"dev-001"}
    assert len(results) == 3


@pytest.mark.asyncio
async def test_time_bounds_are_inclusive(query, history, now):
    results = await query.find(start_time=now - timedelta(hours=2), end_time=now - timedelta(hours=1))
    assert sorted(r.value for r in results) == [21.5, 120.0, 1500.0]


@pytest.mark.asyncio
async def test_swapped_bounds_give_the_same_result(query, history, now):
    forward = await query.find(start_time=now - timedelta(hours=3), end_time=now - timedelta(hours=1))
    backward = await query.find(start_time=now - timedelta(hours=1), end_time=now - timedelta(hours=3))
    assert [r.id for r in forward] == [r.id for r in backward]
    assert len(forward) == 4


@pytest.mark.asyncio
async def test_open_ended_bounds(query, history, now):
    recent = await query.find(start_time=now - timedelta(minutes=30))
    assert [r.device_id for r in recent] == ["dev-003"]

    older = await query.find(end_time=now - timedelta(hours=2, minutes=30))
    assert [r.value for r in older] == [100.0]


@pytest.mark.asyncio
async def test_late_arrival_matches_on_received_at(db_session, query, devices, now):
    await TelemetryStore(db_session).insert_one(
        make_record("dev-001", 5.0, now - timedelta(days=3), received_at=now - timedelta(minutes=1))
    )
    results = await query.find(start_time=now - timedelta(minutes=5), end_time=now)
    assert [r.value for r in results] == [5.0]


@pytest.mark.asyncio
async def test_room_filter_is_case_insensitive(query, history):
    results = await query.find(room="kitchen")
    assert {r.device_id for r in results} == {"dev-001"}

    results = await query.find(room="LIVING ROOM")
    assert {r.device_id for r in results} == {"dev-002"}


@pytest.mark.asyncio
async def test_type_and_room_must_both_match(query, history):
    assert await query.find(device_type="hvac", room="Kitchen") == []
    results = await query.find(device_type="hvac", room="living room")
    assert {r.device_id for r in results} == {"dev-002"}


@pytest.mark.asyncio
async def test_device_id_is_intersected_with_join_filter(query, history):
    assert await query.find(device_id="dev-001", device_type="lighting") == []
    results = await query.find(device_id="dev-003", device_type="lighting")
    assert [r.device_id for r in results] == ["dev-003"]


@pytest.mark.asyncio
async def test_join_filter_without_matches_returns_empty(query, history):
    assert await query.find(device_type="sauna") == []


@pytest.mark.asyncio
async def test_include_device_attaches_metadata(query, history):
    results = await query.find(device_id="dev-002", include_device=True)
    assert results[0].device.name == "Living Room AC"
    assert results[0].device.type == "hvac"
    assert results[0].device.room == "Living Room"

    plain = await query.find(device_id="dev-002")
    assert plain[0].device is None


@pytest.mark.asyncio
async def test_device_stats_per_category(query, history):
    stats = await query.device_stats("dev-001", hours=24)

    assert stats.device_id == "dev-001"
    assert stats.period.hours == 24
    by_category = {c.category: c for c in stats.categories}
    assert set(by_category) == {"power", "temperature"}

    power = by_category["power"]
    assert power.count == 2
    assert power.avg_value == pytest.approx(110.0)
    assert power.min_value == 100.0
    assert power.max_value == 120.0
    assert power.last_reading.tzinfo is not None


@pytest.mark.asyncio
async def test_device_stats_window_excludes_older_samples(query, history):
    stats = await query.device_stats("dev-001", hours=1)
    assert stats.categories == []


@pytest.mark.asyncio
@pytest.mark.parametrize("hours", [0, 169, -5])
async def test_device_stats_rejects_bad_window(query, hours):
    with pytest.raises(InvalidStatsWindow):
        await query.device_stats("dev-001", hours=hours)


@pytest.mark.asyncio
async def test_device_stats_requires_device_id(query):
    with pytest.raises(InvalidQuery):
        await query.device_stats("  ")
