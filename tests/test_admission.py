"""Tests for tiered admission control."""

import pytest
from httpx import ASGITransport, AsyncClient

from app.core.config import Settings
from app.core.exceptions import RateLimited
from app.core.rate_limit import (
    AdmissionController, MemoryCounterStore, RedisCounterStore, Tier, build_tiers
)
from app.main import app


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class UnavailableRedis:
    async def incr_window(self, key, window_seconds):
        return None


TIERS = {
    "short": Tier("short", 50, 1),
    "medium": Tier("medium", 20, 10),
    "long": Tier("long", 5, 60),
}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def controller(clock):
    return AdmissionController(TIERS, MemoryCounterStore(clock=clock))


@pytest.mark.asyncio
async def test_fifty_first_request_in_a_second_is_rejected(controller):
    for _ in range(50):
        await controller.admit("10.0.0.1", "short")

    with pytest.raises(RateLimited) as exc_info:
        await controller.admit("10.0.0.1", "short")

    error = exc_info.value
    assert error.status_code == 429
    assert error.tier == "short"
    assert error.retry_after == 1


@pytest.mark.asyncio
async def test_window_resets_after_expiry(controller, clock):
    for _ in range(5):
        await controller.admit("10.0.0.1", "long")
    with pytest.raises(RateLimited) as exc_info:
        await controller.admit("10.0.0.1", "long")
    assert exc_info.value.retry_after == 60

    clock.advance(60)
    await controller.admit("10.0.0.1", "long")


@pytest.mark.asyncio
async def test_retry_after_shrinks_as_window_elapses(controller, clock):
    for _ in range(5):
        await controller.admit("10.0.0.1", "long")
    clock.advance(45.5)
    with pytest.raises(RateLimited) as exc_info:
        await controller.admit("10.0.0.1", "long")
    assert exc_info.value.retry_after == 15


@pytest.mark.asyncio
async def test_tiers_clients_and_scopes_are_independent(controller):
    for _ in range(50):
        await controller.admit("10.0.0.1", "short")

    await controller.admit("10.0.0.1", "medium")
    await controller.admit("10.0.0.2", "short")
    for _ in range(50):
        await controller.admit("10.0.0.1", "short", scope="other")


@pytest.mark.asyncio
async def test_per_route_limit_override(controller):
    for _ in range(40):
        await controller.admit("10.0.0.1", "medium", scope="query", limit=40)
    with pytest.raises(RateLimited) as exc_info:
        await controller.admit("10.0.0.1", "medium", scope="query", limit=40)
    assert exc_info.value.limit == 40


@pytest.mark.asyncio
async def test_disabled_controller_admits_everything(clock):
    controller = AdmissionController(TIERS, MemoryCounterStore(clock=clock), enabled=False)
    for _ in range(100):
        await controller.admit("10.0.0.1", "long")


@pytest.mark.asyncio
async def test_counter_outage_fails_open(caplog):
    controller = AdmissionController(TIERS, RedisCounterStore(UnavailableRedis()))
    for _ in range(10):
        await controller.admit("10.0.0.1", "long")
    assert "admitting request" in caplog.text


def test_tiers_come_from_settings():
    tiers = build_tiers(Settings(RATE_LIMIT_LONG_LIMIT=7, RATE_LIMIT_LONG_WINDOW_SECONDS=30))
    assert tiers["long"] == Tier("long", 7, 30)
    assert tiers["short"] == Tier("short", 50, 1)
    assert tiers["medium"] == Tier("medium", 20, 10)


# ── HTTP ──────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_cleanup_endpoint_is_rate_limited_per_client(client: AsyncClient):
    for _ in range(5):
        response = await client.post("/api/v1/telemetry/cleanup")
        assert response.status_code == 200

    response = await client.post("/api/v1/telemetry/cleanup")
    assert response.status_code == 429
    assert response.json()["code"] == "rate_limited"
    assert int(response.headers["Retry-After"]) >= 1

    async with AsyncClient(
        transport=ASGITransport(app=app, client=("203.0.113.8", 40000)),
        base_url="http://testserver",
    ) as other:
        response = await other.post("/api/v1/telemetry/cleanup")
        assert response.status_code == 200


@pytest.mark.asyncio
async def test_forwarded_header_does_not_change_client_identity(client: AsyncClient):
    for i in range(5):
        response = await client.post(
            "/api/v1/telemetry/cleanup", headers={"X-Forwarded-For": f"198.51.100.{i}"}
        )
        assert response.status_code == 200

    response = await client.post(
        "/api/v1/telemetry/cleanup", headers={"X-Forwarded-For": "198.51.100.99"}
    )
    assert response.status_code == 429


@pytest.mark.asyncio
async def test_health_is_not_rate_limited(client: AsyncClient):
    for _ in range(60):
        response = await client.get("/api/health")
        assert response.status_code == 200
