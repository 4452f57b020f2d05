"""Tiered admission control.

Each tier is a fixed window: the first request for a key opens a window of
``window_seconds`` and every request inside it (admitted or not) increments
the counter. Keys are ``rate_limit:<tier>:<scope>:<client>`` so tiers and route
groups reset independently.
"""

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Optional, Tuple

from app.core.config import Settings
from app.core.exceptions import RateLimited
from app.core.redis_client import RedisService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Tier:
    name: str
    limit: int
    window_seconds: int


class MemoryCounterStore:
    """Per-process counters, enough for a single instance"""

    _PRUNE_THRESHOLD = 10_000

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = Lock()
        # key -> (window_start, count, window_seconds)
        self._counters: Dict[str, Tuple[float, int, int]] = {}

    async def hit(self, key: str, window_seconds: int) -> Optional[Tuple[int, float]]:
        now = self._clock()
        with self._lock:
            window_start, count, _ = self._counters.get(key, (now, 0, window_seconds))
            if now - window_start >= window_seconds:
                window_start, count = now, 0
            count += 1
            self._counters[key] = (window_start, count, window_seconds)
            if len(self._counters) > self._PRUNE_THRESHOLD:
                self._prune(now)
        return count, window_seconds - (now - window_start)

    def _prune(self, now: float) -> None:
        expired = [k for k, (start, _, window) in self._counters.items() if now - start >= window]
        for key in expired:
            del self._counters[key]


class RedisCounterStore:
    """Counters shared by every instance through Redis"""

    def __init__(self, redis_service: Optional[RedisService] = None):
        self.redis = redis_service or RedisService()

    async def hit(self, key: str, window_seconds: int) -> Optional[Tuple[int, float]]:
        return await self.redis.incr_window(key, window_seconds)


class AdmissionController:
    """Gate requests per client and tier before they reach a handler"""

    def __init__(self, tiers: Dict[str, Tier], store, enabled: bool = True):
        self.tiers = tiers
        self.store = store
        self.enabled = enabled

    async def admit(
        self,
        client_id: str,
        tier: str,
        scope: str = "default",
        limit: Optional[int] = None,
    ) -> None:
        """Count one request; raise ``RateLimited`` if the window is exhausted"""
        if not self.enabled:
            return

        tier_def = self.tiers[tier]
        max_requests = limit if limit is not None else tier_def.limit
        key = f"rate_limit:{tier_def.name}:{scope}:{client_id}"

        result = await self.store.hit(key, tier_def.window_seconds)
        if result is None:
            # Counter store outage must not take ingestion down
            logger.warning(f"Admission counter unavailable, admitting request: key={key}")
            return

        count, remaining = result
        if count > max_requests:
            logger.warning(
                f"RATE_LIMIT_EXCEEDED key={key} count={count} limit={max_requests}"
            )
            raise RateLimited(
                tier=tier_def.name,
                limit=max_requests,
                window_seconds=tier_def.window_seconds,
                retry_after=int(remaining + 0.999),
            )


def build_tiers(settings: Settings) -> Dict[str, Tier]:
    return {
        "short": Tier("short", settings.RATE_LIMIT_SHORT_LIMIT, settings.RATE_LIMIT_SHORT_WINDOW_SECONDS),
        "medium": Tier("medium", settings.RATE_LIMIT_MEDIUM_LIMIT, settings.RATE_LIMIT_MEDIUM_WINDOW_SECONDS),
        "long": Tier("long", settings.RATE_LIMIT_LONG_LIMIT, settings.RATE_LIMIT_LONG_WINDOW_SECONDS),
    }


def build_admission_controller(settings: Settings) -> AdmissionController:
    if settings.RATE_LIMIT_BACKEND == "redis":
        store = RedisCounterStore()
    else:
        store = MemoryCounterStore()
    logger.info(
        f"Admission control: backend={settings.RATE_LIMIT_BACKEND} enabled={settings.RATE_LIMIT_ENABLED}"
    )
    return AdmissionController(build_tiers(settings), store, enabled=settings.RATE_LIMIT_ENABLED)
