from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
import logging

from app.core.database import get_db
from app.core.rate_limit import AdmissionController
from app.services.broadcaster import TelemetryBroadcaster
from app.services.energy_service import EnergyService, get_energy_service
from app.services.ingestion_service import IngestionService, get_ingestion_service
from app.services.query_service import QueryService, get_query_service
from app.services.retention import RetentionSweeper, get_retention_sweeper

logger = logging.getLogger(__name__)


def client_identity(request: Request) -> str:
    """Peer address of the request.

    Forwarded headers are only honoured through uvicorn's proxy-header
    support, which rewrites the peer for trusted proxies.
    """
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


class RateLimit:
    """Rate limiting dependency for one tier and route group"""

    def __init__(self, tier: str, scope: str = "default", limit: Optional[int] = None):
        self.tier = tier
        self.scope = scope
        self.limit = limit

    async def __call__(self, request: Request) -> None:
        admission: AdmissionController = request.app.state.admission
        await admission.admit(client_identity(request), self.tier, scope=self.scope, limit=self.limit)


def get_broadcaster(request: Request) -> TelemetryBroadcaster:
    return request.app.state.broadcaster


async def ingestion_service(
    db: AsyncSession = Depends(get_db),
    broadcaster: TelemetryBroadcaster = Depends(get_broadcaster),
) -> IngestionService:
    return get_ingestion_service(db, broadcaster)


async def query_service(db: AsyncSession = Depends(get_db)) -> QueryService:
    return get_query_service(db)


async def energy_service(db: AsyncSession = Depends(get_db)) -> EnergyService:
    return get_energy_service(db)


async def retention_sweeper(db: AsyncSession = Depends(get_db)) -> RetentionSweeper:
    return get_retention_sweeper(db)
