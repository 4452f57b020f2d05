from .ingestion_service import IngestionService, get_ingestion_service
from .query_service import QueryService, get_query_service
from .energy_service import EnergyService, get_energy_service
from .retention import RetentionSweeper, get_retention_sweeper
from .broadcaster import TelemetryBroadcaster

__all__ = [
    "IngestionService", "get_ingestion_service",
    "QueryService", "get_query_service",
    "EnergyService", "get_energy_service",
    "RetentionSweeper", "get_retention_sweeper",
    "TelemetryBroadcaster",
]
