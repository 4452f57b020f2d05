from .telemetry import (
    TelemetryBase, TelemetryCreate, TelemetryResponse, TelemetryBatch,
    SingleIngest, BatchIngest, IngestRequest, DeviceSummary,
    CategoryStats, StatsPeriod, DeviceStatsResponse,
    DeviceEnergy, EnergyWindowResponse, EnergyBucketResponse, DailyEnergyResponse,
    CleanupResponse, BroadcastResponse, HealthMetrics
)

__all__ = [
    "TelemetryBase", "TelemetryCreate", "TelemetryResponse", "TelemetryBatch",
    "SingleIngest", "BatchIngest", "IngestRequest", "DeviceSummary",
    "CategoryStats", "StatsPeriod", "DeviceStatsResponse",
    "DeviceEnergy", "EnergyWindowResponse", "EnergyBucketResponse", "DailyEnergyResponse",
    "CleanupResponse", "BroadcastResponse", "HealthMetrics"
]
