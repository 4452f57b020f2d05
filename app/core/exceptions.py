"""Error taxonomy for the telemetry service.

Every error raised by the service layer derives from ``TelemetryServiceError``
and carries the HTTP status the API answers with, plus a stable ``code`` that
clients can switch on. Translation to a response happens in one exception
handler registered in ``app.main``.
"""

from typing import Any, Dict, List, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse


class TelemetryServiceError(Exception):
    """Base class for all service-level errors"""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code}


# Validation (never retried) -------------------------------------------------

class ValidationError(TelemetryServiceError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "validation_error"


class BusinessRuleViolation(ValidationError):
    """A sample broke one of the ingestion business rules.

    ``index`` is the 1-based position of the record inside a batch, or
    ``None`` for single ingestion.
    """

    code = "business_rule_violation"
    reason: str = "Business rule violated"

    def __init__(self, index: Optional[int] = None, reason: Optional[str] = None):
        self.index = index
        self.reason = reason or self.reason
        prefix = f"Record {index}: " if index is not None else ""
        super().__init__(f"{prefix}{self.reason}")

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.index is not None:
            body["index"] = self.index
        return body


class ValueOutOfRange(BusinessRuleViolation):
    code = "value_out_of_range"
    reason = "Value must be between -1,000,000 and 1,000,000"


class TimestampImplausible(BusinessRuleViolation):
    code = "timestamp_implausible"
    reason = "Timestamp appears to be invalid"


class InvalidDeviceId(BusinessRuleViolation):
    code = "invalid_device_id"
    reason = "Device ID contains invalid characters"


class EmptyBatch(ValidationError):
    code = "empty_batch"

    def __init__(self):
        super().__init__("Batch must contain at least one record")


class BatchTooLarge(ValidationError):
    code = "batch_too_large"

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"Batch size cannot exceed {limit} records (got {size})")


class InvalidRetention(ValidationError):
    code = "invalid_retention"

    def __init__(self, days_to_keep: Any):
        self.days_to_keep = days_to_keep
        super().__init__("Days to keep must be between 1 and 365")


class InvalidStatsWindow(ValidationError):
    code = "invalid_stats_window"

    def __init__(self, hours: Any):
        self.hours = hours
        super().__init__("Hours must be between 1 and 168")


class InvalidQuery(ValidationError):
    code = "invalid_query"


# Referential integrity -------------------------------------------------------

class UnknownDevice(TelemetryServiceError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "unknown_device"

    def __init__(self, device_id: str):
        self.device_id = device_id
        super().__init__(f"Device '{device_id}' not found")


class NoValidRecords(TelemetryServiceError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "no_valid_records"

    def __init__(self, dropped: int):
        self.dropped = dropped
        super().__init__("No telemetry ingested: all records referenced unknown devices")


# Admission -------------------------------------------------------------------

class RateLimited(TelemetryServiceError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    code = "rate_limited"

    def __init__(self, tier: str, limit: int, window_seconds: int, retry_after: int):
        self.tier = tier
        self.limit = limit
        self.window_seconds = window_seconds
        self.retry_after = max(1, retry_after)
        super().__init__(
            f"Rate limit exceeded: {limit} requests per {window_seconds}s ({tier} tier)"
        )


# Storage ---------------------------------------------------------------------

class StorageUnavailable(TelemetryServiceError):
    """Transient infrastructure failure; callers may retry"""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "storage_unavailable"

    def __init__(self, message: str = "Database connection error. Please try again later."):
        super().__init__(message)


class PartialBatchFailure(TelemetryServiceError):
    """Some batch records failed at the storage layer.

    ``inserted`` holds the records that did make it into the store.
    """

    status_code = status.HTTP_400_BAD_REQUEST
    code = "batch_insert_failed"

    def __init__(self, failures: List[str], inserted: Optional[list] = None):
        self.failures = failures
        self.inserted = inserted or []
        super().__init__(f"Batch insert failed: {'; '.join(failures)}")

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["inserted"] = len(self.inserted)
        body["insertedIds"] = [str(record.id) for record in self.inserted]
        body["failed"] = len(self.failures)
        return body


BatchInsertFailed = PartialBatchFailure


async def telemetry_error_handler(request: Request, exc: TelemetryServiceError) -> JSONResponse:
    """Render a service error as a JSON response"""
    headers = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)
