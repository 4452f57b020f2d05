import logging
import sys
from typing import Any, Dict, Optional

from app.core.config import settings

_HANDLER_NAME = "telemetry-console"


def setup_logging() -> None:
    """Setup application logging configuration"""

    root_logger = logging.getLogger()
    root_logger.setLevel(settings.LOG_LEVEL)

    # Importing the app twice (uvicorn reload, tests) must not stack handlers
    if not any(h.get_name() == _HANDLER_NAME for h in root_logger.handlers):
        formatter = logging.Formatter(
            fmt=settings.LOG_FORMAT,
            datefmt="%Y-%m-%d %H:%M:%S"
        )
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.set_name(_HANDLER_NAME)
        console_handler.setFormatter(formatter)
        console_handler.setLevel(settings.LOG_LEVEL)
        root_logger.addHandler(console_handler)

    noisy_loggers = {
        "uvicorn": "INFO",
        "uvicorn.access": "INFO",
        "sqlalchemy.engine": "WARNING",
        "aiosqlite": "WARNING",
        "asyncpg": "WARNING",
        "redis": "WARNING",
    }
    for logger_name, level in noisy_loggers.items():
        logging.getLogger(logger_name).setLevel(level)

    if not settings.DEBUG:
        logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


class StructuredLogger:
    """Logger that renders keyword context as trailing key=value pairs"""

    def __init__(self, name: str, context: Optional[Dict[str, Any]] = None):
        self.logger = logging.getLogger(name)
        self.context = dict(context or {})

    def bind(self, **kwargs: Any) -> "StructuredLogger":
        """Return a logger that always includes the given fields"""
        return StructuredLogger(self.logger.name, {**self.context, **kwargs})

    def _log(self, level: int, message: str, **kwargs: Any) -> None:
        fields = {**self.context, **kwargs}
        if not self.logger.isEnabledFor(level):
            return
        extra_data = " | ".join(f"{k}={v}" for k, v in fields.items())
        self.logger.log(level, f"{message} | {extra_data}" if extra_data else message)

    def debug(self, message: str, **kwargs: Any) -> None:
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._log(logging.ERROR, message, **kwargs)


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance"""
    return StructuredLogger(name)
