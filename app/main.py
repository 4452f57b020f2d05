from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
import asyncio
import uvicorn
import logging
from contextlib import asynccontextmanager

from app.core.config import settings
from app.core.database import init_db, close_db
from app.core.exceptions import TelemetryServiceError, telemetry_error_handler
from app.core.rate_limit import build_admission_controller
from app.core.redis_client import init_redis, close_redis
from app.api.v1.api import api_router
from app.core.logging import setup_logging
from app.services.broadcaster import TelemetryBroadcaster
from app.services.retention import RetentionSweeper

# Setup logging
setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    # Startup
    logger.info(f"Starting up {settings.APP_NAME}...")
    await init_db()

    if settings.RATE_LIMIT_BACKEND == "redis":
        try:
            await init_redis()
        except Exception as e:
            logger.warning(f"Redis unavailable at startup, admission counters will fail open: {e}")

    app.state.broadcaster = TelemetryBroadcaster(queue_size=settings.SUBSCRIBER_QUEUE_SIZE)
    app.state.admission = build_admission_controller(settings)

    sweep_task = None
    if settings.RETENTION_SWEEP_INTERVAL_SECONDS > 0:
        sweep_task = asyncio.create_task(
            RetentionSweeper().run_periodically(
                settings.RETENTION_SWEEP_INTERVAL_SECONDS, settings.DATA_RETENTION_DAYS
            )
        )
    logger.info(f"{settings.APP_NAME} startup complete")

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.APP_NAME}...")
    app.state.broadcaster.close()
    if sweep_task is not None:
        sweep_task.cancel()
        try:
            await sweep_task
        except asyncio.CancelledError:
            pass
    await close_redis()
    await close_db()


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    description="Telemetry ingestion, real-time fan-out and energy accounting for smart home devices",
    version=settings.VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

app.add_exception_handler(TelemetryServiceError, telemetry_error_handler)

# Add middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_HOSTS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=settings.ALLOWED_HOSTS
)

# Include API routes
app.include_router(api_router, prefix="/api/v1")


# Main health check endpoint
@app.get("/api/health")
async def health_check():
    """Main health check endpoint"""
    return {
        "status": "healthy",
        "service": "telemetry-service",
        "version": settings.VERSION,
        "modules": ["ingestion", "realtime", "query", "energy", "retention"],
        "rateLimitBackend": settings.RATE_LIMIT_BACKEND,
    }


# Root endpoint
@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": settings.APP_NAME,
        "description": "Smart home telemetry ingestion and energy monitoring",
        "version": settings.VERSION,
        "docs": "/docs",
        "websocket": "/api/v1/telemetry/ws",
    }


if __name__ == "__main__":
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=settings.PORT,
        reload=settings.DEBUG,
        proxy_headers=True,
        forwarded_allow_ips=settings.FORWARDED_ALLOW_IPS,
        log_level="info"
    )
