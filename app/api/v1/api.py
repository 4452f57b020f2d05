from fastapi import APIRouter

from app.api.v1.endpoints import realtime, telemetry

api_router = APIRouter()

# Include telemetry endpoints
api_router.include_router(telemetry.router, prefix="/telemetry", tags=["telemetry"])

# Include real-time stream
api_router.include_router(realtime.router, prefix="/telemetry", tags=["realtime"])
