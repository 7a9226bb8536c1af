"""API routes for AccelStream"""

from fastapi import APIRouter

from .hardware import router as hardware_router
from .health import router as health_router
from .network import router as network_router
from .streams import router as streams_router

# Create the main API router
api_router = APIRouter(prefix="/api")

api_router.include_router(hardware_router)
api_router.include_router(network_router)
api_router.include_router(streams_router)

__all__ = ["api_router", "health_router"]
