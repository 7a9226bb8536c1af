"""Health check API endpoints for AccelStream"""

import logging
import platform
from datetime import datetime, timezone
from typing import Any

import psutil
from fastapi import APIRouter, Depends

from accelstream import __version__
from accelstream.streaming.orchestrator import StreamOrchestrator, get_orchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])


@router.get("")
async def health_check(
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """
    Basic health check endpoint.

    Returns:
        dict: "healthy", or "degraded" while running software-only after a failed probe
    """
    degraded = orchestrator.prober.degraded
    return {
        "status": "degraded" if degraded else "healthy",
        "version": __version__,
        "running": orchestrator.is_running,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/detailed")
async def detailed_health_check(
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """
    Detailed health check with component status.

    Returns:
        dict: Detailed health status for all components
    """
    memory = psutil.virtual_memory()
    return {
        "status": "degraded" if orchestrator.prober.degraded else "healthy",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "system": {
            "platform": platform.system(),
            "architecture": platform.machine(),
            "python_version": platform.python_version(),
            "cpu_percent": psutil.cpu_percent(interval=None),
            "memory_percent": memory.percent,
        },
        "components": orchestrator.get_stats(),
    }


@router.get("/live")
async def liveness_check() -> dict[str, str]:
    """Liveness probe."""
    return {"status": "alive"}
