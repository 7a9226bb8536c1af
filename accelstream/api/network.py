"""Network telemetry and proxy API endpoints"""

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException

from accelstream.api.schemas import ProxyConfigRequest, ProxyTestRequest
from accelstream.streaming.error_handler import ProxyError, ProxyErrorReason
from accelstream.streaming.orchestrator import StreamOrchestrator, get_orchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/network", tags=["Network"])


@router.get("/test")
async def network_status(
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Monitoring status without running a test."""
    status = orchestrator.monitor.status()
    status["latest"] = orchestrator.get_network_status().to_dict()["latest"]
    return status


@router.post("/test")
async def run_network_test(
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Run a network test now."""
    sample = await orchestrator.measure_network()
    return sample.to_dict()


@router.get("/proxy")
async def get_proxy(
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Active proxy settings (no password)."""
    config = orchestrator.get_proxy_config()
    route = orchestrator.resolver.active_route
    return {
        "config": config.to_dict(),
        "status": "enabled" if config.enabled else "disabled",
        "route": route.to_dict() if route else None,
    }


@router.post("/proxy")
async def set_proxy(
    request: ProxyConfigRequest,
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Validate, test and apply proxy settings."""
    config = request.to_proxy_config()
    try:
        await orchestrator.set_proxy_config(config)
    except ProxyError as e:
        status_code = 409 if e.reason == ProxyErrorReason.SUPERSEDED else 400
        raise HTTPException(status_code=status_code, detail=e.to_dict()) from e
    return {
        "success": True,
        "config": config.to_dict(),
        "message": "Proxy configuration saved successfully",
    }


@router.put("/proxy")
async def test_proxy(
    request: ProxyTestRequest,
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Test proxy settings without applying them."""
    result = await orchestrator.test_proxy_config(request.config.to_proxy_config())
    return {
        "test_result": result,
        "tested_at": datetime.now(timezone.utc).isoformat(),
    }


@router.delete("/proxy")
async def clear_proxy(
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Return to direct connections."""
    await orchestrator.clear_proxy_config()
    return {"success": True, "message": "Proxy configuration cleared"}
