"""Hardware detection and FFmpeg status API endpoints"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException

from accelstream.streaming.error_handler import ProbeError
from accelstream.streaming.orchestrator import StreamOrchestrator, get_orchestrator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Hardware"])


def _hardware_status(orchestrator: StreamOrchestrator) -> dict[str, Any]:
    prober = orchestrator.prober
    snapshot = orchestrator.get_capabilities()
    network = orchestrator.get_network_status()
    latest = network.latest
    return {
        "gpu": {
            "detected": snapshot.hardware_available,
            "model": snapshot.device_name or None,
            "memory_mb": snapshot.device_memory_mb,
            "method": snapshot.accel_method.value,
        },
        "ffmpeg": {
            "available": prober.current is not None and not prober.current.from_cache,
            "hwaccel": snapshot.hardware_available,
            "version": snapshot.ffmpeg_version or None,
        },
        "network": {
            "speed": latest.bandwidth_mbps if latest else None,
            "latency": latest.latency_ms if latest else None,
            "quality": network.quality.value if network.quality else None,
        },
        "degraded": prober.degraded,
        "last_error": prober.last_error.to_dict() if prober.last_error else None,
        "capabilities": snapshot.to_dict(),
    }


@router.get("/hardware/detect")
async def get_hardware(
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Current hardware and codec capabilities."""
    return _hardware_status(orchestrator)


@router.post("/hardware/detect")
async def redetect_hardware(
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Re-run hardware detection."""
    try:
        await orchestrator.reprobe()
    except ProbeError as e:
        logger.warning(f"Hardware re-detection failed: {e.message}")
        raise HTTPException(status_code=503, detail=e.to_dict()) from e
    return _hardware_status(orchestrator)


@router.get("/ffmpeg/status")
async def ffmpeg_status(
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """FFmpeg readiness and pipeline usage."""
    snapshot = orchestrator.get_capabilities()
    stats = orchestrator.get_stats()
    return {
        "status": "degraded" if orchestrator.prober.degraded else "ready",
        "version": snapshot.ffmpeg_version or None,
        "hwaccel_available": snapshot.hardware_available,
        "gpu_decode": sorted(snapshot.hw_decode_codecs),
        "gpu_encode": sorted(snapshot.hw_encode_codecs),
        "codecs_supported": sorted(snapshot.decode_codecs | snapshot.encode_codecs),
        "hardware_budget": stats["sessions"]["hardware_budget"],
        "active_streams": stats["sessions"]["active_sessions"],
        "pipelines": stats.get("pipelines"),
    }


@router.post("/ffmpeg/initialize")
async def ffmpeg_initialize(
    orchestrator: StreamOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Probe FFmpeg and report what it can do."""
    try:
        snapshot = await orchestrator.reprobe()
    except ProbeError as e:
        raise HTTPException(status_code=503, detail=e.to_dict()) from e
    return {
        "status": "initialized",
        "version": snapshot.ffmpeg_version,
        "hwaccel_available": snapshot.hardware_available,
        "codecs_supported": sorted(snapshot.decode_codecs | snapshot.encode_codecs),
        "gpu_decode": sorted(snapshot.hw_decode_codecs),
        "gpu_encode": sorted(snapshot.hw_encode_codecs),
    }
