"""
FFmpeg Capabilities Detection Module

Detects available hardware acceleration and codec support.
"""

from accelstream.ffmpeg.capabilities.detector import (
    CapabilityProber,
    CapabilitySnapshot,
    HardwareAccelType,
    build_snapshot,
    choose_preferred_method,
    detect_capabilities,
)

__all__ = [
    "CapabilityProber",
    "CapabilitySnapshot",
    "HardwareAccelType",
    "build_snapshot",
    "choose_preferred_method",
    "detect_capabilities",
]
