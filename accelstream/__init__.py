"""
AccelStream - Hardware-Accelerated Stream Orchestration

Local streaming client core:
- Codec and hardware acceleration detection through FFmpeg
- Per-channel transcode pipeline selection
- Network telemetry with adaptive quality
- Optional proxy routing
- A stable stream handle across pipeline reconfiguration
"""

__version__ = "0.3.0"
__author__ = "AccelStream Contributors"
__license__ = "MIT"

from accelstream.config import get_config, load_config

__all__ = [
    "__version__",
    "get_config",
    "load_config",
]
