"""
Configuration management for AccelStream.

Handles loading, validation, and access to application configuration.
"""

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field

# Global configuration instance
_config: Optional["AccelStreamConfig"] = None


class ServerConfig(BaseModel):
    """Server configuration."""
    host: str = "127.0.0.1"
    port: int = 8421
    log_level: str = "INFO"


class HardwareAccelerationConfig(BaseModel):
    """Hardware acceleration settings."""
    enabled: bool = True
    preferred: str = "auto"  # auto, nvenc, qsv, vaapi, videotoolbox, amf, none
    # Memory each hardware transcode session is assumed to need on the device.
    session_memory_mb: int = 512
    # Hard cap on concurrent hardware sessions (0 = derive from device memory)
    max_sessions: int = 0


class FFmpegTimeoutsConfig(BaseModel):
    """FFmpeg timeout settings (seconds)."""
    probe: float = 5.0
    startup: float = 15.0
    stop: float = 5.0
    connection: int = 30


class FFmpegConfig(BaseModel):
    """FFmpeg configuration."""
    path: str = "ffmpeg"
    nvidia_smi_path: str = "nvidia-smi"
    log_level: str = "warning"
    hwaccel_device: Optional[str] = None  # e.g. /dev/dri/renderD128
    audio_codec: str = "aac"
    audio_bitrate: str = "128k"
    read_size: int = 65536
    hardware_acceleration: HardwareAccelerationConfig = Field(
        default_factory=HardwareAccelerationConfig
    )
    timeouts: FFmpegTimeoutsConfig = Field(default_factory=FFmpegTimeoutsConfig)


class QualityThreshold(BaseModel):
    """Minimum network figures for one quality class."""
    min_bandwidth_mbps: float
    max_latency_ms: float
    max_packet_loss: float  # fraction, 0.001 == 0.1%


class QualityThresholdsConfig(BaseModel):
    """Thresholds mapping raw telemetry onto quality classes."""
    excellent: QualityThreshold = Field(
        default_factory=lambda: QualityThreshold(
            min_bandwidth_mbps=50, max_latency_ms=20, max_packet_loss=0.001
        )
    )
    good: QualityThreshold = Field(
        default_factory=lambda: QualityThreshold(
            min_bandwidth_mbps=25, max_latency_ms=50, max_packet_loss=0.005
        )
    )
    fair: QualityThreshold = Field(
        default_factory=lambda: QualityThreshold(
            min_bandwidth_mbps=10, max_latency_ms=100, max_packet_loss=0.01
        )
    )


class TelemetryConfig(BaseModel):
    """Network telemetry monitor configuration."""
    enabled: bool = True
    interval_min_seconds: float = 2.0
    interval_max_seconds: float = 5.0
    history_size: int = 60
    latency_url: str = "https://www.gstatic.com/generate_204"
    bandwidth_url: str = "https://speed.cloudflare.com/__down?bytes=2000000"
    bandwidth_max_bytes: int = 2_000_000
    latency_probes: int = 5
    request_timeout: float = 3.0
    thresholds: QualityThresholdsConfig = Field(default_factory=QualityThresholdsConfig)


class AdaptiveConfig(BaseModel):
    """Adaptive quality controller policy."""
    upgrade_dwell_seconds: float = 30.0
    downgrade_consecutive_samples: int = 2
    default_tier: str = "HD"
    # Minimum quality class each tier needs to be sustained
    tier_requirements: dict[str, str] = Field(
        default_factory=lambda: {
            "SD": "poor",
            "HD": "fair",
            "FHD": "good",
            "4K": "excellent",
        }
    )


class LadderRung(BaseModel):
    """One rung of the bitrate ladder."""
    width: int
    height: int
    video_bitrate: str
    codec: str = "h264"
    framerate: int = 30


class PipelineConfig(BaseModel):
    """Pipeline configurator policy."""
    ladder: dict[str, LadderRung] = Field(
        default_factory=lambda: {
            "SD": LadderRung(width=854, height=480, video_bitrate="2500k"),
            "HD": LadderRung(width=1280, height=720, video_bitrate="5000k"),
            "FHD": LadderRung(width=1920, height=1080, video_bitrate="8000k"),
            "4K": LadderRung(width=3840, height=2160, video_bitrate="16000k", codec="hevc"),
        }
    )
    # Highest tier software decode/encode is expected to sustain
    software_max_tier: str = "FHD"
    output_format: str = "mpegts"


class SessionConfig(BaseModel):
    """Stream session manager configuration."""
    open_max_attempts: int = 3
    open_backoff_base: float = 0.5
    open_backoff_factor: float = 2.0
    open_backoff_max: float = 10.0
    # Consecutive acceleration-attributable open failures before a re-probe
    reprobe_after_failures: int = 3
    budget_policy: str = "software"  # software, deny
    max_sessions: int = 4


class ProxySettingsConfig(BaseModel):
    """Proxy connectivity probe settings."""
    probe_url: str = "https://www.gstatic.com/generate_204"
    probe_timeout: float = 5.0
    username_env: str = "ACCELSTREAM_PROXY_USERNAME"
    password_env: str = "ACCELSTREAM_PROXY_PASSWORD"


class StateConfig(BaseModel):
    """Persisted state cache configuration."""
    enabled: bool = True
    path: str = "state/accelstream_state.json"


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    file: str = "logs/accelstream.log"
    max_size: str = "10MB"
    backup_count: int = 5
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class AccelStreamConfig(BaseModel):
    """Main AccelStream configuration."""
    server: ServerConfig = Field(default_factory=ServerConfig)
    ffmpeg: FFmpegConfig = Field(default_factory=FFmpegConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)
    adaptive: AdaptiveConfig = Field(default_factory=AdaptiveConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    proxy: ProxySettingsConfig = Field(default_factory=ProxySettingsConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(config_path: Optional[str] = None) -> AccelStreamConfig:
    """
    Load configuration from file.

    Args:
        config_path: Path to config file. Defaults to config.yaml in project root.

    Returns:
        Loaded and validated configuration.
    """
    global _config

    if config_path is None:
        config_path = os.environ.get("ACCELSTREAM_CONFIG")

    if config_path is None:
        # Look for config.yaml in current directory or project root
        possible_paths = [
            Path("config.yaml"),
            Path(__file__).parent.parent / "config.yaml",
        ]
        for path in possible_paths:
            if path.exists():
                config_path = str(path)
                break

    config_data: dict[str, Any] = {}

    if config_path and Path(config_path).exists():
        with open(config_path) as f:
            config_data = yaml.safe_load(f) or {}

    # Apply environment variable overrides
    env_overrides = _get_env_overrides()
    _deep_merge(config_data, env_overrides)

    _config = AccelStreamConfig(**config_data)
    return _config


def get_config() -> AccelStreamConfig:
    """
    Get the current configuration.

    Returns:
        Current configuration (loads default if not yet loaded).
    """
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> AccelStreamConfig:
    """
    Reload configuration from disk.

    Returns:
        Freshly loaded configuration.
    """
    global _config
    _config = None
    return load_config()


def _get_env_overrides() -> dict[str, Any]:
    """Get configuration overrides from environment variables."""
    overrides: dict[str, Any] = {}

    # Map of environment variables to config paths
    env_map = {
        "ACCELSTREAM_HOST": ("server", "host"),
        "ACCELSTREAM_PORT": ("server", "port"),
        "ACCELSTREAM_FFMPEG_PATH": ("ffmpeg", "path"),
        "ACCELSTREAM_HWACCEL": ("ffmpeg", "hardware_acceleration", "preferred"),
        "ACCELSTREAM_TELEMETRY_ENABLED": ("telemetry", "enabled"),
        "ACCELSTREAM_STATE_PATH": ("state", "path"),
        "ACCELSTREAM_LOG_LEVEL": ("logging", "level"),
    }

    for env_var, path in env_map.items():
        value = os.environ.get(env_var)
        if value is not None:
            _set_nested(overrides, path, _parse_env_value(value))

    return overrides


def _parse_env_value(value: str) -> Any:
    """Parse environment variable value to appropriate type."""
    # Boolean
    if value.lower() in ("true", "yes"):
        return True
    if value.lower() in ("false", "no"):
        return False

    # Integer
    try:
        return int(value)
    except ValueError:
        pass

    # Float
    try:
        return float(value)
    except ValueError:
        pass

    return value


def _set_nested(d: dict[str, Any], path: tuple[str, ...], value: Any) -> None:
    """Set a nested dictionary value from a path tuple."""
    for key in path[:-1]:
        d = d.setdefault(key, {})
    d[path[-1]] = value


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> None:
    """Deep merge override into base dictionary."""
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value


class _ConfigProxy:
    """
    Proxy object that provides lazy access to configuration.

    Allows modules to import `config` directly and access it like:
        from accelstream.config import config
        config.server.port
    """

    def __getattr__(self, name: str) -> Any:
        return getattr(get_config(), name)

    def __repr__(self) -> str:
        return f"<ConfigProxy for {get_config()}>"


config = _ConfigProxy()
