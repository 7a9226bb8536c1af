"""
Unit tests for configuration module.
"""

from pathlib import Path

import pytest

from accelstream.config import (
    AccelStreamConfig,
    AdaptiveConfig,
    FFmpegConfig,
    LoggingConfig,
    PipelineConfig,
    ServerConfig,
    SessionConfig,
    get_config,
    load_config,
    reload_config,
)


@pytest.mark.unit
class TestServerConfig:
    """Tests for ServerConfig."""

    def test_default_values(self):
        """Test default server configuration values."""
        config = ServerConfig()

        assert config.host == "127.0.0.1"
        assert config.port == 8421
        assert config.log_level == "INFO"

    def test_custom_values(self):
        """Test custom server configuration."""
        config = ServerConfig(host="0.0.0.0", port=9000, log_level="DEBUG")

        assert config.host == "0.0.0.0"
        assert config.port == 9000
        assert config.log_level == "DEBUG"


@pytest.mark.unit
class TestFFmpegConfig:
    """Tests for FFmpegConfig."""

    def test_default_values(self):
        """Test default FFmpeg configuration."""
        config = FFmpegConfig()

        assert config.path == "ffmpeg"
        assert config.hardware_acceleration.enabled is True
        assert config.hardware_acceleration.preferred == "auto"
        assert config.timeouts.probe == 5.0

    def test_custom_paths(self):
        """Test custom FFmpeg paths."""
        config = FFmpegConfig(path="/usr/local/bin/ffmpeg")

        assert config.path == "/usr/local/bin/ffmpeg"


@pytest.mark.unit
class TestPolicyDefaults:
    """Tests for the adaptive, pipeline and session policy defaults."""

    def test_adaptive_hysteresis(self):
        """Downgrade after two samples, upgrade after a 30 second dwell."""
        config = AdaptiveConfig()

        assert config.downgrade_consecutive_samples == 2
        assert config.upgrade_dwell_seconds == 30.0
        assert config.tier_requirements["4K"] == "excellent"

    def test_ladder_covers_all_tiers(self):
        """Every transport tier has a ladder rung."""
        config = PipelineConfig()

        assert set(config.ladder) == {"SD", "HD", "FHD", "4K"}
        assert config.ladder["4K"].codec == "hevc"
        assert config.software_max_tier == "FHD"

    def test_session_retry_defaults(self):
        """Three attempts starting at 0.5 seconds of backoff."""
        config = SessionConfig()

        assert config.open_max_attempts == 3
        assert config.open_backoff_base == 0.5
        assert config.reprobe_after_failures == 3
        assert config.budget_policy == "software"


@pytest.mark.unit
class TestAccelStreamConfig:
    """Tests for main AccelStreamConfig class."""

    def test_default_config(self):
        """Test default configuration."""
        config = AccelStreamConfig()

        assert isinstance(config.server, ServerConfig)
        assert isinstance(config.logging, LoggingConfig)
        assert isinstance(config.ffmpeg, FFmpegConfig)
        assert config.telemetry.interval_min_seconds == 2.0
        assert config.telemetry.interval_max_seconds == 5.0

    def test_nested_config(self):
        """Test nested configuration access."""
        config = AccelStreamConfig(server=ServerConfig(port=9000))

        assert config.server.port == 9000


@pytest.mark.unit
class TestLoadConfig:
    """Tests for config loading functions."""

    def test_get_config_caching(self):
        """get_config returns the cached instance."""
        assert get_config() is get_config()

    def test_load_from_file(self, temp_config_file: Path):
        """Values from YAML override defaults."""
        config = load_config(str(temp_config_file))

        assert config.server.port == 9100
        assert config.ffmpeg.hardware_acceleration.preferred == "nvenc"
        assert config.ffmpeg.hardware_acceleration.max_sessions == 2
        assert config.session.budget_policy == "deny"
        assert config.logging.level == "DEBUG"
        # Untouched sections keep defaults
        assert config.adaptive.upgrade_dwell_seconds == 30.0

    def test_missing_file_uses_defaults(self, temp_dir: Path):
        """A missing config file yields the default configuration."""
        config = load_config(str(temp_dir / "missing.yaml"))

        assert config.server.port == 8421

    def test_unknown_keys_are_ignored(self, temp_dir: Path):
        """Keys the schema does not define, such as server.debug, are dropped."""
        config_file = temp_dir / "legacy.yaml"
        config_file.write_text("server:\n  port: 9300\n  debug: true\nffmpeg:\n  ffprobe_path: ffprobe\n")

        config = load_config(str(config_file))

        assert config.server.port == 9300
        assert not hasattr(config.server, "debug")
        assert not hasattr(config.ffmpeg, "ffprobe_path")

    def test_env_overrides(self, temp_config_file: Path, monkeypatch):
        """ACCELSTREAM_* variables win over the file."""
        monkeypatch.setenv("ACCELSTREAM_PORT", "9200")
        monkeypatch.setenv("ACCELSTREAM_HWACCEL", "none")
        monkeypatch.setenv("ACCELSTREAM_TELEMETRY_ENABLED", "false")

        config = load_config(str(temp_config_file))

        assert config.server.port == 9200
        assert config.ffmpeg.hardware_acceleration.preferred == "none"
        assert config.telemetry.enabled is False
        assert config.session.budget_policy == "deny"

    def test_config_path_from_env(self, temp_config_file: Path, monkeypatch):
        """ACCELSTREAM_CONFIG selects the file."""
        monkeypatch.setenv("ACCELSTREAM_CONFIG", str(temp_config_file))

        config = reload_config()

        assert config.server.port == 9100
        assert get_config() is config

    def test_lazy_config_proxy(self, temp_config_file: Path, monkeypatch):
        """The module-level proxy reads the current global configuration."""
        from accelstream.config import config as lazy_config

        monkeypatch.setenv("ACCELSTREAM_CONFIG", str(temp_config_file))

        assert lazy_config.session.budget_policy == "deny"
        assert lazy_config.server.port == get_config().server.port == 9100
