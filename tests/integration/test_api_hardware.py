"""
Integration tests for the hardware and FFmpeg status API.
"""

import pytest
from fastapi.testclient import TestClient

from accelstream.streaming.error_handler import ProbeError, ProbeErrorReason


@pytest.mark.integration
class TestHardwareAPI:
    """Tests for /api/hardware endpoints."""

    def test_detect(self, client: TestClient):
        """Test reading the probed capabilities."""
        response = client.get("/api/hardware/detect")

        assert response.status_code == 200
        data = response.json()
        assert data["gpu"]["detected"] is True
        assert data["gpu"]["model"] == "NVIDIA GeForce RTX 3080"
        assert data["gpu"]["method"] == "nvenc"
        assert data["ffmpeg"]["available"] is True
        assert data["degraded"] is False
        assert data["network"]["speed"] is None

    def test_redetect(self, client: TestClient, detector):
        """Test re-running detection."""
        response = client.post("/api/hardware/detect")

        assert response.status_code == 200
        assert detector.calls == 2

    def test_redetect_failure(self, client: TestClient, detector):
        """Test a failed re-detection reports 503 and degrades to software."""
        detector.results.append(ProbeError(ProbeErrorReason.TIMEOUT, "ffmpeg -encoders timed out"))

        response = client.post("/api/hardware/detect")

        assert response.status_code == 503
        assert response.json()["detail"]["reason"] == "timeout"

        data = client.get("/api/hardware/detect").json()
        assert data["degraded"] is True
        assert data["gpu"]["detected"] is False
        assert data["last_error"]["reason"] == "timeout"


@pytest.mark.integration
class TestFFmpegAPI:
    """Tests for /api/ffmpeg endpoints."""

    def test_status(self, client: TestClient):
        """Test FFmpeg status."""
        response = client.get("/api/ffmpeg/status")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ready"
        assert data["hwaccel_available"] is True
        assert data["gpu_encode"] == ["h264", "hevc"]
        assert data["hardware_budget"]["limit"] == 2
        assert data["active_streams"] == 0

    def test_initialize(self, client: TestClient):
        """Test initializing FFmpeg."""
        response = client.post("/api/ffmpeg/initialize")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "initialized"
        assert data["version"] == "ffmpeg version 6.1.1"
        assert "h264" in data["codecs_supported"]
