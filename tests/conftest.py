"""
AccelStream Test Configuration

Shared fixtures and configuration for all tests.
"""

import os
import tempfile
from pathlib import Path
from typing import Generator

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

import accelstream.config as config_module
from accelstream.config import (
    AccelStreamConfig,
    LoggingConfig,
    StateConfig,
    TelemetryConfig,
)
from accelstream.ffmpeg.capabilities import CapabilityProber
from accelstream.main import create_app
from accelstream.streaming.orchestrator import (
    StreamOrchestrator,
    get_orchestrator,
    set_orchestrator,
)
from accelstream.streaming.proxy import ProxyPathResolver
from accelstream.streaming.telemetry import NetworkTelemetryMonitor
from accelstream.utils.state_store import StateStore
from tests.fixtures import (
    FakeBackend,
    FakeNetworkProber,
    ScriptedDetector,
    SnapshotFactory,
    mock_client_factory,
    ok_handler,
)


# ============ Environment Fixtures ============


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch) -> Generator[None, None, None]:
    """Clear AccelStream environment variables and the cached config."""
    for key in list(os.environ):
        if key.startswith("ACCELSTREAM_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(config_module, "_config", None)
    yield
    set_orchestrator(None)


# ============ Temporary File Fixtures ============


@pytest.fixture(scope="function")
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture(scope="function")
def temp_config_file(temp_dir: Path) -> Path:
    """Create a temporary config file."""
    config_file = temp_dir / "config.yaml"
    config_content = """
server:
  host: "127.0.0.1"
  port: 9100

ffmpeg:
  hardware_acceleration:
    preferred: "nvenc"
    max_sessions: 2

session:
  budget_policy: "deny"

logging:
  level: "DEBUG"
"""
    config_file.write_text(config_content)
    return config_file


# ============ Component Fixtures ============


@pytest.fixture
def app_config(temp_dir: Path) -> AccelStreamConfig:
    """Configuration with state and logs under a temp dir and no background telemetry."""
    return AccelStreamConfig(
        telemetry=TelemetryConfig(enabled=False),
        state=StateConfig(path=str(temp_dir / "state.json")),
        logging=LoggingConfig(file=str(temp_dir / "accelstream.log")),
    )


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def detector() -> ScriptedDetector:
    """Detector reporting an NVENC device with room for two sessions."""
    return ScriptedDetector(SnapshotFactory.hardware(max_hw_sessions=2))


@pytest.fixture
def orchestrator(
    app_config: AccelStreamConfig,
    fake_backend: FakeBackend,
    detector: ScriptedDetector,
) -> StreamOrchestrator:
    """Orchestrator wired to fakes (not started)."""
    return StreamOrchestrator(
        config=app_config,
        prober=CapabilityProber(detector),
        monitor=NetworkTelemetryMonitor(FakeNetworkProber(), settings=app_config.telemetry),
        resolver=ProxyPathResolver(app_config.proxy, client_factory=mock_client_factory(ok_handler)),
        backend=fake_backend,
        state_store=StateStore(app_config.state),
    )


# ============ FastAPI Test Client Fixtures ============


@pytest.fixture(scope="function")
def app(orchestrator: StreamOrchestrator) -> FastAPI:
    """Create a test FastAPI application using the fake-backed orchestrator."""
    app = create_app(use_lifespan=False)
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    set_orchestrator(orchestrator)
    return app


@pytest.fixture(scope="function")
def client(app: FastAPI, orchestrator: StreamOrchestrator) -> Generator[TestClient, None, None]:
    """Synchronous test client; the orchestrator runs on the client's event loop."""
    with TestClient(app) as client:
        client.portal.call(orchestrator.start)
        yield client
        client.portal.call(orchestrator.stop)
