"""
Stream Orchestrator

Single entry point for the playback client: wires the capability prober,
telemetry monitor, adaptive controller, proxy resolver, pipeline configurator
and session manager together, and restores cached state at startup.
"""

import functools
import logging
from dataclasses import dataclass
from typing import Any, Optional

from accelstream.config import AccelStreamConfig, get_config
from accelstream.ffmpeg.capabilities import (
    CapabilityProber,
    CapabilitySnapshot,
    detect_capabilities,
)
from accelstream.ffmpeg.pipeline import Channel, FFmpegCommandBuilder, PipelineConfigurator
from accelstream.ffmpeg.process_pool import FFmpegProcessPool, PipelineBackend
from accelstream.streaming.accel_budget import AccelerationBudget
from accelstream.streaming.adaptive import AdaptiveQualityController
from accelstream.streaming.error_handler import ProbeError, ProxyError
from accelstream.streaming.proxy import EnvCredentialStore, ProxyConfig, ProxyPathResolver
from accelstream.streaming.quality import QualityClass, QualityTier
from accelstream.streaming.session_manager import (
    SessionHandle,
    SessionManager,
    SessionStatus,
    StreamSession,
)
from accelstream.streaming.telemetry import NetworkSample, NetworkTelemetryMonitor
from accelstream.utils.state_store import StateStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NetworkStatus:
    """Latest network sample and its quality class."""

    latest: Optional[NetworkSample]
    quality: Optional[QualityClass]

    def to_dict(self) -> dict[str, Any]:
        return {
            "latest": self.latest.to_dict() if self.latest else None,
            "quality": self.quality.value if self.quality else None,
        }


class StreamOrchestrator:
    """
    Async facade over the stream processing subsystem.

    Usage:
        orchestrator = StreamOrchestrator()
        await orchestrator.start()

        handle = await orchestrator.select_channel("news", "http://...", QualityTier.AUTO)
        status = orchestrator.get_session_state(handle)

        await orchestrator.stop()
    """

    def __init__(
        self,
        config: Optional[AccelStreamConfig] = None,
        prober: Optional[CapabilityProber] = None,
        monitor: Optional[NetworkTelemetryMonitor] = None,
        resolver: Optional[ProxyPathResolver] = None,
        backend: Optional[PipelineBackend] = None,
        state_store: Optional[StateStore] = None,
        credential_store: Optional[EnvCredentialStore] = None,
    ):
        self.config = config or get_config()
        cfg = self.config

        self.prober = prober or CapabilityProber(functools.partial(detect_capabilities, cfg.ffmpeg))
        self.monitor = monitor or NetworkTelemetryMonitor(settings=cfg.telemetry)
        self.resolver = resolver or ProxyPathResolver(settings=cfg.proxy)
        self.controller = AdaptiveQualityController(cfg.adaptive)
        self.configurator = PipelineConfigurator(cfg.pipeline, default_tier=self.controller.default_tier)
        self.backend = backend or FFmpegProcessPool(
            ffmpeg_config=cfg.ffmpeg,
            command_builder=FFmpegCommandBuilder(ffmpeg=cfg.ffmpeg, output_format=cfg.pipeline.output_format),
            max_processes=cfg.session.max_sessions * 2,
        )
        self.budget = AccelerationBudget()
        self.state_store = state_store or StateStore(cfg.state)
        self.credentials = credential_store or EnvCredentialStore(cfg.proxy)

        self.sessions = SessionManager(
            backend=self.backend,
            prober=self.prober,
            resolver=self.resolver,
            configurator=self.configurator,
            controller=self.controller,
            telemetry=self.monitor,
            budget=self.budget,
            settings=cfg.session,
        )

        self.prober.subscribe(self.sessions.on_capabilities_changed)
        self.prober.subscribe(self._persist_snapshot)
        self.resolver.subscribe(self.sessions.on_route_changed)
        self.monitor.subscribe(self.controller.on_sample)

        self._started = False

    def _persist_snapshot(self, snapshot: CapabilitySnapshot) -> None:
        # The software-only view published on probe failure is not a probe result
        if not self.prober.degraded:
            self.state_store.save_snapshot(snapshot)

    @property
    def is_running(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Probe capabilities, restore cached state and start telemetry."""
        if self._started:
            return

        cached_snapshot = self.state_store.load_snapshot()
        try:
            snapshot = await self.prober.probe()
            logger.info(
                f"Capabilities: {snapshot.accel_method.value} on {snapshot.device_name or 'cpu'} "
                f"(hardware sessions: {snapshot.max_hw_sessions})"
            )
        except ProbeError as e:
            logger.warning(f"Startup capability probe failed: {e.message}")
            if cached_snapshot is not None:
                self.prober.adopt_cached(cached_snapshot)

        await self._restore_proxy()
        if self.config.telemetry.enabled:
            await self.monitor.start()

        self._started = True
        logger.info("Stream orchestrator started")

    async def stop(self) -> None:
        """Stop sessions, telemetry and every pipeline."""
        if not self._started:
            return
        stopped = await self.sessions.stop_all()
        await self.monitor.stop()
        if isinstance(self.backend, FFmpegProcessPool):
            await self.backend.stop_all()
        self._started = False
        logger.info(f"Stream orchestrator stopped ({stopped} sessions ended)")

    async def _restore_proxy(self) -> None:
        cached = self.state_store.load_proxy()
        if cached is None or not cached.enabled:
            return

        if cached.username:
            credentials = self.credentials.get(cached.host, cached.port)
            if credentials is not None:
                username, password = credentials
                cached = ProxyConfig(
                    enabled=cached.enabled,
                    scheme=cached.scheme,
                    host=cached.host,
                    port=cached.port,
                    username=username,
                    password=password,
                )

        try:
            await self.resolver.apply(cached)
            logger.info("Restored cached proxy settings")
        except ProxyError as e:
            logger.warning(
                f"Cached proxy {cached.host}:{cached.port} rejected ({e.reason.value}): "
                f"{e.message}; using direct connections"
            )

    # Sessions

    async def select_channel(
        self,
        channel_id: str,
        stream_url: str,
        requested_quality: QualityTier | str = QualityTier.AUTO,
        replace: bool = True,
        name: str = "",
        hwaccel: bool = True,
    ) -> SessionHandle:
        """
        Start playing a channel.

        Args:
            hwaccel: False keeps this session on software decode/encode

        Raises:
            SessionError: budget_exhausted under the "deny" budget policy
        """
        channel = Channel(channel_id=channel_id, url=stream_url, name=name)
        session = await self.sessions.create_session(
            channel, QualityTier.parse(requested_quality), replace=replace, hwaccel=hwaccel
        )
        return session.handle_ref()

    async def stop_session(self, handle: SessionHandle) -> bool:
        return await self.sessions.stop_session(handle.session_id) is not None

    def get_session(self, handle: SessionHandle) -> Optional[StreamSession]:
        return self.sessions.get_session(handle.session_id)

    def get_session_state(self, handle: SessionHandle) -> Optional[SessionStatus]:
        session = self.get_session(handle)
        return session.status() if session else None

    # Capabilities

    def get_capabilities(self) -> CapabilitySnapshot:
        """Snapshot pipelines are currently planned against."""
        return self.prober.effective()

    async def reprobe(self) -> CapabilitySnapshot:
        """
        Re-run capability detection.

        Raises:
            ProbeError: Detection failed (software-only mode until the next success)
        """
        return await self.prober.reprobe()

    # Network

    def get_network_status(self) -> NetworkStatus:
        latest = self.monitor.latest()
        return NetworkStatus(latest=latest, quality=latest.quality if latest else None)

    async def measure_network(self) -> NetworkSample:
        """Run a telemetry cycle now."""
        return await self.monitor.measure_now()

    # Proxy

    async def set_proxy_config(self, config: ProxyConfig) -> None:
        """
        Validate, test and apply proxy settings.

        Raises:
            ProxyError: The settings were rejected; the active route is unchanged
        """
        await self.resolver.apply(config)
        self.state_store.save_proxy(config)

    def get_proxy_config(self) -> ProxyConfig:
        return self.resolver.active_config

    async def clear_proxy_config(self) -> None:
        await self.resolver.clear()
        self.state_store.save_proxy(None)

    async def test_proxy_config(self, config: ProxyConfig) -> dict[str, Any]:
        """Probe proxy settings without applying them."""
        return await self.resolver.test(config)

    def get_stats(self) -> dict[str, Any]:
        """Get orchestrator statistics."""
        stats = {
            "running": self._started,
            "capabilities": self.prober.get_stats(),
            "sessions": self.sessions.get_stats(),
            "adaptive": self.controller.get_stats(),
            "network": self.monitor.status(),
        }
        if isinstance(self.backend, FFmpegProcessPool):
            stats["pipelines"] = self.backend.get_stats()
        return stats


# Global orchestrator instance
_orchestrator: Optional[StreamOrchestrator] = None


def get_orchestrator() -> StreamOrchestrator:
    """Get the global StreamOrchestrator instance."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = StreamOrchestrator()
    return _orchestrator


def set_orchestrator(orchestrator: Optional[StreamOrchestrator]) -> None:
    """Replace the global instance (application startup and tests)."""
    global _orchestrator
    _orchestrator = orchestrator
