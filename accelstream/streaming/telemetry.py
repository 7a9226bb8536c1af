"""
Network telemetry monitoring.

Runs a periodic, jittered measurement cycle that produces one NetworkSample
per cycle (bandwidth, latency, packet loss, jitter) and a derived quality
class. Samples are kept in a bounded ring buffer and delivered to subscribers.

A failed cycle never propagates: it is recorded as a zero-bandwidth, poor
quality sample so the system always has a reading.
"""

import asyncio
import logging
import random
import statistics
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol

import httpx

from accelstream.config import TelemetryConfig, get_config
from accelstream.streaming.quality import QualityClass, classify

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NetworkSample:
    """One network measurement."""

    bandwidth_mbps: float
    latency_ms: float
    packet_loss: float  # fraction 0-1
    jitter_ms: float
    quality: QualityClass
    timestamp: float = field(default_factory=time.monotonic)
    measured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    error: Optional[str] = None

    @classmethod
    def failed(cls, error: str, timestamp: Optional[float] = None) -> "NetworkSample":
        """Sample recorded when a measurement cycle fails."""
        return cls(
            bandwidth_mbps=0.0,
            latency_ms=0.0,
            packet_loss=1.0,
            jitter_ms=0.0,
            quality=QualityClass.POOR,
            timestamp=time.monotonic() if timestamp is None else timestamp,
            error=error,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "bandwidth": round(self.bandwidth_mbps, 2),
            "latency": round(self.latency_ms, 2),
            "packet_loss": round(self.packet_loss, 5),
            "jitter": round(self.jitter_ms, 2),
            "quality": self.quality.value,
            "timestamp": self.measured_at.isoformat(),
            "error": self.error,
        }


@dataclass(frozen=True)
class RawMeasurement:
    """Unclassified figures returned by a network prober."""

    bandwidth_mbps: float
    latency_ms: float
    packet_loss: float
    jitter_ms: float


class NetworkProber(Protocol):
    """Packet-level measurement service driven by the monitor."""

    async def measure(self) -> RawMeasurement: ...


class HTTPNetworkProber:
    """
    Measures the network with plain HTTP requests.

    Latency, jitter and loss come from a handful of small requests to a
    no-content endpoint; bandwidth from one bounded download.
    """

    def __init__(
        self,
        settings: Optional[TelemetryConfig] = None,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
    ):
        self._settings = settings or get_config().telemetry
        self._client_factory = client_factory or (
            lambda: httpx.AsyncClient(timeout=self._settings.request_timeout, follow_redirects=True)
        )

    async def measure(self) -> RawMeasurement:
        """
        Run one measurement.

        Raises:
            httpx.HTTPError: Every latency probe failed
        """
        async with self._client_factory() as client:
            latencies, failures, last_error = await self._probe_latency(client)
            if not latencies:
                raise last_error or httpx.ConnectError("all latency probes failed")
            bandwidth = await self._probe_bandwidth(client)

        probes = len(latencies) + failures
        jitter = (
            statistics.mean(abs(b - a) for a, b in zip(latencies, latencies[1:]))
            if len(latencies) > 1
            else 0.0
        )
        return RawMeasurement(
            bandwidth_mbps=bandwidth,
            latency_ms=statistics.median(latencies),
            packet_loss=failures / probes,
            jitter_ms=jitter,
        )

    async def _probe_latency(
        self, client: httpx.AsyncClient
    ) -> tuple[list[float], int, Optional[httpx.HTTPError]]:
        latencies: list[float] = []
        failures = 0
        last_error: Optional[httpx.HTTPError] = None
        for _ in range(max(self._settings.latency_probes, 1)):
            started = time.monotonic()
            try:
                response = await client.get(self._settings.latency_url)
                response.raise_for_status()
            except httpx.HTTPError as e:
                failures += 1
                last_error = e
                continue
            latencies.append((time.monotonic() - started) * 1000)
        return latencies, failures, last_error

    async def _probe_bandwidth(self, client: httpx.AsyncClient) -> float:
        received = 0
        started = time.monotonic()
        try:
            async with client.stream("GET", self._settings.bandwidth_url) as response:
                response.raise_for_status()
                async for chunk in response.aiter_bytes():
                    received += len(chunk)
                    if received >= self._settings.bandwidth_max_bytes:
                        break
        except httpx.HTTPError as e:
            logger.debug(f"Bandwidth probe failed: {e}")
            return 0.0
        elapsed = max(time.monotonic() - started, 1e-6)
        return received * 8 / elapsed / 1_000_000


SampleListener = Callable[[NetworkSample], Any]


class NetworkTelemetryMonitor:
    """
    Periodic network quality monitor shared by all sessions.

    Usage:
        monitor = NetworkTelemetryMonitor()
        monitor.subscribe(controller.on_sample)
        await monitor.start()
        monitor.latest()
    """

    def __init__(
        self,
        prober: Optional[NetworkProber] = None,
        settings: Optional[TelemetryConfig] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize the monitor.

        Args:
            prober: Measurement service (HTTPNetworkProber when None)
            settings: Telemetry settings (global config when None)
            rng: Random source for interval jitter
        """
        self._settings = settings or get_config().telemetry
        self._prober = prober or HTTPNetworkProber(self._settings)
        self._rng = rng or random.Random()
        self._history: deque[NetworkSample] = deque(maxlen=self._settings.history_size)
        self._listeners: list[SampleListener] = []
        self._cycle_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._running = False

        self.cycles = 0
        self.failed_cycles = 0
        self.last_test_at: Optional[datetime] = None
        self.next_test_at: Optional[datetime] = None

    def latest(self) -> Optional[NetworkSample]:
        """Most recent sample (None before the first cycle)."""
        return self._history[-1] if self._history else None

    def history(self) -> list[NetworkSample]:
        """Retained samples, oldest first."""
        return list(self._history)

    def subscribe(self, listener: SampleListener) -> None:
        """Register a callback receiving every new sample."""
        self._listeners.append(listener)

    def unsubscribe(self, listener: SampleListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the periodic measurement loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._monitor_loop())
        logger.info(
            f"Network telemetry started (every {self._settings.interval_min_seconds}"
            f"-{self._settings.interval_max_seconds}s)"
        )

    async def stop(self) -> None:
        """Stop the measurement loop."""
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Network telemetry stopped")

    async def measure_now(self) -> NetworkSample:
        """Run one measurement cycle immediately."""
        async with self._cycle_lock:
            return await self._run_cycle()

    def record(self, sample: NetworkSample) -> None:
        """Append an externally produced sample (without notifying)."""
        self._history.append(sample)

    def next_interval(self) -> float:
        """Jittered delay before the next cycle."""
        low = self._settings.interval_min_seconds
        high = max(self._settings.interval_max_seconds, low)
        return self._rng.uniform(low, high)

    async def _monitor_loop(self) -> None:
        while self._running:
            try:
                await self.measure_now()
                delay = self.next_interval()
                self.next_test_at = datetime.now(timezone.utc) + timedelta(seconds=delay)
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Telemetry loop error: {e}")
                await asyncio.sleep(self._settings.interval_max_seconds)

    async def _run_cycle(self) -> NetworkSample:
        self.cycles += 1
        try:
            raw = await self._prober.measure()
            sample = NetworkSample(
                bandwidth_mbps=raw.bandwidth_mbps,
                latency_ms=raw.latency_ms,
                packet_loss=raw.packet_loss,
                jitter_ms=raw.jitter_ms,
                quality=classify(
                    raw.bandwidth_mbps,
                    raw.latency_ms,
                    raw.packet_loss,
                    self._settings.thresholds,
                ),
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failed_cycles += 1
            logger.warning(f"Network measurement failed: {str(e) or type(e).__name__}")
            sample = NetworkSample.failed(str(e) or type(e).__name__)

        self.last_test_at = sample.measured_at
        self._history.append(sample)
        logger.debug(
            f"Network sample: {sample.bandwidth_mbps:.1f} Mbps, {sample.latency_ms:.0f} ms, "
            f"loss {sample.packet_loss:.2%}, quality {sample.quality.value}"
        )
        await self._notify(sample)
        return sample

    async def _notify(self, sample: NetworkSample) -> None:
        for listener in list(self._listeners):
            try:
                if asyncio.iscoroutinefunction(listener):
                    await listener(sample)
                else:
                    listener(sample)
            except Exception as e:
                logger.error(f"Telemetry listener error: {e}")

    def status(self) -> dict[str, Any]:
        """Monitoring status, mirroring the quick-stats view."""
        history = self.history()
        ok = [s for s in history if s.error is None]
        return {
            "status": "monitoring" if self._running else "idle",
            "last_test": self.last_test_at.isoformat() if self.last_test_at else None,
            "next_test": self.next_test_at.isoformat() if self._running and self.next_test_at else None,
            "quick_stats": {
                "estimated_bandwidth": round(statistics.mean(s.bandwidth_mbps for s in ok), 2) if ok else 0.0,
                "avg_latency": round(statistics.mean(s.latency_ms for s in ok), 2) if ok else 0.0,
                "connection_stable": bool(history) and all(
                    s.quality != QualityClass.POOR for s in history[-3:]
                ),
            },
            "cycles": self.cycles,
            "failed_cycles": self.failed_cycles,
        }
