"""
Hardware Acceleration Detection

Detects available hardware acceleration methods and codec support by querying
FFmpeg, and publishes the result as an immutable CapabilitySnapshot.

Probing is asynchronous and coalesced: concurrent callers share one in-flight
probe instead of hammering the hardware query.
"""

import asyncio
import logging
import platform
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import psutil

from accelstream.config import FFmpegConfig, get_config
from accelstream.streaming.error_handler import ProbeError, ProbeErrorReason

logger = logging.getLogger(__name__)


class HardwareAccelType(str, Enum):
    """Hardware acceleration types."""
    NONE = "none"
    VIDEOTOOLBOX = "videotoolbox"  # macOS
    NVENC = "nvenc"  # NVIDIA
    QSV = "qsv"  # Intel Quick Sync
    VAAPI = "vaapi"  # Linux VA-API
    AMF = "amf"  # AMD


# Encoder/decoder name suffix -> acceleration method
_HW_SUFFIXES = {
    "videotoolbox": HardwareAccelType.VIDEOTOOLBOX,
    "nvenc": HardwareAccelType.NVENC,
    "cuvid": HardwareAccelType.NVENC,
    "qsv": HardwareAccelType.QSV,
    "vaapi": HardwareAccelType.VAAPI,
    "amf": HardwareAccelType.AMF,
}

# Software encoder name -> codec
_SOFTWARE_ENCODERS = {
    "libx264": "h264",
    "libx265": "hevc",
    "libvpx-vp9": "vp9",
    "libsvtav1": "av1",
    "libaom-av1": "av1",
}

_VIDEO_CODECS = ("h264", "hevc", "vp9", "av1", "mpeg2video")

# Methods whose -hwaccel decode covers the native decoders
_HWACCEL_NAMES = {
    HardwareAccelType.VIDEOTOOLBOX: ("videotoolbox",),
    HardwareAccelType.NVENC: ("cuda", "nvdec"),
    HardwareAccelType.QSV: ("qsv",),
    HardwareAccelType.VAAPI: ("vaapi",),
    HardwareAccelType.AMF: ("d3d11va", "dxva2"),
}


@dataclass(frozen=True)
class CapabilitySnapshot:
    """
    Detected codec and hardware acceleration capabilities.

    Immutable: a new snapshot replaces the old one on every successful probe.
    """
    decode_codecs: frozenset[str] = frozenset()
    encode_codecs: frozenset[str] = frozenset()
    hw_decode_codecs: frozenset[str] = frozenset()
    hw_encode_codecs: frozenset[str] = frozenset()
    hardware_available: bool = False
    accel_method: HardwareAccelType = HardwareAccelType.NONE
    device_name: str = ""
    device_memory_mb: int = 0
    max_hw_sessions: int = 0
    ffmpeg_version: str = ""
    probed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    from_cache: bool = False

    @classmethod
    def software_only(cls) -> "CapabilitySnapshot":
        """Snapshot used before any probe has succeeded."""
        return cls(
            decode_codecs=frozenset({"h264", "hevc"}),
            encode_codecs=frozenset({"h264"}),
            device_name="software",
        )

    def without_hardware(self) -> "CapabilitySnapshot":
        """Software-only view of this snapshot."""
        return replace(
            self,
            hw_decode_codecs=frozenset(),
            hw_encode_codecs=frozenset(),
            hardware_available=False,
            accel_method=HardwareAccelType.NONE,
            max_hw_sessions=0,
        )

    def supports_hardware(self, codec: str) -> bool:
        """Whether a codec can be both decoded and encoded in hardware."""
        return (
            self.hardware_available
            and codec in self.hw_encode_codecs
            and codec in self.hw_decode_codecs
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        data = asdict(self)
        for key in ("decode_codecs", "encode_codecs", "hw_decode_codecs", "hw_encode_codecs"):
            data[key] = sorted(data[key])
        data["accel_method"] = self.accel_method.value
        data["probed_at"] = self.probed_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CapabilitySnapshot":
        """Rebuild a snapshot from to_dict() output."""
        return cls(
            decode_codecs=frozenset(data.get("decode_codecs", [])),
            encode_codecs=frozenset(data.get("encode_codecs", [])),
            hw_decode_codecs=frozenset(data.get("hw_decode_codecs", [])),
            hw_encode_codecs=frozenset(data.get("hw_encode_codecs", [])),
            hardware_available=bool(data.get("hardware_available", False)),
            accel_method=HardwareAccelType(data.get("accel_method", "none")),
            device_name=data.get("device_name", ""),
            device_memory_mb=int(data.get("device_memory_mb", 0)),
            max_hw_sessions=int(data.get("max_hw_sessions", 0)),
            ffmpeg_version=data.get("ffmpeg_version", ""),
            probed_at=datetime.fromisoformat(data["probed_at"]) if data.get("probed_at") else datetime.now(timezone.utc),
            from_cache=bool(data.get("from_cache", False)),
        )


async def _run_command(cmd: list[str], timeout: float) -> str:
    """Run a command and return its stdout, mapping failures to ProbeError."""
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (FileNotFoundError, PermissionError) as e:
        raise ProbeError(ProbeErrorReason.BACKEND_UNAVAILABLE, f"{cmd[0]}: {e}") from e

    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise ProbeError(ProbeErrorReason.TIMEOUT, f"{' '.join(cmd)} timed out after {timeout}s") from e
    finally:
        # Timeout, cancellation or a failing sibling query must not leak the child
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass  # exited between the check and the kill
            await asyncio.shield(process.wait())

    if process.returncode != 0:
        raise ProbeError(
            ProbeErrorReason.BACKEND_UNAVAILABLE,
            f"{' '.join(cmd)} exited with code {process.returncode}",
        )
    return stdout.decode(errors="replace")


def parse_codec_table(output: str) -> list[str]:
    """
    Parse the name column of `ffmpeg -encoders` / `-decoders` output.

    Lines before the ` ------` separator are the legend and are skipped.
    """
    names = []
    in_table = False
    for line in output.splitlines():
        if line.strip().startswith("------"):
            in_table = True
            continue
        if not in_table:
            continue
        parts = line.split()
        if len(parts) >= 2 and parts[0][:1] == "V":
            names.append(parts[1])
    return names


def parse_hwaccels(output: str) -> list[str]:
    """Parse `ffmpeg -hwaccels` output."""
    lines = [line.strip().lower() for line in output.splitlines()]
    return [line for line in lines if line and not line.startswith("hardware acceleration")]


def _codec_of(name: str) -> Optional[str]:
    if name in _SOFTWARE_ENCODERS:
        return _SOFTWARE_ENCODERS[name]
    base = name.split("_", 1)[0]
    if base == "h265":
        base = "hevc"
    return base if base in _VIDEO_CODECS else None


def _method_of(name: str) -> Optional[HardwareAccelType]:
    if "_" not in name:
        return None
    return _HW_SUFFIXES.get(name.rsplit("_", 1)[1])


def choose_preferred_method(
    available: list[HardwareAccelType],
    preferred: str = "auto",
    system: Optional[str] = None,
) -> HardwareAccelType:
    """
    Pick the acceleration method to use.

    Args:
        available: Methods with at least one hardware encoder
        preferred: auto, none, or a HardwareAccelType value
        system: platform.system() override for tests

    Returns:
        Chosen method (NONE when nothing usable)
    """
    if preferred == "none":
        return HardwareAccelType.NONE

    if preferred != "auto":
        try:
            method = HardwareAccelType(preferred)
        except ValueError:
            logger.warning(f"Unknown hardware acceleration method: {preferred}")
            return HardwareAccelType.NONE
        return method if method in available else HardwareAccelType.NONE

    system = system or platform.system()
    if system == "Darwin" and HardwareAccelType.VIDEOTOOLBOX in available:
        return HardwareAccelType.VIDEOTOOLBOX
    for method in (
        HardwareAccelType.NVENC,
        HardwareAccelType.QSV,
        HardwareAccelType.VAAPI,
        HardwareAccelType.AMF,
        HardwareAccelType.VIDEOTOOLBOX,
    ):
        if method in available:
            return method
    return HardwareAccelType.NONE


def build_snapshot(
    version_output: str,
    hwaccels_output: str,
    encoders_output: str,
    decoders_output: str,
    preferred: str = "auto",
    device_name: str = "",
    device_memory_mb: int = 0,
    session_memory_mb: int = 512,
    max_sessions: int = 0,
) -> CapabilitySnapshot:
    """Assemble a snapshot from raw FFmpeg query output."""
    encoders = parse_codec_table(encoders_output)
    decoders = parse_codec_table(decoders_output)
    hwaccels = parse_hwaccels(hwaccels_output)

    encode_codecs = {c for c in (_codec_of(n) for n in encoders) if c}
    decode_codecs = {c for c in (_codec_of(n) for n in decoders) if c}

    hw_encoders_by_method: dict[HardwareAccelType, set[str]] = {}
    for name in encoders:
        method = _method_of(name)
        codec = _codec_of(name)
        if method and codec:
            hw_encoders_by_method.setdefault(method, set()).add(codec)

    method = choose_preferred_method(list(hw_encoders_by_method), preferred)
    hw_encode = hw_encoders_by_method.get(method, set())

    hw_decode: set[str] = set()
    if method != HardwareAccelType.NONE:
        for name in decoders:
            if _method_of(name) == method and _codec_of(name):
                hw_decode.add(_codec_of(name))
        if any(accel in hwaccels for accel in _HWACCEL_NAMES[method]):
            hw_decode |= hw_encode & decode_codecs

    hardware_available = method != HardwareAccelType.NONE and bool(hw_encode & hw_decode)

    if not hardware_available:
        budget = 0
    elif max_sessions > 0:
        budget = max_sessions
    else:
        budget = max(1, device_memory_mb // max(session_memory_mb, 1))

    version_line = version_output.splitlines()[0] if version_output.strip() else ""

    return CapabilitySnapshot(
        decode_codecs=frozenset(decode_codecs),
        encode_codecs=frozenset(encode_codecs),
        hw_decode_codecs=frozenset(hw_decode) if hardware_available else frozenset(),
        hw_encode_codecs=frozenset(hw_encode) if hardware_available else frozenset(),
        hardware_available=hardware_available,
        accel_method=method if hardware_available else HardwareAccelType.NONE,
        device_name=device_name or (method.value if hardware_available else "software"),
        device_memory_mb=device_memory_mb,
        max_hw_sessions=budget,
        ffmpeg_version=version_line,
    )


async def _query_device(
    method: HardwareAccelType,
    ffmpeg_config: FFmpegConfig,
) -> tuple[str, int]:
    """Best-effort device name and memory (MB) for the acceleration device."""
    if method == HardwareAccelType.NVENC:
        try:
            output = await _run_command(
                [
                    ffmpeg_config.nvidia_smi_path,
                    "--query-gpu=name,memory.total",
                    "--format=csv,noheader,nounits",
                ],
                ffmpeg_config.timeouts.probe,
            )
            name, memory = output.splitlines()[0].rsplit(",", 1)
            return name.strip(), int(float(memory.strip()))
        except (ProbeError, ValueError, IndexError) as e:
            logger.debug(f"nvidia-smi query failed: {e}")

    # Integrated GPUs share host memory
    memory_mb = int(psutil.virtual_memory().total / (1024 * 1024))
    return f"{method.value} ({platform.system()})", memory_mb


async def detect_capabilities(ffmpeg_config: Optional[FFmpegConfig] = None) -> CapabilitySnapshot:
    """
    Detect available codecs and hardware acceleration.

    Args:
        ffmpeg_config: FFmpeg settings (global config when None)

    Returns:
        Fresh CapabilitySnapshot

    Raises:
        ProbeError: FFmpeg is missing, failing or too slow to answer
    """
    ffmpeg_config = ffmpeg_config or get_config().ffmpeg
    timeout = ffmpeg_config.timeouts.probe
    ffmpeg = ffmpeg_config.path

    version, hwaccels, encoders, decoders = await asyncio.gather(
        _run_command([ffmpeg, "-hide_banner", "-version"], timeout),
        _run_command([ffmpeg, "-hide_banner", "-hwaccels"], timeout),
        _run_command([ffmpeg, "-hide_banner", "-encoders"], timeout),
        _run_command([ffmpeg, "-hide_banner", "-decoders"], timeout),
    )

    accel = ffmpeg_config.hardware_acceleration
    preferred = accel.preferred if accel.enabled else "none"

    snapshot = build_snapshot(
        version, hwaccels, encoders, decoders,
        preferred=preferred,
        session_memory_mb=accel.session_memory_mb,
        max_sessions=accel.max_sessions,
    )

    if snapshot.hardware_available:
        device_name, memory_mb = await _query_device(snapshot.accel_method, ffmpeg_config)
        snapshot = build_snapshot(
            version, hwaccels, encoders, decoders,
            preferred=preferred,
            device_name=device_name,
            device_memory_mb=memory_mb,
            session_memory_mb=accel.session_memory_mb,
            max_sessions=accel.max_sessions,
        )

    logger.info(
        f"Hardware acceleration: {snapshot.accel_method.value}, "
        f"hw encode: {sorted(snapshot.hw_encode_codecs)}, "
        f"budget: {snapshot.max_hw_sessions} sessions"
    )
    return snapshot


SnapshotListener = Callable[[CapabilitySnapshot], Any]


class CapabilityProber:
    """
    Owns the current CapabilitySnapshot.

    Features:
    - Coalesced probing (one in-flight probe shared by all callers)
    - Swap-on-publish of immutable snapshots
    - Software-only degradation when probing fails
    - Change notification for subscribers

    Usage:
        prober = CapabilityProber()
        snapshot = await prober.probe()
        prober.subscribe(on_capabilities_changed)
    """

    def __init__(
        self,
        detector: Optional[Callable[[], Awaitable[CapabilitySnapshot]]] = None,
    ):
        """
        Initialize the prober.

        Args:
            detector: Coroutine factory performing the actual detection
                (detect_capabilities when None)
        """
        self._detector = detector or detect_capabilities
        self._current: Optional[CapabilitySnapshot] = None
        self._inflight: Optional[asyncio.Task] = None
        self._listeners: list[SnapshotListener] = []

        self.degraded = False
        self.last_error: Optional[ProbeError] = None
        self.failure_count = 0
        self.probe_count = 0
        self.last_probe_duration: float = 0.0

    @property
    def current(self) -> Optional[CapabilitySnapshot]:
        """Last successfully probed (or adopted) snapshot."""
        return self._current

    def effective(self) -> CapabilitySnapshot:
        """Snapshot the configurator should use right now."""
        snapshot = self._current or CapabilitySnapshot.software_only()
        if self.degraded:
            return snapshot.without_hardware()
        return snapshot

    def subscribe(self, listener: SnapshotListener) -> None:
        """Register a callback for newly published snapshots."""
        self._listeners.append(listener)

    def unsubscribe(self, listener: SnapshotListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def probe(self) -> CapabilitySnapshot:
        """
        Probe capabilities, joining an in-flight probe if there is one.

        Returns:
            The newly published snapshot

        Raises:
            ProbeError: Detection failed (the previous snapshot stays current)
        """
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.create_task(self._probe_once())
            self._inflight.add_done_callback(_consume_exception)
        return await asyncio.shield(self._inflight)

    async def reprobe(self) -> CapabilitySnapshot:
        """Explicit re-probe (e.g. device hot-plug)."""
        logger.info("Capability re-probe requested")
        return await self.probe()

    def adopt_cached(self, snapshot: CapabilitySnapshot) -> None:
        """
        Use a snapshot cached from a previous run.

        Cached hardware claims are not trusted until a probe confirms them,
        so the adopted snapshot is software-only.
        """
        if self._current is not None:
            return
        self._current = replace(snapshot.without_hardware(), from_cache=True)
        logger.info("Adopted cached capability snapshot (software-only until re-probed)")

    async def _probe_once(self) -> CapabilitySnapshot:
        started = time.monotonic()
        self.probe_count += 1
        try:
            snapshot = await self._detector()
        except ProbeError as e:
            entering_degraded = not self.degraded
            self.degraded = True
            self.last_error = e
            self.failure_count += 1
            logger.warning(
                f"Capability probe failed ({e.reason.value}): {e.message}; "
                f"continuing in software-only mode"
            )
            if entering_degraded and self._current is not None:
                await self._notify(self.effective())
            raise
        finally:
            self.last_probe_duration = time.monotonic() - started

        previous = self._current
        was_degraded = self.degraded
        self._current = snapshot
        self.degraded = False
        self.last_error = None

        if (
            previous is None
            or was_degraded
            or _decision_fields(previous) != _decision_fields(snapshot)
        ):
            await self._notify(snapshot)
        return snapshot

    async def _notify(self, snapshot: CapabilitySnapshot) -> None:
        for listener in list(self._listeners):
            try:
                if asyncio.iscoroutinefunction(listener):
                    await listener(snapshot)
                else:
                    listener(snapshot)
            except Exception as e:
                logger.error(f"Capability listener error: {e}")

    def get_stats(self) -> dict[str, Any]:
        """Get prober statistics."""
        return {
            "degraded": self.degraded,
            "probe_count": self.probe_count,
            "failure_count": self.failure_count,
            "last_error": self.last_error.to_dict() if self.last_error else None,
            "last_probe_duration": round(self.last_probe_duration, 3),
            "probing": self._inflight is not None and not self._inflight.done(),
        }


def _decision_fields(snapshot: CapabilitySnapshot) -> tuple:
    return (
        snapshot.hardware_available,
        snapshot.accel_method,
        snapshot.hw_encode_codecs,
        snapshot.hw_decode_codecs,
        snapshot.max_hw_sessions,
    )


def _consume_exception(task: asyncio.Task) -> None:
    # Keeps asyncio from warning when every waiter was cancelled.
    if not task.cancelled():
        task.exception()
