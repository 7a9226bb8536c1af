"""
FFmpeg Pipeline

Derives a concrete transcode pipeline (tier, ladder rung, codec, acceleration
mode, proxy route) for a channel, and renders it as an FFmpeg command.

configure() is pure given its inputs: identical inputs yield an identical
decision, only the generation number differs. That is what makes a
reconfiguration safe to retry and safe to race.
"""

import itertools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from accelstream.config import FFmpegConfig, PipelineConfig, get_config
from accelstream.ffmpeg.capabilities import CapabilitySnapshot, HardwareAccelType
from accelstream.streaming.proxy import ResolvedRoute
from accelstream.streaming.quality import QualityTier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Channel:
    """A channel as provided by the external catalog."""
    channel_id: str
    url: str
    name: str = ""
    nominal_quality: Optional[QualityTier] = None

    @property
    def is_online(self) -> bool:
        """Check if source is a network stream."""
        return self.url.lower().startswith(("http://", "https://", "rtmp://", "rtsp://", "udp://", "srt://"))


class AccelerationMode(str, Enum):
    """Where decode/encode work runs."""
    HARDWARE = "hardware"
    SOFTWARE = "software"


@dataclass(frozen=True)
class Acceleration:
    """
    Acceleration decision: a mode tag plus the parameters that mode carries.

    Build with Acceleration.hardware(method) or Acceleration.software().
    """
    mode: AccelerationMode
    method: HardwareAccelType = HardwareAccelType.NONE

    @classmethod
    def hardware(cls, method: HardwareAccelType) -> "Acceleration":
        if method == HardwareAccelType.NONE:
            raise ValueError("hardware acceleration needs a method")
        return cls(AccelerationMode.HARDWARE, method)

    @classmethod
    def software(cls) -> "Acceleration":
        return cls(AccelerationMode.SOFTWARE)

    @property
    def is_hardware(self) -> bool:
        return self.mode == AccelerationMode.HARDWARE

    def __str__(self) -> str:
        return f"hardware:{self.method.value}" if self.is_hardware else "software"


@dataclass(frozen=True)
class Rung:
    """One bitrate ladder rung."""
    width: int
    height: int
    video_bitrate: str
    codec: str = "h264"
    framerate: int = 30


@dataclass(frozen=True)
class PipelineSpec:
    """
    A concrete, immutable pipeline decision.

    A new spec is produced for every reconfiguration; the previous one is
    retired, never mutated.
    """
    channel_id: str
    source_url: str
    tier: QualityTier
    requested_tier: QualityTier
    rung: Rung
    codec: str
    acceleration: Acceleration
    route: Optional[ResolvedRoute] = None
    degraded: bool = False
    generation: int = 0

    def decision(self) -> tuple:
        """Everything that identifies the pipeline except its generation."""
        return (
            self.channel_id,
            self.source_url,
            self.tier,
            self.rung,
            self.codec,
            self.acceleration,
            self.route.config if self.route else None,
            self.degraded,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses (no secrets)."""
        return {
            "channel_id": self.channel_id,
            "tier": self.tier.value,
            "requested_tier": self.requested_tier.value,
            "resolution": f"{self.rung.width}x{self.rung.height}",
            "video_bitrate": self.rung.video_bitrate,
            "codec": self.codec,
            "acceleration": str(self.acceleration),
            "proxy": self.route.redacted_url if self.route else None,
            "degraded": self.degraded,
            "generation": self.generation,
        }


class GenerationCounter:
    """Session-scoped, strictly increasing generation numbers."""

    def __init__(self, start: int = 1):
        self._counter = itertools.count(start)
        self.last = start - 1

    def next(self) -> int:
        self.last = next(self._counter)
        return self.last


class PipelineConfigurator:
    """
    Decides which pipeline to run for a channel.

    Usage:
        configurator = PipelineConfigurator()
        spec = configurator.configure(
            channel, QualityTier.FHD, prober.effective(), resolver.active_route,
            generation=counter.next(),
        )
    """

    def __init__(
        self,
        settings: Optional[PipelineConfig] = None,
        default_tier: QualityTier = QualityTier.HD,
    ):
        self._settings = settings or get_config().pipeline
        self._default_tier = default_tier
        self._ladder = {
            QualityTier.parse(tier): Rung(**rung.model_dump())
            for tier, rung in self._settings.ladder.items()
        }
        self._software_max = QualityTier.parse(self._settings.software_max_tier)

    @property
    def software_max_tier(self) -> QualityTier:
        return self._software_max

    def rung_for(self, tier: QualityTier) -> Rung:
        """Ladder rung for a tier."""
        return self._ladder[tier]

    def configure(
        self,
        channel: Channel,
        requested_quality: QualityTier,
        capabilities: CapabilitySnapshot,
        route: Optional[ResolvedRoute],
        *,
        generation: int,
        recommended_tier: Optional[QualityTier] = None,
    ) -> PipelineSpec:
        """
        Derive a pipeline spec.

        Args:
            channel: Channel to play
            requested_quality: Explicit tier or AUTO
            capabilities: Capability snapshot to plan against
            route: Resolved proxy route, None for direct
            generation: Fresh generation number for this decision
            recommended_tier: Adaptive controller recommendation, used for AUTO
                (the configured default tier when absent)

        Returns:
            PipelineSpec
        """
        if requested_quality == QualityTier.AUTO:
            tier = recommended_tier or self._default_tier
        else:
            tier = requested_quality

        rung = self._ladder[tier]
        degraded = False

        if capabilities.supports_hardware(rung.codec):
            acceleration = Acceleration.hardware(capabilities.accel_method)
        else:
            acceleration = Acceleration.software()
            while tier.rank > self._software_max.rank:
                tier = tier.step_down()
                degraded = True
            rung = self._ladder[tier]

        return PipelineSpec(
            channel_id=channel.channel_id,
            source_url=channel.url,
            tier=tier,
            requested_tier=requested_quality,
            rung=rung,
            codec=rung.codec,
            acceleration=acceleration,
            route=route,
            degraded=degraded,
            generation=generation,
        )


# Encoder name suffix per acceleration method
_ENCODER_SUFFIX = {
    HardwareAccelType.VIDEOTOOLBOX: "videotoolbox",
    HardwareAccelType.NVENC: "nvenc",
    HardwareAccelType.QSV: "qsv",
    HardwareAccelType.VAAPI: "vaapi",
    HardwareAccelType.AMF: "amf",
}

_SOFTWARE_ENCODERS = {
    "h264": "libx264",
    "hevc": "libx265",
    "vp9": "libvpx-vp9",
    "av1": "libsvtav1",
}


def encoder_for(spec: PipelineSpec) -> str:
    """FFmpeg encoder name for a spec."""
    if spec.acceleration.is_hardware:
        return f"{spec.codec}_{_ENCODER_SUFFIX[spec.acceleration.method]}"
    return _SOFTWARE_ENCODERS.get(spec.codec, f"lib{spec.codec}")


def needs_relay(spec: PipelineSpec) -> bool:
    """
    Whether the source must be fetched outside FFmpeg.

    FFmpeg's http protocol only speaks HTTP proxies; SOCKS routes are relayed.
    """
    return spec.route is not None and spec.route.config.scheme == "socks5"


@dataclass
class FFmpegCommandBuilder:
    """
    FFmpeg command builder for pipeline specs.

    Builds complete FFmpeg commands with:
    - Hardware acceleration (decode and encode)
    - Proxy routing for HTTP sources
    - Ladder-rung scaling and bitrate
    - MPEG-TS output on stdout
    """

    ffmpeg: FFmpegConfig = field(default_factory=lambda: get_config().ffmpeg)
    output_format: str = field(default_factory=lambda: get_config().pipeline.output_format)

    # Error tolerance for corrupt live streams
    use_error_tolerance: bool = True

    def build_command(self, spec: PipelineSpec, output_path: str = "pipe:1") -> list[str]:
        """
        Build a complete FFmpeg command.

        Args:
            spec: Pipeline to render
            output_path: Output path or pipe:1 for stdout

        Returns:
            FFmpeg command as list of arguments
        """
        cmd = [self.ffmpeg.path, "-hide_banner", "-nostdin", "-loglevel", self.ffmpeg.log_level]

        if self.use_error_tolerance:
            cmd.extend(["-fflags", "+genpts+discardcorrupt", "-err_detect", "ignore_err"])

        relay = needs_relay(spec)
        channel = Channel(channel_id=spec.channel_id, url=spec.source_url)

        if channel.is_online and not relay:
            cmd.extend([
                "-rw_timeout", str(self.ffmpeg.timeouts.connection * 1_000_000),  # microseconds
                "-reconnect", "1",
                "-reconnect_streamed", "1",
                "-reconnect_delay_max", "5",
            ])
            if spec.route is not None:
                cmd.extend(["-http_proxy", spec.route.url])

        cmd.extend(self._hardware_input_flags(spec))

        if relay:
            cmd.extend(["-i", "pipe:0"])
        else:
            cmd.extend(["-i", spec.source_url])

        cmd.extend(["-vf", self._build_filter_chain(spec)])

        cmd.extend(["-c:v", encoder_for(spec)])
        cmd.extend([
            "-b:v", spec.rung.video_bitrate,
            "-maxrate", spec.rung.video_bitrate,
            "-bufsize", _double_bitrate(spec.rung.video_bitrate),
            "-r", str(spec.rung.framerate),
        ])
        if spec.codec == "h264":
            cmd.extend(["-bsf:v", "h264_mp4toannexb"])

        cmd.extend(["-c:a", self.ffmpeg.audio_codec, "-b:a", self.ffmpeg.audio_bitrate, "-ac", "2"])

        cmd.extend(["-f", self.output_format])
        if self.output_format == "mpegts":
            cmd.extend(["-mpegts_flags", "resend_headers", "-pcr_period", "40"])

        cmd.append(output_path)

        logger.debug(f"FFmpeg command: {' '.join(redact_command(cmd, spec))}")
        return cmd

    def _hardware_input_flags(self, spec: PipelineSpec) -> list[str]:
        """Get hardware acceleration flags for input/decoding."""
        if not spec.acceleration.is_hardware:
            return []

        method = spec.acceleration.method
        device = self.ffmpeg.hwaccel_device

        if method == HardwareAccelType.VIDEOTOOLBOX:
            return ["-hwaccel", "videotoolbox"]
        if method == HardwareAccelType.NVENC:
            return ["-hwaccel", "cuda", "-hwaccel_output_format", "cuda"]
        if method == HardwareAccelType.QSV:
            return ["-hwaccel", "qsv", "-hwaccel_output_format", "qsv"]
        if method == HardwareAccelType.VAAPI:
            flags = ["-hwaccel", "vaapi", "-hwaccel_output_format", "vaapi"]
            if device:
                flags.extend(["-vaapi_device", device])
            return flags
        if method == HardwareAccelType.AMF:
            return ["-hwaccel", "d3d11va"]
        return []

    def _build_filter_chain(self, spec: PipelineSpec) -> str:
        """Build video filter chain."""
        width, height = spec.rung.width, spec.rung.height
        method = spec.acceleration.method if spec.acceleration.is_hardware else None

        if method == HardwareAccelType.NVENC:
            return f"scale_cuda={width}:{height}:force_original_aspect_ratio=decrease"
        if method == HardwareAccelType.VAAPI:
            return f"scale_vaapi=w={width}:h={height}:force_original_aspect_ratio=decrease"
        if method == HardwareAccelType.QSV:
            return f"scale_qsv=w={width}:h={height}"

        return (
            f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
            f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2:color=black,"
            f"format=yuv420p"
        )


def redact_command(cmd: list[str], spec: PipelineSpec) -> list[str]:
    """Replace proxy credentials in a command for logging."""
    if spec.route is None:
        return list(cmd)
    secret, safe = spec.route.url, spec.route.redacted_url
    return [arg.replace(secret, safe) for arg in cmd]


def _double_bitrate(bitrate: str) -> str:
    if bitrate[:-1].isdigit() and bitrate[-1].lower() in "km":
        return f"{int(bitrate[:-1]) * 2}{bitrate[-1]}"
    if bitrate.isdigit():
        return str(int(bitrate) * 2)
    return bitrate
