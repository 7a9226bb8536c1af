"""
Error taxonomy and classification for the streaming core.

Every failure the core surfaces is an AccelStreamError subclass carrying a
machine-readable reason, so callers can decide whether to retry at a lower
tier, with a different source, or not at all.
"""

import logging
from enum import Enum
from typing import Any, Optional

logger = logging.getLogger(__name__)


class AccelStreamError(Exception):
    """Base class for all streaming core errors."""

    def __init__(self, reason: Enum, message: str = "", details: Optional[dict[str, Any]] = None):
        self.reason = reason
        self.message = message or reason.value
        self.details = details or {}
        super().__init__(f"{reason.value}: {self.message}")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "error": type(self).__name__,
            "reason": self.reason.value,
            "message": self.message,
        }


class ProbeErrorReason(str, Enum):
    """Why capability discovery failed."""

    BACKEND_UNAVAILABLE = "backend_unavailable"
    TIMEOUT = "timeout"


class ProbeError(AccelStreamError):
    """Capability discovery failed."""

    reason: ProbeErrorReason


class ProxyErrorReason(str, Enum):
    """Why a proxy configuration was rejected."""

    INVALID_CONFIG = "invalid_config"
    CONNECTION_REFUSED = "connection_refused"
    AUTH_FAILED = "auth_failed"
    SUPERSEDED = "superseded"


class ProxyError(AccelStreamError):
    """A proxy configuration was rejected."""

    reason: ProxyErrorReason


class PipelineOpenErrorReason(str, Enum):
    """Why a transcode pipeline could not be opened."""

    ACCELERATION_UNAVAILABLE = "acceleration_unavailable"
    CODEC_UNSUPPORTED = "codec_unsupported"
    SOURCE_UNREACHABLE = "source_unreachable"
    NETWORK_ERROR = "network_error"


class PipelineOpenError(AccelStreamError):
    """A transcode pipeline could not be opened."""

    reason: PipelineOpenErrorReason

    @property
    def acceleration_related(self) -> bool:
        """Whether a software-only retry could plausibly succeed."""
        return self.reason == PipelineOpenErrorReason.ACCELERATION_UNAVAILABLE


class SessionErrorReason(str, Enum):
    """Why a session could not be brought up."""

    RETRIES_EXHAUSTED = "retries_exhausted"
    BUDGET_EXHAUSTED = "budget_exhausted"


class FailureReason(str, Enum):
    """User-facing cause of a failed session."""

    ACCELERATION = "acceleration"
    NETWORK = "network"
    SOURCE_UNREACHABLE = "source_unreachable"
    CODEC = "codec"


class SessionError(AccelStreamError):
    """A session could not be brought up."""

    reason: SessionErrorReason

    def __init__(
        self,
        reason: SessionErrorReason,
        message: str = "",
        failure_reason: Optional[FailureReason] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(reason, message, details)
        self.failure_reason = failure_reason

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["failure_reason"] = self.failure_reason.value if self.failure_reason else None
        return data


_FAILURE_REASONS = {
    PipelineOpenErrorReason.ACCELERATION_UNAVAILABLE: FailureReason.ACCELERATION,
    PipelineOpenErrorReason.CODEC_UNSUPPORTED: FailureReason.CODEC,
    PipelineOpenErrorReason.SOURCE_UNREACHABLE: FailureReason.SOURCE_UNREACHABLE,
    PipelineOpenErrorReason.NETWORK_ERROR: FailureReason.NETWORK,
}


def failure_reason_for(error: PipelineOpenError) -> FailureReason:
    """Map a pipeline open error onto the reason reported to the caller."""
    return _FAILURE_REASONS[error.reason]


class ErrorClassifier:
    """Classifies FFmpeg diagnostics into pipeline open errors."""

    # Checked in order; the first group with a matching term wins.
    _ACCELERATION_TERMS = [
        "hwaccel",
        "hardware device",
        "device creation failed",
        "cuda",
        "nvenc",
        "cuvid",
        "vaapi",
        "qsv",
        "videotoolbox",
        "no capable devices found",
        "failed to initialise",
        "failed to initialize",
        "out of memory",
    ]
    _CODEC_TERMS = [
        "unknown encoder",
        "unknown decoder",
        "encoder not found",
        "decoder not found",
        "codec not currently supported",
        "unsupported codec",
        "invalid data found when processing input",
    ]
    _SOURCE_TERMS = [
        "404",
        "403",
        "401",
        "410",
        "not found",
        "forbidden",
        "no such file",
        "server returned",
        "invalid argument",
    ]
    _NETWORK_TERMS = [
        "timed out",
        "timeout",
        "connection refused",
        "connection reset",
        "network is unreachable",
        "failed to resolve hostname",
        "name or service not known",
        "temporary failure in name resolution",
        "broken pipe",
    ]

    @classmethod
    def classify_stderr(cls, stderr: str, hardware: bool = False) -> PipelineOpenError:
        """
        Classify FFmpeg stderr output.

        Args:
            stderr: Captured diagnostic output
            hardware: Whether the failed pipeline used hardware acceleration

        Returns:
            PipelineOpenError with the best-matching reason
        """
        text = stderr.lower()
        last_line = stderr.strip().splitlines()[-1] if stderr.strip() else "ffmpeg exited"

        if hardware and any(term in text for term in cls._ACCELERATION_TERMS):
            reason = PipelineOpenErrorReason.ACCELERATION_UNAVAILABLE
        elif any(term in text for term in cls._CODEC_TERMS):
            reason = PipelineOpenErrorReason.CODEC_UNSUPPORTED
        elif any(term in text for term in cls._NETWORK_TERMS):
            reason = PipelineOpenErrorReason.NETWORK_ERROR
        elif any(term in text for term in cls._SOURCE_TERMS):
            reason = PipelineOpenErrorReason.SOURCE_UNREACHABLE
        elif hardware:
            # Unexplained failure with hardware in play: let the caller try software.
            reason = PipelineOpenErrorReason.ACCELERATION_UNAVAILABLE
        else:
            reason = PipelineOpenErrorReason.SOURCE_UNREACHABLE

        logger.debug(f"Classified FFmpeg failure as {reason.value}: {last_line}")
        return PipelineOpenError(reason, last_line)
