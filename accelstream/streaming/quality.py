"""
Quality tiers and network quality classes.

QualityTier is the transport quality a pipeline is configured for; AUTO is a
policy mode that lets the adaptive controller pick the tier. QualityClass is the
coarse network-health bucket derived from raw telemetry.
"""

from enum import Enum
from typing import Optional

from accelstream.config import QualityThresholdsConfig


class QualityTier(str, Enum):
    """Ordered transport quality tiers plus the AUTO policy mode."""

    AUTO = "auto"
    SD = "SD"
    HD = "HD"
    FHD = "FHD"
    UHD_4K = "4K"

    @property
    def rank(self) -> int:
        """Position in the tier ladder. AUTO has no rank."""
        if self is QualityTier.AUTO:
            raise ValueError("AUTO is a policy mode, not an orderable tier")
        return _TIER_ORDER.index(self)

    def step_down(self) -> "QualityTier":
        """Next lower tier, or self when already at the bottom."""
        return _TIER_ORDER[max(self.rank - 1, 0)]

    def step_up(self) -> "QualityTier":
        """Next higher tier, or self when already at the top."""
        return _TIER_ORDER[min(self.rank + 1, len(_TIER_ORDER) - 1)]

    @classmethod
    def parse(cls, value: "str | QualityTier") -> "QualityTier":
        """Parse a tier from user input (case-insensitive, accepts 'uhd' for 4K)."""
        if isinstance(value, QualityTier):
            return value
        normalized = value.strip().upper()
        aliases = {"AUTO": cls.AUTO, "UHD": cls.UHD_4K, "UHD_4K": cls.UHD_4K, "2160P": cls.UHD_4K}
        if normalized in aliases:
            return aliases[normalized]
        for tier in cls:
            if tier.value.upper() == normalized:
                return tier
        raise ValueError(f"Unknown quality tier: {value}")


_TIER_ORDER: list[QualityTier] = [
    QualityTier.SD,
    QualityTier.HD,
    QualityTier.FHD,
    QualityTier.UHD_4K,
]


def transport_tiers() -> list[QualityTier]:
    """All orderable tiers, lowest first."""
    return list(_TIER_ORDER)


class QualityClass(str, Enum):
    """Network quality classes, ordered poor < fair < good < excellent."""

    POOR = "poor"
    FAIR = "fair"
    GOOD = "good"
    EXCELLENT = "excellent"

    @property
    def rank(self) -> int:
        return _CLASS_ORDER.index(self)

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, QualityClass):
            return NotImplemented
        return self.rank >= other.rank

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, QualityClass):
            return NotImplemented
        return self.rank > other.rank

    def __le__(self, other: object) -> bool:
        if not isinstance(other, QualityClass):
            return NotImplemented
        return self.rank <= other.rank

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, QualityClass):
            return NotImplemented
        return self.rank < other.rank


_CLASS_ORDER: list[QualityClass] = [
    QualityClass.POOR,
    QualityClass.FAIR,
    QualityClass.GOOD,
    QualityClass.EXCELLENT,
]


def classify(
    bandwidth_mbps: float,
    latency_ms: float,
    packet_loss: float,
    thresholds: Optional[QualityThresholdsConfig] = None,
) -> QualityClass:
    """
    Map raw network figures onto a quality class.

    Args:
        bandwidth_mbps: Measured throughput in Mbps
        latency_ms: Round-trip latency in milliseconds
        packet_loss: Loss as a fraction between 0 and 1
        thresholds: Threshold table (defaults when None)

    Returns:
        The highest class whose every threshold is met
    """
    thresholds = thresholds or QualityThresholdsConfig()
    for quality_class, threshold in (
        (QualityClass.EXCELLENT, thresholds.excellent),
        (QualityClass.GOOD, thresholds.good),
        (QualityClass.FAIR, thresholds.fair),
    ):
        if (
            bandwidth_mbps >= threshold.min_bandwidth_mbps
            and latency_ms <= threshold.max_latency_ms
            and packet_loss <= threshold.max_packet_loss
        ):
            return quality_class
    return QualityClass.POOR
