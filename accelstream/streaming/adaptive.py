"""
Adaptive quality controller.

Maps the telemetry feed into per-session quality tier recommendations with
hysteresis: downgrades react after a couple of bad samples, upgrades only
after a sustained dwell, and both move exactly one tier at a time.
"""

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Optional

from accelstream.config import AdaptiveConfig, get_config
from accelstream.streaming.quality import QualityClass, QualityTier, transport_tiers
from accelstream.streaming.telemetry import NetworkSample

logger = logging.getLogger(__name__)

# (session_id, previous tier, new tier)
TierListener = Callable[[str, QualityTier, QualityTier], Any]


@dataclass
class TierState:
    """Per-session adaptation state."""

    session_id: str
    tier: QualityTier
    listener: Optional[TierListener] = None
    recent: deque = field(default_factory=deque)
    upgrade_since: Optional[float] = None
    changes: int = 0


class AdaptiveQualityController:
    """
    Per-session tier recommendations driven by a shared telemetry feed.

    Each registered session keeps its own accepted tier and dwell timer, so
    sessions sharing one monitor still adapt independently.

    Usage:
        controller = AdaptiveQualityController()
        monitor.subscribe(controller.on_sample)
        controller.register(session_id, QualityTier.HD, on_tier_change)
    """

    def __init__(self, settings: Optional[AdaptiveConfig] = None):
        self._settings = settings or get_config().adaptive
        self._states: dict[str, TierState] = {}
        self._requirements = {
            QualityTier.parse(tier): QualityClass(quality_class)
            for tier, quality_class in self._settings.tier_requirements.items()
        }
        for tier in transport_tiers():
            self._requirements.setdefault(tier, QualityClass.POOR)

    @property
    def default_tier(self) -> QualityTier:
        return QualityTier.parse(self._settings.default_tier)

    def requirement(self, tier: QualityTier) -> QualityClass:
        """Minimum quality class a tier needs."""
        return self._requirements[tier]

    def initial_tier(self, sample: Optional[NetworkSample]) -> QualityTier:
        """Starting tier for a new AUTO session."""
        if sample is None:
            return self.default_tier
        best = transport_tiers()[0]
        for tier in transport_tiers():
            if sample.quality >= self.requirement(tier):
                best = tier
        return best

    def register(
        self,
        session_id: str,
        tier: QualityTier,
        listener: Optional[TierListener] = None,
    ) -> TierState:
        """Start tracking a session at the given tier."""
        state = TierState(
            session_id=session_id,
            tier=tier,
            listener=listener,
            recent=deque(maxlen=max(self._settings.downgrade_consecutive_samples, 1)),
        )
        self._states[session_id] = state
        logger.debug(f"Adaptive control registered for session {session_id[:8]} at {tier.value}")
        return state

    def unregister(self, session_id: str) -> None:
        self._states.pop(session_id, None)

    def recommendation(self, session_id: str) -> Optional[QualityTier]:
        """Current recommended tier for a session."""
        state = self._states.get(session_id)
        return state.tier if state else None

    def evaluate(self, state: TierState, sample: NetworkSample) -> Optional[QualityTier]:
        """
        Apply one sample to a session's state.

        Returns:
            The new tier when the recommendation changes, else None
        """
        state.recent.append(sample.quality)
        current_requirement = self.requirement(state.tier)

        # Downgrade: the last N samples all fall short of the current tier.
        if (
            len(state.recent) == state.recent.maxlen
            and all(q < current_requirement for q in state.recent)
            and state.tier.step_down() != state.tier
        ):
            state.tier = state.tier.step_down()
            state.recent.clear()
            state.upgrade_since = None
            return state.tier

        next_tier = state.tier.step_up()
        if next_tier == state.tier:
            state.upgrade_since = None
            return None

        if sample.quality < self.requirement(next_tier):
            state.upgrade_since = None
            return None

        if state.upgrade_since is None:
            state.upgrade_since = sample.timestamp
            return None

        if sample.timestamp - state.upgrade_since >= self._settings.upgrade_dwell_seconds:
            state.tier = next_tier
            state.upgrade_since = None
            state.recent.clear()
            return state.tier

        return None

    async def on_sample(self, sample: NetworkSample) -> None:
        """Telemetry subscription entry point."""
        for state in list(self._states.values()):
            previous = state.tier
            new_tier = self.evaluate(state, sample)
            if new_tier is None or new_tier == previous:
                continue

            state.changes += 1
            direction = "up" if new_tier.rank > previous.rank else "down"
            logger.info(
                f"Session {state.session_id[:8]}: quality {direction}grade "
                f"{previous.value} -> {new_tier.value} (network {sample.quality.value})"
            )
            if state.listener is None:
                continue
            try:
                if asyncio.iscoroutinefunction(state.listener):
                    await state.listener(state.session_id, previous, new_tier)
                else:
                    state.listener(state.session_id, previous, new_tier)
            except Exception as e:
                logger.error(f"Tier change listener error: {e}")

    def get_stats(self) -> dict[str, Any]:
        return {
            "sessions": {
                sid[:8]: {"tier": s.tier.value, "changes": s.changes}
                for sid, s in self._states.items()
            },
            "upgrade_dwell_seconds": self._settings.upgrade_dwell_seconds,
        }
