"""
Hardware acceleration budget.

Decoder/encoder device contexts are limited. Sessions claim a hardware slot
before running a hardware pipeline; a session holds at most one slot no matter
how many of its own pipelines are open during a make-before-break swap.
"""

import logging
from typing import Any

logger = logging.getLogger(__name__)


class AccelerationBudget:
    """Tracks concurrent hardware sessions against a capability-reported limit."""

    def __init__(self, limit: int = 0):
        self._limit = limit
        self._holders: set[str] = set()
        self.denied = 0

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_use(self) -> int:
        return len(self._holders)

    def set_limit(self, limit: int) -> None:
        """Adopt a new limit from a fresh capability snapshot."""
        if limit != self._limit:
            logger.info(f"Hardware session budget: {self._limit} -> {limit}")
        self._limit = limit
        if self.in_use > limit:
            logger.warning(
                f"Hardware sessions in use ({self.in_use}) exceed the new budget ({limit}); "
                f"new sessions will not get hardware until usage drops"
            )

    def holds(self, session_id: str) -> bool:
        return session_id in self._holders

    def has_room(self, session_id: str) -> bool:
        """Whether the session could run a hardware pipeline right now."""
        return session_id in self._holders or len(self._holders) < self._limit

    def try_acquire(self, session_id: str) -> bool:
        """Claim a slot for a session. Re-claiming a held slot succeeds."""
        if session_id in self._holders:
            return True
        if len(self._holders) >= self._limit:
            self.denied += 1
            logger.info(
                f"Hardware budget exhausted ({self.in_use}/{self._limit}); "
                f"session {session_id[:8]} denied a hardware slot"
            )
            return False
        self._holders.add(session_id)
        return True

    def release(self, session_id: str) -> None:
        self._holders.discard(session_id)

    def to_dict(self) -> dict[str, Any]:
        return {"limit": self._limit, "in_use": self.in_use, "denied": self.denied}
