"""
Retry logic for pipeline opens.

Failed opens are retried with exponential backoff. When the last failure was
acceleration-related, the final attempt switches to software decode/encode.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, TypeVar

from accelstream.config import SessionConfig
from accelstream.streaming.error_handler import (
    PipelineOpenError,
    SessionError,
    SessionErrorReason,
    failure_reason_for,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry attempts."""

    max_attempts: int = 3
    backoff_base: float = 0.5
    backoff_factor: float = 2.0
    backoff_max: float = 10.0
    software_fallback: bool = True

    @classmethod
    def from_session_config(cls, settings: SessionConfig) -> "RetryConfig":
        return cls(
            max_attempts=settings.open_max_attempts,
            backoff_base=settings.open_backoff_base,
            backoff_factor=settings.open_backoff_factor,
            backoff_max=settings.open_backoff_max,
        )


@dataclass
class RetryAttempt:
    """Represents a single open attempt."""

    attempt_number: int
    force_software: bool
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    success: bool = False
    error: Optional[PipelineOpenError] = None


class RetryManager:
    """Runs an open operation with backoff and software fallback."""

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize retry manager.

        Args:
            config: Retry configuration.
            sleep: Delay function (replaced in tests).
        """
        self.config = config or RetryConfig()
        self._sleep = sleep
        self.attempt_history: list[RetryAttempt] = []

    def calculate_backoff(self, attempt: int) -> float:
        """Delay after the given zero-based failed attempt."""
        delay = self.config.backoff_base * (self.config.backoff_factor ** attempt)
        return min(delay, self.config.backoff_max)

    async def execute_with_retry(
        self,
        operation: Callable[[dict[str, Any]], Awaitable[T]],
        operation_name: str = "operation",
        on_failure: Optional[Callable[[PipelineOpenError], Any]] = None,
    ) -> T:
        """
        Execute an open operation with automatic retry.

        Args:
            operation: Async function taking a context dict; the context carries
                "attempt" and "force_software".
            operation_name: Name of the operation for logging.
            on_failure: Called with every PipelineOpenError.

        Returns:
            Result of the operation.

        Raises:
            SessionError: retries_exhausted, with the reason of the last failure.
        """
        last_error: Optional[PipelineOpenError] = None
        max_attempts = max(self.config.max_attempts, 1)

        for attempt in range(max_attempts):
            is_final = attempt == max_attempts - 1
            force_software = bool(
                self.config.software_fallback
                and last_error is not None
                and last_error.acceleration_related
                and (is_final or max_attempts == 1)
            )
            context = {"attempt": attempt, "force_software": force_software}
            record = RetryAttempt(attempt_number=attempt + 1, force_software=force_software)
            self.attempt_history.append(record)

            try:
                result = await operation(context)
            except PipelineOpenError as e:
                last_error = e
                record.error = e
                if on_failure:
                    on_failure(e)

                if is_final:
                    logger.error(
                        f"{operation_name} failed after {max_attempts} attempts. "
                        f"Last error: {e.reason.value} - {e.message}"
                    )
                    raise SessionError(
                        SessionErrorReason.RETRIES_EXHAUSTED,
                        f"{operation_name} failed after {max_attempts} attempts: {e.message}",
                        failure_reason=failure_reason_for(e),
                    ) from e

                delay = self.calculate_backoff(attempt)
                logger.info(
                    f"{operation_name} failed (attempt {attempt + 1}/{max_attempts}, "
                    f"{e.reason.value}): {e.message}; retrying in {delay:.2f}s"
                )
                await self._sleep(delay)
                continue

            record.success = True
            if attempt > 0:
                logger.info(
                    f"{operation_name} succeeded after {attempt} retry attempt(s)"
                    + (" with software fallback" if force_software else "")
                )
            return result

        raise RuntimeError("unreachable: retry loop ran zero attempts")
