"""
Session Manager for channel playback sessions.

Each session runs a small state machine:

    IDLE -> OPENING -> PLAYING <-> RECONFIGURING
                  \\        \\           \\
                   +--------+-----------+--> STOPPED | FAILED

Features:
- Open with retry, backoff and software fallback
- Make-before-break pipeline swaps on tier, capability and route changes
- Latest-wins: a newer signal cancels an in-flight candidate pipeline
- Strictly increasing generation numbers per session
- Hardware acceleration budget shared across sessions
- Re-probe of capabilities after repeated acceleration failures
- A stream() iterator that follows pipeline swaps
"""

import asyncio
import logging
from collections import OrderedDict
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from accelstream.config import SessionConfig, get_config
from accelstream.ffmpeg.capabilities import CapabilityProber, CapabilitySnapshot
from accelstream.ffmpeg.pipeline import (
    Channel,
    GenerationCounter,
    PipelineConfigurator,
    PipelineSpec,
)
from accelstream.ffmpeg.process_pool import PipelineBackend, PipelineHandle
from accelstream.streaming.accel_budget import AccelerationBudget
from accelstream.streaming.adaptive import AdaptiveQualityController
from accelstream.streaming.error_handler import (
    FailureReason,
    PipelineOpenError,
    SessionError,
    SessionErrorReason,
)
from accelstream.streaming.proxy import ProxyPathResolver, ResolvedRoute
from accelstream.streaming.quality import QualityTier
from accelstream.streaming.retry_manager import RetryConfig, RetryManager
from accelstream.streaming.telemetry import NetworkTelemetryMonitor

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Stream session states."""

    IDLE = "idle"
    OPENING = "opening"
    PLAYING = "playing"
    RECONFIGURING = "reconfiguring"
    STOPPED = "stopped"
    FAILED = "failed"


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.OPENING, SessionState.STOPPED, SessionState.FAILED}),
    SessionState.OPENING: frozenset({SessionState.PLAYING, SessionState.STOPPED, SessionState.FAILED}),
    SessionState.PLAYING: frozenset({SessionState.RECONFIGURING, SessionState.STOPPED, SessionState.FAILED}),
    SessionState.RECONFIGURING: frozenset({SessionState.PLAYING, SessionState.STOPPED, SessionState.FAILED}),
    SessionState.STOPPED: frozenset(),
    SessionState.FAILED: frozenset(),
}

_TERMINAL = (SessionState.STOPPED, SessionState.FAILED)


class InvalidTransitionError(RuntimeError):
    """A session was asked to move to a state it cannot reach."""

    def __init__(self, current: SessionState, target: SessionState):
        super().__init__(f"Illegal session transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


@dataclass(frozen=True)
class SessionHandle:
    """Opaque reference handed to callers of select_channel()."""

    session_id: str
    channel_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"session_id": self.session_id, "channel_id": self.channel_id}


@dataclass(frozen=True)
class SessionStatus:
    """Point-in-time view of a session."""

    state: SessionState
    current_tier: Optional[QualityTier]
    acceleration_mode: Optional[str]
    degraded: bool
    failure_reason: Optional[FailureReason]
    generation: int = 0
    degraded_adaptations: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "current_tier": self.current_tier.value if self.current_tier else None,
            "acceleration_mode": self.acceleration_mode,
            "degraded": self.degraded,
            "failure_reason": self.failure_reason.value if self.failure_reason else None,
            "generation": self.generation,
            "degraded_adaptations": self.degraded_adaptations,
        }


class StreamSession:
    """
    A playback session for one channel.

    Holds exactly one current PipelineSpec once playing. Only the
    SessionManager changes its state and pipeline.
    """

    def __init__(self, channel: Channel, requested_quality: QualityTier, hwaccel: bool = True):
        self.session_id = str(uuid4())
        self.channel = channel
        self.requested_quality = requested_quality
        self.hwaccel = hwaccel
        self.state = SessionState.IDLE
        self.spec: Optional[PipelineSpec] = None
        self.handle: Optional[PipelineHandle] = None
        self.generations = GenerationCounter()
        self.created_at = datetime.now(timezone.utc)
        self.last_reconfigured_at: Optional[datetime] = None
        self.failure_reason: Optional[FailureReason] = None
        self.error: Optional[SessionError] = None

        # Metrics
        self.reconfigurations = 0
        self.superseded = 0
        self.degraded_adaptations = 0
        self.last_adaptation_error: Optional[dict[str, Any]] = None

        self._changed = asyncio.Condition()
        self._wake = asyncio.Event()
        self._lifecycle: Optional[asyncio.Task] = None
        self._candidate: Optional[asyncio.Task] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in _TERMINAL

    def handle_ref(self) -> SessionHandle:
        return SessionHandle(session_id=self.session_id, channel_id=self.channel.channel_id)

    def status(self) -> SessionStatus:
        return SessionStatus(
            state=self.state,
            current_tier=self.spec.tier if self.spec else None,
            acceleration_mode=str(self.spec.acceleration) if self.spec else None,
            degraded=bool(self.spec and self.spec.degraded),
            failure_reason=self.failure_reason,
            generation=self.spec.generation if self.spec else 0,
            degraded_adaptations=self.degraded_adaptations,
        )

    async def wait_ready(self, timeout: Optional[float] = None) -> SessionState:
        """Wait until the session has left IDLE/OPENING."""
        async def _settled() -> None:
            async with self._changed:
                await self._changed.wait_for(
                    lambda: self.state not in (SessionState.IDLE, SessionState.OPENING)
                )

        await asyncio.wait_for(_settled(), timeout=timeout)
        return self.state

    async def stream(self) -> AsyncIterator[bytes]:
        """
        Transcoded bytes of whichever pipeline is current.

        Follows make-before-break swaps; ends when the session stops or fails,
        or when the current pipeline ends without a replacement.
        """
        while True:
            async with self._changed:
                await self._changed.wait_for(lambda: self.handle is not None or self.is_terminal)
                handle = self.handle
            if self.is_terminal or handle is None:
                return

            chunk = await handle.read()
            if chunk:
                yield chunk
                continue

            async with self._changed:
                await self._changed.wait_for(
                    lambda: self.handle is not handle or self.state != SessionState.RECONFIGURING
                )
                if self.handle is handle:
                    return

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "session_id": self.session_id,
            "channel_id": self.channel.channel_id,
            "channel_name": self.channel.name,
            "requested_quality": self.requested_quality.value,
            "hwaccel": self.hwaccel,
            "created_at": self.created_at.isoformat(),
            "last_reconfigured_at": (
                self.last_reconfigured_at.isoformat() if self.last_reconfigured_at else None
            ),
            "status": self.status().to_dict(),
            "spec": self.spec.to_dict() if self.spec else None,
            "pipeline": self.handle.to_dict() if self.handle else None,
            "reconfigurations": self.reconfigurations,
            "superseded": self.superseded,
            "last_adaptation_error": self.last_adaptation_error,
            "error": self.error.to_dict() if self.error else None,
        }


class SessionManager:
    """
    Manages playback sessions and their pipelines.

    Usage:
        manager = SessionManager(backend, prober, resolver, configurator, controller)
        session = await manager.create_session(channel, QualityTier.AUTO)
        await session.wait_ready()

        async for chunk in session.stream():
            ...

        await manager.stop_session(session.session_id)
    """

    MAX_RETIRED_SESSIONS = 100

    def __init__(
        self,
        backend: PipelineBackend,
        prober: CapabilityProber,
        resolver: ProxyPathResolver,
        configurator: PipelineConfigurator,
        controller: AdaptiveQualityController,
        telemetry: Optional[NetworkTelemetryMonitor] = None,
        budget: Optional[AccelerationBudget] = None,
        settings: Optional[SessionConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize session manager.

        Args:
            backend: Media backend opening pipeline specs
            prober: Capability prober (effective snapshot, re-probe)
            resolver: Proxy resolver (active route)
            configurator: Pipeline configurator
            controller: Adaptive quality controller for AUTO sessions
            telemetry: Network monitor for the initial AUTO tier
            budget: Hardware session budget
            settings: Session settings (global config when None)
            sleep: Backoff delay function
        """
        self._settings = settings or get_config().session
        self._backend = backend
        self._prober = prober
        self._resolver = resolver
        self._configurator = configurator
        self._controller = controller
        self._telemetry = telemetry
        self._budget = budget or AccelerationBudget(
            (prober.current.max_hw_sessions if prober.current else 0)
        )
        self._retry_config = RetryConfig.from_session_config(self._settings)
        self._sleep = sleep

        self._sessions: dict[str, StreamSession] = {}
        self._retired: OrderedDict[str, StreamSession] = OrderedDict()
        self._lock = asyncio.Lock()
        self._background: set[asyncio.Task] = set()

        # Consecutive acceleration-attributable open failures
        self._accel_failures = 0

        # Metrics
        self._total_sessions_created = 0
        self._total_sessions_failed = 0
        self._total_reprobes_triggered = 0

    @property
    def budget(self) -> AccelerationBudget:
        return self._budget

    # Session lifecycle

    async def create_session(
        self,
        channel: Channel,
        requested_quality: QualityTier,
        replace: bool = True,
        hwaccel: bool = True,
    ) -> StreamSession:
        """
        Create a session and start opening its pipeline.

        Args:
            channel: Channel to play
            requested_quality: Explicit tier or AUTO
            replace: Stop every other live session first (channel change)
            hwaccel: Allow hardware decode/encode for this session

        Returns:
            The new session (OPENING; see StreamSession.wait_ready)

        Raises:
            SessionError: budget_exhausted under the "deny" budget policy
        """
        async with self._lock:
            if replace:
                for other in list(self._sessions.values()):
                    await self._stop(other, "channel change")

            session = StreamSession(channel, requested_quality, hwaccel=hwaccel)

            if requested_quality == QualityTier.AUTO:
                latest = self._telemetry.latest() if self._telemetry else None
                self._controller.register(
                    session.session_id,
                    self._controller.initial_tier(latest),
                    self._on_tier_change,
                )

            try:
                # Deny up front rather than failing in the background
                self._plan(session, initial=True)
            except SessionError:
                self._controller.unregister(session.session_id)
                raise

            self._sessions[session.session_id] = session
            self._total_sessions_created += 1
            session._lifecycle = asyncio.create_task(self._run_session(session))

            logger.info(
                f"Session created: {session.session_id[:8]}... for channel "
                f"{channel.channel_id} ({requested_quality.value})"
            )
            return session

    async def stop_session(self, session_id: str, reason: str = "stopped") -> Optional[StreamSession]:
        """
        Stop a session, cancelling in-flight work and releasing its pipelines.

        Returns:
            The session, or None if not found
        """
        async with self._lock:
            session = self.get_session(session_id)
            if session is None:
                return None
            await self._stop(session, reason)
            return session

    async def stop_all(self) -> int:
        """Stop every live session."""
        async with self._lock:
            sessions = list(self._sessions.values())
            for session in sessions:
                await self._stop(session, "shutdown")
        for task in list(self._background):
            task.cancel()
        return len(sessions)

    def get_session(self, session_id: str) -> Optional[StreamSession]:
        """Get a live or recently finished session by ID."""
        return self._sessions.get(session_id) or self._retired.get(session_id)

    def get_active_sessions(self) -> list[StreamSession]:
        return list(self._sessions.values())

    # Signals

    def on_capabilities_changed(self, snapshot: CapabilitySnapshot) -> None:
        """Capability-change signal from the prober."""
        self._budget.set_limit(snapshot.max_hw_sessions)
        for session in list(self._sessions.values()):
            self._signal(session, "capabilities changed")

    def on_route_changed(self, route: Optional[ResolvedRoute]) -> None:
        """Active proxy route changed."""
        for session in list(self._sessions.values()):
            self._signal(session, "proxy route changed")

    def _on_tier_change(self, session_id: str, previous: QualityTier, new: QualityTier) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            self._signal(session, f"tier {previous.value} -> {new.value}")

    def _signal(self, session: StreamSession, reason: str) -> None:
        if session.is_terminal:
            return
        logger.debug(f"Session {session.session_id[:8]}: {reason}")
        candidate = session._candidate
        if candidate is not None and not candidate.done():
            candidate.cancel()
        session._wake.set()

    # Internals

    def _transition(self, session: StreamSession, target: SessionState) -> None:
        if target not in _TRANSITIONS[session.state]:
            raise InvalidTransitionError(session.state, target)
        logger.debug(f"Session {session.session_id[:8]}: {session.state.value} -> {target.value}")
        session.state = target

    async def _set_state(self, session: StreamSession, target: SessionState) -> None:
        self._transition(session, target)
        await self._notify_changed(session)

    async def _notify_changed(self, session: StreamSession) -> None:
        async with session._changed:
            session._changed.notify_all()

    def _plan(
        self,
        session: StreamSession,
        force_software: bool = False,
        initial: bool = False,
    ) -> PipelineSpec:
        """Configure the next spec for a session, applying the hardware budget."""
        caps = self._prober.effective()
        if force_software or not session.hwaccel:
            caps = caps.without_hardware()

        recommended = self._controller.recommendation(session.session_id)
        route = self._resolver.active_route

        spec = self._configurator.configure(
            session.channel,
            session.requested_quality,
            caps,
            route,
            generation=session.generations.next(),
            recommended_tier=recommended,
        )

        if spec.acceleration.is_hardware and not self._budget.has_room(session.session_id):
            if initial and self._settings.budget_policy == "deny":
                raise SessionError(
                    SessionErrorReason.BUDGET_EXHAUSTED,
                    f"All {self._budget.limit} hardware sessions are in use",
                )
            logger.info(
                f"Session {session.session_id[:8]}: hardware budget exhausted, using software"
            )
            spec = self._configurator.configure(
                session.channel,
                session.requested_quality,
                caps.without_hardware(),
                route,
                generation=session.generations.next(),
                recommended_tier=recommended,
            )
        return spec

    async def _open_pipeline(self, session: StreamSession, spec: PipelineSpec) -> PipelineHandle:
        """Open a spec, holding a hardware slot for it when needed."""
        newly_claimed = False
        if spec.acceleration.is_hardware:
            newly_claimed = not self._budget.holds(session.session_id)
            self._budget.try_acquire(session.session_id)
        try:
            handle = await self._backend.open(spec)
        except BaseException as e:
            if newly_claimed:
                self._budget.release(session.session_id)
            if isinstance(e, PipelineOpenError):
                self._record_open_failure(e)
            raise
        self._accel_failures = 0
        return handle

    def _record_open_failure(self, error: PipelineOpenError) -> None:
        if not error.acceleration_related:
            self._accel_failures = 0
            return
        self._accel_failures += 1
        if self._accel_failures >= self._settings.reprobe_after_failures:
            logger.warning(
                f"{self._accel_failures} consecutive acceleration failures, re-probing capabilities"
            )
            self._accel_failures = 0
            self._total_reprobes_triggered += 1
            task = asyncio.create_task(self._prober.reprobe())
            self._background.add(task)
            task.add_done_callback(self._reprobe_done)

    def _reprobe_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Triggered re-probe failed: {task.exception()}")

    async def _run_session(self, session: StreamSession) -> None:
        """Lifecycle task: open, then react to signals until stopped."""
        try:
            await self._open(session)
            while not session.is_terminal:
                await session._wake.wait()
                if session.is_terminal:
                    break
                await self._reconfigure(session)
        except asyncio.CancelledError:
            raise
        except SessionError as e:
            await self._fail(session, e)
        except Exception as e:
            if session.is_terminal:
                # Stopped while a step was completing
                return
            logger.exception(f"Session {session.session_id[:8]} crashed: {e}")
            await self._fail(
                session,
                SessionError(SessionErrorReason.RETRIES_EXHAUSTED, f"Unexpected error: {e}"),
            )

    async def _open(self, session: StreamSession) -> None:
        await self._set_state(session, SessionState.OPENING)

        async def attempt(context: dict[str, Any]) -> tuple[PipelineSpec, PipelineHandle]:
            # Signals during the open are folded into this attempt's plan
            session._wake.clear()
            spec = self._plan(session, force_software=context["force_software"])
            handle = await self._open_pipeline(session, spec)
            return spec, handle

        retry = RetryManager(self._retry_config, sleep=self._sleep)
        spec, handle = await retry.execute_with_retry(
            attempt, operation_name=f"Open channel {session.channel.channel_id}"
        )

        if not spec.acceleration.is_hardware:
            self._budget.release(session.session_id)
        session.spec = spec
        session.handle = handle
        await self._set_state(session, SessionState.PLAYING)
        logger.info(
            f"Session {session.session_id[:8]} playing {spec.tier.value} "
            f"({spec.acceleration}, gen {spec.generation})"
            + (" [degraded]" if spec.degraded else "")
        )

    async def _reconfigure(self, session: StreamSession) -> None:
        """Bring the session onto the newest spec, make-before-break."""
        while not session.is_terminal:
            session._wake.clear()
            spec = self._plan(session)

            if spec.decision() == session.spec.decision():
                if session.state == SessionState.RECONFIGURING:
                    await self._set_state(session, SessionState.PLAYING)
                return

            if session.state == SessionState.PLAYING:
                await self._set_state(session, SessionState.RECONFIGURING)

            logger.info(
                f"Session {session.session_id[:8]}: reconfiguring gen {session.spec.generation} "
                f"({session.spec.tier.value}, {session.spec.acceleration}) -> gen {spec.generation} "
                f"({spec.tier.value}, {spec.acceleration})"
            )

            candidate = asyncio.create_task(self._open_pipeline(session, spec))
            session._candidate = candidate
            try:
                await asyncio.wait({candidate})
            except asyncio.CancelledError:
                candidate.cancel()
                await asyncio.gather(candidate, return_exceptions=True)
                if candidate.done() and not candidate.cancelled() and candidate.exception() is None:
                    await self._backend.release(candidate.result())
                raise
            finally:
                session._candidate = None

            if candidate.cancelled():
                session.superseded += 1
                logger.info(
                    f"Session {session.session_id[:8]}: gen {spec.generation} superseded by a newer signal"
                )
                continue

            error = candidate.exception()
            if error is not None:
                self._record_degraded_adaptation(session, spec, error)
                await self._set_state(session, SessionState.PLAYING)
                return

            await self._swap(session, spec, candidate.result())
            await self._set_state(session, SessionState.PLAYING)
            return

    async def _swap(self, session: StreamSession, spec: PipelineSpec, handle: PipelineHandle) -> None:
        """Make a newly opened pipeline current and release the old one."""
        if session.spec is not None and spec.generation <= session.spec.generation:
            logger.info(
                f"Session {session.session_id[:8]}: discarding stale gen {spec.generation} "
                f"(applied {session.spec.generation})"
            )
            await self._backend.release(handle)
            return

        old = session.handle
        session.spec, session.handle = spec, handle
        session.last_reconfigured_at = datetime.now(timezone.utc)
        session.reconfigurations += 1
        if not spec.acceleration.is_hardware:
            self._budget.release(session.session_id)
        await self._notify_changed(session)

        if old is not None:
            await self._backend.release(old)
        logger.info(
            f"Session {session.session_id[:8]} swapped to gen {spec.generation} "
            f"({spec.tier.value}, {spec.acceleration})"
        )

    def _record_degraded_adaptation(
        self, session: StreamSession, spec: PipelineSpec, error: BaseException
    ) -> None:
        session.degraded_adaptations += 1
        if isinstance(error, PipelineOpenError):
            session.last_adaptation_error = error.to_dict()
        else:
            session.last_adaptation_error = {"error": type(error).__name__, "message": str(error)}
        logger.warning(
            f"Session {session.session_id[:8]}: degraded adaptation, gen {spec.generation} "
            f"({spec.tier.value}, {spec.acceleration}) failed to open: {error}; "
            f"staying on gen {session.spec.generation}"
        )

    async def _fail(self, session: StreamSession, error: SessionError) -> None:
        if session.is_terminal:
            return
        session.error = error
        session.failure_reason = error.failure_reason
        self._total_sessions_failed += 1
        self._transition(session, SessionState.FAILED)
        await self._release_all(session)
        self._retire(session)
        await self._notify_changed(session)
        logger.error(
            f"Session {session.session_id[:8]} failed ({error.reason.value}"
            + (f", {error.failure_reason.value}" if error.failure_reason else "")
            + f"): {error.message}"
        )

    async def _stop(self, session: StreamSession, reason: str) -> None:
        if session.is_terminal:
            return
        self._transition(session, SessionState.STOPPED)
        await self._notify_changed(session)

        task = session._lifecycle
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self._release_all(session)
        self._retire(session)
        logger.info(f"Session {session.session_id[:8]} stopped ({reason})")

    async def _release_all(self, session: StreamSession) -> None:
        candidate = session._candidate
        if candidate is not None and not candidate.done():
            candidate.cancel()
            await asyncio.gather(candidate, return_exceptions=True)
        if session.handle is not None:
            await self._backend.release(session.handle)
        self._budget.release(session.session_id)
        self._controller.unregister(session.session_id)

    def _retire(self, session: StreamSession) -> None:
        self._sessions.pop(session.session_id, None)
        self._retired[session.session_id] = session
        while len(self._retired) > self.MAX_RETIRED_SESSIONS:
            self._retired.popitem(last=False)

    def get_stats(self) -> dict[str, Any]:
        """Get session manager statistics."""
        by_state: dict[str, int] = {}
        for session in self._sessions.values():
            by_state[session.state.value] = by_state.get(session.state.value, 0) + 1
        return {
            "active_sessions": len(self._sessions),
            "sessions_by_state": by_state,
            "total_sessions_created": self._total_sessions_created,
            "total_sessions_failed": self._total_sessions_failed,
            "total_reprobes_triggered": self._total_reprobes_triggered,
            "hardware_budget": self._budget.to_dict(),
        }
