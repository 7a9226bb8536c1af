"""
FFmpeg Process Pool

Media backend that opens pipeline specs as FFmpeg processes.

A pipeline counts as open once the first chunk of output arrives
(first-frame-ready). Cancelling an open in progress kills the half-started
process, so no decoder/encoder resources leak.
"""

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol

import httpx
import psutil

from accelstream.config import FFmpegConfig, get_config
from accelstream.ffmpeg.pipeline import FFmpegCommandBuilder, PipelineSpec, needs_relay
from accelstream.streaming.error_handler import (
    ErrorClassifier,
    PipelineOpenError,
    PipelineOpenErrorReason,
)

logger = logging.getLogger(__name__)


class ProcessState(str, Enum):
    """State of an FFmpeg process."""
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass
class PipelineHandle:
    """
    An open pipeline.

    Readers call read() to pull transcoded bytes; an empty result means the
    pipeline has ended (or was released).
    """
    id: str
    spec: PipelineSpec
    state: ProcessState = ProcessState.STARTING
    started_at: float = field(default_factory=time.time)
    first_frame_at: Optional[float] = None
    pid: Optional[int] = None
    output_bytes: int = 0
    process: Optional[asyncio.subprocess.Process] = field(default=None, repr=False)
    _prefetched: bytes = field(default=b"", repr=False)
    _read_size: int = field(default=65536, repr=False)
    _tasks: list[asyncio.Task] = field(default_factory=list, repr=False)
    _stderr: deque = field(default_factory=lambda: deque(maxlen=50), repr=False)

    @property
    def is_open(self) -> bool:
        return self.state == ProcessState.RUNNING

    @property
    def startup_seconds(self) -> Optional[float]:
        if self.first_frame_at is None:
            return None
        return self.first_frame_at - self.started_at

    async def read(self) -> bytes:
        """Read the next chunk of transcoded output."""
        if self._prefetched:
            chunk, self._prefetched = self._prefetched, b""
            return chunk
        if self.process is None or self.process.stdout is None or not self.is_open:
            return b""
        chunk = await self.process.stdout.read(self._read_size)
        self.output_bytes += len(chunk)
        return chunk

    def stderr_tail(self) -> str:
        return "\n".join(self._stderr)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "pid": self.pid,
            "state": self.state.value,
            "generation": self.spec.generation,
            "acceleration": str(self.spec.acceleration),
            "startup_seconds": round(self.startup_seconds, 3) if self.startup_seconds else None,
            "output_bytes": self.output_bytes,
        }


class PipelineBackend(Protocol):
    """Transcode engine the session manager drives."""

    async def open(self, spec: PipelineSpec) -> PipelineHandle: ...

    async def release(self, handle: PipelineHandle) -> None: ...


RelayClientFactory = Callable[[PipelineSpec], httpx.AsyncClient]


def _default_relay_client(spec: PipelineSpec) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        proxy=spec.route.url if spec.route else None,
        timeout=httpx.Timeout(30.0, read=None),
        follow_redirects=True,
    )


class FFmpegProcessPool:
    """
    Opens and releases FFmpeg pipelines.

    Features:
    - First-frame-ready detection with a startup timeout
    - FFmpeg stderr classification into PipelineOpenError reasons
    - SOCKS proxy relay (FFmpeg cannot speak SOCKS itself)
    - Cancellation-safe open: half-started processes are killed
    - Process limit and resource tracking
    """

    def __init__(
        self,
        ffmpeg_config: Optional[FFmpegConfig] = None,
        command_builder: Optional[FFmpegCommandBuilder] = None,
        max_processes: Optional[int] = None,
        relay_client_factory: Optional[RelayClientFactory] = None,
    ):
        self._ffmpeg = ffmpeg_config or get_config().ffmpeg
        self._builder = command_builder or FFmpegCommandBuilder(ffmpeg=self._ffmpeg)
        # Make-before-break briefly needs two processes per session
        self._max_processes = max_processes or get_config().session.max_sessions * 2
        self._semaphore = asyncio.Semaphore(self._max_processes)
        self._relay_client_factory = relay_client_factory or _default_relay_client
        self._handles: dict[str, PipelineHandle] = {}
        self._counter = 0

        self.opened = 0
        self.failed = 0

    async def open(self, spec: PipelineSpec) -> PipelineHandle:
        """
        Start FFmpeg for a spec and wait for its first output.

        Raises:
            PipelineOpenError: FFmpeg failed to produce output
        """
        await self._semaphore.acquire()
        self._counter += 1
        handle = PipelineHandle(
            id=f"ffmpeg_{self._counter}",
            spec=spec,
            _read_size=self._ffmpeg.read_size,
        )
        self._handles[handle.id] = handle

        try:
            await self._start(handle)
        except BaseException:
            # Covers cancellation as well as open failures
            self.failed += 1
            await self._teardown(handle, ProcessState.ERROR)
            raise

        self.opened += 1
        logger.info(
            f"Pipeline {handle.id} open (PID {handle.pid}, gen {spec.generation}, "
            f"{spec.tier.value} {spec.acceleration}) in {handle.startup_seconds:.2f}s"
        )
        return handle

    async def release(self, handle: PipelineHandle) -> None:
        """Stop a pipeline and free its process slot. Idempotent."""
        if handle.id not in self._handles:
            return
        await self._teardown(handle, ProcessState.STOPPED)
        logger.info(f"Pipeline {handle.id} released (gen {handle.spec.generation})")

    async def stop_all(self) -> int:
        """Release every open pipeline."""
        handles = list(self._handles.values())
        for handle in handles:
            await self.release(handle)
        return len(handles)

    async def _start(self, handle: PipelineHandle) -> None:
        spec = handle.spec
        command = self._builder.build_command(spec)
        relay = needs_relay(spec)

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE if relay else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as e:
            reason = (
                PipelineOpenErrorReason.ACCELERATION_UNAVAILABLE
                if spec.acceleration.is_hardware
                else PipelineOpenErrorReason.CODEC_UNSUPPORTED
            )
            raise PipelineOpenError(reason, f"Cannot start FFmpeg: {e}") from e

        handle.process = process
        handle.pid = process.pid
        handle._tasks.append(asyncio.create_task(self._drain_stderr(handle)))
        if relay:
            handle._tasks.append(asyncio.create_task(self._relay_source(handle)))

        try:
            first = await asyncio.wait_for(
                process.stdout.read(self._ffmpeg.read_size),
                timeout=self._ffmpeg.timeouts.startup,
            )
        except asyncio.TimeoutError as e:
            stderr = handle.stderr_tail()
            if stderr:
                raise ErrorClassifier.classify_stderr(stderr, spec.acceleration.is_hardware) from e
            raise PipelineOpenError(
                PipelineOpenErrorReason.NETWORK_ERROR,
                f"No output within {self._ffmpeg.timeouts.startup}s",
            ) from e

        if not first:
            await process.wait()
            # Give the stderr drain a moment to catch the final lines
            await asyncio.sleep(0)
            raise ErrorClassifier.classify_stderr(handle.stderr_tail(), spec.acceleration.is_hardware)

        handle._prefetched = first
        handle.output_bytes = len(first)
        handle.first_frame_at = time.time()
        handle.state = ProcessState.RUNNING

    async def _drain_stderr(self, handle: PipelineHandle) -> None:
        process = handle.process
        if process is None or process.stderr is None:
            return
        while True:
            line = await process.stderr.readline()
            if not line:
                break
            handle._stderr.append(line.decode(errors="replace").rstrip())

    async def _relay_source(self, handle: PipelineHandle) -> None:
        """Feed the source into FFmpeg's stdin through the proxy."""
        process = handle.process
        spec = handle.spec
        try:
            async with self._relay_client_factory(spec) as client:
                async with client.stream("GET", spec.source_url) as response:
                    response.raise_for_status()
                    async for chunk in response.aiter_bytes():
                        process.stdin.write(chunk)
                        await process.stdin.drain()
        except (httpx.HTTPError, ConnectionError) as e:
            handle._stderr.append(f"relay: connection refused or failed: {e}")
            logger.warning(f"Source relay for {handle.id} stopped: {e}")
        finally:
            if process.stdin and not process.stdin.is_closing():
                process.stdin.close()

    async def _teardown(self, handle: PipelineHandle, final_state: ProcessState) -> None:
        if self._handles.pop(handle.id, None) is None:
            return
        handle.state = ProcessState.STOPPING
        process = handle.process
        try:
            if process is not None and process.returncode is None:
                process.terminate()
                try:
                    await asyncio.wait_for(process.wait(), timeout=self._ffmpeg.timeouts.stop)
                except asyncio.TimeoutError:
                    process.kill()
                    await process.wait()
        except ProcessLookupError:
            pass
        finally:
            for task in handle._tasks:
                task.cancel()
            handle.state = final_state
            self._semaphore.release()

    def get_stats(self) -> dict[str, Any]:
        """Get pool statistics."""
        memory_mb = 0.0
        cpu = 0.0
        for handle in self._handles.values():
            if handle.pid is None:
                continue
            try:
                ps_proc = psutil.Process(handle.pid)
                memory_mb += ps_proc.memory_info().rss / (1024 * 1024)
                cpu += ps_proc.cpu_percent()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass
        return {
            "max_processes": self._max_processes,
            "active_processes": len(self._handles),
            "opened": self.opened,
            "failed": self.failed,
            "total_memory_mb": round(memory_mb, 1),
            "total_cpu_percent": round(cpu, 1),
            "pipelines": [h.to_dict() for h in self._handles.values()],
        }
