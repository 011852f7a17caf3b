"""Lifecycle management of the process-wide transcoding engine.

The engine accepts one invocation at a time and offers no way to abort a call
in flight. :class:`EngineManager` owns the single instance, enforces the load
state machine, and wraps every invocation with event subscriptions and a
watchdog race. A call that loses the race is abandoned: it keeps running inside
the engine, but its events and eventual result never reach the caller.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Protocol, Sequence, Tuple

from .errors import (
    ClipforgeError,
    EngineBusyError,
    EngineFailure,
    EngineNotReadyError,
    LoadFailure,
    WatchdogTimeout,
)
from .events import EventChannel, Subscription
from .models import EngineState, ExecutionMode
from .watchdog import Abandoned, Watchdog, first_settled

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]
LogCallback = Callable[[str], None]
Cleanup = Callable[[], Awaitable[None]]


class TranscodeEngine(Protocol):
    """Interface of the opaque transcoding executor."""

    progress: EventChannel[float]
    log: EventChannel[str]

    async def load(self) -> None: ...

    async def write_file(self, name: str, data: bytes) -> None: ...

    async def exec(self, argv: Sequence[str]) -> None: ...

    async def read_file(self, name: str) -> bytes: ...

    async def delete_file(self, name: str) -> None: ...

    def close(self) -> None: ...


@dataclass(slots=True)
class Invocation:
    """Bookkeeping for a single engine call."""

    number: int
    argv: Tuple[str, ...]
    subscriptions: List[Subscription] = field(default_factory=list)
    abandoned: bool = False
    progress_events: int = 0

    def unsubscribe(self) -> None:
        for subscription in self.subscriptions:
            subscription.close()


@dataclass(frozen=True, slots=True)
class InvocationResult:
    elapsed_ms: float
    progress_events: int


class EngineManager:
    """Owns the engine instance and serialises access to it."""

    def __init__(self, engine: TranscodeEngine, mode: ExecutionMode = ExecutionMode.MULTI_THREADED) -> None:
        self.engine = engine
        self.mode = mode
        self.state = EngineState.UNLOADED
        self.load_error: Optional[LoadFailure] = None
        self._load_task: Optional[asyncio.Future] = None
        self._numbers = itertools.count(1)
        self._pending_cleanups: set[asyncio.Future] = set()
        self.current: Optional[Invocation] = None
        self.abandoned_count = 0

    @property
    def ready(self) -> bool:
        return self.state in (EngineState.READY, EngineState.BUSY)

    # ---- loading -----------------------------------------------------------------
    async def load(self) -> None:
        """Load the engine once; later and concurrent callers share the result."""

        if self.state is EngineState.LOAD_FAILED:
            raise self.load_error or LoadFailure("Engine failed to load")
        if self._load_task is None:
            self.state = EngineState.LOADING
            self._load_task = asyncio.ensure_future(self._load())
        await asyncio.shield(self._load_task)

    async def _load(self) -> None:
        try:
            await self.engine.load()
        except Exception as exc:
            self.state = EngineState.LOAD_FAILED
            self.load_error = exc if isinstance(exc, LoadFailure) else LoadFailure(f"Engine failed to load: {exc}")
            logger.error("Engine load failed: %s", exc)
            raise self.load_error
        self.state = EngineState.READY
        logger.info("Engine ready (%s mode)", self.mode.value)

    def _require_loaded(self) -> None:
        if self.state is EngineState.LOAD_FAILED:
            raise self.load_error or LoadFailure("Engine failed to load")
        if not self.ready:
            raise EngineNotReadyError(f"Engine is {self.state.value}")

    # ---- virtual storage ---------------------------------------------------------
    async def write_file(self, name: str, data: bytes) -> None:
        self._require_loaded()
        await self.engine.write_file(name, data)

    async def read_file(self, name: str) -> bytes:
        self._require_loaded()
        return await self.engine.read_file(name)

    async def delete_file(self, name: str) -> None:
        self._require_loaded()
        await self.engine.delete_file(name)

    # ---- invocation --------------------------------------------------------------
    async def invoke(
        self,
        argv: Sequence[str],
        *,
        on_progress: Optional[ProgressCallback] = None,
        on_log: Optional[LogCallback] = None,
        budget_ms: Optional[float] = None,
        reset_on_progress: bool = True,
        after_abandon: Optional[Cleanup] = None,
    ) -> InvocationResult:
        """Run ``argv`` on the engine.

        With a ``budget_ms`` the call is raced against a :class:`Watchdog`; every
        strictly positive progress event re-arms it when ``reset_on_progress`` is
        set. ``after_abandon`` runs once an abandoned call finally settles, so
        storage it still uses can be released.

        Raises :class:`EngineBusyError` if another call is in flight,
        :class:`WatchdogTimeout` when the watchdog wins the race and
        :class:`EngineFailure` when the engine rejects the call.
        """

        self._require_loaded()
        if self.state is EngineState.BUSY:
            raise EngineBusyError("Engine is already running an invocation")

        invocation = Invocation(next(self._numbers), tuple(argv))
        self.state = EngineState.BUSY
        self.current = invocation
        loop = asyncio.get_running_loop()
        started = loop.time()
        watchdog = Watchdog(budget_ms / 1000) if budget_ms is not None else None

        def handle_progress(fraction: float) -> None:
            if invocation.abandoned:
                return
            if not 0 <= fraction <= 1:
                logger.debug("Ignoring out-of-range progress %r", fraction)
                return
            invocation.progress_events += 1
            if watchdog is not None and reset_on_progress and fraction > 0:
                watchdog.reset()
            if on_progress is not None:
                on_progress(fraction)

        def handle_log(line: str) -> None:
            if invocation.abandoned:
                return
            if on_log is not None:
                on_log(line)

        invocation.subscriptions = [
            self.engine.progress.subscribe(handle_progress),
            self.engine.log.subscribe(handle_log),
        ]
        logger.debug("Invocation %d: %s", invocation.number, " ".join(invocation.argv))
        task = asyncio.ensure_future(self.engine.exec(invocation.argv))
        try:
            if watchdog is not None:
                watchdog.arm()
                completed = await first_settled(task, watchdog.expired)
            else:
                await asyncio.wait({task})
                completed = True

            elapsed_ms = (loop.time() - started) * 1000
            if not completed:
                self._abandon(invocation, task, after_abandon)
                logger.warning(
                    "Invocation %d produced no progress for %.0f ms; abandoning it",
                    invocation.number,
                    budget_ms,
                )
                raise WatchdogTimeout(elapsed_ms, budget_ms)

            if task.cancelled():
                raise EngineFailure("Engine call was cancelled")
            exc = task.exception()
            if exc is not None:
                if isinstance(exc, ClipforgeError):
                    raise exc
                raise EngineFailure(f"Engine call failed: {exc}") from exc
            return InvocationResult(elapsed_ms, invocation.progress_events)
        except asyncio.CancelledError:
            # The caller itself is going away (event loop shutdown).
            task.cancel()
            raise
        finally:
            if watchdog is not None:
                watchdog.disarm()
            if not invocation.abandoned:
                invocation.unsubscribe()
            self.current = None
            self.state = EngineState.READY

    def _abandon(self, invocation: Invocation, task: asyncio.Future, cleanup: Optional[Cleanup]) -> None:
        invocation.abandoned = True
        invocation.unsubscribe()
        self.abandoned_count += 1
        Abandoned(task, f"invocation {invocation.number}")
        if cleanup is not None:
            task.add_done_callback(lambda settled: self._after_settle(settled, cleanup))

    def _after_settle(self, task: asyncio.Future, cleanup: Cleanup) -> None:
        # Abandoned calls are only cancelled when the event loop shuts down.
        if task.cancelled():
            return
        self._schedule_cleanup(cleanup)

    def _schedule_cleanup(self, cleanup: Cleanup) -> None:
        future = asyncio.ensure_future(self._run_cleanup(cleanup))
        self._pending_cleanups.add(future)
        future.add_done_callback(self._pending_cleanups.discard)

    async def _run_cleanup(self, cleanup: Cleanup) -> None:
        try:
            await cleanup()
        except (ClipforgeError, OSError) as exc:
            logger.warning("Engine storage cleanup failed: %s", exc)

    async def drain(self) -> None:
        """Wait for cleanups scheduled by abandoned invocations."""

        if self._pending_cleanups:
            await asyncio.gather(*list(self._pending_cleanups))

    def close(self) -> None:
        """Release the engine's storage; the next :meth:`load` starts it afresh."""

        self.engine.close()
        if self.state is not EngineState.LOAD_FAILED:
            self.state = EngineState.UNLOADED
            self._load_task = None


_MANAGER: Optional[EngineManager] = None


def get_engine_manager(mode: Optional[ExecutionMode] = None) -> EngineManager:
    """Return the process-wide :class:`EngineManager`, creating it on first use."""

    global _MANAGER
    if _MANAGER is None:
        from .ffmpeg import FFmpegEngine
        from .settings import settings

        chosen = mode or ExecutionMode(settings.engine.mode)
        threads = 1 if chosen is ExecutionMode.SINGLE_THREADED else 0
        _MANAGER = EngineManager(FFmpegEngine(settings.engine.ffmpeg_bin, threads=threads), chosen)
    elif mode is not None and mode is not _MANAGER.mode:
        raise ValueError(f"Engine already created in {_MANAGER.mode.value} mode")
    return _MANAGER


__all__ = [
    "EngineManager",
    "Invocation",
    "InvocationResult",
    "TranscodeEngine",
    "get_engine_manager",
]
