from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

import pytest

from clipforge.engine import EngineManager
from clipforge.errors import EngineFailure, FFmpegError, ProbeFailure
from clipforge.events import EventChannel
from clipforge.models import ExecutionMode, InputDescriptor, ProbeResult
from clipforge.timeouts import TimeoutPolicy

Behaviour = Callable[["DummyEngine", Sequence[str]], Awaitable[None]]


def succeed(steps: Sequence[float] = (0.5, 1.0), delay: float = 0.0, output: bytes = b"video") -> Behaviour:
    """Emit a log line and progress per step, then write ``output`` to the last argument."""

    async def behaviour(engine: "DummyEngine", argv: Sequence[str]) -> None:
        for fraction in steps:
            engine.log.emit(f"frame progress {fraction:.2f}")
            engine.progress.emit(fraction)
            await asyncio.sleep(delay)
        engine.files[argv[-1]] = output

    return behaviour


def fail(message: str = "encoder exploded") -> Behaviour:
    async def behaviour(engine: "DummyEngine", argv: Sequence[str]) -> None:
        engine.log.emit(f"Error: {message}")
        await asyncio.sleep(0)
        raise FFmpegError(message, 1)

    return behaviour


def stall(seconds: float, output: bytes = b"late") -> Behaviour:
    """Stay silent for ``seconds``, then report progress and finish successfully."""

    async def behaviour(engine: "DummyEngine", argv: Sequence[str]) -> None:
        await asyncio.sleep(seconds)
        engine.log.emit("late line")
        engine.progress.emit(1.0)
        engine.files[argv[-1]] = output

    return behaviour


class DummyEngine:
    """In-memory stand-in for :class:`clipforge.ffmpeg.FFmpegEngine`."""

    def __init__(self, script: Optional[List[Behaviour]] = None, load_error: Optional[BaseException] = None) -> None:
        self.progress: EventChannel[float] = EventChannel("progress")
        self.log: EventChannel[str] = EventChannel("log")
        self.files: Dict[str, bytes] = {}
        self.script = list(script or [])
        self.load_error = load_error
        self.loads = 0
        self.calls: List[tuple] = []
        self.writes: List[str] = []
        self.deleted: List[str] = []
        self.closed = False

    async def load(self) -> None:
        self.loads += 1
        await asyncio.sleep(0)
        if self.load_error is not None:
            raise self.load_error

    async def write_file(self, name: str, data: bytes) -> None:
        self.writes.append(name)
        self.files[name] = data

    async def read_file(self, name: str) -> bytes:
        if name not in self.files:
            raise EngineFailure(f"{name} was not produced")
        return self.files[name]

    async def delete_file(self, name: str) -> None:
        self.deleted.append(name)
        self.files.pop(name, None)

    async def exec(self, argv: Sequence[str]) -> None:
        self.calls.append(tuple(argv))
        behaviour = self.script.pop(0) if self.script else succeed()
        await behaviour(self, argv)

    def close(self) -> None:
        self.closed = True
        self.files.clear()


class DummyProbe:
    def __init__(self, result: Optional[ProbeResult] = None, error: Optional[ProbeFailure] = None) -> None:
        self.result = result or ProbeResult(width=1920, height=1080, duration_seconds=120.0)
        self.error = error
        self.calls: List[str] = []

    async def probe(self, media: InputDescriptor) -> ProbeResult:
        self.calls.append(media.name)
        if self.error is not None:
            raise self.error
        return self.result


def fixed_policy(budget_ms: int) -> TimeoutPolicy:
    """A policy whose budget is always ``budget_ms``."""

    return TimeoutPolicy(floor_ms=budget_ms, ceiling_ms=budget_ms)


@pytest.fixture
def engine() -> DummyEngine:
    return DummyEngine()


@pytest.fixture
def manager(engine: DummyEngine) -> EngineManager:
    return EngineManager(engine, ExecutionMode.MULTI_THREADED)


@pytest.fixture
def media() -> InputDescriptor:
    return InputDescriptor(data=b"source-bytes", name="clip.MOV")
