"""FFmpeg-backed transcoding engine used by the lifecycle manager."""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
import tempfile
import weakref
from pathlib import Path
from typing import Optional, Sequence

from .errors import EngineFailure, EngineNotReadyError, FFmpegError, LoadFailure
from .events import EventChannel

logger = logging.getLogger(__name__)

DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")


def parse_clock(text: str) -> Optional[float]:
    """Convert ``HH:MM:SS.ss`` into seconds, or ``None`` when malformed."""

    parts = text.strip().split(":")
    if len(parts) != 3:
        return None
    try:
        hours, minutes, seconds = int(parts[0]), int(parts[1]), float(parts[2])
    except ValueError:
        return None
    return hours * 3600 + minutes * 60 + seconds


def parse_input_duration(line: str) -> Optional[float]:
    """Return the duration announced in an ffmpeg ``Duration:`` banner line."""

    match = DURATION_RE.search(line)
    if not match:
        return None
    hours, minutes, seconds = match.groups()
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def clip_limit(argv: Sequence[str]) -> Optional[float]:
    """Return the ``-t`` output duration cap from ``argv`` if one is present."""

    for flag, value in zip(argv, argv[1:]):
        if flag == "-t":
            try:
                return float(value)
            except ValueError:
                return parse_clock(value)
    return None


class _ProgressTracker:
    """Turns ``-progress`` key/value output into completed fractions."""

    def __init__(self, limit: Optional[float]) -> None:
        self.limit = limit
        self.duration: Optional[float] = limit
        self._seen_input = False

    def observe_log(self, line: str) -> None:
        if self._seen_input:
            return
        duration = parse_input_duration(line)
        if duration is None or duration <= 0:
            return
        self._seen_input = True
        self.duration = duration if self.limit is None else min(duration, self.limit)

    def fraction(self, key: str, value: str) -> Optional[float]:
        if key == "progress" and value == "end":
            return 1.0
        if key not in ("out_time_us", "out_time_ms") or not self.duration:
            return None
        try:
            # ffmpeg reports both keys in microseconds.
            seconds = int(value) / 1_000_000
        except ValueError:
            return None
        return seconds / self.duration


class FFmpegEngine:
    """Runs ffmpeg as a subprocess against a private storage directory.

    Input and output "files" are addressed by bare names inside the storage
    directory, which is created by :meth:`load` and removed by :meth:`close`
    or, failing that, when the engine is garbage collected or the interpreter
    exits.
    """

    def __init__(self, ffmpeg_bin: str = "ffmpeg", threads: int = 0) -> None:
        self.ffmpeg_bin = shutil.which(ffmpeg_bin) or ffmpeg_bin
        self.threads = threads
        self.progress: EventChannel[float] = EventChannel("progress")
        self.log: EventChannel[str] = EventChannel("log")
        self.storage: Optional[Path] = None
        self.version: Optional[str] = None
        self._current: Optional[_ProgressTracker] = None
        self._finalizer: Optional[weakref.finalize] = None

    async def load(self) -> None:
        try:
            process = await asyncio.create_subprocess_exec(
                self.ffmpeg_bin,
                "-hide_banner",
                "-version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise LoadFailure(f"Unable to start {self.ffmpeg_bin}: {exc}") from exc
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="ignore").strip()
            raise LoadFailure(detail or f"{self.ffmpeg_bin} -version failed")
        lines = stdout.decode("utf-8", errors="ignore").splitlines()
        self.version = lines[0] if lines else "unknown"
        storage = tempfile.mkdtemp(prefix="clipforge_")
        self.storage = Path(storage)
        self._finalizer = weakref.finalize(self, shutil.rmtree, storage, True)
        logger.info("Loaded %s (storage %s)", self.version, self.storage)

    def _path(self, name: str) -> Path:
        if self.storage is None:
            raise EngineNotReadyError("FFmpeg engine is not loaded")
        if not name or Path(name).name != name:
            raise EngineFailure(f"Invalid storage name {name!r}")
        return self.storage / name

    async def write_file(self, name: str, data: bytes) -> None:
        self._path(name).write_bytes(data)

    async def read_file(self, name: str) -> bytes:
        path = self._path(name)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise EngineFailure(f"{name} was not produced") from exc

    async def delete_file(self, name: str) -> None:
        self._path(name).unlink(missing_ok=True)

    def _command(self, argv: Sequence[str]) -> list[str]:
        args = list(argv)
        # Encoder threading is an output option, so it goes right before the output name.
        args[-1:-1] = ["-threads", str(self.threads)]
        return [
            self.ffmpeg_bin,
            "-hide_banner",
            "-nostdin",
            "-y",
            "-progress",
            "pipe:1",
            "-nostats",
            *args,
        ]

    async def exec(self, argv: Sequence[str]) -> None:
        if self.storage is None:
            raise EngineNotReadyError("FFmpeg engine is not loaded")
        if not argv:
            raise EngineFailure("Empty argument list")
        command = self._command(argv)
        tracker = _ProgressTracker(clip_limit(argv))
        # Only the most recent call may emit; an abandoned process keeps running silently.
        self._current = tracker
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.storage),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise FFmpegError(f"Unable to start {self.ffmpeg_bin}: {exc}") from exc

        try:
            await asyncio.gather(
                self._pump_progress(process.stdout, tracker),
                self._pump_log(process.stderr, tracker),
            )
            returncode = await process.wait()
        finally:
            await _reap(process)
        if returncode != 0:
            raise FFmpegError(f"ffmpeg exited with code {returncode}", returncode)

    async def _pump_progress(self, stream: asyncio.StreamReader, tracker: _ProgressTracker) -> None:
        while True:
            raw = await stream.readline()
            if not raw:
                break
            key, sep, value = raw.decode("utf-8", errors="ignore").strip().partition("=")
            if not sep:
                continue
            fraction = tracker.fraction(key.strip(), value.strip())
            if fraction is not None and tracker is self._current:
                self.progress.emit(fraction)

    async def _pump_log(self, stream: asyncio.StreamReader, tracker: _ProgressTracker) -> None:
        while True:
            raw = await stream.readline()
            if not raw:
                break
            line = raw.decode("utf-8", errors="ignore").rstrip("\r\n")
            if not line:
                continue
            tracker.observe_log(line)
            if tracker is self._current:
                self.log.emit(line)

    def close(self) -> None:
        """Remove the storage directory; :meth:`load` must run again before reuse."""

        if self._finalizer is not None:
            self._finalizer()
            self._finalizer = None
        self.storage = None


async def _reap(process: asyncio.subprocess.Process) -> None:
    """Kill ``process`` if it is still running (event loop shutdown)."""

    if process.returncode is not None:
        return
    try:
        process.kill()
    except (ProcessLookupError, OSError):
        pass
    try:
        await asyncio.wait_for(process.wait(), timeout=5)
    except asyncio.TimeoutError:
        logger.warning("ffmpeg process %s did not terminate after kill", process.pid)


__all__ = [
    "FFmpegEngine",
    "clip_limit",
    "parse_clock",
    "parse_input_duration",
]
