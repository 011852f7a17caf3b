"""Console and file logging helpers built on top of Rich."""

from __future__ import annotations

import logging as _logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from time import monotonic
from typing import Iterator, Optional
from uuid import uuid4

from rich.console import Console
from rich.logging import RichHandler

from .config import PROJECT_ROOT

_console = Console()

LOGS_DIR = PROJECT_ROOT / "logs"
LATEST_LOG_NAME = "clipforge.log"


def get_console() -> Console:
    """Return the shared :class:`~rich.console.Console` instance."""

    return _console


def configure_logging(verbose: bool = False) -> None:
    """Route library loggers through a Rich handler on the shared console."""

    handler = RichHandler(console=_console, show_path=False, rich_tracebacks=True)
    root = _logging.getLogger("clipforge")
    root.handlers[:] = [handler]
    root.setLevel(_logging.DEBUG if verbose else _logging.INFO)
    root.propagate = False


def log_line_style(line: str) -> Optional[str]:
    """Presentation style for an engine line. Never used to classify outcomes."""

    if "error" in line or "Error" in line:
        return "red"
    return None


@contextmanager
def status(message: str) -> Iterator[None]:
    """Show a transient status spinner when running slow operations."""

    with _console.status(message, spinner="dots"):
        yield


def cleanup_old_logs(logs_dir: Path = LOGS_DIR, max_age_hours: int = 24) -> None:
    """Remove ``*.log`` files in ``logs_dir`` older than ``max_age_hours``."""

    if not logs_dir.exists():
        return

    cutoff = datetime.now(timezone.utc) - timedelta(hours=max_age_hours)
    for candidate in logs_dir.glob("*.log"):
        if candidate.name == LATEST_LOG_NAME:
            # Recreated on every run.
            continue
        try:
            modified = datetime.fromtimestamp(candidate.stat().st_mtime, tz=timezone.utc)
        except OSError:
            continue
        if modified < cutoff:
            try:
                candidate.unlink()
            except OSError:
                continue


@dataclass(slots=True)
class _TimedStep:
    """Context manager recording the duration of a logging step."""

    logger: "RunLogger"
    label: str
    _start: float = 0.0

    def __enter__(self) -> None:
        self.logger._log(f"START {self.label}")
        self._start = monotonic()

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        duration = monotonic() - getattr(self, "_start", monotonic())
        if exc_type:
            self.logger._log(f"ERROR in {self.label}: {exc}")
        self.logger._log(f"END {self.label} – {duration:.2f}s")


class RunLogger:
    """Per-run log file with timestamps, timed steps and a closing summary."""

    def __init__(self, run_id: str, log_path: Path) -> None:
        self.run_id = run_id
        self.path = log_path
        logs_dir = log_path.parent
        logs_dir.mkdir(parents=True, exist_ok=True)
        cleanup_old_logs(logs_dir)
        self._handle = log_path.open("w", encoding="utf8")
        self._latest_handle = (logs_dir / LATEST_LOG_NAME).open("w", encoding="utf8")
        now = datetime.now(timezone.utc)
        self._log(f"Run {run_id} started at {now.isoformat()}")
        self._start = monotonic()
        self._status: str = "completed"
        self._detail: Optional[str] = None

    @classmethod
    def start(cls, logs_dir: Optional[Path] = None) -> "RunLogger":
        """Create a :class:`RunLogger` bound to a new UUID."""

        run_id = uuid4().hex
        return cls(run_id, (logs_dir or LOGS_DIR) / f"{run_id}.log")

    def _log(self, message: str) -> None:
        timestamp = datetime.now(timezone.utc).isoformat()
        line = f"[{timestamp}] {message}\n"
        for handle in (self._handle, self._latest_handle):
            handle.write(line)
            handle.flush()

    def log(self, message: str) -> None:
        """Record ``message`` with the current timestamp."""

        self._log(message)

    def log_error(self, message: str) -> None:
        """Record an error message and mark the run as failed."""

        self._status = "failed"
        self._detail = message
        self._log(f"ERROR: {message}")

    def mark_timed_out(self, reason: str) -> None:
        self._status = "timed out"
        self._detail = reason
        self._log(f"TIMEOUT: {reason}")

    def step(self, label: str) -> _TimedStep:
        """Return a context manager recording the duration of ``label``."""

        return _TimedStep(self, label)

    def close(self) -> None:
        """Finalize the log with the run summary."""

        total = monotonic() - self._start
        detail = f" ({self._detail})" if self._detail else ""
        self._log(f"Run {self.run_id} {self._status} in {total:.2f}s{detail}")
        self._handle.close()
        self._latest_handle.close()

    def __enter__(self) -> "RunLogger":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        if exc_type:
            self.log_error(str(exc))
        self.close()


__all__ = [
    "RunLogger",
    "cleanup_old_logs",
    "configure_logging",
    "get_console",
    "log_line_style",
    "status",
]
