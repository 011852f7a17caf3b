"""Error taxonomy shared by the probe, engine and supervisor layers."""

from __future__ import annotations


class ClipforgeError(RuntimeError):
    """Base class for every failure a job or trial can report."""


class ValidationError(ClipforgeError):
    """Output settings were rejected before any engine work."""


class ProbeFailure(ClipforgeError):
    """Container metadata of the input could not be read."""


class LoadFailure(ClipforgeError):
    """The transcoding engine failed to initialise. Not retried."""


class EngineFailure(ClipforgeError):
    """An engine invocation was rejected for a reason other than a timeout."""


class FFmpegError(EngineFailure):
    """Raised when ffmpeg exits with a failure."""

    def __init__(self, message: str, returncode: int | None = None) -> None:
        super().__init__(message)
        self.returncode = returncode


class EngineBusyError(ClipforgeError):
    """A second invocation was attempted while one is in flight."""


class EngineNotReadyError(ClipforgeError):
    """The engine was used before it finished loading."""


class WatchdogTimeout(ClipforgeError):
    """No forward progress was observed within the budget."""

    def __init__(self, elapsed_ms: float, budget_ms: float) -> None:
        super().__init__(f"no progress within {budget_ms:.0f} ms (waited {elapsed_ms:.0f} ms)")
        self.elapsed_ms = elapsed_ms
        self.budget_ms = budget_ms


__all__ = [
    "ClipforgeError",
    "EngineBusyError",
    "EngineFailure",
    "EngineNotReadyError",
    "FFmpegError",
    "LoadFailure",
    "ProbeFailure",
    "ValidationError",
    "WatchdogTimeout",
]
