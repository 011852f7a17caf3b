"""Data model shared by the probe, estimator, supervisor and diagnostic runner."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

from .config import (
    ASSUMED_FRAME_RATE,
    DEFAULT_INPUT_EXTENSION,
    MAX_SUPPORTED_HEIGHT,
    MAX_SUPPORTED_WIDTH,
)
from .errors import ClipforgeError, ValidationError


def parse_resolution(value: str) -> tuple[int, int]:
    """Parse ``"WIDTHxHEIGHT"`` into a pair of integers."""

    parts = value.lower().replace(":", "x").split("x")
    if len(parts) != 2:
        raise ValidationError(f"Invalid resolution {value!r}; expected WIDTHxHEIGHT")
    try:
        width, height = int(parts[0]), int(parts[1])
    except ValueError as exc:
        raise ValidationError(f"Invalid resolution {value!r}; expected WIDTHxHEIGHT") from exc
    return width, height


@dataclass(frozen=True, slots=True)
class InputDescriptor:
    """Raw input bytes plus the name used to infer a file-extension hint."""

    data: bytes
    name: str

    @property
    def extension(self) -> str:
        _, dot, suffix = self.name.rpartition(".")
        suffix = suffix.strip().lower()
        if not dot or not suffix:
            return DEFAULT_INPUT_EXTENSION
        return suffix

    @classmethod
    def from_path(cls, path: Path) -> "InputDescriptor":
        return cls(data=Path(path).read_bytes(), name=Path(path).name)


@dataclass(frozen=True, slots=True)
class ProbeResult:
    """Container-level properties of an input.

    ``assumed_frame_rate`` is a fixed fallback and must not be treated as a
    measurement of the source.
    """

    width: int
    height: int
    duration_seconds: float
    assumed_frame_rate: float = ASSUMED_FRAME_RATE

    @property
    def pixels(self) -> int:
        return self.width * self.height

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height


@dataclass(frozen=True, slots=True)
class OutputSettings:
    """Target encoding parameters chosen by the caller."""

    target_width: int
    target_height: int
    frame_rate: int = 24
    video_bitrate_kbps: int = 2000
    mono_audio: bool = False

    @property
    def resolution(self) -> str:
        return f"{self.target_width}x{self.target_height}"

    @property
    def pixels(self) -> int:
        return self.target_width * self.target_height

    @classmethod
    def from_resolution(cls, resolution: str, **kwargs) -> "OutputSettings":
        width, height = parse_resolution(resolution)
        return cls(target_width=width, target_height=height, **kwargs)

    def validate(self) -> None:
        """Raise :class:`ValidationError` when the settings cannot be encoded."""

        if self.target_width <= 0 or self.target_height <= 0:
            raise ValidationError(f"Resolution {self.resolution} must be positive")
        if self.target_width > MAX_SUPPORTED_WIDTH or self.target_height > MAX_SUPPORTED_HEIGHT:
            raise ValidationError(
                f"Maximum full HD resolution ({MAX_SUPPORTED_WIDTH}x{MAX_SUPPORTED_HEIGHT}) "
                f"supported only, got {self.resolution}"
            )
        if self.frame_rate <= 0:
            raise ValidationError(f"Frame rate must be positive, got {self.frame_rate}")
        if self.video_bitrate_kbps <= 0:
            raise ValidationError(f"Bitrate must be positive, got {self.video_bitrate_kbps}")


class ExecutionMode(str, Enum):
    MULTI_THREADED = "multi"
    SINGLE_THREADED = "single"


class EngineState(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    BUSY = "busy"
    LOAD_FAILED = "load_failed"


class JobState(str, Enum):
    IDLE = "idle"
    PROBING = "probing"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def active(self) -> bool:
        return self in (JobState.PROBING, JobState.READY, JobState.RUNNING)


@dataclass(frozen=True, slots=True)
class Success:
    output: bytes
    elapsed_ms: float


@dataclass(frozen=True, slots=True)
class Failed:
    error: ClipforgeError

    @property
    def reason(self) -> str:
        return str(self.error)


@dataclass(frozen=True, slots=True)
class TimedOut:
    elapsed_ms: float


JobOutcome = Union[Success, Failed, TimedOut]


class TrialStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    TIMED_OUT = "timeout"


@dataclass(frozen=True, slots=True)
class TrialConfiguration:
    label: str
    width: int
    height: int

    @classmethod
    def from_resolution(cls, resolution: str) -> "TrialConfiguration":
        width, height = parse_resolution(resolution)
        return cls(label=f"{width}x{height}", width=width, height=height)


@dataclass(slots=True)
class DiagnosticTrial:
    """Outcome record for one configuration of a diagnostic batch."""

    configuration_label: str
    status: TrialStatus = TrialStatus.PENDING
    logs: List[str] = field(default_factory=list)
    elapsed_seconds: Optional[float] = None


__all__ = [
    "DiagnosticTrial",
    "EngineState",
    "ExecutionMode",
    "Failed",
    "InputDescriptor",
    "JobOutcome",
    "JobState",
    "OutputSettings",
    "ProbeResult",
    "Success",
    "TimedOut",
    "TrialConfiguration",
    "TrialStatus",
    "parse_resolution",
]
