"""Heuristic time budgets for engine invocations.

The only cost signal available before encoding is how much content there is
and how the output pixel count compares to the input. The estimator
extrapolates from a short "unit" of the clip (half a percent of its duration by
default), scales it by the pixel ratio, applies a per-mode safety margin, and
clamps the result so tiny clips still get a workable budget and pathological
inputs cannot stall the caller forever.
"""

from __future__ import annotations

from dataclasses import dataclass

from .models import ExecutionMode, OutputSettings, ProbeResult


@dataclass(frozen=True, slots=True)
class TimeoutPolicy:
    """Tunable constants of :func:`estimate`."""

    unit_fraction: float = 0.005
    floor_ms: int = 30_000
    ceiling_ms: int = 600_000
    multi_margin: float = 4.0
    single_margin: float = 8.0
    multi_progress_resets: bool = True
    single_progress_resets: bool = True

    def margin_for(self, mode: ExecutionMode) -> float:
        if mode is ExecutionMode.SINGLE_THREADED:
            return self.single_margin
        return self.multi_margin

    def progress_resets_watchdog(self, mode: ExecutionMode) -> bool:
        if mode is ExecutionMode.SINGLE_THREADED:
            return self.single_progress_resets
        return self.multi_progress_resets


def scale_factor(probe: ProbeResult, settings: OutputSettings) -> float:
    """Largest per-axis downscale ratio between source and target."""

    return max(probe.width / settings.target_width, probe.height / settings.target_height)


def complexity(probe: ProbeResult, settings: OutputSettings) -> float:
    pixel_ratio = settings.pixels / probe.pixels
    return max(1.0, pixel_ratio)


def estimate(
    probe: ProbeResult,
    settings: OutputSettings,
    mode: ExecutionMode,
    policy: TimeoutPolicy = TimeoutPolicy(),
) -> int:
    """Return the watchdog budget in milliseconds."""

    unit_seconds = max(0.0, probe.duration_seconds) * policy.unit_fraction
    expected_seconds = unit_seconds * complexity(probe, settings)
    budget = expected_seconds * policy.margin_for(mode) * 1000
    return int(min(max(budget, policy.floor_ms), policy.ceiling_ms))


def estimated_output_bytes(probe: ProbeResult, settings: OutputSettings) -> int:
    # kbit/s -> bytes/s is a factor of 125.
    return int(probe.duration_seconds * settings.video_bitrate_kbps * 125)


def format_size(num_bytes: int) -> str:
    size_mb = num_bytes / (1024 * 1024)
    if size_mb < 1:
        return f"{round(size_mb * 1024)}KB"
    return f"{size_mb:.1f}MB"


__all__ = [
    "TimeoutPolicy",
    "complexity",
    "estimate",
    "estimated_output_bytes",
    "format_size",
    "scale_factor",
]
