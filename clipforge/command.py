"""Engine argument lists for transcoding jobs and diagnostic trials."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple

from .config import (
    MAX_SUPPORTED_HEIGHT,
    MAX_SUPPORTED_WIDTH,
    OUTPUT_EXTENSION,
    STANDARD_HEIGHTS,
    VIDEO_CODEC,
    VIDEO_PRESET,
)
from .models import OutputSettings

DEFAULT_OUTPUT_NAME = f"output.{OUTPUT_EXTENSION}"


@dataclass(frozen=True, slots=True)
class EngineCommand:
    """Ordered engine arguments plus their human-readable rendering."""

    argv: Tuple[str, ...]
    display: str
    input_name: str
    output_name: str


def _render(argv: Tuple[str, ...]) -> str:
    return "ffmpeg " + " ".join(argv)


def build_command(
    input_name: str,
    settings: OutputSettings,
    output_name: str = DEFAULT_OUTPUT_NAME,
) -> EngineCommand:
    """Return the job command for ``settings``.

    The video stream is always re-encoded with a fast preset and rescaled to the
    target size; audio is copied unless mono output is requested.
    """

    argv: List[str] = [
        "-i",
        input_name,
        "-c:v",
        VIDEO_CODEC,
        "-preset",
        VIDEO_PRESET,
        "-vf",
        f"scale={settings.target_width}:{settings.target_height}",
        "-r",
        str(settings.frame_rate),
        "-b:v",
        f"{settings.video_bitrate_kbps}k",
        "-c:a",
        "copy",
    ]
    if settings.mono_audio:
        argv.extend(["-ac", "1"])
    argv.append(output_name)
    frozen = tuple(argv)
    return EngineCommand(frozen, _render(frozen), input_name, output_name)


def build_diagnostic_command(
    input_name: str,
    width: int,
    height: int,
    clip_seconds: int,
    output_name: str,
) -> EngineCommand:
    """Reduced command used by diagnostic trials: capped duration, no audio."""

    argv = (
        "-i",
        input_name,
        "-t",
        str(clip_seconds),
        "-vf",
        f"scale={width}:{height}",
        "-c:v",
        VIDEO_CODEC,
        "-preset",
        VIDEO_PRESET,
        "-an",
        output_name,
    )
    return EngineCommand(argv, _render(argv), input_name, output_name)


def resolution_options(
    aspect_ratio: float,
    source_height: Optional[int] = None,
    allow_upscale: bool = False,
) -> List[str]:
    """Return ``WxH`` choices for the standard heights at ``aspect_ratio``.

    Widths are rounded to even numbers. Options beyond the supported ceiling are
    dropped, and so are heights above ``source_height`` unless upscaling is
    allowed. The smallest option is kept even for tiny sources.
    """

    options: List[str] = []
    for height in STANDARD_HEIGHTS:
        width = int(round(height * aspect_ratio / 2)) * 2
        if width <= 0 or width > MAX_SUPPORTED_WIDTH or height > MAX_SUPPORTED_HEIGHT:
            continue
        if not allow_upscale and source_height is not None and height > source_height and options:
            continue
        options.append(f"{width}x{height}")
    return options


__all__ = [
    "DEFAULT_OUTPUT_NAME",
    "EngineCommand",
    "build_command",
    "build_diagnostic_command",
    "resolution_options",
]
