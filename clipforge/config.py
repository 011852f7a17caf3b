"""Static configuration and fixed encoding policy used by clipforge."""

from __future__ import annotations

from pathlib import Path

PACKAGE_ROOT = Path(__file__).resolve().parent
PROJECT_ROOT = PACKAGE_ROOT.parent

MAX_SUPPORTED_WIDTH = 1920
MAX_SUPPORTED_HEIGHT = 1080

# ffprobe does not report a dependable source frame rate for every container.
ASSUMED_FRAME_RATE = 30.0

VIDEO_CODEC = "libx264"
VIDEO_PRESET = "ultrafast"
OUTPUT_EXTENSION = "mp4"
DEFAULT_INPUT_EXTENSION = "mp4"

STANDARD_HEIGHTS = (240, 360, 480, 720, 1080)
DEFAULT_DIAGNOSTIC_RESOLUTIONS = ("1920x1080", "1280x720", "854x480", "640x360")
