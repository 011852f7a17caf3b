"""Supervised ffmpeg transcoding with adaptive no-progress timeouts."""

__version__ = "0.1.0"
