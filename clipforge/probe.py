"""Container metadata probing with ffprobe."""

from __future__ import annotations

import asyncio
import json
import logging
import math
import shutil
import tempfile
from pathlib import Path
from typing import Any, Dict

from .config import ASSUMED_FRAME_RATE
from .errors import ProbeFailure
from .models import InputDescriptor, ProbeResult

logger = logging.getLogger(__name__)


class MediaProbe:
    """Reads pixel dimensions and duration from container headers only.

    The input bytes are written to a scoped temporary directory because ffprobe
    needs a seekable file; the directory is removed on every exit path.
    """

    def __init__(self, ffprobe_bin: str = "ffprobe", timeout_s: float = 30.0) -> None:
        self.ffprobe_bin = shutil.which(ffprobe_bin) or ffprobe_bin
        self.timeout_s = timeout_s

    async def probe(self, media: InputDescriptor) -> ProbeResult:
        try:
            with tempfile.TemporaryDirectory(prefix="clipforge_probe_") as tmp:
                path = Path(tmp) / f"probe.{media.extension}"
                path.write_bytes(media.data)
                payload = await self._run_ffprobe(path)
        except OSError as exc:
            raise ProbeFailure(f"Unable to stage input for probing: {exc}") from exc
        result = self._parse(payload)
        logger.debug("Probed %s: %s", media.name, result)
        return result

    async def _run_ffprobe(self, path: Path) -> Dict[str, Any]:
        command = [
            self.ffprobe_bin,
            "-v",
            "error",
            "-select_streams",
            "v:0",
            "-show_entries",
            "stream=width,height:format=duration",
            "-of",
            "json",
            str(path),
        ]
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ProbeFailure(f"Unable to start {self.ffprobe_bin}: {exc}") from exc
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout_s)
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise ProbeFailure(f"ffprobe did not finish within {self.timeout_s:g}s") from exc
        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="ignore").strip()
            raise ProbeFailure(message or "ffprobe failed")
        try:
            return json.loads(stdout.decode("utf-8", errors="ignore") or "{}")
        except json.JSONDecodeError as exc:
            raise ProbeFailure(f"ffprobe returned invalid JSON: {exc}") from exc

    @staticmethod
    def _parse(payload: Dict[str, Any]) -> ProbeResult:
        streams = payload.get("streams") or []
        if not streams:
            raise ProbeFailure("Input has no video stream")
        stream = streams[0]
        try:
            width = int(stream.get("width") or 0)
            height = int(stream.get("height") or 0)
        except (TypeError, ValueError) as exc:
            raise ProbeFailure("Video stream reports invalid dimensions") from exc
        if width <= 0 or height <= 0:
            raise ProbeFailure(f"Video stream reports invalid dimensions {width}x{height}")

        raw_duration = (payload.get("format") or {}).get("duration")
        try:
            duration = float(raw_duration)
        except (TypeError, ValueError) as exc:
            raise ProbeFailure("Container does not report a duration") from exc
        if not math.isfinite(duration) or duration <= 0:
            raise ProbeFailure(f"Container reports unusable duration {duration}")
        return ProbeResult(width=width, height=height, duration_seconds=duration, assumed_frame_rate=ASSUMED_FRAME_RATE)


__all__ = ["MediaProbe"]
