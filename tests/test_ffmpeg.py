from __future__ import annotations

import asyncio
import gc
import stat
import sys
from pathlib import Path

import pytest

from clipforge.errors import EngineFailure, FFmpegError, LoadFailure
from clipforge.ffmpeg import FFmpegEngine, _ProgressTracker, clip_limit, parse_clock, parse_input_duration

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")

FAKE_FFMPEG = """#!/bin/sh
if [ "$2" = "-version" ]; then
  echo "ffmpeg version 9.9-test"
  exit 0
fi
for last; do :; done
case "$last" in
  slow.mp4)
    sleep 0.3
    echo "slow banner" >&2
    echo "progress=end"
    ;;
  broken.mp4)
    echo "broken.mp4: Invalid argument" >&2
    exit 1
    ;;
  *)
    echo "  Duration: 00:00:02.00, start: 0.000000, bitrate: 100 kb/s" >&2
    sleep 0.1
    echo "out_time_us=1000000"
    echo "progress=continue"
    echo "out_time_us=2000000"
    echo "progress=end"
    printf encoded > "$last"
    ;;
esac
"""


@pytest.fixture
def fake_ffmpeg(tmp_path: Path) -> Path:
    script = tmp_path / "ffmpeg"
    script.write_text(FAKE_FFMPEG)
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


def test_parse_clock() -> None:
    assert parse_clock("00:01:30.50") == pytest.approx(90.5)
    assert parse_clock("1:00:00") == 3600
    assert parse_clock("N/A") is None


def test_parse_input_duration_reads_the_banner_line() -> None:
    line = "  Duration: 00:02:00.04, start: 0.000000, bitrate: 5120 kb/s"

    assert parse_input_duration(line) == pytest.approx(120.04)
    assert parse_input_duration("Stream #0:0: Video: h264") is None


def test_clip_limit_reads_the_output_duration_cap() -> None:
    assert clip_limit(["-i", "in.mp4", "-t", "30", "out.mp4"]) == 30.0
    assert clip_limit(["-i", "in.mp4", "-t", "00:00:10", "out.mp4"]) == 10.0
    assert clip_limit(["-i", "in.mp4", "out.mp4"]) is None


def test_tracker_converts_progress_keys_into_fractions() -> None:
    tracker = _ProgressTracker(limit=30.0)
    tracker.observe_log("  Duration: 00:02:00.00, start: 0.000000")
    # Only the first Duration line belongs to the input.
    tracker.observe_log("  Duration: 00:00:05.00, start: 0.000000")

    assert tracker.duration == 30.0
    assert tracker.fraction("out_time_us", "15000000") == pytest.approx(0.5)
    assert tracker.fraction("out_time_ms", "3000000") == pytest.approx(0.1)
    assert tracker.fraction("frame", "12") is None
    assert tracker.fraction("out_time_us", "N/A") is None
    assert tracker.fraction("progress", "continue") is None
    assert tracker.fraction("progress", "end") == 1.0


def test_tracker_without_duration_reports_only_completion() -> None:
    tracker = _ProgressTracker(limit=None)

    assert tracker.fraction("out_time_us", "1000000") is None
    assert tracker.fraction("progress", "end") == 1.0


def test_command_places_thread_count_before_the_output() -> None:
    engine = FFmpegEngine("ffmpeg-test-binary", threads=1)

    command = engine._command(["-i", "in.mp4", "-c:v", "libx264", "out.mp4"])

    assert command[0].endswith("ffmpeg-test-binary")
    assert command[1:7] == ["-hide_banner", "-nostdin", "-y", "-progress", "pipe:1", "-nostats"]
    assert command[-3:] == ["-threads", "1", "out.mp4"]


def test_storage_round_trip_and_name_checks(tmp_path) -> None:
    engine = FFmpegEngine()
    engine.storage = tmp_path

    async def scenario() -> None:
        await engine.write_file("input.mp4", b"data")
        assert await engine.read_file("input.mp4") == b"data"
        await engine.delete_file("input.mp4")
        await engine.delete_file("input.mp4")
        with pytest.raises(EngineFailure, match="was not produced"):
            await engine.read_file("input.mp4")
        with pytest.raises(EngineFailure):
            await engine.write_file("../escape.mp4", b"x")

    asyncio.run(scenario())

    assert list(tmp_path.iterdir()) == []


def test_load_fails_for_a_missing_binary(tmp_path) -> None:
    engine = FFmpegEngine(str(tmp_path / "no-ffmpeg"))

    with pytest.raises(LoadFailure):
        asyncio.run(engine.load())
    assert engine.storage is None


@posix_only
def test_close_removes_the_storage_directory(fake_ffmpeg: Path) -> None:
    engine = FFmpegEngine(str(fake_ffmpeg))
    asyncio.run(engine.load())
    storage = engine.storage

    assert engine.version == "ffmpeg version 9.9-test"
    assert storage is not None and storage.is_dir()
    engine.close()
    assert not storage.exists()
    assert engine.storage is None
    engine.close()


@posix_only
def test_storage_is_removed_when_the_engine_is_collected(fake_ffmpeg: Path) -> None:
    engine = FFmpegEngine(str(fake_ffmpeg))
    asyncio.run(engine.load())
    storage = engine.storage

    del engine
    gc.collect()

    assert storage is not None and not storage.exists()


@posix_only
def test_exec_streams_progress_and_log_lines(fake_ffmpeg: Path) -> None:
    engine = FFmpegEngine(str(fake_ffmpeg))
    progress: list[float] = []
    lines: list[str] = []
    engine.progress.subscribe(progress.append)
    engine.log.subscribe(lines.append)

    async def scenario() -> bytes:
        await engine.load()
        await engine.write_file("in.mp4", b"source")
        await engine.exec(["-i", "in.mp4", "-c:v", "libx264", "out.mp4"])
        return await engine.read_file("out.mp4")

    try:
        output = asyncio.run(scenario())
    finally:
        engine.close()

    assert output == b"encoded"
    assert progress == [pytest.approx(0.5), 1.0, 1.0]
    assert lines == ["  Duration: 00:00:02.00, start: 0.000000, bitrate: 100 kb/s"]


@posix_only
def test_exec_raises_on_a_non_zero_exit(fake_ffmpeg: Path) -> None:
    engine = FFmpegEngine(str(fake_ffmpeg))
    lines: list[str] = []
    engine.log.subscribe(lines.append)

    async def scenario() -> None:
        await engine.load()
        await engine.exec(["-i", "in.mp4", "broken.mp4"])

    try:
        with pytest.raises(FFmpegError, match="exited with code 1") as excinfo:
            asyncio.run(scenario())
    finally:
        engine.close()

    assert excinfo.value.returncode == 1
    assert lines == ["broken.mp4: Invalid argument"]


@posix_only
def test_only_the_latest_exec_emits_events(fake_ffmpeg: Path) -> None:
    engine = FFmpegEngine(str(fake_ffmpeg))
    progress: list[float] = []
    lines: list[str] = []
    engine.progress.subscribe(progress.append)
    engine.log.subscribe(lines.append)

    async def scenario() -> None:
        await engine.load()
        earlier = asyncio.ensure_future(engine.exec(["-i", "in.mp4", "slow.mp4"]))
        await asyncio.sleep(0.05)
        await engine.exec(["-i", "in.mp4", "out.mp4"])
        await earlier

    try:
        asyncio.run(scenario())
    finally:
        engine.close()

    assert "slow banner" not in lines
    assert progress == [pytest.approx(0.5), 1.0, 1.0]
