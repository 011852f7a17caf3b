"""Typer CLI entry point exposing the clipforge commands."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import List, Optional

import typer
from rich.markup import escape
from rich.progress import BarColumn, Progress, TaskProgressColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from .command import EngineCommand, resolution_options
from .diagnostics import DiagnosticRunner
from .engine import EngineManager, get_engine_manager
from .errors import ClipforgeError, ValidationError
from .logging import RunLogger, configure_logging, get_console, log_line_style, status
from .models import (
    ExecutionMode,
    InputDescriptor,
    JobOutcome,
    OutputSettings,
    ProbeResult,
    Success,
    TimedOut,
    TrialConfiguration,
)
from .probe import MediaProbe
from .settings import AppSettings, load_settings
from .supervisor import JobSupervisor
from .timeouts import estimated_output_bytes, format_size, scale_factor

app = typer.Typer(add_completion=False, help="Supervised ffmpeg transcoding with adaptive timeouts")
console = get_console()

SINGLE_THREAD_HINT = "FFmpeg appears stuck. Try with single thread transcoding (--mode single)."


def _emit_event(payload: dict) -> None:
    typer.echo(json.dumps(payload, ensure_ascii=False))


def _media_probe(config: AppSettings) -> MediaProbe:
    return MediaProbe(config.probe.ffprobe_bin, config.probe.timeout_s)


def _probe_or_exit(config: AppSettings, media: InputDescriptor) -> ProbeResult:
    try:
        with status(f"Probing {media.name}"):
            return asyncio.run(_media_probe(config).probe(media))
    except ClipforgeError as exc:
        console.print(f"[red]Unable to probe {escape(media.name)}:[/red] {escape(str(exc))}")
        raise typer.Exit(code=1)


def _default_output_path(config: AppSettings, media: Path, resolution: str) -> Path:
    directory = config.paths.output_dir or media.parent
    return directory / f"{media.stem}_{resolution}.mp4"


def _summary_table(probe: ProbeResult, settings: OutputSettings, budget_ms: int, mode: ExecutionMode) -> Table:
    table = Table(title="Source / Target", show_header=True)
    table.add_column("")
    table.add_column("Source")
    table.add_column("Target")
    table.add_row("Resolution", f"{probe.width}x{probe.height}", settings.resolution)
    table.add_row("Duration", f"{probe.duration_seconds:.2f}s", f"{probe.duration_seconds:.2f}s")
    table.add_row("Frame rate", f"{probe.assumed_frame_rate:g} (assumed)", str(settings.frame_rate))
    table.add_row("Video bitrate", "-", f"{settings.video_bitrate_kbps}k")
    table.add_row("Audio", "-", "mono" if settings.mono_audio else "copy")
    table.add_row("Scale factor", "", f"{scale_factor(probe, settings):.2f}")
    table.add_row("Estimated size", "", format_size(estimated_output_bytes(probe, settings)))
    table.add_row("Watchdog budget", "", f"{budget_ms / 1000:.1f}s ({mode.value})")
    return table


async def _run_job(
    supervisor: JobSupervisor,
    media: InputDescriptor,
    settings: OutputSettings,
    probe_result: ProbeResult,
    run_log: RunLogger,
) -> JobOutcome:
    with Progress(
        TextColumn("[bold]Transcoding"),
        BarColumn(),
        TaskProgressColumn(),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    ) as progress:
        task_id = progress.add_task("transcode", total=1.0)

        def on_progress(fraction: float) -> None:
            progress.update(task_id, completed=fraction)

        def on_log(line: str) -> None:
            run_log.log(line)
            progress.console.print(line, style=log_line_style(line), markup=False, highlight=False)

        def on_prepared(command: EngineCommand) -> None:
            budget_ms = supervisor.budget_ms or 0
            progress.console.print(_summary_table(probe_result, settings, budget_ms, supervisor.manager.mode))
            progress.console.print(f"[dim]{escape(command.display)}[/dim]")
            run_log.log(f"Command: {command.display} (budget {budget_ms} ms)")

        with (
            supervisor.progress.subscribe(on_progress),
            supervisor.log.subscribe(on_log),
            supervisor.prepared.subscribe(on_prepared),
        ):
            return await supervisor.start(media, settings, probe_result)


@app.command()
def run(
    media: Path = typer.Argument(..., exists=True, dir_okay=False, help="Path to the video to transcode"),
    resolution: Optional[str] = typer.Option(
        None, "--resolution", "-r", help="Target WIDTHxHEIGHT (defaults to the largest offered option)"
    ),
    fps: Optional[int] = typer.Option(None, "--fps", help="Output frame rate"),
    bitrate: Optional[int] = typer.Option(None, "--bitrate", help="Video bitrate in kbit/s"),
    mono: bool = typer.Option(False, "--mono", help="Down-mix audio to one channel"),
    mode: Optional[ExecutionMode] = typer.Option(None, "--mode", help="Engine execution mode"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Where to write the transcoded file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
) -> None:
    """Transcode a single video under the adaptive watchdog."""

    configure_logging(verbose)
    config = load_settings()
    descriptor = InputDescriptor.from_path(media)
    probe_result = _probe_or_exit(config, descriptor)

    if resolution is None:
        options = resolution_options(probe_result.aspect_ratio, probe_result.height, config.output.allow_upscale)
        resolution = options[-1]
    try:
        settings = OutputSettings.from_resolution(
            resolution,
            frame_rate=fps or config.output.frame_rate,
            video_bitrate_kbps=bitrate or config.output.bitrate_kbps,
            mono_audio=mono or config.output.mono_audio,
        )
        settings.validate()
    except ValidationError as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        _emit_event({"event": "job_failed", "error": str(exc)})
        raise typer.Exit(code=1)

    chosen_mode = mode or ExecutionMode(config.engine.mode)
    manager = get_engine_manager(chosen_mode)
    supervisor = JobSupervisor(manager, probe=_media_probe(config), policy=config.timeouts.policy())
    target = output or _default_output_path(config, media, settings.resolution)
    with RunLogger.start(config.paths.log_dir) as run_log:
        run_log.log(f"Input {media} ({probe_result.width}x{probe_result.height}, {probe_result.duration_seconds:.2f}s)")
        with run_log.step(f"transcode to {settings.resolution} ({manager.mode.value})"):
            try:
                outcome = asyncio.run(_run_job(supervisor, descriptor, settings, probe_result, run_log))
            finally:
                manager.close()
        if isinstance(outcome, Success):
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(outcome.output)
            run_log.log(f"Wrote {len(outcome.output)} bytes to {target}")
        elif isinstance(outcome, TimedOut):
            run_log.mark_timed_out(f"no progress after {outcome.elapsed_ms:.0f} ms")
        else:
            run_log.log_error(outcome.reason)

    if isinstance(outcome, Success):
        console.log(f"[green]Transcoded to[/green] {escape(str(target))}")
        _emit_event(
            {
                "event": "job_succeeded",
                "path": str(target),
                "bytes": len(outcome.output),
                "elapsed_ms": round(outcome.elapsed_ms),
            }
        )
        return
    if isinstance(outcome, TimedOut):
        console.print(f"[yellow]Timed out after {outcome.elapsed_ms / 1000:.1f}s without progress[/yellow]")
        if manager.mode is ExecutionMode.MULTI_THREADED:
            console.print(f"[yellow]{SINGLE_THREAD_HINT}[/yellow]")
        _emit_event(
            {
                "event": "job_timed_out",
                "elapsed_ms": round(outcome.elapsed_ms),
                "budget_ms": supervisor.budget_ms,
                "mode": manager.mode.value,
            }
        )
        raise typer.Exit(code=2)
    console.print(f"[red]Transcoding failed:[/red] {escape(outcome.reason)}")
    _emit_event({"event": "job_failed", "error": outcome.reason})
    raise typer.Exit(code=1)


@app.command()
def diagnose(
    media: Path = typer.Argument(..., exists=True, dir_okay=False, help="Path to the video used for every trial"),
    resolutions: Optional[List[str]] = typer.Option(
        None, "--resolution", "-r", help="Trial resolution (repeatable; defaults to the configured list)"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
) -> None:
    """Run short encoding trials across several resolutions and report each one."""

    configure_logging(verbose)
    config = load_settings()
    try:
        trials = [TrialConfiguration.from_resolution(value) for value in (resolutions or config.diagnostics.resolutions)]
    except ValidationError as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(code=1)

    manager: EngineManager = get_engine_manager()
    runner = DiagnosticRunner(
        manager,
        clip_seconds=config.diagnostics.clip_seconds,
        trial_timeout_s=config.diagnostics.trial_timeout_s,
    )
    descriptor = InputDescriptor.from_path(media)

    def on_log(entry: tuple[str, str]) -> None:
        label, line = entry
        console.print(f"[{label}] {line}", style=log_line_style(line), markup=False, highlight=False)

    try:
        with runner.log.subscribe(on_log):
            results = asyncio.run(runner.run(descriptor, trials))
    finally:
        manager.close()

    table = Table(title="Diagnostic trials")
    table.add_column("Configuration")
    table.add_column("Status")
    table.add_column("Time")
    styles = {"success": "green", "failed": "red", "timeout": "yellow"}
    for trial in results:
        elapsed = "-" if trial.elapsed_seconds is None else f"{trial.elapsed_seconds:.2f}s"
        style = styles.get(trial.status.value)
        label = f"[{style}]{trial.status.value}[/{style}]" if style else trial.status.value
        table.add_row(trial.configuration_label, label, elapsed)
    console.print(table)
    for trial in results:
        _emit_event(
            {
                "event": "trial",
                "configuration": trial.configuration_label,
                "status": trial.status.value,
                "elapsed_seconds": trial.elapsed_seconds,
            }
        )


@app.command()
def probe(
    media: Path = typer.Argument(..., exists=True, dir_okay=False, help="Path to the video to inspect"),
) -> None:
    """Print container dimensions and duration as JSON."""

    config = load_settings()
    result = _probe_or_exit(config, InputDescriptor.from_path(media))
    _emit_event(
        {
            "width": result.width,
            "height": result.height,
            "duration_seconds": result.duration_seconds,
            "assumed_frame_rate": result.assumed_frame_rate,
            "aspect_ratio": round(result.aspect_ratio, 4),
        }
    )


@app.command()
def resolutions(
    media: Path = typer.Argument(..., exists=True, dir_okay=False, help="Path to the video to inspect"),
    allow_upscale: bool = typer.Option(False, "--allow-upscale", help="Offer sizes larger than the source"),
) -> None:
    """List the target resolutions offered for a video."""

    config = load_settings()
    result = _probe_or_exit(config, InputDescriptor.from_path(media))
    upscale = allow_upscale or config.output.allow_upscale
    for option in resolution_options(result.aspect_ratio, result.height, upscale):
        typer.echo(option)


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())


__all__ = ["app"]
