"""Sequential stress trials of the engine across output resolutions.

A batch runs the same short, audio-less clip of one input through the engine
once per configuration, strictly one after another, so a trial that corrupts
engine state only spoils itself. Each trial gets a flat time ceiling rather
than an adaptive budget because clip length and encode settings are fixed.
The batch is a report: it has no overall pass or fail.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Sequence, Tuple
from uuid import uuid4

from .command import build_diagnostic_command
from .config import DEFAULT_DIAGNOSTIC_RESOLUTIONS, OUTPUT_EXTENSION
from .engine import EngineManager
from .errors import ClipforgeError, EngineBusyError, WatchdogTimeout
from .events import EventChannel
from .models import (
    DiagnosticTrial,
    InputDescriptor,
    TrialConfiguration,
    TrialStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_TRIALS: Tuple[TrialConfiguration, ...] = tuple(
    TrialConfiguration.from_resolution(value) for value in DEFAULT_DIAGNOSTIC_RESOLUTIONS
)


class DiagnosticRunner:
    """Drives :class:`EngineManager` through an ordered list of trials."""

    def __init__(
        self,
        manager: EngineManager,
        clip_seconds: int = 30,
        trial_timeout_s: float = 45.0,
    ) -> None:
        self.manager = manager
        self.clip_seconds = clip_seconds
        self.trial_timeout_s = trial_timeout_s
        self.updates: EventChannel[DiagnosticTrial] = EventChannel("trial")
        self.log: EventChannel[Tuple[str, str]] = EventChannel("trial-log")
        self.trials: List[DiagnosticTrial] = []
        self.running = False

    async def run(
        self,
        media: InputDescriptor,
        configurations: Sequence[TrialConfiguration] = DEFAULT_TRIALS,
    ) -> List[DiagnosticTrial]:
        """Run every configuration in order and return one trial per entry."""

        if self.running:
            raise EngineBusyError("A diagnostic batch is already running")
        self.running = True
        self.trials = [DiagnosticTrial(configuration_label=config.label) for config in configurations]
        for trial in self.trials:
            self.updates.emit(trial)

        batch_id = uuid4().hex[:8]
        input_name = f"debug_input-{batch_id}.{media.extension}"
        try:
            try:
                await self.manager.load()
                await self.manager.write_file(input_name, media.data)
            except (ClipforgeError, OSError) as exc:
                logger.error("Diagnostic batch %s could not start: %s", batch_id, exc)
                for trial in self.trials:
                    self._settle(trial, TrialStatus.FAILED, 0.0, f"ERROR: {exc}")
                return list(self.trials)

            for config, trial in zip(configurations, self.trials):
                await self._run_trial(config, trial, input_name, batch_id)
            await self._release(input_name)
            return list(self.trials)
        finally:
            self.running = False

    async def _run_trial(
        self,
        config: TrialConfiguration,
        trial: DiagnosticTrial,
        input_name: str,
        batch_id: str,
    ) -> None:
        output_name = f"output_{config.label}-{batch_id}.{OUTPUT_EXTENSION}"
        command = build_diagnostic_command(
            input_name, config.width, config.height, self.clip_seconds, output_name
        )
        loop = asyncio.get_running_loop()
        started = loop.time()

        def on_log(line: str) -> None:
            trial.logs.append(line)
            self.log.emit((trial.configuration_label, line))

        async def release_output() -> None:
            await self.manager.delete_file(output_name)

        logger.info("Trial %s: %s", config.label, command.display)
        try:
            await self.manager.invoke(
                command.argv,
                on_log=on_log,
                budget_ms=self.trial_timeout_s * 1000,
                reset_on_progress=False,
                after_abandon=release_output,
            )
        except WatchdogTimeout:
            self._settle(trial, TrialStatus.TIMED_OUT, loop.time() - started, "ERROR: Timeout")
            return
        except ClipforgeError as exc:
            self._settle(trial, TrialStatus.FAILED, loop.time() - started, f"ERROR: {exc}")
            await self._release(output_name)
            return
        self._settle(trial, TrialStatus.SUCCESS, loop.time() - started)
        await self._release(output_name)

    def _settle(
        self,
        trial: DiagnosticTrial,
        status: TrialStatus,
        elapsed: float,
        error_line: Optional[str] = None,
    ) -> None:
        if error_line is not None:
            trial.logs.append(error_line)
        trial.status = status
        trial.elapsed_seconds = round(elapsed, 2)
        logger.info("Trial %s: %s in %.2fs", trial.configuration_label, status.value, elapsed)
        self.updates.emit(trial)

    async def _release(self, name: str) -> None:
        try:
            await self.manager.delete_file(name)
        except (ClipforgeError, OSError) as exc:
            logger.warning("Unable to delete %s from engine storage: %s", name, exc)


__all__ = ["DEFAULT_TRIALS", "DiagnosticRunner"]
