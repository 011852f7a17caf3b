"""End-to-end supervision of a single transcoding job."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, List, Optional
from uuid import uuid4

from .command import EngineCommand, build_command
from .config import OUTPUT_EXTENSION
from .engine import EngineManager
from .errors import (
    ClipforgeError,
    EngineBusyError,
    EngineFailure,
    WatchdogTimeout,
)
from .events import EventChannel
from .models import (
    Failed,
    InputDescriptor,
    JobOutcome,
    JobState,
    OutputSettings,
    ProbeResult,
    Success,
    TimedOut,
)
from .probe import MediaProbe
from .timeouts import TimeoutPolicy, estimate

logger = logging.getLogger(__name__)


class JobSupervisor:
    """Runs probe, command build, budgeted invocation and classification.

    Progress fractions and engine lines are re-published on :attr:`progress`
    and :attr:`log` while the job is running; :attr:`logs` holds the lines of
    the current (or last) job. Every failure is returned as a
    :data:`~clipforge.models.JobOutcome`, never raised.
    """

    def __init__(
        self,
        manager: EngineManager,
        probe: Optional[MediaProbe] = None,
        policy: Optional[TimeoutPolicy] = None,
    ) -> None:
        if probe is None or policy is None:
            from .settings import settings

            probe = probe or MediaProbe(settings.probe.ffprobe_bin, settings.probe.timeout_s)
            policy = policy or settings.timeouts.policy()
        self.manager = manager
        self.media_probe = probe
        self.policy = policy
        self.progress: EventChannel[float] = EventChannel("progress")
        self.log: EventChannel[str] = EventChannel("log")
        self.prepared: EventChannel[EngineCommand] = EventChannel("prepared")
        self.state: JobState = JobState.IDLE
        self.logs: List[str] = []
        self.fraction = 0.0
        self.job_id: Optional[str] = None
        self.probe_result: Optional[ProbeResult] = None
        self.command: Optional[EngineCommand] = None
        self.budget_ms: Optional[int] = None
        self.outcome: Optional[JobOutcome] = None

    def _reset(self) -> None:
        self.logs = []
        self.fraction = 0.0
        self.job_id = uuid4().hex[:12]
        self.probe_result = None
        self.command = None
        self.budget_ms = None
        self.outcome = None

    def _transition(self, state: JobState) -> None:
        logger.debug("Job %s: %s -> %s", self.job_id, self.state.value, state.value)
        self.state = state

    def _finish(self, outcome: JobOutcome) -> JobOutcome:
        if isinstance(outcome, Success):
            self._transition(JobState.SUCCEEDED)
            logger.info("Job %s succeeded in %.0f ms (%d bytes)", self.job_id, outcome.elapsed_ms, len(outcome.output))
        elif isinstance(outcome, TimedOut):
            self._transition(JobState.TIMED_OUT)
            logger.warning("Job %s timed out after %.0f ms", self.job_id, outcome.elapsed_ms)
        else:
            self._transition(JobState.FAILED)
            logger.error("Job %s failed: %s", self.job_id, outcome.reason)
        self.outcome = outcome
        return outcome

    def _on_progress(self, fraction: float) -> None:
        if self.state is not JobState.RUNNING:
            return
        self.fraction = fraction
        self.progress.emit(fraction)

    def _on_log(self, line: str) -> None:
        if self.state is not JobState.RUNNING:
            return
        self.logs.append(line)
        self.log.emit(line)

    async def start(
        self,
        media: InputDescriptor,
        settings: OutputSettings,
        probe_result: Optional[ProbeResult] = None,
    ) -> JobOutcome:
        """Transcode ``media`` with ``settings`` and classify the result.

        A ``probe_result`` already obtained for ``media`` is used as is instead
        of probing the input a second time. Subscribers of :attr:`prepared`
        receive the exact command once the budget is known, before the engine
        runs.
        """

        if self.state.active:
            return Failed(EngineBusyError("Another job is already in progress"))

        self._reset()
        self._transition(JobState.PROBING)
        try:
            settings.validate()
            await self.manager.load()
            self.probe_result = probe_result or await self.media_probe.probe(media)
        except ClipforgeError as exc:
            return self._finish(Failed(exc))

        job_id = self.job_id
        input_name = f"input-{job_id}.{media.extension}"
        output_name = f"output-{job_id}.{OUTPUT_EXTENSION}"
        self.command = build_command(input_name, settings, output_name)
        self.budget_ms = estimate(self.probe_result, settings, self.manager.mode, self.policy)
        self._transition(JobState.READY)
        logger.info("Job %s: %s (budget %d ms)", job_id, self.command.display, self.budget_ms)
        self.prepared.emit(self.command)

        async def release_storage() -> None:
            await self.manager.delete_file(input_name)
            await self.manager.delete_file(output_name)

        abandoned = False
        try:
            await self.manager.write_file(input_name, media.data)
            self._transition(JobState.RUNNING)
            result = await self.manager.invoke(
                self.command.argv,
                on_progress=self._on_progress,
                on_log=self._on_log,
                budget_ms=self.budget_ms,
                reset_on_progress=self.policy.progress_resets_watchdog(self.manager.mode),
                after_abandon=release_storage,
            )
            output = await self.manager.read_file(output_name)
            if not output:
                raise EngineFailure("Engine produced an empty output")
            return self._finish(Success(output=output, elapsed_ms=result.elapsed_ms))
        except WatchdogTimeout as exc:
            abandoned = True
            return self._finish(TimedOut(elapsed_ms=exc.elapsed_ms))
        except ClipforgeError as exc:
            return self._finish(Failed(exc))
        except OSError as exc:
            return self._finish(Failed(EngineFailure(f"Engine storage error: {exc}")))
        finally:
            if not abandoned:
                await self._release(release_storage)

    async def _release(self, release_storage: Callable[[], Awaitable[None]]) -> None:
        try:
            await release_storage()
        except (ClipforgeError, OSError) as exc:
            logger.warning("Job %s: unable to release engine storage: %s", self.job_id, exc)


__all__ = ["JobSupervisor"]
