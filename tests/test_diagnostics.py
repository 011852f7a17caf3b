from __future__ import annotations

import asyncio

import pytest

from clipforge.diagnostics import DEFAULT_TRIALS, DiagnosticRunner
from clipforge.engine import EngineManager
from clipforge.errors import EngineBusyError, LoadFailure
from clipforge.models import DiagnosticTrial, InputDescriptor, TrialConfiguration, TrialStatus

from conftest import DummyEngine, fail, stall, succeed

TRIALS = [
    TrialConfiguration.from_resolution("1280x720"),
    TrialConfiguration.from_resolution("854x480"),
    TrialConfiguration.from_resolution("640x360"),
]


def test_default_trials_cover_the_standard_ladder() -> None:
    assert [trial.label for trial in DEFAULT_TRIALS] == ["1920x1080", "1280x720", "854x480", "640x360"]


def test_failed_trial_does_not_affect_the_next_one(media: InputDescriptor) -> None:
    engine = DummyEngine(script=[succeed(), fail("boom"), succeed()])
    runner = DiagnosticRunner(EngineManager(engine), clip_seconds=30, trial_timeout_s=1)

    trials = asyncio.run(runner.run(media, TRIALS))

    assert [trial.configuration_label for trial in trials] == ["1280x720", "854x480", "640x360"]
    assert [trial.status for trial in trials] == [TrialStatus.SUCCESS, TrialStatus.FAILED, TrialStatus.SUCCESS]
    assert trials[1].logs == ["Error: boom", "ERROR: boom"]
    assert "Error: boom" not in trials[0].logs
    assert "Error: boom" not in trials[2].logs
    for trial in trials:
        assert trial.elapsed_seconds is not None
        assert trial.elapsed_seconds == round(trial.elapsed_seconds, 2)


def test_trials_run_sequentially_against_one_shared_input(media: InputDescriptor) -> None:
    engine = DummyEngine()
    runner = DiagnosticRunner(EngineManager(engine), clip_seconds=12, trial_timeout_s=1)

    asyncio.run(runner.run(media, TRIALS))

    assert len(engine.writes) == 1
    input_name = engine.writes[0]
    assert input_name.startswith("debug_input-") and input_name.endswith(".mov")
    scales = [argv[argv.index("-vf") + 1] for argv in engine.calls]
    assert scales == ["scale=1280:720", "scale=854:480", "scale=640:360"]
    for argv in engine.calls:
        assert argv[1] == input_name
        assert argv[argv.index("-t") + 1] == "12"
        assert "-an" in argv
    assert engine.files == {}


def test_trial_exceeding_its_ceiling_times_out(media: InputDescriptor) -> None:
    engine = DummyEngine(script=[stall(0.3), succeed()])
    manager = EngineManager(engine)
    runner = DiagnosticRunner(manager, trial_timeout_s=0.05)

    async def scenario():
        trials = await runner.run(media, TRIALS[:2])
        await asyncio.sleep(0.4)
        await manager.drain()
        return trials

    trials = asyncio.run(scenario())

    assert [trial.status for trial in trials] == [TrialStatus.TIMED_OUT, TrialStatus.SUCCESS]
    assert trials[0].logs == ["ERROR: Timeout"]
    assert engine.files == {}


def test_updates_announce_pending_trials_before_results(media: InputDescriptor) -> None:
    engine = DummyEngine()
    runner = DiagnosticRunner(EngineManager(engine), trial_timeout_s=1)
    seen: list[tuple[str, TrialStatus]] = []
    lines: list[tuple[str, str]] = []

    def record(trial: DiagnosticTrial) -> None:
        seen.append((trial.configuration_label, trial.status))

    runner.updates.subscribe(record)
    runner.log.subscribe(lines.append)
    asyncio.run(runner.run(media, TRIALS[:2]))

    assert seen == [
        ("1280x720", TrialStatus.PENDING),
        ("854x480", TrialStatus.PENDING),
        ("1280x720", TrialStatus.SUCCESS),
        ("854x480", TrialStatus.SUCCESS),
    ]
    assert [label for label, _ in lines] == ["1280x720", "1280x720", "854x480", "854x480"]


def test_engine_load_failure_fails_every_trial(media: InputDescriptor) -> None:
    engine = DummyEngine(load_error=LoadFailure("no ffmpeg"))
    runner = DiagnosticRunner(EngineManager(engine))

    trials = asyncio.run(runner.run(media, TRIALS))

    assert all(trial.status is TrialStatus.FAILED for trial in trials)
    assert all(trial.logs == ["ERROR: no ffmpeg"] for trial in trials)
    assert engine.calls == []


def test_overlapping_batches_are_rejected(media: InputDescriptor) -> None:
    engine = DummyEngine(script=[succeed(delay=0.05)])
    runner = DiagnosticRunner(EngineManager(engine), trial_timeout_s=1)

    async def scenario():
        first = asyncio.ensure_future(runner.run(media, TRIALS[:1]))
        await asyncio.sleep(0.01)
        with pytest.raises(EngineBusyError, match="already running"):
            await runner.run(media, TRIALS[:1])
        return await first

    trials = asyncio.run(scenario())

    assert [trial.status for trial in trials] == [TrialStatus.SUCCESS]
    assert len(engine.calls) == 1
