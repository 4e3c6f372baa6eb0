"""End-to-end pipeline runs against real shell commands."""

from __future__ import annotations

import json
import os
import threading
import time
from pathlib import Path

import pytest

from phasegate.checkpoints import CheckpointStore
from phasegate.config import build_config
from phasegate.controller import PipelineController, run_pipeline
from phasegate.errors import ConcurrentRunError, ConfigError
from phasegate.locking import RunLock
from phasegate.schemas import CheckpointStatus, EngineState, RunOutcome

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(os.name == "nt", reason="uses POSIX shell commands"),
]

COVERAGE_RULES = {"coverage": r"coverage: (\d+(?:\.\d+)?)%", "passed": r"(\d+) passed"}


def _config(tmp_path: Path, categories: dict, **extra):
    return build_config(
        {
            "working_dir": tmp_path,
            "test_command_by_category": categories,
            "coverage_threshold": 80,
            "max_retries": 1,
            **extra,
        }
    )


def test_failing_unit_aborts_in_green_after_one_retry(tmp_path: Path) -> None:
    config = _config(tmp_path, {"unit": "exit 1", "integration": "exit 0"})

    run = run_pipeline(config)

    assert run.outcome is RunOutcome.ABORTED
    assert run.state is EngineState.ABORTED
    assert [(r.phase.value, r.attempt) for r in run.results] == [
        ("red", 1),
        ("green", 1),
        ("green", 2),
    ]
    current = CheckpointStore(config.checkpoint_dir).read_current()
    assert current is not None
    assert current.status is CheckpointStatus.FAILED
    assert current.tests.failing >= 1
    assert current.pipeline_state is EngineState.ABORTED
    assert run.last_checkpoint == current
    assert not config.lock_path.exists()


def test_passing_run_with_low_coverage_reaches_done_with_warning(tmp_path: Path) -> None:
    config = _config(
        tmp_path,
        {
            "unit": "echo '3 passed'; echo 'coverage: 65%'",
            "integration": "echo '2 passed'",
            "e2e": "exit 0",
        },
        parse_rules=COVERAGE_RULES,
    )

    run = run_pipeline(config)

    assert run.outcome is RunOutcome.COMPLETE
    assert run.state is EngineState.DONE
    assert run.coverage_warning is True
    assert run.integration_partial is False
    current = CheckpointStore(config.checkpoint_dir).read_current()
    assert current is not None
    assert current.status is CheckpointStatus.COMPLETED
    assert current.coverage_warning is True
    assert current.coverage_percent == 65.0
    assert current.functional_state.value == "working"


def test_history_has_one_entry_per_attempt(tmp_path: Path) -> None:
    config = _config(tmp_path, {"unit": "exit 0"}, integration_categories=["unit"])

    run = run_pipeline(config)

    history = CheckpointStore(config.checkpoint_dir).read_history()
    assert len(history) == len(run.results) == 4
    assert {c.run_id for c in history} == {run.id}


def test_artifacts_hold_raw_output_and_run_summary(tmp_path: Path) -> None:
    config = _config(tmp_path, {"unit": "echo hello-from-unit; exit 1"}, max_retries=0)

    run = run_pipeline(config)

    run_dir = Path(run.artifacts_dir)
    red_log = run_dir / "red-1-unit.log"
    assert "hello-from-unit" in red_log.read_text(encoding="utf-8")
    summary = json.loads((run_dir / "run.json").read_text(encoding="utf-8"))
    assert summary["run_id"] == run.id
    assert summary["outcome"] == "aborted"
    checkpoint_text = (config.checkpoint_dir / "current.json").read_text(encoding="utf-8")
    assert "hello-from-unit" not in checkpoint_text


def test_concurrent_run_fails_fast_and_leaves_first_run_untouched(tmp_path: Path) -> None:
    config = _config(tmp_path, {"unit": "sleep 1; exit 1", "integration": "exit 0"}, max_retries=0)
    first_result: dict = {}

    def first() -> None:
        first_result["run"] = PipelineController(config).run()

    thread = threading.Thread(target=first)
    thread.start()
    deadline = time.monotonic() + 5
    while not config.lock_path.exists() and time.monotonic() < deadline:
        time.sleep(0.01)

    with pytest.raises(ConcurrentRunError):
        run_pipeline(config)

    thread.join(timeout=30)
    run = first_result["run"]
    assert run.outcome is RunOutcome.ABORTED
    current = CheckpointStore(config.checkpoint_dir).read_current()
    assert current is not None and current.run_id == run.id


def test_stale_lock_does_not_block_a_new_run(tmp_path: Path) -> None:
    config = _config(tmp_path, {"unit": "exit 0"}, integration_categories=["unit"], stale_lock_seconds=1)
    stale = RunLock(config.lock_path, run_id="run_crashed")
    stale.acquire()
    payload = json.loads(config.lock_path.read_text(encoding="utf-8"))
    payload["last_heartbeat_at"] = "2000-01-01T00:00:00+00:00"
    config.lock_path.write_text(json.dumps(payload), encoding="utf-8")

    run = run_pipeline(config)

    assert run.outcome is RunOutcome.COMPLETE


def test_resume_continues_from_current_checkpoint(tmp_path: Path) -> None:
    marker = tmp_path / "implemented"
    command = f"test -f {marker}"
    config = _config(tmp_path, {"unit": command}, integration_categories=["unit"], max_retries=0)

    first = run_pipeline(config)
    assert first.outcome is RunOutcome.ABORTED

    # An aborted run is terminal, so resume starts over at RED.
    marker.write_text("done", encoding="utf-8")
    second = run_pipeline(config, resume=True)
    assert second.results[0].phase.value == "red"
    assert second.outcome is RunOutcome.COMPLETE


def test_resume_skips_completed_phases(tmp_path: Path) -> None:
    config = _config(tmp_path, {"unit": "exit 0"}, integration_categories=["unit"])
    controller = PipelineController(config)
    store = controller.store
    seed = run_pipeline(config)
    assert seed.outcome is RunOutcome.COMPLETE

    last = store.read_current()
    store.record(last.model_copy(update={"pipeline_state": EngineState.REFACTOR}))

    resumed = controller.run(resume=True)

    assert [r.phase.value for r in resumed.results] == ["refactor", "integrate"]
    assert resumed.outcome is RunOutcome.COMPLETE


def test_stop_cancels_running_command_and_ends_incomplete(tmp_path: Path) -> None:
    config = _config(tmp_path, {"unit": "sleep 30"}, timeout_per_phase=60)
    controller = PipelineController(config)
    timer = threading.Timer(0.5, controller.stop)
    timer.start()
    started = time.monotonic()
    try:
        run = controller.run()
    finally:
        timer.cancel()

    assert time.monotonic() - started < 20
    assert run.outcome is RunOutcome.INCOMPLETE
    assert run.state is EngineState.ABORTED
    assert run.abort_reason == "cancelled"
    current = controller.store.read_current()
    assert current is not None and current.reason == "cancelled"
    assert not config.lock_path.exists()


def test_missing_toolchain_is_config_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="no recognized toolchain"):
        run_pipeline(build_config({"working_dir": tmp_path}))
