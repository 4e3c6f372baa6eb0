"""Tests for CLI entrypoint dispatch and exit codes."""

from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

import phasegate.__main__ as main_module
from phasegate.checkpoints import CheckpointStore
from phasegate.errors import ConcurrentRunError, PersistenceError
from phasegate.schemas import EngineState, PipelineRun, RunOutcome

posix_only = pytest.mark.skipif(os.name == "nt", reason="uses POSIX shell commands")


def _write_config(directory: Path, body: str) -> Path:
    config_file = directory / "phasegate.yaml"
    config_file.write_text(body, encoding="utf-8")
    return config_file


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for name in (
        "PHASEGATE_STATE_DIR",
        "PHASEGATE_COVERAGE_THRESHOLD",
        "PHASEGATE_MAX_RETRIES",
        "PHASEGATE_TIMEOUT",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.mark.unit
def test_main_entrypoint_source_is_ascii_safe() -> None:
    source_text = Path(main_module.__file__).read_text(encoding="utf-8")
    assert source_text.isascii()


@pytest.mark.unit
def test_main_without_command_prints_help(capsys) -> None:
    rc = main_module.main([])
    captured = capsys.readouterr()
    assert rc == main_module.EXIT_CONFIG
    assert "phasegate doctor" in captured.err


@pytest.mark.unit
def test_main_dispatches_subcommands(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: dict[str, object] = {}

    def fake(name: str, rc: int):
        def handler(args):
            calls[name] = args
            return rc

        return handler

    monkeypatch.setattr(main_module, "_run", fake("run", 10))
    monkeypatch.setattr(main_module, "_status", fake("status", 11))
    monkeypatch.setattr(main_module, "_history", fake("history", 12))
    monkeypatch.setattr(main_module, "_run_doctor", fake("doctor", 13))
    monkeypatch.setattr(main_module, "_unlock", fake("unlock", 14))

    assert main_module.main(["run", "--resume", "--json"]) == 10
    assert main_module.main(["status"]) == 11
    assert main_module.main(["history", "--since", "2026-01-01T00:00:00Z"]) == 12
    assert main_module.main(["doctor", "--json"]) == 13
    assert main_module.main(["unlock", "--reason", "crashed"]) == 14

    assert calls["run"].resume is True
    assert calls["history"].since == "2026-01-01T00:00:00Z"
    assert calls["unlock"].reason == "crashed"


@pytest.mark.unit
@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (ConcurrentRunError("held"), main_module.EXIT_CONCURRENT),
        (PersistenceError("disk full"), main_module.EXIT_PERSISTENCE),
    ],
)
def test_run_maps_errors_to_exit_codes(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, error: Exception, expected: int
) -> None:
    _write_config(tmp_path, "test_command_by_category:\n  unit: exit 0\n")

    def boom(config, *, resume=False):
        raise error

    monkeypatch.setattr(main_module, "run_pipeline", boom)

    assert main_module.main(["run"]) == expected


@pytest.mark.unit
def test_run_reports_outcome_exit_codes(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, capsys) -> None:
    _write_config(tmp_path, "test_command_by_category:\n  unit: exit 0\n")
    outcomes = iter(
        [
            PipelineRun(id="run_a", outcome=RunOutcome.COMPLETE, state=EngineState.DONE),
            PipelineRun(id="run_b", outcome=RunOutcome.ABORTED, state=EngineState.ABORTED),
        ]
    )
    monkeypatch.setattr(main_module, "run_pipeline", lambda config, *, resume=False: next(outcomes))

    assert main_module.main(["run", "--json"]) == main_module.EXIT_DONE
    assert json.loads(capsys.readouterr().out)["run_id"] == "run_a"
    assert main_module.main(["run"]) == main_module.EXIT_ABORTED


@pytest.mark.unit
def test_run_without_commands_or_toolchain_is_config_error(tmp_path: Path, capsys) -> None:
    rc = main_module.main(["run", "--working-dir", str(tmp_path)])

    assert rc == main_module.EXIT_CONFIG
    assert "no recognized toolchain" in capsys.readouterr().err


@pytest.mark.unit
def test_invalid_config_file_is_config_error(tmp_path: Path) -> None:
    config_file = _write_config(tmp_path, "coverage_threshold: 250\n")

    assert main_module.main(["run", "--config", str(config_file)]) == main_module.EXIT_CONFIG


@pytest.mark.unit
def test_env_override_is_applied(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    _write_config(tmp_path, "test_command_by_category:\n  unit: exit 0\n")
    monkeypatch.setenv("PHASEGATE_MAX_RETRIES", "4")
    seen = {}

    def capture(config, *, resume=False):
        seen["config"] = config
        return PipelineRun(id="run_a", outcome=RunOutcome.COMPLETE, state=EngineState.DONE)

    monkeypatch.setattr(main_module, "run_pipeline", capture)

    assert main_module.main(["run"]) == main_module.EXIT_DONE
    assert seen["config"].max_retries == 4


@pytest.mark.integration
@posix_only
def test_run_status_and_history_end_to_end(tmp_path: Path, capsys) -> None:
    _write_config(
        tmp_path,
        "max_retries: 1\n"
        "test_command_by_category:\n"
        "  unit: exit 1\n"
        "  integration: exit 0\n",
    )

    assert main_module.main(["run"]) == main_module.EXIT_ABORTED
    capsys.readouterr()

    assert main_module.main(["status", "--json"]) == main_module.EXIT_DONE
    current = json.loads(capsys.readouterr().out)
    assert current["status"] == "failed"
    assert current["tests"]["failing"] >= 1

    assert main_module.main(["history", "--json"]) == main_module.EXIT_DONE
    lines = [line for line in capsys.readouterr().out.splitlines() if line.strip()]
    assert [json.loads(line)["phase"] for line in lines] == ["red", "green", "green"]

    since = json.loads(lines[0])["timestamp"]
    assert main_module.main(["history", "--since", since]) == main_module.EXIT_DONE
    assert len(capsys.readouterr().out.strip().splitlines()) == 2


@pytest.mark.integration
@posix_only
def test_run_done_exit_code(tmp_path: Path) -> None:
    _write_config(
        tmp_path,
        "integration_categories: [unit]\n"
        "test_command_by_category:\n"
        "  unit: exit 0\n",
    )

    assert main_module.main(["run"]) == main_module.EXIT_DONE
    current = CheckpointStore(tmp_path / ".phasegate" / "checkpoints").read_current()
    assert current is not None and current.pipeline_state is EngineState.DONE


@pytest.mark.unit
def test_history_rejects_bad_since(tmp_path: Path) -> None:
    _write_config(tmp_path, "test_command_by_category:\n  unit: exit 0\n")
    assert main_module.main(["history", "--since", "last week"]) == main_module.EXIT_CONFIG


@pytest.mark.unit
def test_status_without_checkpoint(tmp_path: Path, capsys) -> None:
    assert main_module.main(["status", "--working-dir", str(tmp_path)]) == main_module.EXIT_DONE
    assert "No checkpoint" in capsys.readouterr().err


@pytest.mark.unit
def test_persistence_error_on_corrupt_status(tmp_path: Path) -> None:
    checkpoints = tmp_path / ".phasegate" / "checkpoints"
    checkpoints.mkdir(parents=True)
    (checkpoints / "current.json").write_text("{oops", encoding="utf-8")

    assert main_module.main(["status"]) == main_module.EXIT_PERSISTENCE


@pytest.mark.unit
def test_doctor_json_report(tmp_path: Path, capsys) -> None:
    _write_config(tmp_path, "test_command_by_category:\n  unit: exit 0\n")

    rc = main_module.main(["doctor", "--json"])
    payload = json.loads(capsys.readouterr().out)

    assert rc == main_module.EXIT_DONE
    assert payload["ready"] is True


@pytest.mark.unit
def test_doctor_not_ready_exit_code(tmp_path: Path, capsys) -> None:
    rc = main_module.main(["doctor"])
    out = capsys.readouterr().out

    assert rc == main_module.EXIT_ABORTED
    assert "[FAIL] Test commands configured" in out


@pytest.mark.unit
def test_unlock_removes_lock(tmp_path: Path, capsys) -> None:
    lock_path = tmp_path / ".phasegate" / "run.lock"
    lock_path.parent.mkdir(parents=True)
    lock_path.write_text(json.dumps({"pid": 1, "host": "h", "run_id": "run_x"}), encoding="utf-8")

    assert main_module.main(["unlock"]) == main_module.EXIT_DONE
    assert not lock_path.exists()
    assert "lock broken" in capsys.readouterr().out
