"""Tests for setup diagnostics."""

from __future__ import annotations

import datetime as dt
import json
import os
from pathlib import Path

import pytest

import phasegate.preflight as preflight
from phasegate.config import build_config
from phasegate.locking import RunLock

pytestmark = pytest.mark.unit


def _check(report: preflight.PreflightReport, category: str, key: str) -> preflight.PreflightCheck:
    for check in report.checks:
        if check.category == category and check.key == key:
            return check
    raise AssertionError(f"Missing check {category}/{key}")


def test_binary_exists_rejects_directories(tmp_path: Path) -> None:
    assert preflight.binary_exists(str(tmp_path)) is False


@pytest.mark.skipif(os.name == "nt", reason="POSIX permission bits")
def test_binary_exists_requires_explicit_file_to_be_executable(tmp_path: Path) -> None:
    tool = tmp_path / "tool.sh"
    tool.write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
    tool.chmod(0o644)
    assert preflight.binary_exists(str(tool)) is False

    tool.chmod(0o755)
    assert preflight.binary_exists(str(tool)) is True


def test_missing_working_dir_fails_early(tmp_path: Path) -> None:
    config = build_config({"working_dir": tmp_path / "missing"})

    report = preflight.build_preflight_report(config)

    assert report.ready is False
    assert _check(report, "workspace", "path").status == "fail"
    assert len(report.checks) == 1


def test_no_commands_and_no_toolchain_fails(tmp_path: Path) -> None:
    report = preflight.build_preflight_report(build_config({"working_dir": tmp_path}))

    check = _check(report, "commands", "source")
    assert check.status == "fail"
    assert "no recognized toolchain" in check.detail.lower()
    assert report.ready is False
    assert any("Test commands configured" in msg for msg in report.failure_messages())


def test_configured_shell_builtins_pass(tmp_path: Path) -> None:
    config = build_config(
        {"working_dir": tmp_path, "categories": {"unit": "exit 1", "integration": "exit 0"}}
    )

    report = preflight.build_preflight_report(config)

    assert report.ready is True
    assert _check(report, "commands", "unit").status == "pass"
    assert _check(report, "commands", "integration").status == "pass"
    assert _check(report, "commands", "integration").detail == "exit 0"
    assert _check(report, "state", "writable").status == "pass"
    assert _check(report, "state", "lock").status == "pass"


def test_missing_executable_fails_with_hint(tmp_path: Path) -> None:
    config = build_config(
        {"working_dir": tmp_path, "categories": {"unit": "definitely-not-a-real-binary-xyz run"}}
    )

    report = preflight.build_preflight_report(config)

    check = _check(report, "commands", "unit")
    assert check.status == "fail"
    assert "definitely-not-a-real-binary-xyz" in check.hint


def test_detected_toolchain_is_reported(tmp_path: Path) -> None:
    (tmp_path / "go.mod").write_text("module example.com/x\n", encoding="utf-8")

    report = preflight.build_preflight_report(build_config({"working_dir": tmp_path}))

    assert report.toolchain == "go"
    assert _check(report, "commands", "source").status == "pass"
    assert "go test -cover ./..." in _check(report, "commands", "source").detail
    assert _check(report, "commands", "unit").label == "Command for 'unit' is runnable"


def test_missing_integration_categories_warn(tmp_path: Path) -> None:
    config = build_config({"working_dir": tmp_path, "categories": {"unit": "exit 0"}})

    report = preflight.build_preflight_report(config)

    check = _check(report, "commands", "integration_categories")
    assert check.status == "warn"
    assert "integration, e2e" in check.detail
    assert report.ready is True


def test_held_and_stale_locks_warn(tmp_path: Path) -> None:
    config = build_config(
        {"working_dir": tmp_path, "categories": {"unit": "exit 0"}, "stale_lock_seconds": 60}
    )
    lock = RunLock(config.lock_path, run_id="run_live")
    lock.acquire()

    held = _check(preflight.build_preflight_report(config), "state", "lock")
    assert held.status == "warn"
    assert "run_live" in held.detail

    payload = json.loads(config.lock_path.read_text(encoding="utf-8"))
    old = dt.datetime.now(dt.timezone.utc) - dt.timedelta(hours=1)
    payload["last_heartbeat_at"] = old.isoformat()
    config.lock_path.write_text(json.dumps(payload), encoding="utf-8")

    stale = _check(preflight.build_preflight_report(config), "state", "lock")
    assert stale.status == "warn"
    assert "phasegate unlock" in stale.hint


def test_corrupt_checkpoint_fails(tmp_path: Path) -> None:
    config = build_config({"working_dir": tmp_path, "categories": {"unit": "exit 0"}})
    config.checkpoint_dir.mkdir(parents=True)
    (config.checkpoint_dir / "current.json").write_text("{broken", encoding="utf-8")

    report = preflight.build_preflight_report(config)

    assert _check(report, "state", "checkpoint").status == "fail"
    assert report.ready is False


def test_report_to_dict_is_json_serializable(tmp_path: Path) -> None:
    config = build_config({"working_dir": tmp_path, "categories": {"unit": "exit 0"}})

    payload = preflight.build_preflight_report(config).to_dict()

    decoded = json.loads(json.dumps(payload))
    assert decoded["ready"] is True
    assert decoded["summary"]["fail"] == 0
    assert {c["key"] for c in decoded["checks"]} >= {"path", "source", "unit", "writable", "lock"}


def test_leading_env_assignment_checks_the_real_program(tmp_path: Path) -> None:
    config = build_config(
        {
            "working_dir": tmp_path,
            "categories": {
                "unit": "CI=true exit 0",
                "integration": "CI=true definitely-not-a-real-binary-xyz run",
            },
        }
    )

    report = preflight.build_preflight_report(config)

    assert _check(report, "commands", "unit").status == "pass"
    failing = _check(report, "commands", "integration")
    assert failing.status == "fail"
    assert failing.detail == "Executable not found: definitely-not-a-real-binary-xyz"
