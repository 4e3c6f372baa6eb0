"""Setup diagnostics for ``phasegate doctor``.

Checks that a pipeline can start: the working directory exists, commands
are configured or a toolchain is recognized, each command's executable
resolves, the state directory is writable, and no stale lock or corrupt
checkpoint is waiting in it.
"""

from __future__ import annotations

import os
import re
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path

from phasegate.checkpoints import CheckpointStore
from phasegate.command_runner import (
    command_uses_shell,
    is_env_assignment,
    split_command,
    starts_with_builtin,
)
from phasegate.config import CommandSpec, PipelineConfig
from phasegate.errors import ExecutionError, PersistenceError
from phasegate.locking import file_age_seconds, lock_age_seconds, read_lock_payload

_SHELL_WORD_PATTERN = re.compile(r"[|&;<>()$`*?~]")


@dataclass(frozen=True)
class PreflightCheck:
    """A single readiness check result."""

    category: str
    key: str
    label: str
    status: str
    detail: str
    hint: str = ""

    def to_dict(self) -> dict[str, str]:
        return {
            "category": self.category,
            "key": self.key,
            "label": self.label,
            "status": self.status,
            "detail": self.detail,
            "hint": self.hint,
        }


@dataclass(frozen=True)
class PreflightReport:
    """Structured diagnostics output for setup readiness."""

    working_dir: str
    state_dir: str
    checks: list[PreflightCheck]
    toolchain: str = ""

    @property
    def summary(self) -> dict[str, int]:
        counts = {"pass": 0, "warn": 0, "fail": 0}
        for check in self.checks:
            if check.status in counts:
                counts[check.status] += 1
        return counts

    @property
    def ready(self) -> bool:
        return self.summary["fail"] == 0

    def failure_messages(self) -> list[str]:
        messages: list[str] = []
        for check in self.checks:
            if check.status != "fail":
                continue
            messages.append(f"{check.label}: {check.hint or check.detail}")
        return messages

    def to_dict(self) -> dict[str, object]:
        return {
            "working_dir": self.working_dir,
            "state_dir": self.state_dir,
            "toolchain": self.toolchain,
            "checks": [c.to_dict() for c in self.checks],
            "summary": self.summary,
            "ready": self.ready,
        }


def binary_exists(binary: str) -> bool:
    """Return ``True`` when an executable exists for *binary*."""
    binary = os.path.expandvars(os.path.expanduser(str(binary or "").strip()))
    if not binary:
        return False
    candidate = Path(binary)
    try:
        if candidate.is_file():
            return os.access(candidate, os.X_OK)
    except OSError:
        return False
    return shutil.which(binary) is not None


def _command_executable(command: str) -> str:
    """Return the program *command* would run.

    Leading ``NAME=value`` words are skipped. A shell builtin needs no
    executable; a first word the shell itself must expand checks the shell.
    """
    shell = "cmd" if os.name == "nt" else "sh"
    if not command_uses_shell(command):
        argv = split_command(command)
        return argv[0] if argv else ""
    try:
        argv = split_command(command)
    except ExecutionError:
        return shell
    while argv and is_env_assignment(argv[0]):
        argv.pop(0)
    if not argv or starts_with_builtin(argv[0]):
        return ""
    if os.name == "nt" or _SHELL_WORD_PATTERN.search(argv[0]):
        return shell
    return argv[0]


def state_dir_write_error(state_dir: Path) -> str | None:
    """Return a human-readable write failure for *state_dir*, if any."""
    try:
        state_dir.mkdir(parents=True, exist_ok=True)
        probe_path = state_dir / f".preflight-write-{uuid.uuid4().hex}.tmp"
        probe_path.write_text("ok", encoding="utf-8")
        probe_path.unlink(missing_ok=True)
    except OSError as exc:
        return f"State directory is not writable: {exc}"
    return None


def _command_check(name: str, spec: CommandSpec, config: PipelineConfig) -> PreflightCheck:
    label = f"Command for '{name}' is runnable"
    working_dir = config.working_dir_for(spec)
    if not working_dir.is_dir():
        return PreflightCheck(
            category="commands",
            key=name,
            label=label,
            status="fail",
            detail=f"Working directory not found: {working_dir}",
            hint="Fix the command's working_dir.",
        )
    try:
        executable = _command_executable(spec.command)
    except ExecutionError as exc:
        return PreflightCheck(
            category="commands",
            key=name,
            label=label,
            status="fail",
            detail=str(exc),
            hint="Check the command's quoting.",
        )
    if executable and not binary_exists(executable):
        return PreflightCheck(
            category="commands",
            key=name,
            label=label,
            status="fail",
            detail=f"Executable not found: {executable}",
            hint=f"Install {executable} or put it on PATH.",
        )
    return PreflightCheck(
        category="commands",
        key=name,
        label=label,
        status="pass",
        detail=spec.command,
    )


def _lock_check(config: PipelineConfig) -> PreflightCheck:
    lock_path = config.lock_path
    if not lock_path.exists():
        return PreflightCheck(
            category="state",
            key="lock",
            label="No run lock held",
            status="pass",
            detail=f"No lock at {lock_path}",
        )
    payload = read_lock_payload(lock_path)
    age = lock_age_seconds(payload)
    if age is None:
        age = file_age_seconds(lock_path)
    holder = f"run_id={payload.get('run_id', '<unknown>')}, pid={payload.get('pid', '<unknown>')}"
    if age is not None and age > config.stale_lock_seconds:
        return PreflightCheck(
            category="state",
            key="lock",
            label="No run lock held",
            status="warn",
            detail=f"Stale lock ({holder}, age={age:.0f}s); the next run will replace it.",
            hint="Run `phasegate unlock` to remove it now.",
        )
    return PreflightCheck(
        category="state",
        key="lock",
        label="No run lock held",
        status="warn",
        detail=f"Another run holds the lock ({holder}).",
        hint="Wait for it to finish before starting a new run.",
    )


def _checkpoint_check(config: PipelineConfig) -> PreflightCheck:
    store = CheckpointStore(config.checkpoint_dir)
    try:
        current = store.read_current()
    except PersistenceError as exc:
        return PreflightCheck(
            category="state",
            key="checkpoint",
            label="Current checkpoint readable",
            status="fail",
            detail=str(exc),
            hint=f"Inspect or remove {store.current_path}.",
        )
    if current is None:
        detail = "No checkpoint written yet."
    else:
        detail = (
            f"{current.phase.value} {current.status.value} "
            f"-> {current.pipeline_state.value} at {current.timestamp.isoformat()}"
        )
    return PreflightCheck(
        category="state",
        key="checkpoint",
        label="Current checkpoint readable",
        status="pass",
        detail=detail,
    )


def build_preflight_report(config: PipelineConfig) -> PreflightReport:
    """Build a structured readiness report for *config*."""
    checks: list[PreflightCheck] = []
    working_dir = config.working_dir
    state_dir = config.resolved_state_dir

    if not working_dir.is_dir():
        checks.append(
            PreflightCheck(
                category="workspace",
                key="path",
                label="Working directory exists",
                status="fail",
                detail=f"Path not found: {working_dir}",
                hint="Pass --working-dir or set working_dir in the config file.",
            )
        )
        return PreflightReport(working_dir=str(working_dir), state_dir=str(state_dir), checks=checks)
    checks.append(
        PreflightCheck(
            category="workspace",
            key="path",
            label="Working directory exists",
            status="pass",
            detail=f"Path found: {working_dir}",
        )
    )

    toolchain = config.resolve_toolchain()
    if config.categories:
        checks.append(
            PreflightCheck(
                category="commands",
                key="source",
                label="Test commands configured",
                status="pass",
                detail=f"Categories: {', '.join(config.categories)}",
            )
        )
    elif toolchain is not None:
        checks.append(
            PreflightCheck(
                category="commands",
                key="source",
                label="Test commands configured",
                status="pass",
                detail=f"Detected {toolchain.name} toolchain; default: {toolchain.test_command}",
            )
        )
    else:
        checks.append(
            PreflightCheck(
                category="commands",
                key="source",
                label="Test commands configured",
                status="fail",
                detail=f"No categories configured and no recognized toolchain in {working_dir}",
                hint="Add test_command_by_category to the config file.",
            )
        )

    if config.categories or toolchain is not None:
        resolved = config.with_detected_commands()
        for name, spec in resolved.categories.items():
            checks.append(_command_check(name, spec, resolved))
        if resolved.build_command is not None:
            checks.append(_command_check("build", resolved.build_command, resolved))
        missing = [n for n in resolved.integration_categories if n not in resolved.categories]
        if missing:
            checks.append(
                PreflightCheck(
                    category="commands",
                    key="integration_categories",
                    label="Integration categories configured",
                    status="warn",
                    detail=f"No command for: {', '.join(missing)}; INTEGRATE will be partial.",
                )
            )

    write_error = state_dir_write_error(state_dir)
    checks.append(
        PreflightCheck(
            category="state",
            key="writable",
            label="State directory is writable",
            status="fail" if write_error else "pass",
            detail=write_error or str(state_dir),
            hint="Choose a writable state_dir." if write_error else "",
        )
    )
    checks.append(_lock_check(config))
    checks.append(_checkpoint_check(config))

    return PreflightReport(
        working_dir=str(working_dir),
        state_dir=str(state_dir),
        checks=checks,
        toolchain=toolchain.name if toolchain is not None else "",
    )
