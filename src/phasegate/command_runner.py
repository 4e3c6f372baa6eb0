"""Run one external command, capturing output, exit code, and duration.

Commands that use shell syntax or start with a shell builtin (``exit 1``,
``true``, ``make test && ...``) run through the platform shell; anything
else is split into argv and executed directly so a missing binary is
reported at spawn time. For shell-run commands the conventional "not
found" (127) and "not executable" (126) exit codes are reported as
:class:`ExecutionError` as well.

There are no retries here; retry policy belongs to the gate engine.
"""

from __future__ import annotations

import logging
import os
import re
import shlex
import subprocess
import threading
import time
from contextlib import suppress
from pathlib import Path

from phasegate.errors import ExecutionError
from phasegate.schemas import NO_EXIT_CODE, CommandResult

logger = logging.getLogger(__name__)
if os.name != "nt":  # pragma: no cover - platform-specific import
    import signal

_SHELL_META_PATTERN = re.compile(r"[|&;<>()$`*?\n]")
_SHELL_BUILTINS = frozenset(
    {"exit", "true", "false", ":", "cd", "export", "set", "source", ".", "test", "[", "exec"}
)
_ENV_ASSIGNMENT_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")
_SHELL_NOT_FOUND = 127
_SHELL_NOT_EXECUTABLE = 126
_POLL_SECONDS = 0.1
_DRAIN_SECONDS = 5.0


def _is_windows_platform() -> bool:
    return os.name == "nt"


def starts_with_builtin(command: str) -> bool:
    first = command.strip().split(maxsplit=1)[0] if command.strip() else ""
    return first in _SHELL_BUILTINS


def is_env_assignment(word: str) -> bool:
    return bool(_ENV_ASSIGNMENT_PATTERN.match(word))


def command_uses_shell(command: str) -> bool:
    """Return ``True`` when *command* needs a shell to be interpreted.

    Leading ``NAME=value`` assignments and ``~`` paths count as shell syntax.
    """
    if _SHELL_META_PATTERN.search(command):
        return True
    first = command.strip().split(maxsplit=1)[0] if command.strip() else ""
    if is_env_assignment(first) or first.startswith("~"):
        return True
    return starts_with_builtin(command)


def split_command(command: str) -> list[str]:
    """Split a command string into argv tokens following platform quoting rules."""
    try:
        if _is_windows_platform():
            return [part.strip('"') for part in shlex.split(command, posix=False) if part]
        return [part for part in shlex.split(command, posix=True) if part]
    except ValueError as exc:
        raise ExecutionError(f"cannot parse command {command!r}: {exc}", command=command) from exc


def _process_isolation_kwargs() -> dict[str, object]:
    """Start the child in its own process group so a timeout can kill the whole tree."""
    if _is_windows_platform():
        flags = int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
        return {"creationflags": flags} if flags else {}
    return {"start_new_session": True}


class CommandRunner:
    """Execute external commands with a hard wall-clock timeout."""

    def __init__(
        self, *, terminate_grace_seconds: float = 1.5, drain_seconds: float = _DRAIN_SECONDS
    ) -> None:
        self.terminate_grace_seconds = terminate_grace_seconds
        self.drain_seconds = drain_seconds

    def execute(
        self,
        command: str,
        working_dir: str | Path,
        timeout: float,
        *,
        cancel_event: threading.Event | None = None,
    ) -> CommandResult:
        """Run *command* in *working_dir* and return its captured result.

        Raises :class:`ExecutionError` when the command cannot be spawned.
        A timeout kills the process group and yields ``timed_out=True``
        with ``exit_code == NO_EXIT_CODE``.
        """
        cwd = Path(working_dir)
        if not cwd.is_dir():
            raise ExecutionError(f"working directory does not exist: {cwd}", command=command)
        use_shell = command_uses_shell(command)
        argv: str | list[str] = command if use_shell else split_command(command)
        if not argv:
            raise ExecutionError("empty command", command=command)

        logger.debug("Executing %r (cwd=%s, timeout=%ss, shell=%s)", command, cwd, timeout, use_shell)
        started = time.monotonic()
        try:
            proc = subprocess.Popen(
                argv,
                cwd=cwd,
                shell=use_shell,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                encoding="utf-8",
                errors="replace",
                **_process_isolation_kwargs(),
            )
        except FileNotFoundError as exc:
            raise ExecutionError(f"command not found: {exc}", command=command) from exc
        except PermissionError as exc:
            raise ExecutionError(f"permission denied: {exc}", command=command) from exc
        except OSError as exc:
            raise ExecutionError(f"cannot spawn command: {exc}", command=command) from exc

        stdout, stderr, timed_out, cancelled = self._communicate(
            proc, command=command, timeout=timeout, cancel_event=cancel_event
        )
        duration = time.monotonic() - started

        exit_code = proc.returncode if proc.returncode is not None else NO_EXIT_CODE
        if timed_out or cancelled:
            exit_code = NO_EXIT_CODE
        elif use_shell and exit_code in (_SHELL_NOT_FOUND, _SHELL_NOT_EXECUTABLE):
            detail = "not found" if exit_code == _SHELL_NOT_FOUND else "not executable"
            message = (stderr or "").strip().splitlines()
            suffix = f": {message[-1]}" if message else ""
            raise ExecutionError(f"command {detail} (exit {exit_code}){suffix}", command=command)

        if timed_out:
            logger.warning("Command timed out after %ss: %s", timeout, command)
        return CommandResult(
            command=command,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            duration_seconds=duration,
            timed_out=timed_out,
            cancelled=cancelled,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _communicate(
        self,
        proc: subprocess.Popen[str],
        *,
        command: str,
        timeout: float,
        cancel_event: threading.Event | None,
    ) -> tuple[str, str, bool, bool]:
        deadline = time.monotonic() + timeout
        timed_out = False
        cancelled = False
        while True:
            remaining = deadline - time.monotonic()
            try:
                stdout, stderr = proc.communicate(timeout=max(0.01, min(_POLL_SECONDS, remaining)))
                return stdout or "", stderr or "", timed_out, cancelled
            except subprocess.TimeoutExpired:
                pass
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
                reason = "stop request"
            elif time.monotonic() >= deadline:
                timed_out = True
                reason = "timeout"
            else:
                continue
            self._terminate_with_fallback(proc, command=command, reason=reason)
            stdout, stderr = self._drain(proc, command=command)
            return stdout, stderr, timed_out, cancelled

    def _drain(self, proc: subprocess.Popen[str], *, command: str) -> tuple[str, str]:
        """Collect what is left in the pipes of a killed process, bounded in time.

        A descendant that left the process group can keep the pipes open;
        after ``drain_seconds`` the pipes are closed and the output is dropped.
        """
        try:
            stdout, stderr = proc.communicate(timeout=self.drain_seconds)
        except subprocess.TimeoutExpired:
            logger.warning("%r output pipes still open after kill; closing them.", command)
            for stream in (proc.stdout, proc.stderr):
                if stream is not None:
                    with suppress(OSError):
                        stream.close()
            return "", ""
        return stdout or "", stderr or ""

    def _terminate_with_fallback(
        self, proc: subprocess.Popen[str], *, command: str, reason: str
    ) -> None:
        """Request graceful terminate first, then force-kill if still alive."""
        if proc.poll() is not None:
            return
        _signal_process(proc, graceful=True)
        try:
            proc.wait(timeout=max(0.1, self.terminate_grace_seconds))
            return
        except subprocess.TimeoutExpired:
            logger.warning("%r did not exit after terminate during %s; forcing kill.", command, reason)
        _signal_process(proc, graceful=False)
        try:
            proc.wait(timeout=5.0)
        except subprocess.TimeoutExpired:  # pragma: no cover - extreme edge case
            logger.warning("%r ignored kill during %s.", command, reason)


def _signal_process(proc: subprocess.Popen[str], *, graceful: bool) -> None:
    """Best-effort signal delivery to the child and its process group."""
    if not _is_windows_platform():
        pid = int(getattr(proc, "pid", 0) or 0)
        if pid > 0:
            sig = signal.SIGTERM if graceful else signal.SIGKILL
            with suppress(ProcessLookupError, PermissionError):
                os.killpg(os.getpgid(pid), sig)
    with suppress(ProcessLookupError):
        if graceful:
            proc.terminate()
        else:
            proc.kill()
