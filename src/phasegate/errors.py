"""Exception taxonomy shared by the runner, gate engine, store, and CLI."""

from __future__ import annotations


class PhasegateError(RuntimeError):
    """Base class for pipeline errors."""


class ConfigError(PhasegateError):
    """Raised when configuration is invalid or no toolchain can be resolved."""


class ExecutionError(PhasegateError):
    """Raised when a command cannot be spawned at all.

    A non-zero exit code is a normal captured result, not an error.
    """

    def __init__(self, message: str, *, command: str = "") -> None:
        super().__init__(message)
        self.command = command


class ParseWarning(UserWarning):
    """Non-fatal problem while extracting counts from command output."""


class GateFailure(PhasegateError):
    """Raised when a phase's exit criterion is not met."""

    def __init__(self, phase: str, reason: str, *, retryable: bool = False) -> None:
        super().__init__(f"{phase}: {reason}")
        self.phase = phase
        self.reason = reason
        self.retryable = retryable


class PersistenceError(PhasegateError):
    """Raised when a checkpoint cannot be written or read back."""


class ConcurrentRunError(PhasegateError):
    """Raised when another live run holds the lock on the same state directory."""
