"""Pydantic models for phase results, checkpoints, and pipeline runs."""

from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

# Exit code recorded when a command was killed or never produced one.
NO_EXIT_CODE = -1


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class Phase(str, Enum):
    """The fixed, ordered phases of a pipeline run."""

    RED = "red"
    GREEN = "green"
    REFACTOR = "refactor"
    INTEGRATE = "integrate"


PHASE_ORDER: tuple[Phase, ...] = (Phase.RED, Phase.GREEN, Phase.REFACTOR, Phase.INTEGRATE)


class EngineState(str, Enum):
    """States of the phase gate state machine."""

    RED = "red"
    GREEN = "green"
    REFACTOR = "refactor"
    INTEGRATE = "integrate"
    DONE = "done"
    ABORTED = "aborted"

    @property
    def terminal(self) -> bool:
        return self in (EngineState.DONE, EngineState.ABORTED)

    @property
    def phase(self) -> Phase | None:
        if self.terminal:
            return None
        return Phase(self.value)

    @classmethod
    def for_phase(cls, phase: Phase) -> EngineState:
        return cls(phase.value)


class CheckpointStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class FunctionalState(str, Enum):
    WORKING = "working"
    BROKEN = "broken"
    UNKNOWN = "unknown"


class RunOutcome(str, Enum):
    COMPLETE = "complete"
    INCOMPLETE = "incomplete"
    ABORTED = "aborted"


# ---------------------------------------------------------------------------
# Command execution and parsing
# ---------------------------------------------------------------------------

class CommandResult(BaseModel):
    """Captured outcome of one external command."""

    model_config = ConfigDict(frozen=True)

    command: str
    exit_code: int = NO_EXIT_CODE
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0
    timed_out: bool = False
    cancelled: bool = False

    @property
    def output(self) -> str:
        """Combined stdout and stderr, the text parsers look at."""
        return (self.stdout + "\n" + self.stderr).strip()


class TestCounts(BaseModel):
    """Test tallies; ``total`` always equals the sum of the other three."""

    __test__ = False  # Prevent pytest from collecting this model as a test class.
    model_config = ConfigDict(frozen=True)

    total: int = Field(default=0, ge=0)
    passed: int = Field(default=0, ge=0)
    failed: int = Field(default=0, ge=0)
    skipped: int = Field(default=0, ge=0)

    @model_validator(mode="before")
    @classmethod
    def _derive_total(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("total") is None:
            data = dict(data)
            data["total"] = sum(int(data.get(key) or 0) for key in ("passed", "failed", "skipped"))
        return data

    @model_validator(mode="after")
    def _check_total(self) -> TestCounts:
        if self.total != self.passed + self.failed + self.skipped:
            raise ValueError(
                f"total ({self.total}) must equal passed+failed+skipped "
                f"({self.passed}+{self.failed}+{self.skipped})"
            )
        return self

    @classmethod
    def of(cls, *, passed: int = 0, failed: int = 0, skipped: int = 0) -> TestCounts:
        return cls(passed=passed, failed=failed, skipped=skipped)

    def __add__(self, other: TestCounts) -> TestCounts:
        return TestCounts.of(
            passed=self.passed + other.passed,
            failed=self.failed + other.failed,
            skipped=self.skipped + other.skipped,
        )


class PartialPhaseResult(BaseModel):
    """What the result parser could extract from raw output."""

    counts: TestCounts = Field(default_factory=TestCounts)
    coverage_percent: float | None = None
    parse_incomplete: bool = False
    warnings: list[str] = Field(default_factory=list)


class CategoryResult(BaseModel):
    """Outcome of one test category within a phase attempt."""

    model_config = ConfigDict(frozen=True)

    category: str
    command: str = ""
    exit_code: int = NO_EXIT_CODE
    counts: TestCounts = Field(default_factory=TestCounts)
    coverage_percent: float | None = Field(default=None, ge=0, le=100)
    duration_seconds: float = 0.0
    timed_out: bool = False
    cancelled: bool = False
    skipped: bool = False
    parse_incomplete: bool = False
    error: str = ""
    artifact: str = ""
    warnings: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Phase results, checkpoints, runs
# ---------------------------------------------------------------------------

class PhaseResult(BaseModel):
    """Outcome of one phase attempt. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    phase: Phase
    attempt: int = 1
    command: str = ""
    exit_code: int = 0
    test_counts: TestCounts = Field(default_factory=TestCounts)
    coverage_percent: float | None = Field(default=None, ge=0, le=100)
    started_at: dt.datetime
    finished_at: dt.datetime
    categories: list[CategoryResult] = Field(default_factory=list)
    build: CategoryResult | None = None
    parse_incomplete: bool = False
    warnings: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_times(self) -> PhaseResult:
        if self.finished_at < self.started_at:
            raise ValueError("finished_at must not be earlier than started_at")
        return self

    @property
    def build_exit_code(self) -> int | None:
        return self.build.exit_code if self.build is not None else None

    @property
    def timed_out(self) -> bool:
        return any(c.timed_out for c in self.categories)

    @property
    def cancelled(self) -> bool:
        return any(c.cancelled for c in self.categories) or bool(self.build and self.build.cancelled)

    @property
    def execution_errors(self) -> list[str]:
        errors = [f"{c.category}: {c.error}" for c in self.categories if c.error]
        if self.build is not None and self.build.error:
            errors.append(f"build: {self.build.error}")
        return errors

    @property
    def ran_commands(self) -> bool:
        return any(not c.skipped for c in self.categories) or self.build is not None


class TestsSummary(BaseModel):
    """Test tallies as stored in a checkpoint."""

    __test__ = False
    total: int = 0
    passing: int = 0
    failing: int = 0
    skipped: int = 0

    @classmethod
    def from_counts(cls, counts: TestCounts) -> TestsSummary:
        return cls(
            total=counts.total,
            passing=counts.passed,
            failing=counts.failed,
            skipped=counts.skipped,
        )


def derive_functional_state(result: PhaseResult) -> FunctionalState:
    """``working`` iff nothing failed and the build (or phase command) exited 0."""
    if not result.ran_commands:
        return FunctionalState.UNKNOWN
    exit_code = result.build_exit_code if result.build is not None else result.exit_code
    if result.test_counts.failed == 0 and exit_code == 0:
        return FunctionalState.WORKING
    return FunctionalState.BROKEN


class Checkpoint(BaseModel):
    """Durable snapshot written after every phase attempt."""

    model_config = ConfigDict(frozen=True)

    timestamp: dt.datetime = Field(default_factory=utc_now)
    run_id: str
    phase: Phase
    attempt: int = 1
    status: CheckpointStatus
    pipeline_state: EngineState
    tests: TestsSummary = Field(default_factory=TestsSummary)
    coverage_percent: float | None = None
    functional_state: FunctionalState = FunctionalState.UNKNOWN
    build_exit_code: int | None = None
    coverage_warning: bool = False
    integration_partial: bool = False
    parse_incomplete: bool = False
    reason: str = ""
    warnings: list[str] = Field(default_factory=list)

    @classmethod
    def from_result(
        cls,
        result: PhaseResult,
        *,
        run_id: str,
        status: CheckpointStatus,
        pipeline_state: EngineState,
        reason: str = "",
        coverage_warning: bool = False,
        integration_partial: bool = False,
        warnings: list[str] | None = None,
    ) -> Checkpoint:
        return cls(
            run_id=run_id,
            phase=result.phase,
            attempt=result.attempt,
            status=status,
            pipeline_state=pipeline_state,
            tests=TestsSummary.from_counts(result.test_counts),
            coverage_percent=result.coverage_percent,
            functional_state=derive_functional_state(result),
            build_exit_code=result.build_exit_code,
            coverage_warning=coverage_warning,
            integration_partial=integration_partial,
            parse_incomplete=result.parse_incomplete,
            reason=reason,
            warnings=list(warnings if warnings is not None else result.warnings),
        )


class PipelineRun(BaseModel):
    """One end-to-end execution of the phase sequence."""

    id: str
    results: list[PhaseResult] = Field(default_factory=list)
    outcome: RunOutcome = RunOutcome.INCOMPLETE
    state: EngineState = EngineState.RED
    abort_reason: str = ""
    coverage_warning: bool = False
    integration_partial: bool = False
    started_at: dt.datetime = Field(default_factory=utc_now)
    finished_at: dt.datetime | None = None
    artifacts_dir: str = ""
    last_checkpoint: Checkpoint | None = None

    def to_summary(self) -> dict[str, Any]:
        """Return a compact summary for CLI/API callers."""
        return {
            "run_id": self.id,
            "outcome": self.outcome.value,
            "state": self.state.value,
            "abort_reason": self.abort_reason,
            "coverage_warning": self.coverage_warning,
            "integration_partial": self.integration_partial,
            "attempts": len(self.results),
            "phases": [
                {
                    "phase": r.phase.value,
                    "attempt": r.attempt,
                    "exit_code": r.exit_code,
                    "tests": r.test_counts.model_dump(),
                    "coverage_percent": r.coverage_percent,
                }
                for r in self.results
            ],
            "artifacts_dir": self.artifacts_dir,
            "last_checkpoint": (
                self.last_checkpoint.model_dump(mode="json") if self.last_checkpoint else None
            ),
        }
