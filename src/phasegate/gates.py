"""Phase gate engine: the RED -> GREEN -> REFACTOR -> INTEGRATE state machine.

Each phase attempt runs the phase's test categories (concurrently, sharing
no mutable state), parses their output, merges the counts, optionally runs
the build, and evaluates the phase's exit criterion:

============  ==========================================  =======================
Phase         Advances when                               Otherwise
============  ==========================================  =======================
RED           always; ``failed > 0`` is expected, a       n/a
              passing run is logged as a warning
GREEN         ``failed == 0`` and the build succeeded      retry, then ABORTED
REFACTOR      ``failed == 0`` and the build succeeded      ABORTED (regression)
INTEGRATE     every configured category has               ABORTED
              ``failed == 0`` and the build succeeded
============  ==========================================  =======================

Commands that cannot be spawned are retried in every phase up to
``max_retries``. Coverage is only looked at in INTEGRATE and only ever
annotates the result. Every attempt produces one :class:`PhaseResult` and
then one checkpoint write; a failed write stops the engine with
:class:`PersistenceError`.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from phasegate.artifacts import RunArtifacts
from phasegate.checkpoints import CheckpointStore
from phasegate.command_runner import CommandRunner
from phasegate.config import CommandSpec, PipelineConfig
from phasegate.errors import ExecutionError, GateFailure
from phasegate.result_parser import parse
from phasegate.retry import RetryPolicy, run_with_retry
from phasegate.schemas import (
    NO_EXIT_CODE,
    PHASE_ORDER,
    CategoryResult,
    Checkpoint,
    CheckpointStatus,
    EngineState,
    Phase,
    PhaseResult,
    TestCounts,
    utc_now,
)
from phasegate.toolchains import Toolchain

logger = logging.getLogger(__name__)

BUILD_CATEGORY = "build"
REFACTOR_REGRESSION_REASON = "regression introduced by refactor"
CANCELLED_REASON = "cancelled"


@dataclass(frozen=True)
class GateVerdict:
    """A passed gate, plus any non-blocking annotations."""

    warnings: tuple[str, ...] = ()
    coverage_warning: bool = False
    integration_partial: bool = False


@dataclass(frozen=True)
class PhaseDecision:
    """What the engine does after one attempt."""

    status: CheckpointStatus
    next_state: EngineState
    reason: str = ""
    retry: bool = False
    warnings: tuple[str, ...] = ()
    coverage_warning: bool = False
    integration_partial: bool = False


def next_state_after(phase: Phase) -> EngineState:
    """Return the state that follows a completed *phase*."""
    index = PHASE_ORDER.index(phase)
    if index + 1 < len(PHASE_ORDER):
        return EngineState.for_phase(PHASE_ORDER[index + 1])
    return EngineState.DONE


def _build_failed(result: PhaseResult) -> bool:
    return result.build is not None and result.build.exit_code != 0


def evaluate_gate(
    phase: Phase,
    result: PhaseResult,
    *,
    coverage_threshold: float = 80.0,
) -> GateVerdict:
    """Check *result* against *phase*'s exit criterion.

    Returns a :class:`GateVerdict` when the phase may advance and raises
    :class:`GateFailure` when it may not.
    """
    failed = result.test_counts.failed

    if phase is Phase.RED:
        if failed > 0:
            return GateVerdict()
        return GateVerdict(
            warnings=(
                "tests already pass in RED; treating the behaviour as already implemented",
            )
        )

    if phase is Phase.GREEN:
        if failed > 0:
            raise GateFailure(phase.value, f"{failed} test(s) still failing", retryable=True)
        if _build_failed(result):
            raise GateFailure(phase.value, f"build failed (exit {result.build_exit_code})", retryable=True)
        return GateVerdict()

    if phase is Phase.REFACTOR:
        if failed > 0 or _build_failed(result):
            raise GateFailure(phase.value, REFACTOR_REGRESSION_REASON, retryable=False)
        return GateVerdict()

    failing = [c.category for c in result.categories if not c.skipped and c.counts.failed > 0]
    if failing:
        raise GateFailure(
            phase.value, f"failing categories: {', '.join(failing)}", retryable=False
        )
    if _build_failed(result):
        raise GateFailure(phase.value, f"build failed (exit {result.build_exit_code})", retryable=False)

    warnings: list[str] = []
    skipped = [c.category for c in result.categories if c.skipped]
    if skipped:
        warnings.append(f"integration partial: no command for {', '.join(skipped)}")
    coverage_warning = False
    if result.coverage_percent is not None and result.coverage_percent < coverage_threshold:
        coverage_warning = True
        warnings.append(
            f"coverage {result.coverage_percent:.1f}% is below threshold {coverage_threshold:.1f}%"
        )
    return GateVerdict(
        warnings=tuple(warnings),
        coverage_warning=coverage_warning,
        integration_partial=bool(skipped),
    )


@dataclass
class _AttemptOutcome:
    result: PhaseResult
    decision: PhaseDecision


@dataclass
class PhaseGateEngine:
    """Sequences phases, evaluates gates, and records one checkpoint per attempt.

    The engine owns its :class:`PhaseResult` objects; the checkpoint store
    only receives derived summaries.
    """

    config: PipelineConfig
    store: CheckpointStore
    run_id: str
    runner: CommandRunner = field(default_factory=CommandRunner)
    artifacts: RunArtifacts | None = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    sleep: Callable[[float], None] = time.sleep
    state: EngineState = EngineState.RED

    def __post_init__(self) -> None:
        self.results: list[PhaseResult] = []
        self.last_checkpoint: Checkpoint | None = None
        self.abort_reason = ""
        self.coverage_warning = False
        self.integration_partial = False
        self.cancelled = False
        self.toolchain: Toolchain | None = self.config.resolve_toolchain()
        self.retry_policy = RetryPolicy(
            max_retries=self.config.max_retries,
            backoff_seconds=self.config.retry_backoff_seconds,
            multiplier=self.config.retry_backoff_multiplier,
        )

    @property
    def terminal(self) -> bool:
        return self.state.terminal

    # ------------------------------------------------------------------
    # Driving
    # ------------------------------------------------------------------

    def step(self) -> EngineState:
        """Run the current phase to a decision, retrying as its policy allows."""
        phase = self.state.phase
        if phase is None:
            return self.state

        if phase in self.config.skip_phases:
            result = self._skipped_result(phase)
            self._commit(
                result,
                PhaseDecision(
                    status=CheckpointStatus.SKIPPED,
                    next_state=next_state_after(phase),
                    reason="phase skipped by configuration",
                ),
            )
            return self.state

        logger.info("Phase %s started", phase.value.upper())
        run_with_retry(
            lambda attempt: self._run_attempt(phase, attempt),
            policy=self.retry_policy,
            should_retry=lambda outcome: outcome.decision.retry and not self._cancel_requested(),
            sleep=self.sleep,
        )
        return self.state

    def run(self) -> EngineState:
        """Step until DONE or ABORTED."""
        while not self.terminal:
            self.step()
        return self.state

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------

    def _run_attempt(self, phase: Phase, attempt: int) -> _AttemptOutcome:
        result = self._execute_phase(phase, attempt)
        decision = self._decide(phase, result, attempt)
        self._commit(result, decision)
        return _AttemptOutcome(result=result, decision=decision)

    def _decide(self, phase: Phase, result: PhaseResult, attempt: int) -> PhaseDecision:
        attempts_left = attempt < self.retry_policy.max_attempts

        if result.cancelled or self._cancel_requested():
            self.cancelled = True
            return PhaseDecision(
                status=CheckpointStatus.FAILED,
                next_state=EngineState.ABORTED,
                reason=CANCELLED_REASON,
            )

        errors = result.execution_errors
        if errors:
            reason = "execution error: " + "; ".join(errors)
            if attempts_left:
                logger.warning("Phase %s attempt %s: %s; retrying", phase.value, attempt, reason)
            return PhaseDecision(
                status=CheckpointStatus.FAILED,
                next_state=self.state if attempts_left else EngineState.ABORTED,
                reason=reason,
                retry=attempts_left,
            )

        try:
            verdict = evaluate_gate(
                phase, result, coverage_threshold=self.config.coverage_threshold
            )
        except GateFailure as failure:
            retry = failure.retryable and attempts_left
            reason = failure.reason
            if failure.retryable and not attempts_left:
                reason = f"{reason} after {attempt} attempt(s)"
            if retry:
                logger.warning("Phase %s attempt %s gate failed: %s; retrying", phase.value, attempt, reason)
            return PhaseDecision(
                status=CheckpointStatus.FAILED,
                next_state=self.state if retry else EngineState.ABORTED,
                reason=reason,
                retry=retry,
            )

        for warning in verdict.warnings:
            logger.warning("Phase %s: %s", phase.value, warning)
        return PhaseDecision(
            status=CheckpointStatus.COMPLETED,
            next_state=next_state_after(phase),
            warnings=verdict.warnings,
            coverage_warning=verdict.coverage_warning,
            integration_partial=verdict.integration_partial,
        )

    def _commit(self, result: PhaseResult, decision: PhaseDecision) -> None:
        """Persist the attempt's checkpoint, then keep its result and transition."""
        checkpoint = Checkpoint.from_result(
            result,
            run_id=self.run_id,
            status=decision.status,
            pipeline_state=decision.next_state,
            reason=decision.reason,
            coverage_warning=decision.coverage_warning,
            integration_partial=decision.integration_partial,
            warnings=[*result.warnings, *decision.warnings],
        )
        self.last_checkpoint = self.store.record(checkpoint)
        self.results.append(result)

        self.state = decision.next_state
        if decision.next_state is EngineState.ABORTED:
            self.abort_reason = decision.reason
            logger.error("Phase %s aborted: %s", result.phase.value.upper(), decision.reason)
        elif result.phase is Phase.INTEGRATE and decision.status is CheckpointStatus.COMPLETED:
            self.coverage_warning = decision.coverage_warning
            self.integration_partial = decision.integration_partial
        counts = result.test_counts
        logger.info(
            "Phase %s attempt %s %s (passed=%s failed=%s skipped=%s) -> %s",
            result.phase.value.upper(),
            result.attempt,
            decision.status.value,
            counts.passed,
            counts.failed,
            counts.skipped,
            decision.next_state.value,
        )
        if result.timed_out:
            timed = ", ".join(c.category for c in result.categories if c.timed_out)
            logger.warning(
                "Phase %s attempt %s: timeout hit by %s", result.phase.value.upper(), result.attempt, timed
            )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _cancel_requested(self) -> bool:
        return self.cancel_event.is_set()

    def _skipped_result(self, phase: Phase) -> PhaseResult:
        now = utc_now()
        return PhaseResult(phase=phase, started_at=now, finished_at=now)

    def _execute_phase(self, phase: Phase, attempt: int) -> PhaseResult:
        started_at = utc_now()
        names = self.config.categories_for(phase)
        runnable = [(name, self.config.categories[name]) for name in names if name in self.config.categories]

        by_name: dict[str, CategoryResult] = {}
        if runnable:
            with ThreadPoolExecutor(max_workers=len(runnable)) as pool:
                futures = {
                    name: pool.submit(self._run_category, phase, attempt, name, spec)
                    for name, spec in runnable
                }
                by_name = {name: future.result() for name, future in futures.items()}
        categories = [
            by_name.get(name) or CategoryResult(category=name, exit_code=0, skipped=True)
            for name in names
        ]

        build: CategoryResult | None = None
        tests_ok = all(c.counts.failed == 0 for c in categories)
        if (
            self.config.build_command is not None
            and phase in self.config.build_phases
            and tests_ok
            and not self._cancel_requested()
        ):
            build = self._run_category(
                phase, attempt, BUILD_CATEGORY, self.config.build_command, is_build=True
            )

        counts = TestCounts()
        for category in categories:
            counts = counts + category.counts
        coverage = next(
            (c.coverage_percent for c in categories if c.coverage_percent is not None), None
        )
        ran = [c for c in categories if not c.skipped]
        exit_code = next((c.exit_code for c in ran if c.exit_code != 0), 0)
        if exit_code == 0 and build is not None:
            exit_code = build.exit_code
        commands = [c.command for c in ran]
        if build is not None:
            commands.append(build.command)
        warnings = [f"{c.category}: {w}" for c in [*ran, *([build] if build else [])] for w in c.warnings]

        return PhaseResult(
            phase=phase,
            attempt=attempt,
            command="; ".join(commands),
            exit_code=exit_code,
            test_counts=counts,
            coverage_percent=coverage,
            started_at=started_at,
            finished_at=max(utc_now(), started_at),
            categories=categories,
            build=build,
            parse_incomplete=any(c.parse_incomplete for c in ran),
            warnings=warnings,
        )

    def _run_category(
        self,
        phase: Phase,
        attempt: int,
        name: str,
        spec: CommandSpec,
        *,
        is_build: bool = False,
    ) -> CategoryResult:
        """Run one category's command and turn its output into counts."""
        if self._cancel_requested():
            return CategoryResult(category=name, command=spec.command, cancelled=True)

        timeout = self.config.timeout_for(spec)
        try:
            outcome = self.runner.execute(
                spec.command,
                self.config.working_dir_for(spec),
                timeout,
                cancel_event=self.cancel_event,
            )
        except ExecutionError as exc:
            logger.error("%s/%s could not run: %s", phase.value, name, exc)
            return CategoryResult(
                category=name,
                command=spec.command,
                exit_code=NO_EXIT_CODE,
                counts=TestCounts() if is_build else TestCounts.of(failed=1),
                error=str(exc),
            )

        artifact = ""
        if self.artifacts is not None:
            artifact = self.artifacts.write_output(phase.value, attempt, name, outcome)

        warnings: list[str] = []
        if outcome.timed_out:
            warnings.append(f"timed out after {timeout:g}s")
        if is_build:
            return CategoryResult(
                category=name,
                command=spec.command,
                exit_code=outcome.exit_code,
                duration_seconds=outcome.duration_seconds,
                timed_out=outcome.timed_out,
                cancelled=outcome.cancelled,
                artifact=artifact,
                warnings=warnings,
            )

        rules = self.config.rules_for(spec, self.toolchain)
        text = outcome.stdout if rules.format == "json" else outcome.output
        partial = parse(text, rules)
        counts = partial.counts
        if outcome.exit_code != 0 and counts.failed == 0:
            # A failing command counts as at least one failure even without a parsed summary.
            counts = TestCounts.of(passed=counts.passed, failed=1, skipped=counts.skipped)

        return CategoryResult(
            category=name,
            command=spec.command,
            exit_code=outcome.exit_code,
            counts=counts,
            coverage_percent=partial.coverage_percent,
            duration_seconds=outcome.duration_seconds,
            timed_out=outcome.timed_out,
            cancelled=outcome.cancelled,
            parse_incomplete=partial.parse_incomplete,
            artifact=artifact,
            warnings=[*warnings, *partial.warnings],
        )
