"""Pipeline controller: one run per invocation, serialized by the run lock."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable

from phasegate.artifacts import RunArtifacts
from phasegate.checkpoints import CheckpointStore
from phasegate.command_runner import CommandRunner
from phasegate.config import PipelineConfig
from phasegate.gates import CANCELLED_REASON, PhaseGateEngine
from phasegate.locking import RunLock
from phasegate.schemas import EngineState, PipelineRun, RunOutcome, utc_now

logger = logging.getLogger(__name__)


def new_run_id() -> str:
    return f"run_{uuid.uuid4().hex[:12]}"


class PipelineController:
    """Drives the phase gate engine from RED (or a resumed phase) to a terminal state.

    Parameters
    ----------
    config:
        The pipeline configuration. Commands must already be resolved; see
        :meth:`PipelineConfig.with_detected_commands`.
    runner:
        Command runner shared by every category; injectable for tests.
    sleep:
        Used for retry backoff; injectable for tests.
    """

    def __init__(
        self,
        config: PipelineConfig,
        *,
        runner: CommandRunner | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.runner = runner or CommandRunner()
        self.sleep = sleep
        self.store = CheckpointStore(config.checkpoint_dir, history_limit=config.history_limit)
        self._stop_event = threading.Event()
        self.engine: PhaseGateEngine | None = None

    def stop(self) -> None:
        """Request cancellation; the running command's process group is terminated."""
        self._stop_event.set()
        logger.warning("Stop requested")

    def resume_state(self) -> EngineState:
        """Return the state recorded by the current checkpoint, if a run can continue from it."""
        current = self.store.read_current()
        if current is None or current.pipeline_state.terminal:
            return EngineState.RED
        return current.pipeline_state

    def run(self, *, run_id: str | None = None, resume: bool = False) -> PipelineRun:
        """Run the pipeline to DONE or ABORTED and return the run summary.

        Raises :class:`~phasegate.errors.ConcurrentRunError` when another run
        holds the lock and :class:`~phasegate.errors.PersistenceError` when a
        checkpoint cannot be written. In both cases every checkpoint the run
        reported was already durable.
        """
        run_id = run_id or new_run_id()
        self._stop_event.clear()
        lock = RunLock(
            self.config.lock_path, run_id=run_id, stale_seconds=self.config.stale_lock_seconds
        )
        with lock:
            start_state = self.resume_state() if resume else EngineState.RED
            if resume:
                logger.info("Resuming at %s", start_state.value.upper())
            artifacts = RunArtifacts(self.config.runs_dir, run_id)
            engine = PhaseGateEngine(
                self.config,
                self.store,
                run_id,
                runner=self.runner,
                artifacts=artifacts,
                cancel_event=self._stop_event,
                sleep=self.sleep,
                state=start_state,
            )
            self.engine = engine
            pipeline_run = PipelineRun(
                id=run_id, state=start_state, artifacts_dir=str(artifacts.run_dir)
            )
            logger.info("Pipeline %s started in %s", run_id, self.config.working_dir)

            while not engine.terminal and not self._stop_event.is_set():
                engine.step()
                lock.heartbeat()

            pipeline_run = self._finalize(pipeline_run, engine)
            artifacts.write_summary(pipeline_run.to_summary())
        return pipeline_run

    def _finalize(self, pipeline_run: PipelineRun, engine: PhaseGateEngine) -> PipelineRun:
        cancelled = engine.cancelled or (self._stop_event.is_set() and not engine.terminal)
        if cancelled:
            outcome = RunOutcome.INCOMPLETE
            state = EngineState.ABORTED
            abort_reason = engine.abort_reason or CANCELLED_REASON
        elif engine.state is EngineState.DONE:
            outcome, state, abort_reason = RunOutcome.COMPLETE, EngineState.DONE, ""
        else:
            outcome, state, abort_reason = RunOutcome.ABORTED, EngineState.ABORTED, engine.abort_reason

        finished = pipeline_run.model_copy(
            update={
                "results": list(engine.results),
                "outcome": outcome,
                "state": state,
                "abort_reason": abort_reason,
                "coverage_warning": engine.coverage_warning,
                "integration_partial": engine.integration_partial,
                "finished_at": utc_now(),
                "last_checkpoint": engine.last_checkpoint,
            }
        )
        if outcome is RunOutcome.COMPLETE:
            flags = [
                name
                for name, on in (
                    ("coverage_warning", finished.coverage_warning),
                    ("integration_partial", finished.integration_partial),
                )
                if on
            ]
            logger.info(
                "Pipeline %s finished: DONE%s", finished.id, f" ({', '.join(flags)})" if flags else ""
            )
        else:
            logger.error("Pipeline %s finished: %s (%s)", finished.id, outcome.value, abort_reason)
        return finished


def run_pipeline(
    config: PipelineConfig,
    *,
    runner: CommandRunner | None = None,
    sleep: Callable[[float], None] = time.sleep,
    resume: bool = False,
) -> PipelineRun:
    """Resolve default commands, then run one pipeline under the run lock."""
    resolved = config.with_detected_commands()
    return PipelineController(resolved, runner=runner, sleep=sleep).run(resume=resume)
