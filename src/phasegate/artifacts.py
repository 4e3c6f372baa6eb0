"""Raw command output storage, one directory per run id.

Checkpoints only hold derived summaries; stdout/stderr of every command a
run executes land here instead.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

from phasegate.file_io import atomic_write_text
from phasegate.schemas import CommandResult

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")


def _safe_name(value: str) -> str:
    return _UNSAFE_NAME_CHARS.sub("_", value).strip("_") or "unnamed"


class RunArtifacts:
    """Writes per-command output logs and the final run summary for one run."""

    def __init__(self, runs_dir: str | Path, run_id: str) -> None:
        self.run_dir = Path(runs_dir) / _safe_name(run_id)

    def output_path(self, phase: str, attempt: int, category: str) -> Path:
        return self.run_dir / f"{_safe_name(phase)}-{attempt}-{_safe_name(category)}.log"

    def write_output(self, phase: str, attempt: int, category: str, result: CommandResult) -> str:
        """Store *result*'s output and return the path, or ``""`` if writing failed."""
        path = self.output_path(phase, attempt, category)
        body = (
            f"$ {result.command}\n"
            f"# exit_code={result.exit_code} duration={result.duration_seconds:.2f}s "
            f"timed_out={result.timed_out} cancelled={result.cancelled}\n"
            "\n--- stdout ---\n"
            f"{result.stdout}"
            "\n--- stderr ---\n"
            f"{result.stderr}\n"
        )
        try:
            atomic_write_text(path, body)
        except OSError as exc:
            logger.warning("Could not write command output to %s: %s", path, exc)
            return ""
        return str(path)

    def write_summary(self, summary: dict[str, Any]) -> None:
        path = self.run_dir / "run.json"
        try:
            atomic_write_text(path, json.dumps(summary, indent=2, default=str) + "\n")
        except OSError as exc:
            logger.warning("Could not write run summary to %s: %s", path, exc)
