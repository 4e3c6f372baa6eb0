#!/usr/bin/env python3
"""Example: run the phase-gated pipeline on a project and print the result.

Usage:
    python examples/run_pipeline.py /path/to/project [config.yaml]
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

# Allow running from the repo root without installing the package
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from phasegate.config import build_config, load_config
from phasegate.controller import run_pipeline


def main() -> None:
    if len(sys.argv) < 2:
        print("Usage: run_pipeline.py <project_path> [config.yaml]")
        sys.exit(2)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s  %(levelname)-8s  %(message)s")
    project = Path(sys.argv[1]).resolve()
    if len(sys.argv) > 2:
        config = load_config(sys.argv[2], working_dir=project)
    else:
        config = build_config({"working_dir": project})

    print(f"Running pipeline in {project} ...")
    run = run_pipeline(config)

    print(f"\nOutcome:       {run.outcome.value}")
    print(f"State:         {run.state.value}")
    print(f"Attempts:      {len(run.results)}")
    print(f"Abort reason:  {run.abort_reason or '-'}")
    print(f"Coverage warn: {run.coverage_warning}")
    print(f"Artifacts:     {run.artifacts_dir}")
    if run.last_checkpoint is not None:
        print(f"\nLast checkpoint:\n{run.last_checkpoint.model_dump_json(indent=2)}")
    sys.exit(0 if run.outcome.value == "complete" else 1)


if __name__ == "__main__":
    main()
