"""CLI entry point: ``python -m phasegate`` or ``phasegate``.

Exit codes: 0 DONE (or success), 1 ABORTED (or doctor not ready),
2 configuration/setup error, 3 persistence error, 4 another run holds the lock.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from phasegate.checkpoints import CheckpointStore, parse_timestamp
from phasegate.config import PipelineConfig, apply_env_overrides, build_config, load_config
from phasegate.controller import run_pipeline
from phasegate.errors import ConcurrentRunError, ConfigError, PersistenceError
from phasegate.locking import force_break_lock
from phasegate.preflight import PreflightReport, build_preflight_report
from phasegate.schemas import Checkpoint, PipelineRun, RunOutcome

logger = logging.getLogger(__name__)

EXIT_DONE = 0
EXIT_ABORTED = 1
EXIT_CONFIG = 2
EXIT_PERSISTENCE = 3
EXIT_CONCURRENT = 4

DEFAULT_CONFIG_NAMES = ("phasegate.yaml", "phasegate.yml", ".phasegate.yaml")


def _load_dotenv() -> None:
    """Load .env from cwd or its parent so overrides are found regardless of cwd."""
    for dir_ in (Path.cwd(), Path.cwd().parent):
        env_file = dir_ / ".env"
        if env_file.is_file():
            load_dotenv(env_file)
            return
    load_dotenv()


def _add_config_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        type=str,
        default="",
        help="Path to a YAML/JSON config file (default: phasegate.yaml in the working dir).",
    )
    parser.add_argument(
        "--working-dir",
        type=str,
        default="",
        help="Project directory the test commands run in (default: cwd).",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the command-line parser for all sub-commands."""
    p = argparse.ArgumentParser(
        prog="phasegate",
        description="phasegate - drive a test toolchain through RED/GREEN/REFACTOR/INTEGRATE gates.",
    )
    sub = p.add_subparsers(dest="command")

    run_p = sub.add_parser("run", help="Run the phase-gated pipeline.")
    _add_config_arguments(run_p)
    run_p.add_argument(
        "--resume",
        action="store_true",
        help="Continue from the phase recorded in the current checkpoint.",
    )
    run_p.add_argument("--json", action="store_true", help="Print the run summary as JSON.")

    status_p = sub.add_parser("status", help="Show the current checkpoint.")
    _add_config_arguments(status_p)
    status_p.add_argument("--json", action="store_true", help="Print the checkpoint as JSON.")

    history_p = sub.add_parser("history", help="List checkpoint history.")
    _add_config_arguments(history_p)
    history_p.add_argument(
        "--since",
        type=str,
        default="",
        help="Only entries strictly after this ISO-8601 timestamp.",
    )
    history_p.add_argument("--json", action="store_true", help="Print entries as JSON lines.")

    doctor_p = sub.add_parser(
        "doctor",
        help="Run setup diagnostics (working dir, commands, state dir, lock).",
    )
    _add_config_arguments(doctor_p)
    doctor_p.add_argument("--json", action="store_true", help="Print diagnostics as JSON.")

    unlock_p = sub.add_parser("unlock", help="Force-remove the run lock.")
    _add_config_arguments(unlock_p)
    unlock_p.add_argument(
        "--reason",
        type=str,
        default="manual unlock",
        help="Reason recorded in the log.",
    )
    return p


def _load_cli_config(args: argparse.Namespace) -> PipelineConfig:
    """Resolve the config file, CLI overrides, and ``PHASEGATE_*`` environment values."""
    working_dir = Path(args.working_dir).resolve() if args.working_dir else None
    config_path = Path(args.config) if args.config else None
    if config_path is None:
        base = working_dir or Path.cwd()
        config_path = next(
            (base / name for name in DEFAULT_CONFIG_NAMES if (base / name).is_file()), None
        )
    if config_path is not None:
        config = load_config(config_path, working_dir=working_dir)
    else:
        config = build_config({"working_dir": working_dir or Path.cwd()})
    return apply_env_overrides(config, os.environ)


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and dispatch to the sub-command."""
    _load_dotenv()
    parser = _build_parser()
    args = parser.parse_args(argv)
    level = logging.DEBUG if getattr(args, "verbose", False) else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )

    handlers = {
        "run": _run,
        "status": _status,
        "history": _history,
        "doctor": _run_doctor,
        "unlock": _unlock,
    }
    handler = handlers.get(args.command)
    if handler is None:
        parser.print_help()
        print(
            "\nTip: run 'phasegate doctor' to validate setup, then 'phasegate run'.",
            file=sys.stderr,
        )
        return EXIT_CONFIG

    try:
        return handler(args)
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG
    except ConcurrentRunError as exc:
        print(f"Another run is in progress: {exc}", file=sys.stderr)
        return EXIT_CONCURRENT
    except PersistenceError as exc:
        print(f"Checkpoint persistence failed: {exc}", file=sys.stderr)
        return EXIT_PERSISTENCE


# ---------------------------------------------------------------------------
# Sub-commands
# ---------------------------------------------------------------------------


def _print_run_summary(run: PipelineRun) -> None:
    print(f"\n  phasegate run {run.id}")
    print("  " + "=" * 58)
    for result in run.results:
        counts = result.test_counts
        coverage = "-" if result.coverage_percent is None else f"{result.coverage_percent:.1f}%"
        print(
            f"  {result.phase.value.upper():<10} #{result.attempt}  "
            f"passed={counts.passed} failed={counts.failed} skipped={counts.skipped} "
            f"coverage={coverage}"
        )
    print("  " + "-" * 58)
    print(f"  Outcome: {run.outcome.value} ({run.state.value})")
    if run.abort_reason:
        print(f"  Reason:  {run.abort_reason}")
    if run.coverage_warning:
        print("  Warning: coverage below threshold")
    if run.integration_partial:
        print("  Warning: some integration categories were skipped")
    print(f"  Output:  {run.artifacts_dir}")
    print()


def _run(args: argparse.Namespace) -> int:
    config = _load_cli_config(args)
    run = run_pipeline(config, resume=args.resume)
    if args.json:
        print(json.dumps(run.to_summary(), indent=2, default=str))
    else:
        _print_run_summary(run)
    return EXIT_DONE if run.outcome is RunOutcome.COMPLETE else EXIT_ABORTED


def _format_checkpoint(checkpoint: Checkpoint) -> str:
    tests = checkpoint.tests
    coverage = "-" if checkpoint.coverage_percent is None else f"{checkpoint.coverage_percent:.1f}%"
    flags = [
        name
        for name, on in (
            ("coverage_warning", checkpoint.coverage_warning),
            ("integration_partial", checkpoint.integration_partial),
            ("parse_incomplete", checkpoint.parse_incomplete),
        )
        if on
    ]
    line = (
        f"{checkpoint.timestamp.isoformat()}  {checkpoint.phase.value:<9} "
        f"#{checkpoint.attempt} {checkpoint.status.value:<9} -> {checkpoint.pipeline_state.value:<9} "
        f"tests={tests.passing}/{tests.total} failing={tests.failing} coverage={coverage} "
        f"{checkpoint.functional_state.value}"
    )
    if flags:
        line += f" [{', '.join(flags)}]"
    if checkpoint.reason:
        line += f"  ({checkpoint.reason})"
    return line


def _status(args: argparse.Namespace) -> int:
    config = _load_cli_config(args)
    current = CheckpointStore(config.checkpoint_dir).read_current()
    if current is None:
        print(f"No checkpoint in {config.checkpoint_dir}", file=sys.stderr)
        return EXIT_DONE
    if args.json:
        print(current.model_dump_json(indent=2))
    else:
        print(_format_checkpoint(current))
    return EXIT_DONE


def _history(args: argparse.Namespace) -> int:
    config = _load_cli_config(args)
    since = None
    if args.since:
        try:
            since = parse_timestamp(args.since)
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc
    entries = CheckpointStore(config.checkpoint_dir).read_history(since)
    for entry in entries:
        print(entry.model_dump_json() if args.json else _format_checkpoint(entry))
    return EXIT_DONE


def _print_doctor_report(report: PreflightReport) -> None:
    """Print a human-readable diagnostics report."""

    print("\n  phasegate - Setup Diagnostics")
    print("  " + "=" * 58)
    print(f"  Working dir: {report.working_dir}")
    print(f"  State dir:   {report.state_dir}")
    print(f"  Toolchain:   {report.toolchain or '(none detected)'}")

    for check in report.checks:
        status = {"pass": "PASS", "warn": "WARN", "fail": "FAIL"}.get(check.status, "INFO")
        print(f"\n  [{status}] {check.label}")
        print(f"    {check.detail}")
        if check.hint and check.status != "pass":
            print(f"    Fix: {check.hint}")

    summary = report.summary
    print("\n  " + "-" * 58)
    print(f"  Summary: {summary['pass']} pass, {summary['warn']} warn, {summary['fail']} fail")
    print(f"  Ready:   {'yes' if report.ready else 'no'}")
    print()


def _run_doctor(args: argparse.Namespace) -> int:
    """Run setup diagnostics and print the report."""
    report = build_preflight_report(_load_cli_config(args))
    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        _print_doctor_report(report)
    return EXIT_DONE if report.ready else EXIT_ABORTED


def _unlock(args: argparse.Namespace) -> int:
    config = _load_cli_config(args)
    print(force_break_lock(config.lock_path, reason=args.reason))
    return EXIT_DONE


if __name__ == "__main__":
    raise SystemExit(main())
