"""phasegate - phase-gated build/verify pipeline for external test toolchains."""

from importlib.metadata import PackageNotFoundError, version

from phasegate.config import PipelineConfig, load_config
from phasegate.controller import PipelineController, run_pipeline
from phasegate.schemas import Checkpoint, PhaseResult, PipelineRun

__all__ = [
    "Checkpoint",
    "PhaseResult",
    "PipelineConfig",
    "PipelineController",
    "PipelineRun",
    "load_config",
    "run_pipeline",
]

try:
    __version__ = version("phasegate")
except PackageNotFoundError:
    __version__ = "0.0.0"
