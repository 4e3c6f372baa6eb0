"""Pipeline configuration: commands per category, thresholds, and budgets.

Configuration is an explicit object threaded through the controller, gate
engine, and runner. The core never reads process-wide state; environment
overrides are applied by the CLI through :func:`apply_env_overrides`.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from phasegate.errors import ConfigError
from phasegate.result_parser import ParseRules
from phasegate.schemas import PHASE_ORDER, Phase
from phasegate.toolchains import Toolchain, detect_toolchain, get_toolchain

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIRNAME = ".phasegate"
DEFAULT_INTEGRATION_CATEGORIES = ["unit", "integration", "e2e"]
DEFAULT_BUILD_PHASES = [Phase.GREEN, Phase.REFACTOR, Phase.INTEGRATE]
PRIMARY_CATEGORY = "unit"


class CommandSpec(BaseModel):
    """An external invocation plus where and how long it may run."""

    command: str
    working_dir: Path | None = None
    timeout: float | None = Field(default=None, gt=0)
    parse_rules: ParseRules | None = None

    @model_validator(mode="before")
    @classmethod
    def _from_string(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"command": data}
        return data

    @field_validator("command")
    @classmethod
    def _command_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("command must not be blank")
        return value.strip()


class PipelineConfig(BaseModel):
    """Full configuration for one pipeline invocation."""

    model_config = ConfigDict(populate_by_name=True)

    working_dir: Path = Field(default_factory=Path.cwd)
    state_dir: Path | None = None
    categories: dict[str, CommandSpec] = Field(
        default_factory=dict, alias="test_command_by_category"
    )
    build_command: CommandSpec | None = None
    coverage_threshold: float = Field(default=80.0, ge=0, le=100)
    max_retries: int = Field(default=1, ge=0)
    timeout_per_phase: float = Field(default=600.0, gt=0)
    retry_backoff_seconds: float = Field(default=0.0, ge=0)
    retry_backoff_multiplier: float = Field(default=2.0, ge=1)
    integration_categories: list[str] = Field(
        default_factory=lambda: list(DEFAULT_INTEGRATION_CATEGORIES)
    )
    phase_categories: dict[Phase, list[str]] = Field(default_factory=dict)
    build_phases: list[Phase] = Field(default_factory=lambda: list(DEFAULT_BUILD_PHASES))
    skip_phases: list[Phase] = Field(default_factory=list)
    toolchain: str | None = None
    parse_rules: ParseRules | None = None
    stale_lock_seconds: float = Field(default=3600.0, gt=0)
    history_limit: int | None = Field(default=None, ge=1)

    @field_validator("categories", mode="before")
    @classmethod
    def _normalize_category_names(cls, value: Any) -> Any:
        if not isinstance(value, Mapping):
            return value
        normalized: dict[str, Any] = {}
        for name, spec in value.items():
            key = str(name).strip().lower()
            if not key:
                raise ValueError("category names must not be blank")
            if spec is None or (isinstance(spec, str) and not spec.strip()):
                # An absent command means the category is skipped.
                continue
            normalized[key] = spec
        return normalized

    @field_validator("integration_categories")
    @classmethod
    def _lower_integration_categories(cls, value: list[str]) -> list[str]:
        return [name.strip().lower() for name in value if name.strip()]

    @model_validator(mode="after")
    def _check_phase_categories(self) -> PipelineConfig:
        for phase, names in self.phase_categories.items():
            unknown = [name for name in names if name.lower() not in self.categories]
            if unknown and phase is not Phase.INTEGRATE:
                raise ValueError(
                    f"phase_categories[{phase.value}] names unconfigured categories: {unknown}"
                )
        if self.toolchain is not None:
            get_toolchain(self.toolchain)
        return self

    # -- derived paths --

    @property
    def resolved_state_dir(self) -> Path:
        return (self.state_dir or self.working_dir / DEFAULT_STATE_DIRNAME).resolve()

    @property
    def checkpoint_dir(self) -> Path:
        return self.resolved_state_dir / "checkpoints"

    @property
    def lock_path(self) -> Path:
        return self.resolved_state_dir / "run.lock"

    @property
    def runs_dir(self) -> Path:
        return self.resolved_state_dir / "runs"

    # -- lookups --

    def resolve_toolchain(self) -> Toolchain | None:
        if self.toolchain:
            return get_toolchain(self.toolchain)
        return detect_toolchain(self.working_dir)

    def rules_for(self, spec: CommandSpec, toolchain: Toolchain | None = None) -> ParseRules:
        """Return the parse rules for *spec*: its own, the config's, or the toolchain's."""
        if spec.parse_rules is not None:
            return spec.parse_rules
        if self.parse_rules is not None:
            return self.parse_rules
        if toolchain is not None:
            return toolchain.rules
        return ParseRules()

    def timeout_for(self, spec: CommandSpec) -> float:
        return spec.timeout if spec.timeout is not None else self.timeout_per_phase

    def working_dir_for(self, spec: CommandSpec) -> Path:
        if spec.working_dir is None:
            return self.working_dir
        if spec.working_dir.is_absolute():
            return spec.working_dir
        return self.working_dir / spec.working_dir

    def categories_for(self, phase: Phase) -> list[str]:
        """Return category names that run in *phase*, in configured order.

        For INTEGRATE this includes required names without a command; the
        engine records those as skipped.
        """
        if phase in self.phase_categories:
            return [name.lower() for name in self.phase_categories[phase]]
        configured = list(self.categories)
        if phase is Phase.RED and PRIMARY_CATEGORY in self.categories:
            return [PRIMARY_CATEGORY]
        if phase is Phase.INTEGRATE:
            missing = [name for name in self.integration_categories if name not in self.categories]
            return configured + missing
        return configured

    def with_detected_commands(self) -> PipelineConfig:
        """Fill in toolchain defaults when no test categories are configured.

        Raises :class:`ConfigError` when nothing is configured and no
        toolchain is recognized in ``working_dir``.
        """
        if self.categories:
            return self
        toolchain = self.resolve_toolchain()
        if toolchain is None:
            raise ConfigError(f"no recognized toolchain found in {self.working_dir}")
        logger.info("Using %s toolchain defaults: %s", toolchain.name, toolchain.test_command)
        update: dict[str, Any] = {
            "categories": {PRIMARY_CATEGORY: CommandSpec(command=toolchain.test_command)},
            "toolchain": toolchain.name,
        }
        if self.build_command is None and toolchain.build_command:
            update["build_command"] = CommandSpec(command=toolchain.build_command)
        return self.model_copy(update=update)


def _resolve_relative(data: dict[str, Any], base: Path) -> dict[str, Any]:
    resolved = dict(data)
    for key in ("working_dir", "state_dir"):
        raw = resolved.get(key)
        if raw and not Path(str(raw)).is_absolute():
            resolved[key] = str(base / str(raw))
    if "working_dir" not in resolved:
        resolved["working_dir"] = str(base)
    return resolved


def build_config(data: Mapping[str, Any] | None = None, **overrides: Any) -> PipelineConfig:
    """Validate a raw mapping into a :class:`PipelineConfig`."""
    payload = dict(data or {})
    payload.update({k: v for k, v in overrides.items() if v is not None})
    try:
        return PipelineConfig.model_validate(payload)
    except ValidationError as exc:
        raise ConfigError(f"invalid pipeline configuration: {exc}") from exc


def load_config(path: str | Path, **overrides: Any) -> PipelineConfig:
    """Load a YAML (or JSON) config file; relative paths resolve next to it."""
    import yaml

    config_path = Path(path).resolve()
    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except OSError as exc:
        raise ConfigError(f"cannot read config file {config_path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"config file {config_path} is not valid YAML: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"config file {config_path} must contain a mapping")
    logger.debug("Loaded config from %s", config_path)
    return build_config(_resolve_relative(raw, config_path.parent), **overrides)


_ENV_OVERRIDES: dict[str, str] = {
    "PHASEGATE_STATE_DIR": "state_dir",
    "PHASEGATE_COVERAGE_THRESHOLD": "coverage_threshold",
    "PHASEGATE_MAX_RETRIES": "max_retries",
    "PHASEGATE_TIMEOUT": "timeout_per_phase",
}


def apply_env_overrides(config: PipelineConfig, environ: Mapping[str, str]) -> PipelineConfig:
    """Return a copy of *config* with ``PHASEGATE_*`` values from *environ* applied."""
    update: dict[str, Any] = {}
    for env_name, field_name in _ENV_OVERRIDES.items():
        raw = str(environ.get(env_name, "") or "").strip()
        if raw:
            update[field_name] = raw
    if not update:
        return config
    payload = config.model_dump(by_alias=False, exclude_none=True)
    payload.update(update)
    return build_config(payload)
