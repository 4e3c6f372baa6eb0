"""Extract test counts and coverage from command output.

Two strategies are provided:

- :class:`RegexResultParser` scans free-form console text with one regular
  expression per figure (the last match wins, so the final summary line of
  a run is what counts).
- :class:`JsonReportParser` reads a JSON report, or the last JSON line of a
  structured log, and looks figures up by dotted field path.

Missing figures are not errors: counts default to ``0`` and coverage to
``None`` ("no coverage signal"). Captures that are present but not numeric
produce a :class:`~phasegate.errors.ParseWarning` and mark the result
``parse_incomplete``.
"""

from __future__ import annotations

import json
import logging
import math
import re
from typing import Any, Literal, Protocol

from pydantic import BaseModel, model_validator

from phasegate.errors import ParseWarning
from phasegate.schemas import PartialPhaseResult, TestCounts

logger = logging.getLogger(__name__)

_COUNT_KEYS = ("passed", "failed", "skipped")
_RULE_KEYS = ("total", "passed", "failed", "skipped", "coverage")


class ExtractionRule(BaseModel):
    """A regex with a capture group, or a dotted field name in a JSON record."""

    pattern: str | None = None
    field: str | None = None

    @model_validator(mode="after")
    def _check_one_source(self) -> ExtractionRule:
        if bool(self.pattern) == bool(self.field):
            raise ValueError("extraction rule needs exactly one of 'pattern' or 'field'")
        if self.pattern:
            try:
                compiled = re.compile(self.pattern, re.MULTILINE)
            except re.error as exc:
                raise ValueError(f"invalid pattern {self.pattern!r}: {exc}") from exc
            if compiled.groups < 1:
                raise ValueError(f"pattern {self.pattern!r} must contain a capture group")
        return self

    def compiled(self) -> re.Pattern[str]:
        return re.compile(self.pattern or "", re.MULTILINE)


class ParseRules(BaseModel):
    """Extraction rules for one toolchain's output.

    Plain strings are accepted for each rule and read as a regex pattern
    when ``format`` is ``"text"`` or as a field path when it is ``"json"``.
    """

    format: Literal["text", "json"] = "text"
    total: ExtractionRule | None = None
    passed: ExtractionRule | None = None
    failed: ExtractionRule | None = None
    skipped: ExtractionRule | None = None
    coverage: ExtractionRule | None = None

    @model_validator(mode="before")
    @classmethod
    def _expand_shorthand(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        expanded = dict(data)
        for key in _RULE_KEYS:
            # Accept ``totalPattern`` / ``total_pattern`` spellings as well.
            for alias in (f"{key}Pattern", f"{key}_pattern"):
                if alias in expanded and key not in expanded:
                    expanded[key] = expanded.pop(alias)
        source = "field" if expanded.get("format") == "json" else "pattern"
        for key in _RULE_KEYS:
            value = expanded.get(key)
            if isinstance(value, str):
                expanded[key] = {source: value}
        return expanded

    def rules(self) -> dict[str, ExtractionRule]:
        return {key: rule for key in _RULE_KEYS if (rule := getattr(self, key)) is not None}


class ResultParser(Protocol):
    """Strategy interface: turn raw output into a partial phase result."""

    def parse(self, raw_output: str, rules: ParseRules) -> PartialPhaseResult: ...


class _Collector:
    """Accumulates raw captures and warnings, then builds the result."""

    def __init__(self) -> None:
        self.values: dict[str, Any] = {}
        self.warnings: list[str] = []
        self.incomplete = False

    def warn(self, message: str, *, incomplete: bool = True) -> None:
        warning = ParseWarning(message)
        logger.warning("Parse warning: %s", warning)
        self.warnings.append(str(warning))
        if incomplete:
            self.incomplete = True

    def _to_int(self, key: str, raw: Any) -> int:
        if isinstance(raw, bool):
            self.warn(f"{key}: expected a number, got {raw!r}")
            return 0
        if isinstance(raw, int):
            value = raw
        elif isinstance(raw, float) and math.isfinite(raw) and raw.is_integer():
            value = int(raw)
        else:
            cleaned = str(raw).strip().replace(",", "")
            try:
                value = int(cleaned)
            except ValueError:
                self.warn(f"{key}: malformed numeric capture {raw!r}")
                return 0
        if value < 0:
            self.warn(f"{key}: negative count {value}")
            return 0
        return value

    def _to_percent(self, raw: Any) -> float | None:
        try:
            value = float(str(raw).strip().rstrip("%"))
        except ValueError:
            self.warn(f"coverage: malformed numeric capture {raw!r}")
            return None
        if not math.isfinite(value) or value < 0 or value > 100:
            self.warn(f"coverage: {value} is outside 0..100")
            return None
        return value

    def build(self) -> PartialPhaseResult:
        counts = {
            key: self._to_int(key, self.values[key]) if self.values.get(key) is not None else 0
            for key in _COUNT_KEYS
        }
        result_counts = TestCounts.of(**counts)
        if self.values.get("total") is not None:
            reported = self._to_int("total", self.values["total"])
            if reported != result_counts.total:
                self.warn(
                    f"reported total {reported} disagrees with "
                    f"passed+failed+skipped={result_counts.total}",
                    incomplete=False,
                )
        coverage = None
        if self.values.get("coverage") is not None:
            coverage = self._to_percent(self.values["coverage"])
        return PartialPhaseResult(
            counts=result_counts,
            coverage_percent=coverage,
            parse_incomplete=self.incomplete,
            warnings=list(self.warnings),
        )


class RegexResultParser:
    """Parse free-form console output with per-figure regular expressions."""

    def parse(self, raw_output: str, rules: ParseRules) -> PartialPhaseResult:
        collector = _Collector()
        text = raw_output or ""
        for key, rule in rules.rules().items():
            if not rule.pattern:
                collector.warn(f"{key}: field rule {rule.field!r} ignored for text output")
                continue
            matches = list(rule.compiled().finditer(text))
            if not matches:
                continue
            last = matches[-1]
            captured = next((group for group in last.groups() if group is not None), None)
            collector.values[key] = captured
        return collector.build()


def _last_json_record(text: str) -> dict[str, Any] | None:
    stripped = (text or "").strip()
    if not stripped:
        return None
    try:
        document = json.loads(stripped)
    except json.JSONDecodeError:
        document = None
    if isinstance(document, dict):
        return document
    for line in reversed(stripped.splitlines()):
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(record, dict):
            return record
    return None


def _lookup(record: dict[str, Any], path: str) -> Any:
    current: Any = record
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return None
    return current


class JsonReportParser:
    """Parse a JSON test report or the last JSON line of a structured log."""

    def parse(self, raw_output: str, rules: ParseRules) -> PartialPhaseResult:
        collector = _Collector()
        record = _last_json_record(raw_output)
        if record is None:
            if rules.rules():
                collector.warn("no JSON record found in output")
            return collector.build()
        for key, rule in rules.rules().items():
            if not rule.field:
                collector.warn(f"{key}: pattern rule ignored for JSON output")
                continue
            collector.values[key] = _lookup(record, rule.field)
        return collector.build()


_PARSERS: dict[str, ResultParser] = {
    "text": RegexResultParser(),
    "json": JsonReportParser(),
}


def parser_for(rules: ParseRules) -> ResultParser:
    """Return the parser strategy matching ``rules.format``."""
    return _PARSERS[rules.format]


def parse(raw_output: str, rules: ParseRules) -> PartialPhaseResult:
    """Extract counts and coverage from *raw_output* using *rules*."""
    return parser_for(rules).parse(raw_output, rules)
