"""Known test toolchains: marker files, default commands, and parse rules."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from phasegate.errors import ConfigError
from phasegate.result_parser import ParseRules

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Toolchain:
    """Static description of one test toolchain."""

    name: str
    markers: tuple[str, ...]
    test_command: str
    build_command: str = ""
    rules: ParseRules = field(default_factory=ParseRules)


_PYTEST_RULES = ParseRules(
    passed=r"(\d+) passed",
    failed=r"(\d+) failed",
    skipped=r"(\d+) skipped",
    coverage=r"^TOTAL\s+.*?(\d+(?:\.\d+)?)%\s*$",
)

_JEST_RULES = ParseRules(
    total=r"^Tests:.*?(\d+) total",
    passed=r"^Tests:.*?(\d+) passed",
    failed=r"^Tests:.*?(\d+) failed",
    skipped=r"^Tests:.*?(\d+) skipped",
    coverage=r"^All files\s*\|\s*(\d+(?:\.\d+)?)",
)

# ``go test`` prints no totals; failures surface through the exit code.
_GO_RULES = ParseRules(
    coverage=r"coverage: (\d+(?:\.\d+)?)% of statements",
)

_CARGO_RULES = ParseRules(
    passed=r"test result: \w+\. (\d+) passed",
    failed=r"test result: \w+\. \d+ passed; (\d+) failed",
    skipped=r"test result: \w+\. \d+ passed; \d+ failed; (\d+) ignored",
)

TOOLCHAINS: dict[str, Toolchain] = {
    "python": Toolchain(
        name="python",
        markers=("pyproject.toml", "setup.py", "setup.cfg", "pytest.ini", "tox.ini"),
        test_command="python -m pytest -q",
        rules=_PYTEST_RULES,
    ),
    "node": Toolchain(
        name="node",
        markers=("package.json",),
        test_command="npm test --silent",
        build_command="npm run build --if-present",
        rules=_JEST_RULES,
    ),
    "go": Toolchain(
        name="go",
        markers=("go.mod",),
        test_command="go test -cover ./...",
        build_command="go build ./...",
        rules=_GO_RULES,
    ),
    "rust": Toolchain(
        name="rust",
        markers=("Cargo.toml",),
        test_command="cargo test",
        build_command="cargo build",
        rules=_CARGO_RULES,
    ),
}


def get_toolchain(name: str) -> Toolchain:
    """Return the named toolchain or raise :class:`ConfigError`."""
    key = str(name or "").strip().lower()
    try:
        return TOOLCHAINS[key]
    except KeyError:
        known = ", ".join(sorted(TOOLCHAINS))
        raise ConfigError(f"unknown toolchain {name!r} (known: {known})") from None


def detect_toolchain(path: str | Path) -> Toolchain | None:
    """Return the first toolchain whose marker file exists under *path*."""
    root = Path(path)
    for toolchain in TOOLCHAINS.values():
        for marker in toolchain.markers:
            if (root / marker).is_file():
                logger.debug("Detected %s toolchain via %s", toolchain.name, marker)
                return toolchain
    return None
