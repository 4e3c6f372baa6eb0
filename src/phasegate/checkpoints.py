"""Durable checkpoint storage: one current snapshot plus append-only history.

Layout under the store root::

    current.json
    history/20261017T101500.123456Z.json
    history/20261017T101512.004211Z.json

History entries are named by their ISO-8601 basic-format UTC timestamp, so
lexical order is chronological order. Entries are created exclusively and
never rewritten. ``current.json`` is replaced atomically and only ever
points at a checkpoint that is already in history.

The store assumes a single writer; the pipeline controller enforces that
with :class:`phasegate.locking.RunLock`.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
from pathlib import Path

from pydantic import ValidationError

from phasegate.errors import PersistenceError
from phasegate.file_io import atomic_write_text, create_exclusive_text
from phasegate.schemas import Checkpoint

logger = logging.getLogger(__name__)

_KEY_FORMAT = "%Y%m%dT%H%M%S.%fZ"
_MAX_APPEND_ATTEMPTS = 5


def _as_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def history_key(timestamp: dt.datetime) -> str:
    """Return the filesystem-safe, lexically sortable key for *timestamp*."""
    return _as_utc(timestamp).strftime(_KEY_FORMAT)


def parse_timestamp(value: str | dt.datetime) -> dt.datetime:
    """Accept a datetime, an ISO-8601 string, or a history key."""
    if isinstance(value, dt.datetime):
        return _as_utc(value)
    text = str(value).strip()
    try:
        return dt.datetime.strptime(text, _KEY_FORMAT).replace(tzinfo=dt.timezone.utc)
    except ValueError:
        pass
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return _as_utc(dt.datetime.fromisoformat(text))
    except ValueError as exc:
        raise ValueError(f"not an ISO-8601 timestamp: {value!r}") from exc


def _render(checkpoint: Checkpoint) -> str:
    return checkpoint.model_dump_json(indent=2) + "\n"


class CheckpointStore:
    """Current-pointer plus append-only history of :class:`Checkpoint` records.

    Parameters
    ----------
    root:
        Directory holding ``current.json`` and ``history/``.
    history_limit:
        Keep at most this many history entries (oldest pruned first).
        ``None`` keeps everything.
    """

    def __init__(self, root: str | Path, *, history_limit: int | None = None) -> None:
        self.root = Path(root)
        self.current_path = self.root / "current.json"
        self.history_dir = self.root / "history"
        self.history_limit = history_limit
        self._last_key: str | None = None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def record(self, checkpoint: Checkpoint) -> Checkpoint:
        """Append *checkpoint* to history, then point ``current`` at it.

        Returns the stored checkpoint, whose timestamp may have been nudged
        forward to keep history strictly increasing.
        """
        stored = self.append_history(checkpoint)
        self.write_current(stored)
        self._apply_retention()
        return stored

    def append_history(self, checkpoint: Checkpoint) -> Checkpoint:
        """Add *checkpoint* to history; existing entries are never modified.

        A checkpoint already stored under its own key is returned as is.
        """
        candidate = checkpoint.model_copy(update={"timestamp": _as_utc(checkpoint.timestamp)})
        if self._history_holds(history_key(candidate.timestamp), candidate):
            return candidate
        for _ in range(_MAX_APPEND_ATTEMPTS):
            candidate = self._after_latest(candidate)
            key = history_key(candidate.timestamp)
            try:
                create_exclusive_text(self._history_path(key), _render(candidate))
            except FileExistsError:
                self._last_key = key
                continue
            except OSError as exc:
                raise PersistenceError(f"cannot append checkpoint history {key}: {exc}") from exc
            self._last_key = key
            logger.debug("Appended checkpoint %s (%s, %s)", key, candidate.phase.value, candidate.status.value)
            return candidate
        raise PersistenceError(f"could not allocate a unique history key after {_MAX_APPEND_ATTEMPTS} attempts")

    def write_current(self, checkpoint: Checkpoint) -> Checkpoint:
        """Make *checkpoint* the current snapshot.

        If it is not in history yet it is appended first, so ``current``
        never refers to a checkpoint absent from history.
        """
        key = history_key(checkpoint.timestamp)
        if self._history_path(key).exists():
            if not self._history_holds(key, checkpoint):
                raise PersistenceError(f"history entry {key} holds a different checkpoint")
        else:
            checkpoint = self.append_history(checkpoint)
        try:
            atomic_write_text(self.current_path, _render(checkpoint))
        except OSError as exc:
            raise PersistenceError(f"cannot write current checkpoint: {exc}") from exc
        return checkpoint

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def read_current(self) -> Checkpoint | None:
        """Return the current checkpoint, or ``None`` when nothing was written yet."""
        if not self.current_path.exists():
            return None
        return self._load(self.current_path)

    def read_history(self, since: str | dt.datetime | None = None) -> list[Checkpoint]:
        """Return history in ascending timestamp order.

        With *since*, only entries strictly later than it are returned, so a
        caller can resume from the last timestamp it saw.
        """
        since_key = history_key(parse_timestamp(since)) if since is not None else None
        entries: list[Checkpoint] = []
        for key in self._history_keys():
            if since_key is not None and key <= since_key:
                continue
            entries.append(self._load(self._history_path(key)))
        return entries

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _history_path(self, key: str) -> Path:
        return self.history_dir / f"{key}.json"

    def _history_holds(self, key: str, checkpoint: Checkpoint) -> bool:
        path = self._history_path(key)
        if not path.exists():
            return False
        try:
            on_disk = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise PersistenceError(f"cannot read history entry {key}: {exc}") from exc
        return on_disk == _render(checkpoint)

    def _history_keys(self) -> list[str]:
        if not self.history_dir.is_dir():
            return []
        try:
            return sorted(path.stem for path in self.history_dir.glob("*.json"))
        except OSError as exc:
            raise PersistenceError(f"cannot list checkpoint history: {exc}") from exc

    def _after_latest(self, checkpoint: Checkpoint) -> Checkpoint:
        if self._last_key is None:
            keys = self._history_keys()
            self._last_key = keys[-1] if keys else ""
        if not self._last_key or history_key(checkpoint.timestamp) > self._last_key:
            return checkpoint
        bumped = parse_timestamp(self._last_key) + dt.timedelta(microseconds=1)
        return checkpoint.model_copy(update={"timestamp": bumped})

    def _load(self, path: Path) -> Checkpoint:
        try:
            raw = path.read_text(encoding="utf-8")
            return Checkpoint.model_validate_json(raw)
        except OSError as exc:
            raise PersistenceError(f"cannot read checkpoint {path}: {exc}") from exc
        except (ValidationError, json.JSONDecodeError) as exc:
            raise PersistenceError(f"corrupt checkpoint {path}: {exc}") from exc

    def _apply_retention(self) -> None:
        if self.history_limit is None:
            return
        keys = self._history_keys()
        excess = len(keys) - self.history_limit
        if excess <= 0:
            return
        current_key = self._last_key
        for key in keys[:excess]:
            if key == current_key:
                continue
            try:
                self._history_path(key).unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("Could not prune checkpoint history %s: %s", key, exc)
                continue
            logger.debug("Pruned checkpoint history %s", key)
