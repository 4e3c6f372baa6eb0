"""Advisory single-run lock for a pipeline state directory."""

from __future__ import annotations

import datetime as dt
import json
import logging
import os
import socket
import uuid
from pathlib import Path
from types import TracebackType
from typing import Any

from phasegate.errors import ConcurrentRunError, PersistenceError
from phasegate.file_io import atomic_write_text, create_exclusive_text

logger = logging.getLogger(__name__)

_ACQUIRE_ATTEMPTS = 3


def _utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def read_lock_payload(lock_path: Path) -> dict[str, Any]:
    """Return the lock file's JSON payload, or ``{}`` when absent or unreadable."""
    if not lock_path.exists():
        return {}
    try:
        loaded = json.loads(lock_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return {}
    return loaded if isinstance(loaded, dict) else {}


def lock_age_seconds(payload: dict[str, Any], *, now: dt.datetime | None = None) -> float | None:
    """Seconds since the holder's last heartbeat, or ``None`` when unknown."""
    raw = str(payload.get("last_heartbeat_at", "") or "")
    try:
        heartbeat = dt.datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if heartbeat.tzinfo is None:
        heartbeat = heartbeat.replace(tzinfo=dt.timezone.utc)
    return max(0.0, ((now or _utc_now()) - heartbeat).total_seconds())


def file_age_seconds(path: Path) -> float | None:
    try:
        mtime = path.stat().st_mtime
    except OSError:
        return None
    return max(0.0, _utc_now().timestamp() - mtime)


def force_break_lock(lock_path: Path, *, reason: str) -> str:
    """Remove a lock file regardless of its holder and return an audit message."""
    if not lock_path.exists():
        return "no lock to break"
    payload = read_lock_payload(lock_path)
    lock_path.unlink(missing_ok=True)
    message = (
        f"lock broken: pid={payload.get('pid', '<unknown>')}, "
        f"host={payload.get('host', '<unknown>')}, "
        f"started_at={payload.get('started_at', '<unknown>')}, reason={reason}"
    )
    logger.warning(message)
    return message


class RunLock:
    """Exclusive lock file with heartbeat-based staleness.

    Usage::

        with RunLock(state_dir / "run.lock", run_id="run_abc", stale_seconds=3600):
            ...

    A second holder fails fast with :class:`ConcurrentRunError`. A lock whose
    heartbeat is older than ``stale_seconds`` is moved aside and replaced.
    """

    def __init__(self, lock_path: str | Path, *, run_id: str, stale_seconds: float = 3600.0) -> None:
        self.lock_path = Path(lock_path)
        self.run_id = run_id
        self.stale_seconds = float(stale_seconds)
        self.owner_id = uuid.uuid4().hex
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def _payload(self, started_at: str) -> dict[str, Any]:
        return {
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "owner_id": self.owner_id,
            "run_id": self.run_id,
            "started_at": started_at,
            "last_heartbeat_at": _utc_now().isoformat(),
        }

    def _write_exclusive(self, payload: dict[str, Any]) -> None:
        fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, indent=2) + "\n")

    def acquire(self) -> None:
        """Take the lock or raise :class:`ConcurrentRunError`."""
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PersistenceError(f"cannot create lock directory: {exc}") from exc
        payload = self._payload(_utc_now().isoformat())
        for _ in range(_ACQUIRE_ATTEMPTS):
            try:
                self._write_exclusive(payload)
            except FileExistsError:
                existing = read_lock_payload(self.lock_path)
                age = lock_age_seconds(existing)
                if age is None:
                    # Payload not written yet or unreadable: fall back to file age.
                    age = file_age_seconds(self.lock_path)
                if age is not None and age <= self.stale_seconds:
                    raise ConcurrentRunError(
                        f"another run holds {self.lock_path} "
                        f"(run_id={existing.get('run_id', '<unknown>')}, "
                        f"pid={existing.get('pid', '<unknown>')}, "
                        f"host={existing.get('host', '<unknown>')}, age={age:.0f}s)"
                    ) from None
                stale_path = self.lock_path.with_name(
                    f"{self.lock_path.name}.stale.{self.owner_id[:8]}"
                )
                try:
                    os.replace(self.lock_path, stale_path)
                except FileNotFoundError:
                    continue
                except OSError as exc:
                    raise ConcurrentRunError(f"cannot replace stale lock {self.lock_path}: {exc}") from exc
                moved = read_lock_payload(stale_path)
                if moved != existing:
                    # Another contender replaced the stale lock first; put its lock back.
                    self._restore_lock(stale_path)
                    raise ConcurrentRunError(
                        f"another run replaced the stale lock {self.lock_path} first "
                        f"(run_id={moved.get('run_id', '<unknown>')})"
                    )
                logger.warning(
                    "Replaced stale lock %s (age=%s, previous run_id=%s)",
                    self.lock_path,
                    "unknown" if age is None else f"{age:.0f}s",
                    existing.get("run_id", "<unknown>"),
                )
                continue
            except OSError as exc:
                raise PersistenceError(f"cannot create lock {self.lock_path}: {exc}") from exc
            self._held = True
            logger.debug("Lock acquired at %s", self.lock_path)
            return
        raise ConcurrentRunError(f"could not acquire {self.lock_path} after {_ACQUIRE_ATTEMPTS} attempts")

    def _restore_lock(self, moved: Path) -> None:
        try:
            create_exclusive_text(self.lock_path, moved.read_text(encoding="utf-8"))
        except FileExistsError:
            logger.warning("Lock %s was re-created while restoring %s", self.lock_path, moved)
        except OSError as exc:
            raise PersistenceError(f"cannot restore lock {self.lock_path} from {moved}: {exc}") from exc
        moved.unlink(missing_ok=True)

    def heartbeat(self) -> None:
        """Refresh the heartbeat so long runs are not mistaken for stale ones."""
        if not self._held:
            return
        payload = read_lock_payload(self.lock_path)
        if payload.get("owner_id") != self.owner_id:
            logger.warning("Lock %s is no longer owned by this run", self.lock_path)
            return
        payload["last_heartbeat_at"] = _utc_now().isoformat()
        try:
            atomic_write_text(self.lock_path, json.dumps(payload, indent=2) + "\n")
        except OSError as exc:
            raise PersistenceError(f"cannot refresh lock heartbeat: {exc}") from exc

    def release(self) -> None:
        """Remove the lock if this instance still owns it."""
        if not self._held:
            return
        self._held = False
        payload = read_lock_payload(self.lock_path)
        if payload and payload.get("owner_id") != self.owner_id:
            return
        self.lock_path.unlink(missing_ok=True)
        logger.debug("Lock released at %s", self.lock_path)

    def __enter__(self) -> RunLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
