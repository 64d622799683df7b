"""
Singleton lock — at most one Air server per host.

Lock record (JSON, ``$XDG_STATE_HOME/air/air.lock``):
    {"pid": 4242, "startedAt": 1718000000000, "port": 8765,
     "location": "/home/air", "owner": "air-peer"}

States: UNLOCKED -> ACQUIRING -> LOCKED. STALE is detected, never stored:
a record is stale when its pid is dead or it is older than the timeout.

The read-check-write sequence runs under an exclusive ``flock`` on a
sidecar ``.guard`` file where the platform has one, so two processes
starting at the same moment cannot both win.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Mapping

from air import APP_NAME, LOCK_TIMEOUT_SECS
from air.paths import AirPaths

try:
    import fcntl
except ImportError:  # Windows has no flock; the guard is skipped there
    fcntl = None  # type: ignore[assignment]

log = logging.getLogger(__name__)

_BYPASS_VARS = ("AIR_FORCE", "FORCE_AIR")


class LockState(str, Enum):
    UNLOCKED = "unlocked"
    ACQUIRING = "acquiring"
    LOCKED = "locked"
    STALE = "stale"


class LockError(Exception):
    """The lock files could not be read or written."""


class LockConflict(Exception):
    """Another live instance holds the lock."""

    def __init__(self, record: "LockRecord") -> None:
        self.record = record
        super().__init__(
            f"Another Air instance is running (PID: {record.pid}, owner: {record.owner})"
        )


def _now_ms() -> int:
    return int(time.time() * 1000)


def is_process_running(pid: int) -> bool:
    """Check a pid with signal 0. A pid we may not signal still exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


@dataclass
class LockRecord:
    pid: int
    started_at: int  # ms since epoch
    port: int | None = None
    location: str = ""
    owner: str = APP_NAME

    def age_ms(self, now_ms: int | None = None) -> int:
        return (now_ms if now_ms is not None else _now_ms()) - self.started_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "startedAt": self.started_at,
            "port": self.port,
            "location": self.location,
            "owner": self.owner,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LockRecord":
        """Build a record. Raises ValueError if required fields are unusable."""
        pid = data.get("pid")
        started = data.get("startedAt", data.get("timestamp"))
        if isinstance(pid, bool) or not isinstance(pid, int):
            raise ValueError(f"Lock pid must be an integer, got {pid!r}")
        if isinstance(started, bool) or not isinstance(started, (int, float)):
            raise ValueError(f"Lock startedAt must be a number, got {started!r}")
        port = data.get("port")
        return cls(
            pid=pid,
            started_at=int(started),
            port=port if isinstance(port, int) and not isinstance(port, bool) else None,
            location=str(data.get("location") or ""),
            owner=str(data.get("owner") or data.get("command") or APP_NAME),
        )


class LockManager:
    """PID-tagged lock file with liveness probing.

    Usage:
        lock = LockManager.from_paths(resolve_paths())
        if not lock.acquire("air-peer", port=8765):
            sys.exit(1)
        ...
        lock.release("air-peer")
    """

    def __init__(
        self,
        lock_path: Path,
        pid_path: Path | None = None,
        timeout: float = LOCK_TIMEOUT_SECS,
        bypass: bool = False,
        location: str | None = None,
    ) -> None:
        self.lock_path = Path(lock_path)
        self.pid_path = Path(pid_path) if pid_path else None
        self.timeout = timeout
        self.bypass = bypass
        self.location = location if location is not None else os.getcwd()
        self.state = LockState.UNLOCKED
        self.record: LockRecord | None = None
        self.error: OSError | None = None

    @classmethod
    def from_paths(
        cls,
        paths: AirPaths,
        environ: Mapping[str, str] | None = None,
        **kwargs: Any,
    ) -> "LockManager":
        env = os.environ if environ is None else environ
        bypass = any(env.get(var, "").lower() == "true" for var in _BYPASS_VARS)
        return cls(
            paths.lock_file,
            pid_path=paths.pid_file,
            bypass=bypass,
            location=str(paths.root),
            **kwargs,
        )

    @property
    def guard_path(self) -> Path:
        return self.lock_path.with_name(self.lock_path.name + ".guard")

    # --- Record I/O ---

    def read(self) -> LockRecord | None:
        """Read the current record. Missing or corrupt files read as None."""
        try:
            data = json.loads(self.lock_path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                return None
            return LockRecord.from_dict(data)
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, UnicodeDecodeError, ValueError, OSError) as e:
            log.warning("Ignoring unreadable lock file %s: %s", self.lock_path, e)
            return None

    def _write_record(self, record: LockRecord) -> None:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.lock_path.parent), suffix=".tmp", prefix=".lock_"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(record.to_dict(), f, indent=2)
            os.replace(tmp_path, str(self.lock_path))
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
        if self.pid_path:
            self.pid_path.parent.mkdir(parents=True, exist_ok=True)
            self.pid_path.write_text(str(record.pid))

    @contextmanager
    def _guard(self) -> Iterator[None]:
        if fcntl is None:
            yield
            return
        self.guard_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.guard_path, "a") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    # --- State ---

    def is_stale(self, record: LockRecord, now_ms: int | None = None) -> bool:
        """A record is current only while its pid lives and it is young."""
        young = record.age_ms(now_ms) < self.timeout * 1000
        return not (young and is_process_running(record.pid))

    def inspect(self) -> tuple[LockState, LockRecord | None]:
        """Report the on-disk lock state without changing anything."""
        record = self.read()
        if record is None:
            return LockState.UNLOCKED, None
        if self.is_stale(record):
            return LockState.STALE, record
        return LockState.LOCKED, record

    def acquire(self, owner: str = APP_NAME, port: int | None = None) -> bool:
        """Take the lock. Returns False if another live instance holds it."""
        if self.bypass:
            log.warning("Singleton lock bypassed (AIR_FORCE=true), development use only")
            self.state = LockState.LOCKED
            return True

        self.state = LockState.ACQUIRING
        self.error = None
        try:
            with self._guard():
                existing = self.read()
                if existing is not None:
                    if not self.is_stale(existing):
                        log.error(
                            "Another Air instance is running (PID: %d, owner: %s)",
                            existing.pid, existing.owner,
                        )
                        self.state = LockState.UNLOCKED
                        return False
                    log.info("Cleaning up stale lock file (PID: %d)", existing.pid)
                    self.lock_path.unlink(missing_ok=True)

                record = LockRecord(
                    pid=os.getpid(),
                    started_at=_now_ms(),
                    port=port,
                    location=self.location,
                    owner=owner,
                )
                self._write_record(record)
        except OSError as e:
            log.error("Failed to acquire lock %s: %s", self.lock_path, e)
            self.error = e
            self.state = LockState.UNLOCKED
            return False

        self.record = record
        self.state = LockState.LOCKED
        log.info("Lock acquired: %s (PID: %d)", self.lock_path, record.pid)
        return True

    def require(self, owner: str = APP_NAME, port: int | None = None) -> LockRecord | None:
        """Like acquire() but raises instead of returning False.

        LockConflict when a live instance holds the lock, LockError when the
        lock files could not be read or written.
        """
        if not self.acquire(owner, port):
            if self.error is not None:
                raise LockError(f"Cannot acquire lock {self.lock_path}: {self.error}") from self.error
            holder = self.read()
            if holder is None:
                raise LockError(f"Lock {self.lock_path} changed hands during acquire, retry")
            raise LockConflict(holder)
        return self.record

    def release(self, owner: str | None = None) -> bool:
        """Delete the lock if this process owns it. Safe to call repeatedly."""
        released = False
        pid = os.getpid()
        try:
            record = self.read()
            if record and record.pid == pid and (owner is None or record.owner == owner):
                self.lock_path.unlink(missing_ok=True)
                released = True
            if self.pid_path and self.pid_path.is_file():
                if self.pid_path.read_text().strip() == str(pid):
                    self.pid_path.unlink(missing_ok=True)
        except OSError as e:
            log.debug("Lock release failed: %s", e)
        if released:
            self.state = LockState.UNLOCKED
            self.record = None
            log.info("Lock released: %s", self.lock_path)
        return released

    def force_cleanup(self) -> list[Path]:
        """Remove lock, PID and guard files regardless of owner."""
        removed = []
        for path in (self.lock_path, self.pid_path, self.guard_path):
            if path is not None and path.exists():
                try:
                    path.unlink()
                    removed.append(path)
                except OSError as e:
                    log.warning("Failed to remove %s: %s", path, e)
        self.state = LockState.UNLOCKED
        self.record = None
        return removed
