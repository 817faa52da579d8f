"""Cross-process exclusion for mutating runs.

The lock is a marker directory: ``os.mkdir`` either creates it or fails,
atomically. The owner writes its pid into ``<marker>/pid``. A marker whose
pid is dead is reclaimed once; the reclaim is cooperative between instances
of this tool and does not close every race.
"""

from __future__ import annotations

import logging
import os
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger(__name__)

PID_FILE = "pid"
DEFAULT_STALE_GRACE_S = 10.0


class LockBusy(RuntimeError):
    def __init__(self, pid: Optional[int], path: str):
        who = f"pid {pid}" if pid else "another process"
        super().__init__(f"Another tuneforge run holds {path} ({who})")
        self.pid = pid
        self.path = path


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else.
        return True
    return True


@dataclass
class LockHandle:
    path: Path
    pid: int
    _manager: "LockManager"

    def release(self) -> None:
        self._manager.release()

    def __enter__(self) -> "LockHandle":
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()


class LockManager:
    def __init__(
        self,
        path: str | Path,
        *,
        stale_grace_s: float = DEFAULT_STALE_GRACE_S,
        pid: Optional[int] = None,
        alive: Callable[[int], bool] = _pid_alive,
    ):
        self.path = Path(path)
        self.stale_grace_s = stale_grace_s
        self.pid = pid if pid is not None else os.getpid()
        self._alive = alive
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def owner(self) -> Optional[int]:
        try:
            return int((self.path / PID_FILE).read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None

    def _try_create(self) -> bool:
        try:
            os.mkdir(self.path, 0o755)
        except FileExistsError:
            return False
        try:
            (self.path / PID_FILE).write_text(f"{self.pid}\n", encoding="utf-8")
        except OSError:
            shutil.rmtree(self.path, ignore_errors=True)
            raise
        return True

    def _is_stale(self) -> tuple[bool, Optional[int]]:
        pid = self.owner()
        if pid is not None:
            return not self._alive(pid), pid
        # No pid yet: the owner may be between mkdir and writing the file.
        try:
            age = time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return True, None
        return age > self.stale_grace_s, None

    def acquire(self) -> LockHandle:
        """Take the lock or raise LockBusy. A dead owner's marker is reclaimed once."""

        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self._try_create():
            return self._won()

        stale, pid = self._is_stale()
        if not stale:
            raise LockBusy(pid, str(self.path))

        logger.warning("Removing stale lock %s (pid=%s)", self.path, pid)
        shutil.rmtree(self.path, ignore_errors=True)
        if self._try_create():
            return self._won()
        raise LockBusy(self.owner(), str(self.path))

    def _won(self) -> LockHandle:
        self._held = True
        logger.info("Acquired lock %s (pid=%s)", self.path, self.pid)
        return LockHandle(path=self.path, pid=self.pid, _manager=self)

    def release(self) -> None:
        """Idempotent; only removes a marker that records our pid."""

        if not self._held:
            return
        self._held = False
        if self.owner() != self.pid:
            logger.warning("Lock %s no longer records pid %s; leaving it", self.path, self.pid)
            return
        try:
            (self.path / PID_FILE).unlink()
        except FileNotFoundError:
            pass
        try:
            self.path.rmdir()
        except OSError as e:
            logger.warning("Cannot remove lock %s: %s", self.path, e)
            return
        logger.info("Released lock %s", self.path)


def default_lock_path(configured: str) -> Path:
    """Configured path when its parent is writable, else $XDG_RUNTIME_DIR."""

    path = Path(configured)
    parent = path.parent
    if os.access(parent if parent.exists() else parent.parent, os.W_OK):
        return path
    runtime = os.environ.get("XDG_RUNTIME_DIR") or f"/tmp/tuneforge-{os.getuid()}"
    return Path(runtime) / path.name
