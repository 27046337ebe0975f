"""
Single-instance lock — a PID marker file with a liveness check.

Only one scheduler may run against a home directory at a time. The marker
holds the owner's PID; a marker naming a dead process is stale and is
reclaimed by the next ``acquire()``. Exclusivity is per host: PIDs mean
nothing across machines.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import structlog

logger = structlog.get_logger(__name__)


class LockError(Exception):
    """Base class for lock failures."""


class AlreadyRunning(LockError):
    """Another live process holds the marker."""

    def __init__(self, pid: int) -> None:
        super().__init__(f"heartbeat already running with PID {pid}")
        self.pid = pid


@dataclass(frozen=True)
class LockStatus:
    running: bool
    pid: Optional[int] = None


def is_process_alive(pid: int) -> bool:
    """Signal-0 liveness check. A process we may not signal still exists."""
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


class SingleInstanceLock:
    """PID marker file guarding a home directory."""

    def __init__(
        self,
        path: Path,
        pid: Optional[int] = None,
        is_alive: Optional[Callable[[int], bool]] = None,
    ) -> None:
        self.path = Path(path)
        self.pid = pid if pid is not None else os.getpid()
        self._is_alive = is_alive or is_process_alive

    def acquire(self) -> None:
        """Create the marker, reclaiming a stale one. Raises AlreadyRunning."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # Two attempts: the second follows removal of a stale marker.
        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError:
                owner = self._read_pid()
                if owner is not None and owner != self.pid and self._is_alive(owner):
                    logger.error("lock.already_running", pid=owner, path=str(self.path))
                    raise AlreadyRunning(owner)
                logger.warning("lock.stale_marker_removed", old_pid=owner, path=str(self.path))
                try:
                    self.path.unlink()
                except FileNotFoundError:
                    pass
                continue
            with os.fdopen(fd, "w") as f:
                f.write(str(self.pid))
            logger.info("lock.acquired", pid=self.pid, path=str(self.path))
            return

        # Lost a race with another starter between unlink and create.
        owner = self._read_pid()
        raise AlreadyRunning(owner if owner is not None else -1)

    def release(self) -> bool:
        """Remove the marker only if it still names our PID."""
        owner = self._read_pid()
        if owner != self.pid:
            logger.debug("lock.release_skipped", owner=owner, pid=self.pid)
            return False
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        logger.info("lock.released", pid=self.pid)
        return True

    def status(self) -> LockStatus:
        """Report whether a live process holds the marker."""
        owner = self._read_pid()
        if owner is not None and self._is_alive(owner):
            return LockStatus(running=True, pid=owner)
        return LockStatus(running=False)

    def _read_pid(self) -> Optional[int]:
        try:
            return int(self.path.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None

    def __enter__(self) -> "SingleInstanceLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()
