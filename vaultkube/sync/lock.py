"""
Global sync lock — at most one reconciliation at a time.

One scoped acquisition covers both layers: a non-blocking in-process
``threading.Lock`` (scheduler thread vs webhook thread) and an exclusive
``flock`` on a shared lock file (other processes, e.g. during a rolling
deployment). Acquisition never blocks or queues.

Usage:
    lock = GlobalSyncLock(Path("/tmp/vaultkube-sync.lock"))
    with lock.hold() as acquired:
        if not acquired:
            return  # already in progress
        ...
"""

from __future__ import annotations

import fcntl
import logging
import os
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import IO

logger = logging.getLogger(__name__)


class GlobalSyncLock:
    """Cross-thread and cross-process non-blocking mutex."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._thread_lock = threading.Lock()
        self._handle: IO[str] | None = None

    @property
    def held(self) -> bool:
        return self._thread_lock.locked()

    def _acquire_file(self) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self.path, "a+")  # noqa: SIM115 - closed in _release_file
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.close()
            return False
        except OSError:
            handle.close()
            raise
        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()} {datetime.now(UTC).isoformat()}\n")
        handle.flush()
        self._handle = handle
        return True

    def _release_file(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            handle.seek(0)
            handle.truncate()
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()

    def try_acquire(self) -> bool:
        """Attempt both layers. Returns True if acquired."""
        if not self._thread_lock.acquire(blocking=False):
            logger.debug("Sync lock held by another thread")
            return False
        try:
            acquired = self._acquire_file()
        except BaseException:
            self._thread_lock.release()
            raise
        if not acquired:
            self._thread_lock.release()
            logger.debug("Sync lock %s held by another process", self.path)
        return acquired

    def release(self) -> None:
        try:
            self._release_file()
        finally:
            self._thread_lock.release()

    @contextmanager
    def hold(self) -> Iterator[bool]:
        """Yield True if the lock was acquired; release is guaranteed on exit."""
        acquired = self.try_acquire()
        try:
            yield acquired
        finally:
            if acquired:
                self.release()
