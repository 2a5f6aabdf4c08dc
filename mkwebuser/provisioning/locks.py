"""
Locking discipline for provisioning.

Two kinds of locks protect shared host state:

UsernameLocks
  One lock per username, held for a whole provision call. A second call
  for the same username is rejected immediately, never queued.

MountTableLock
  One process-wide mutex around mount/unmount and loop attach/detach.
  The host's mount table and loop-device table are not safe to mutate
  concurrently, even for different usernames.

Both add an fcntl lock file under ``lock_dir`` when one is configured so
that separate mkwebuser processes exclude each other as well.
"""

import fcntl
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Optional, Set

from mkwebuser.errors import FatalOrchestrationError, LockContentionError

logger = logging.getLogger(__name__)

# Shared by every engine in the process
_MOUNT_TABLE_MUTEX = threading.Lock()


def _open_lock_file(lock_dir: str, name: str):
    try:
        os.makedirs(lock_dir, exist_ok=True)
        return open(Path(lock_dir) / name, "w")
    except OSError as e:
        raise FatalOrchestrationError(f"Cannot open lock file in {lock_dir}: {e}")


class UsernameLocks:
    """
    Fast-fail per-username exclusivity.

    Usage:
        locks = UsernameLocks(lock_dir="/run/mkwebuser")
        with locks.hold("alice"):
            ...
    """

    def __init__(self, lock_dir: Optional[str] = None):
        self.lock_dir = lock_dir
        self._held: Set[str] = set()
        self._guard = threading.Lock()

    def is_held(self, username: str) -> bool:
        with self._guard:
            return username in self._held

    @contextmanager
    def hold(self, username: str):
        with self._guard:
            if username in self._held:
                raise LockContentionError(
                    f"Provisioning of {username} is already in progress"
                )
            self._held.add(username)

        lock_file = None
        try:
            if self.lock_dir:
                lock_file = self._acquire_file(username)
            yield
        finally:
            if lock_file is not None:
                fcntl.flock(lock_file, fcntl.LOCK_UN)
                lock_file.close()
            with self._guard:
                self._held.discard(username)

    def _acquire_file(self, username: str):
        lock_file = _open_lock_file(self.lock_dir, f"user-{username}.lock")
        try:
            fcntl.flock(lock_file, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            lock_file.close()
            raise LockContentionError(
                f"Provisioning of {username} is already in progress in another process"
            )
        logger.debug(f"Acquired lock file for {username}")
        return lock_file


class MountTableLock:
    """Process-wide mutex for mount table and loop device mutations."""

    def __init__(self, lock_dir: Optional[str] = None):
        self.lock_dir = lock_dir
        self._lock_file = None

    def __enter__(self):
        _MOUNT_TABLE_MUTEX.acquire()
        if self.lock_dir:
            try:
                lock_file = _open_lock_file(self.lock_dir, "mount-table.lock")
            except FatalOrchestrationError:
                _MOUNT_TABLE_MUTEX.release()
                raise
            fcntl.flock(lock_file, fcntl.LOCK_EX)
            self._lock_file = lock_file
        return self

    def __exit__(self, exc_type, exc, tb):
        try:
            if self._lock_file is not None:
                fcntl.flock(self._lock_file, fcntl.LOCK_UN)
                self._lock_file.close()
                self._lock_file = None
        finally:
            _MOUNT_TABLE_MUTEX.release()
        return False
