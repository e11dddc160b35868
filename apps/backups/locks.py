"""
Cross-process exclusivity for backup and restore runs.

Scheduler-triggered runs execute in Celery workers while manual runs and
restores execute in management command processes, so exclusivity is
enforced with lock files under ``{root}/locks/`` rather than in memory.

Lock names:
    ``tier-<tier>``  held by a backup of that tier
    ``restore``      held by a restore, which also takes every ``tier-*`` lock
"""

import fcntl
import json
import logging
import os
import socket
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import List, Optional

from django.utils import timezone

from .conf import TIERS
from .exceptions import RunInProgress

logger = logging.getLogger(__name__)

RESTORE_LOCK = "restore"


def tier_lock_name(tier: str) -> str:
    return f"tier-{tier}"


class FileLock:
    """
    Non-blocking lock held with ``flock`` on a file under the locks directory.

    The kernel drops the lock when the holder's process exits, so a crashed
    run never blocks the next one. The file content ``{pid, host, owner,
    token, acquired_at}`` is informational; a file left behind by a dead
    holder is taken over on the next acquire.
    """

    def __init__(self, path: Path, owner: str = ""):
        self.path = Path(path)
        self.owner = owner
        self.token = None
        self._fd = None

    @property
    def name(self) -> str:
        return self.path.name[: -len(".lock")] if self.path.name.endswith(".lock") else self.path.name

    @property
    def held(self) -> bool:
        return self._fd is not None

    def read_holder(self) -> Optional[dict]:
        """Lock file content, ``{}`` if unreadable, None if there is no lock file."""
        try:
            raw = self.path.read_text()
        except FileNotFoundError:
            return None
        except OSError:
            return {}
        try:
            holder = json.loads(raw)
        except ValueError:
            return {}
        return holder if isinstance(holder, dict) else {}

    def is_locked(self) -> bool:
        """Whether some process currently holds the lock."""
        try:
            fd = os.open(str(self.path), os.O_RDONLY)
        except FileNotFoundError:
            return False
        try:
            fcntl.flock(fd, fcntl.LOCK_SH | fcntl.LOCK_NB)
        except BlockingIOError:
            return True
        finally:
            os.close(fd)
        return False

    def _open_locked(self) -> Optional[int]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        while True:
            fd = os.open(str(self.path), os.O_RDWR | os.O_CREAT, 0o640)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                os.close(fd)
                return None

            # A releasing holder unlinks the file; retry on the new one
            try:
                current = os.stat(self.path).st_ino
            except FileNotFoundError:
                current = None
            if current == os.fstat(fd).st_ino:
                return fd
            os.close(fd)

    def acquire(self):
        """
        Take the lock or fail immediately.

        Raises:
            RunInProgress: if a live holder owns the lock
        """
        if self.held:
            raise RuntimeError(f"Lock {self.name} is already held by this object")

        fd = self._open_locked()
        if fd is None:
            holder = self.read_holder()
            raise RunInProgress(
                f"Lock {self.name!r} is held by {self._describe(holder)}",
                lock_name=self.name,
                holder=holder,
            )

        previous = self.read_holder()
        if previous:
            logger.warning(f"Taking over lock {self.name} left by {self._describe(previous)}")

        token = uuid.uuid4().hex
        content = {
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "owner": self.owner,
            "token": token,
            "acquired_at": timezone.now().isoformat(),
        }
        try:
            os.ftruncate(fd, 0)
            os.write(fd, json.dumps(content).encode("utf-8"))
        except OSError:
            os.close(fd)
            raise

        self._fd = fd
        self.token = token
        logger.debug(f"Acquired lock {self.name}")
        return self

    def release(self):
        if not self.held:
            return
        try:
            # Unlink while still holding the lock so a waiter never locks a dead file
            if os.stat(self.path).st_ino == os.fstat(self._fd).st_ino:
                self.path.unlink()
        except FileNotFoundError:
            pass
        finally:
            os.close(self._fd)
            self._fd = None
            self.token = None
        logger.debug(f"Released lock {self.name}")

    def __enter__(self):
        return self.acquire()

    def __exit__(self, exc_type, exc_value, traceback):
        self.release()

    @staticmethod
    def _describe(holder: Optional[dict]) -> str:
        if not holder:
            return "another process"
        owner = holder.get("owner") or "unknown"
        return f"{owner} (pid {holder.get('pid')} on {holder.get('host')}, since {holder.get('acquired_at')})"


class ExclusivityGuard:
    """
    Enforces the run exclusivity rules.

    * at most one backup per tier at a time
    * a restore excludes every backup and every other restore
    """

    def __init__(self, locks_dir: Path, owner: str = ""):
        self.locks_dir = Path(locks_dir)
        self.owner = owner or f"pid-{os.getpid()}"

    def lock(self, name: str) -> FileLock:
        return FileLock(self.locks_dir / f"{name}.lock", owner=self.owner)

    def _restore_in_progress(self) -> Optional[dict]:
        restore_lock = self.lock(RESTORE_LOCK)
        if not restore_lock.is_locked():
            return None
        return restore_lock.read_holder() or {}

    @contextmanager
    def backup(self, tier: str):
        """
        Hold the lock for one backup of ``tier``.

        Raises:
            RunInProgress: if that tier is already running or a restore is in progress
        """
        tier_lock = self.lock(tier_lock_name(tier)).acquire()
        try:
            holder = self._restore_in_progress()
            if holder is not None:
                raise RunInProgress(
                    f"A restore is in progress; {tier} backup rejected",
                    lock_name=RESTORE_LOCK,
                    holder=holder,
                )
            yield tier_lock
        finally:
            tier_lock.release()

    @contextmanager
    def restore(self):
        """
        Hold the restore lock and every tier lock.

        Raises:
            RunInProgress: if any backup or another restore is in progress
        """
        acquired: List[FileLock] = []
        try:
            acquired.append(self.lock(RESTORE_LOCK).acquire())
            for tier in TIERS:
                acquired.append(self.lock(tier_lock_name(tier)).acquire())
            yield acquired[0]
        finally:
            for held in reversed(acquired):
                held.release()

    def active_locks(self) -> List[dict]:
        """Live locks with their holder information, for status reporting."""
        if not self.locks_dir.exists():
            return []
        active = []
        for path in sorted(self.locks_dir.glob("*.lock")):
            file_lock = FileLock(path)
            if not file_lock.is_locked():
                continue
            holder = file_lock.read_holder() or {}
            active.append({"name": file_lock.name, **{k: v for k, v in holder.items() if k != "token"}})
        return active
