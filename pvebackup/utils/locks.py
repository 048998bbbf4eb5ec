"""
Named advisory file locks.

Locks live in one directory, one file per purpose (``backup-run``,
``counters-update``, ``dispatch-<tier>``). They are taken with a
non-blocking flock(2); the kernel drops the lock when the holder dies,
so a lock file that can be acquired has no live holder. That acquire
attempt is the only liveness test; file age is never consulted.
"""

import errno
import fcntl
import logging
import os
import time
from typing import Optional

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed


logger = logging.getLogger(__name__)

RUN_LOCK = 'backup-run'
COUNTERS_LOCK = 'counters-update'
REOPEN_LIMIT = 5


class LockError(Exception):
    """Raised when a lock cannot be created or released."""
    pass


class LockBusyError(LockError):
    """Raised when a lock is held by a live process."""

    def __init__(self, name: str, holder: Optional[int] = None):
        self.name = name
        self.holder = holder
        detail = f" (held by pid {holder})" if holder else ''
        super().__init__(f"Lock '{name}' is busy{detail}")


def _read_pid(fd: int) -> Optional[int]:
    try:
        os.lseek(fd, 0, os.SEEK_SET)
        data = os.read(fd, 64).decode('ascii', errors='ignore').strip()
        return int(data) if data else None
    except (OSError, ValueError):
        return None


class FileLock:
    """
    One acquired advisory lock.

    Usable as a context manager; release() is idempotent.
    """

    def __init__(self, name: str, path: str):
        self.name = name
        self.path = path
        self._fd: Optional[int] = None
        self.reclaimed_from: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def _open_locked(self) -> Optional[int]:
        """
        Open the lock file and flock it; None if the file was unlinked meanwhile.
        """
        try:
            fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise LockError(f"Cannot open lock file {self.path}: {e}") from e

        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            holder = _read_pid(fd)
            os.close(fd)
            if e.errno in (errno.EWOULDBLOCK, errno.EAGAIN, errno.EACCES):
                raise LockBusyError(self.name, holder) from e
            raise LockError(f"Cannot lock {self.path}: {e}") from e

        # cleanup_orphans() may have unlinked the file between open and flock
        try:
            current = os.stat(self.path).st_ino
        except FileNotFoundError:
            current = None
        if current != os.fstat(fd).st_ino:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)
            return None
        return fd

    def acquire(self) -> 'FileLock':
        """
        Take the lock without blocking.

        Raises:
            LockBusyError: If another live process holds it
            LockError: If the lock file cannot be opened
        """
        fd = None
        for _ in range(REOPEN_LIMIT):
            fd = self._open_locked()
            if fd is not None:
                break
            logger.debug(f"Lock file for '{self.name}' was replaced, reopening", extra={'category': 'LOCK'})
        if fd is None:
            raise LockError(f"Lock file {self.path} keeps being replaced")

        previous = _read_pid(fd)
        if previous and previous != os.getpid():
            self.reclaimed_from = previous
            logger.info(
                f"Reclaimed stale lock '{self.name}' left by pid {previous}",
                extra={'category': 'LOCK'}
            )

        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, f"{os.getpid()}\n".encode('ascii'))
        os.fsync(fd)
        self._fd = fd
        return self

    def release(self):
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            os.ftruncate(fd, 0)
            fcntl.flock(fd, fcntl.LOCK_UN)
        except OSError as e:
            logger.warning(f"Failed to release lock '{self.name}': {e}", extra={'category': 'LOCK'})
        finally:
            os.close(fd)

    def __enter__(self):
        if not self.held:
            self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False

    def __repr__(self):
        return f'<FileLock {self.name} held={self.held}>'


class LockManager:
    """
    Creates named locks inside a dedicated directory.
    """

    def __init__(self, lock_dir: str):
        """
        Args:
            lock_dir: Directory holding the lock files (created if missing)
        """
        self.lock_dir = lock_dir
        try:
            os.makedirs(lock_dir, exist_ok=True)
        except OSError as e:
            raise LockError(f"Cannot create lock directory {lock_dir}: {e}") from e

    def path_for(self, name: str) -> str:
        return os.path.join(self.lock_dir, f"{name}.lock")

    def acquire(self, name: str, attempts: int = 1, delay: float = 0.1) -> FileLock:
        """
        Acquire a named lock.

        Args:
            name: Lock purpose
            attempts: Non-blocking attempts before giving up
            delay: Seconds between attempts

        Returns:
            Held FileLock

        Raises:
            LockBusyError: If still held after all attempts
        """
        controller = Retrying(
            stop=stop_after_attempt(max(attempts, 1)),
            wait=wait_fixed(delay),
            retry=retry_if_exception_type(LockBusyError),
            sleep=time.sleep,
            reraise=True,
        )
        return controller(lambda: FileLock(name, self.path_for(name)).acquire())

    def is_locked(self, name: str) -> bool:
        """Probe a lock by trying to take it."""
        if not os.path.exists(self.path_for(name)):
            return False
        try:
            FileLock(name, self.path_for(name)).acquire().release()
            return False
        except LockBusyError:
            return True

    def cleanup_orphans(self, keep=()) -> int:
        """
        Remove lock files that have no live holder.

        Args:
            keep: Lock names to leave in place (e.g. locks we hold)

        Returns:
            Number of lock files removed
        """
        removed = 0
        try:
            entries = os.listdir(self.lock_dir)
        except OSError:
            return 0

        for entry in entries:
            if not entry.endswith('.lock'):
                continue
            name = entry[:-5]
            if name in keep:
                continue
            lock = FileLock(name, self.path_for(name))
            try:
                lock.acquire()
            except LockError:
                continue
            try:
                os.unlink(lock.path)
                removed += 1
            except OSError:
                pass
            finally:
                lock.release()

        if removed:
            logger.info(f"Removed {removed} orphaned lock file(s)", extra={'category': 'CLEANUP'})
        return removed
