"""
Process-singleton lock for the monitor.

The lock is an exclusive, non-blocking fcntl.flock held on the lock file
for the life of the process. The kernel drops it when the holder exits,
however it exits, so a lock left behind by a crashed instance is simply
taken over. The holder's PID is written inside the file for operators and
for the "already running" message; it is never used to decide ownership.
"""

import atexit
import fcntl
import logging
import os
from typing import Optional

logger = logging.getLogger(os.getenv("LOGGER_NAME", "HOP_MONITOR_DAEMON"))


class LockHeldError(Exception):
    """Another live instance owns the lock."""

    def __init__(self, path: str, pid: Optional[int]):
        super().__init__(f"Another instance is running (PID {pid if pid is not None else 'unknown'}, lock {path})")
        self.path = path
        self.pid = pid


def pid_alive(pid: int) -> bool:
    """True if a process with this PID exists (signal 0 liveness probe)."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to another user
        return True
    except OSError:
        return False
    return True


def read_pid(path: str) -> Optional[int]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return int(f.read().strip())
    except (OSError, ValueError):
        return None


class PidLock:
    """
    flock-backed PID file.

    acquire() opens (or creates) the file and takes LOCK_EX | LOCK_NB on
    it. If the path was unlinked and recreated between our open and our
    flock, the lock we hold is on an orphaned inode, so we retry on the
    new file. Once acquired, release() runs at interpreter exit as well as
    on the normal shutdown path; calling it twice is harmless.
    """

    MAX_ATTEMPTS = 3

    def __init__(self, path: str):
        self.path = path
        self.pid = os.getpid()
        self.acquired = False
        self._fd: Optional[int] = None

    def _holds_current_file(self, fd: int) -> bool:
        try:
            on_disk = os.stat(self.path)
        except FileNotFoundError:
            return False
        held = os.fstat(fd)
        return (held.st_dev, held.st_ino) == (on_disk.st_dev, on_disk.st_ino)

    def _write_pid(self, fd: int) -> None:
        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, f"{self.pid}\n".encode())
        os.fsync(fd)

    def acquire(self) -> None:
        """
        Take the lock or raise.

        Raises:
            LockHeldError: another open file description holds the lock.
            OSError: the lock file cannot be created at all.
        """
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        for _ in range(self.MAX_ATTEMPTS):
            fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                os.close(fd)
                owner = read_pid(self.path)
                if owner is not None and owner != self.pid and not pid_alive(owner):
                    logger.warning(f"Lock {self.path} is held but records exited PID {owner}; "
                                   f"a child of that process may still hold it")
                raise LockHeldError(self.path, owner)

            if not self._holds_current_file(fd):
                os.close(fd)
                continue

            previous = read_pid(self.path)
            if previous is not None and previous != self.pid:
                logger.info(f"Taking over stale lock {self.path} (recorded PID: {previous})")
            try:
                self._write_pid(fd)
            except OSError:
                os.close(fd)
                raise

            self._fd = fd
            self.acquired = True
            atexit.register(self.release)
            logger.debug(f"Lock acquired: {self.path} (PID {self.pid})")
            return

        raise OSError(f"Could not acquire lock {self.path} after {self.MAX_ATTEMPTS} attempts")

    def release(self) -> None:
        """Remove the lock file if it is still ours, then drop the flock."""
        if not self.acquired:
            return
        self.acquired = False
        atexit.unregister(self.release)
        fd, self._fd = self._fd, None
        try:
            if not self._holds_current_file(fd) or read_pid(self.path) != self.pid:
                logger.warning(f"Lock {self.path} no longer records our PID; leaving it in place")
                return
            # Unlink while still holding the flock so no one locks the old inode
            try:
                os.unlink(self.path)
                logger.debug(f"Lock released: {self.path}")
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.error(f"Could not remove lock file {self.path}: {e}")
        finally:
            os.close(fd)
