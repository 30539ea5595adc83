"""Single-instance execution guard"""

import atexit
import logging
import os
import time
from collections.abc import Callable
from pathlib import Path

from ..core.exceptions import AlreadyLocked

try:
    import fcntl

    FLOCK_AVAILABLE = True
except ImportError:  # pragma: no cover - non-POSIX platforms
    FLOCK_AVAILABLE = False


class InstanceLock:
    """Exclusive advisory lock on a lock file, with a PID-file fallback.

    The kernel path takes ``flock(LOCK_EX | LOCK_NB)`` and fails at once when
    another process holds it. The fallback path creates the lock file
    exclusively and polls until it disappears or ``timeout`` elapses.

    Acquisition registers its own release with ``atexit`` and the object is a
    context manager, so release runs on every exit path. Release is idempotent.
    """

    def __init__(
        self,
        path: Path,
        use_flock: bool = True,
        poll_interval: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.path = Path(path)
        self.use_flock = use_flock and FLOCK_AVAILABLE
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._fd: int | None = None
        self._owns_file = False
        self.logger = logging.getLogger("InstanceLock")

    @property
    def held(self) -> bool:
        return self._fd is not None or self._owns_file

    def acquire(self, timeout: float = 300) -> "InstanceLock":
        """Acquire the lock or raise AlreadyLocked naming the believed holder"""
        if self.held:
            return self

        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self.use_flock:
            self._acquire_flock()
        else:
            self._acquire_pidfile(timeout)

        atexit.register(self.release)
        self.logger.debug(f"Lock acquired: {self.path} (PID: {os.getpid()})")
        return self

    def _acquire_flock(self) -> None:
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            holder = self._read_holder()
            os.close(fd)
            raise AlreadyLocked(f"Another dbtools instance holds the lock ({self.path})", holder) from None

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        self._fd = fd

    def _acquire_pidfile(self, timeout: float) -> None:
        elapsed = 0.0
        while True:
            try:
                fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError:
                holder = self._read_holder()
                if holder and holder.isdigit() and not _pid_alive(int(holder)):
                    self.logger.warning(f"Removing stale lock held by dead PID {holder}: {self.path}")
                    self.path.unlink(missing_ok=True)
                    continue
                if elapsed >= timeout:
                    raise AlreadyLocked(
                        f"Lock file exists (PID: {holder or 'unknown'}). Another instance running or stale lock?",
                        holder,
                    ) from None
                self.logger.debug(f"Waiting for lock... ({elapsed:.0f}s)")
                self._sleep(self.poll_interval)
                elapsed += self.poll_interval
                continue

            try:
                os.write(fd, f"{os.getpid()}\n".encode())
            finally:
                os.close(fd)
            self._owns_file = True
            return

    def _read_holder(self) -> str | None:
        try:
            content = self.path.read_text().strip()
        except OSError:
            return None
        return content or None

    def release(self) -> None:
        """Release the lock; safe to call more than once"""
        if self._fd is not None:
            fd, self._fd = self._fd, None
            try:
                os.ftruncate(fd, 0)
                fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)
            self.logger.debug("Lock released")
        elif self._owns_file:
            self._owns_file = False
            self.path.unlink(missing_ok=True)
            self.logger.debug("Lock released")
        else:
            return

        atexit.unregister(self.release)

    def __enter__(self) -> "InstanceLock":
        return self.acquire()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
