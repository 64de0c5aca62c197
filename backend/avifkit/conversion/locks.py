"""Cross-process advisory locks on destination paths, with stale marker eviction."""
import fcntl
import logging
import os
import time
from pathlib import Path
from typing import Optional

from avifkit.conversion.files import lock_path, remove_quietly

logger = logging.getLogger("avifkit.locks")


class ConversionLock:
    """Held flock on {dest}.lock. release() is safe to call more than once."""

    def __init__(self, dest_path: Path, marker: Path, fd: int):
        self.dest_path = dest_path
        self.marker = marker
        self.acquired_at = time.time()
        self._fd: Optional[int] = fd

    @property
    def held(self) -> bool:
        return self._fd is not None

    def release(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        except OSError as e:
            logger.warning("Could not unlock %s: %s", self.marker, e)
        finally:
            os.close(fd)
            remove_quietly(self.marker)

    def __enter__(self) -> "ConversionLock":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class LockManager:
    def __init__(self, stale_timeout: int = 300):
        self.stale_timeout = stale_timeout

    def marker_age(self, marker: Path) -> Optional[float]:
        try:
            return time.time() - marker.stat().st_mtime
        except FileNotFoundError:
            return None

    def evict_if_stale(self, marker: Path) -> bool:
        age = self.marker_age(marker)
        if age is None or age <= self.stale_timeout:
            return False
        if remove_quietly(marker):
            logger.warning("Removed stale lock file (age: %ss): %s", int(age), marker)
            return True
        return False

    def acquire(self, dest_path: Path) -> Optional[ConversionLock]:
        """Non-blocking. None means another worker holds the destination."""
        marker = lock_path(dest_path)
        self.evict_if_stale(marker)
        try:
            fd = os.open(marker, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            logger.error("Could not open lock file %s: %s", marker, e)
            return None
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            logger.info("Conversion already in progress: %s", dest_path)
            return None
        except OSError as e:
            os.close(fd)
            logger.error("Could not lock %s: %s", marker, e)
            return None
        # a holder releasing between open and flock unlinks the marker we opened
        if not self._is_current(fd, marker):
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)
            logger.info("Lock file replaced while locking, treating as busy: %s", marker)
            return None
        # refresh mtime so the age reflects this holder
        os.utime(fd, None)
        return ConversionLock(dest_path, marker, fd)

    @staticmethod
    def _is_current(fd: int, marker: Path) -> bool:
        try:
            return os.fstat(fd).st_ino == marker.stat().st_ino
        except FileNotFoundError:
            return False
