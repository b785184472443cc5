"""Durable advisory lock guarding queue location transitions."""

from __future__ import annotations

import fcntl
import logging
import os
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)


class LockTimeoutError(RuntimeError):
    """The queue lock could not be obtained within the retry budget."""


class QueueLock:
    """Exclusive ``flock`` on a lock file with bounded exponential backoff.

    The kernel drops the lock when the holder dies, so a crashed run never
    leaves the queue wedged.  Every ``acquire`` opens its own descriptor,
    which makes two holders in the same process contend like two processes.
    """

    def __init__(  # noqa: PLR0913
        self,
        path: Path,
        *,
        initial_delay_seconds: float = 0.05,
        max_delay_seconds: float = 1.0,
        max_attempts: int = 6_000,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.path = path
        self.initial_delay_seconds = initial_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self.max_attempts = max_attempts
        self._sleep = sleep

    @contextmanager
    def hold(self) -> Iterator[None]:
        """Hold the lock for the duration of the ``with`` block."""

        fd = self._acquire()
        try:
            yield
        finally:
            self._release(fd)

    def _acquire(self) -> int:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.path), os.O_RDWR | os.O_CREAT, 0o600)
        delay = self.initial_delay_seconds
        for attempt in range(1, self.max_attempts + 1):
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                if attempt == self.max_attempts:
                    break
                self._sleep(delay)
                delay = min(delay * 2, self.max_delay_seconds)
                continue
            if attempt > 1:
                logger.debug("Obtained queue lock %s after %d attempts", self.path, attempt)
            return fd

        os.close(fd)
        raise LockTimeoutError(
            f"could not obtain lock {self.path} after {self.max_attempts} attempts",
        )

    def _release(self, fd: int) -> None:
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        except OSError as exc:
            logger.warning("Failed to release queue lock fd=%s: %s", fd, exc)
        finally:
            os.close(fd)
