"""Single-instance guard for the reconciliation run.

A run can take longer than the interval it is scheduled at. The lock keeps
two runs from working the ledger at the same time; the ledger's primary key
still rejects a duplicate insert if the lock is bypassed.

The lock is an OS file lock (flock on POSIX, msvcrt on Windows) taken through
filelock, so it is released by the OS if the process dies.
"""

from __future__ import annotations

import logging
from pathlib import Path
from types import TracebackType

from filelock import FileLock, Timeout

logger = logging.getLogger(__name__)


class RunLockHeldError(Exception):
    """Raised when another run holds the lock."""

    pass


class RunLock:
    """Non-blocking exclusive lock on a file, held for the duration of a run."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = FileLock(str(path), timeout=0)

    @property
    def held(self) -> bool:
        return self._lock.is_locked

    def acquire(self) -> None:
        """Take the lock.

        Raises:
            RunLockHeldError: If another holder has it.
        """
        if self.held:
            return

        self._path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._lock.acquire()
        except Timeout as e:
            raise RunLockHeldError(f"Another run holds {self._path}") from e

        logger.debug("Run lock acquired", extra={"source": "Run", "lock_file": str(self._path)})

    def release(self) -> None:
        if not self.held:
            return
        self._lock.release()

    def __enter__(self) -> RunLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
