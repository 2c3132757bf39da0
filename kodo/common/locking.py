"""
Advisory File Locks

Serializes concurrent kodo processes writing the same store file. Each
locked file gets a sibling ``<name>.lock``; acquisition is non-blocking with
exponential backoff and gives up with LockContentionError after a bounded
number of attempts.
"""

import logging
import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

try:
    import fcntl
except ImportError:  # pragma: no cover - non-POSIX platforms run unlocked
    fcntl = None

from .errors import LockContentionError

logger = logging.getLogger("kodo.common.locking")

MAX_BACKOFF = 1.0


def lock_path_for(path: Path) -> Path:
    return path.with_name(path.name + ".lock")


@contextmanager
def file_lock(path: Path, retries: int = 8, backoff: float = 0.05) -> Iterator[None]:
    """
    Hold an exclusive advisory lock scoped to ``path``.

    Args:
        path: File being protected (the lock lives next to it)
        retries: Attempts before giving up
        backoff: Initial sleep between attempts, doubled each retry

    Raises:
        LockContentionError: if the lock is still held after all retries
    """
    if fcntl is None:  # pragma: no cover
        yield
        return

    lock_path = lock_path_for(Path(path))
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(lock_path), os.O_CREAT | os.O_RDWR, 0o600)
    try:
        delay = backoff
        for attempt in range(1, retries + 1):
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if attempt == retries:
                    raise LockContentionError(str(lock_path), retries) from None
                logger.debug("Lock busy: %s (attempt %d/%d)", lock_path, attempt, retries)
                time.sleep(delay)
                delay = min(delay * 2, MAX_BACKOFF)
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)
