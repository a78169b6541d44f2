"""Advisory lock that keeps two conversion runs from overlapping."""

import contextlib
import logging
from pathlib import Path
from typing import Iterator

from filelock import FileLock, Timeout

from reposync.errors import ConcurrentRunError

logger = logging.getLogger(__name__)
logging.getLogger("filelock").setLevel(logging.INFO)


@contextlib.contextmanager
def run_lock(path: str) -> Iterator[FileLock]:
    """Hold the run lock for the duration of the block.

    Acquisition does not wait: if another process holds the lock the run
    exits before touching anything.

    Raises:
        ConcurrentRunError: If the lock is already held
    """
    lock_path = Path(path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock = FileLock(str(lock_path))
    try:
        lock.acquire(timeout=0)
    except Timeout:
        raise ConcurrentRunError(f"another conversion run holds {lock_path}")
    logger.debug(f"Acquired run lock {lock_path}")
    try:
        yield lock
    finally:
        lock.release()
