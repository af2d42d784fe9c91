"""Coarse single-instance lock for the agent process."""

import fcntl
import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


class InstanceLockedError(RuntimeError):
    """Another agent instance holds the lock file."""


@contextmanager
def instance_lock(lock_path: Path) -> Iterator[Path]:
    """Hold an exclusive, non-blocking flock on lock_path for the block.

    The lock is released by the kernel if the process dies, so a stale file
    never blocks later runs.

    Raises:
        InstanceLockedError: If another process holds the lock
    """
    logger = logging.getLogger("pkgagent.lock")
    lock_path = Path(lock_path)
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o644)
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            raise InstanceLockedError(f"Another instance holds {lock_path}")

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        logger.debug(f"Acquired instance lock {lock_path}")
        try:
            yield lock_path
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug(f"Released instance lock {lock_path}")
    finally:
        os.close(fd)
