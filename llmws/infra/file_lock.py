"""
Scoped exclusive lock for transcript files.

One lock per transcript path, held as a POSIX ``flock`` on a sibling
``<path>.lock`` file.  Acquisition polls with ``LOCK_NB`` until a deadline
so a stuck writer turns into a :class:`LockTimeoutError` instead of a hung
call.  ``flock`` locks belong to the open file description, so two calls
in the same process contend just like two processes do.

Usage::

    async with acquire_session_write_lock(path, timeout=10.0):
        ...  # read-modify-append the transcript
"""

import asyncio
import contextlib
import fcntl
import logging
import os
import time
from pathlib import Path
from typing import AsyncIterator, Union

from llmws.core.types import LockTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT = 10.0   # seconds
_POLL_INTERVAL = 0.025


def lock_path_for(path: Union[str, Path]) -> Path:
    path = Path(path)
    return path.with_name(path.name + ".lock")


def _try_lock(fd: int) -> bool:
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        return False
    return True


@contextlib.asynccontextmanager
async def acquire_session_write_lock(path: Union[str, Path],
                                     timeout: float = DEFAULT_LOCK_TIMEOUT,
                                     ) -> AsyncIterator[Path]:
    """Hold the exclusive write lock for *path* for the duration of the block.

    Raises :class:`LockTimeoutError` if the lock is not free within *timeout*
    seconds.  The lock is released on every exit path.
    """
    lock_file = lock_path_for(path)
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(lock_file, os.O_RDWR | os.O_CREAT, 0o644)
    try:
        deadline = time.monotonic() + max(timeout, 0.0)
        while not _try_lock(fd):
            if time.monotonic() >= deadline:
                raise LockTimeoutError(
                    f"session file locked (timeout {timeout:g}s): {path}")
            await asyncio.sleep(_POLL_INTERVAL)
        logger.debug("Acquired transcript lock %s", lock_file)
        try:
            yield lock_file
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Released transcript lock %s", lock_file)
    finally:
        os.close(fd)
