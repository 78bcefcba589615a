from __future__ import annotations

import contextlib
import fcntl
import logging
import os
from pathlib import Path
from typing import Iterator

logger = logging.getLogger(__name__)


class RunLocked(RuntimeError):
    pass


@contextlib.contextmanager
def run_lock(lock_path: Path) -> Iterator[None]:
    """Hold an exclusive lock for the duration of one run.

    Two runs sharing a mount point would unmount each other's volume, so an
    overlapping run fails immediately instead of waiting.
    """

    lock_path.parent.mkdir(parents=True, exist_ok=True)
    fh = lock_path.open("a+")
    try:
        try:
            fcntl.flock(fh, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            fh.seek(0)
            holder = fh.read().strip() or "unknown"
            raise RunLocked(f"Another run holds {lock_path} ({holder})") from None

        fh.seek(0)
        fh.truncate()
        fh.write(f"pid={os.getpid()}\n")
        fh.flush()
        logger.debug("Acquired run lock %s", lock_path)
        try:
            yield None
        finally:
            fcntl.flock(fh, fcntl.LOCK_UN)
    finally:
        fh.close()
