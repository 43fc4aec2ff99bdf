from __future__ import annotations

import fcntl
import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from samsync.errors import SyncLockError


@contextmanager
def exclusive_sync_lock(lock_path: Path) -> Iterator[None]:
    """
    Hold a cross-process lock for the duration of a sync run.

    Only one writer may replace the formulary tables at a time; a second run
    fails fast instead of waiting.
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(lock_path), os.O_CREAT | os.O_RDWR)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError:
        os.close(fd)
        raise SyncLockError(
            f"Another sync is already running. Lock file: {lock_path}"
        ) from None

    try:
        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode("ascii"))
        yield
    finally:
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
            lock_path.unlink(missing_ok=True)
