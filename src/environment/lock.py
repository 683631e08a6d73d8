"""Exclusive advisory lock on an environment (or depot) directory."""

from __future__ import annotations

import fcntl
import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from constants import Constants
from errors import EnvironmentLockedError

logger = logging.getLogger(__name__)


@contextmanager
def directory_lock(directory: Path, blocking: bool = Constants.LOCK_BLOCKING) -> Iterator[Path]:
    """Hold an exclusive ``flock`` on ``directory`` for the duration of the block.

    The lock lives in a sidecar file so environment files can still be
    replaced with ``os.replace``. With ``blocking=False`` a held lock raises
    immediately instead of waiting.

    Raises:
        EnvironmentLockedError: If non-blocking and another process holds it.
    """
    directory.mkdir(parents=True, exist_ok=True)
    lock_path = directory / Constants.LOCK_FILE
    with open(lock_path, "a+", encoding="utf-8") as handle:
        flags = fcntl.LOCK_EX if blocking else fcntl.LOCK_EX | fcntl.LOCK_NB
        try:
            fcntl.flock(handle.fileno(), flags)
        except BlockingIOError as exc:
            raise EnvironmentLockedError(str(directory)) from exc
        logger.debug("Acquired lock %s (pid %s)", lock_path, os.getpid())
        try:
            yield lock_path
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            logger.debug("Released lock %s", lock_path)
