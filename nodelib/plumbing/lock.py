"""
Named locks shared between processes on the host, backed by `flock` on a file per lock.
"""

from contextlib import contextmanager
import fcntl
import logging
import os
import os.path
from typing import Generator

from ..errors import LockTimeoutError
from .common import Clock, poll


LOG = logging.getLogger(__name__)


@contextmanager
def named_lock(lock_dir: str, name: str, timeout: float, clock: Clock,
               interval: float = 0.1) -> Generator[str, None, None]:
    """
    Hold an exclusive lock for the duration of the block:

        with named_lock(host.settings.lock_dir, "prometheus-config", 30, host.clock):
            ...

    Raises `LockTimeoutError` if the lock isn't free within `timeout` seconds.  The lock is
    released on every exit path, and also by the kernel if the process dies.
    """
    os.makedirs(lock_dir, exist_ok=True)
    path = os.path.join(lock_dir, "{}.lock".format(name))
    with open(path, "a") as handle:

        def attempt() -> bool:
            try:
                fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                return False
            return True

        if not poll(attempt, interval, timeout, clock):
            raise LockTimeoutError(name, timeout)
        LOG.debug("Acquired lock %r", name)
        try:
            yield path
        finally:
            fcntl.flock(handle, fcntl.LOCK_UN)
            LOG.debug("Released lock %r", name)
