"""
Account locking for keyward.

Two layers guard the refresh-and-persist sequence of an account: a process-wide
re-entrant mutex and an advisory ``flock`` on a per-account lock file, which is
what separates independent invocations of the tool.
"""

import base64
import fcntl
import logging
import os
import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterator

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.05

_mutexes: Dict[str, threading.RLock] = {}
_mutexes_guard = threading.Lock()


def account_mutex(account: str) -> threading.RLock:
    """Get the process-wide mutex for an account."""
    with _mutexes_guard:
        mutex = _mutexes.get(account)
        if mutex is None:
            mutex = threading.RLock()
            _mutexes[account] = mutex
        return mutex


def lock_path_for(lock_dir: str, account: str) -> str:
    """Lock file path for an account."""
    encoded = base64.urlsafe_b64encode(account.encode("utf-8")).decode("ascii")
    return os.path.join(lock_dir, f"{encoded.rstrip('=')}.lock")


class AccountLock:
    """Advisory inter-process lock scoped to one account.

    ``acquire`` polls a non-blocking ``flock`` until ``timeout`` elapses.
    Each instance opens its own file description, so two instances conflict
    even inside one process.
    """

    def __init__(self, lock_dir: str, account: str) -> None:
        self.path = lock_path_for(lock_dir, account)
        self.account = account
        self._handle = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self, timeout: float) -> bool:
        os.makedirs(os.path.dirname(self.path), mode=0o700, exist_ok=True)
        handle = open(self.path, "a+")
        deadline = time.monotonic() + max(timeout, 0)
        while True:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    handle.close()
                    logger.warning(
                        f"Timed out after {timeout:.1f}s waiting for the lock of {self.account}"
                    )
                    return False
                time.sleep(_POLL_INTERVAL)
                continue
            self._handle = handle
            logger.debug(f"Acquired lock for {self.account}")
            return True

    def release(self) -> None:
        if self._handle is None:
            return
        try:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None
            logger.debug(f"Released lock for {self.account}")


@contextmanager
def refresh_lock(lock_dir: str, account: str, timeout: float) -> Iterator[bool]:
    """
    Hold both lock layers for an account.

    Yields True when the inter-process lock was acquired, False when the wait
    timed out. The in-process mutex is always held inside the block.
    """
    with account_mutex(account):
        lock = AccountLock(lock_dir, account)
        acquired = lock.acquire(timeout)
        try:
            yield acquired
        finally:
            lock.release()
