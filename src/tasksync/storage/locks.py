"""File locking for exclusive ownership of per-user storage."""

from __future__ import annotations

import contextlib
from collections.abc import Generator
from pathlib import Path

from filelock import FileLock, Timeout


class LockTimeout(Exception):
    """Raised when a lock cannot be acquired within the timeout period."""


def acquire_lock(locks_dir: Path, key: str, timeout: float = 0) -> FileLock:
    """Acquire the file lock at ``locks_dir/<key>.lock`` and return it held.

    The caller owns the returned lock and must ``release()`` it.  Used by
    store handles that keep their storage locked for as long as they are open.

    Raises:
        LockTimeout: If the lock cannot be acquired within *timeout* seconds.
    """
    locks_dir.mkdir(parents=True, exist_ok=True)
    # Store handles may be closed from a different thread than opened them.
    lock = FileLock(locks_dir / f"{key}.lock", timeout=timeout, thread_local=False)
    try:
        lock.acquire()
    except Timeout:
        raise LockTimeout(f"Could not acquire lock '{key}' within {timeout}s") from None
    return lock


@contextlib.contextmanager
def storage_lock(
    locks_dir: Path,
    key: str,
    timeout: float = 0,
) -> Generator[None, None, None]:
    """Hold ``locks_dir/<key>.lock`` for the duration of the block.

    Raises:
        LockTimeout: If the lock cannot be acquired within *timeout* seconds.
    """
    lock = acquire_lock(locks_dir, key, timeout)
    try:
        yield
    finally:
        lock.release()


def tasks_lock_key(key: str) -> str:
    return f"tasks_{key}"


def pending_lock_key(key: str) -> str:
    return f"pending_{key}"
