"""Error taxonomy shared by the stores, remote backends, and sync engine.

Remote failures are split in two: :class:`TransientError` (network, timeout,
overloaded server) is absorbed into the pending-operations queue and retried
later, while :class:`PermanentError` (auth, permission, validation) is
surfaced to the caller and never retried automatically.

A task ID that is absent from the local store is not an error at all:
toggling or deleting it is a no-op.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for tasksync failures."""


class TransientError(SyncError):
    """Remote operation failed for a reason that may clear up on retry."""


class PermanentError(SyncError):
    """Remote operation was rejected and will keep being rejected."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class LocalStorageFailure(SyncError):
    """A durable local write or read failed.

    Fatal to the current session: the session must be stopped and started
    again before further use.
    """


class StoreBusyError(SyncError):
    """Per-user storage is already owned by another open handle."""


class StoreClosedError(RuntimeError):
    """A store handle was used after ``close()``."""


class SessionStateError(RuntimeError):
    """A sync engine operation was called in the wrong session state."""
