"""Remote store interface and change-feed types.

The remote store is the authoritative document database: one document per
task under a per-user namespace, in the wire shape produced by
:meth:`Task.to_map`.  Backends raise :class:`TransientError` for failures
worth retrying and :class:`PermanentError` for rejections.
"""

from __future__ import annotations

import abc
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum

from tasksync.core.tasks import Task


class ChangeKind(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass(frozen=True)
class ChangeEvent:
    """One server-observed change.  For ``REMOVED`` the task is the last known copy."""

    kind: ChangeKind
    task: Task


ChangeListener = Callable[[ChangeEvent], None]


class Subscription:
    """Handle for a live change feed.  ``cancel()`` is idempotent."""

    def __init__(self, on_cancel: Callable[[], None] | None = None) -> None:
        self._on_cancel = on_cancel
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._on_cancel is not None:
            self._on_cancel()


class RemoteStore(abc.ABC):
    """Network-facing interface to the authoritative document database."""

    @abc.abstractmethod
    def fetch_all(self, user_id: str) -> list[Task]:
        """Return every task document for *user_id*."""

    @abc.abstractmethod
    def fetch_one(self, user_id: str, task_id: str) -> Task | None:
        """Return one task document, or ``None`` if it does not exist."""

    @abc.abstractmethod
    def put(self, user_id: str, task: Task) -> None:
        """Create or overwrite the task document.  Idempotent."""

    @abc.abstractmethod
    def delete(self, user_id: str, task_id: str) -> None:
        """Delete the task document.  Deleting a missing document succeeds."""

    @abc.abstractmethod
    def subscribe_changes(self, user_id: str, listener: ChangeListener) -> Subscription:
        """Deliver :class:`ChangeEvent` objects for *user_id* to *listener*.

        Events arrive in server-observed order, possibly on a background
        thread, and include echoes of this client's own writes.
        """


def diff_documents(previous: dict[str, Task], current: dict[str, Task]) -> list[ChangeEvent]:
    """Describe how a collection changed between two full reads.

    Documents only in *current* are ``ADDED``, documents whose content
    differs are ``MODIFIED``, documents only in *previous* are ``REMOVED``.
    """
    events: list[ChangeEvent] = []
    for task_id, task in current.items():
        before = previous.get(task_id)
        if before is None:
            events.append(ChangeEvent(ChangeKind.ADDED, task))
        elif before != task:
            events.append(ChangeEvent(ChangeKind.MODIFIED, task))
    for task_id, task in previous.items():
        if task_id not in current:
            events.append(ChangeEvent(ChangeKind.REMOVED, task))
    return events


def index_by_id(tasks: Iterable[Task]) -> dict[str, Task]:
    return {task.id: task for task in tasks}
