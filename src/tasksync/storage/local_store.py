"""Per-user durable task store.

One JSON document per task in ``users/<user_key>/tasks/``.  Every ``put``
and ``delete`` is fsync'd before returning, so a crash after a call returns
cannot lose that write.  The store holds an exclusive file lock for as long
as it is open; a second concurrent open for the same user is rejected with
:class:`StoreBusyError`.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from tasksync.core.errors import LocalStorageFailure, StoreBusyError, StoreClosedError
from tasksync.core.tasks import Task, serialize_task
from tasksync.storage.fs import (
    atomic_write,
    durable_unlink,
    ensure_user_dirs,
    locks_dir,
    remove_tree,
    user_dir,
    user_key,
)
from tasksync.storage.locks import LockTimeout, acquire_lock, storage_lock, tasks_lock_key

logger = logging.getLogger(__name__)

_TASKS_SUBDIR = "tasks"


class LocalStore:
    """Durable key-value store of :class:`Task` records for one user.

    Use :meth:`open` rather than the constructor.  Reads are served from an
    in-memory index loaded at open time; writes go to disk first, then to
    the index.
    """

    def __init__(self, home: Path, user_id: str, lock) -> None:
        self.home = home
        self.user_id = user_id
        self._tasks_dir = user_dir(home, user_id) / _TASKS_SUBDIR
        self._lock = lock
        self._tasks: dict[str, Task] = {}
        self._closed = False

    @classmethod
    def open(cls, home: Path, user_id: str, *, lock_timeout: float = 0) -> LocalStore:
        """Open (creating if needed) the task store for *user_id*.

        Raises:
            StoreBusyError: If another handle already owns this user's store.
            LocalStorageFailure: If the store directory cannot be read.
        """
        try:
            ensure_user_dirs(home, user_id)
        except OSError as exc:
            raise LocalStorageFailure(f"Cannot create task store: {exc}") from exc

        try:
            lock = acquire_lock(locks_dir(home), tasks_lock_key(user_key(user_id)), lock_timeout)
        except LockTimeout:
            raise StoreBusyError(f"Task store for user '{user_id}' is already open") from None

        store = cls(home, user_id, lock)
        try:
            store._load()
        except BaseException:
            lock.release()
            raise
        return store

    @staticmethod
    def destroy(home: Path, user_id: str) -> None:
        """Delete every persisted task for *user_id*.

        Only valid while no handle is open for that user.

        Raises:
            StoreBusyError: If the store is currently open.
            LocalStorageFailure: If the files cannot be removed.
        """
        key = user_key(user_id)
        try:
            with storage_lock(locks_dir(home), tasks_lock_key(key)):
                remove_tree(user_dir(home, user_id) / _TASKS_SUBDIR)
        except LockTimeout:
            raise StoreBusyError(f"Cannot destroy open task store for user '{user_id}'") from None
        except OSError as exc:
            raise LocalStorageFailure(f"Cannot remove task store: {exc}") from exc

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_all(self) -> list[Task]:
        """Return every stored task.  Order is unspecified."""
        self._check_open()
        return list(self._tasks.values())

    def get(self, task_id: str) -> Task | None:
        self._check_open()
        return self._tasks.get(task_id)

    def __contains__(self, task_id: str) -> bool:
        return self.get(task_id) is not None

    def __len__(self) -> int:
        self._check_open()
        return len(self._tasks)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def put(self, task: Task) -> None:
        """Insert or overwrite *task*, durably."""
        self._check_open()
        try:
            atomic_write(self._task_path(task.id), serialize_task(task))
        except OSError as exc:
            raise LocalStorageFailure(f"Failed to write task {task.id}: {exc}") from exc
        self._tasks[task.id] = task

    def delete(self, task_id: str) -> bool:
        """Remove *task_id* durably.  Returns ``False`` if it was not stored."""
        self._check_open()
        try:
            removed = durable_unlink(self._task_path(task_id))
        except OSError as exc:
            raise LocalStorageFailure(f"Failed to delete task {task_id}: {exc}") from exc
        return self._tasks.pop(task_id, None) is not None or removed

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Release the store.  Data stays on disk.  Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._tasks.clear()
        self._lock.release()

    def __enter__(self) -> LocalStore:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_open(self) -> None:
        if self._closed:
            raise StoreClosedError(f"Task store for user '{self.user_id}' is closed")

    def _task_path(self, task_id: str) -> Path:
        # Remote IDs are opaque; keep them from escaping the tasks directory.
        if "/" in task_id or "\\" in task_id or task_id in (".", "..") or "\x00" in task_id:
            raise ValueError(f"Unsafe task id: {task_id!r}")
        return self._tasks_dir / f"{task_id}.json"

    def _load(self) -> None:
        try:
            paths = sorted(self._tasks_dir.glob("*.json"))
        except OSError as exc:
            raise LocalStorageFailure(f"Cannot list task store: {exc}") from exc

        for path in paths:
            try:
                task = Task.from_map(json.loads(path.read_text(encoding="utf-8")))
            except (json.JSONDecodeError, ValueError) as exc:
                logger.warning("Skipping unreadable task file %s: %s", path.name, exc)
                continue
            except OSError as exc:
                raise LocalStorageFailure(f"Cannot read {path}: {exc}") from exc
            self._tasks[task.id] = task
