"""In-process remote store with failure injection.

Holds documents in memory in their wire shape, publishes change events to
subscribers synchronously on every write (including the writer's own
echo), and can be told to fail like a flaky network.  Useful as a local
backend and as the remote side in tests.
"""

from __future__ import annotations

import threading
from collections import defaultdict

from tasksync.core.errors import SyncError, TransientError
from tasksync.core.tasks import Task
from tasksync.sync.bus import Channel
from tasksync.sync.remote import ChangeEvent, ChangeKind, ChangeListener, RemoteStore, Subscription


class InMemoryRemoteStore(RemoteStore):
    """Thread-safe dictionary-backed :class:`RemoteStore`."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._docs: dict[str, dict[str, dict]] = defaultdict(dict)
        self._channels: dict[str, Channel] = {}
        self._failures: list[tuple[str, str | None, SyncError, int | None]] = []
        self.offline = False
        self.calls: list[tuple[str, str, str | None]] = []

    # ------------------------------------------------------------------
    # Failure injection
    # ------------------------------------------------------------------

    def fail(
        self,
        operation: str,
        task_id: str | None = None,
        *,
        error: SyncError | None = None,
        times: int | None = None,
    ) -> None:
        """Make *operation* (``fetch_all``/``fetch_one``/``put``/``delete``) fail.

        Restrict to one document with *task_id*.  *times* limits how many
        calls fail; ``None`` fails until :meth:`clear_failures`.
        """
        with self._lock:
            self._failures.append(
                (operation, task_id, error or TransientError(f"injected {operation} failure"), times)
            )

    def clear_failures(self) -> None:
        with self._lock:
            self._failures.clear()

    # ------------------------------------------------------------------
    # RemoteStore
    # ------------------------------------------------------------------

    def fetch_all(self, user_id: str) -> list[Task]:
        self._enter("fetch_all", user_id, None)
        with self._lock:
            docs = list(self._docs[user_id].values())
        return [Task.from_map(doc) for doc in docs]

    def fetch_one(self, user_id: str, task_id: str) -> Task | None:
        self._enter("fetch_one", user_id, task_id)
        with self._lock:
            doc = self._docs[user_id].get(task_id)
        return Task.from_map(doc) if doc is not None else None

    def put(self, user_id: str, task: Task) -> None:
        self._enter("put", user_id, task.id)
        with self._lock:
            existed = task.id in self._docs[user_id]
            self._docs[user_id][task.id] = task.to_map()
        kind = ChangeKind.MODIFIED if existed else ChangeKind.ADDED
        self._channel(user_id).publish(ChangeEvent(kind, task))

    def delete(self, user_id: str, task_id: str) -> None:
        self._enter("delete", user_id, task_id)
        with self._lock:
            doc = self._docs[user_id].pop(task_id, None)
        if doc is not None:
            self._channel(user_id).publish(ChangeEvent(ChangeKind.REMOVED, Task.from_map(doc)))

    def subscribe_changes(self, user_id: str, listener: ChangeListener) -> Subscription:
        unsubscribe = self._channel(user_id).subscribe(listener)
        return Subscription(unsubscribe)

    # ------------------------------------------------------------------
    # Inspection helpers
    # ------------------------------------------------------------------

    def documents(self, user_id: str) -> dict[str, Task]:
        """Return the stored tasks for *user_id* keyed by ID (no failure injection)."""
        with self._lock:
            return {tid: Task.from_map(doc) for tid, doc in self._docs[user_id].items()}

    def seed(self, user_id: str, task: Task, *, notify: bool = False) -> None:
        """Write a document directly, as another device would."""
        with self._lock:
            existed = task.id in self._docs[user_id]
            self._docs[user_id][task.id] = task.to_map()
        if notify:
            kind = ChangeKind.MODIFIED if existed else ChangeKind.ADDED
            self._channel(user_id).publish(ChangeEvent(kind, task))

    def subscriber_count(self, user_id: str) -> int:
        return len(self._channel(user_id))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _channel(self, user_id: str) -> Channel:
        with self._lock:
            channel = self._channels.get(user_id)
            if channel is None:
                channel = self._channels[user_id] = Channel(f"remote changes ({user_id})")
            return channel

    def _enter(self, operation: str, user_id: str, task_id: str | None) -> None:
        with self._lock:
            self.calls.append((operation, user_id, task_id))
            if self.offline:
                raise TransientError("remote store unreachable")
            for index, (op, target, error, times) in enumerate(self._failures):
                if op != operation or (target is not None and target != task_id):
                    continue
                if times is not None:
                    if times <= 1:
                        del self._failures[index]
                    else:
                        self._failures[index] = (op, target, error, times - 1)
                raise error

