"""Offline-first sync engine for one user's task list.

Session lifecycle::

    CLOSED -> OPENING -> RECONCILING -> LIVE -> CLOSED

``start()`` opens the user's :class:`LocalStore` and
:class:`PendingOpsQueue`, merges the remote collection into local state
(greatest ``last_updated`` wins, ties go to local), then subscribes to
remote changes and connectivity transitions.

Mutations write locally and return at once.  The remote write runs on a
single background worker; a transient failure turns it into a pending
operation, a permanent one is reported through ``on_error``.  Pending
operations are replayed in enqueue order whenever connectivity comes back
or :meth:`SyncEngine.sync` is called.

All local state is touched under one session lock.  Remote calls never run
while the lock is held, and change events from the remote feed are applied
under it, so a feed thread, the worker and the caller never interleave a
read-modify-write.
"""

from __future__ import annotations

import contextlib
import logging
import threading
from collections.abc import Callable, Iterator
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

from tasksync.core.config import default_config, merge_config
from tasksync.core.errors import (
    LocalStorageFailure,
    PermanentError,
    SessionStateError,
    SyncError,
    TransientError,
)
from tasksync.core.ops import OpAction, PendingOperation
from tasksync.core.tasks import Task, local_wins, merge_versions, next_timestamp
from tasksync.storage.fs import durable_unlink, locks_dir, remove_tree, resolve_home, user_dir, user_key
from tasksync.storage.local_store import LocalStore
from tasksync.storage.locks import pending_lock_key, tasks_lock_key
from tasksync.storage.pending_ops import PendingOpsQueue
from tasksync.sync.connectivity import ConnectivityMonitor, ConnectivityStatus
from tasksync.sync.remote import ChangeEvent, ChangeKind, RemoteStore, Subscription, index_by_id

logger = logging.getLogger(__name__)

ErrorCallback = Callable[[SyncError], None]


class SessionState(str, Enum):
    CLOSED = "closed"
    OPENING = "opening"
    RECONCILING = "reconciling"
    LIVE = "live"


class TeardownStatus(str, Enum):
    COMPLETED = "completed"
    BLOCKED_OFFLINE = "blocked_offline"
    BLOCKED_UNSYNCED = "blocked_unsynced"


@dataclass
class DrainResult:
    """Outcome of one pass over the pending-operations queue."""

    attempted: int = 0
    succeeded: int = 0
    superseded: int = 0
    dead_lettered: int = 0
    remaining: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.remaining == 0

    def to_dict(self) -> dict:
        return {
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "superseded": self.superseded,
            "dead_lettered": self.dead_lettered,
            "remaining": self.remaining,
            "error": self.error,
        }


class SyncEngine:
    """Keep a user's local task store and the remote store consistent.

    Args:
        remote: The authoritative document store.
        connectivity: Reachability source.  Defaults to a probe-less
            monitor, which assumes the network is reachable.
        home: Root of local storage (see :func:`resolve_home`).
        config: Overrides merged over :func:`default_config`.
        on_error: Called with permanent remote failures and background
            local-storage failures.  Runs on the thread that hit the error.
    """

    def __init__(
        self,
        remote: RemoteStore,
        connectivity: ConnectivityMonitor | None = None,
        *,
        home: Path | str | None = None,
        config: dict | None = None,
        on_error: ErrorCallback | None = None,
    ) -> None:
        self.remote = remote
        self.connectivity = connectivity or ConnectivityMonitor()
        self.home = resolve_home(home)
        self.config = merge_config(default_config(), config or {})
        self._on_error = on_error

        self._lock = threading.RLock()
        self._state = SessionState.CLOSED
        self._user_id: str | None = None
        self._store: LocalStore | None = None
        self._queue: PendingOpsQueue | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._remote_sub: Subscription | None = None
        self._unsubscribe_connectivity: Callable[[], None] | None = None
        self._tombstones: dict[str, datetime] = {}
        self._inflight = 0
        self._drain_future: Future | None = None
        self._stopping = False
        self._failure: LocalStorageFailure | None = None

        self.last_error: SyncError | None = None
        self.last_drain: DrainResult | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def lock_timeout(self) -> float:
        return float(self.config.get("sync", {}).get("lock_timeout_seconds", 0))

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def start(self, user_id: str) -> None:
        """Open *user_id*'s local state, reconcile, and go live.

        Raises:
            SessionStateError: If a session is already open.
            StoreBusyError: If another process owns this user's storage.
            LocalStorageFailure: If local state cannot be opened or written.
        """
        if not user_id:
            raise ValueError("user_id must not be empty")

        with self._lock:
            if self._state is not SessionState.CLOSED:
                raise SessionStateError(f"Cannot start: session is {self._state.value}")
            self._state = SessionState.OPENING
            self._user_id = user_id
            self._stopping = False
            self._failure = None
            self.last_error = None
            self.last_drain = None
            try:
                self._store = LocalStore.open(self.home, user_id, lock_timeout=self.lock_timeout)
                self._queue = PendingOpsQueue.open(self.home, user_id, lock_timeout=self.lock_timeout)
            except BaseException:
                self._reset()
                raise
            self._tombstones = {
                op.task_id: op.enqueued_at
                for _, op in self._queue.entries()
                if op.action is OpAction.DELETE
            }
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="tasksync-remote")
            self._state = SessionState.RECONCILING
        logger.info("Session for %s opened", user_id)

        try:
            self._reconcile(user_id)
            with self._lock:
                self._state = SessionState.LIVE
            self._remote_sub = self.remote.subscribe_changes(user_id, self.handle_change)
            self._unsubscribe_connectivity = self.connectivity.subscribe(self._on_connectivity)
        except BaseException:
            self.stop()
            raise

        with self._lock:
            pending = len(self._queue)
        if pending and self.connectivity.is_reachable():
            logger.info("Draining %d pending operation(s) left from a previous session", pending)
            self._request_drain()

    def stop(self) -> None:
        """Cancel subscriptions, finish background work, and close the stores.

        Local data is kept.  Pushes still waiting when ``stop()`` is called
        are written to the pending queue instead of the network.
        """
        with self._lock:
            if self._state is SessionState.CLOSED:
                return
            self._stopping = True
            remote_sub, self._remote_sub = self._remote_sub, None
            unsubscribe, self._unsubscribe_connectivity = self._unsubscribe_connectivity, None
            executor, self._executor = self._executor, None
            user_id = self._user_id

        if remote_sub is not None:
            remote_sub.cancel()
        if unsubscribe is not None:
            unsubscribe()
        if executor is not None:
            executor.shutdown(wait=True)

        with self._lock:
            self._reset()
        logger.info("Session for %s closed", user_id)

    @contextlib.contextmanager
    def session(self, user_id: str) -> Iterator[SyncEngine]:
        """``start()`` on entry, ``wait_idle()`` and ``stop()`` on exit."""
        self.start(user_id)
        try:
            yield self
            self.wait_idle()
        finally:
            self.stop()

    def teardown(self, user_id: str, *, force: bool = False) -> TeardownStatus:
        """Sign-out: flush, drain if possible, then delete *user_id*'s local state.

        When writes are still unsynced the local state is kept and a
        ``BLOCKED_*`` status is returned instead, unless *force* is set.
        Works on a live session for *user_id* or on a closed engine.
        """
        with self._lock:
            state = self._state
            active_user = self._user_id
        if state is not SessionState.CLOSED and active_user != user_id:
            raise SessionStateError(f"Cannot tear down '{user_id}': session belongs to '{active_user}'")

        if state is SessionState.LIVE:
            self.wait_idle()
            reachable = self.connectivity.is_reachable()
            if reachable and self.has_pending_work():
                self.sync()
            if self.has_pending_work() and not force:
                return self._blocked(user_id, reachable)
            self.stop()
        elif state is SessionState.CLOSED:
            blocked = self._settle_closed_queue(user_id)
            if blocked is not None and not force:
                return blocked
        else:
            raise SessionStateError(f"Cannot tear down while session is {state.value}")

        self._destroy_user_data(user_id)
        logger.info("Local state for %s deleted", user_id)
        return TeardownStatus.COMPLETED

    # ------------------------------------------------------------------
    # Task operations
    # ------------------------------------------------------------------

    def list_tasks(self) -> list[Task]:
        with self._live():
            return self._store.get_all()

    def get_task(self, task_id: str) -> Task | None:
        with self._live():
            return self._store.get(task_id)

    def add_task(self, title: str) -> Task:
        """Create a task locally and push it in the background."""
        task = Task.new(title)
        with self._live():
            self._store.put(task)
            self._schedule_push(PendingOperation.update(task))
        return task

    def toggle_complete(self, task_id: str) -> Task | None:
        """Flip completion.  Returns the new version, or ``None`` if unknown."""
        with self._live():
            current = self._store.get(task_id)
            if current is None:
                return None
            updated = current.toggled()
            self._store.put(updated)
            self._schedule_push(PendingOperation.update(updated))
        return updated

    def delete_task(self, task_id: str) -> bool:
        """Delete locally and remotely.  Returns ``False`` if unknown."""
        with self._live():
            current = self._store.get(task_id)
            if current is None:
                return False
            deleted_at = next_timestamp(current.last_updated)
            self._store.delete(task_id)
            self._tombstones[task_id] = deleted_at
            self._schedule_push(PendingOperation.delete(task_id, deleted_at))
        return True

    # ------------------------------------------------------------------
    # Sync status and control
    # ------------------------------------------------------------------

    def has_pending_work(self) -> bool:
        """True while writes are queued or a background push is in flight."""
        with self._lock:
            self._require_open()
            return self._inflight > 0 or not self._queue.is_empty()

    def pending_operations(self) -> list[tuple[int, PendingOperation]]:
        with self._lock:
            self._require_open()
            return self._queue.entries()

    def dead_letters(self) -> list[dict]:
        with self._lock:
            self._require_open()
            return self._queue.dead_letters()

    def sync(self, timeout: float | None = None) -> bool:
        """Drain the pending queue now.  ``True`` if it ended empty."""
        with self._live():
            future = self._request_drain()
        return future.result(timeout).ok

    def wait_idle(self, timeout: float | None = None) -> None:
        """Block until background remote work scheduled so far has run."""
        with self._lock:
            executor = self._executor if not self._stopping else None
        if executor is None:
            return
        executor.submit(lambda: None).result(timeout)

    # ------------------------------------------------------------------
    # Remote change feed
    # ------------------------------------------------------------------

    def handle_change(self, event: ChangeEvent) -> None:
        """Apply one remote change to the local store (last writer wins).

        Applying the same event twice is a no-op the second time, which
        makes echoes of this engine's own writes harmless.
        """
        with self._lock:
            if self._state is not SessionState.LIVE or self._stopping or self._failure is not None:
                return
            try:
                self._apply_change(event)
            except ValueError as exc:
                logger.warning("Ignoring remote change: %s", exc)
            except LocalStorageFailure as exc:
                self._failure = exc
                self._report(exc)

    def _apply_change(self, event: ChangeEvent) -> None:
        task = event.task
        local = self._store.get(task.id)
        if event.kind is ChangeKind.REMOVED:
            if local is not None and local.last_updated <= task.last_updated:
                self._store.delete(task.id)
                logger.debug("Remote removed %s", task.id)
            return
        if self._tombstoned(task):
            return
        if merge_versions(local, task) is task:
            self._store.put(task)
            logger.debug("Remote %s %s", event.kind.value, task.id)

    def _tombstoned(self, task: Task) -> bool:
        deleted_at = self._tombstones.get(task.id)
        return deleted_at is not None and task.last_updated <= deleted_at

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def _reconcile(self, user_id: str) -> None:
        if not self.connectivity.is_reachable():
            logger.info("Offline at session start; skipping reconciliation")
            return
        try:
            remote_tasks = index_by_id(self.remote.fetch_all(user_id))
        except (TransientError, PermanentError) as exc:
            logger.warning("Reconciliation skipped, could not read remote tasks: %s", exc)
            return

        pulled = 0
        to_push: list[Task] = []
        with self._lock:
            for task in remote_tasks.values():
                if self._tombstoned(task):
                    continue
                if merge_versions(self._store.get(task.id), task) is not task:
                    continue
                try:
                    self._store.put(task)
                except ValueError as exc:
                    logger.warning("Skipping remote task: %s", exc)
                    continue
                pulled += 1
            for task in self._store.get_all():
                if local_wins(task, remote_tasks.get(task.id)):
                    to_push.append(task)

        pushed = 0
        for index, task in enumerate(to_push):
            try:
                self.remote.put(user_id, task)
                pushed += 1
            except (TransientError, PermanentError) as exc:
                unsent = to_push[index:]
                logger.warning(
                    "Reconciliation push of %s failed: %s; queueing %d unsent task(s)", task.id, exc, len(unsent)
                )
                self._queue_unsent(unsent)
                break
        logger.info("Reconciled %s: %d pulled, %d pushed", user_id, pulled, pushed)

    def _queue_unsent(self, tasks: list[Task]) -> None:
        with self._lock:
            pending = {op.task_id for _, op in self._queue.entries()}
            for task in tasks:
                if task.id not in pending:
                    self._queue.append(PendingOperation.update(task))

    # ------------------------------------------------------------------
    # Optimistic pushes
    # ------------------------------------------------------------------

    def _schedule_push(self, op: PendingOperation) -> None:
        # Caller holds the session lock.
        self._inflight += 1
        self._executor.submit(self._push, op)

    def _push(self, op: PendingOperation) -> None:
        try:
            if self._stopping or not self.connectivity.is_reachable():
                self._enqueue(op)
                return
            try:
                self._send(self._user_id, op)
            except TransientError as exc:
                logger.info("Remote %s of %s failed (%s); queued for retry", op.action.value, op.task_id, exc)
                self._enqueue(op)
            except PermanentError as exc:
                self._report(exc)
        except Exception:
            logger.exception("Unexpected error pushing %s; queued for retry", op.task_id)
            self._enqueue(op)
        finally:
            with self._lock:
                self._inflight -= 1

    def _send(self, user_id: str, op: PendingOperation) -> None:
        if op.action is OpAction.UPDATE:
            self.remote.put(user_id, op.task)
        else:
            self.remote.delete(user_id, op.task_id)

    def _enqueue(self, op: PendingOperation) -> None:
        with self._lock:
            try:
                self._queue.append(op)
            except LocalStorageFailure as exc:
                self._failure = exc
                self._report(exc)

    # ------------------------------------------------------------------
    # Drain
    # ------------------------------------------------------------------

    def _on_connectivity(self, status: ConnectivityStatus) -> None:
        if status is not ConnectivityStatus.REACHABLE:
            return
        with self._lock:
            if self._state is not SessionState.LIVE or self._stopping or self._failure is not None:
                return
            # A push still in flight may be about to queue its operation.
            if self._queue.is_empty() and not self._inflight:
                return
            logger.info("Connectivity restored; draining %d pending operation(s)", len(self._queue))
            self._request_drain()

    def _request_drain(self) -> Future:
        with self._lock:
            if self._drain_future is not None and not self._drain_future.done():
                return self._drain_future
            self._drain_future = self._executor.submit(self._drain)
            return self._drain_future

    def _drain(self) -> DrainResult:
        try:
            result = self._drain_queue(self._user_id, self._queue)
        except LocalStorageFailure as exc:
            with self._lock:
                self._failure = exc
            self._report(exc)
            result = DrainResult(error=str(exc))
        self.last_drain = result
        return result

    def _drain_queue(self, user_id: str, queue: PendingOpsQueue) -> DrainResult:
        """Replay *queue* against the remote store in enqueue order.

        An entry is removed only after the remote confirms it, or when the
        remote already holds a newer version.  After a transient failure the
        remaining entries for that task are left alone so per-task order is
        never inverted.
        """
        result = DrainResult()
        blocked: set[str] = set()
        with self._lock:
            entries = queue.entries()

        for seq, op in entries:
            if self._stopping:
                result.error = "session stopping"
                break
            if op.task_id in blocked:
                continue
            result.attempted += 1
            try:
                applied = self._replay(user_id, op)
            except TransientError as exc:
                blocked.add(op.task_id)
                result.error = str(exc)
                logger.info("Retry of %s %s failed: %s", op.action.value, op.task_id, exc)
                if not self.connectivity.is_reachable():
                    break
                continue
            except PermanentError as exc:
                with self._lock:
                    queue.dead_letter(seq, str(exc))
                result.dead_lettered += 1
                self._report(exc)
                continue

            with self._lock:
                queue.remove(seq)
            if applied:
                result.succeeded += 1
            else:
                result.superseded += 1

        with self._lock:
            result.remaining = len(queue)
        logger.info(
            "Drain for %s: %d sent, %d superseded, %d dead-lettered, %d remaining",
            user_id,
            result.succeeded,
            result.superseded,
            result.dead_lettered,
            result.remaining,
        )
        return result

    def _replay(self, user_id: str, op: PendingOperation) -> bool:
        """Send one queued operation.  ``False`` when the remote is already newer."""
        current = self.remote.fetch_one(user_id, op.task_id)
        if op.action is OpAction.UPDATE:
            if current is not None and current.last_updated > op.task.last_updated:
                return False
            self.remote.put(user_id, op.task)
            return True
        if current is None:
            return True
        if current.last_updated > op.enqueued_at:
            return False
        self.remote.delete(user_id, op.task_id)
        return True

    # ------------------------------------------------------------------
    # Teardown helpers
    # ------------------------------------------------------------------

    def _blocked(self, user_id: str, reachable: bool) -> TeardownStatus:
        if reachable:
            logger.warning("Sign-out of %s blocked: pending writes could not be synced", user_id)
            return TeardownStatus.BLOCKED_UNSYNCED
        logger.warning("Sign-out of %s blocked: pending writes and no connectivity", user_id)
        return TeardownStatus.BLOCKED_OFFLINE

    def _settle_closed_queue(self, user_id: str) -> TeardownStatus | None:
        queue = PendingOpsQueue.open(self.home, user_id, lock_timeout=self.lock_timeout)
        try:
            if queue.is_empty():
                return None
            reachable = self.connectivity.is_reachable()
            if reachable:
                self.last_drain = self._drain_queue(user_id, queue)
            if queue.is_empty():
                return None
            return self._blocked(user_id, reachable)
        finally:
            queue.close()

    def _destroy_user_data(self, user_id: str) -> None:
        LocalStore.destroy(self.home, user_id)
        PendingOpsQueue.destroy(self.home, user_id)
        key = user_key(user_id)
        try:
            remove_tree(user_dir(self.home, user_id))
            for lock_key in (tasks_lock_key(key), pending_lock_key(key)):
                durable_unlink(locks_dir(self.home) / f"{lock_key}.lock")
        except OSError as exc:
            raise LocalStorageFailure(f"Cannot remove local state for '{user_id}': {exc}") from exc

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextlib.contextmanager
    def _live(self) -> Iterator[None]:
        """Hold the session lock for a public operation on a live session."""
        with self._lock:
            if self._failure is not None:
                raise LocalStorageFailure(
                    f"Session failed and must be restarted: {self._failure}"
                ) from self._failure
            if self._state is not SessionState.LIVE or self._stopping:
                raise SessionStateError(f"Session is {self._state.value}, not live")
            try:
                yield
            except LocalStorageFailure as exc:
                self._failure = exc
                raise

    def _require_open(self) -> None:
        if self._queue is None or self._state is SessionState.CLOSED:
            raise SessionStateError("No open session")

    def _report(self, exc: SyncError) -> None:
        self.last_error = exc
        logger.error("%s: %s", type(exc).__name__, exc)
        if self._on_error is None:
            return
        try:
            self._on_error(exc)
        except Exception:
            logger.exception("on_error callback failed")

    def _reset(self) -> None:
        # Caller holds the session lock.
        for handle in (self._queue, self._store):
            if handle is not None:
                handle.close()
        self._store = None
        self._queue = None
        self._executor = None
        self._remote_sub = None
        self._unsubscribe_connectivity = None
        self._tombstones = {}
        self._inflight = 0
        self._drain_future = None
        self._stopping = False
        self._user_id = None
        self._state = SessionState.CLOSED
