"""Durable, ordered queue of remote writes that have not reached the server.

The queue is an append-only JSONL log in ``users/<user_key>/pending.jsonl``
replayed on open::

    {"type": "enqueued", "seq": 7, "op": {...}}
    {"type": "removed", "seq": 7}
    {"type": "floor", "seq": 7}

``floor`` records are written by compaction so sequence keys keep growing
after the log is rewritten.  Every append is fsync'd before returning.  A
torn final line (crash mid-append) is skipped on replay.

Operations that the server rejects permanently are moved to a separate
dead-letter log, ``dead_letters.jsonl``, instead of blocking the queue.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path

from tasksync.core.errors import LocalStorageFailure, StoreBusyError, StoreClosedError
from tasksync.core.ops import PendingOperation
from tasksync.core.tasks import format_timestamp, utc_now
from tasksync.storage.fs import (
    atomic_write,
    durable_unlink,
    ensure_user_dirs,
    jsonl_append,
    locks_dir,
    user_dir,
    user_key,
)
from tasksync.storage.locks import LockTimeout, acquire_lock, pending_lock_key, storage_lock

logger = logging.getLogger(__name__)

PENDING_LOG = "pending.jsonl"
DEAD_LETTER_LOG = "dead_letters.jsonl"


def _serialize_record(record: dict) -> str:
    """Serialize a log record to compact JSONL (one line, trailing newline)."""
    return json.dumps(record, sort_keys=True, separators=(",", ":")) + "\n"


def _read_records(path: Path) -> list[dict]:
    """Read all well-formed records from a JSONL log; missing file → empty."""
    records: list[dict] = []
    if not path.exists():
        return records
    for lineno, line in enumerate(path.read_text(encoding="utf-8").splitlines(), 1):
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Skipping corrupt line %d in %s", lineno, path.name)
            continue
        if isinstance(record, dict):
            records.append(record)
    return records


def _has_torn_tail(path: Path) -> bool:
    """True if the log does not end with a newline (crash mid-append)."""
    if not path.exists():
        return False
    with open(path, "rb") as fh:
        fh.seek(0, 2)
        if fh.tell() == 0:
            return False
        fh.seek(-1, 2)
        return fh.read(1) != b"\n"


class PendingOpsQueue:
    """Ordered, durable log of :class:`PendingOperation` entries for one user.

    Use :meth:`open` rather than the constructor.  The queue performs no
    remote I/O; it is storage plus enumeration.
    """

    def __init__(self, home: Path, user_id: str, lock) -> None:
        self.home = home
        self.user_id = user_id
        udir = user_dir(home, user_id)
        self._log_path = udir / PENDING_LOG
        self._dead_path = udir / DEAD_LETTER_LOG
        self._lock = lock
        self._entries: dict[int, PendingOperation] = {}
        self._next_seq = 1
        self._closed = False

    @classmethod
    def open(cls, home: Path, user_id: str, *, lock_timeout: float = 0) -> PendingOpsQueue:
        """Open (creating if needed) the pending-operations log for *user_id*.

        Raises:
            StoreBusyError: If another handle already owns this user's queue.
            LocalStorageFailure: If the log cannot be read or compacted.
        """
        try:
            ensure_user_dirs(home, user_id)
        except OSError as exc:
            raise LocalStorageFailure(f"Cannot create pending queue: {exc}") from exc

        try:
            lock = acquire_lock(locks_dir(home), pending_lock_key(user_key(user_id)), lock_timeout)
        except LockTimeout:
            raise StoreBusyError(f"Pending queue for user '{user_id}' is already open") from None

        queue = cls(home, user_id, lock)
        try:
            queue._replay()
        except BaseException:
            lock.release()
            raise
        return queue

    @staticmethod
    def destroy(home: Path, user_id: str) -> None:
        """Delete the pending log and dead-letter log for *user_id*.

        Raises:
            StoreBusyError: If the queue is currently open.
            LocalStorageFailure: If the files cannot be removed.
        """
        udir = user_dir(home, user_id)
        try:
            with storage_lock(locks_dir(home), pending_lock_key(user_key(user_id))):
                durable_unlink(udir / PENDING_LOG)
                durable_unlink(udir / DEAD_LETTER_LOG)
        except LockTimeout:
            raise StoreBusyError(f"Cannot destroy open pending queue for user '{user_id}'") from None
        except OSError as exc:
            raise LocalStorageFailure(f"Cannot remove pending queue: {exc}") from exc

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    def append(self, op: PendingOperation) -> int:
        """Durably add *op* at the tail and return its sequence key."""
        self._check_open()
        seq = self._next_seq
        self._write({"type": "enqueued", "seq": seq, "op": op.to_map()})
        self._entries[seq] = op
        self._next_seq = seq + 1
        return seq

    def entries(self) -> list[tuple[int, PendingOperation]]:
        """Return ``(sequence_key, op)`` pairs in enqueue order."""
        self._check_open()
        return sorted(self._entries.items())

    def __iter__(self) -> Iterator[tuple[int, PendingOperation]]:
        return iter(self.entries())

    def __len__(self) -> int:
        self._check_open()
        return len(self._entries)

    def is_empty(self) -> bool:
        self._check_open()
        return not self._entries

    def remove(self, seq: int) -> bool:
        """Durably remove the entry with key *seq*.  Returns ``False`` if absent."""
        self._check_open()
        if seq not in self._entries:
            return False
        self._write({"type": "removed", "seq": seq})
        del self._entries[seq]
        if not self._entries:
            self._compact()
        return True

    def dead_letter(self, seq: int, reason: str) -> bool:
        """Move entry *seq* to the dead-letter log.  Returns ``False`` if absent."""
        self._check_open()
        op = self._entries.get(seq)
        if op is None:
            return False
        record = {
            "seq": seq,
            "op": op.to_map(),
            "reason": reason,
            "at": format_timestamp(utc_now()),
        }
        try:
            jsonl_append(self._dead_path, _serialize_record(record))
        except OSError as exc:
            raise LocalStorageFailure(f"Failed to write dead letter: {exc}") from exc
        return self.remove(seq)

    def dead_letters(self) -> list[dict]:
        """Return every dead-lettered record, oldest first."""
        self._check_open()
        try:
            return _read_records(self._dead_path)
        except OSError as exc:
            raise LocalStorageFailure(f"Cannot read dead letters: {exc}") from exc

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Release the queue.  Entries stay on disk.  Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._entries.clear()
        self._lock.release()

    def __enter__(self) -> PendingOpsQueue:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_open(self) -> None:
        if self._closed:
            raise StoreClosedError(f"Pending queue for user '{self.user_id}' is closed")

    def _write(self, record: dict) -> None:
        try:
            jsonl_append(self._log_path, _serialize_record(record))
        except OSError as exc:
            raise LocalStorageFailure(f"Failed to append to pending queue: {exc}") from exc

    def _replay(self) -> None:
        try:
            records = _read_records(self._log_path)
            torn = _has_torn_tail(self._log_path)
        except OSError as exc:
            raise LocalStorageFailure(f"Cannot read pending queue: {exc}") from exc

        max_seq = 0
        removed_any = False
        for record in records:
            seq = record.get("seq")
            if not isinstance(seq, int):
                continue
            max_seq = max(max_seq, seq)
            rtype = record.get("type")
            if rtype == "enqueued":
                try:
                    self._entries[seq] = PendingOperation.from_map(record.get("op") or {})
                except ValueError as exc:
                    logger.warning("Dropping malformed pending operation %d: %s", seq, exc)
            elif rtype == "removed":
                self._entries.pop(seq, None)
                removed_any = True

        self._next_seq = max_seq + 1
        if removed_any or torn:
            self._compact()

    def _compact(self) -> None:
        """Rewrite the log with only live entries, preserving the sequence floor."""
        lines = [_serialize_record({"type": "floor", "seq": self._next_seq - 1})]
        for seq, op in sorted(self._entries.items()):
            lines.append(_serialize_record({"type": "enqueued", "seq": seq, "op": op.to_map()}))
        try:
            atomic_write(self._log_path, "".join(lines))
        except OSError as exc:
            raise LocalStorageFailure(f"Failed to compact pending queue: {exc}") from exc
