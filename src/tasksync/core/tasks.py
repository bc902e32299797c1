"""Task records, their wire/storage codec, and last-writer-wins rules."""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone

from tasksync.core.ids import generate_task_id

# Smallest step used to keep a task's lastUpdated strictly advancing.
_TICK = timedelta(microseconds=1)


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format *value* as ISO-8601 UTC with microseconds and a ``Z`` suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = value.astimezone(timezone.utc).isoformat(timespec="microseconds")
    return text.replace("+00:00", "Z")


def parse_timestamp(text: str) -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Accepts a ``Z`` suffix or a numeric offset.  Naive values are read as UTC.

    Raises:
        ValueError: If *text* is not a valid ISO-8601 timestamp.
    """
    if not isinstance(text, str):
        raise ValueError(f"Timestamp must be a string, got {type(text).__name__}")
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    value = datetime.fromisoformat(text)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def next_timestamp(previous: datetime | None = None) -> datetime:
    """Return a mutation timestamp strictly later than *previous*.

    Normally this is just the current time; if the wall clock has not moved
    past *previous* (or went backwards) the result is ``previous + 1µs``.
    """
    now = utc_now()
    if previous is not None and now <= previous:
        return previous + _TICK
    return now


# ---------------------------------------------------------------------------
# Task
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Task:
    """One task-list entry.

    ``last_updated`` is the only conflict-resolution signal: whichever copy
    of a task carries the larger value wins.
    """

    id: str
    title: str
    is_completed: bool
    last_updated: datetime

    @classmethod
    def new(cls, title: str) -> Task:
        """Create a fresh, incomplete task with a newly generated ID."""
        if not isinstance(title, str) or not title.strip():
            raise ValueError("Task title must be a non-empty string")
        return cls(
            id=generate_task_id(),
            title=title.strip(),
            is_completed=False,
            last_updated=utc_now(),
        )

    def toggled(self) -> Task:
        """Return a copy with completion flipped and a newer timestamp."""
        return replace(
            self,
            is_completed=not self.is_completed,
            last_updated=next_timestamp(self.last_updated),
        )

    def to_map(self) -> dict:
        """Return the document shape shared by the remote store and local disk."""
        return {
            "id": self.id,
            "title": self.title,
            "isCompleted": self.is_completed,
            "lastUpdated": format_timestamp(self.last_updated),
        }

    @classmethod
    def from_map(cls, data: dict) -> Task:
        """Build a Task from its document shape.

        Raises:
            ValueError: If a field is missing or has the wrong type.
        """
        if not isinstance(data, dict):
            raise ValueError(f"Task document must be an object, got {type(data).__name__}")
        try:
            task_id = data["id"]
            title = data["title"]
            is_completed = data["isCompleted"]
            last_updated = data["lastUpdated"]
        except KeyError as exc:
            raise ValueError(f"Task document is missing field {exc.args[0]!r}") from None

        if not isinstance(task_id, str) or not task_id:
            raise ValueError("Task document 'id' must be a non-empty string")
        if not isinstance(title, str):
            raise ValueError("Task document 'title' must be a string")
        if not isinstance(is_completed, bool):
            raise ValueError("Task document 'isCompleted' must be a boolean")

        return cls(
            id=task_id,
            title=title,
            is_completed=is_completed,
            last_updated=parse_timestamp(last_updated),
        )


def serialize_task(task: Task) -> str:
    """Pretty-print a task document as sorted JSON with trailing newline."""
    return json.dumps(task.to_map(), sort_keys=True, indent=2) + "\n"


# ---------------------------------------------------------------------------
# Last-writer-wins
# ---------------------------------------------------------------------------


def remote_wins(local: Task | None, remote: Task) -> bool:
    """Return ``True`` if *remote* should overwrite *local*.

    Remote wins only when there is no local copy or it is strictly newer;
    ties keep the local copy.
    """
    return local is None or remote.last_updated > local.last_updated


def local_wins(local: Task, remote: Task | None) -> bool:
    """Return ``True`` if *local* should be pushed over *remote*.

    Local wins when the remote copy is missing or strictly older.
    """
    return remote is None or local.last_updated > remote.last_updated


def merge_versions(local: Task | None, remote: Task | None) -> Task | None:
    """Return the surviving version of a task under last-writer-wins."""
    if remote is None:
        return local
    if local is None:
        return remote
    return remote if remote_wins(local, remote) else local
