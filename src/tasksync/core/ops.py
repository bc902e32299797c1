"""Pending operations: remote writes that still have to be replayed."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from tasksync.core.tasks import Task, format_timestamp, parse_timestamp, utc_now


class OpAction(str, Enum):
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class PendingOperation:
    """A remote write that failed and is waiting in the queue.

    Update operations carry a full task snapshot; delete operations carry
    only the task ID.  ``enqueued_at`` doubles as the delete's tombstone time.
    """

    action: OpAction
    task_id: str
    task: Task | None = None
    enqueued_at: datetime = field(default_factory=utc_now)

    @classmethod
    def update(cls, task: Task, enqueued_at: datetime | None = None) -> PendingOperation:
        return cls(
            action=OpAction.UPDATE,
            task_id=task.id,
            task=task,
            enqueued_at=enqueued_at or utc_now(),
        )

    @classmethod
    def delete(cls, task_id: str, enqueued_at: datetime | None = None) -> PendingOperation:
        return cls(
            action=OpAction.DELETE,
            task_id=task_id,
            enqueued_at=enqueued_at or utc_now(),
        )

    def to_map(self) -> dict:
        data: dict = {
            "action": self.action.value,
            "enqueuedAt": format_timestamp(self.enqueued_at),
        }
        if self.action is OpAction.UPDATE:
            data["task"] = self.task.to_map()
        else:
            data["id"] = self.task_id
        return data

    @classmethod
    def from_map(cls, data: dict) -> PendingOperation:
        """Rebuild an operation from :meth:`to_map` output.

        Raises:
            ValueError: If the record is malformed.
        """
        try:
            action = OpAction(data["action"])
            enqueued_at = parse_timestamp(data["enqueuedAt"])
        except (KeyError, TypeError) as exc:
            raise ValueError(f"Malformed pending operation: {exc}") from None

        if action is OpAction.UPDATE:
            task = Task.from_map(data.get("task"))
            return cls.update(task, enqueued_at)

        task_id = data.get("id")
        if not isinstance(task_id, str) or not task_id:
            raise ValueError("Pending delete is missing its task id")
        return cls.delete(task_id, enqueued_at)
