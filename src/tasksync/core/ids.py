"""ULID-based task ID generation."""

from __future__ import annotations

from ulid import ULID

TASK_ID_PREFIX = "task"


def generate_task_id() -> str:
    """Generate a new task ID with the task_ prefix.

    IDs sort by creation time.  Task IDs received from the remote store are
    opaque and need not follow this format.
    """
    return f"{TASK_ID_PREFIX}_{ULID()}"
