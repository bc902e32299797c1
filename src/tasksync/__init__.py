"""tasksync: offline-first synchronization for per-user task lists."""

from __future__ import annotations

__version__ = "0.1.0"
