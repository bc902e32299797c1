"""Tests for PendingOperation and its record format."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from tasksync.core.ops import OpAction, PendingOperation
from tasksync.core.tasks import Task

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class TestConstructors:
    def test_update_carries_snapshot(self) -> None:
        task = Task("t1", "A", False, T0)
        op = PendingOperation.update(task, T0)
        assert op.action is OpAction.UPDATE
        assert op.task_id == "t1"
        assert op.task is task
        assert op.enqueued_at == T0

    def test_delete_carries_only_id(self) -> None:
        op = PendingOperation.delete("t1", T0)
        assert op.action is OpAction.DELETE
        assert op.task is None
        assert op.task_id == "t1"

    def test_enqueued_at_defaults_to_now(self) -> None:
        before = datetime.now(timezone.utc)
        assert PendingOperation.delete("t1").enqueued_at >= before


class TestRecordFormat:
    def test_update_map(self) -> None:
        op = PendingOperation.update(Task("t1", "A", True, T0), T0)
        assert op.to_map() == {
            "action": "update",
            "enqueuedAt": "2026-01-01T12:00:00.000000Z",
            "task": {
                "id": "t1",
                "title": "A",
                "isCompleted": True,
                "lastUpdated": "2026-01-01T12:00:00.000000Z",
            },
        }

    def test_delete_map(self) -> None:
        op = PendingOperation.delete("t1", T0)
        assert op.to_map() == {
            "action": "delete",
            "enqueuedAt": "2026-01-01T12:00:00.000000Z",
            "id": "t1",
        }

    @pytest.mark.parametrize(
        "op",
        [
            PendingOperation.update(Task("t1", "A", False, T0), T0),
            PendingOperation.delete("t2", T0),
        ],
    )
    def test_from_map_restores_equal_op(self, op: PendingOperation) -> None:
        assert PendingOperation.from_map(op.to_map()) == op

    @pytest.mark.parametrize(
        "record",
        [
            {},
            {"action": "rename", "enqueuedAt": "2026-01-01T12:00:00Z", "id": "t1"},
            {"action": "delete", "enqueuedAt": "later", "id": "t1"},
            {"action": "delete", "enqueuedAt": "2026-01-01T12:00:00Z"},
            {"action": "update", "enqueuedAt": "2026-01-01T12:00:00Z", "task": {"id": "t1"}},
        ],
    )
    def test_from_map_rejects_malformed(self, record: dict) -> None:
        with pytest.raises(ValueError):
            PendingOperation.from_map(record)
