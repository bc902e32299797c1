"""Tests for replaying the pending-operations queue."""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from tasksync.core.errors import PermanentError
from tasksync.core.tasks import Task
from tasksync.sync.connectivity import ConnectivityMonitor, ConnectivityStatus
from tasksync.sync.engine import SyncEngine

REACHABLE = ConnectivityStatus.REACHABLE
UNREACHABLE = ConnectivityStatus.UNREACHABLE


@pytest.fixture()
def offline(engine: SyncEngine, monitor):
    """The live engine with connectivity reported as lost."""
    monitor.report(UNREACHABLE)
    return engine


def _pending_ids(engine: SyncEngine) -> list[str]:
    return [op.task_id for _, op in engine.pending_operations()]


class _ReconnectsDuringPush(ConnectivityMonitor):
    """Reports the network back right after a push has found it down."""

    def __init__(self) -> None:
        super().__init__()
        self.armed = False

    def is_reachable(self) -> bool:
        reachable = super().is_reachable()
        if self.armed and threading.current_thread().name.startswith("tasksync-remote"):
            self.armed = False
            self.report(REACHABLE)
        return reachable


class TestOfflineRoundTrip:
    def test_buy_milk_offline_then_reconnect(self, offline: SyncEngine, remote, monitor, user: str) -> None:
        task = offline.add_task("Buy milk")

        assert task in offline.list_tasks()
        assert offline.has_pending_work()

        monitor.report(REACHABLE)
        offline.wait_idle()

        assert not offline.has_pending_work()
        assert remote.documents(user) == {task.id: task}

    def test_reconnect_with_empty_queue_does_nothing(self, engine: SyncEngine, remote, monitor) -> None:
        monitor.report(UNREACHABLE)
        monitor.report(REACHABLE)
        engine.wait_idle()
        assert engine.last_drain is None

    def test_reconnect_while_push_is_queueing_still_drains(self, make_engine, remote, user: str) -> None:
        flaky = _ReconnectsDuringPush()
        flaky.report(UNREACHABLE)
        engine = make_engine(connectivity=flaky)
        engine.start(user)

        flaky.armed = True
        task = engine.add_task("Buy milk")
        engine.wait_idle()
        engine.wait_idle()

        assert flaky.is_reachable()
        assert not engine.has_pending_work()
        assert remote.documents(user) == {task.id: task}

    def test_queue_survives_restart_and_drains_on_start(
        self, make_engine, remote, monitor, user: str
    ) -> None:
        monitor.report(UNREACHABLE)
        first = make_engine()
        first.start(user)
        task = first.add_task("Buy milk")
        first.stop()

        monitor.report(REACHABLE)
        second = make_engine()
        second.start(user)
        second.wait_idle()

        assert not second.has_pending_work()
        assert remote.documents(user) == {task.id: task}


class TestOrderingAndFailures:
    def test_second_of_three_fails(self, offline: SyncEngine, remote, monitor, user: str) -> None:
        t1, t2, t3 = (offline.add_task(f"T{i}") for i in range(1, 4))
        offline.wait_idle()
        assert _pending_ids(offline) == [t1.id, t2.id, t3.id]

        remote.fail("put", t2.id)
        monitor.report(REACHABLE)
        offline.wait_idle()

        assert _pending_ids(offline) == [t2.id]
        assert set(remote.documents(user)) == {t1.id, t3.id}
        result = offline.last_drain
        assert (result.succeeded, result.remaining) == (2, 1)
        assert result.error

        remote.clear_failures()
        assert offline.sync() is True
        assert set(remote.documents(user)) == {t1.id, t2.id, t3.id}

    def test_failed_task_keeps_its_later_entries_in_order(
        self, offline: SyncEngine, remote, monitor, user: str
    ) -> None:
        task = offline.add_task("Buy milk")
        toggled = offline.toggle_complete(task.id)
        offline.wait_idle()

        remote.fail("put", task.id, times=1)
        monitor.report(REACHABLE)
        offline.wait_idle()

        assert _pending_ids(offline) == [task.id, task.id]
        assert [op.task for _, op in offline.pending_operations()] == [task, toggled]

        assert offline.sync() is True
        assert remote.documents(user)[task.id] == toggled

    def test_drain_stops_while_unreachable(self, offline: SyncEngine, remote, monitor) -> None:
        offline.add_task("a")
        offline.add_task("b")
        offline.wait_idle()

        remote.offline = True
        assert offline.sync() is False

        assert offline.last_drain.attempted == 1
        assert len(_pending_ids(offline)) == 2

    def test_sync_on_empty_queue(self, engine: SyncEngine) -> None:
        assert engine.sync() is True
        assert engine.last_drain.attempted == 0


class TestSuperseded:
    def test_update_older_than_remote_is_dropped(self, offline: SyncEngine, remote, monitor, user: str) -> None:
        task = offline.add_task("mine")
        offline.wait_idle()
        theirs = Task(task.id, "theirs", True, task.last_updated + timedelta(hours=1))
        remote.seed(user, theirs)

        monitor.report(REACHABLE)
        offline.wait_idle()

        assert not offline.has_pending_work()
        assert remote.documents(user)[task.id] == theirs
        assert offline.last_drain.superseded == 1
        assert ("put", user, task.id) not in remote.calls

    def test_delete_older_than_remote_edit_is_dropped(
        self, engine: SyncEngine, remote, monitor, user: str
    ) -> None:
        task = engine.add_task("mine")
        engine.wait_idle()
        monitor.report(UNREACHABLE)
        engine.delete_task(task.id)
        engine.wait_idle()
        theirs = Task(task.id, "edited elsewhere", False, task.last_updated + timedelta(hours=1))
        remote.seed(user, theirs)

        monitor.report(REACHABLE)
        engine.wait_idle()

        assert not engine.has_pending_work()
        assert remote.documents(user) == {task.id: theirs}

    def test_delete_of_already_gone_document_succeeds(
        self, engine: SyncEngine, remote, monitor, user: str
    ) -> None:
        task = engine.add_task("mine")
        engine.wait_idle()
        monitor.report(UNREACHABLE)
        engine.delete_task(task.id)
        engine.wait_idle()
        remote.delete(user, task.id)

        assert engine.sync() is True
        assert engine.last_drain.succeeded == 1


class TestDeadLetters:
    def test_permanent_failure_moves_entry_aside(self, make_engine, remote, monitor, user: str) -> None:
        errors: list[Exception] = []
        engine = make_engine(on_error=errors.append)
        engine.start(user)
        monitor.report(UNREACHABLE)
        bad = engine.add_task("bad")
        good = engine.add_task("good")
        engine.wait_idle()

        remote.fail("put", bad.id, error=PermanentError("rejected", status=422))
        monitor.report(REACHABLE)
        engine.wait_idle()

        assert not engine.has_pending_work()
        assert set(remote.documents(user)) == {good.id}
        [record] = engine.dead_letters()
        assert record["op"]["task"]["id"] == bad.id
        assert record["reason"] == "rejected"
        assert engine.last_drain.dead_lettered == 1
        assert len(errors) == 1


class TestCoalescing:
    def test_requests_share_one_pass(self, engine: SyncEngine) -> None:
        gate = threading.Event()
        engine._executor.submit(gate.wait)
        try:
            first = engine._request_drain()
            second = engine._request_drain()
            assert first is second
        finally:
            gate.set()
        assert first.result(timeout=5).ok

    def test_new_request_after_completion_runs_again(self, engine: SyncEngine) -> None:
        first = engine._request_drain()
        first.result(timeout=5)
        assert engine._request_drain() is not first
