"""Shared test fixtures."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from click.testing import CliRunner

from tasksync.core.ids import generate_task_id
from tasksync.core.tasks import Task
from tasksync.sync.connectivity import ConnectivityMonitor, ConnectivityStatus
from tasksync.sync.engine import SyncEngine
from tasksync.sync.memory_remote import InMemoryRemoteStore

USER = "alice"
BASE_TIME = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture()
def home(tmp_path: Path) -> Path:
    """Return a not-yet-created tasksync home directory."""
    return tmp_path / "home"


@pytest.fixture()
def user() -> str:
    return USER


@pytest.fixture()
def make_task():
    """Return a factory for tasks with controlled timestamps.

    Usage::

        task = make_task("Buy milk", minutes=5)   # BASE_TIME + 5 minutes
    """

    def _make(
        title: str = "Task",
        *,
        minutes: float = 0,
        completed: bool = False,
        task_id: str | None = None,
    ) -> Task:
        return Task(
            id=task_id or generate_task_id(),
            title=title,
            is_completed=completed,
            last_updated=BASE_TIME + timedelta(minutes=minutes),
        )

    return _make


@pytest.fixture()
def remote() -> InMemoryRemoteStore:
    return InMemoryRemoteStore()


@pytest.fixture()
def monitor() -> ConnectivityMonitor:
    """A probe-less monitor whose state the test drives with ``report()``."""
    mon = ConnectivityMonitor()
    mon.report(ConnectivityStatus.REACHABLE)
    return mon


@pytest.fixture()
def make_engine(remote: InMemoryRemoteStore, monitor: ConnectivityMonitor, home: Path):
    """Return a factory for engines wired to the shared remote and monitor.

    Every engine built here is stopped at teardown.
    """
    engines: list[SyncEngine] = []

    def _make(**kwargs) -> SyncEngine:
        kwargs.setdefault("home", home)
        eng = SyncEngine(
            kwargs.pop("remote", remote),
            kwargs.pop("connectivity", monitor),
            **kwargs,
        )
        engines.append(eng)
        return eng

    yield _make
    for eng in engines:
        eng.stop()


@pytest.fixture()
def engine(make_engine, user: str) -> SyncEngine:
    """Return a live engine for ``USER``."""
    eng = make_engine()
    eng.start(user)
    return eng


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@pytest.fixture()
def cli_runner() -> CliRunner:
    """Return a Click CliRunner for invoking CLI commands."""
    return CliRunner()


@pytest.fixture()
def cli_env(home: Path) -> dict[str, str]:
    """Return env pointing the CLI at the temporary home and test user."""
    return {
        "TASKSYNC_HOME": str(home),
        "TASKSYNC_USER": USER,
        "TASKSYNC_REMOTE_URL": "http://tasks.invalid/api",
    }


@pytest.fixture()
def cli_remote(remote: InMemoryRemoteStore, monitor: ConnectivityMonitor, monkeypatch: pytest.MonkeyPatch):
    """Route CLI commands to the in-memory remote and the test monitor."""
    monkeypatch.setattr("tasksync.cli.helpers.build_remote", lambda *a, **k: remote)
    monkeypatch.setattr("tasksync.cli.helpers.build_monitor", lambda config: monitor)
    return remote


@pytest.fixture()
def invoke(cli_runner: CliRunner, cli_env: dict[str, str], cli_remote):
    """Return a helper that invokes CLI commands with the right environment.

    Usage::

        result = invoke("add", "Buy milk")
    """
    from tasksync.cli.main import cli

    def _invoke(*args: str, **kwargs):
        return cli_runner.invoke(cli, list(args), env=cli_env, **kwargs)

    return _invoke


@pytest.fixture()
def invoke_json(invoke):
    """Like invoke, but appends --json and parses the response.

    Returns (parsed_dict, exit_code) tuple.
    """

    def _invoke_json(*args: str) -> tuple[dict, int]:
        result = invoke(*args, "--json")
        parsed = json.loads(result.output)
        return parsed, result.exit_code

    return _invoke_json
