"""Shared CLI helpers, session setup, and output utilities."""

from __future__ import annotations

import contextlib
import json
from collections.abc import Iterator
from pathlib import Path
from typing import NoReturn

import click

from tasksync.core.config import default_config, load_config, merge_config
from tasksync.core.errors import LocalStorageFailure, StoreBusyError
from tasksync.core.tasks import Task, format_timestamp
from tasksync.storage.fs import TasksyncHomeError, resolve_home
from tasksync.sync.connectivity import ConnectivityMonitor
from tasksync.sync.engine import SyncEngine
from tasksync.sync.http_remote import HttpRemoteStore
from tasksync.sync.remote import RemoteStore

CONFIG_FILE = "config.json"


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------


def json_envelope(ok: bool, *, data: object = None, error: object = None) -> str:
    """Build a structured JSON output envelope."""
    result: dict = {"ok": ok}
    if data is not None:
        result["data"] = data
    if error is not None:
        result["error"] = error
    return json.dumps(result, sort_keys=True, indent=2) + "\n"


def json_error_obj(code: str, message: str) -> dict:
    """Build an error object for the JSON envelope."""
    return {"code": code, "message": message}


def output_error(message: str, code: str, is_json: bool, exit_code: int = 1) -> NoReturn:
    """Print error and exit. JSON errors go to stdout; human errors to stderr."""
    if is_json:
        click.echo(json_envelope(False, error=json_error_obj(code, message)))
    else:
        click.echo(f"Error: {message}", err=True)
    raise SystemExit(exit_code)


def output_result(*, data: object, human_message: str, is_json: bool) -> None:
    """Print success result in the appropriate format."""
    if is_json:
        click.echo(json_envelope(True, data=data))
    else:
        click.echo(human_message)


def format_task_line(task: Task) -> str:
    mark = "x" if task.is_completed else " "
    return f"[{mark}] {task.title}  ({task.id})"


def task_summary(task: Task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "is_completed": task.is_completed,
        "last_updated": format_timestamp(task.last_updated),
    }


# ---------------------------------------------------------------------------
# Home, config, user
# ---------------------------------------------------------------------------


def require_home(is_json: bool = False) -> Path:
    """Resolve the tasksync home from ``--home`` or the environment."""
    ctx = click.get_current_context()
    try:
        return resolve_home(ctx.obj.get("home"))
    except TasksyncHomeError as e:
        output_error(str(e), "INVALID_HOME", is_json)


def load_home_config(home: Path, is_json: bool = False) -> dict:
    """Load ``config.json`` from *home*, falling back to defaults if absent."""
    path = home / CONFIG_FILE
    if not path.exists():
        return default_config()
    try:
        return load_config(path.read_text())
    except ValueError as e:
        output_error(f"Invalid {CONFIG_FILE}: {e}", "INVALID_CONFIG", is_json)


def require_user(is_json: bool = False) -> str:
    ctx = click.get_current_context()
    user_id = ctx.obj.get("user")
    if not user_id:
        output_error(
            "No user given. Pass --user or set TASKSYNC_USER.",
            "MISSING_USER",
            is_json,
        )
    return user_id


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


def build_remote(config: dict, remote_url: str | None, is_json: bool = False) -> RemoteStore:
    """Return the remote store named by ``--remote-url`` or ``remote.url``."""
    if remote_url:
        config = merge_config(config, {"remote": {"url": remote_url}})
    if not config["remote"].get("url"):
        output_error(
            "No remote configured. Pass --remote-url or set remote.url in config.json.",
            "NO_REMOTE",
            is_json,
        )
    try:
        return HttpRemoteStore.from_config(config)
    except ValueError as e:
        output_error(str(e), "INVALID_CONFIG", is_json)


def build_monitor(config: dict) -> ConnectivityMonitor:
    return ConnectivityMonitor.from_config(config)


def build_engine(is_json: bool = False) -> tuple[SyncEngine, str]:
    """Assemble an engine for the current invocation; returns it with the user ID."""
    ctx = click.get_current_context()
    home = require_home(is_json)
    user_id = require_user(is_json)
    config = load_home_config(home, is_json)
    remote = build_remote(config, ctx.obj.get("remote_url"), is_json)
    engine = SyncEngine(remote, build_monitor(config), home=home, config=config)
    return engine, user_id


@contextlib.contextmanager
def open_session(is_json: bool = False) -> Iterator[SyncEngine]:
    """Run one engine session around a command: start, yield, flush, stop."""
    engine, user_id = build_engine(is_json)
    try:
        engine.start(user_id)
    except StoreBusyError as e:
        output_error(str(e), "STORE_BUSY", is_json)
    except LocalStorageFailure as e:
        output_error(str(e), "LOCAL_STORAGE", is_json)
    try:
        yield engine
        engine.wait_idle()
    except LocalStorageFailure as e:
        output_error(str(e), "LOCAL_STORAGE", is_json)
    finally:
        engine.stop()


# ---------------------------------------------------------------------------
# Task ID resolution (prefix -> full ID)
# ---------------------------------------------------------------------------


def resolve_task_id(engine: SyncEngine, raw_id: str, is_json: bool) -> str:
    """Resolve a full task ID or a unique prefix of one.

    Exits with an error if nothing or more than one task matches.
    """
    ids = [task.id for task in engine.list_tasks()]
    if raw_id in ids:
        return raw_id

    matches = [task_id for task_id in ids if task_id.startswith(raw_id)]
    if len(matches) == 1:
        return matches[0]
    if not matches:
        output_error(f"Task '{raw_id}' not found.", "NOT_FOUND", is_json)
    output_error(
        f"Task ID prefix '{raw_id}' is ambiguous ({len(matches)} matches).",
        "AMBIGUOUS_ID",
        is_json,
    )
