"""Sync commands: sync, status, signout."""

from __future__ import annotations

import click

from tasksync.cli.helpers import build_engine, open_session, output_error, output_result
from tasksync.cli.main import cli
from tasksync.core.errors import LocalStorageFailure, StoreBusyError
from tasksync.sync.engine import TeardownStatus


@cli.command()
@click.option("--json", "output_json", is_flag=True, help="Output structured JSON.")
def sync(output_json: bool) -> None:
    """Retry every pending write now.  Exits 1 if some remain."""
    is_json = output_json
    with open_session(is_json) as engine:
        engine.wait_idle()
        ok = engine.sync()
        result = engine.last_drain

    data = result.to_dict() if result is not None else {"remaining": 0}
    if ok:
        output_result(
            data=data,
            human_message=f"Synced: {data.get('succeeded', 0)} sent, "
            f"{data.get('superseded', 0)} already newer on the server.",
            is_json=is_json,
        )
        return
    output_error(
        f"{data['remaining']} pending write(s) could not be synced: {data.get('error') or 'unknown error'}",
        "SYNC_INCOMPLETE",
        is_json,
    )


@cli.command()
@click.option("--json", "output_json", is_flag=True, help="Output structured JSON.")
def status(output_json: bool) -> None:
    """Show pending writes, dead letters, and connectivity."""
    is_json = output_json
    with open_session(is_json) as engine:
        engine.wait_idle()
        user_id = engine.user_id
        tasks = len(engine.list_tasks())
        pending = [op.to_map() for _, op in engine.pending_operations()]
        dead = engine.dead_letters()
        reachable = engine.connectivity.is_reachable()

    data = {
        "user": user_id,
        "tasks": tasks,
        "pending": pending,
        "dead_letters": dead,
        "reachable": reachable,
    }
    if is_json:
        output_result(data=data, human_message="", is_json=True)
        return

    click.echo(f"User:          {user_id}")
    click.echo(f"Tasks:         {tasks}")
    click.echo(f"Pending:       {len(pending)}")
    click.echo(f"Dead letters:  {len(dead)}")
    click.echo(f"Connectivity:  {'reachable' if reachable else 'unreachable'}")
    for record in dead:
        op = record.get("op", {})
        click.echo(f"  rejected {op.get('action')} {op.get('task', {}).get('id') or op.get('id')}: {record.get('reason')}")


@cli.command()
@click.option("--force", is_flag=True, help="Delete local state even if writes are unsynced.")
@click.option("--json", "output_json", is_flag=True, help="Output structured JSON.")
def signout(force: bool, output_json: bool) -> None:
    """Sync what can be synced, then delete this user's local state."""
    is_json = output_json
    engine, user_id = build_engine(is_json)
    try:
        result = engine.teardown(user_id, force=force)
    except StoreBusyError as e:
        output_error(str(e), "STORE_BUSY", is_json)
    except LocalStorageFailure as e:
        output_error(str(e), "LOCAL_STORAGE", is_json)

    if result is TeardownStatus.BLOCKED_OFFLINE:
        output_error(
            "You have changes that have not been synced and you are offline. "
            "Signing out now would lose them; reconnect, or pass --force.",
            "UNSYNCED_OFFLINE",
            is_json,
        )
    if result is TeardownStatus.BLOCKED_UNSYNCED:
        output_error(
            "Some changes could not be synced. "
            "Run 'tasksync status' for details, or pass --force.",
            "UNSYNCED",
            is_json,
        )
    output_result(
        data={"user": user_id, "status": result.value},
        human_message=f"Signed out {user_id}; local data deleted.",
        is_json=is_json,
    )
