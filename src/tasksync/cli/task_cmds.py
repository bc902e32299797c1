"""Task commands: add, list, toggle, rm."""

from __future__ import annotations

import click

from tasksync.cli.helpers import (
    format_task_line,
    open_session,
    output_error,
    output_result,
    resolve_task_id,
    task_summary,
)
from tasksync.cli.main import cli


@cli.command()
@click.argument("title")
@click.option("--json", "output_json", is_flag=True, help="Output structured JSON.")
def add(title: str, output_json: bool) -> None:
    """Add a task.  It is saved locally at once and pushed in the background."""
    is_json = output_json
    if not title.strip():
        output_error("Title must not be empty.", "INVALID_TITLE", is_json)

    with open_session(is_json) as engine:
        task = engine.add_task(title)
        engine.wait_idle()
        pending = engine.has_pending_work()

    suffix = " (queued, not yet synced)" if pending else ""
    output_result(
        data={**task_summary(task), "pending": pending},
        human_message=f"Added {task.id}: {task.title}{suffix}",
        is_json=is_json,
    )


@cli.command("list")
@click.option("--json", "output_json", is_flag=True, help="Output structured JSON.")
def list_cmd(output_json: bool) -> None:
    """List tasks, oldest change first."""
    is_json = output_json
    with open_session(is_json) as engine:
        tasks = sorted(engine.list_tasks(), key=lambda t: (t.last_updated, t.id))

    if is_json:
        output_result(data=[task_summary(t) for t in tasks], human_message="", is_json=True)
        return
    if not tasks:
        click.echo("No tasks.")
        return
    for task in tasks:
        click.echo(format_task_line(task))


@cli.command()
@click.argument("task_id")
@click.option("--json", "output_json", is_flag=True, help="Output structured JSON.")
def toggle(task_id: str, output_json: bool) -> None:
    """Mark a task done, or not done again."""
    is_json = output_json
    with open_session(is_json) as engine:
        full_id = resolve_task_id(engine, task_id, is_json)
        task = engine.toggle_complete(full_id)
    if task is None:
        output_error(f"Task '{task_id}' not found.", "NOT_FOUND", is_json)

    state = "done" if task.is_completed else "not done"
    output_result(
        data=task_summary(task),
        human_message=f"{task.title}: {state}",
        is_json=is_json,
    )


@cli.command()
@click.argument("task_id")
@click.option("--json", "output_json", is_flag=True, help="Output structured JSON.")
def rm(task_id: str, output_json: bool) -> None:
    """Delete a task."""
    is_json = output_json
    with open_session(is_json) as engine:
        full_id = resolve_task_id(engine, task_id, is_json)
        deleted = engine.delete_task(full_id)
    if not deleted:
        output_error(f"Task '{task_id}' not found.", "NOT_FOUND", is_json)

    output_result(data={"id": full_id}, human_message=f"Deleted {full_id}", is_json=is_json)
