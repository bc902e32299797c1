"""CLI entry point and commands."""

from __future__ import annotations

import logging

import click

from tasksync import __version__
from tasksync.cli.helpers import CONFIG_FILE, output_error, output_result, require_home
from tasksync.core.config import default_config, load_config, merge_config, serialize_config, validate_config
from tasksync.storage.fs import atomic_write


@click.group()
@click.option(
    "--home",
    type=click.Path(file_okay=False),
    default=None,
    help="Local state directory (default: $TASKSYNC_HOME or ~/.tasksync).",
)
@click.option("--user", envvar="TASKSYNC_USER", default=None, help="User identity to act as.")
@click.option(
    "--remote-url",
    envvar="TASKSYNC_REMOTE_URL",
    default=None,
    help="Base URL of the remote task store (overrides remote.url).",
)
@click.option("-v", "--verbose", is_flag=True, help="Log sync activity to stderr.")
@click.version_option(__version__, prog_name="tasksync")
@click.pass_context
def cli(
    ctx: click.Context,
    home: str | None,
    user: str | None,
    remote_url: str | None,
    verbose: bool,
) -> None:
    """tasksync: offline-first task list synced to a remote store."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(levelname)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj.update(home=home, user=user, remote_url=remote_url)


@cli.command()
@click.option("--probe-host", default=None, help="Host to TCP-probe for connectivity checks.")
@click.option("--json", "output_json", is_flag=True, help="Output structured JSON.")
@click.pass_context
def init(ctx: click.Context, probe_host: str | None, output_json: bool) -> None:
    """Create the home directory and write config.json.

    An existing config.json is kept; only the values passed on the
    command line are updated in it.
    """
    is_json = output_json
    home = require_home(is_json)
    path = home / CONFIG_FILE

    if home.exists() and not home.is_dir():
        output_error(f"'{home}' exists but is not a directory.", "INVALID_HOME", is_json)

    overrides: dict = {}
    if ctx.obj.get("remote_url"):
        overrides["remote"] = {"url": ctx.obj["remote_url"]}
    if probe_host:
        overrides["connectivity"] = {"probe_host": probe_host}

    existed = path.exists()
    if existed:
        try:
            config = load_config(path.read_text())
        except ValueError as e:
            output_error(f"Invalid {CONFIG_FILE}: {e}", "INVALID_CONFIG", is_json)
    else:
        config = default_config()
    config = merge_config(config, overrides)

    problems = validate_config(config)
    if problems:
        output_error("; ".join(problems), "INVALID_CONFIG", is_json)

    home.mkdir(parents=True, exist_ok=True)
    if not existed or overrides:
        atomic_write(path, serialize_config(config))

    verb = "Updated" if existed else "Initialized"
    output_result(
        data={"home": str(home), "config": config},
        human_message=f"{verb} tasksync home at {home}",
        is_json=is_json,
    )


# ---------------------------------------------------------------------------
# Register command modules (must be after cli group is defined)
# ---------------------------------------------------------------------------
from tasksync.cli import task_cmds as _task_cmds  # noqa: E402, F401
from tasksync.cli import sync_cmds as _sync_cmds  # noqa: E402, F401

if __name__ == "__main__":
    cli()
