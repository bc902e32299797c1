"""Default config generation and validation."""

from __future__ import annotations

import copy
import json
from typing import TypedDict


class RemoteConfig(TypedDict, total=False):
    url: str
    token: str | None
    timeout_seconds: float
    poll_interval_seconds: float


class ConnectivityConfig(TypedDict, total=False):
    probe_host: str
    probe_port: int
    check_interval_seconds: float
    probe_timeout_seconds: float


class SyncSettings(TypedDict, total=False):
    lock_timeout_seconds: float


class TasksyncConfig(TypedDict, total=False):
    schema_version: int
    remote: RemoteConfig
    connectivity: ConnectivityConfig
    sync: SyncSettings


def default_config() -> TasksyncConfig:
    """Return the default tasksync configuration.

    The returned dict, when serialized with
    ``json.dumps(data, sort_keys=True, indent=2) + "\\n"``,
    produces the canonical default config.json.
    """
    return {
        "schema_version": 1,
        "remote": {
            "url": "",
            "token": None,
            "timeout_seconds": 10,
            "poll_interval_seconds": 15,
        },
        "connectivity": {
            "probe_host": "",
            "probe_port": 443,
            "check_interval_seconds": 30,
            "probe_timeout_seconds": 5,
        },
        "sync": {
            "lock_timeout_seconds": 0,
        },
    }


def serialize_config(config: TasksyncConfig | dict[str, object]) -> str:
    """Serialize a config dict to the canonical JSON format."""
    return json.dumps(config, sort_keys=True, indent=2) + "\n"


def load_config(raw: str) -> dict:
    """Parse a JSON config string and merge it over the defaults.

    This is a pure function (no I/O).  Callers read the file and pass the
    raw string here.  Sections missing from *raw* fall back to defaults.
    """
    data = json.loads(raw) if raw.strip() else {}
    if not isinstance(data, dict):
        raise ValueError("config.json must contain a JSON object")
    return merge_config(default_config(), data)


def merge_config(base: dict, overrides: dict) -> dict:
    """Return *base* with *overrides* applied one section deep."""
    merged = copy.deepcopy(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key].update(value)
        else:
            merged[key] = value
    return merged


def _section(config: dict, name: str) -> dict:
    value = config.get(name, {})
    return value if isinstance(value, dict) else {}


_POSITIVE_NUMBERS = {
    "remote": ("timeout_seconds", "poll_interval_seconds"),
    "connectivity": ("check_interval_seconds", "probe_timeout_seconds"),
}


def validate_config(config: dict) -> list[str]:
    """Return a list of human-readable problems with *config* (empty if valid)."""
    problems: list[str] = []

    for section, keys in _POSITIVE_NUMBERS.items():
        values = config.get(section, {})
        if not isinstance(values, dict):
            problems.append(f"'{section}' must be an object")
            continue
        for key in keys:
            value = values.get(key)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                problems.append(f"{section}.{key} must be a positive number")

    lock_timeout = _section(config, "sync").get("lock_timeout_seconds")
    if lock_timeout is not None and (
        isinstance(lock_timeout, bool)
        or not isinstance(lock_timeout, (int, float))
        or lock_timeout < 0
    ):
        problems.append("sync.lock_timeout_seconds must be zero or a positive number")

    port = _section(config, "connectivity").get("probe_port")
    if port is not None and (isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536):
        problems.append("connectivity.probe_port must be an integer between 1 and 65535")

    url = _section(config, "remote").get("url") or ""
    if url and not url.startswith(("http://", "https://")):
        problems.append("remote.url must start with http:// or https://")

    return problems
