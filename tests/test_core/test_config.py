"""Tests for core config module."""

from __future__ import annotations

import json

import pytest

from tasksync.core.config import (
    default_config,
    load_config,
    merge_config,
    serialize_config,
    validate_config,
)


class TestDefaultConfig:
    """default_config() returns a well-formed configuration dict."""

    def test_has_schema_version(self) -> None:
        assert default_config()["schema_version"] == 1

    def test_remote_defaults(self) -> None:
        remote = default_config()["remote"]
        assert remote["url"] == ""
        assert remote["token"] is None
        assert remote["timeout_seconds"] == 10
        assert remote["poll_interval_seconds"] == 15

    def test_connectivity_defaults(self) -> None:
        conn = default_config()["connectivity"]
        assert conn["probe_host"] == ""
        assert conn["probe_port"] == 443

    def test_lock_timeout_rejects_contention_by_default(self) -> None:
        assert default_config()["sync"]["lock_timeout_seconds"] == 0

    def test_returns_fresh_copies(self) -> None:
        a = default_config()
        a["remote"]["url"] = "http://changed"
        assert default_config()["remote"]["url"] == ""

    def test_defaults_are_valid(self) -> None:
        assert validate_config(default_config()) == []


class TestSerializeConfig:
    def test_canonical_format(self) -> None:
        text = serialize_config(default_config())
        assert text.endswith("\n")
        assert text == json.dumps(default_config(), sort_keys=True, indent=2) + "\n"

    def test_round_trips_through_load(self) -> None:
        assert load_config(serialize_config(default_config())) == default_config()


class TestLoadConfig:
    def test_empty_string_gives_defaults(self) -> None:
        assert load_config("") == default_config()

    def test_partial_section_merges_over_defaults(self) -> None:
        config = load_config('{"remote": {"url": "https://tasks.example.com"}}')
        assert config["remote"]["url"] == "https://tasks.example.com"
        assert config["remote"]["timeout_seconds"] == 10
        assert config["connectivity"] == default_config()["connectivity"]

    def test_rejects_non_object(self) -> None:
        with pytest.raises(ValueError, match="JSON object"):
            load_config("[1, 2]")

    def test_rejects_invalid_json(self) -> None:
        with pytest.raises(ValueError):
            load_config("{not json")


class TestMergeConfig:
    def test_does_not_mutate_base(self) -> None:
        base = default_config()
        merge_config(base, {"remote": {"url": "http://x"}})
        assert base["remote"]["url"] == ""

    def test_replaces_scalars(self) -> None:
        assert merge_config({"a": 1}, {"a": 2}) == {"a": 2}

    def test_adds_unknown_keys(self) -> None:
        assert merge_config({}, {"extra": {"k": 1}}) == {"extra": {"k": 1}}


class TestValidateConfig:
    @pytest.mark.parametrize(
        "overrides, fragment",
        [
            ({"remote": {"timeout_seconds": 0}}, "remote.timeout_seconds"),
            ({"remote": {"poll_interval_seconds": "fast"}}, "remote.poll_interval_seconds"),
            ({"connectivity": {"check_interval_seconds": -1}}, "connectivity.check_interval_seconds"),
            ({"connectivity": {"probe_port": 70000}}, "connectivity.probe_port"),
            ({"connectivity": {"probe_port": True}}, "connectivity.probe_port"),
            ({"sync": {"lock_timeout_seconds": -0.5}}, "sync.lock_timeout_seconds"),
            ({"remote": {"url": "ftp://tasks.example.com"}}, "remote.url"),
        ],
    )
    def test_reports_problem(self, overrides: dict, fragment: str) -> None:
        problems = validate_config(merge_config(default_config(), overrides))
        assert len(problems) == 1
        assert fragment in problems[0]

    def test_non_object_section(self) -> None:
        config = default_config()
        config["remote"] = "http://x"
        problems = validate_config(config)
        assert "'remote' must be an object" in problems

    def test_positive_lock_timeout_is_valid(self) -> None:
        config = merge_config(default_config(), {"sync": {"lock_timeout_seconds": 2.5}})
        assert validate_config(config) == []
