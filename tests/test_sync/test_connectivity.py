"""Tests for the connectivity monitor."""

from __future__ import annotations

import logging
import socket
import threading

import pytest

from tasksync.sync.connectivity import ConnectivityMonitor, ConnectivityStatus, tcp_probe

REACHABLE = ConnectivityStatus.REACHABLE
UNREACHABLE = ConnectivityStatus.UNREACHABLE


class FlakyProbe:
    """Probe returning a scripted sequence of answers (last one repeats)."""

    def __init__(self, *answers: bool) -> None:
        self.answers = list(answers)
        self.calls = 0

    def __call__(self) -> bool:
        self.calls += 1
        if len(self.answers) > 1:
            return self.answers.pop(0)
        return self.answers[0]


class TestTransitions:
    def test_first_observation_is_silent(self) -> None:
        monitor = ConnectivityMonitor(FlakyProbe(True))
        events: list[ConnectivityStatus] = []
        monitor.subscribe(events.append)

        assert monitor.check() is REACHABLE
        assert events == []

    def test_emits_only_on_change(self) -> None:
        monitor = ConnectivityMonitor(FlakyProbe(True, True, False, False, True))
        events: list[ConnectivityStatus] = []
        monitor.subscribe(events.append)

        for _ in range(5):
            monitor.check()

        assert events == [UNREACHABLE, REACHABLE]

    def test_report_feeds_platform_events(self) -> None:
        monitor = ConnectivityMonitor()
        events: list[ConnectivityStatus] = []
        monitor.subscribe(events.append)

        monitor.report(UNREACHABLE)
        monitor.report(UNREACHABLE)
        monitor.report(REACHABLE)

        assert events == [REACHABLE]
        assert monitor.is_reachable()

    def test_unsubscribe(self) -> None:
        monitor = ConnectivityMonitor()
        events: list[ConnectivityStatus] = []
        unsubscribe = monitor.subscribe(events.append)
        monitor.report(REACHABLE)
        unsubscribe()
        monitor.report(UNREACHABLE)
        assert events == []


class TestCurrentStatus:
    def test_probes_on_demand_when_not_running(self) -> None:
        probe = FlakyProbe(False, True)
        monitor = ConnectivityMonitor(probe)

        assert monitor.current_status() is UNREACHABLE
        assert monitor.current_status() is REACHABLE
        assert probe.calls == 2

    def test_reported_status_is_kept_without_probe(self) -> None:
        monitor = ConnectivityMonitor()
        monitor.report(UNREACHABLE)
        assert monitor.current_status() is UNREACHABLE
        assert not monitor.fallback


class TestFallback:
    def test_no_probe_assumes_reachable_with_warning(self, caplog: pytest.LogCaptureFixture) -> None:
        monitor = ConnectivityMonitor()
        with caplog.at_level(logging.WARNING, logger="tasksync.sync.connectivity"):
            assert monitor.current_status() is REACHABLE
            monitor.check()
        assert monitor.fallback
        assert caplog.text.count("assuming the network is reachable") == 1

    def test_broken_probe_assumes_reachable(self, caplog: pytest.LogCaptureFixture) -> None:
        def broken() -> bool:
            raise RuntimeError("no network API")

        monitor = ConnectivityMonitor(broken)
        with caplog.at_level(logging.WARNING, logger="tasksync.sync.connectivity"):
            assert monitor.check() is REACHABLE
        assert monitor.fallback
        assert "no network API" in caplog.text


class TestBackgroundLoop:
    def test_thread_polls_and_emits(self) -> None:
        probe = FlakyProbe(True, False)
        monitor = ConnectivityMonitor(probe, check_interval=0.01)
        changed = threading.Event()
        monitor.subscribe(lambda status: changed.set())

        monitor.start()
        try:
            assert monitor.running
            assert changed.wait(timeout=5)
            assert monitor.current_status() is UNREACHABLE
        finally:
            monitor.stop()
        assert not monitor.running


class TestFromConfig:
    def test_without_host_uses_fallback(self) -> None:
        monitor = ConnectivityMonitor.from_config({"connectivity": {"probe_host": ""}})
        assert monitor.fallback

    def test_with_host_builds_probe(self) -> None:
        monitor = ConnectivityMonitor.from_config({"connectivity": {"probe_host": "example.com"}})
        assert not monitor.fallback


class TestTcpProbe:
    def test_connects_to_listening_socket(self) -> None:
        server = socket.socket()
        server.bind(("127.0.0.1", 0))
        server.listen(1)
        try:
            port = server.getsockname()[1]
            assert tcp_probe("127.0.0.1", port, timeout=1)() is True
        finally:
            server.close()

    def test_closed_port_is_unreachable(self) -> None:
        server = socket.socket()
        server.bind(("127.0.0.1", 0))
        port = server.getsockname()[1]
        server.close()
        assert tcp_probe("127.0.0.1", port, timeout=1)() is False
