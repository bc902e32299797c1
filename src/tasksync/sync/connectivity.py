"""Connectivity monitor: edge-triggered reachability events.

Reachability is decided by a *probe* callable returning ``True`` when the
network is usable.  The default probe is a TCP connect to the configured
host.  The monitor can poll the probe on a daemon thread, be checked on
demand, or be fed by a platform callback through :meth:`report`.

Subscribers only hear about transitions: two consecutive observations of
the same state produce one event at most, and the very first observation
establishes a baseline without emitting.

Fallback: when no probe is configured, or the probe itself is broken
(raises something other than a network error), the monitor assumes the
network is reachable and says so in the log.  It never blocks the app on
a missing platform facility.
"""

from __future__ import annotations

import logging
import socket
import threading
from collections.abc import Callable
from enum import Enum

from tasksync.sync.bus import Channel

logger = logging.getLogger(__name__)


class ConnectivityStatus(str, Enum):
    REACHABLE = "reachable"
    UNREACHABLE = "unreachable"


def tcp_probe(host: str, port: int = 443, timeout: float = 5.0) -> Callable[[], bool]:
    """Return a probe that TCP-connects to ``host:port``."""

    def _probe() -> bool:
        try:
            with socket.create_connection((host, port), timeout=timeout):
                return True
        except OSError:
            return False

    return _probe


class ConnectivityMonitor:
    """Track network reachability and notify subscribers on transitions."""

    def __init__(
        self,
        probe: Callable[[], bool] | None = None,
        *,
        check_interval: float = 30.0,
    ) -> None:
        self._probe = probe
        self._check_interval = check_interval
        self._status: ConnectivityStatus | None = None
        self._fallback = probe is None
        self._fallback_logged = False
        self._changes = Channel("connectivity")
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @classmethod
    def from_config(cls, config: dict) -> ConnectivityMonitor:
        """Build a monitor from the ``connectivity`` config section."""
        cfg = config.get("connectivity", {})
        host = cfg.get("probe_host") or ""
        probe = None
        if host:
            probe = tcp_probe(
                host,
                int(cfg.get("probe_port", 443)),
                float(cfg.get("probe_timeout_seconds", 5)),
            )
        return cls(probe, check_interval=float(cfg.get("check_interval_seconds", 30)))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start polling the probe on a background daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._monitor_loop, daemon=True, name="tasksync-connectivity"
        )
        self._thread.start()
        logger.info("Connectivity monitor started (interval=%.0fs)", self._check_interval)

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, fn: Callable[[ConnectivityStatus], None]) -> Callable[[], None]:
        """Register *fn* for transitions; returns an unsubscribe callable."""
        return self._changes.subscribe(fn)

    def unsubscribe(self, fn: Callable[[ConnectivityStatus], None]) -> None:
        self._changes.unsubscribe(fn)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def fallback(self) -> bool:
        """``True`` while the monitor is assuming reachability for lack of a probe."""
        return self._fallback

    def current_status(self) -> ConnectivityStatus:
        """Return reachability now, probing synchronously if nothing is known yet.

        While the background thread is not running each call probes afresh,
        so a caller about to take a blocking action gets a current answer.
        Without a probe, the last reported status (or the reachable
        fallback) is returned.
        """
        with self._lock:
            known = self._status
        if known is not None and (self.running or self._probe is None):
            return known
        return self.check()

    def is_reachable(self) -> bool:
        return self.current_status() is ConnectivityStatus.REACHABLE

    def check(self) -> ConnectivityStatus:
        """Run the probe once, record the result, and notify on a transition."""
        status = self._run_probe()
        self._record(status)
        return status

    def report(self, status: ConnectivityStatus) -> None:
        """Record an observation pushed by a platform network callback."""
        self._fallback = False
        self._record(ConnectivityStatus(status))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _run_probe(self) -> ConnectivityStatus:
        if self._probe is None:
            self._assume_reachable("no connectivity probe configured")
            return ConnectivityStatus.REACHABLE
        try:
            ok = self._probe()
        except Exception as exc:
            self._fallback = True
            self._assume_reachable(f"connectivity probe failed: {exc}")
            return ConnectivityStatus.REACHABLE
        self._fallback = False
        return ConnectivityStatus.REACHABLE if ok else ConnectivityStatus.UNREACHABLE

    def _assume_reachable(self, why: str) -> None:
        if not self._fallback_logged:
            logger.warning("%s; assuming the network is reachable", why)
            self._fallback_logged = True

    def _record(self, status: ConnectivityStatus) -> None:
        with self._lock:
            previous = self._status
            self._status = status
        if previous is None or previous is status:
            return
        logger.info("Connectivity changed: %s -> %s", previous.value, status.value)
        self._changes.publish(status)

    def _monitor_loop(self) -> None:
        while not self._stop_event.is_set():
            self.check()
            self._stop_event.wait(self._check_interval)
