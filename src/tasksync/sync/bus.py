"""Lightweight in-process publish/subscribe channel.

Listeners are fire-and-forget: failures are logged but never raise
exceptions or interrupt the publisher.

Thread-safe: a lock protects the listener list so a background poller and
the caller's thread can publish and subscribe concurrently.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


class Channel:
    """One event source's set of listeners."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._listeners: list[Callable[..., Any]] = []

    def subscribe(self, fn: Callable[..., Any]) -> Callable[[], None]:
        """Register *fn* and return a callable that unsubscribes it."""
        with self._lock:
            self._listeners.append(fn)
        return lambda: self.unsubscribe(fn)

    def unsubscribe(self, fn: Callable[..., Any]) -> None:
        """Remove a previously registered listener.  Unknown listeners are ignored."""
        with self._lock:
            try:
                self._listeners.remove(fn)
            except ValueError:
                pass

    def publish(self, *args: Any) -> None:
        """Call every listener with *args*.  Never raises."""
        with self._lock:
            snapshot_listeners = list(self._listeners)
        for fn in snapshot_listeners:
            try:
                fn(*args)
            except Exception:
                logger.exception("%s listener failed", self.name)

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)
