"""REST document-database client.

Endpoints under ``base_url``::

    GET    /users/<uid>/tasks         -> {"documents": [<task>, ...]}
    GET    /users/<uid>/tasks/<id>    -> <task>   (404: absent)
    PUT    /users/<uid>/tasks/<id>    <- <task>
    DELETE /users/<uid>/tasks/<id>               (404: already gone)

Failures are classified for the sync engine: connection errors, timeouts,
truncated or garbled responses, 408, 429 and 5xx are transient; every other
HTTP error, and a response body that is not a valid task document, is
permanent.

Change notifications are produced by polling the collection on a daemon
thread and diffing successive reads.
"""

from __future__ import annotations

import json
import logging
import threading
from http.client import HTTPException
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from tasksync.core.errors import PermanentError, TransientError
from tasksync.core.tasks import Task
from tasksync.sync.remote import (
    ChangeListener,
    RemoteStore,
    Subscription,
    diff_documents,
    index_by_id,
)

logger = logging.getLogger(__name__)

_TRANSIENT_STATUSES = frozenset({408, 429})


class HttpRemoteStore(RemoteStore):
    """:class:`RemoteStore` backed by a JSON-over-HTTP document API."""

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout: float = 10.0,
        poll_interval: float = 15.0,
    ) -> None:
        if not base_url.startswith(("http://", "https://")):
            raise ValueError(f"Remote URL must be http(s): {base_url!r}")
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.poll_interval = poll_interval

    @classmethod
    def from_config(cls, config: dict, *, token: str | None = None) -> HttpRemoteStore:
        """Build a client from the ``remote`` config section."""
        cfg = config.get("remote", {})
        return cls(
            cfg.get("url") or "",
            token=token or cfg.get("token"),
            timeout=float(cfg.get("timeout_seconds", 10)),
            poll_interval=float(cfg.get("poll_interval_seconds", 15)),
        )

    # ------------------------------------------------------------------
    # RemoteStore
    # ------------------------------------------------------------------

    def fetch_all(self, user_id: str) -> list[Task]:
        status, body = self._request("GET", self._collection_url(user_id))
        if not isinstance(body, dict) or not isinstance(body.get("documents"), list):
            raise PermanentError("Task collection response has no 'documents' list", status=status)
        return [_decode_task(doc) for doc in body["documents"]]

    def fetch_one(self, user_id: str, task_id: str) -> Task | None:
        status, body = self._request("GET", self._document_url(user_id, task_id), allow_404=True)
        if status == 404:
            return None
        return _decode_task(body)

    def put(self, user_id: str, task: Task) -> None:
        self._request("PUT", self._document_url(user_id, task.id), payload=task.to_map())

    def delete(self, user_id: str, task_id: str) -> None:
        self._request("DELETE", self._document_url(user_id, task_id), allow_404=True)

    def subscribe_changes(self, user_id: str, listener: ChangeListener) -> Subscription:
        poller = _CollectionPoller(self, user_id, listener, self.poll_interval)
        poller.start()
        return Subscription(poller.stop)

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    def _collection_url(self, user_id: str) -> str:
        return f"{self.base_url}/users/{quote(user_id, safe='')}/tasks"

    def _document_url(self, user_id: str, task_id: str) -> str:
        return f"{self._collection_url(user_id)}/{quote(task_id, safe='')}"

    def _request(
        self,
        method: str,
        url: str,
        *,
        payload: dict | None = None,
        allow_404: bool = False,
    ) -> tuple[int, object]:
        headers = {"Accept": "application/json"}
        data = None
        if payload is not None:
            data = json.dumps(payload, sort_keys=True).encode("utf-8")
            headers["Content-Type"] = "application/json"
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        req = Request(url, data=data, headers=headers, method=method)
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                status = resp.status
                raw = resp.read()
        except HTTPError as exc:
            if exc.code == 404 and allow_404:
                return 404, None
            raise _classify_http_error(method, url, exc) from exc
        except (URLError, HTTPException, OSError) as exc:
            raise TransientError(f"{method} {url} failed: {exc}") from exc

        if not raw:
            return status, None
        try:
            return status, json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise PermanentError(f"{method} {url} returned invalid JSON", status=status) from exc


def _classify_http_error(method: str, url: str, exc: HTTPError) -> Exception:
    message = f"{method} {url} failed: HTTP {exc.code} {exc.reason}"
    if exc.code in _TRANSIENT_STATUSES or exc.code >= 500:
        return TransientError(message)
    return PermanentError(message, status=exc.code)


def _decode_task(doc: object) -> Task:
    try:
        return Task.from_map(doc)
    except ValueError as exc:
        raise PermanentError(f"Malformed task document: {exc}") from exc


class _CollectionPoller:
    """Poll one user's collection and publish the differences."""

    def __init__(
        self,
        remote: HttpRemoteStore,
        user_id: str,
        listener: ChangeListener,
        interval: float,
    ) -> None:
        self._remote = remote
        self._user_id = user_id
        self._listener = listener
        self._interval = interval
        self._known: dict[str, Task] = {}
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run, daemon=True, name=f"tasksync-poll-{user_id}"
        )

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join(timeout=self._remote.timeout + 1)

    def poll_once(self) -> None:
        try:
            current = index_by_id(self._remote.fetch_all(self._user_id))
        except TransientError as exc:
            logger.debug("Change poll for %s failed: %s", self._user_id, exc)
            return
        except PermanentError as exc:
            logger.error("Change poll for %s rejected: %s", self._user_id, exc)
            return

        events = diff_documents(self._known, current)
        self._known = current
        for event in events:
            if self._stop_event.is_set():
                return
            try:
                self._listener(event)
            except Exception:
                logger.exception("Change listener failed for task %s", event.task.id)

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self.poll_once()
            self._stop_event.wait(self._interval)
