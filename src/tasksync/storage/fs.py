"""Atomic file writes, JSONL append, and the per-user directory layout.

Layout under the tasksync home directory::

    <home>/config.json
    <home>/locks/<key>.lock
    <home>/users/<user_key>/tasks/<task_id>.json
    <home>/users/<user_key>/pending.jsonl
    <home>/users/<user_key>/dead_letters.jsonl
"""

from __future__ import annotations

import hashlib
import os
import re
import shutil
import tempfile
from pathlib import Path

TASKSYNC_HOME_ENV = "TASKSYNC_HOME"
DEFAULT_HOME_DIR = ".tasksync"

_SAFE_USER_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class TasksyncHomeError(Exception):
    """Raised when TASKSYNC_HOME env var is set but invalid."""


def _fsync_directory(path: Path) -> None:
    """Fsync a directory to ensure metadata (e.g. renames) is durable.

    Some platforms (notably macOS HFS+) may not support fsync on directory
    file descriptors, so ``OSError`` is silently ignored.
    """
    try:
        fd = os.open(str(path), os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
    except OSError:
        pass


def atomic_write(path: Path, content: str | bytes) -> None:
    """Write content to path atomically via temp file + fsync + rename.

    The temp file is created in the same directory as the target to ensure
    os.rename() is an atomic operation (same filesystem).

    Raises:
        FileNotFoundError: If the parent directory does not exist.
    """
    parent = path.parent
    if not parent.is_dir():
        raise FileNotFoundError(f"Parent directory does not exist: {parent}")

    data = content.encode("utf-8") if isinstance(content, str) else content

    fd, tmp_path = tempfile.mkstemp(dir=parent, prefix=".tmp.")
    closed = False
    try:
        # os.write() can short-write; loop until all bytes are flushed.
        mv = memoryview(data)
        while mv:
            written = os.write(fd, mv)
            mv = mv[written:]
        os.fsync(fd)
        os.close(fd)
        closed = True
        os.replace(tmp_path, path)
        _fsync_directory(parent)
    except BaseException:
        if not closed:
            os.close(fd)
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def durable_unlink(path: Path) -> bool:
    """Remove *path* and fsync its directory.  Returns ``False`` if it was absent."""
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    _fsync_directory(path.parent)
    return True


def jsonl_append(path: Path, line: str) -> None:
    """Append a single line to a JSONL file.

    The caller must already hold the appropriate lock; this function does
    no locking of its own.

    The line **must** already end with ``\\n``.  The function opens the file
    in append mode, writes the line, then flushes and fsyncs to ensure
    durability.
    """
    with open(path, "a", encoding="utf-8") as fh:
        fh.write(line)
        fh.flush()
        os.fsync(fh.fileno())
    _fsync_directory(path.parent)


# ---------------------------------------------------------------------------
# Home and per-user directories
# ---------------------------------------------------------------------------


def resolve_home(explicit: Path | str | None = None) -> Path:
    """Return the tasksync home directory.

    Uses *explicit* if given, then the TASKSYNC_HOME env var, then
    ``~/.tasksync``.  The directory is not created here.

    Raises:
        TasksyncHomeError: If TASKSYNC_HOME is set but empty.
    """
    if explicit is not None:
        return Path(explicit)

    env_home = os.environ.get(TASKSYNC_HOME_ENV)
    if env_home is not None:
        if not env_home:
            raise TasksyncHomeError("TASKSYNC_HOME is set but empty")
        return Path(env_home)

    return Path.home() / DEFAULT_HOME_DIR


def user_key(user_id: str) -> str:
    """Map an opaque user ID to a filesystem-safe directory name.

    IDs made of letters, digits, ``_`` and ``-`` are used as-is; anything
    else is replaced by a SHA-256 digest so distinct users never collide.
    """
    if not isinstance(user_id, str) or not user_id:
        raise ValueError("user_id must be a non-empty string")
    if _SAFE_USER_RE.match(user_id):
        return user_id
    return "u_" + hashlib.sha256(user_id.encode("utf-8")).hexdigest()[:40]


def locks_dir(home: Path) -> Path:
    return home / "locks"


def user_dir(home: Path, user_id: str) -> Path:
    return home / "users" / user_key(user_id)


def ensure_user_dirs(home: Path, user_id: str) -> Path:
    """Create the directory structure for *user_id* and return the user dir."""
    udir = user_dir(home, user_id)
    (udir / "tasks").mkdir(parents=True, exist_ok=True)
    locks_dir(home).mkdir(parents=True, exist_ok=True)
    return udir


def remove_tree(path: Path) -> None:
    """Recursively delete *path* if it exists, then fsync its parent."""
    if not path.exists():
        return
    shutil.rmtree(path)
    _fsync_directory(path.parent)
