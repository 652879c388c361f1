"""File based locks guarding shared on-disk state.

Locks are advisory ``fcntl.flock`` locks taken in a non-blocking retry loop so
a timeout can be enforced. A per-path thread mutex is held alongside the file
lock so threads within one process queue up the same way separate processes
do; a mutex is dropped once no caller holds it. Lock files are left in place
after release for diagnostics.
"""
from __future__ import annotations

import fcntl
import json
import os
import re
import threading
import time
import weakref
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TextIO

_THREAD_MUTEXES: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
_THREAD_MUTEXES_GUARD = threading.Lock()
_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]")

POLL_INTERVAL = 0.05


class LockTimeoutError(TimeoutError):
    """Raised when a lock cannot be acquired within the timeout."""


@dataclass(frozen=True, slots=True)
class LockHandle:
    """Details about an acquired lock."""

    path: Path
    wait_ms: int


def _thread_mutex(path: Path) -> threading.Lock:
    key = str(path.resolve())
    with _THREAD_MUTEXES_GUARD:
        mutex = _THREAD_MUTEXES.get(key)
        if mutex is None:
            mutex = _THREAD_MUTEXES[key] = threading.Lock()
        return mutex


class LockManager:
    """Hand out named locks rooted at *lock_dir*."""

    def __init__(self, lock_dir: Path, default_timeout: float = 300.0) -> None:
        """Initialise the manager; directories are created lazily."""
        self.lock_dir = Path(lock_dir).expanduser()
        self.default_timeout = float(default_timeout)

    def lock_path(self, name: str, *, scope: str | None = None) -> Path:
        """Return the lock file path for *name* within an optional *scope*."""
        safe = _SAFE_NAME.sub("_", name.strip()) or "_"
        base = self.lock_dir / scope if scope else self.lock_dir
        return base / f"{safe}.lock"

    @contextmanager
    def version_lock(self, version: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock guarding the cache entry for *version*."""
        with self._acquire(self.lock_path(version, scope="versions"), timeout) as handle:
            yield handle

    # ------------------------------------------------------------------
    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        effective_timeout = self.default_timeout if timeout is None else float(timeout)
        path.parent.mkdir(parents=True, exist_ok=True)
        started = time.monotonic()
        deadline = started + max(0.0, effective_timeout)

        mutex = _thread_mutex(path)
        if not mutex.acquire(timeout=max(0.0, effective_timeout)):
            raise LockTimeoutError(f"Timed out after {effective_timeout:.1f}s waiting for {path}.")
        try:
            with path.open("a+", encoding="utf-8") as handle:
                while True:
                    try:
                        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                        break
                    except BlockingIOError:
                        if time.monotonic() >= deadline:
                            raise LockTimeoutError(
                                f"Timed out after {effective_timeout:.1f}s waiting for {path}."
                            ) from None
                        time.sleep(POLL_INTERVAL)
                try:
                    wait_ms = int((time.monotonic() - started) * 1000)
                    _write_metadata(handle, path)
                    yield LockHandle(path=path, wait_ms=wait_ms)
                finally:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            mutex.release()


def _write_metadata(handle: TextIO, path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z"),
    }
    handle.seek(0)
    handle.truncate()
    handle.write(json.dumps(payload))
    handle.flush()


__all__ = ["LockHandle", "LockManager", "LockTimeoutError"]
