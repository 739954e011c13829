"""Advisory writer locks serialising commits to a document."""
from __future__ import annotations

import fcntl
import hashlib
import json
import os
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired before the timeout expires."""


@dataclass(frozen=True)
class LockHandle:
    """Information about an acquired lock."""

    path: Path
    target: Path
    wait_ms: int


class LockManager:
    """Hand out exclusive locks keyed by the document they protect.

    Each lock combines an in-process mutex (so worker threads queue cleanly)
    with an ``flock`` on a file under *runtime_dir* (so separate processes
    do too). The lock file is left behind after release with metadata about
    the last holder.
    """

    def __init__(self, runtime_dir: Path, default_timeout: float = 10.0) -> None:
        """Place lock files in *runtime_dir* and wait *default_timeout* seconds."""
        self.runtime_dir = runtime_dir.expanduser()
        self.default_timeout = default_timeout
        self._guard = threading.Lock()
        self._mutexes: dict[Path, threading.Lock] = {}

    def lock_path(self, target: Path) -> Path:
        """Return the lock file used for *target*."""
        resolved = target.expanduser().resolve()
        digest = hashlib.sha256(str(resolved).encode("utf-8")).hexdigest()[:12]
        stem = "".join(char if char.isalnum() or char in "-_" else "-" for char in resolved.stem)
        return self.runtime_dir / f"{stem}-{digest}.lock"

    @contextmanager
    def document_lock(self, target: Path, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the writer lock for *target* for the duration of the block."""
        limit = self.default_timeout if timeout is None else timeout
        lock_path = self.lock_path(target)
        started = time.monotonic()

        mutex = self._mutex_for(lock_path)
        if not mutex.acquire(timeout=max(limit, 0)):
            raise LockTimeoutError(
                f"Timed out after {limit:.1f}s waiting for the lock on {target}."
            )
        try:
            try:
                self.runtime_dir.mkdir(parents=True, exist_ok=True)
                fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o600)
            except OSError as exc:
                raise LockTimeoutError(f"Unable to open lock file {lock_path}: {exc}") from exc
            try:
                self._acquire_file_lock(fd, lock_path, target, started, limit)
                wait_ms = int((time.monotonic() - started) * 1000)
                self._write_metadata(fd, lock_path, target)
                yield LockHandle(path=lock_path, target=target, wait_ms=wait_ms)
            finally:
                try:
                    fcntl.flock(fd, fcntl.LOCK_UN)
                finally:
                    os.close(fd)
        finally:
            mutex.release()

    def _mutex_for(self, lock_path: Path) -> threading.Lock:
        with self._guard:
            mutex = self._mutexes.get(lock_path)
            if mutex is None:
                mutex = threading.Lock()
                self._mutexes[lock_path] = mutex
            return mutex

    @staticmethod
    def _acquire_file_lock(
        fd: int,
        lock_path: Path,
        target: Path,
        started: float,
        limit: float,
    ) -> None:
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                return
            except BlockingIOError:
                if time.monotonic() - started >= limit:
                    raise LockTimeoutError(
                        f"Timed out after {limit:.1f}s waiting for the lock on {target} "
                        f"({lock_path})."
                    ) from None
                time.sleep(POLL_INTERVAL)

    @staticmethod
    def _write_metadata(fd: int, lock_path: Path, target: Path) -> None:
        payload = {
            "pid": os.getpid(),
            "path": str(lock_path),
            "target": str(target),
            "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
        }
        data = json.dumps(payload).encode("utf-8")
        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, data)


__all__ = ["LockHandle", "LockManager", "LockTimeoutError"]
