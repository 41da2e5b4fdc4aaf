"""Advisory file locks serialising mutations of a ``(user, app)`` pair."""
from __future__ import annotations

import errno
import fcntl
import json
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired within the timeout."""

    def __init__(self, path: Path, timeout: float) -> None:
        super().__init__(f"Timed out after {timeout:g}s waiting for lock {path}.")
        self.path = path
        self.timeout = timeout


@dataclass(slots=True, frozen=True)
class LockHandle:
    """Details about an acquired lock."""

    path: Path
    wait_ms: int


def _normalize_segment(value: str) -> str:
    cleaned = value.strip().replace("/", "-")
    if not cleaned or cleaned in {".", ".."}:
        raise ValueError(f"Invalid lock name segment: {value!r}")
    return cleaned


class LockManager:
    """Acquire ``flock`` based locks under *runtime_dir*.

    A timeout of zero performs a single non-blocking attempt, which is how the
    lifecycle engine turns a concurrent invocation into an immediate ``Busy``.
    """

    def __init__(
        self,
        runtime_dir: Path,
        default_timeout: float = 0.0,
        *,
        poll_interval: float = 0.05,
    ) -> None:
        self.runtime_dir = Path(runtime_dir)
        self.default_timeout = default_timeout
        self.poll_interval = poll_interval

    def lock_path(self, user: str, app: str) -> Path:
        """Return the lock file path for the pair."""
        return self.runtime_dir / f"{_normalize_segment(user)}.{_normalize_segment(app)}.lock"

    @contextmanager
    def instance_lock(
        self,
        user: str,
        app: str,
        timeout: float | None = None,
    ) -> Iterator[LockHandle]:
        """Hold the pair lock for the duration of the ``with`` block."""
        path = self.lock_path(user, app)
        with self._acquire(path, self.default_timeout if timeout is None else timeout) as handle:
            yield handle

    @contextmanager
    def _acquire(self, path: Path, timeout: float) -> Iterator[LockHandle]:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except OSError as exc:
                    if exc.errno not in (errno.EAGAIN, errno.EACCES, errno.EWOULDBLOCK):
                        raise
                    if time.monotonic() - started >= timeout:
                        raise LockTimeoutError(path, timeout) from exc
                    time.sleep(self.poll_interval)
            wait_ms = int((time.monotonic() - started) * 1000)
            self._write_metadata(fd, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    @staticmethod
    def _write_metadata(fd: int, path: Path) -> None:
        payload = {
            "pid": os.getpid(),
            "path": str(path),
            "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
        }
        data = json.dumps(payload).encode("utf-8")
        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, data)


__all__ = ["LockHandle", "LockManager", "LockTimeoutError"]
