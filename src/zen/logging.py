"""Structured operation logging for zen.

Each CLI operation produces one JSON line in ``operations.jsonl``. The record
lists the steps that ran, the lock wait, and a sanitised result block so that
operators (and the JSON diagnostics printed by the CLI) can correlate a
failure with the exact step that produced it.
"""
from __future__ import annotations

import json
import logging
import os
import secrets
import time
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

_LOG = logging.getLogger("zen")


def _timestamp() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_operation_id() -> str:
    """Return a short random identifier used to correlate records."""
    return f"op-{datetime.now(tz=UTC).strftime('%Y%m%d%H%M%S')}-{secrets.token_hex(4)}"


def _sanitize(value: object) -> object:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


@dataclass(slots=True)
class OperationScope:
    """Mutable record for a single in-flight operation."""

    command: str
    op_id: str
    args: dict[str, object]
    target: dict[str, object]
    started_at: str
    _started: float = field(default_factory=time.monotonic)
    steps: list[dict[str, object]] = field(default_factory=list)
    lock_wait_ms: int | None = None
    result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Record a step outcome."""
        entry: dict[str, object] = {"name": name, "status": status, "at": _timestamp()}
        if detail is not None:
            entry["detail"] = _sanitize(detail)
        self.steps.append(entry)
        _LOG.debug("%s [%s] %s: %s", self.command, self.op_id, name, status)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long lock acquisition waited."""
        self.lock_wait_ms = int(wait_ms)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._set_result("success", message, changed=changed, backups=backups, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            warnings=warnings,
            errors=errors,
            changed=changed,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation failed."""
        self._set_result(
            "error",
            message,
            errors=list(errors) if errors else [message],
            rc=rc,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings or []),
            "errors": list(errors or []),
            "backups": list(backups or []),
            "context": _sanitize(dict(context or {})),
        }
        if rc is not None:
            self.result["rc"] = rc

    def to_record(self) -> dict[str, object]:
        """Return the JSON record for this operation."""
        result = self.result or {
            "status": "incomplete",
            "message": "Operation ended without an explicit result.",
            "warnings": [],
            "errors": [],
            "backups": [],
            "context": {},
        }
        return {
            "op_id": self.op_id,
            "command": self.command,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "started_at": self.started_at,
            "finished_at": _timestamp(),
            "duration_ms": int((time.monotonic() - self._started) * 1000),
            "lock_wait_ms": self.lock_wait_ms,
            "steps": self.steps,
            "result": result,
        }


class StructuredLogger:
    """Append operation records to ``<logs_dir>/operations.jsonl``."""

    def __init__(self, logs_dir: Path) -> None:
        self._logs_dir = Path(logs_dir)
        self._operations_log_path = self._logs_dir / "operations.jsonl"
        self._enabled = True
        try:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            _LOG.warning("Structured logging disabled; cannot create %s: %s", self._logs_dir, exc)
            self._enabled = False

    @property
    def operations_log_path(self) -> Path:
        """Return the path of the JSONL operations log."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
        *,
        op_id: str | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(
            command=command,
            op_id=op_id or new_operation_id(),
            args=dict(args or {}),
            target=dict(target or {}),
            started_at=_timestamp(),
        )
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(str(exc) or type(exc).__name__)
            raise
        finally:
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        line = json.dumps(record, sort_keys=True)
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
            os.chmod(self._operations_log_path, 0o640)
        except OSError as exc:
            _LOG.warning("Structured logging disabled after write failure: %s", exc)
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger", "new_operation_id"]
