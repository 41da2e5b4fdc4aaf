"""Records persisted in the state store."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path


def now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


class Channel(str, Enum):
    """Upstream release track."""

    STABLE = "stable"
    PRERELEASE = "prerelease"


class InstanceStatus(str, Enum):
    """Lifecycle status recorded for an instance."""

    INSTALLING = "installing"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"
    REMOVED = "removed"
    DEGRADED = "degraded"
    INCONSISTENT = "inconsistent"


@dataclass(slots=True, frozen=True)
class User:
    """A registered POSIX user allowed to own instances."""

    username: str
    home: Path
    quota: int | None = None
    banned: bool = False
    created_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "username": self.username,
            "home": str(self.home),
            "quota": self.quota,
            "banned": self.banned,
            "created_at": self.created_at,
        }


@dataclass(slots=True)
class Instance:
    """The installation of one app for one user."""

    user: str
    app: str
    port: int
    channel: Channel
    version: str
    release_name: str
    install_path: Path
    config_path: Path
    status: InstanceStatus
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    options: dict[str, object] = field(default_factory=dict)

    def evolve(self, **changes: object) -> Instance:
        """Return a copy with *changes* applied and ``updated_at`` refreshed."""
        changes.setdefault("updated_at", now_iso())
        return replace(self, **changes)  # type: ignore[arg-type]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "user": self.user,
            "app": self.app,
            "port": self.port,
            "channel": self.channel.value,
            "version": self.version,
            "release_name": self.release_name,
            "install_path": str(self.install_path),
            "config_path": str(self.config_path),
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "options": dict(self.options),
        }


@dataclass(slots=True, frozen=True)
class OperationRecord:
    """One entry of the append-only operation log."""

    timestamp: str
    user: str
    app: str
    action: str
    outcome: str
    error: str | None = None
    correlation_id: str | None = None
    id: int | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "user": self.user,
            "app": self.app,
            "action": self.action,
            "outcome": self.outcome,
            "error": self.error,
            "correlation_id": self.correlation_id,
        }


__all__ = ["Channel", "Instance", "InstanceStatus", "OperationRecord", "User", "now_iso"]
