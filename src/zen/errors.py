"""Typed error kinds raised by zen components.

Every failure that can reach the command line is a :class:`ZenError`. The
class name doubles as the machine-readable ``kind`` reported in JSON
diagnostics, and ``exit_code`` decides the process exit status.
"""
from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

from .exit_codes import ExitCode


class ZenError(RuntimeError):
    """Base class for all lifecycle errors."""

    exit_code: ExitCode = ExitCode.OTHER
    transient: bool = False

    def __init__(
        self,
        message: str,
        *,
        step: str | None = None,
        artifacts: Iterable[str | Path] | None = None,
        transient: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.step = step
        if transient is not None:
            self.transient = transient
        self.artifacts: list[str] = [str(item) for item in artifacts or ()]
        self.correlation_id: str | None = None

    @property
    def kind(self) -> str:
        """Return the error kind name."""
        return type(self).__name__

    def to_dict(self) -> dict[str, object]:
        """Return the JSON diagnostic for this error."""
        return {
            "kind": self.kind,
            "message": self.message,
            "step": self.step,
            "artifacts": list(self.artifacts),
            "correlation_id": self.correlation_id,
        }


class UsageError(ZenError):
    """Invalid arguments or options."""

    exit_code = ExitCode.USAGE


class ConfigError(UsageError):
    """Raised when configuration parsing fails."""


class UnknownApp(ZenError):
    """The application is not part of the catalog."""

    exit_code = ExitCode.NOT_FOUND


class UnknownUser(ZenError):
    """The user is not registered."""

    exit_code = ExitCode.NOT_FOUND


class UserBanned(ZenError):
    """The user is registered but banned."""

    exit_code = ExitCode.NOT_FOUND


class AlreadyInstalled(ZenError):
    """An instance already exists for the pair."""

    exit_code = ExitCode.NOT_FOUND


class NotInstalled(ZenError):
    """No instance exists for the pair."""

    exit_code = ExitCode.NOT_FOUND


class Busy(ZenError):
    """Another action holds the pair lock."""

    exit_code = ExitCode.BUSY


class Inconsistent(ZenError):
    """Recorded state disagrees with observed artifacts."""

    exit_code = ExitCode.INCONSISTENT


class NoFreePort(ZenError):
    """The manifest port range is exhausted."""

    exit_code = ExitCode.EXTERNAL


class DependencyInstallFailed(ZenError):
    """The package manager could not install dependencies."""

    exit_code = ExitCode.EXTERNAL


class DownloadFailed(ZenError):
    """Release metadata or artifact could not be fetched."""

    exit_code = ExitCode.EXTERNAL


class ChecksumMismatch(ZenError):
    """Downloaded artifact does not match the expected size or digest."""

    exit_code = ExitCode.EXTERNAL


class TemplateError(ZenError):
    """Template missing, malformed, or referencing an unknown placeholder."""


class UnitInstallFailed(ZenError):
    """The service supervisor rejected a unit operation."""

    exit_code = ExitCode.EXTERNAL


class ServiceStartTimeout(ZenError):
    """The unit never reached an active state."""

    exit_code = ExitCode.TIMEOUT


class ServiceStopTimeout(ZenError):
    """The unit stayed active even after being killed."""

    exit_code = ExitCode.TIMEOUT


class ProxyReloadFailed(ZenError):
    """The reverse proxy refused to reload its configuration."""

    exit_code = ExitCode.EXTERNAL
    transient = True


class BackupFailed(ZenError):
    """A backup archive could not be produced."""

    exit_code = ExitCode.EXTERNAL


class RestoreFailed(ZenError):
    """A backup archive could not be restored."""

    exit_code = ExitCode.EXTERNAL


class StateStoreError(ZenError):
    """The state database could not be read or written."""


class Timeout(ZenError):
    """An external command exceeded its time budget."""

    exit_code = ExitCode.TIMEOUT
    transient = True


class Cancelled(ZenError):
    """The action was interrupted by a termination signal."""

    def __init__(self, message: str = "Operation cancelled.", *, abort: bool = False) -> None:
        super().__init__(message)
        self.abort = abort


class Internal(ZenError):
    """Unexpected failure inside zen itself."""


__all__ = [
    "AlreadyInstalled",
    "BackupFailed",
    "Busy",
    "Cancelled",
    "ChecksumMismatch",
    "ConfigError",
    "DependencyInstallFailed",
    "DownloadFailed",
    "Inconsistent",
    "Internal",
    "NoFreePort",
    "NotInstalled",
    "ProxyReloadFailed",
    "RestoreFailed",
    "ServiceStartTimeout",
    "ServiceStopTimeout",
    "StateStoreError",
    "TemplateError",
    "Timeout",
    "UnitInstallFailed",
    "UnknownApp",
    "UnknownUser",
    "UsageError",
    "UserBanned",
    "ZenError",
]
