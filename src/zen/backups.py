"""Snapshot and restore an app's user-scoped configuration."""
from __future__ import annotations

import os
import shutil
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from .archive import (
    ArchiveError,
    compression_extension,
    compute_checksum,
    create_archive,
    extract_archive,
    read_checksum_file,
    resolve_algorithm,
    write_checksum_file,
)
from .config import BackupConfig
from .errors import BackupFailed, RestoreFailed, UnknownApp
from .software.manifest import AppManifest

if TYPE_CHECKING:
    from .providers.systemd import SystemdProvider

ARCHIVE_SUFFIXES = (".tar.zst", ".tar.gz", ".tar")


@dataclass(slots=True, frozen=True)
class BackupResult:
    """Details of a freshly written archive."""

    archive: Path
    checksum: str
    members: tuple[str, ...]
    created_at: str

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "archive": str(self.archive),
            "checksum": self.checksum,
            "members": list(self.members),
            "created_at": self.created_at,
        }


@dataclass(slots=True)
class BackupManager:
    """Create dated archives under ``<home>/.backups/<app>/`` and restore them.

    Archives hold the manifest's ``config_paths`` relative to the user's home,
    so a restore puts every file back at its original location. The install
    path is never touched.
    """

    manifests: Mapping[str, AppManifest]
    config: BackupConfig = field(default_factory=BackupConfig)
    systemd: SystemdProvider | None = None

    def backup_dir(self, home: Path, app: str) -> Path:
        """Return the per-user backup directory for *app*."""
        return home / self.config.dirname / app

    def list_backups(self, home: Path, app: str) -> list[Path]:
        """Return existing archives for *app*, oldest first."""
        directory = self.backup_dir(home, app)
        if not directory.is_dir():
            return []
        return sorted(
            path
            for path in directory.iterdir()
            if path.is_file() and path.name.endswith(ARCHIVE_SUFFIXES)
        )

    def backup(self, user: str, app: str, *, home: Path) -> BackupResult:
        """Archive the app's config paths and return the archive details."""
        manifest = self._manifest(app)
        members = [
            entry for entry in manifest.config_paths if (home / entry).exists()
        ]
        if not members:
            raise BackupFailed(
                f"Nothing to back up for {user}/{app}: no config paths exist under {home}."
            )

        algorithm = resolve_algorithm(self.config.compression)
        destination = self.backup_dir(home, app)
        now = datetime.now(tz=UTC)
        partial: Path | None = None
        try:
            destination.mkdir(parents=True, exist_ok=True)
            os.chmod(destination, 0o750)
            archive_path = self._unique_archive_path(
                destination, now.strftime("%Y%m%d-%H%M%S"), compression_extension(algorithm)
            )
            partial = archive_path.with_name(f".{archive_path.name}.partial")
            create_archive(home, members, partial, algorithm, self.config.compression_level)
            os.replace(partial, archive_path)
            checksum = compute_checksum(archive_path)
            write_checksum_file(archive_path, checksum)
        except (ArchiveError, OSError) as exc:
            if partial is not None:
                partial.unlink(missing_ok=True)
            raise BackupFailed(
                f"Backup of {user}/{app} failed: {exc}", artifacts=[destination]
            ) from exc

        return BackupResult(
            archive=archive_path,
            checksum=checksum,
            members=tuple(members),
            created_at=now.isoformat(timespec="seconds").replace("+00:00", "Z"),
        )

    def restore(self, user: str, app: str, archive_path: Path, *, home: Path) -> list[Path]:
        """Replace config paths from *archive_path*, restarting a stopped service.

        The archive is extracted and checked before the service is touched.
        Replaced paths are kept aside until every entry is in place, so a
        failure puts the previous config back and the service is started
        again either way.
        """
        manifest = self._manifest(app)
        archive_path = Path(archive_path)
        if not archive_path.is_file():
            raise RestoreFailed(f"Backup archive {archive_path} does not exist.")

        expected = read_checksum_file(archive_path)
        if expected is not None and compute_checksum(archive_path) != expected:
            raise RestoreFailed(
                f"Checksum mismatch for {archive_path.name}; refusing to restore.",
                artifacts=[archive_path],
            )

        staging = Path(tempfile.mkdtemp(prefix=".zen-restore-", dir=home))
        try:
            try:
                extract_archive(archive_path, staging)
            except ArchiveError as exc:
                raise RestoreFailed(str(exc), artifacts=[archive_path]) from exc
            entries = [entry for entry in manifest.config_paths if (staging / entry).exists()]
            if not entries:
                raise RestoreFailed(
                    f"{archive_path.name} holds none of {app}'s config paths.",
                    artifacts=[archive_path],
                )

            service_active = False
            if self.systemd is not None and self.systemd.unit_exists(user, app):
                service_active = True
                self.systemd.stop(user, app)
            try:
                return self._swap_in(staging, home, entries)
            finally:
                if service_active and self.systemd is not None:
                    self.systemd.start(user, app)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

    @staticmethod
    def _swap_in(staging: Path, home: Path, entries: list[str]) -> list[Path]:
        aside = staging / ".previous"
        moved: list[tuple[Path, Path | None]] = []
        target = home
        try:
            for index, entry in enumerate(entries):
                target = home / entry
                kept: Path | None = None
                if target.exists() or target.is_symlink():
                    kept = aside / str(index)
                    kept.parent.mkdir(parents=True, exist_ok=True)
                    os.replace(target, kept)
                moved.append((target, kept))
                target.parent.mkdir(parents=True, exist_ok=True)
                os.replace(staging / entry, target)
        except OSError as exc:
            for placed, previous in reversed(moved):
                _remove_path(placed)
                if previous is not None:
                    os.replace(previous, placed)
            raise RestoreFailed(
                f"Could not restore {target}: {exc}", artifacts=[target]
            ) from exc
        return [home / entry for entry in entries]

    def _manifest(self, app: str) -> AppManifest:
        try:
            return self.manifests[app]
        except KeyError as exc:
            raise UnknownApp(f"Unknown app '{app}'.") from exc

    @staticmethod
    def _unique_archive_path(directory: Path, stem: str, extension: str) -> Path:
        candidate = directory / f"{stem}.{extension}"
        counter = 1
        while candidate.exists():
            candidate = directory / f"{stem}-{counter}.{extension}"
            counter += 1
        return candidate


def _remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()


__all__ = ["BackupManager", "BackupResult"]
