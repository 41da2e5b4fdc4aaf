"""Archive helpers shared by backups and release extraction."""
from __future__ import annotations

import hashlib
import os
import shutil
import subprocess
import tarfile
import zipfile
from collections.abc import Sequence
from pathlib import Path


class ArchiveError(RuntimeError):
    """Raised when an archive cannot be created or unpacked."""


def detect_zstd_support() -> bool:
    """Return True when both tar and zstd binaries are available."""
    return shutil.which("tar") is not None and shutil.which("zstd") is not None


def resolve_algorithm(preference: str) -> str:
    """Resolve ``auto`` into the best available compression algorithm."""
    if preference == "auto":
        return "zstd" if detect_zstd_support() else "gzip"
    return preference


def compression_extension(algorithm: str) -> str:
    """Return the archive file extension for *algorithm*."""
    if algorithm == "gzip":
        return "tar.gz"
    if algorithm == "zstd":
        return "tar.zst"
    return "tar"


def infer_algorithm(archive_path: Path) -> str:
    """Guess the compression algorithm from the archive suffix."""
    name = archive_path.name
    if name.endswith((".tar.zst", ".tzst")):
        return "zstd"
    if name.endswith((".tar.gz", ".tgz")):
        return "gzip"
    return "none"


def create_archive(
    base_dir: Path,
    members: Sequence[str],
    archive_path: Path,
    algorithm: str,
    compression_level: int | None,
) -> None:
    """Archive *members* (paths relative to *base_dir*) into *archive_path*."""
    tar_bin = shutil.which("tar")
    if tar_bin is None:
        raise ArchiveError("The 'tar' command is required to create archives.")

    env = os.environ.copy()
    cmd: list[str] = [tar_bin]

    if algorithm == "gzip":
        cmd.extend(["-czf", str(archive_path)])
        if compression_level is not None:
            env["GZIP"] = f"-{compression_level}"
    elif algorithm == "zstd":
        cmd.extend(["--zstd", "-cf", str(archive_path)])
        if compression_level is not None:
            env["ZSTD_CLEVEL"] = str(compression_level)
    else:
        cmd.extend(["-cf", str(archive_path)])

    cmd.extend(["-C", str(base_dir), "--", *members])

    result = subprocess.run(  # noqa: S603 - controlled command execution
        cmd,
        capture_output=True,
        text=True,
        env=env,
        check=False,
    )
    if result.returncode != 0:
        message = result.stderr or result.stdout or "tar command failed"
        raise ArchiveError(message.strip())

    try:
        os.chmod(archive_path, 0o640)
    except OSError:
        pass


def extract_archive(archive_path: Path, destination: Path, *, algorithm: str | None = None) -> None:
    """Extract a tar archive created by :func:`create_archive` into *destination*."""
    tar_bin = shutil.which("tar")
    if tar_bin is None:
        raise ArchiveError("The 'tar' command is required to extract archives.")
    algorithm = algorithm or infer_algorithm(archive_path)
    destination.mkdir(parents=True, exist_ok=True)

    cmd: list[str] = [tar_bin]
    if algorithm == "zstd":
        cmd.extend(["--zstd", "-xf", str(archive_path)])
    elif algorithm == "gzip":
        cmd.extend(["-xzf", str(archive_path)])
    else:
        cmd.extend(["-xf", str(archive_path)])
    cmd.extend(["-C", str(destination)])

    result = subprocess.run(  # noqa: S603 - controlled command
        cmd,
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        message = (result.stderr or result.stdout or "tar extraction failed").strip()
        raise ArchiveError(f"Failed to extract {archive_path.name}: {message}")


def unpack_release(artifact: Path, destination: Path) -> Path:
    """Unpack a downloaded release (tarball or zip) and return its payload root.

    Upstream tarballs usually wrap everything in a single top-level directory;
    that directory is returned so callers can move it into place directly.
    """
    destination.mkdir(parents=True, exist_ok=True)
    try:
        if zipfile.is_zipfile(artifact):
            with zipfile.ZipFile(artifact) as bundle:
                _check_members(destination, bundle.namelist())
                bundle.extractall(destination)
        elif tarfile.is_tarfile(artifact):
            with tarfile.open(artifact) as bundle:
                bundle.extractall(destination, filter="data")
        else:
            raise ArchiveError(f"{artifact.name} is not a tar or zip archive.")
    except (tarfile.TarError, zipfile.BadZipFile, OSError) as exc:
        raise ArchiveError(f"Failed to unpack {artifact.name}: {exc}") from exc

    children = list(destination.iterdir())
    if len(children) == 1 and children[0].is_dir():
        return children[0]
    return destination


def _check_members(destination: Path, names: Sequence[str]) -> None:
    root = destination.resolve()
    for name in names:
        target = (destination / name).resolve()
        if root != target and root not in target.parents:
            raise ArchiveError(f"Archive member escapes destination: {name}")


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def checksum_path_for(archive_path: Path) -> Path:
    """Return the ``<archive>.sha256`` sidecar path."""
    return archive_path.with_name(f"{archive_path.name}.sha256")


def write_checksum_file(archive_path: Path, checksum: str) -> Path:
    """Write ``<archive>.sha256`` and return the checksum path."""
    checksum_path = checksum_path_for(archive_path)
    checksum_path.write_text(f"{checksum}  {archive_path.name}\n", encoding="utf-8")
    try:
        os.chmod(checksum_path, 0o640)
    except OSError:
        pass
    return checksum_path


def read_checksum_file(archive_path: Path) -> str | None:
    """Return the recorded checksum for *archive_path*, if a sidecar exists."""
    checksum_path = checksum_path_for(archive_path)
    if not checksum_path.exists():
        return None
    text = checksum_path.read_text(encoding="utf-8").strip()
    return text.split()[0] if text else None


__all__ = [
    "ArchiveError",
    "checksum_path_for",
    "compression_extension",
    "compute_checksum",
    "create_archive",
    "detect_zstd_support",
    "extract_archive",
    "infer_algorithm",
    "read_checksum_file",
    "resolve_algorithm",
    "unpack_release",
    "write_checksum_file",
]
