"""Resolve, download, and atomically install upstream app releases."""
from __future__ import annotations

import hashlib
import logging
import os
import secrets
import shutil
import tempfile
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import requests
from packaging.version import InvalidVersion, Version
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..archive import ArchiveError, unpack_release
from ..config import HttpConfig
from ..errors import ChecksumMismatch, DownloadFailed, Timeout
from ..software.manifest import AppManifest
from .packages import AptProvider

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
GITHUB_API = "https://api.github.com"


@dataclass(slots=True, frozen=True)
class ReleaseInfo:
    """A concrete upstream release chosen for a channel."""

    version: str
    release_name: str
    url: str | None = None
    sha256: str | None = None
    size: int | None = None


@dataclass(slots=True, frozen=True)
class FetchResult:
    """Metadata describing an installed release."""

    version: str
    release_name: str
    install_path: Path
    sha256: str | None
    installed_at: str

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "version": self.version,
            "release_name": self.release_name,
            "install_path": str(self.install_path),
            "sha256": self.sha256,
            "installed_at": self.installed_at,
        }


class ReleaseFetcher:
    """Fetch release artifacts over HTTP with retries and verification."""

    def __init__(
        self,
        *,
        arch: str,
        http: HttpConfig | None = None,
        download_timeout: float = 300.0,
        packages: AptProvider | None = None,
        session: requests.Session | None = None,
    ) -> None:
        """Configure the HTTP session used for metadata and artifacts."""
        self.arch = arch
        self.http = http or HttpConfig()
        self.download_timeout = download_timeout
        self.packages = packages or AptProvider()
        self.session = session or self._build_session()

    def _build_session(self) -> requests.Session:
        session = requests.Session()
        retry_strategy = Retry(
            total=self.http.retries,
            backoff_factor=1,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET", "HEAD"],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        session.headers["User-Agent"] = self.http.user_agent
        if self.http.proxy:
            session.proxies = {"http": self.http.proxy, "https": self.http.proxy}
        return session

    # ------------------------------------------------------------------
    def resolve(
        self,
        manifest: AppManifest,
        channel: str,
        *,
        branch: str | None = None,
        version: str | None = None,
    ) -> ReleaseInfo:
        """Return the release to install for *channel* (or a pinned *version*)."""
        release_name = manifest.release_name(channel, branch)
        kind = manifest.release.kind
        if kind == "system":
            package = manifest.release.version_package or manifest.name
            installed = self.packages.package_version(package)
            return ReleaseInfo(version=installed or "system", release_name=release_name)
        if kind == "index":
            return self._resolve_index(manifest, release_name, version)
        return self._resolve_github(manifest, channel, release_name, version)

    def fetch(
        self,
        manifest: AppManifest,
        channel: str,
        install_path: Path,
        *,
        branch: str | None = None,
        version: str | None = None,
    ) -> FetchResult:
        """Download the channel's release and swap it into *install_path*.

        The artifact is downloaded and unpacked inside a staging directory next
        to *install_path*; an existing install is only replaced once the new
        payload is complete.
        """
        info = self.resolve(manifest, channel, branch=branch, version=version)
        installed_at = datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")
        if not manifest.has_artifact:
            return FetchResult(
                version=info.version,
                release_name=info.release_name,
                install_path=install_path,
                sha256=None,
                installed_at=installed_at,
            )
        if not info.url:
            raise DownloadFailed(f"No download URL for {manifest.display_name} {info.version}.")

        install_path.parent.mkdir(parents=True, exist_ok=True)
        staging = Path(
            tempfile.mkdtemp(prefix=f".zen-{manifest.name}-", dir=str(install_path.parent))
        )
        try:
            filename = Path(urlparse(info.url).path).name or "artifact"
            artifact = staging / filename
            digest = self.download(
                info.url, artifact, expected_sha256=info.sha256, expected_size=info.size
            )
            try:
                payload = unpack_release(artifact, staging / "payload")
            except ArchiveError as exc:
                raise DownloadFailed(str(exc), artifacts=[artifact]) from exc
            _swap_into_place(payload, install_path)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        return FetchResult(
            version=info.version,
            release_name=info.release_name,
            install_path=install_path,
            sha256=digest,
            installed_at=installed_at,
        )

    def download(
        self,
        url: str,
        target_path: Path,
        *,
        expected_sha256: str | None = None,
        expected_size: int | None = None,
    ) -> str:
        """Stream *url* to *target_path*, verifying size and checksum."""
        _validate_url(url)
        target_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = target_path.with_name(f"{target_path.name}.part")
        digest = hashlib.sha256()
        started = time.monotonic()
        downloaded = 0
        logger.info("Downloading %s", url)
        try:
            with self.session.get(url, stream=True, timeout=(10, self.download_timeout)) as response:
                response.raise_for_status()
                header_size = response.headers.get("Content-Length")
                if expected_size is None and header_size and header_size.isdigit():
                    expected_size = int(header_size)
                with temp_path.open("wb") as handle:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if not chunk:
                            continue
                        handle.write(chunk)
                        digest.update(chunk)
                        downloaded += len(chunk)
                        if time.monotonic() - started > self.download_timeout:
                            raise Timeout(
                                f"Download of {url} exceeded {self.download_timeout:g}s."
                            )
            if expected_size is not None and downloaded != expected_size:
                raise ChecksumMismatch(
                    f"Size mismatch for {url}: expected {expected_size} bytes, got {downloaded}."
                )
            actual = digest.hexdigest()
            if expected_sha256 and actual.lower() != expected_sha256.lower():
                raise ChecksumMismatch(
                    f"SHA-256 mismatch for {url}: expected {expected_sha256}, got {actual}."
                )
            os.replace(temp_path, target_path)
            return actual
        except requests.Timeout as exc:
            raise Timeout(f"Download of {url} timed out: {exc}") from exc
        except requests.RequestException as exc:
            raise DownloadFailed(
                f"Download of {url} failed: {exc}", transient=_is_transient(exc)
            ) from exc
        finally:
            temp_path.unlink(missing_ok=True)

    def running_version(self, port: int, path: str, *, api_key: str | None = None) -> str | None:
        """Ask an app listening on ``127.0.0.1:<port>`` for its version."""
        url = f"http://127.0.0.1:{port}{path}"
        headers = {"X-Api-Key": api_key} if api_key else None
        try:
            response = self.session.get(url, headers=headers, timeout=(5, 10))
            response.raise_for_status()
            payload = response.json()
        except requests.RequestException as exc:
            raise DownloadFailed(f"Version query to {url} failed: {exc}", transient=False) from exc
        except ValueError as exc:
            raise DownloadFailed(f"Version query to {url} did not return JSON.") from exc
        version = payload.get("version") if isinstance(payload, dict) else None
        return str(version) if version else None

    # ------------------------------------------------------------------
    def _resolve_index(
        self,
        manifest: AppManifest,
        release_name: str,
        version: str | None,
    ) -> ReleaseInfo:
        source = manifest.release
        arch = source.arch_token(self.arch)
        url = str(source.metadata_url).format(release_name=release_name, arch=arch)
        payload = self._get_json(url)
        entries = payload if isinstance(payload, list) else []
        entries = [entry for entry in entries if isinstance(entry, dict) and entry.get("version")]
        if version:
            entries = [entry for entry in entries if str(entry["version"]) == version]
        if not entries:
            wanted = f"version {version}" if version else f"branch {release_name}"
            raise DownloadFailed(f"No {manifest.display_name} release found for {wanted}.")
        entry = entries[0]
        chosen = str(entry["version"])
        download_url = entry.get("url")
        if not download_url and source.url_template:
            download_url = source.url_template.format(
                version=chosen, release_name=release_name, arch=arch
            )
        return ReleaseInfo(
            version=chosen,
            release_name=release_name,
            url=str(download_url) if download_url else None,
            sha256=str(entry["hash"]) if entry.get("hash") else None,
        )

    def _resolve_github(
        self,
        manifest: AppManifest,
        channel: str,
        release_name: str,
        version: str | None,
    ) -> ReleaseInfo:
        source = manifest.release
        arch = source.arch_token(self.arch)
        payload = self._get_json(f"{GITHUB_API}/repos/{source.repo}/releases?per_page=50")
        releases = [
            item
            for item in (payload if isinstance(payload, list) else [])
            if isinstance(item, dict) and not item.get("draft") and item.get("tag_name")
        ]
        if version:
            candidates = [item for item in releases if _tag_version(item) == version]
        else:
            want_prerelease = channel == "prerelease"
            candidates = [item for item in releases if bool(item.get("prerelease")) == want_prerelease]
            if not candidates and want_prerelease:
                candidates = releases
        if not candidates:
            raise DownloadFailed(
                f"No {manifest.display_name} release found on {source.repo} for {channel}."
            )
        release = max(candidates, key=_version_key)
        chosen = _tag_version(release)

        if source.url_template:
            return ReleaseInfo(
                version=chosen,
                release_name=release_name,
                url=source.url_template.format(version=chosen, release_name=release_name, arch=arch),
            )

        suffix = str(source.asset).format(version=chosen, arch=arch)
        for asset in release.get("assets") or []:
            name = str(asset.get("name", ""))
            if name.endswith(suffix):
                digest = str(asset.get("digest") or "")
                return ReleaseInfo(
                    version=chosen,
                    release_name=release_name,
                    url=str(asset.get("browser_download_url")),
                    sha256=digest.split(":", 1)[1] if digest.startswith("sha256:") else None,
                    size=int(asset["size"]) if isinstance(asset.get("size"), int) else None,
                )
        raise DownloadFailed(
            f"{manifest.display_name} {chosen} has no asset ending in '{suffix}'."
        )

    def _get_json(self, url: str) -> Any:
        try:
            response = self.session.get(url, timeout=(10, 30))
            response.raise_for_status()
            return response.json()
        except requests.Timeout as exc:
            raise Timeout(f"Release metadata request to {url} timed out.") from exc
        except requests.RequestException as exc:
            raise DownloadFailed(
                f"Release metadata request to {url} failed: {exc}",
                transient=_is_transient(exc),
            ) from exc
        except ValueError as exc:
            raise DownloadFailed(f"Release metadata from {url} is not valid JSON.") from exc


def _tag_version(release: dict[str, Any]) -> str:
    return str(release.get("tag_name", "")).lstrip("vV")


def _version_key(release: dict[str, Any]) -> tuple[int, Version | str]:
    try:
        return (1, Version(_tag_version(release)))
    except InvalidVersion:
        return (0, str(release.get("published_at", "")))


def _is_transient(exc: requests.RequestException) -> bool:
    """Connection drops and 5xx answers are worth retrying; 4xx are not."""
    response = getattr(exc, "response", None)
    if isinstance(exc, requests.HTTPError) and response is not None:
        return response.status_code >= 500
    return True


def _validate_url(url: str) -> None:
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise DownloadFailed(f"Invalid download URL: {url!r}")


def _swap_into_place(payload: Path, install_path: Path) -> None:
    """Replace *install_path* with *payload* using same-filesystem renames."""
    previous: Path | None = None
    if install_path.exists():
        previous = install_path.with_name(f".{install_path.name}.old-{secrets.token_hex(3)}")
        os.replace(install_path, previous)
    try:
        os.replace(payload, install_path)
    except OSError:
        if previous is not None:
            os.replace(previous, install_path)
        raise
    if previous is not None:
        shutil.rmtree(previous, ignore_errors=True)


__all__ = ["FetchResult", "ReleaseFetcher", "ReleaseInfo"]
