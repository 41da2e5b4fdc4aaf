"""apt/dpkg provider for OS-level app dependencies."""
from __future__ import annotations

import os
import subprocess
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from ..errors import DependencyInstallFailed, Timeout


@dataclass(slots=True)
class AptProvider:
    """Install and remove Debian packages idempotently."""

    apt_bin: str = "apt-get"
    dpkg_query_bin: str = "dpkg-query"
    install_timeout: float = 600.0
    query_timeout: float = 30.0

    def is_installed(self, package: str) -> bool:
        """Return ``True`` when dpkg reports *package* as installed."""
        result = self._run(
            [self.dpkg_query_bin, "-W", "-f=${Status}", package],
            timeout=self.query_timeout,
        )
        return result.returncode == 0 and "install ok installed" in (result.stdout or "")

    def package_version(self, package: str) -> str | None:
        """Return the installed version of *package*, or ``None``."""
        result = self._run(
            [self.dpkg_query_bin, "-W", "-f=${Version}", package],
            timeout=self.query_timeout,
        )
        version = (result.stdout or "").strip()
        if result.returncode != 0 or not version:
            return None
        return version

    def missing(self, packages: Iterable[str]) -> list[str]:
        """Return the subset of *packages* that is not installed yet."""
        return [package for package in dict.fromkeys(packages) if not self.is_installed(package)]

    def install(self, packages: Sequence[str]) -> list[str]:
        """Install whatever is missing from *packages*; return what was installed."""
        missing = self.missing(packages)
        if not missing:
            return []
        result = self._run(
            [self.apt_bin, "-yqq", "install", "--no-install-recommends", *missing],
            timeout=self.install_timeout,
        )
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise DependencyInstallFailed(
                f"Failed to install {', '.join(missing)} (exit {result.returncode}): {message}"
            )
        return missing

    def remove(self, packages: Sequence[str]) -> list[str]:
        """Purge the installed subset of *packages*; return what was removed."""
        present = [package for package in dict.fromkeys(packages) if self.is_installed(package)]
        if not present:
            return []
        result = self._run(
            [self.apt_bin, "-yqq", "purge", *present],
            timeout=self.install_timeout,
        )
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise DependencyInstallFailed(
                f"Failed to remove {', '.join(present)} (exit {result.returncode}): {message}"
            )
        return present

    # ------------------------------------------------------------------
    def _run(self, args: Sequence[str], *, timeout: float) -> subprocess.CompletedProcess[str]:
        env = os.environ.copy()
        env["DEBIAN_FRONTEND"] = "noninteractive"
        try:
            return subprocess.run(  # noqa: S603
                list(args),
                capture_output=True,
                text=True,
                check=False,
                env=env,
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            raise DependencyInstallFailed(f"{args[0]} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise Timeout(f"{args[0]} {args[1]} timed out after {timeout:g}s.") from exc


__all__ = ["AptProvider"]
