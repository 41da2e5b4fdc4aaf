"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import io
import os
import subprocess
import tarfile
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from zen.config import AppConfig, load_config
from zen.engine import LifecycleEngine, build_services
from zen.errors import DownloadFailed, ProxyReloadFailed, UnitInstallFailed
from zen.locking import LockManager
from zen.logging import StructuredLogger
from zen.providers.caddy import CaddyProvider
from zen.providers.packages import AptProvider
from zen.providers.releases import ReleaseFetcher, ReleaseInfo
from zen.providers.systemd import SystemdProvider
from zen.software.manifest import AppManifest
from zen.software.registry import HandlerRegistry
from zen.state import User


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def build_release_tarball(target: Path, files: dict[str, str], *, top: str = "package") -> Path:
    """Write a gzip tarball holding *files* under a single top-level directory."""
    target.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(target, "w:gz") as bundle:
        for name, text in files.items():
            data = text.encode("utf-8")
            info = tarfile.TarInfo(f"{top}/{name}")
            info.size = len(data)
            info.mode = 0o755
            bundle.addfile(info, io.BytesIO(data))
    return target


@dataclass
class FakeHost:
    """Stand-in for systemctl, caddy, dpkg/apt and the port probe."""

    units: dict[str, str] = field(default_factory=dict)
    enabled: set[str] = field(default_factory=set)
    broken: set[str] = field(default_factory=set)
    stubborn: set[str] = field(default_factory=set)
    killed: list[str] = field(default_factory=list)
    commands: list[tuple[str, str | None]] = field(default_factory=list)
    hooks: dict[str, Callable[[], None]] = field(default_factory=dict)
    caddy_calls: list[list[str]] = field(default_factory=list)
    caddy_failures: int = 0
    packages: dict[str, str] = field(default_factory=dict)
    apt_calls: list[list[str]] = field(default_factory=list)
    apt_broken: bool = False
    bound_ports: set[int] = field(default_factory=set)
    sleeps: list[float] = field(default_factory=list)

    def systemctl(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        error_prefix: str = "systemctl",
    ) -> subprocess.CompletedProcess[str]:
        command = args[1]
        unit = args[-1] if len(args) > 2 and not args[-1].startswith("-") else None
        self.commands.append((command, unit))
        hook = self.hooks.get(command)
        if hook is not None:
            hook()
        rc, stdout = 0, ""
        if command == "start":
            self.units[str(unit)] = "activating" if unit in self.broken else "active"
        elif command == "stop":
            if unit not in self.stubborn:
                self.units[str(unit)] = "inactive"
        elif command == "kill":
            self.units[str(unit)] = "inactive"
            self.killed.append(str(unit))
        elif command == "enable":
            self.enabled.add(str(unit))
        elif command == "disable":
            self.enabled.discard(str(unit))
        elif command == "is-active":
            state = self.units.get(str(unit), "inactive")
            stdout = f"{state}\n"
            rc = 0 if state == "active" else 3
        result = subprocess.CompletedProcess(list(args), rc, stdout, "")
        if check and rc != 0:
            raise UnitInstallFailed(f"{error_prefix} failed (exit {rc}): simulated")
        return result

    def caddy(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        self.caddy_calls.append(list(args))
        if self.caddy_failures > 0:
            self.caddy_failures -= 1
            raise ProxyReloadFailed("caddy reload failed (exit 1): simulated")
        return subprocess.CompletedProcess(["caddy", *args], 0, "", "")

    def apt(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        if args[0] == "dpkg-query":
            fmt, package = args[2], args[3]
            version = self.packages.get(package)
            if version is None:
                return subprocess.CompletedProcess(list(args), 1, "", "no packages found")
            stdout = "install ok installed" if fmt == "-f=${Status}" else version
            return subprocess.CompletedProcess(list(args), 0, stdout, "")
        self.apt_calls.append(list(args))
        if self.apt_broken:
            return subprocess.CompletedProcess(list(args), 100, "", "E: Unable to locate package")
        verb = args[2]
        names = [item for item in args[3:] if not item.startswith("-")]
        for name in names:
            if verb == "install":
                self.packages[name] = "1.0-1"
            else:
                self.packages.pop(name, None)
        return subprocess.CompletedProcess(list(args), 0, "", "")

    def is_active(self, unit: str) -> bool:
        return self.units.get(unit) == "active"


class FakeReleaseFetcher(ReleaseFetcher):
    """Resolve releases from a fixed table and serve tarballs from memory."""

    def __init__(self, **kwargs: object) -> None:
        super().__init__(**kwargs)  # type: ignore[arg-type]
        self.versions = {"stable": "5.0.0.1", "prerelease": "5.1.0.2"}
        self.downloads: list[str] = []
        self.fail_download = False
        self.dropped_downloads = 0
        self.running: str | None = None
        self.version_queries: list[tuple[int, str, str | None]] = []

    def resolve(
        self,
        manifest: AppManifest,
        channel: str,
        *,
        branch: str | None = None,
        version: str | None = None,
    ) -> ReleaseInfo:
        if not manifest.has_artifact:
            return super().resolve(manifest, channel, branch=branch, version=version)
        chosen = version or self.versions[channel]
        return ReleaseInfo(
            version=chosen,
            release_name=manifest.release_name(channel, branch),
            url=f"https://releases.example.test/{manifest.name}-{chosen}.tar.gz",
        )

    def download(
        self,
        url: str,
        target_path: Path,
        *,
        expected_sha256: str | None = None,
        expected_size: int | None = None,
    ) -> str:
        if self.fail_download:
            raise DownloadFailed(f"Download of {url} failed: simulated outage")
        if self.dropped_downloads:
            self.dropped_downloads -= 1
            raise DownloadFailed(
                f"Download of {url} failed: connection reset mid-stream", transient=True
            )
        self.downloads.append(url)
        version = url.rsplit("-", 1)[-1].removesuffix(".tar.gz")
        build_release_tarball(target_path, {"VERSION": version})
        return "0" * 64

    def running_version(self, port: int, path: str, *, api_key: str | None = None) -> str | None:
        self.version_queries.append((port, path, api_key))
        return self.running


@pytest.fixture
def host(monkeypatch: pytest.MonkeyPatch) -> FakeHost:
    """Route every external tool invocation to an in-memory fake."""
    fake = FakeHost()

    def _run_command(
        self: SystemdProvider,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        return fake.systemctl(args, check=check, error_prefix=error_prefix)

    def _run_caddy(self: CaddyProvider, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        return fake.caddy(args)

    def _run_apt(
        self: AptProvider, args: Sequence[str], *, timeout: float
    ) -> subprocess.CompletedProcess[str]:
        return fake.apt(args)

    monkeypatch.setattr(SystemdProvider, "_run_command", _run_command)
    monkeypatch.setattr(CaddyProvider, "_run_caddy", _run_caddy)
    monkeypatch.setattr(AptProvider, "_run", _run_apt)
    monkeypatch.setattr(
        "zen.ports.port_is_bound", lambda port, host="127.0.0.1": port in fake.bound_ports
    )
    return fake


def config_overrides(root: Path) -> dict[str, object]:
    """Return overrides that keep every zen path inside *root*."""
    return {
        "state_db": str(root / "state" / "state.db"),
        "runtime_dir": str(root / "run"),
        "logs_dir": str(root / "logs"),
        "templates_dir": str(root / "templates"),
        "install_root": str(root / "opt"),
        "home_root": str(root / "home"),
        "arch": "x64",
        "timeouts": {"service_start": 0.2, "service_stop": 0.2},
        "systemd": {"unit_dir": str(root / "systemd"), "poll_interval": 0.01},
        "proxy": {
            "dropin_dir": str(root / "caddy" / "softwares"),
            "caddyfile": str(root / "caddy" / "Caddyfile"),
        },
        "backups": {"compression": {"algorithm": "gzip"}},
    }


@pytest.fixture
def zen_config(tmp_path: Path) -> AppConfig:
    """Configuration rooted in the test's temporary directory."""
    return load_config(
        tmp_path / "config.yml",
        env={},
        overrides=config_overrides(tmp_path),
    )


@pytest.fixture
def registry() -> HandlerRegistry:
    """Registry over the embedded catalog."""
    return HandlerRegistry.from_catalog()


@pytest.fixture
def engine(zen_config: AppConfig, registry: HandlerRegistry, host: FakeHost) -> LifecycleEngine:
    """Lifecycle engine wired to fakes, with ``jason`` and ``alice`` registered."""
    services = build_services(zen_config, registry.manifests)
    services.releases = FakeReleaseFetcher(
        arch=zen_config.arch, http=zen_config.http, packages=services.packages
    )
    engine = LifecycleEngine(
        services,
        registry,
        locks=LockManager(zen_config.runtime_dir),
        logger=StructuredLogger(zen_config.logs_dir),
        sleep=host.sleeps.append,
        handle_signals=False,
    )
    for name in ("jason", "alice"):
        home = zen_config.home_root / name
        home.mkdir(parents=True, exist_ok=True)
        services.store.upsert_user(User(username=name, home=home))
    return engine


@pytest.fixture
def cli_env(tmp_path: Path, host: FakeHost, monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Environment pointing the CLI at temporary paths and fake host tools."""
    monkeypatch.setattr("zen.engine.ReleaseFetcher", FakeReleaseFetcher)
    return {
        "ZEN_CONFIG_FILE": str(tmp_path / "config.yml"),
        "ZEN_STATE_DB": str(tmp_path / "state" / "state.db"),
        "ZEN_RUNTIME_DIR": str(tmp_path / "run"),
        "ZEN_LOGS_DIR": str(tmp_path / "logs"),
        "ZEN_TEMPLATES_DIR": str(tmp_path / "templates"),
        "ZEN_INSTALL_ROOT": str(tmp_path / "opt"),
        "ZEN_HOME_ROOT": str(tmp_path / "home"),
        "ZEN_ARCH": "x64",
        "ZEN_TIMEOUTS__SERVICE_START": "0.2",
        "ZEN_TIMEOUTS__SERVICE_STOP": "0.2",
        "ZEN_SYSTEMD__UNIT_DIR": str(tmp_path / "systemd"),
        "ZEN_SYSTEMD__POLL_INTERVAL": "0.01",
        "ZEN_PROXY__DROPIN_DIR": str(tmp_path / "caddy" / "softwares"),
        "ZEN_PROXY__CADDYFILE": str(tmp_path / "caddy" / "Caddyfile"),
        "ZEN_BACKUPS__COMPRESSION__ALGORITHM": "gzip",
    }
