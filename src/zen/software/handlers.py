"""Lifecycle step graphs for catalog apps.

A handler turns one verb into an ordered list of :class:`Step` objects. Each
step performs one primitive (allocate a port, write a unit, reload the proxy,
and so on) and may declare an ``undo`` callable used when a later step fails.
The lifecycle engine owns execution order, retries and unwinding; handlers only
describe *what* happens for their app.
"""
from __future__ import annotations

import logging
import math
import os
import pwd
import secrets
import shutil
import xml.etree.ElementTree as ET
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from ..backups import BackupManager, BackupResult
from ..config import AppConfig
from ..errors import RestoreFailed, TemplateError, UsageError
from ..ports import PortAllocator
from ..providers.caddy import CaddyProvider
from ..providers.packages import AptProvider
from ..providers.releases import ReleaseFetcher
from ..providers.systemd import SystemdProvider
from ..state import Channel, Instance, InstanceStatus, StateStore, User
from ..state.models import now_iso
from ..templates import TemplateEngine
from .manifest import AppManifest

logger = logging.getLogger(__name__)

VERBS = ("add", "remove", "update", "backup", "reset", "reinstall", "restore")

ABORT = "abort"
DEGRADE = "degrade"
WARN = "warn"


@dataclass(slots=True)
class Services:
    """Primitives shared by every handler during one invocation."""

    config: AppConfig
    store: StateStore
    ports: PortAllocator
    templates: TemplateEngine
    systemd: SystemdProvider
    proxy: CaddyProvider
    packages: AptProvider
    releases: ReleaseFetcher
    backups: BackupManager


@dataclass(slots=True)
class StepContext:
    """Mutable state threaded through the steps of one action."""

    action: str
    user: User
    manifest: AppManifest
    services: Services
    channel: Channel
    branch: str | None = None
    options: dict[str, object] = field(default_factory=dict)
    instance: Instance | None = None
    port: int | None = None
    version: str | None = None
    release_name: str | None = None
    status: InstanceStatus = InstanceStatus.RUNNING
    instance_options: dict[str, object] = field(default_factory=dict)
    service_timeout: float | None = None
    warnings: list[str] = field(default_factory=list)
    artifacts: list[Path] = field(default_factory=list)
    created_paths: list[Path] = field(default_factory=list)
    backup: BackupResult | None = None
    restored: list[Path] = field(default_factory=list)

    @property
    def username(self) -> str:
        return self.user.username

    @property
    def app(self) -> str:
        return self.manifest.name

    @property
    def home(self) -> Path:
        return self.user.home

    @property
    def install_path(self) -> Path:
        return self.manifest.install_path(self.services.config.install_root, self.username)

    @property
    def config_path(self) -> Path:
        return self.manifest.config_path(self.home)

    def warn(self, message: str) -> None:
        """Record a non-fatal problem surfaced at the end of the action."""
        logger.warning("%s/%s: %s", self.username, self.app, message)
        self.warnings.append(message)

    def touch(self, path: Path) -> None:
        """Remember *path* as an artifact created or modified by this action."""
        if path not in self.artifacts:
            self.artifacts.append(path)


StepFn = Callable[[StepContext], object]


@dataclass(slots=True, frozen=True)
class Step:
    """One named unit of work with an optional compensating action.

    ``on_failure`` decides what a failure means: ``abort`` unwinds the action,
    ``degrade`` finishes it with the instance marked degraded, and ``warn``
    finishes it with a warning. ``mutates`` is ``False`` for steps that do not
    change the instance's artifacts, so a failure after them leaves nothing to
    reconcile.
    """

    name: str
    run: StepFn
    undo: StepFn | None = None
    on_failure: str = ABORT
    mutates: bool = True


class SoftwareHandler:
    """Canonical step graphs shared by every catalog app."""

    secret_keys: tuple[str, ...] = ()

    def __init__(self, manifest: AppManifest) -> None:
        self.manifest = manifest

    def steps(self, verb: str) -> list[Step]:
        """Return the step list for *verb*."""
        if verb not in VERBS:
            raise UsageError(f"Unknown action '{verb}'.")
        builder: Callable[[], list[Step]] = getattr(self, f"{verb}_steps")
        return builder()

    # ------------------------------------------------------------------
    # Step graphs
    def add_steps(self) -> list[Step]:
        return [
            Step("install_dependencies", self.install_dependencies, mutates=False),
            Step("allocate_port", self.allocate_port, self.release_port),
            Step("fetch_release", self.fetch_release, self.delete_install),
            Step("install_unit", self.install_unit, self.remove_unit),
            Step("write_config", self.config, self.remove_created_config),
            Step("write_proxy", self.write_proxy, self.retract_proxy),
            Step("reload_proxy", self.reload_proxy, on_failure=DEGRADE, mutates=False),
            Step("enable_service", self.enable_service, self.disable_service),
            Step("start_service", self.start_service, self.stop_service),
            Step("record_instance", self.record_instance, self.forget_instance),
        ]

    def remove_steps(self) -> list[Step]:
        return [
            Step("stop_service", self.stop_service),
            Step("disable_service", self.disable_service),
            Step("remove_unit", self.remove_unit),
            Step("remove_proxy", self.remove_proxy),
            Step("reload_proxy", self.reload_proxy, on_failure=WARN, mutates=False),
            Step("release_port", self.release_port),
            Step("delete_install", self.delete_install),
            Step("purge_config", self.purge_config),
            Step("remove_dependencies", self.remove_dependencies, on_failure=WARN, mutates=False),
            Step("forget_instance", self.forget_instance),
        ]

    def update_steps(self) -> list[Step]:
        return [
            Step("mark_installing", self.mark_installing, self.restore_status, mutates=False),
            Step("check_version", self.check_version, on_failure=WARN, mutates=False),
            Step("stop_service", self.stop_service, self.start_service),
            Step("fetch_release", self.fetch_release),
            Step("sync_config", self.sync_config, on_failure=WARN, mutates=False),
            Step("install_unit", self.install_unit, mutates=False),
            Step("start_service", self.start_service),
            Step("record_instance", self.record_instance),
        ]

    def backup_steps(self) -> list[Step]:
        return [Step("backup_config", self.backup_config, mutates=False)]

    def reset_steps(self) -> list[Step]:
        return [
            Step("stop_service", self.stop_service, self.start_service),
            Step("snapshot_config", self.snapshot_config, mutates=False),
            Step("wipe_config", self.wipe_config),
            Step("write_config", self.config),
            Step("start_service", self.start_service),
            Step("record_instance", self.record_instance),
        ]

    def reinstall_steps(self) -> list[Step]:
        teardown = [
            Step("mark_installing", self.mark_installing, mutates=False),
            Step("stop_service", self.stop_service),
            Step("disable_service", self.disable_service),
            Step("remove_unit", self.remove_unit),
            Step("remove_proxy", self.remove_proxy),
            Step("delete_install", self.delete_install),
        ]
        return teardown + self.add_steps()

    def restore_steps(self) -> list[Step]:
        return [
            Step("restore_backup", self.restore_backup),
            Step("record_instance", self.record_instance),
        ]

    # ------------------------------------------------------------------
    # Template variables
    def unit_variables(self, ctx: StepContext) -> dict[str, object]:
        """Return placeholders for the service unit template."""
        binary = self.manifest.binary
        return {
            "USERNAME": ctx.username,
            "APP": ctx.app,
            "DISPLAY_NAME": self.manifest.display_name,
            "PORT": ctx.port,
            "INSTALL_PATH": str(ctx.install_path),
            "CONFIG_PATH": str(ctx.config_path),
            "TIMEOUT_STOP_SEC": max(1, math.ceil(ctx.services.config.timeouts.service_stop)),
            "BINARY": binary,
        }

    def config_variables(self, ctx: StepContext) -> dict[str, object]:
        """Return placeholders for the app's initial config file."""
        return {
            "USERNAME": ctx.username,
            "APP": ctx.app,
            "DISPLAY_NAME": self.manifest.display_name,
            "PORT": ctx.port,
            "CONFIG_PATH": str(ctx.config_path),
            "RELEASE_NAME": ctx.release_name or "",
        }

    def proxy_variables(self, ctx: StepContext) -> dict[str, object]:
        """Return ``$name`` placeholders for the proxy snippet."""
        return {
            "display_name": self.manifest.display_name,
            "ui_options": dict(self.manifest.ui_options),
        }

    def prepare_config(self, ctx: StepContext) -> None:
        """Create app-specific directories before the config file is written."""

    # ------------------------------------------------------------------
    # Primitives
    def install_dependencies(self, ctx: StepContext) -> object:
        installed = ctx.services.packages.install(list(self.manifest.dependencies))
        return {"installed": installed}

    def remove_dependencies(self, ctx: StepContext) -> object:
        if not self.manifest.remove_dependencies or not self.manifest.dependencies:
            return None
        others = [
            item
            for item in ctx.services.store.list_instances(ctx.app)
            if item.user != ctx.username
        ]
        if others:
            return {"kept": "shared with other users"}
        return {"removed": ctx.services.packages.remove(list(self.manifest.dependencies))}

    def allocate_port(self, ctx: StepContext) -> object:
        ctx.port = ctx.services.ports.allocate(ctx.username, ctx.app)
        return {"port": ctx.port}

    def release_port(self, ctx: StepContext) -> object:
        return {"port": ctx.services.ports.release(ctx.username, ctx.app)}

    def fetch_release(self, ctx: StepContext) -> object:
        version = ctx.options.get("version")
        result = ctx.services.releases.fetch(
            self.manifest,
            ctx.channel.value,
            ctx.install_path,
            branch=ctx.branch,
            version=str(version) if version else None,
        )
        ctx.version = result.version
        ctx.release_name = result.release_name
        if self.manifest.has_artifact:
            ctx.touch(ctx.install_path)
            _chown_tree(ctx.install_path, ctx.username)
        return {"version": result.version, "release_name": result.release_name}

    def delete_install(self, ctx: StepContext) -> object:
        path = ctx.install_path
        if not self.manifest.has_artifact or not path.exists():
            return None
        shutil.rmtree(path)
        return {"deleted": path}

    def install_unit(self, ctx: StepContext) -> object:
        systemd = ctx.services.systemd
        text = systemd.render_unit(self.manifest.unit_template_name, self.unit_variables(ctx))
        changed = systemd.install_unit(ctx.username, ctx.app, text)
        ctx.touch(systemd.unit_path(ctx.username, ctx.app))
        return {"unit": systemd.unit_name(ctx.username, ctx.app), "changed": changed}

    def remove_unit(self, ctx: StepContext) -> object:
        return {"removed": ctx.services.systemd.remove_unit(ctx.username, ctx.app)}

    def config(self, ctx: StepContext) -> object:
        """Write the initial per-user configuration.

        Existing files are kept so that a reinstall does not clobber user
        settings; the port is always enforced through the unit file.
        """
        for path in self.manifest.config_dirs(ctx.home):
            if not path.exists():
                path.mkdir(parents=True, mode=0o750)
                ctx.created_paths.append(path)
        self.prepare_config(ctx)
        written: Path | None = None
        template = self.manifest.config_template_name
        filename = self.manifest.config_filename
        if template and filename:
            target = ctx.config_path / filename
            if not target.exists():
                ctx.services.templates.render_to_path(
                    template, target, self.config_variables(ctx), mode=0o640
                )
                written = target
                ctx.touch(target)
        for path in self.manifest.config_dirs(ctx.home):
            _chown_tree(path, ctx.username)
        return {"written": written}

    def check_version(self, ctx: StepContext) -> object:
        """Compare the running app's version with the recorded one."""
        return None

    def sync_config(self, ctx: StepContext) -> object:
        """Carry release details into an existing config file after an update."""
        return None

    def remove_created_config(self, ctx: StepContext) -> object:
        for path in reversed(ctx.created_paths):
            shutil.rmtree(path, ignore_errors=True)
        return None

    def purge_config(self, ctx: StepContext) -> object:
        if not ctx.options.get("purge"):
            return None
        removed = []
        for path in self.manifest.config_dirs(ctx.home):
            if path.exists():
                shutil.rmtree(path)
                removed.append(path)
        return {"purged": removed}

    def wipe_config(self, ctx: StepContext) -> object:
        removed = []
        for path in self.manifest.config_dirs(ctx.home):
            if path.exists():
                shutil.rmtree(path)
                removed.append(path)
        for key in self.secret_keys:
            ctx.instance_options.pop(key, None)
        return {"wiped": removed}

    def write_proxy(self, ctx: StepContext) -> object:
        if ctx.port is None:
            raise UsageError(f"No port allocated for {ctx.username}/{ctx.app}.")
        options: dict[str, object] = {"template_name": self.manifest.proxy_template_name}
        options.update(self.proxy_variables(ctx))
        result = ctx.services.proxy.write_snippet(
            ctx.username, ctx.app, ctx.port, options, reload=False
        )
        ctx.touch(result.path)
        return {"snippet": result.path, "changed": result.changed}

    def remove_proxy(self, ctx: StepContext) -> object:
        result = ctx.services.proxy.remove_snippet(ctx.username, ctx.app, reload=False)
        return {"removed": result.changed}

    def retract_proxy(self, ctx: StepContext) -> object:
        result = ctx.services.proxy.remove_snippet(ctx.username, ctx.app, reload=True)
        if result.degraded:
            ctx.warn(f"Proxy reload after removing snippet failed: {result.reload_error}")
        return None

    def reload_proxy(self, ctx: StepContext) -> object:
        ctx.services.proxy.reload()
        return None

    def enable_service(self, ctx: StepContext) -> object:
        ctx.services.systemd.enable(ctx.username, ctx.app)
        return None

    def disable_service(self, ctx: StepContext) -> object:
        systemd = ctx.services.systemd
        if not systemd.unit_exists(ctx.username, ctx.app):
            return None
        systemd.disable(ctx.username, ctx.app)
        return None

    def start_service(self, ctx: StepContext) -> object:
        state = ctx.services.systemd.start(
            ctx.username, ctx.app, timeout=self._timeout(ctx, "service_start")
        )
        return {"state": state}

    def stop_service(self, ctx: StepContext) -> object:
        systemd = ctx.services.systemd
        if not systemd.unit_exists(ctx.username, ctx.app):
            return None
        budget = self._timeout(ctx, "service_stop")
        result = systemd.stop(ctx.username, ctx.app, timeout=budget)
        if result.killed:
            ctx.warn(f"{result.unit} did not stop within {budget:g}s and was killed.")
        return {"state": result.state, "killed": result.killed}

    def mark_installing(self, ctx: StepContext) -> object:
        ctx.services.store.set_status(ctx.username, ctx.app, InstanceStatus.INSTALLING)
        return None

    def restore_status(self, ctx: StepContext) -> object:
        if ctx.instance is not None:
            ctx.services.store.set_status(ctx.username, ctx.app, ctx.instance.status)
        return None

    def backup_config(self, ctx: StepContext) -> object:
        ctx.backup = ctx.services.backups.backup(ctx.username, ctx.app, home=ctx.home)
        ctx.touch(ctx.backup.archive)
        return {"archive": ctx.backup.archive}

    def snapshot_config(self, ctx: StepContext) -> object:
        if not any(path.exists() for path in self.manifest.config_dirs(ctx.home)):
            return None
        return self.backup_config(ctx)

    def restore_backup(self, ctx: StepContext) -> object:
        archive = ctx.options.get("archive")
        if not archive:
            raise RestoreFailed("No backup archive given to restore from.")
        ctx.restored = ctx.services.backups.restore(
            ctx.username, ctx.app, Path(str(archive)), home=ctx.home
        )
        for path in ctx.restored:
            ctx.touch(path)
            _chown_tree(path, ctx.username)
        return {"restored": ctx.restored}

    def record_instance(self, ctx: StepContext) -> object:
        if ctx.port is None:
            raise UsageError(f"No port allocated for {ctx.username}/{ctx.app}.")
        previous = ctx.instance
        instance = Instance(
            user=ctx.username,
            app=ctx.app,
            port=ctx.port,
            channel=ctx.channel,
            version=ctx.version or (previous.version if previous else "unknown"),
            release_name=ctx.release_name or (previous.release_name if previous else ""),
            install_path=ctx.install_path,
            config_path=ctx.config_path,
            status=ctx.status,
            created_at=previous.created_at if previous else now_iso(),
            options=dict(ctx.instance_options),
        )
        ctx.services.store.upsert_instance(instance)
        return {"status": instance.status.value}

    def forget_instance(self, ctx: StepContext) -> object:
        return {"deleted": ctx.services.store.delete_instance(ctx.username, ctx.app)}

    @staticmethod
    def _timeout(ctx: StepContext, name: str) -> float:
        if ctx.service_timeout is not None:
            return ctx.service_timeout
        return float(getattr(ctx.services.config.timeouts, name))


class ServarrHandler(SoftwareHandler):
    """Radarr, Sonarr, Lidarr and Readarr share one layout and API key scheme."""

    secret_keys = ("apikey",)

    def unit_variables(self, ctx: StepContext) -> dict[str, object]:
        variables = super().unit_variables(ctx)
        variables["ENV_PREFIX"] = self.manifest.display_name.upper()
        return variables

    def config_variables(self, ctx: StepContext) -> dict[str, object]:
        variables = super().config_variables(ctx)
        supplied = ctx.options.get("key")
        if supplied:
            ctx.instance_options["apikey"] = str(supplied)
        variables["API_KEY"] = ctx.instance_options.setdefault("apikey", generate_api_key())
        return variables

    def check_version(self, ctx: StepContext) -> object:
        """Ask the running app which version it serves before it is replaced."""
        path = self.manifest.api_path("system/status")
        if path is None or ctx.port is None:
            return None
        api_key = ctx.instance_options.get("apikey")
        running = ctx.services.releases.running_version(
            ctx.port, path, api_key=str(api_key) if api_key else None
        )
        recorded = ctx.instance.version if ctx.instance is not None else None
        if running and recorded and running != recorded:
            ctx.warn(f"{self.manifest.display_name} was running {running}, recorded {recorded}.")
        return {"running": running}

    def sync_config(self, ctx: StepContext) -> object:
        """Point ``<Branch>`` at the release line that was just installed.

        The rest of ``config.xml`` belongs to the app and is left as it is.
        """
        target = ctx.config_path / (self.manifest.config_filename or "config.xml")
        if not ctx.release_name or not target.exists():
            return None
        try:
            tree = ET.parse(target)  # noqa: S314 - file written by zen
        except ET.ParseError as exc:
            raise TemplateError(f"Could not update the branch in {target}: {exc}") from exc
        root = tree.getroot()
        branch = root.find("Branch")
        if branch is None:
            branch = ET.SubElement(root, "Branch")
        if branch.text == ctx.release_name:
            return None
        previous = branch.text
        branch.text = ctx.release_name
        tree.write(target, encoding="utf-8")
        logger.info("Switched %s branch from %s to %s.", target, previous, ctx.release_name)
        return {"branch": ctx.release_name, "previous": previous}


class GrafanaHandler(SoftwareHandler):
    """Grafana needs an admin password and honours ``domain``/``email``."""

    secret_keys = ("admin_password",)

    def config_variables(self, ctx: StepContext) -> dict[str, object]:
        variables = super().config_variables(ctx)
        variables["PASSWORD"] = ctx.instance_options.setdefault(
            "admin_password", secrets.token_urlsafe(18)
        )
        variables["DOMAIN"] = str(ctx.instance_options.get("domain") or "")
        variables["EMAIL"] = str(ctx.instance_options.get("email") or "")
        return variables

    def prepare_config(self, ctx: StepContext) -> None:
        for name in ("data", "logs", "plugins"):
            (ctx.config_path / name).mkdir(parents=True, exist_ok=True)


class RTorrentHandler(SoftwareHandler):
    """rTorrent listens for SCGI on its port and peers on ``port + 10000``."""

    PEER_PORT_OFFSET = 10000

    def download_dir(self, ctx: StepContext) -> Path:
        return ctx.home / "Downloads"

    def config_variables(self, ctx: StepContext) -> dict[str, object]:
        variables = super().config_variables(ctx)
        variables["DOWNLOAD_DIR"] = str(self.download_dir(ctx))
        variables["PEER_PORT"] = (ctx.port or 0) + self.PEER_PORT_OFFSET
        return variables

    def proxy_variables(self, ctx: StepContext) -> dict[str, object]:
        variables = super().proxy_variables(ctx)
        variables["download_dir"] = str(self.download_dir(ctx))
        return variables

    def prepare_config(self, ctx: StepContext) -> None:
        (ctx.config_path / "session").mkdir(parents=True, exist_ok=True)
        downloads = self.download_dir(ctx)
        if not downloads.exists():
            downloads.mkdir(parents=True)
            _chown_tree(downloads, ctx.username)


HANDLER_TYPES: dict[str, type[SoftwareHandler]] = {
    "default": SoftwareHandler,
    "servarr": ServarrHandler,
    "grafana": GrafanaHandler,
    "rtorrent": RTorrentHandler,
}


def generate_api_key() -> str:
    """Return a 32-character hexadecimal API key."""
    return secrets.token_hex(16)


def _chown_tree(path: Path, username: str) -> None:
    """Hand *path* to *username* when running as root."""
    if os.geteuid() != 0 or not path.exists():
        return
    try:
        account = pwd.getpwnam(username)
    except KeyError:
        logger.warning("Cannot chown %s: no system account '%s'.", path, username)
        return
    os.chown(path, account.pw_uid, account.pw_gid)
    if not path.is_dir():
        return
    for root, dirs, files in os.walk(path):
        for name in dirs + files:
            os.chown(os.path.join(root, name), account.pw_uid, account.pw_gid, follow_symlinks=False)


__all__ = [
    "ABORT",
    "DEGRADE",
    "GrafanaHandler",
    "HANDLER_TYPES",
    "RTorrentHandler",
    "ServarrHandler",
    "Services",
    "SoftwareHandler",
    "Step",
    "StepContext",
    "VERBS",
    "WARN",
    "generate_api_key",
]
