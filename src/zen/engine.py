"""Lifecycle engine: validate, lock, reconcile, run steps, record the outcome."""
from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from .backups import BackupManager
from .config import AppConfig
from .errors import (
    AlreadyInstalled,
    Busy,
    Cancelled,
    Inconsistent,
    Internal,
    NotInstalled,
    UnknownUser,
    UsageError,
    UserBanned,
    ZenError,
)
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger, new_operation_id
from .ports import PortAllocator
from .providers import AptProvider, CaddyProvider, ReleaseFetcher, SystemdProvider
from .software.handlers import ABORT, DEGRADE, VERBS, Services, Step, StepContext
from .software.manifest import AppManifest
from .software.registry import HandlerRegistry
from .state import Channel, Instance, InstanceStatus, StateStore, StateStoreError, User
from .templates import TemplateEngine

logger = logging.getLogger(__name__)

ACTIONS = VERBS
RECOVERY_ACTIONS = {"remove", "reinstall"}
OPTION_KEYS = {"branch", "email", "domain", "key", "version"}
REQUEST_KEYS = OPTION_KEYS | {"prerelease", "purge", "archive", "timeout"}
BRANCH_CHANNELS = {
    "stable": Channel.STABLE,
    "beta": Channel.PRERELEASE,
    "prerelease": Channel.PRERELEASE,
    "nightly": Channel.PRERELEASE,
    "develop": Channel.PRERELEASE,
}
PERSISTED_OPTIONS = ("branch", "email", "domain")
TRANSIENT_ATTEMPTS = 3
RETRY_BACKOFF = 1.0


@dataclass(slots=True)
class Outcome:
    """Result of one lifecycle action."""

    action: str
    user: str
    app: str
    status: str
    correlation_id: str
    port: int | None = None
    version: str | None = None
    channel: str | None = None
    instance_status: str | None = None
    warnings: list[str] = field(default_factory=list)
    artifacts: list[str] = field(default_factory=list)
    archive: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "action": self.action,
            "user": self.user,
            "app": self.app,
            "status": self.status,
            "correlation_id": self.correlation_id,
            "port": self.port,
            "version": self.version,
            "channel": self.channel,
            "instance_status": self.instance_status,
            "warnings": list(self.warnings),
            "artifacts": list(self.artifacts),
            "archive": self.archive,
        }


def build_services(config: AppConfig, manifests: Mapping[str, AppManifest]) -> Services:
    """Wire every primitive from *config*."""
    store = StateStore(config.state_db)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    systemd = SystemdProvider(
        templates=templates,
        systemd_dir=config.systemd.unit_dir,
        systemctl_bin=config.systemd.systemctl_bin,
        start_timeout=config.timeouts.service_start,
        stop_timeout=config.timeouts.service_stop,
        poll_interval=config.systemd.poll_interval,
    )
    packages = AptProvider(
        apt_bin=config.packages.apt_bin,
        dpkg_query_bin=config.packages.dpkg_query_bin,
        install_timeout=config.timeouts.package_install,
    )
    return Services(
        config=config,
        store=store,
        ports=PortAllocator(store=store, manifests=manifests),
        templates=templates,
        systemd=systemd,
        proxy=CaddyProvider(
            templates=templates,
            dropin_dir=config.proxy.dropin_dir,
            caddy_bin=config.proxy.caddy_bin,
            caddyfile=config.proxy.caddyfile,
            reload_timeout=config.timeouts.proxy_reload,
        ),
        packages=packages,
        releases=ReleaseFetcher(
            arch=config.arch,
            http=config.http,
            download_timeout=config.timeouts.download,
            packages=packages,
        ),
        backups=BackupManager(
            manifests=manifests, config=config.backups, systemd=systemd
        ),
    )


def parse_options(raw: str | None) -> dict[str, str]:
    """Parse ``K=V[,K=V...]`` into a mapping of known option keys."""
    options: dict[str, str] = {}
    if not raw:
        return options
    for chunk in raw.split(","):
        item = chunk.strip()
        if not item:
            continue
        key, sep, value = item.partition("=")
        key = key.strip().lower()
        if not sep or not key:
            raise UsageError(f"Malformed option '{item}'; expected KEY=VALUE.")
        if key not in OPTION_KEYS:
            allowed = ", ".join(sorted(OPTION_KEYS))
            raise UsageError(f"Unknown option '{key}'. Allowed: {allowed}.")
        options[key] = value.strip()
    return options


class LifecycleEngine:
    """Dispatch ``(action, user, app)`` requests onto handler step lists."""

    def __init__(
        self,
        services: Services,
        registry: HandlerRegistry,
        *,
        locks: LockManager,
        logger: StructuredLogger,
        sleep: Callable[[float], None] = time.sleep,
        handle_signals: bool = True,
    ) -> None:
        self.services = services
        self.registry = registry
        self.locks = locks
        self.log = logger
        self._sleep = sleep
        self._handle_signals = handle_signals
        self._cancel_requested = False

    @classmethod
    def from_config(cls, config: AppConfig) -> LifecycleEngine:
        """Build an engine wired to the real host tools."""
        registry = HandlerRegistry.from_catalog()
        return cls(
            build_services(config, registry.manifests),
            registry,
            locks=LockManager(config.runtime_dir),
            logger=StructuredLogger(config.logs_dir),
        )

    @property
    def store(self) -> StateStore:
        return self.services.store

    # ------------------------------------------------------------------
    def run(
        self,
        action: str,
        user: str,
        app: str,
        options: Mapping[str, object] | None = None,
    ) -> Outcome:
        """Run *action* for ``(user, app)`` and return its outcome.

        Failures propagate as :class:`ZenError` subclasses carrying the
        correlation id of the operation record.
        """
        request = dict(options or {})
        op_id = new_operation_id()
        with self.log.operation(
            action,
            args=request,
            target={"user": user, "app": app},
            op_id=op_id,
        ) as op:
            try:
                outcome = self._run(op, action, user, app, request)
            except ZenError as exc:
                exc.correlation_id = op_id
                op.error(
                    exc.message,
                    rc=int(exc.exit_code),
                    context={"kind": exc.kind, "step": exc.step, "artifacts": exc.artifacts},
                )
                self._append_op(user, app, action, "failure", f"{exc.kind}: {exc.message}", op_id)
                raise
            except Exception as exc:
                error = Internal(f"Unexpected failure: {exc}")
                error.correlation_id = op_id
                op.error(error.message, rc=int(error.exit_code), context={"kind": error.kind})
                self._append_op(user, app, action, "failure", f"{error.kind}: {exc}", op_id)
                raise error from exc
            context = outcome.to_dict()
            if outcome.warnings:
                op.warning(
                    f"{action} {app} for {user} finished with warnings.",
                    warnings=outcome.warnings,
                    changed=len(outcome.artifacts),
                    context=context,
                )
            else:
                op.success(
                    f"{action} {app} for {user} completed.",
                    changed=len(outcome.artifacts),
                    context=context,
                )
            self._append_op(user, app, action, outcome.status, None, op_id)
            return outcome

    def request_cancel(self) -> None:
        """Ask the running action to stop after the current step.

        A second request aborts immediately without unwinding.
        """
        if self._cancel_requested:
            raise Cancelled("Aborted by a second termination request.", abort=True)
        self._cancel_requested = True
        logger.warning("Cancellation requested; unwinding after the current step.")

    # ------------------------------------------------------------------
    def _run(
        self,
        op: OperationScope,
        action: str,
        user: str,
        app: str,
        request: dict[str, object],
    ) -> Outcome:
        if action not in ACTIONS:
            raise UsageError(f"Unknown action '{action}'. Expected one of: {', '.join(ACTIONS)}.")
        unknown = sorted(set(request) - REQUEST_KEYS)
        if unknown:
            raise UsageError(f"Unknown option(s): {', '.join(unknown)}.")
        manifest = self.registry.manifest(app)
        account = self._require_user(user)
        timeout = request.get("timeout")
        if timeout is not None:
            try:
                request["timeout"] = float(str(timeout))
            except ValueError as exc:
                raise UsageError(f"Invalid timeout {timeout!r}.") from exc
            if request["timeout"] <= 0:
                raise UsageError("--timeout must be positive.")

        with ExitStack() as stack:
            try:
                handle = stack.enter_context(self.locks.instance_lock(user, app, 0.0))
            except LockTimeoutError as exc:
                raise Busy(
                    f"{app} for {user} is busy with another action.", artifacts=[exc.path]
                ) from exc
            op.set_lock_wait_ms(handle.wait_ms)
            stack.enter_context(self._signal_guard())
            return self._execute(op, action, account, manifest, request)
        raise Internal("Lock context exited unexpectedly.")  # pragma: no cover

    def _execute(
        self,
        op: OperationScope,
        action: str,
        account: User,
        manifest: AppManifest,
        request: dict[str, object],
    ) -> Outcome:
        user, app = account.username, manifest.name
        instance = self.store.get_instance(user, app)
        drift = self.observe(account, manifest, instance)
        if drift:
            op.add_step("reconcile", status="inconsistent", detail=drift)
            channel = instance.channel if instance else Channel.STABLE
            instance = self._mark_inconsistent(account, manifest, instance, channel)
            if action not in RECOVERY_ACTIONS:
                raise Inconsistent(
                    f"{app} for {user} is inconsistent ({'; '.join(drift)}); "
                    "only remove or reinstall are allowed.",
                    step="reconcile",
                )
        else:
            op.add_step("reconcile")

        if action == "add" and instance is not None:
            raise AlreadyInstalled(f"{app} is already installed for {user}.")
        if action != "add" and instance is None:
            raise NotInstalled(f"{app} is not installed for {user}.")
        if action == "restore" and not request.get("archive"):
            raise UsageError("restore needs --archive.")

        ctx = self._context(action, account, manifest, instance, request)
        steps = self.registry.steps(app, action)
        self._run_steps(op, ctx, steps)

        final = self.store.get_instance(user, app)
        return Outcome(
            action=action,
            user=user,
            app=app,
            status="degraded" if ctx.status is InstanceStatus.DEGRADED else "ok",
            correlation_id=op.op_id,
            port=ctx.port,
            version=final.version if final else ctx.version,
            channel=ctx.channel.value,
            instance_status=final.status.value if final else None,
            warnings=list(ctx.warnings),
            artifacts=[str(path) for path in ctx.artifacts],
            archive=str(ctx.backup.archive) if ctx.backup else None,
        )

    def _context(
        self,
        action: str,
        account: User,
        manifest: AppManifest,
        instance: Instance | None,
        request: Mapping[str, object],
    ) -> StepContext:
        channel, branch = self._resolve_channel(manifest, instance, request)
        instance_options = dict(instance.options) if instance else {}
        for key in PERSISTED_OPTIONS:
            if request.get(key):
                instance_options[key] = request[key]
        port = self.store.get_port(account.username, manifest.name)
        if port is None and instance is not None and instance.port:
            port = instance.port
        timeout = request.get("timeout")
        return StepContext(
            action=action,
            user=account,
            manifest=manifest,
            services=self.services,
            channel=channel,
            branch=branch,
            options=dict(request),
            instance=instance,
            port=port,
            version=instance.version if instance else None,
            release_name=(
                manifest.release_name(channel.value, branch)
                if action in ("add", "reinstall", "update") or instance is None
                else instance.release_name
            ),
            instance_options=instance_options,
            service_timeout=float(str(timeout)) if timeout is not None else None,
        )

    def _resolve_channel(
        self,
        manifest: AppManifest,
        instance: Instance | None,
        request: Mapping[str, object],
    ) -> tuple[Channel, str | None]:
        branch = request.get("branch")
        prerelease = bool(request.get("prerelease"))
        if branch is not None:
            name = str(branch).lower()
            if name not in BRANCH_CHANNELS:
                allowed = ", ".join(sorted(BRANCH_CHANNELS))
                raise UsageError(f"Unknown branch '{branch}'. Allowed: {allowed}.")
            channel = BRANCH_CHANNELS[name]
            if prerelease and channel is Channel.STABLE:
                raise UsageError("--prerelease conflicts with --branch stable.")
            return channel, name if name in manifest.channels else None
        if prerelease:
            return Channel.PRERELEASE, None
        if instance is not None:
            return instance.channel, None
        return Channel(self.services.config.default_channel), None

    def _require_user(self, username: str) -> User:
        account = self.store.get_user(username)
        if account is None:
            raise UnknownUser(f"User '{username}' is not registered.")
        if account.banned:
            raise UserBanned(f"User '{username}' is banned.")
        return account

    # ------------------------------------------------------------------
    def observe(
        self,
        account: User,
        manifest: AppManifest,
        instance: Instance | None,
    ) -> list[str]:
        """Compare the recorded instance with artifacts on disk.

        Returns a description of every disagreement; an empty list means the
        pair is consistent.
        """
        user, app = account.username, manifest.name
        services = self.services
        unit = services.systemd.unit_exists(user, app)
        snippet = services.proxy.snippet_exists(user, app)
        port = services.store.get_port(user, app)
        install_path = manifest.install_path(services.config.install_root, user)
        installed = install_path.exists() if manifest.has_artifact else None

        problems: list[str] = []
        if instance is None:
            found = [
                label
                for label, present in (
                    ("unit file", unit),
                    ("proxy snippet", snippet),
                    ("port allocation", port is not None),
                    ("install path", bool(installed)),
                )
                if present
            ]
            if found:
                problems.append(f"no state row but found {', '.join(found)}")
            return problems

        if instance.status in (InstanceStatus.INCONSISTENT, InstanceStatus.INSTALLING):
            problems.append(f"recorded status is {instance.status.value}")
        if not unit:
            problems.append("unit file missing")
        if not snippet:
            problems.append("proxy snippet missing")
        if port is None:
            problems.append("port allocation missing")
        elif port != instance.port:
            problems.append(f"allocated port {port} differs from recorded {instance.port}")
        if installed is False:
            problems.append("install path missing")
        return problems

    def _mark_inconsistent(
        self,
        account: User,
        manifest: AppManifest,
        instance: Instance | None,
        channel: Channel,
    ) -> Instance:
        user, app = account.username, manifest.name
        if instance is not None:
            self.store.set_status(user, app, InstanceStatus.INCONSISTENT)
            return instance.evolve(status=InstanceStatus.INCONSISTENT)
        placeholder = Instance(
            user=user,
            app=app,
            port=self.store.get_port(user, app) or 0,
            channel=channel,
            version="unknown",
            release_name="",
            install_path=manifest.install_path(self.services.config.install_root, user),
            config_path=manifest.config_path(account.home),
            status=InstanceStatus.INCONSISTENT,
        )
        self.store.upsert_instance(placeholder)
        return placeholder

    # ------------------------------------------------------------------
    def _run_steps(self, op: OperationScope, ctx: StepContext, steps: list[Step]) -> None:
        completed: list[Step] = []
        failed: Step | None = None
        try:
            for step in steps:
                self._check_cancelled()
                try:
                    detail = self._attempt(op, ctx, step)
                except Cancelled:
                    raise
                except ZenError as exc:
                    if step.on_failure == ABORT:
                        if exc.step is None:
                            exc.step = step.name
                        op.add_step(step.name, status="failed", detail=exc.message)
                        failed = step
                        raise
                    ctx.warn(f"{step.name}: {exc.message}")
                    op.add_step(step.name, status="warning", detail=exc.message)
                    if step.on_failure == DEGRADE:
                        ctx.status = InstanceStatus.DEGRADED
                    continue
                completed.append(step)
                op.add_step(step.name, detail=detail)
        except ZenError as exc:
            exc.artifacts.extend(str(path) for path in ctx.artifacts if str(path) not in exc.artifacts)
            self._recover(op, ctx, completed, exc, failed)
            raise

    def _attempt(self, op: OperationScope, ctx: StepContext, step: Step) -> object:
        attempt = 1
        while True:
            try:
                return step.run(ctx)
            except ZenError as exc:
                if not exc.transient or attempt >= TRANSIENT_ATTEMPTS:
                    raise
                delay = RETRY_BACKOFF * 2 ** (attempt - 1)
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                    step.name,
                    attempt,
                    TRANSIENT_ATTEMPTS,
                    delay,
                    exc.message,
                )
                op.add_step(step.name, status="retry", detail=exc.message)
                self._sleep(delay)
                attempt += 1
            except Exception as exc:
                raise Internal(f"{step.name} failed: {exc}", step=step.name) from exc

    def _recover(
        self,
        op: OperationScope,
        ctx: StepContext,
        completed: list[Step],
        exc: ZenError,
        failed: Step | None = None,
    ) -> None:
        if isinstance(exc, Cancelled) and exc.abort:
            op.add_step("abort", status="failed", detail="instance left inconsistent")
            self._mark_inconsistent(ctx.user, ctx.manifest, ctx.instance, ctx.channel)
            return

        # The failed step may have partially applied; compensate it first.
        pending = [*completed, failed] if failed is not None else list(completed)
        unwind_failed = False
        for step in reversed(pending):
            if step.undo is None:
                continue
            try:
                step.undo(ctx)
            except Cancelled:
                op.add_step(f"undo:{step.name}", status="failed", detail="aborted")
                op.add_step("abort", status="failed", detail="instance left inconsistent")
                self._mark_inconsistent(ctx.user, ctx.manifest, ctx.instance, ctx.channel)
                raise
            except Exception as undo_exc:
                unwind_failed = True
                logger.error("Undo of %s failed: %s", step.name, undo_exc)
                op.add_step(f"undo:{step.name}", status="failed", detail=str(undo_exc))
            else:
                op.add_step(f"undo:{step.name}")

        if unwind_failed:
            self._mark_inconsistent(ctx.user, ctx.manifest, ctx.instance, ctx.channel)
            return
        irreversible = any(step.mutates and step.undo is None for step in completed)
        current = self.store.get_instance(ctx.username, ctx.app)
        if not irreversible or current is None:
            return
        drift = self.observe(
            ctx.user, ctx.manifest, current.evolve(status=InstanceStatus.FAILED)
        )
        status = InstanceStatus.INCONSISTENT if drift else InstanceStatus.FAILED
        self.store.set_status(ctx.username, ctx.app, status)
        op.add_step("mark_status", status=status.value, detail=drift or None)

    def _check_cancelled(self) -> None:
        if self._cancel_requested:
            raise Cancelled("Cancelled by termination request; completed steps were unwound.")

    @contextmanager
    def _signal_guard(self) -> Iterator[None]:
        self._cancel_requested = False
        if not self._handle_signals or threading.current_thread() is not threading.main_thread():
            yield
            return
        watched = (signal.SIGTERM, signal.SIGINT)
        previous = {signum: signal.getsignal(signum) for signum in watched}

        def _handler(signum: int, frame: object) -> None:
            logger.warning("Received %s.", signal.Signals(signum).name)
            self.request_cancel()

        for signum in watched:
            signal.signal(signum, _handler)
        try:
            yield
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, handler)

    def _append_op(
        self,
        user: str,
        app: str,
        action: str,
        outcome: str,
        error: str | None,
        op_id: str,
    ) -> None:
        try:
            self.store.append_op(user, app, action, outcome, error=error, correlation_id=op_id)
        except StateStoreError as exc:
            logger.error("Could not record %s %s for %s: %s", action, app, user, exc)


def user_home(config: AppConfig, username: str, home: str | Path | None = None) -> Path:
    """Return the home directory to register for *username*."""
    if home is not None:
        return Path(home)
    return config.home_root / username


__all__ = [
    "ACTIONS",
    "LifecycleEngine",
    "OPTION_KEYS",
    "Outcome",
    "build_services",
    "parse_options",
    "user_home",
]
