"""Typer-powered command line front-end for ``zen``.

Lifecycle verbs (``add``, ``remove``, ``update``, ``backup``, ``reset``,
``reinstall`` and ``restore``) are thin wrappers around
:class:`zen.engine.LifecycleEngine`. Errors print a single line on stderr and
exit with the code attached to the error kind; ``--json`` additionally writes
the structured diagnostic to stdout.
"""
from __future__ import annotations

import getpass
import re
import textwrap
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, load_config
from .engine import LifecycleEngine, Outcome, parse_options, user_home
from .errors import UnknownUser, UsageError, ZenError
from .state import StateStore, User
from .state.models import now_iso

console = Console()
err_console = Console(stderr=True, soft_wrap=True)

USERNAME_PATTERN = re.compile(r"^[a-z_][a-z0-9_-]{0,31}$")

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    help="Path to an alternate configuration file.",
)
USER_OPTION = typer.Option(
    None,
    "--user",
    "-u",
    help="Target user (defaults to the invoking user).",
)
PRERELEASE_OPTION = typer.Option(
    False,
    "--prerelease",
    help="Use the prerelease channel.",
)
OPTIONS_OPTION = typer.Option(
    None,
    "--options",
    help="Extra options as K=V[,K=V...] (branch, email, domain, key, version).",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit a JSON result (or diagnostic) on stdout.",
)
TIMEOUT_OPTION = typer.Option(
    None,
    "--timeout",
    help="Override the service start/stop timeout in seconds.",
)


class Branch(str, Enum):
    """Upstream branches selectable on the command line."""

    STABLE = "stable"
    NIGHTLY = "nightly"
    DEVELOP = "develop"


BRANCH_OPTION = typer.Option(
    None,
    "--branch",
    case_sensitive=False,
    help="Upstream branch to track.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Media server software lifecycle manager.

        Installs, updates, backs up and removes catalog apps per user, keeping
        systemd units, Caddy snippets, port allocations and the state database
        in step.
        """
    ).strip(),
)
user_app = typer.Typer(help="Register, ban and list users.")
app.add_typer(user_app, name="user")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    engine: LifecycleEngine

    @property
    def store(self) -> StateStore:
        return self.engine.store


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    try:
        config = load_config(config_file=config_file)
        engine = LifecycleEngine.from_config(config)
    except ZenError as exc:
        _fail(exc, json_output=False)
    runtime = RuntimeContext(config=config, engine=engine)
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the zen version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"zen {__version__}")
        raise typer.Exit(code=0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file)


def _fail(exc: ZenError, *, json_output: bool) -> NoReturn:
    """Print a one-line diagnostic (plus JSON when asked) and exit."""
    err_console.print(f"error: {exc.message}", style="red", markup=False, highlight=False)
    if json_output:
        console.print_json(data={"ok": False, "error": exc.to_dict()})
    raise typer.Exit(code=int(exc.exit_code))


def _resolve_user(user: str | None) -> str:
    return user or getpass.getuser()


def _lifecycle(
    ctx: typer.Context,
    action: str,
    app_name: str,
    user: str | None,
    *,
    json_output: bool,
    raw_options: str | None = None,
    request: Mapping[str, object] | None = None,
) -> None:
    runtime = _get_runtime(ctx)
    target_user = _resolve_user(user)
    try:
        payload: dict[str, object] = dict(parse_options(raw_options))
        for key, value in (request or {}).items():
            if value is None or value is False:
                continue
            if key in payload and payload[key] != value:
                raise UsageError(f"--{key} conflicts with --options {key}={payload[key]}.")
            payload[key] = value
        outcome = runtime.engine.run(action, target_user, app_name, payload)
    except ZenError as exc:
        _fail(exc, json_output=json_output)
    _report(outcome, json_output=json_output)


def _report(outcome: Outcome, *, json_output: bool) -> None:
    if json_output:
        console.print_json(data={"ok": True, "result": outcome.to_dict()})
    else:
        summary = f"{outcome.action} {outcome.app} for {outcome.user}: {outcome.status}"
        details = [
            f"port {outcome.port}" if outcome.port is not None else None,
            f"version {outcome.version}" if outcome.version else None,
            f"archive {outcome.archive}" if outcome.archive else None,
        ]
        extra = ", ".join(item for item in details if item)
        style = "green" if outcome.ok else "yellow"
        console.print(f"[{style}]{summary}[/{style}]" + (f" ({extra})" if extra else ""))
    for warning in outcome.warnings:
        err_console.print(f"warning: {warning}", style="yellow", markup=False, highlight=False)


def _branch_value(branch: Branch | None) -> str | None:
    return branch.value if branch is not None else None


@app.command()
def add(
    ctx: typer.Context,
    app_name: str = typer.Argument(..., metavar="APP", help="Catalog app to install."),
    user: str | None = USER_OPTION,
    prerelease: bool = PRERELEASE_OPTION,
    branch: Branch | None = BRANCH_OPTION,
    options: str | None = OPTIONS_OPTION,
    json_output: bool = JSON_OPTION,
    timeout: float | None = TIMEOUT_OPTION,
) -> None:
    """Install APP for a user."""
    _lifecycle(
        ctx,
        "add",
        app_name,
        user,
        json_output=json_output,
        raw_options=options,
        request={"prerelease": prerelease, "branch": _branch_value(branch), "timeout": timeout},
    )


@app.command()
def remove(
    ctx: typer.Context,
    app_name: str = typer.Argument(..., metavar="APP", help="Catalog app to remove."),
    user: str | None = USER_OPTION,
    purge: bool = typer.Option(
        False,
        "--purge",
        help="Also delete the user's configuration for the app.",
    ),
    json_output: bool = JSON_OPTION,
    timeout: float | None = TIMEOUT_OPTION,
) -> None:
    """Stop and uninstall APP for a user."""
    _lifecycle(
        ctx,
        "remove",
        app_name,
        user,
        json_output=json_output,
        request={"purge": purge, "timeout": timeout},
    )


@app.command()
def update(
    ctx: typer.Context,
    app_name: str = typer.Argument(..., metavar="APP", help="Catalog app to update."),
    user: str | None = USER_OPTION,
    prerelease: bool = PRERELEASE_OPTION,
    branch: Branch | None = BRANCH_OPTION,
    options: str | None = OPTIONS_OPTION,
    json_output: bool = JSON_OPTION,
    timeout: float | None = TIMEOUT_OPTION,
) -> None:
    """Fetch the latest release on the instance's channel and restart."""
    _lifecycle(
        ctx,
        "update",
        app_name,
        user,
        json_output=json_output,
        raw_options=options,
        request={"prerelease": prerelease, "branch": _branch_value(branch), "timeout": timeout},
    )


@app.command()
def backup(
    ctx: typer.Context,
    app_name: str = typer.Argument(..., metavar="APP", help="Catalog app to back up."),
    user: str | None = USER_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Archive the user's configuration for APP."""
    _lifecycle(ctx, "backup", app_name, user, json_output=json_output)


@app.command()
def reset(
    ctx: typer.Context,
    app_name: str = typer.Argument(..., metavar="APP", help="Catalog app to reset."),
    user: str | None = USER_OPTION,
    options: str | None = OPTIONS_OPTION,
    json_output: bool = JSON_OPTION,
    timeout: float | None = TIMEOUT_OPTION,
) -> None:
    """Snapshot, wipe and re-create the user's configuration for APP."""
    _lifecycle(
        ctx,
        "reset",
        app_name,
        user,
        json_output=json_output,
        raw_options=options,
        request={"timeout": timeout},
    )


@app.command()
def reinstall(
    ctx: typer.Context,
    app_name: str = typer.Argument(..., metavar="APP", help="Catalog app to reinstall."),
    user: str | None = USER_OPTION,
    prerelease: bool = PRERELEASE_OPTION,
    branch: Branch | None = BRANCH_OPTION,
    options: str | None = OPTIONS_OPTION,
    json_output: bool = JSON_OPTION,
    timeout: float | None = TIMEOUT_OPTION,
) -> None:
    """Tear down and rebuild APP, keeping the user's configuration."""
    _lifecycle(
        ctx,
        "reinstall",
        app_name,
        user,
        json_output=json_output,
        raw_options=options,
        request={"prerelease": prerelease, "branch": _branch_value(branch), "timeout": timeout},
    )


@app.command()
def restore(
    ctx: typer.Context,
    app_name: str = typer.Argument(..., metavar="APP", help="Catalog app to restore."),
    archive: Path = typer.Option(
        ...,
        "--archive",
        help="Backup archive produced by `zen backup`.",
    ),
    user: str | None = USER_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Replace the user's configuration for APP with an archive's contents."""
    _lifecycle(
        ctx,
        "restore",
        app_name,
        user,
        json_output=json_output,
        request={"archive": str(archive)},
    )


@app.command("backups")
def backups_list(
    ctx: typer.Context,
    app_name: str = typer.Argument(..., metavar="APP", help="Catalog app."),
    user: str | None = USER_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """List backup archives of APP for a user."""
    runtime = _get_runtime(ctx)
    target_user = _resolve_user(user)
    with runtime.engine.log.operation(
        "backups",
        args={"json": json_output},
        target={"user": target_user, "app": app_name},
    ) as op:
        try:
            runtime.engine.registry.manifest(app_name)
            account = runtime.store.get_user(target_user)
            if account is None:
                raise UnknownUser(f"User '{target_user}' is not registered.")
        except ZenError as exc:
            op.error(exc.message, rc=int(exc.exit_code))
            _fail(exc, json_output=json_output)
        archives = runtime.engine.services.backups.list_backups(account.home, app_name)
        if json_output:
            console.print_json(data={"backups": [str(path) for path in archives]})
            op.success("Reported backups as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Archive", style="bold")
        table.add_column("Size")
        if not archives:
            table.add_row("(none)", "")
        for path in archives:
            table.add_row(str(path), f"{path.stat().st_size} B")
        console.print(table)
        op.success("Reported backups.", changed=0)


@app.command("list")
def list_instances(
    ctx: typer.Context,
    user: str | None = typer.Option(None, "--user", "-u", help="Only show this user."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List installed instances."""
    runtime = _get_runtime(ctx)
    with runtime.engine.log.operation(
        "list",
        args={"json": json_output},
        target={"user": user or "*"},
    ) as op:
        if user:
            instances = runtime.store.list_instances_for_user(user)
        else:
            instances = runtime.store.list_instances()
        if json_output:
            console.print_json(data={"instances": [item.to_dict() for item in instances]})
            op.success("Reported instances as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("User", style="bold")
        table.add_column("App")
        table.add_column("Port")
        table.add_column("Channel")
        table.add_column("Version")
        table.add_column("Status")
        if not instances:
            table.add_row("(none)", "", "", "", "", "")
        for item in instances:
            table.add_row(
                item.user,
                item.app,
                str(item.port),
                item.channel.value,
                item.version,
                item.status.value,
            )
        console.print(table)
        op.success("Reported instances.", changed=0)


@app.command()
def history(
    ctx: typer.Context,
    user: str | None = typer.Option(None, "--user", "-u", help="Only show this user."),
    app_name: str | None = typer.Option(None, "--app", help="Only show this app."),
    limit: int = typer.Option(50, "--limit", min=1, help="Maximum number of entries."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the operation record, newest first."""
    runtime = _get_runtime(ctx)
    records = runtime.store.list_operations(user=user, app=app_name, limit=limit)
    if json_output:
        console.print_json(data={"operations": [record.to_dict() for record in records]})
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("When", style="bold")
    table.add_column("User")
    table.add_column("App")
    table.add_column("Action")
    table.add_column("Outcome")
    table.add_column("Error")
    if not records:
        table.add_row("(none)", "", "", "", "", "")
    for record in records:
        table.add_row(
            record.timestamp,
            record.user,
            record.app,
            record.action,
            record.outcome,
            record.error or "",
        )
    console.print(table)


def _validate_username(name: str) -> str:
    if not USERNAME_PATTERN.match(name):
        raise UsageError(f"'{name}' is not a valid POSIX user name.")
    return name


@user_app.command("register")
def user_register(
    ctx: typer.Context,
    username: str = typer.Argument(..., help="POSIX user name."),
    home: Path | None = typer.Option(None, "--home", help="Home directory override."),
    quota: int | None = typer.Option(None, "--quota", min=0, help="Disk quota in MiB."),
) -> None:
    """Register (or update) a user allowed to own instances."""
    runtime = _get_runtime(ctx)
    with runtime.engine.log.operation(
        "user register",
        args={"home": home, "quota": quota},
        target={"user": username},
    ) as op:
        try:
            _validate_username(username)
        except ZenError as exc:
            op.error(exc.message, rc=int(exc.exit_code))
            _fail(exc, json_output=False)
        existing = runtime.store.get_user(username)
        account = User(
            username=username,
            home=user_home(runtime.config, username, home),
            quota=quota,
            banned=existing.banned if existing else False,
            created_at=existing.created_at if existing else now_iso(),
        )
        runtime.store.upsert_user(account)
        verb = "Updated" if existing else "Registered"
        console.print(f"{verb} user {username} ({account.home}).")
        op.success(f"{verb} user {username}.", changed=1)


def _set_ban(ctx: typer.Context, username: str, banned: bool) -> None:
    runtime = _get_runtime(ctx)
    command = "user ban" if banned else "user unban"
    with runtime.engine.log.operation(command, target={"user": username}) as op:
        if not runtime.store.set_banned(username, banned):
            exc = UnknownUser(f"User '{username}' is not registered.")
            op.error(exc.message, rc=int(exc.exit_code))
            _fail(exc, json_output=False)
        state = "banned" if banned else "unbanned"
        console.print(f"User {username} {state}.")
        op.success(f"User {username} {state}.", changed=1)


@user_app.command("ban")
def user_ban(
    ctx: typer.Context,
    username: str = typer.Argument(..., help="POSIX user name."),
) -> None:
    """Ban a user; lifecycle actions for them are refused."""
    _set_ban(ctx, username, True)


@user_app.command("unban")
def user_unban(
    ctx: typer.Context,
    username: str = typer.Argument(..., help="POSIX user name."),
) -> None:
    """Lift a ban."""
    _set_ban(ctx, username, False)


@user_app.command("list")
def user_list(
    ctx: typer.Context,
    json_output: bool = JSON_OPTION,
) -> None:
    """List registered users."""
    runtime = _get_runtime(ctx)
    users = runtime.store.list_users()
    if json_output:
        console.print_json(data={"users": [item.to_dict() for item in users]})
        return
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("User", style="bold")
    table.add_column("Home")
    table.add_column("Quota")
    table.add_column("Banned")
    if not users:
        table.add_row("(none)", "", "", "")
    for item in users:
        table.add_row(
            item.username,
            str(item.home),
            "" if item.quota is None else str(item.quota),
            "yes" if item.banned else "no",
        )
    console.print(table)


def main() -> None:  # pragma: no cover - console script entry point
    app()


__all__ = ["app", "main"]
