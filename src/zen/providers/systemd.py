"""Systemd provider for per-user app service units."""
from __future__ import annotations

import subprocess
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import ServiceStartTimeout, ServiceStopTimeout, Timeout, UnitInstallFailed
from ..templates import TemplateEngine, write_atomic

ACTIVE_STATES = {"active", "reloading"}
INACTIVE_STATES = {"inactive", "failed", "dead", "unknown"}


@dataclass(slots=True, frozen=True)
class StopResult:
    """Outcome of stopping a unit."""

    unit: str
    killed: bool
    state: str


@dataclass(slots=True)
class SystemdProvider:
    """Install and drive ``<app>@<user>.service`` units.

    The unit file is written per instance so that the rendered port and paths
    stay specific to one user, while ``%i`` still expands to the user name.
    """

    templates: TemplateEngine
    systemd_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"
    start_timeout: float = 20.0
    stop_timeout: float = 20.0
    poll_interval: float = 0.5
    command_timeout: float = 60.0
    sleep: Callable[[float], None] = time.sleep

    def unit_name(self, user: str, app: str) -> str:
        """Return the systemd unit name for the pair."""
        return f"{app}@{user}.service"

    def unit_path(self, user: str, app: str) -> Path:
        """Return the full path for the pair's unit file."""
        return self.systemd_dir / self.unit_name(user, app)

    def unit_exists(self, user: str, app: str) -> bool:
        """Return ``True`` when the unit file is installed."""
        return self.unit_path(user, app).exists()

    def render_unit(self, template_name: str, variables: Mapping[str, object]) -> str:
        """Render a unit template without installing it."""
        return self.templates.render_to_string(template_name, variables)

    def install_unit(self, user: str, app: str, rendered_text: str) -> bool:
        """Write the unit file and reload systemd when it changed."""
        path = self.unit_path(user, app)
        try:
            changed = write_atomic(path, rendered_text, mode=0o644)
        except OSError as exc:
            raise UnitInstallFailed(f"Cannot write unit {path}: {exc}", artifacts=[path]) from exc
        if changed:
            self._reload_daemon()
        return changed

    def enable(self, user: str, app: str) -> subprocess.CompletedProcess[str]:
        """Enable the unit."""
        return self._systemctl("enable", self.unit_name(user, app))

    def disable(self, user: str, app: str) -> subprocess.CompletedProcess[str]:
        """Disable the unit."""
        return self._systemctl("disable", self.unit_name(user, app))

    def start(self, user: str, app: str, *, timeout: float | None = None) -> str:
        """Start the unit and wait until it reports ``active``."""
        unit = self.unit_name(user, app)
        self._systemctl("start", unit, extra=("--no-block",))
        budget = self.start_timeout if timeout is None else timeout
        state = self._wait_for(unit, ACTIVE_STATES, budget)
        if state not in ACTIVE_STATES:
            raise ServiceStartTimeout(
                f"{unit} did not become active within {budget:g}s (state: {state})."
            )
        return state

    def stop(self, user: str, app: str, *, timeout: float | None = None) -> StopResult:
        """Stop the unit, killing it if it outlives the stop timeout."""
        unit = self.unit_name(user, app)
        budget = self.stop_timeout if timeout is None else timeout
        self._systemctl("stop", unit, extra=("--no-block",))
        state = self._wait_for(unit, INACTIVE_STATES, budget)
        if state in INACTIVE_STATES:
            return StopResult(unit=unit, killed=False, state=state)

        self._systemctl("kill", unit, extra=("--signal=SIGKILL",), check=False)
        state = self._wait_for(unit, INACTIVE_STATES, max(budget / 4, self.poll_interval))
        if state not in INACTIVE_STATES:
            raise ServiceStopTimeout(
                f"{unit} is still {state} after SIGKILL; giving up."
            )
        return StopResult(unit=unit, killed=True, state=state)

    def status(self, user: str, app: str) -> str:
        """Return the ``is-active`` state of the unit."""
        result = self._systemctl("is-active", self.unit_name(user, app), check=False)
        state = (result.stdout or "").strip().splitlines()
        return state[0] if state else "unknown"

    def is_active(self, user: str, app: str) -> bool:
        """Return ``True`` when the unit is running."""
        return self.status(user, app) in ACTIVE_STATES

    def remove_unit(self, user: str, app: str) -> bool:
        """Delete the unit file; return ``False`` when it was already gone."""
        path = self.unit_path(user, app)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise UnitInstallFailed(f"Cannot remove unit {path}: {exc}", artifacts=[path]) from exc
        self._reload_daemon()
        return True

    # ------------------------------------------------------------------
    def _wait_for(self, unit: str, wanted: set[str], budget: float) -> str:
        deadline = time.monotonic() + budget
        while True:
            result = self._systemctl("is-active", unit, check=False)
            lines = (result.stdout or "").strip().splitlines()
            state = lines[0] if lines else "unknown"
            if state in wanted:
                return state
            if time.monotonic() >= deadline:
                return state
            self.sleep(self.poll_interval)

    def _reload_daemon(self) -> None:
        try:
            self._systemctl("daemon-reload")
        except UnitInstallFailed as exc:
            if "not found" in str(exc).lower():
                return
            raise

    def _systemctl(
        self,
        command: str,
        unit_or_path: str | Path | None = None,
        *,
        extra: Sequence[str] = (),
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.systemctl_bin, command, *extra]
        if unit_or_path is not None:
            args.append(str(unit_or_path))
        return self._run_command(
            args,
            check=check,
            error_prefix=f"{self.systemctl_bin} {command}",
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603
                list(args),
                capture_output=True,
                text=True,
                check=False,
                timeout=self.command_timeout,
            )
        except FileNotFoundError as exc:
            raise UnitInstallFailed(f"{args[0]} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise Timeout(f"{error_prefix} timed out after {self.command_timeout:g}s.") from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise UnitInstallFailed(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["StopResult", "SystemdProvider"]
