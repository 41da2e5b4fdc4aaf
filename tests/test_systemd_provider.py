"""Tests for the systemd provider."""
from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Any

import pytest

from zen.errors import ServiceStartTimeout, Timeout, UnitInstallFailed
from zen.providers.systemd import SystemdProvider
from zen.templates import TemplateEngine


def _make_provider(tmp_path: Path, **kwargs: Any) -> SystemdProvider:
    return SystemdProvider(
        templates=TemplateEngine.with_overrides(None),
        systemd_dir=tmp_path / "systemd",
        poll_interval=0.01,
        **kwargs,
    )


def test_install_unit_writes_file_and_reloads(tmp_path: Path, host) -> None:
    """A changed unit triggers ``daemon-reload``; an identical one does not."""
    provider = _make_provider(tmp_path)

    assert provider.install_unit("jason", "radarr", "[Unit]\nDescription=Radarr\n") is True
    assert provider.install_unit("jason", "radarr", "[Unit]\nDescription=Radarr\n") is False

    path = tmp_path / "systemd" / "radarr@jason.service"
    assert path.read_text(encoding="utf-8") == "[Unit]\nDescription=Radarr\n"
    assert oct(path.stat().st_mode & 0o777) == "0o644"
    assert host.commands.count(("daemon-reload", None)) == 1
    assert provider.unit_exists("jason", "radarr")


def test_start_waits_for_active(tmp_path: Path, host) -> None:
    """Starting returns once the unit reports active."""
    provider = _make_provider(tmp_path)

    assert provider.start("jason", "radarr") == "active"
    assert ("start", "radarr@jason.service") in host.commands
    assert provider.is_active("jason", "radarr")


def test_start_timeout(tmp_path: Path, host) -> None:
    """A unit stuck activating raises after the budget."""
    host.broken.add("radarr@jason.service")
    provider = _make_provider(tmp_path, sleep=lambda seconds: None)

    with pytest.raises(ServiceStartTimeout, match="did not become active within 0.05s"):
        provider.start("jason", "radarr", timeout=0.05)


def test_stop_and_kill(tmp_path: Path, host) -> None:
    """Stubborn units are killed and reported as such."""
    provider = _make_provider(tmp_path)
    provider.start("jason", "radarr")
    provider.start("alice", "radarr")
    host.stubborn.add("radarr@alice.service")

    clean = provider.stop("jason", "radarr", timeout=0.05)
    forced = provider.stop("alice", "radarr", timeout=0.05)

    assert clean.killed is False
    assert clean.state == "inactive"
    assert forced.killed is True
    assert host.killed == ["radarr@alice.service"]


def test_remove_unit(tmp_path: Path, host) -> None:
    """Removing a unit reloads systemd once; a second removal is a no-op."""
    provider = _make_provider(tmp_path)
    provider.install_unit("jason", "radarr", "[Unit]\n")
    host.commands.clear()

    assert provider.remove_unit("jason", "radarr") is True
    assert provider.remove_unit("jason", "radarr") is False
    assert host.commands == [("daemon-reload", None)]


def test_enable_disable_and_status(tmp_path: Path, host) -> None:
    """Enable and disable pass the unit name through."""
    provider = _make_provider(tmp_path)

    provider.enable("jason", "radarr")
    assert "radarr@jason.service" in host.enabled
    provider.disable("jason", "radarr")
    assert "radarr@jason.service" not in host.enabled
    assert provider.status("jason", "radarr") == "inactive"


def test_render_unit_uses_templates(tmp_path: Path) -> None:
    """Rendering delegates to the template engine."""
    provider = _make_provider(tmp_path)

    text = provider.render_unit(
        "systemd/servarr.service.j2",
        {
            "USERNAME": "jason",
            "DISPLAY_NAME": "Sonarr",
            "ENV_PREFIX": "SONARR",
            "PORT": 8989,
            "INSTALL_PATH": "/opt/jason/Sonarr",
            "BINARY": "Sonarr",
            "CONFIG_PATH": "/home/jason/.config/Sonarr",
            "TIMEOUT_STOP_SEC": 20,
        },
    )

    assert "Environment=SONARR__SERVER__PORT=8989" in text


def test_run_command_reports_failures(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Non-zero exits become UnitInstallFailed with the tool's stderr."""
    calls: list[list[str]] = []

    def fake_run(args: list[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        calls.append(args)
        return subprocess.CompletedProcess(args, 5, "", "Unit radarr@jason.service not loaded.")

    monkeypatch.setattr("zen.providers.systemd.subprocess.run", fake_run)
    provider = _make_provider(tmp_path, systemctl_bin="/bin/systemctl")

    with pytest.raises(UnitInstallFailed, match=r"enable failed \(exit 5\): Unit radarr@jason"):
        provider.enable("jason", "radarr")
    assert calls == [["/bin/systemctl", "enable", "radarr@jason.service"]]


def test_run_command_missing_binary(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """A missing systemctl is reported rather than crashing."""

    def fake_run(args: list[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        raise FileNotFoundError(args[0])

    monkeypatch.setattr("zen.providers.systemd.subprocess.run", fake_run)
    provider = _make_provider(tmp_path)

    with pytest.raises(UnitInstallFailed, match="systemctl not found"):
        provider.enable("jason", "radarr")


def test_run_command_timeout(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """A hung systemctl maps to the timeout error."""

    def fake_run(args: list[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        raise subprocess.TimeoutExpired(args, kwargs["timeout"])

    monkeypatch.setattr("zen.providers.systemd.subprocess.run", fake_run)
    provider = _make_provider(tmp_path, command_timeout=1.5)

    with pytest.raises(Timeout, match="timed out after 1.5s"):
        provider.disable("jason", "radarr")
