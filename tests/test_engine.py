"""Tests for the lifecycle engine."""
from __future__ import annotations

import json
import tarfile
import threading
from pathlib import Path

import pytest

from zen.config import AppConfig
from zen.engine import LifecycleEngine, parse_options
from zen.errors import (
    AlreadyInstalled,
    Busy,
    Cancelled,
    DependencyInstallFailed,
    DownloadFailed,
    Inconsistent,
    Internal,
    NotInstalled,
    RestoreFailed,
    ServiceStartTimeout,
    UnknownApp,
    UnknownUser,
    UsageError,
    UserBanned,
)
from zen.exit_codes import ExitCode
from zen.state import Channel, InstanceStatus

RADARR_UNIT = "radarr@jason.service"


def _paths(config: AppConfig, user: str = "jason", app: str = "radarr") -> dict[str, Path]:
    display = {"radarr": "Radarr", "grafana": "Grafana", "rtorrent": "rTorrent"}[app]
    home = config.home_root / user
    return {
        "unit": config.systemd.unit_dir / f"{app}@{user}.service",
        "snippet": config.proxy.dropin_dir / f"{user}-{app}.conf",
        "install": config.install_root / user / display,
        "config": home / ".config" / display,
        "home": home,
    }


def _snapshot(*roots: Path) -> dict[Path, tuple[bytes, int]]:
    files: dict[Path, tuple[bytes, int]] = {}
    for root in roots:
        if not root.exists():
            continue
        for path in sorted(root.rglob("*")):
            if path.is_file():
                files[path] = (path.read_bytes(), path.stat().st_mtime_ns)
    return files


def test_add_installs_on_first_free_port(engine: LifecycleEngine, host, zen_config) -> None:
    """A clean add allocates the range start and leaves a running instance."""
    outcome = engine.run("add", "jason", "radarr")
    paths = _paths(zen_config)

    assert outcome.ok
    assert outcome.port == 7878
    assert outcome.instance_status == "running"
    assert "RADARR__SERVER__PORT=7878" in paths["unit"].read_text(encoding="utf-8")
    snippet = paths["snippet"].read_text(encoding="utf-8")
    assert "route /jason/radarr*" in snippet
    assert "reverse_proxy http://localhost:7878" in snippet
    assert host.is_active(RADARR_UNIT)
    assert RADARR_UNIT in host.enabled
    assert (paths["install"] / "VERSION").read_text(encoding="utf-8") == "5.0.0.1"

    instance = engine.store.get_instance("jason", "radarr")
    assert instance is not None
    assert instance.port == 7878
    assert instance.channel is Channel.STABLE
    assert instance.version == "5.0.0.1"
    assert instance.release_name == "master"
    config_xml = (paths["config"] / "config.xml").read_text(encoding="utf-8")
    assert "<Port>7878</Port>" in config_xml
    assert f"<ApiKey>{instance.options['apikey']}</ApiKey>" in config_xml
    assert any("sqlite3" in call for call in host.apt_calls)


def test_add_twice_is_refused_without_changes(engine: LifecycleEngine, zen_config) -> None:
    """A second add reports AlreadyInstalled and touches nothing."""
    engine.run("add", "jason", "radarr")
    roots = (
        zen_config.systemd.unit_dir,
        zen_config.proxy.dropin_dir,
        zen_config.install_root,
        zen_config.home_root,
    )
    before = _snapshot(*roots)
    row_before = engine.store.get_instance("jason", "radarr")

    with pytest.raises(AlreadyInstalled) as excinfo:
        engine.run("add", "jason", "radarr")

    assert excinfo.value.exit_code == ExitCode.NOT_FOUND
    assert _snapshot(*roots) == before
    assert engine.store.get_instance("jason", "radarr") == row_before


def test_second_user_gets_next_port(engine: LifecycleEngine, host, zen_config) -> None:
    """Users of the same app never share a port."""
    engine.run("add", "jason", "radarr")
    outcome = engine.run("add", "alice", "radarr")
    alice = _paths(zen_config, "alice")

    assert outcome.port == 7879
    assert "RADARR__SERVER__PORT=7879" in alice["unit"].read_text(encoding="utf-8")
    assert "localhost:7879" in alice["snippet"].read_text(encoding="utf-8")
    assert _paths(zen_config)["unit"].exists()
    assert host.is_active("radarr@alice.service")


def test_update_switches_to_prerelease(engine: LifecycleEngine, host, zen_config) -> None:
    """Update stops the unit, swaps the release in and starts it again."""
    engine.run("add", "jason", "radarr")
    host.commands.clear()

    outcome = engine.run("update", "jason", "radarr", {"prerelease": True})

    assert outcome.ok
    assert outcome.channel == "prerelease"
    assert outcome.version == "5.1.0.2"
    service_calls = [command for command, _ in host.commands if command in ("start", "stop")]
    assert service_calls == ["stop", "start"]
    assert host.is_active(RADARR_UNIT)
    assert (_paths(zen_config)["install"] / "VERSION").read_text(encoding="utf-8") == "5.1.0.2"

    instance = engine.store.get_instance("jason", "radarr")
    assert instance is not None
    assert instance.channel is Channel.PRERELEASE
    assert instance.release_name == "develop"
    assert instance.status is InstanceStatus.RUNNING


def test_update_keeps_recorded_channel(engine: LifecycleEngine) -> None:
    """Without flags an update stays on the instance's channel."""
    engine.run("add", "jason", "radarr", {"prerelease": True})
    outcome = engine.run("update", "jason", "radarr")
    assert outcome.channel == "prerelease"


def test_update_download_failure_keeps_previous_install(
    engine: LifecycleEngine, host, zen_config
) -> None:
    """A failed download restarts the old release and keeps the row intact."""
    engine.run("add", "jason", "radarr")
    engine.services.releases.fail_download = True

    with pytest.raises(DownloadFailed) as excinfo:
        engine.run("update", "jason", "radarr", {"prerelease": True})

    assert excinfo.value.exit_code == ExitCode.EXTERNAL
    assert excinfo.value.step == "fetch_release"
    assert (_paths(zen_config)["install"] / "VERSION").read_text(encoding="utf-8") == "5.0.0.1"
    assert host.is_active(RADARR_UNIT)
    instance = engine.store.get_instance("jason", "radarr")
    assert instance is not None
    assert instance.status is InstanceStatus.RUNNING
    assert instance.version == "5.0.0.1"


def test_branch_option_selects_release_name(engine: LifecycleEngine) -> None:
    """A known branch maps to its channel and upstream release name."""
    outcome = engine.run("add", "jason", "radarr", {"branch": "nightly"})
    instance = engine.store.get_instance("jason", "radarr")

    assert outcome.channel == "prerelease"
    assert instance is not None
    assert instance.release_name == "nightly"
    assert instance.options["branch"] == "nightly"


def test_prerelease_conflicts_with_stable_branch(engine: LifecycleEngine) -> None:
    """Asking for prerelease on the stable branch is a usage error."""
    with pytest.raises(UsageError, match="conflicts"):
        engine.run("add", "jason", "radarr", {"prerelease": True, "branch": "stable"})
    assert engine.store.get_port("jason", "radarr") is None


def test_backup_reset_restore_round_trip(engine: LifecycleEngine, host, zen_config) -> None:
    """Restoring a backup brings deleted config files back byte-identical."""
    engine.run("add", "jason", "radarr")
    paths = _paths(zen_config)
    config_file = paths["config"] / "config.xml"
    original = config_file.read_bytes()

    backup = engine.run("backup", "jason", "radarr")
    assert backup.archive is not None
    archive = Path(backup.archive)
    assert archive.parent == paths["home"] / ".backups" / "radarr"
    assert archive.name.endswith(".tar.gz")
    assert archive.with_name(f"{archive.name}.sha256").exists()

    config_file.unlink()
    reset = engine.run("reset", "jason", "radarr")
    assert reset.ok
    assert config_file.exists()
    assert host.is_active(RADARR_UNIT)

    restored = engine.run("restore", "jason", "radarr", {"archive": str(archive)})
    assert restored.ok
    assert config_file.read_bytes() == original
    assert host.is_active(RADARR_UNIT)


def test_reset_regenerates_secrets(engine: LifecycleEngine) -> None:
    """A reset drops the stored API key so a fresh one is written."""
    engine.run("add", "jason", "radarr", {"key": "a" * 32})
    first = engine.store.get_instance("jason", "radarr")
    assert first is not None and first.options["apikey"] == "a" * 32

    engine.run("reset", "jason", "radarr")
    second = engine.store.get_instance("jason", "radarr")
    assert second is not None
    assert second.options["apikey"] != "a" * 32
    assert len(str(second.options["apikey"])) == 32


def test_failed_restore_leaves_service_running(
    engine: LifecycleEngine, host, zen_config, tmp_path: Path
) -> None:
    """An archive without the app's config is rejected before the unit is stopped."""
    engine.run("add", "jason", "radarr")
    config_file = _paths(zen_config)["config"] / "config.xml"
    before = config_file.read_bytes()
    source = tmp_path / "other"
    (source / ".config" / "Other").mkdir(parents=True)
    (source / ".config" / "Other" / "settings.xml").write_text("<Other />\n", encoding="utf-8")
    archive = tmp_path / "other.tar.gz"
    with tarfile.open(archive, "w:gz") as bundle:
        bundle.add(source / ".config", arcname=".config")
    host.commands.clear()

    with pytest.raises(RestoreFailed, match="holds none of radarr's config paths"):
        engine.run("restore", "jason", "radarr", {"archive": str(archive)})

    assert ("stop", RADARR_UNIT) not in host.commands
    assert host.is_active(RADARR_UNIT)
    assert config_file.read_bytes() == before
    instance = engine.store.get_instance("jason", "radarr")
    assert instance is not None and instance.status is InstanceStatus.RUNNING


def test_restore_requires_archive(engine: LifecycleEngine) -> None:
    """Restore without an archive is rejected before any step runs."""
    engine.run("add", "jason", "radarr")
    with pytest.raises(UsageError, match="archive"):
        engine.run("restore", "jason", "radarr")


def test_remove_kills_stubborn_service(engine: LifecycleEngine, host, zen_config) -> None:
    """A unit that ignores stop is killed and removal still completes."""
    engine.run("add", "jason", "radarr")
    host.stubborn.add(RADARR_UNIT)
    paths = _paths(zen_config)

    outcome = engine.run("remove", "jason", "radarr")

    assert outcome.ok
    assert host.killed == [RADARR_UNIT]
    assert any("was killed" in warning for warning in outcome.warnings)
    assert not paths["unit"].exists()
    assert not paths["snippet"].exists()
    assert not paths["install"].exists()
    assert engine.store.get_port("jason", "radarr") is None
    assert engine.store.get_instance("jason", "radarr") is None
    assert paths["config"].exists()

    again = engine.run("add", "jason", "radarr")
    assert again.port == 7878


def test_remove_with_purge_deletes_config(engine: LifecycleEngine, zen_config) -> None:
    """``purge`` also deletes the user's configuration paths."""
    engine.run("add", "jason", "radarr")
    engine.run("remove", "jason", "radarr", {"purge": True})
    assert not _paths(zen_config)["config"].exists()


def test_remove_continues_when_proxy_reload_fails(engine: LifecycleEngine, host, zen_config) -> None:
    """A proxy reload failure during removal is only a warning."""
    engine.run("add", "jason", "radarr")
    host.caddy_failures = 3

    outcome = engine.run("remove", "jason", "radarr")

    assert outcome.ok
    assert any(warning.startswith("reload_proxy") for warning in outcome.warnings)
    assert not _paths(zen_config)["snippet"].exists()
    assert engine.store.get_instance("jason", "radarr") is None


def test_proxy_reload_failure_degrades_add(engine: LifecycleEngine, host) -> None:
    """Three failed reloads leave the instance installed but degraded."""
    host.caddy_failures = 3

    outcome = engine.run("add", "jason", "radarr")

    assert outcome.status == "degraded"
    assert outcome.instance_status == "degraded"
    assert host.sleeps == [1.0, 2.0]
    assert len(host.caddy_calls) == 3
    assert host.is_active(RADARR_UNIT)
    instance = engine.store.get_instance("jason", "radarr")
    assert instance is not None
    assert instance.status is InstanceStatus.DEGRADED


def test_proxy_reload_recovers_on_retry(engine: LifecycleEngine, host) -> None:
    """A transient reload failure is retried with backoff."""
    host.caddy_failures = 2

    outcome = engine.run("add", "jason", "radarr")

    assert outcome.ok
    assert host.sleeps == [1.0, 2.0]
    assert len(host.caddy_calls) == 3


def test_start_failure_unwinds_everything(engine: LifecycleEngine, host, zen_config) -> None:
    """A unit that never becomes active triggers a full reverse unwind."""
    host.broken.add(RADARR_UNIT)
    paths = _paths(zen_config)

    with pytest.raises(ServiceStartTimeout) as excinfo:
        engine.run("add", "jason", "radarr", {"timeout": "0.05"})

    error = excinfo.value
    assert error.exit_code == ExitCode.TIMEOUT
    assert error.step == "start_service"
    assert "0.05s" in error.message
    assert error.correlation_id is not None
    assert str(paths["unit"]) in error.artifacts
    assert ("stop", RADARR_UNIT) in host.commands
    assert RADARR_UNIT not in host.enabled
    for key in ("unit", "snippet", "install", "config"):
        assert not paths[key].exists(), key
    assert engine.store.get_port("jason", "radarr") is None
    assert engine.store.get_instance("jason", "radarr") is None

    record = engine.store.list_operations(user="jason")[0]
    assert record.outcome == "failure"
    assert record.error is not None and record.error.startswith("ServiceStartTimeout")
    assert record.correlation_id == error.correlation_id


def test_download_failure_frees_port(engine: LifecycleEngine) -> None:
    """A failed download releases the port allocated earlier in the action."""
    engine.services.releases.fail_download = True

    with pytest.raises(DownloadFailed):
        engine.run("add", "jason", "radarr")

    assert engine.store.get_port("jason", "radarr") is None
    engine.services.releases.fail_download = False
    assert engine.run("add", "jason", "radarr").port == 7878


def test_dropped_download_is_retried(engine: LifecycleEngine, host, zen_config) -> None:
    """A connection reset mid-download is retried instead of failing the add."""
    engine.services.releases.dropped_downloads = 1

    outcome = engine.run("add", "jason", "radarr")

    assert outcome.ok
    assert host.sleeps == [1.0]
    assert len(engine.services.releases.downloads) == 1
    lines = (zen_config.logs_dir / "operations.jsonl").read_text(encoding="utf-8").splitlines()
    steps = json.loads(lines[-1])["steps"]
    fetches = [step["status"] for step in steps if step["name"] == "fetch_release"]
    assert fetches == ["retry", "success"]


def test_persistent_download_failure_gives_up_after_three_attempts(
    engine: LifecycleEngine, host
) -> None:
    """Transient download failures stop retrying after the third attempt."""
    engine.services.releases.dropped_downloads = 5

    with pytest.raises(DownloadFailed, match="connection reset"):
        engine.run("add", "jason", "radarr")

    assert host.sleeps == [1.0, 2.0]
    assert engine.services.releases.dropped_downloads == 2
    assert engine.store.get_port("jason", "radarr") is None


def test_unexpected_error_becomes_internal(engine: LifecycleEngine, host, zen_config) -> None:
    """Non-zen exceptions raised by a step are wrapped and still unwound."""

    def _explode() -> None:
        raise ValueError("boom")

    host.hooks["enable"] = _explode

    with pytest.raises(Internal) as excinfo:
        engine.run("add", "jason", "radarr")

    assert excinfo.value.step == "enable_service"
    assert "boom" in excinfo.value.message
    assert not _paths(zen_config)["unit"].exists()
    assert engine.store.get_port("jason", "radarr") is None


def test_busy_while_lock_held(engine: LifecycleEngine) -> None:
    """A held pair lock refuses the same pair but not a different one."""
    with engine.locks.instance_lock("jason", "radarr"):
        with pytest.raises(Busy) as excinfo:
            engine.run("add", "jason", "radarr")
        assert excinfo.value.exit_code == ExitCode.BUSY
        assert engine.run("add", "alice", "radarr").ok

    assert engine.store.get_instance("jason", "radarr") is None


@pytest.mark.mutation_timeout
def test_concurrent_adds_on_same_pair(engine: LifecycleEngine, host) -> None:
    """Exactly one of two overlapping adds on a pair succeeds."""
    entered = threading.Event()
    release = threading.Event()
    results: dict[str, object] = {}

    def _block() -> None:
        if not entered.is_set():
            entered.set()
            release.wait(5)

    host.hooks["enable"] = _block

    def _first() -> None:
        results["first"] = engine.run("add", "jason", "radarr")

    worker = threading.Thread(target=_first)
    worker.start()
    assert entered.wait(5)
    try:
        with pytest.raises(Busy):
            engine.run("add", "jason", "radarr")
    finally:
        release.set()
        worker.join(5)

    assert results["first"].ok  # type: ignore[attr-defined]
    assert engine.store.get_instance("jason", "radarr") is not None


def test_crash_before_state_upsert_is_reconciled(engine: LifecycleEngine, host, zen_config) -> None:
    """Artifacts without a state row mark the pair inconsistent until removed."""

    def _killed() -> None:
        raise KeyboardInterrupt

    host.hooks["enable"] = _killed
    with pytest.raises(KeyboardInterrupt):
        engine.run("add", "jason", "radarr")
    host.hooks.clear()
    paths = _paths(zen_config)
    assert paths["unit"].exists()
    assert engine.store.get_instance("jason", "radarr") is None

    with pytest.raises(Inconsistent) as excinfo:
        engine.run("update", "jason", "radarr")
    assert excinfo.value.exit_code == ExitCode.INCONSISTENT
    assert "no state row" in excinfo.value.message
    row = engine.store.get_instance("jason", "radarr")
    assert row is not None and row.status is InstanceStatus.INCONSISTENT

    for action in ("add", "backup", "reset"):
        with pytest.raises(Inconsistent):
            engine.run(action, "jason", "radarr")

    assert engine.run("remove", "jason", "radarr").ok
    assert not paths["unit"].exists()
    assert engine.store.get_port("jason", "radarr") is None
    assert engine.store.get_instance("jason", "radarr") is None
    assert engine.run("add", "jason", "radarr").ok


def test_reinstall_recovers_inconsistent_instance(engine: LifecycleEngine, host, zen_config) -> None:
    """Reinstall rebuilds a drifted instance on its original port."""
    engine.run("add", "jason", "radarr")
    _paths(zen_config)["snippet"].unlink()

    with pytest.raises(Inconsistent, match="proxy snippet missing"):
        engine.run("update", "jason", "radarr")

    outcome = engine.run("reinstall", "jason", "radarr")

    assert outcome.ok
    assert outcome.port == 7878
    assert outcome.instance_status == "running"
    assert _paths(zen_config)["snippet"].exists()
    assert host.is_active(RADARR_UNIT)


def test_cancel_unwinds_completed_steps(engine: LifecycleEngine, host, zen_config) -> None:
    """A termination request stops after the current step and unwinds."""
    host.hooks["enable"] = engine.request_cancel

    with pytest.raises(Cancelled) as excinfo:
        engine.run("add", "jason", "radarr")

    assert not excinfo.value.abort
    assert not _paths(zen_config)["unit"].exists()
    assert engine.store.get_port("jason", "radarr") is None
    assert engine.store.get_instance("jason", "radarr") is None


def test_second_cancel_aborts_without_unwind(engine: LifecycleEngine, host, zen_config) -> None:
    """A second termination request leaves the pair marked inconsistent."""

    def _twice() -> None:
        engine.request_cancel()
        engine.request_cancel()

    host.hooks["enable"] = _twice

    with pytest.raises(Cancelled) as excinfo:
        engine.run("add", "jason", "radarr")

    assert excinfo.value.abort
    assert _paths(zen_config)["unit"].exists()
    row = engine.store.get_instance("jason", "radarr")
    assert row is not None and row.status is InstanceStatus.INCONSISTENT


def test_second_cancel_during_unwind_aborts(engine: LifecycleEngine, host, zen_config) -> None:
    """A termination request arriving mid-unwind stops the unwind at once."""
    host.hooks["enable"] = engine.request_cancel
    host.hooks["disable"] = engine.request_cancel

    with pytest.raises(Cancelled) as excinfo:
        engine.run("add", "jason", "radarr")

    assert excinfo.value.abort
    assert ("disable", RADARR_UNIT) in host.commands
    assert _paths(zen_config)["unit"].exists()
    assert engine.store.get_port("jason", "radarr") == 7878
    row = engine.store.get_instance("jason", "radarr")
    assert row is not None and row.status is InstanceStatus.INCONSISTENT


def test_rtorrent_uses_system_packages(engine: LifecycleEngine, host, zen_config) -> None:
    """Package-based apps get their version from dpkg and no install path."""
    outcome = engine.run("add", "jason", "rtorrent")
    paths = _paths(zen_config, app="rtorrent")

    assert outcome.port == 36000
    assert outcome.version == "1.0-1"
    assert not paths["install"].exists()
    rc = (paths["config"] / "rtorrent.rc").read_text(encoding="utf-8")
    assert "network.port_range.set = 46000-46000" in rc
    assert (paths["config"] / "session").is_dir()
    assert (paths["home"] / "Downloads").is_dir()
    assert f"root * {paths['home'] / 'Downloads'}" in paths["snippet"].read_text(encoding="utf-8")


def test_shared_dependencies_removed_with_last_user(engine: LifecycleEngine, host) -> None:
    """Dependencies flagged for removal go only with the app's last user."""
    engine.run("add", "jason", "rtorrent")
    engine.run("add", "alice", "rtorrent")
    host.apt_calls.clear()

    engine.run("remove", "jason", "rtorrent")
    assert not any("purge" in call for call in host.apt_calls)

    engine.run("remove", "alice", "rtorrent")
    assert any("purge" in call for call in host.apt_calls)
    assert "rtorrent" not in host.packages


def test_grafana_persists_domain_option(engine: LifecycleEngine, zen_config) -> None:
    """Persisted options reach the config template and the state row."""
    engine.run("add", "jason", "grafana", {"domain": "media.example", "email": "j@example.com"})
    paths = _paths(zen_config, app="grafana")
    ini = (paths["config"] / "grafana.ini").read_text(encoding="utf-8")
    instance = engine.store.get_instance("jason", "grafana")

    assert instance is not None
    assert "domain = media.example" in ini
    assert "admin_email = j@example.com" in ini
    assert f"admin_password = {instance.options['admin_password']}" in ini
    assert instance.options["domain"] == "media.example"
    for name in ("data", "logs", "plugins"):
        assert (paths["config"] / name).is_dir()


def test_dependency_install_failure_is_external(engine: LifecycleEngine, host) -> None:
    """Package manager failures surface as external errors."""
    host.apt_broken = True
    with pytest.raises(DependencyInstallFailed) as excinfo:
        engine.run("add", "jason", "radarr")
    assert excinfo.value.exit_code == ExitCode.EXTERNAL
    assert excinfo.value.step == "install_dependencies"


@pytest.mark.parametrize(
    ("user", "app", "options", "error"),
    [
        ("jason", "plex", None, UnknownApp),
        ("bob", "radarr", None, UnknownUser),
        ("jason", "radarr", {"color": "red"}, UsageError),
        ("jason", "radarr", {"branch": "canary"}, UsageError),
        ("jason", "radarr", {"timeout": "soon"}, UsageError),
    ],
)
def test_request_validation(engine: LifecycleEngine, user, app, options, error) -> None:
    """Bad requests fail before any lock or step."""
    with pytest.raises(error):
        engine.run("add", user, app, options)
    assert engine.store.list_instances() == []


def test_unknown_action_is_usage_error(engine: LifecycleEngine) -> None:
    """Only the known verbs are accepted."""
    with pytest.raises(UsageError, match="Unknown action"):
        engine.run("upgrade", "jason", "radarr")


def test_banned_user_is_refused(engine: LifecycleEngine) -> None:
    """Banned users cannot run lifecycle actions."""
    engine.store.set_banned("alice", True)
    with pytest.raises(UserBanned) as excinfo:
        engine.run("add", "alice", "radarr")
    assert excinfo.value.exit_code == ExitCode.NOT_FOUND


def test_actions_need_an_instance(engine: LifecycleEngine) -> None:
    """Everything but add requires an existing instance."""
    for action in ("remove", "update", "backup", "reset", "reinstall"):
        with pytest.raises(NotInstalled):
            engine.run(action, "jason", "radarr")


def test_operations_are_recorded(engine: LifecycleEngine, zen_config) -> None:
    """Every action appends to the state record and the JSONL log."""
    outcome = engine.run("add", "jason", "radarr")
    with pytest.raises(AlreadyInstalled):
        engine.run("add", "jason", "radarr")

    records = engine.store.list_operations(user="jason", app="radarr")
    assert [record.outcome for record in records] == ["failure", "ok"]
    assert records[1].correlation_id == outcome.correlation_id

    lines = (zen_config.logs_dir / "operations.jsonl").read_text(encoding="utf-8").splitlines()
    first = json.loads(lines[0])
    assert first["op_id"] == outcome.correlation_id
    names = [step["name"] for step in first["steps"]]
    assert names[0] == "reconcile"
    assert "allocate_port" in names and "record_instance" in names
    assert first["result"]["status"] == "success"


def test_parse_options() -> None:
    """``K=V`` lists are parsed and validated."""
    assert parse_options("branch=nightly, email=j@example.com") == {
        "branch": "nightly",
        "email": "j@example.com",
    }
    assert parse_options(None) == {}
    with pytest.raises(UsageError, match="Malformed"):
        parse_options("branch")
    with pytest.raises(UsageError, match="Unknown option"):
        parse_options("color=red")
