"""Configuration loader for zen.

Configuration values are merged from several sources, later ones winning:

1. Built-in defaults.
2. ``/etc/zen/config.yml`` (or an override path).
3. Environment variables prefixed with ``ZEN_``.
4. Explicit overrides supplied programmatically (CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export ZEN_STATE_DB=/srv/zen/state.db
    export ZEN_PROXY__DROPIN_DIR=/etc/caddy/softwares
    export ZEN_TIMEOUTS__SERVICE_START=30

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` and threaded explicitly through the lifecycle engine.
"""
from __future__ import annotations

import os
import platform
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load zen configuration. Install with "
        "`pip install zen` or ensure PyYAML>=6.0 is available."
    ) from exc

from .errors import ConfigError

ENV_PREFIX = "ZEN_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

ARCH_ALIASES = {
    "x86_64": "x64",
    "amd64": "x64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
}


def detect_arch() -> str:
    """Return the architecture hint for the running machine."""
    machine = platform.machine().lower()
    return ARCH_ALIASES.get(machine, machine or "x64")


@dataclass(frozen=True)
class TimeoutsConfig:
    """Time budgets, in seconds, for each suspension point."""

    download: float = 300.0
    package_install: float = 600.0
    service_start: float = 20.0
    service_stop: float = 20.0
    proxy_reload: float = 10.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "download": self.download,
            "package_install": self.package_install,
            "service_start": self.service_start,
            "service_stop": self.service_stop,
            "proxy_reload": self.proxy_reload,
        }


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    unit_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"
    poll_interval: float = 0.5

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "unit_dir": str(self.unit_dir),
            "systemctl_bin": self.systemctl_bin,
            "poll_interval": self.poll_interval,
        }


@dataclass(frozen=True)
class ProxyConfig:
    """Reverse proxy drop-in directory and reload command."""

    dropin_dir: Path = Path("/etc/caddy/softwares")
    caddy_bin: str = "caddy"
    caddyfile: Path = Path("/etc/caddy/Caddyfile")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "dropin_dir": str(self.dropin_dir),
            "caddy_bin": self.caddy_bin,
            "caddyfile": str(self.caddyfile),
        }


@dataclass(frozen=True)
class PackagesConfig:
    """OS package manager binaries."""

    apt_bin: str = "apt-get"
    dpkg_query_bin: str = "dpkg-query"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"apt_bin": self.apt_bin, "dpkg_query_bin": self.dpkg_query_bin}


@dataclass(frozen=True)
class HttpConfig:
    """HTTP client settings for release downloads."""

    proxy: str | None = None
    retries: int = 3
    user_agent: str = "zen"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"proxy": self.proxy, "retries": self.retries, "user_agent": self.user_agent}


@dataclass(frozen=True)
class BackupConfig:
    """Backup location and compression defaults."""

    dirname: str = ".backups"
    compression: str = "auto"
    compression_level: int | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "dirname": self.dirname,
            "compression": {
                "algorithm": self.compression,
                "level": self.compression_level,
            },
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for zen."""

    config_file: Path
    state_db: Path
    runtime_dir: Path
    logs_dir: Path
    templates_dir: Path
    install_root: Path
    home_root: Path
    arch: str
    default_channel: str
    timeouts: TimeoutsConfig
    systemd: SystemdConfig
    proxy: ProxyConfig
    packages: PackagesConfig
    http: HttpConfig
    backups: BackupConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_db": str(self.state_db),
            "runtime_dir": str(self.runtime_dir),
            "logs_dir": str(self.logs_dir),
            "templates_dir": str(self.templates_dir),
            "install_root": str(self.install_root),
            "home_root": str(self.home_root),
            "arch": self.arch,
            "default_channel": self.default_channel,
            "timeouts": self.timeouts.to_dict(),
            "systemd": self.systemd.to_dict(),
            "proxy": self.proxy.to_dict(),
            "packages": self.packages.to_dict(),
            "http": self.http.to_dict(),
            "backups": self.backups.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/zen/config.yml",
    "state_db": "/var/lib/zen/state.db",
    "runtime_dir": "/run/zen",
    "logs_dir": "/var/log/zen",
    "templates_dir": "/etc/zen/templates",
    "install_root": "/opt",
    "home_root": "/home",
    "arch": None,  # detected from the running machine when absent
    "default_channel": "stable",
    "timeouts": {
        "download": 300.0,
        "package_install": 600.0,
        "service_start": 20.0,
        "service_stop": 20.0,
        "proxy_reload": 10.0,
    },
    "systemd": {
        "unit_dir": "/etc/systemd/system",
        "systemctl_bin": "systemctl",
        "poll_interval": 0.5,
    },
    "proxy": {
        "dropin_dir": "/etc/caddy/softwares",
        "caddy_bin": "caddy",
        "caddyfile": "/etc/caddy/Caddyfile",
    },
    "packages": {
        "apt_bin": "apt-get",
        "dpkg_query_bin": "dpkg-query",
    },
    "http": {
        "proxy": None,
        "retries": 3,
        "user_agent": "zen",
    },
    "backups": {
        "dirname": ".backups",
        "compression": {
            "algorithm": "auto",
            "level": None,
        },
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_CHANNELS = {"stable", "prerelease"}
ALLOWED_BACKUP_COMPRESSION = {"auto", "zstd", "gzip", "none"}
SECTION_KEYS: dict[str, set[str]] = {
    "timeouts": set(cast(Mapping[str, object], DEFAULTS["timeouts"]).keys()),
    "systemd": set(cast(Mapping[str, object], DEFAULTS["systemd"]).keys()),
    "proxy": set(cast(Mapping[str, object], DEFAULTS["proxy"]).keys()),
    "packages": set(cast(Mapping[str, object], DEFAULTS["packages"]).keys()),
    "http": set(cast(Mapping[str, object], DEFAULTS["http"]).keys()),
    "backups": {"dirname", "compression"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, _as_dict(overrides, "overrides"))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    channel = raw.get("default_channel")
    if channel is not None and str(channel) not in ALLOWED_CHANNELS:
        allowed_channels = ", ".join(sorted(ALLOWED_CHANNELS))
        raise ConfigError(
            f"Unsupported default_channel '{channel}'. Allowed: {allowed_channels}."
        )

    backups_map = _as_dict(raw.get("backups"), "backups")
    compression_map = _as_dict(backups_map.get("compression"), "backups.compression")
    unknown_comp = set(compression_map.keys()) - {"algorithm", "level"}
    if unknown_comp:
        joined = ", ".join(sorted(unknown_comp))
        raise ConfigError(f"Unknown backups compression keys: {joined}.")
    algorithm = str(compression_map.get("algorithm", "auto"))
    if algorithm not in ALLOWED_BACKUP_COMPRESSION:
        allowed_algorithms = ", ".join(sorted(ALLOWED_BACKUP_COMPRESSION))
        raise ConfigError(
            f"Unsupported backup compression '{algorithm}'. Allowed: {allowed_algorithms}."
        )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    timeouts_map = _as_dict(raw.get("timeouts"), "timeouts")
    defaults = TimeoutsConfig()
    timeouts = TimeoutsConfig(
        download=_expect_positive_float(
            timeouts_map.get("download"), "timeouts.download", default=defaults.download
        ),
        package_install=_expect_positive_float(
            timeouts_map.get("package_install"),
            "timeouts.package_install",
            default=defaults.package_install,
        ),
        service_start=_expect_positive_float(
            timeouts_map.get("service_start"),
            "timeouts.service_start",
            default=defaults.service_start,
        ),
        service_stop=_expect_positive_float(
            timeouts_map.get("service_stop"),
            "timeouts.service_stop",
            default=defaults.service_stop,
        ),
        proxy_reload=_expect_positive_float(
            timeouts_map.get("proxy_reload"),
            "timeouts.proxy_reload",
            default=defaults.proxy_reload,
        ),
    )

    systemd_map = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        unit_dir=_to_path(systemd_map.get("unit_dir", "/etc/systemd/system")),
        systemctl_bin=str(systemd_map.get("systemctl_bin", "systemctl")),
        poll_interval=_expect_positive_float(
            systemd_map.get("poll_interval"), "systemd.poll_interval", default=0.5
        ),
    )

    proxy_map = _as_dict(raw.get("proxy"), "proxy")
    proxy = ProxyConfig(
        dropin_dir=_to_path(proxy_map.get("dropin_dir", "/etc/caddy/softwares")),
        caddy_bin=str(proxy_map.get("caddy_bin", "caddy")),
        caddyfile=_to_path(proxy_map.get("caddyfile", "/etc/caddy/Caddyfile")),
    )

    packages_map = _as_dict(raw.get("packages"), "packages")
    packages = PackagesConfig(
        apt_bin=str(packages_map.get("apt_bin", "apt-get")),
        dpkg_query_bin=str(packages_map.get("dpkg_query_bin", "dpkg-query")),
    )

    http_map = _as_dict(raw.get("http"), "http")
    proxy_url = http_map.get("proxy")
    http = HttpConfig(
        proxy=str(proxy_url) if proxy_url not in (None, "") else None,
        retries=_expect_int(http_map.get("retries"), "http.retries", default=3),
        user_agent=str(http_map.get("user_agent", "zen")),
    )
    if http.retries < 0:
        raise ConfigError("http.retries must be non-negative.")

    backups_map = _as_dict(raw.get("backups"), "backups")
    compression_map = _as_dict(backups_map.get("compression"), "backups.compression")
    compression_level_raw = compression_map.get("level")
    compression_level: int | None = None
    if compression_level_raw is not None:
        compression_level = _expect_int(
            compression_level_raw, "backups.compression.level", default=1
        )
        if compression_level <= 0:
            raise ConfigError(
                "backups.compression.level must be greater than zero when specified."
            )
    dirname = str(backups_map.get("dirname", ".backups")).strip()
    if not dirname or "/" in dirname:
        raise ConfigError("backups.dirname must be a single directory name.")
    backups = BackupConfig(
        dirname=dirname,
        compression=str(compression_map.get("algorithm", "auto")),
        compression_level=compression_level,
    )

    arch_value = raw.get("arch")
    arch = str(arch_value).strip() if arch_value not in (None, "") else detect_arch()

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        state_db=_to_path(raw.get("state_db")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        logs_dir=_to_path(raw.get("logs_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        install_root=_to_path(raw.get("install_root")),
        home_root=_to_path(raw.get("home_root")),
        arch=arch,
        default_channel=str(raw.get("default_channel", "stable")),
        timeouts=timeouts,
        systemd=systemd,
        proxy=proxy,
        packages=packages,
        http=http,
        backups=backups,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BackupConfig",
    "ConfigError",
    "HttpConfig",
    "PackagesConfig",
    "ProxyConfig",
    "SystemdConfig",
    "TimeoutsConfig",
    "detect_arch",
    "load_config",
]
