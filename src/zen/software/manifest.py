"""Typed application manifests loaded from the embedded catalog."""
from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from types import MappingProxyType

import yaml

from ..errors import UsageError

RELEASE_KINDS = {"index", "github", "system"}
REQUIRED_CHANNELS = ("stable", "prerelease")


class ManifestError(UsageError):
    """Raised when a catalog manifest is malformed."""


@dataclass(slots=True, frozen=True)
class PortRange:
    """Inclusive range of TCP ports."""

    lo: int
    hi: int

    def __post_init__(self) -> None:
        if not (0 < self.lo <= self.hi < 65536):
            raise ManifestError(f"Invalid port range [{self.lo}, {self.hi}].")

    def __contains__(self, port: object) -> bool:
        return isinstance(port, int) and self.lo <= port <= self.hi

    def __iter__(self) -> Iterator[int]:
        return iter(range(self.lo, self.hi + 1))

    def to_list(self) -> list[int]:
        """Return ``[lo, hi]``."""
        return [self.lo, self.hi]


@dataclass(slots=True, frozen=True)
class ReleaseSource:
    """How to discover and download an app's release artifact.

    ``index`` sources query a JSON update index that lists versions with their
    download URL and SHA-256. ``github`` sources use the GitHub releases API.
    ``system`` apps ship through OS packages and have no artifact.
    """

    kind: str
    metadata_url: str | None = None
    url_template: str | None = None
    repo: str | None = None
    asset: str | None = None
    arch_map: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    version_package: str | None = None

    def arch_token(self, arch: str) -> str:
        """Return the upstream spelling of *arch*."""
        return self.arch_map.get(arch, arch)


@dataclass(slots=True, frozen=True)
class AppManifest:
    """Static metadata describing one catalog app."""

    name: str
    display_name: str
    group: str
    handler: str
    port_range: PortRange
    channels: Mapping[str, str]
    release: ReleaseSource
    unit_template_name: str
    proxy_template_name: str
    binary: str
    reserved_ports: tuple[PortRange, ...] = ()
    dependencies: tuple[str, ...] = ()
    remove_dependencies: bool = False
    config_paths: tuple[str, ...] = ()
    config_template_name: str | None = None
    config_filename: str | None = None
    api_version: str | None = None
    multi_user: bool = True
    ui_options: Mapping[str, object] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def release_url_template(self) -> str | None:
        """Return the artifact URL template, if the manifest declares one."""
        return self.release.url_template

    @property
    def has_artifact(self) -> bool:
        """Return ``True`` when the app is downloaded rather than packaged."""
        return self.release.kind != "system"

    def api_path(self, resource: str) -> str | None:
        """Return the local HTTP API path for *resource*, if the app has a versioned API."""
        if not self.api_version:
            return None
        return f"/api/{self.api_version}/{resource.strip('/')}"

    def release_name(self, channel: str, branch: str | None = None) -> str:
        """Return the upstream release name for *channel* (or explicit *branch*)."""
        if branch and branch in self.channels:
            return self.channels[branch]
        try:
            return self.channels[channel]
        except KeyError as exc:
            raise UsageError(f"{self.display_name} has no '{channel}' channel.") from exc

    def is_reserved(self, port: int) -> bool:
        """Return ``True`` when *port* lies in a carve-out sub-range."""
        return any(port in block for block in self.reserved_ports)

    def install_path(self, install_root: Path, user: str) -> Path:
        """Return ``<install_root>/<user>/<DisplayName>``."""
        return install_root / user / self.display_name

    def config_path(self, home: Path) -> Path:
        """Return the primary per-user config directory."""
        return home / self.config_paths[0]

    def config_dirs(self, home: Path) -> list[Path]:
        """Return every path treated as the app's state under *home*."""
        return [home / entry for entry in self.config_paths]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "display_name": self.display_name,
            "group": self.group,
            "port_range": self.port_range.to_list(),
            "reserved_ports": [block.to_list() for block in self.reserved_ports],
            "channels": dict(self.channels),
            "release": self.release.kind,
            "dependencies": list(self.dependencies),
            "config_paths": list(self.config_paths),
            "api_version": self.api_version,
            "multi_user": self.multi_user,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, object], *, source: str = "<manifest>") -> AppManifest:
        """Validate *data* and build a manifest."""
        try:
            name = _require_str(data, "name", source)
            display_name = _require_str(data, "display_name", source)
            port_range = _parse_range(data.get("port_range"), f"{source}: port_range")
            reserved = tuple(
                _parse_range(item, f"{source}: reserved_ports")
                for item in _as_list(data.get("reserved_ports"), f"{source}: reserved_ports")
            )
            for block in reserved:
                if block.lo not in port_range or block.hi not in port_range:
                    raise ManifestError(f"{source}: reserved ports must lie inside port_range.")
            channels_raw = data.get("channels")
            if not isinstance(channels_raw, Mapping):
                raise ManifestError(f"{source}: channels must be a mapping.")
            channels = {str(key): str(value) for key, value in channels_raw.items()}
            missing = [channel for channel in REQUIRED_CHANNELS if channel not in channels]
            if missing:
                raise ManifestError(f"{source}: missing channels {', '.join(missing)}.")
            release = _parse_release(data.get("release"), source)
            config_paths = tuple(
                str(item) for item in _as_list(data.get("config_paths"), f"{source}: config_paths")
            ) or (f".config/{display_name}",)
            for entry in config_paths:
                if entry.startswith("/") or ".." in Path(entry).parts:
                    raise ManifestError(f"{source}: config path {entry!r} must stay under home.")
            ui_options = data.get("ui_options") or {}
            if not isinstance(ui_options, Mapping):
                raise ManifestError(f"{source}: ui_options must be a mapping.")
            return cls(
                name=name,
                display_name=display_name,
                group=str(data.get("group", "automation")),
                handler=str(data.get("handler", "default")),
                port_range=port_range,
                reserved_ports=reserved,
                channels=MappingProxyType(channels),
                release=release,
                unit_template_name=_require_str(data, "unit_template", source),
                proxy_template_name=str(data.get("proxy_template", "caddy/default.caddy")),
                binary=_require_str(data, "binary", source),
                dependencies=tuple(
                    str(item) for item in _as_list(data.get("dependencies"), f"{source}: dependencies")
                ),
                remove_dependencies=bool(data.get("remove_dependencies", False)),
                config_paths=config_paths,
                config_template_name=_optional_str(data.get("config_template")),
                config_filename=_optional_str(data.get("config_filename")),
                api_version=_optional_str(data.get("api_version")),
                multi_user=bool(data.get("multi_user", True)),
                ui_options=MappingProxyType(dict(ui_options)),
            )
        except (TypeError, ValueError) as exc:
            raise ManifestError(f"{source}: {exc}") from exc


def load_catalog(extra_dir: Path | None = None) -> dict[str, AppManifest]:
    """Load every embedded manifest, then any ``*.yml`` in *extra_dir*."""
    manifests: dict[str, AppManifest] = {}
    builtin = resources.files("zen.software").joinpath("catalog")
    entries: list[tuple[str, str]] = [
        (item.name, item.read_text(encoding="utf-8"))
        for item in builtin.iterdir()
        if item.name.endswith(".yml")
    ]
    if extra_dir is not None and extra_dir.is_dir():
        entries.extend(
            (path.name, path.read_text(encoding="utf-8")) for path in extra_dir.glob("*.yml")
        )
    for source, text in sorted(entries):
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ManifestError(f"Failed to parse manifest {source}: {exc}") from exc
        if not isinstance(data, Mapping):
            raise ManifestError(f"Manifest {source} must contain a mapping.")
        manifest = AppManifest.from_mapping(data, source=source)
        manifests[manifest.name] = manifest
    return manifests


def _require_str(data: Mapping[str, object], key: str, source: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ManifestError(f"{source}: '{key}' must be a non-empty string.")
    return value.strip()


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_list(value: object, label: str) -> list[object]:
    if value is None:
        return []
    if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
        raise ManifestError(f"{label} must be a list.")
    return list(value)


def _parse_range(value: object, label: str) -> PortRange:
    items = _as_list(value, label)
    if len(items) != 2 or not all(isinstance(item, int) for item in items):
        raise ManifestError(f"{label} must be a [lo, hi] pair of integers.")
    return PortRange(int(items[0]), int(items[1]))  # type: ignore[arg-type]


def _parse_release(value: object, source: str) -> ReleaseSource:
    if not isinstance(value, Mapping):
        raise ManifestError(f"{source}: release must be a mapping.")
    kind = str(value.get("kind", ""))
    if kind not in RELEASE_KINDS:
        allowed = ", ".join(sorted(RELEASE_KINDS))
        raise ManifestError(f"{source}: release kind must be one of {allowed}.")
    arch_map_raw = value.get("arch_map") or {}
    if not isinstance(arch_map_raw, Mapping):
        raise ManifestError(f"{source}: release.arch_map must be a mapping.")
    release = ReleaseSource(
        kind=kind,
        metadata_url=_optional_str(value.get("metadata_url")),
        url_template=_optional_str(value.get("url_template")),
        repo=_optional_str(value.get("repo")),
        asset=_optional_str(value.get("asset")),
        arch_map=MappingProxyType({str(k): str(v) for k, v in arch_map_raw.items()}),
        version_package=_optional_str(value.get("version_package")),
    )
    if kind == "index" and not release.metadata_url:
        raise ManifestError(f"{source}: index releases need metadata_url.")
    if kind == "github" and not release.repo:
        raise ManifestError(f"{source}: github releases need repo.")
    if kind == "github" and not (release.asset or release.url_template):
        raise ManifestError(f"{source}: github releases need asset or url_template.")
    return release


__all__ = [
    "AppManifest",
    "ManifestError",
    "PortRange",
    "ReleaseSource",
    "load_catalog",
]
