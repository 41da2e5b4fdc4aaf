"""Static lookup of handlers and step lists by ``(app, verb)``."""
from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from types import MappingProxyType

from ..errors import UnknownApp
from .handlers import HANDLER_TYPES, SoftwareHandler, Step
from .manifest import AppManifest, ManifestError, load_catalog


class HandlerRegistry:
    """Bind every catalog manifest to its handler once at startup."""

    def __init__(
        self,
        manifests: Mapping[str, AppManifest],
        handler_types: Mapping[str, type[SoftwareHandler]] | None = None,
    ) -> None:
        types = dict(HANDLER_TYPES if handler_types is None else handler_types)
        self._manifests = MappingProxyType(dict(manifests))
        handlers: dict[str, SoftwareHandler] = {}
        for name, manifest in self._manifests.items():
            try:
                handler_type = types[manifest.handler]
            except KeyError as exc:
                raise ManifestError(
                    f"{name}: unknown handler '{manifest.handler}'."
                ) from exc
            handlers[name] = handler_type(manifest)
        self._handlers = handlers

    @classmethod
    def from_catalog(cls, extra_dir: Path | None = None) -> HandlerRegistry:
        """Build a registry from the embedded catalog (plus *extra_dir*)."""
        return cls(load_catalog(extra_dir))

    @property
    def manifests(self) -> Mapping[str, AppManifest]:
        """Return the read-only manifest mapping."""
        return self._manifests

    def apps(self) -> list[str]:
        """Return every known app name, sorted."""
        return sorted(self._manifests)

    def manifest(self, app: str) -> AppManifest:
        """Return the manifest for *app* or raise :class:`UnknownApp`."""
        try:
            return self._manifests[app]
        except KeyError as exc:
            known = ", ".join(self.apps())
            raise UnknownApp(f"Unknown app '{app}'. Known apps: {known}.") from exc

    def handler(self, app: str) -> SoftwareHandler:
        """Return the handler bound to *app*."""
        self.manifest(app)
        return self._handlers[app]

    def steps(self, app: str, verb: str) -> list[Step]:
        """Return the step list implementing *verb* for *app*."""
        return self.handler(app).steps(verb)


__all__ = ["HandlerRegistry"]
