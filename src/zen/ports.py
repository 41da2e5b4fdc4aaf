"""Per-``(user, app)`` TCP port allocation."""
from __future__ import annotations

import socket
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from .errors import NoFreePort, UnknownApp
from .software.manifest import AppManifest
from .state import StateStore

PortProbe = Callable[[int], bool]


def port_is_bound(port: int, host: str = "127.0.0.1") -> bool:
    """Return ``True`` when something already listens on *port*.

    Best-effort: a port is considered bound when a plain ``bind`` fails.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return True
    return False


@dataclass(slots=True)
class PortAllocator:
    """Pick the lowest free port inside an app's manifest range."""

    store: StateStore
    manifests: Mapping[str, AppManifest]
    probe: PortProbe | None = None

    def allocate(self, user: str, app: str) -> int:
        """Reserve and return a port for the pair.

        An existing allocation for the pair is returned unchanged. Ports
        recorded for another user of the same app, ports in a reserved
        sub-range, and ports currently bound on the host are skipped.
        """
        manifest = self._manifest(app)
        existing = self.store.get_port(user, app)
        if existing is not None:
            return existing

        probe = self.probe or port_is_bound
        taken = self.store.ports_for_app(app)
        for candidate in manifest.port_range:
            if candidate in taken or manifest.is_reserved(candidate):
                continue
            if probe(candidate):
                continue
            # Another process may have recorded the port since we read it.
            if self.store.allocate_port(user, app, candidate):
                return candidate
            taken.add(candidate)
        lo, hi = manifest.port_range.to_list()
        raise NoFreePort(f"No free port for {app} in [{lo}, {hi}].")

    def release(self, user: str, app: str) -> int | None:
        """Free the pair's port; return it, or ``None`` when none was held."""
        return self.store.free_port(user, app)

    def get_port(self, user: str, app: str) -> int | None:
        """Return the pair's recorded port."""
        return self.store.get_port(user, app)

    def _manifest(self, app: str) -> AppManifest:
        try:
            return self.manifests[app]
        except KeyError as exc:
            raise UnknownApp(f"Unknown app '{app}'.") from exc


__all__ = ["PortAllocator", "PortProbe", "port_is_bound"]
