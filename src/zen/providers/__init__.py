"""Adapters around the external tools zen drives."""
from __future__ import annotations

from .caddy import CaddyProvider, SnippetResult
from .packages import AptProvider
from .releases import FetchResult, ReleaseFetcher, ReleaseInfo
from .systemd import StopResult, SystemdProvider

__all__ = [
    "AptProvider",
    "CaddyProvider",
    "FetchResult",
    "ReleaseFetcher",
    "ReleaseInfo",
    "SnippetResult",
    "StopResult",
    "SystemdProvider",
]
