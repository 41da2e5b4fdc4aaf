"""Caddy provider for per-instance reverse-proxy snippets."""
from __future__ import annotations

import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import ProxyReloadFailed, TemplateError
from ..templates import TemplateEngine, write_atomic


@dataclass(slots=True)
class SnippetResult:
    """Outcome of writing or removing a proxy snippet."""

    path: Path
    changed: bool
    reloaded: bool = False
    reload_error: str | None = None

    @property
    def degraded(self) -> bool:
        """Return ``True`` when the snippet changed but the proxy did not reload."""
        return self.reload_error is not None


@dataclass(slots=True)
class CaddyProvider:
    """Render snippets into the drop-in directory that the main Caddyfile imports."""

    templates: TemplateEngine
    dropin_dir: Path = Path("/etc/caddy/softwares")
    caddy_bin: str = "caddy"
    caddyfile: Path = Path("/etc/caddy/Caddyfile")
    reload_timeout: float = 10.0

    def snippet_name(self, user: str, app: str) -> str:
        """Return the snippet file name for the pair."""
        return f"{user}-{app}.conf"

    def snippet_path(self, user: str, app: str) -> Path:
        """Return the full snippet path for the pair."""
        return self.dropin_dir / self.snippet_name(user, app)

    def snippet_exists(self, user: str, app: str) -> bool:
        """Return ``True`` when the pair's snippet is present."""
        return self.snippet_path(user, app).exists()

    def render_snippet(
        self,
        user: str,
        app: str,
        port: int,
        *,
        template_name: str,
        variables: Mapping[str, object] | None = None,
    ) -> str:
        """Render the proxy template for the pair."""
        context: dict[str, object] = {"username": user, "app": app, "port": port}
        context.update(variables or {})
        return self.templates.render_to_string(template_name, context)

    def write_snippet(
        self,
        user: str,
        app: str,
        port: int,
        options: Mapping[str, object],
        *,
        reload: bool = True,
    ) -> SnippetResult:
        """Render and install the snippet, then ask Caddy to reload.

        *options* must carry ``template_name``; remaining keys become template
        variables. A reload failure is captured in the result, not raised.
        """
        variables = dict(options)
        template_name = variables.pop("template_name", None)
        if not isinstance(template_name, str):
            raise TemplateError("Proxy snippet options need a template_name.")
        text = self.render_snippet(
            user, app, port, template_name=template_name, variables=variables
        )
        path = self.snippet_path(user, app)
        changed = write_atomic(path, text, mode=0o644)
        result = SnippetResult(path=path, changed=changed)
        if reload and changed:
            self._reload_into(result)
        return result

    def remove_snippet(self, user: str, app: str, *, reload: bool = True) -> SnippetResult:
        """Delete the pair's snippet and reload Caddy when something was removed."""
        path = self.snippet_path(user, app)
        try:
            path.unlink()
        except FileNotFoundError:
            return SnippetResult(path=path, changed=False)
        result = SnippetResult(path=path, changed=True)
        if reload:
            self._reload_into(result)
        return result

    def reload(self) -> subprocess.CompletedProcess[str]:
        """Reload Caddy with the main Caddyfile."""
        return self._run_caddy(
            ["reload", "--config", str(self.caddyfile), "--adapter", "caddyfile"]
        )

    def diagnostics(self, user: str, app: str) -> dict[str, object]:
        """Return diagnostic metadata for the pair."""
        path = self.snippet_path(user, app)
        return {"snippet_path": path, "snippet_exists": path.exists()}

    # ------------------------------------------------------------------
    def _reload_into(self, result: SnippetResult) -> None:
        try:
            self.reload()
        except ProxyReloadFailed as exc:
            result.reload_error = str(exc)
            return
        result.reloaded = True

    def _run_caddy(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        command = [self.caddy_bin, *args]
        try:
            result = subprocess.run(  # noqa: S603
                command,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.reload_timeout,
            )
        except FileNotFoundError as exc:
            raise ProxyReloadFailed(f"{self.caddy_bin} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise ProxyReloadFailed(
                f"{self.caddy_bin} {args[0]} timed out after {self.reload_timeout:g}s."
            ) from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise ProxyReloadFailed(
                f"{self.caddy_bin} {' '.join(args)} failed (exit {result.returncode}): {message}"
            )
        return result


__all__ = ["CaddyProvider", "SnippetResult"]
