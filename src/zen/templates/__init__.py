"""Template rendering for unit files, proxy snippets, and app config files.

Built-in templates live next to this module and may be shadowed by files in
the configured override directory. Rendering is strict: a placeholder with no
matching variable is an error, while unused variables are ignored.

Unit and config templates use ``{{NAME}}`` placeholders. Proxy snippets
(``*.caddy``) use shell-style ``$name`` placeholders, which are rewritten into
Jinja expressions before compilation. ``%i`` is left untouched for systemd.
"""
from __future__ import annotations

import os
import re
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from jinja2 import (
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    StrictUndefined,
    TemplateNotFound,
    TemplateSyntaxError,
    UndefinedError,
)
from jinja2.ext import Extension

from ..errors import TemplateError

DOLLAR_SUFFIXES = (".caddy",)
_DOLLAR_PATTERN = re.compile(r"(?<![{$])\$([A-Za-z_][A-Za-z0-9_]*)")


class DollarPlaceholderExtension(Extension):
    """Translate ``$name`` placeholders in proxy templates into ``{{ name }}``."""

    def preprocess(
        self,
        source: str,
        name: str | None,
        filename: str | None = None,
    ) -> str:
        if name is None or not name.endswith(DOLLAR_SUFFIXES):
            return source
        escaped = source.replace("$$", "\x00")
        converted = _DOLLAR_PATTERN.sub(r"{{ \1 }}", escaped)
        return converted.replace("\x00", "$")


@dataclass(slots=True)
class TemplateEngine:
    """Render templates with strict undefined handling."""

    environment: Environment
    override_dir: Path | None = None

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Build an engine that prefers templates found in *override_dir*."""
        loaders = []
        if override_dir is not None and Path(override_dir).is_dir():
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(PackageLoader("zen", "templates"))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
            autoescape=False,
            extensions=[DollarPlaceholderExtension],
        )
        return cls(environment=environment, override_dir=override_dir)

    def render(self, template_name: str, variables: Mapping[str, object]) -> str:
        """Return the rendered text of *template_name*."""
        return self.render_to_string(template_name, variables)

    def render_to_string(self, template_name: str, variables: Mapping[str, object]) -> str:
        """Render *template_name* with *variables* and return the text."""
        try:
            template = self.environment.get_template(template_name)
            return template.render(**dict(variables))
        except TemplateNotFound as exc:
            raise TemplateError(f"Template '{template_name}' not found.") from exc
        except TemplateSyntaxError as exc:
            raise TemplateError(
                f"Template '{template_name}' is malformed (line {exc.lineno}): {exc.message}"
            ) from exc
        except UndefinedError as exc:
            raise TemplateError(
                f"Template '{template_name}' uses an unknown placeholder: {exc.message}"
            ) from exc

    def render_to_path(
        self,
        template_name: str,
        destination: Path,
        variables: Mapping[str, object],
        *,
        mode: int = 0o644,
    ) -> bool:
        """Render into *destination* atomically; return ``True`` when it changed."""
        content = self.render_to_string(template_name, variables)
        return write_atomic(destination, content, mode=mode)


def write_atomic(destination: Path, content: str, *, mode: int = 0o644) -> bool:
    """Write *content* via rename-into-place; return ``False`` when unchanged."""
    destination = Path(destination)
    if destination.exists():
        try:
            if destination.read_text(encoding="utf-8") == content:
                if (destination.stat().st_mode & 0o777) != mode:
                    os.chmod(destination, mode)
                return False
        except UnicodeDecodeError:
            pass
    destination.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{destination.name}.", suffix=".tmp", dir=destination.parent
    )
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, destination)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()
    return True


__all__ = ["DollarPlaceholderExtension", "TemplateEngine", "write_atomic"]
