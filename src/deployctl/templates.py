"""Jinja2 rendering for plan fields.

Plan files may reference run variables in any string field, e.g.
``"{{ deploy_dir }}/releases/{{ release }}"`` or
``"{{ tool_dirs.packs }}/{{ target.vars.pack }}"``. Undefined variables
are errors rather than empty strings.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field

from jinja2 import Environment, StrictUndefined, TemplateError as JinjaTemplateError


class TemplateError(RuntimeError):
    """Raised when a plan field cannot be rendered."""


@dataclass(slots=True)
class TemplateEngine:
    """Render strings and nested plan values against a context."""

    environment: Environment = field(
        default_factory=lambda: Environment(
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )
    )

    def render_string(self, text: str, context: Mapping[str, object]) -> str:
        """Render a single template string."""
        if "{{" not in text and "{%" not in text:
            return text
        try:
            return self.environment.from_string(text).render(**context)
        except JinjaTemplateError as exc:
            raise TemplateError(f"Failed to render {text!r}: {exc}") from exc

    def render_value(self, value: object, context: Mapping[str, object]) -> object:
        """Render every string found in *value* (lists and mappings recurse)."""
        if isinstance(value, str):
            return self.render_string(value, context)
        if isinstance(value, Mapping):
            return {key: self.render_value(item, context) for key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.render_value(item, context) for item in value]
        return value


__all__ = ["TemplateEngine", "TemplateError"]
