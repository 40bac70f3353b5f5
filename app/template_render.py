"""Sandboxed Jinja rendering for configurable title formats."""

from __future__ import annotations

import logging
from typing import Any, Callable

from jinja2 import StrictUndefined, TemplateSyntaxError, Undefined, UndefinedError, meta
from jinja2.sandbox import ImmutableSandboxedEnvironment


logger = logging.getLogger("docbind.resolve")

TITLE_VARIABLES = {"base", "suffix", "version"}

_ALLOWED_FILTERS = {
    "default",
    "lower",
    "upper",
    "trim",
    "replace",
}

_ALLOWED_TESTS = {
    "defined",
    "undefined",
    "none",
}


class _LockedSandbox(ImmutableSandboxedEnvironment):
    def is_safe_attribute(self, obj, attr, value) -> bool:
        return False

    def is_safe_callable(self, obj) -> bool:
        return False


def _env(strict: bool) -> _LockedSandbox:
    env = _LockedSandbox(autoescape=False, undefined=StrictUndefined if strict else Undefined)
    env.globals = {}
    env.filters = {key: val for key, val in env.filters.items() if key in _ALLOWED_FILTERS}
    env.tests = {key: val for key, val in env.tests.items() if key in _ALLOWED_TESTS}
    return env


def _sanitize_context(context: dict[str, Any] | None) -> dict[str, str]:
    return {str(key): "" if val is None else str(val) for key, val in (context or {}).items()}


def collect_undeclared_vars(template_text: str | None) -> set[str]:
    if not template_text:
        return set()
    parsed = _env(strict=False).parse(template_text)
    return set(meta.find_undeclared_variables(parsed))


def validate_title_format(text: str | None) -> list[dict]:
    """Issues for a title format: syntax errors and variables outside base/suffix/version."""
    if not text:
        return []
    try:
        names = collect_undeclared_vars(text)
    except TemplateSyntaxError as exc:
        return [
            {
                "code": "TITLE_FORMAT_INVALID",
                "message": exc.message or "Invalid title format",
                "path": "title_format",
                "detail": {"line": exc.lineno or 1},
            }
        ]
    unknown = sorted(names - TITLE_VARIABLES)
    if unknown:
        return [
            {
                "code": "TITLE_FORMAT_UNKNOWN_VARIABLE",
                "message": f"Unknown title variables: {', '.join(unknown)}",
                "path": "title_format",
                "detail": {"allowed": sorted(TITLE_VARIABLES), "unknown": unknown},
            }
        ]
    return []


def render_template(text: str | None, context: dict[str, Any], strict: bool = True) -> str:
    tmpl = _env(strict=strict).from_string(text or "")
    return tmpl.render(_sanitize_context(context))


def make_title_renderer(title_format: str | None) -> Callable[[str, str, str], str] | None:
    """Build a title render callable, or None to keep plain concatenation."""
    if not title_format:
        return None
    issues = validate_title_format(title_format)
    if issues:
        raise ValueError(issues[0]["message"])

    def _render(base: str, suffix: str, version: str) -> str:
        try:
            text = render_template(title_format, {"base": base, "suffix": suffix, "version": version})
        except UndefinedError as exc:
            logger.warning("title_format_undefined error=%s", exc)
            raise
        return " ".join(text.split())

    return _render
