"""Environment-driven configuration."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from app.template_render import validate_title_format
from undo_redo import DEFAULT_CAPACITY


ROOT = Path(__file__).resolve().parents[1]

logger = logging.getLogger("docbind.session")


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


@dataclass
class SettingsError(Exception):
    code: str
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


@dataclass
class Settings:
    undo_capacity: int = DEFAULT_CAPACITY
    editable_fields: list[str] = field(default_factory=list)
    title_slot_id: str = "title"
    title_suffix: str = ""
    title_version_field: str | None = None
    title_format: str | None = None
    title_fallback: str = "Untitled record"
    cascade_config: list[dict] = field(default_factory=list)
    record_store_url: str | None = None
    record_store_token: str | None = None
    record_store_timeout: float = 30.0
    log_level: str = "INFO"

    def title_policy(self) -> dict:
        return {
            "slot_id": self.title_slot_id,
            "suffix": self.title_suffix,
            "version_field_id": self.title_version_field,
            "fallback": self.title_fallback,
            "format": self.title_format,
        }


def _get(env: Mapping[str, str], key: str) -> str:
    return (env.get(key) or "").strip()


def _int(env: Mapping[str, str], key: str, default: int, minimum: int = 1) -> int:
    raw = _get(env, key)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise SettingsError("SETTING_INVALID", f"{key} must be an integer", key)
    if value < minimum:
        raise SettingsError("SETTING_INVALID", f"{key} must be >= {minimum}", key)
    return value


def _float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = _get(env, key)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise SettingsError("SETTING_INVALID", f"{key} must be a number", key)


def _cascade(env: Mapping[str, str]) -> list[dict]:
    raw = _get(env, "DOCBIND_CASCADE_CONFIG")
    if not raw:
        return []
    try:
        value: Any = json.loads(raw)
    except ValueError:
        raise SettingsError("SETTING_INVALID", "DOCBIND_CASCADE_CONFIG must be JSON", "DOCBIND_CASCADE_CONFIG")
    if not isinstance(value, list):
        raise SettingsError("SETTING_INVALID", "DOCBIND_CASCADE_CONFIG must be a JSON list", "DOCBIND_CASCADE_CONFIG")
    return [item for item in value if isinstance(item, dict)]


def load_settings(environ: Mapping[str, str] | None = None, env_file: Path | None = None) -> Settings:
    """Read settings from the environment; ``app/.env`` never overrides real variables."""
    if environ is None:
        _load_env_file(env_file or ROOT / "app" / ".env")
        environ = os.environ
    title_format = _get(environ, "DOCBIND_TITLE_FORMAT") or None
    issues = validate_title_format(title_format)
    if issues:
        raise SettingsError(issues[0]["code"], issues[0]["message"], "DOCBIND_TITLE_FORMAT")
    editable = [item.strip() for item in _get(environ, "DOCBIND_EDITABLE_FIELDS").split(",") if item.strip()]
    settings = Settings(
        undo_capacity=_int(environ, "DOCBIND_UNDO_CAPACITY", DEFAULT_CAPACITY),
        editable_fields=editable,
        title_slot_id=_get(environ, "DOCBIND_TITLE_SLOT_ID") or "title",
        title_suffix=_get(environ, "DOCBIND_TITLE_SUFFIX"),
        title_version_field=_get(environ, "DOCBIND_TITLE_VERSION_FIELD") or None,
        title_format=title_format,
        title_fallback=_get(environ, "DOCBIND_TITLE_FALLBACK") or "Untitled record",
        cascade_config=_cascade(environ),
        record_store_url=_get(environ, "DOCBIND_RECORD_STORE_URL") or None,
        record_store_token=_get(environ, "DOCBIND_RECORD_STORE_TOKEN") or None,
        record_store_timeout=_float(environ, "DOCBIND_RECORD_STORE_TIMEOUT", 30.0),
        log_level=(_get(environ, "DOCBIND_LOG_LEVEL") or "INFO").upper(),
    )
    logger.debug(
        "settings_loaded undo_capacity=%s editable_fields=%s remote_store=%s",
        settings.undo_capacity,
        len(settings.editable_fields),
        bool(settings.record_store_url),
    )
    return settings
