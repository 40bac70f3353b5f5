"""Template fingerprinting."""

from __future__ import annotations

import hashlib
from typing import Any

from .canonical_json import canonical_dumps


def template_hash(template_obj: Any) -> str:
    """Return the canonical SHA-256 fingerprint of a normalized template."""
    data = canonical_dumps(template_obj).encode("utf-8")
    digest = hashlib.sha256(data).hexdigest()
    return f"sha256:{digest}"


def value_fingerprint(value: Any) -> str:
    """Short fingerprint of a field value, used to tag pending changes in logs."""
    try:
        data = canonical_dumps(value).encode("utf-8")
    except (TypeError, ValueError):
        data = repr(value).encode("utf-8")
    return hashlib.sha256(data).hexdigest()[:12]
