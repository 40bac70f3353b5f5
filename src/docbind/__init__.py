"""docbind kernel utilities."""

from .canonical_json import CanonicalJsonTypeError, canonical_dumps
from .template_hash import template_hash, value_fingerprint

__all__ = [
    "CanonicalJsonTypeError",
    "canonical_dumps",
    "template_hash",
    "value_fingerprint",
]
