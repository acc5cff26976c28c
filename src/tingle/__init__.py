"""Tinglebot admin kernel utilities."""

from .canonical_json import CanonicalJsonTypeError, snapshot
from .shard_key import normalize_owner_key

__all__ = [
    "CanonicalJsonTypeError",
    "normalize_owner_key",
    "snapshot",
]
