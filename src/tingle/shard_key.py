"""Owner shard key normalization."""

from __future__ import annotations


def normalize_owner_key(owner_name: str) -> str:
    """Map a raw owner display name to its shard key (trim + case-fold).

    ``"Zelda"``, ``" zelda "`` and ``"ZELDA"`` all map to ``"zelda"``.
    """
    if not isinstance(owner_name, str):
        raise TypeError("owner name must be a string")
    key = owner_name.strip().casefold()
    if not key:
        raise ValueError("owner name is empty")
    return key
