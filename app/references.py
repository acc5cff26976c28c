"""Point-in-time reference integrity checks for record payloads."""

from __future__ import annotations

from typing import Awaitable, Callable, Dict, List, Tuple

import anyio

from app.model_registry import EntityType, ModelRegistry
from app.records_validation import is_empty, is_uuid


# (target entity name, record id) -> does the target record exist
ReferenceLoader = Callable[[str, str], Awaitable[bool]]


def _reference_slots(payload: dict, entity_type: EntityType) -> List[Tuple[str, str, object]]:
    slots: List[Tuple[str, str, object]] = []
    for key, value in payload.items():
        desc = entity_type.get_field(key)
        if desc is None or not desc.ref or is_empty(value):
            continue
        if isinstance(value, list):
            for idx, item in enumerate(value):
                if not is_empty(item):
                    slots.append((f"{key}[{idx}]", desc.ref, item))
        else:
            slots.append((key, desc.ref, value))
    return slots


async def check_references(
    registry: ModelRegistry,
    payload: dict,
    entity_type: EntityType,
    loader: ReferenceLoader,
) -> Dict[str, str]:
    """Return field -> message for every reference whose target is missing."""
    slots = [s for s in _reference_slots(payload, entity_type) if registry.get(s[1]) is not None]
    if not slots:
        return {}

    found: Dict[Tuple[str, str], bool] = {}
    pending = {(target, value) for _, target, value in slots if isinstance(value, str) and is_uuid(value)}

    async def _lookup(target: str, value: str) -> None:
        found[(target, value)] = await loader(target, value)

    async with anyio.create_task_group() as tg:
        for target, value in pending:
            tg.start_soon(_lookup, target, value)

    errors: Dict[str, str] = {}
    for path, target, value in slots:
        exists = isinstance(value, str) and found.get((target, value), False)
        if not exists:
            errors[path] = f"{target} not found: {value}"
    return errors
