"""Registry of administrable entity types and their field metadata."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from app.errors import ModelNotFound, StoreUnavailable


IDENTITY_FIELDS = ("id", "_id")
VERSION_FIELDS = ("_v", "__v")
SYSTEM_FIELDS = IDENTITY_FIELDS + VERSION_FIELDS


class FieldKind(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    IDENTIFIER = "identifier"
    ARRAY = "array"
    OBJECT = "object"
    ANY = "any"


class StorageStrategy(str, Enum):
    SHARED = "shared"
    PER_OWNER_SHARD = "per_owner_shard"


_MISSING = object()


@dataclass(frozen=True)
class FieldDescriptor:
    name: str
    kind: FieldKind
    required: bool = False
    default: Any = _MISSING
    enum: Optional[Tuple[Any, ...]] = None
    ref: Optional[str] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    description: Optional[str] = None

    @property
    def has_default(self) -> bool:
        return self.default is not _MISSING

    def default_value(self) -> Any:
        if not self.has_default:
            return None
        if callable(self.default):
            return self.default()
        return self.default


def F(name: str, kind: str | FieldKind, **opts: Any) -> FieldDescriptor:
    """Shorthand used by the catalog to declare a field."""
    enum = opts.pop("enum", None)
    if enum is not None:
        opts["enum"] = tuple(enum)
    return FieldDescriptor(name=name, kind=FieldKind(kind), **opts)


@dataclass(frozen=True)
class EntityType:
    name: str
    fields: Tuple[FieldDescriptor, ...]
    storage: StorageStrategy = StorageStrategy.SHARED
    label: Optional[str] = None
    create_exempt: Tuple[str, ...] = ()
    label_fields: Optional[Tuple[str, ...]] = None
    _by_name: Dict[str, FieldDescriptor] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        seen: Dict[str, FieldDescriptor] = {}
        for desc in self.fields:
            if desc.name in seen:
                raise ValueError(f"duplicate field {desc.name!r} on {self.name}")
            seen[desc.name] = desc
        for name in self.create_exempt:
            if name not in seen:
                raise ValueError(f"exempt field {name!r} not declared on {self.name}")
        self._by_name.update(seen)

    @property
    def sharded(self) -> bool:
        return self.storage == StorageStrategy.PER_OWNER_SHARD

    def get_field(self, name: str) -> FieldDescriptor | None:
        return self._by_name.get(name)

    def has_field(self, name: str) -> bool:
        return name in self._by_name


class ModelRegistry:
    def __init__(self, shard_connected: Callable[[], bool] | None = None) -> None:
        self._types: Dict[str, EntityType] = {}
        self._frozen = False
        self._shard_connected = shard_connected

    def register(self, entity_type: EntityType) -> EntityType:
        if self._frozen:
            raise RuntimeError("model registry is frozen")
        if entity_type.name in self._types:
            raise ValueError(f"model already registered: {entity_type.name}")
        self._types[entity_type.name] = entity_type
        return entity_type

    def freeze(self) -> None:
        self._frozen = True

    def get(self, name: str) -> EntityType | None:
        if not isinstance(name, str):
            return None
        found = self._types.get(name)
        if found is not None:
            return found
        folded = name.strip().casefold()
        for key, entity_type in self._types.items():
            if key.casefold() == folded:
                return entity_type
        return None

    def resolve(self, name: str) -> EntityType:
        entity_type = self.get(name)
        if entity_type is None:
            raise ModelNotFound(name)
        if entity_type.sharded:
            probe = self._shard_connected
            if probe is None or not probe():
                raise StoreUnavailable(
                    f"{entity_type.name} store is not connected",
                    path="model",
                    detail={"model": entity_type.name},
                )
        return entity_type

    def names(self) -> list[str]:
        return sorted(self._types.keys())

    def describe(self) -> list[dict]:
        return [
            {
                "name": et.name,
                "label": et.label or et.name,
                "storage": et.storage.value,
                "field_count": len(et.fields),
            }
            for et in (self._types[n] for n in self.names())
        ]

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.get(name) is not None

    def __len__(self) -> int:
        return len(self._types)
