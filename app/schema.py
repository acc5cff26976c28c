"""Schema introspection for registered entity types."""

from __future__ import annotations

from typing import Any, List

from app.model_registry import SYSTEM_FIELDS, EntityType, FieldDescriptor


# Fields shown as a record's human label and searched by free text.
COMMON_LABEL_FIELDS = ("name", "title", "characterName", "itemName", "username", "displayName", "nameLabel")


def describe_fields(entity_type: EntityType) -> List[FieldDescriptor]:
    return [d for d in entity_type.fields if d.name not in SYSTEM_FIELDS]


def label_fields(entity_type: EntityType) -> List[str]:
    if entity_type.label_fields:
        return [f for f in entity_type.label_fields if entity_type.has_field(f)]
    return [f for f in COMMON_LABEL_FIELDS if entity_type.has_field(f)]


def record_label(entity_type: EntityType, record: dict | None) -> str | None:
    if not isinstance(record, dict):
        return None
    for field_id in label_fields(entity_type):
        value = record.get(field_id)
        if isinstance(value, str) and value.strip():
            return value
    record_id = record.get("id")
    return str(record_id) if record_id is not None else None


def _default_for_display(desc: FieldDescriptor) -> Any:
    if not desc.has_default or callable(desc.default):
        return None
    return desc.default


def describe_field(entity_type: EntityType, desc: FieldDescriptor) -> dict:
    item = {
        "name": desc.name,
        "type": desc.kind.value,
        "required": desc.required,
        "default": _default_for_display(desc),
        "has_default": desc.has_default,
        "enum": list(desc.enum) if desc.enum is not None else None,
        "ref": desc.ref,
        "exempt_on_create": desc.name in entity_type.create_exempt,
    }
    if desc.min_length is not None or desc.max_length is not None:
        item["min_length"] = desc.min_length
        item["max_length"] = desc.max_length
    if desc.minimum is not None or desc.maximum is not None:
        item["minimum"] = desc.minimum
        item["maximum"] = desc.maximum
    if desc.description:
        item["description"] = desc.description
    return item


def describe_schema(entity_type: EntityType) -> dict:
    """Payload for the read-only schema query used to build editor forms."""
    return {
        "model": entity_type.name,
        "label": entity_type.label or entity_type.name,
        "storage": entity_type.storage.value,
        "label_fields": label_fields(entity_type),
        "fields": [describe_field(entity_type, d) for d in describe_fields(entity_type)],
    }
