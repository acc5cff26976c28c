"""Record validation against registered field descriptors."""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Union

from app.model_registry import SYSTEM_FIELDS, EntityType, FieldDescriptor, FieldKind
from app.schema import describe_fields


JsonValue = Union[None, bool, int, float, str, List["JsonValue"], Dict[str, "JsonValue"]]


class ValidationMode(str, Enum):
    CREATE = "create"
    PARTIAL_UPDATE = "partial_update"


@dataclass
class ValidationResult:
    data: dict = field(default_factory=dict)
    field_errors: Dict[str, str] = field(default_factory=dict)
    warnings: List[dict] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.field_errors


def json_kind(value: Any) -> str:
    """Classify a value into the JSON variant it belongs to."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "map"
    return "unknown"


def is_json_value(value: Any) -> bool:
    kind = json_kind(value)
    if kind == "array":
        return all(is_json_value(v) for v in value)
    if kind == "map":
        return all(isinstance(k, str) and is_json_value(v) for k, v in value.items())
    if kind == "number":
        return math.isfinite(value)
    return kind != "unknown"


def is_uuid(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        uuid.UUID(value)
        return True
    except (ValueError, AttributeError):
        return False


def is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def parse_instant(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str) and value.strip():
        text = value.strip().replace("Z", "+00:00")
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            pass
        try:
            return datetime.combine(date.fromisoformat(text), datetime.min.time(), tzinfo=timezone.utc)
        except ValueError:
            return None
    return None


def _apply_defaults(descriptors: List[FieldDescriptor], data: dict) -> dict:
    updated = dict(data)
    for desc in descriptors:
        if not desc.has_default:
            continue
        if desc.name in updated and not is_empty(updated.get(desc.name)):
            continue
        updated[desc.name] = desc.default_value()
    return updated


def _check_number(desc: FieldDescriptor, val: Any) -> tuple[Any, str | None]:
    if isinstance(val, str):
        try:
            val = float(val.strip())
        except ValueError:
            return val, f"{desc.name} must be a number"
        if val.is_integer():
            val = int(val)
    if isinstance(val, bool) or not isinstance(val, (int, float)):
        return val, f"{desc.name} must be a number"
    if not math.isfinite(val):
        return val, f"{desc.name} must be a finite number"
    if desc.minimum is not None and val < desc.minimum:
        return val, f"{desc.name} must be >= {desc.minimum:g}"
    if desc.maximum is not None and val > desc.maximum:
        return val, f"{desc.name} must be <= {desc.maximum:g}"
    return val, None


def _check_string(desc: FieldDescriptor, val: Any) -> str | None:
    if not isinstance(val, str):
        return f"{desc.name} must be a string"
    if desc.min_length is not None and len(val) < desc.min_length:
        return f"{desc.name} must be at least {desc.min_length} characters"
    if desc.max_length is not None and len(val) > desc.max_length:
        return f"{desc.name} must be at most {desc.max_length} characters"
    return None


def _check_value(desc: FieldDescriptor, val: Any) -> tuple[Any, str | None]:
    """Return the (possibly coerced) value and an error message, if any."""
    kind = desc.kind
    if kind == FieldKind.STRING:
        return val, _check_string(desc, val)
    if kind == FieldKind.NUMBER:
        return _check_number(desc, val)
    if kind == FieldKind.BOOLEAN:
        if isinstance(val, bool):
            return val, None
        if val in ("true", "false"):
            return val == "true", None
        return val, f"{desc.name} must be a boolean"
    if kind == FieldKind.DATE:
        if parse_instant(val) is None:
            return val, f"{desc.name} must be a valid date"
        return val, None
    if kind == FieldKind.IDENTIFIER:
        if not is_uuid(val):
            return val, f"{desc.name} must be a valid id"
        return val, None
    if kind == FieldKind.ARRAY:
        if not isinstance(val, list):
            return val, f"{desc.name} must be an array"
        if not is_json_value(val):
            return val, f"{desc.name} must contain only JSON values"
        return val, None
    if kind == FieldKind.OBJECT:
        if not isinstance(val, dict):
            return val, f"{desc.name} must be an object"
        if not is_json_value(val):
            return val, f"{desc.name} must contain only JSON values"
        return val, None
    if not is_json_value(val):
        return val, f"{desc.name} must be a JSON value"
    return val, None


def _check_enum(desc: FieldDescriptor, val: Any) -> str | None:
    if desc.enum is None:
        return None
    allowed = list(desc.enum)
    if isinstance(val, list):
        bad = [v for v in val if v not in allowed]
        if bad:
            return f"{desc.name} contains values not in {allowed}: {bad}"
        return None
    if val not in allowed:
        return f"{desc.name} must be one of {allowed}"
    return None


def validate_record_payload(entity_type: EntityType, data: Any, mode: ValidationMode) -> ValidationResult:
    result = ValidationResult()
    if not isinstance(data, dict):
        result.field_errors["_payload"] = "Record data must be an object"
        return result

    descriptors = describe_fields(entity_type)
    by_name = {d.name: d for d in descriptors}
    clean: dict = {}
    for key, val in data.items():
        if key in SYSTEM_FIELDS:
            continue
        if key not in by_name:
            result.warnings.append(
                {"code": "UNKNOWN_FIELD", "message": f"Unknown field ignored: {key}", "path": key, "detail": None}
            )
            continue
        clean[key] = val

    if mode == ValidationMode.CREATE:
        clean = _apply_defaults(descriptors, clean)
        for desc in descriptors:
            if not desc.required or desc.has_default:
                continue
            if desc.name in entity_type.create_exempt:
                continue
            if is_empty(clean.get(desc.name)):
                result.field_errors[desc.name] = f"Missing required field: {desc.name}"

    for key, val in list(clean.items()):
        desc = by_name[key]
        if key in result.field_errors:
            continue
        if is_empty(val):
            if desc.required and mode == ValidationMode.PARTIAL_UPDATE:
                result.field_errors[key] = f"{key} is required and cannot be cleared"
            elif not desc.required:
                # Blank optional inputs clear the field.
                clean[key] = None
            continue
        coerced, error = _check_value(desc, val)
        if error is None:
            error = _check_enum(desc, coerced)
        if error:
            result.field_errors[key] = error
            continue
        clean[key] = coerced

    result.data = clean
    return result
