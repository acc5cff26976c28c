"""Append-only audit trail of admin mutations."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict

from app.errors import ServerError, ValidationError
from app.model_registry import ModelRegistry
from app.records_validation import parse_instant
from app.stores import pagination
from tingle import snapshot


logger = logging.getLogger("tingle.audit")

AUDIT_ACTIONS = ("CREATE", "UPDATE", "DELETE", "BULK_DELETE", "IMPORT")
MAX_AUDIT_PAGE_SIZE = 500


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class RequestContext:
    """Who is acting and where the request came from."""

    actor: Dict[str, Any]
    origin: Dict[str, Any] = field(default_factory=dict)

    def actor_summary(self) -> dict:
        return {
            "id": self.actor.get("id"),
            "username": self.actor.get("username"),
            "discord_id": self.actor.get("discord_id"),
        }


@dataclass
class MutationResult:
    record: dict | None
    warnings: list = field(default_factory=list)


class AuditTrail:
    def __init__(self, store, registry: ModelRegistry | None = None) -> None:
        self.store = store
        self.registry = registry

    def build_entry(
        self,
        ctx: RequestContext,
        action: str,
        entity: str,
        record_id: str | None,
        record_label: str | None,
        before: dict | None,
        after: dict | None,
    ) -> dict:
        if action not in AUDIT_ACTIONS:
            raise ValueError(f"unknown audit action: {action}")
        return {
            "id": str(uuid.uuid4()),
            "actor": ctx.actor_summary(),
            "action": action,
            "entity": entity,
            "record_id": record_id,
            "record_label": record_label,
            "before": snapshot(before),
            "after": snapshot(after),
            "timestamp": _now_iso(),
            "origin": dict(ctx.origin or {}),
        }

    def record(self, ctx: RequestContext, action: str, entity: str, record_id: str | None, record_label: str | None, before: dict | None, after: dict | None) -> dict:
        """Append one entry. The mutation already happened, so failures surface as server errors."""
        try:
            entry = self.build_entry(ctx, action, entity, record_id, record_label, before, after)
            saved = self.store.append(entry)
        except Exception as exc:
            logger.exception("audit_append_failed action=%s entity=%s record_id=%s", action, entity, record_id)
            raise ServerError("Audit entry could not be recorded", detail={"error": str(exc)}) from exc
        logger.info(
            "audit action=%s entity=%s record_id=%s label=%s actor=%s",
            action,
            entity,
            record_id,
            record_label,
            saved.get("actor", {}).get("username") or saved.get("actor", {}).get("id"),
        )
        return saved

    def query(self, filters: dict | None = None, page: int = 1, limit: int = 50) -> dict:
        filters = dict(filters or {})
        field_errors: Dict[str, str] = {}
        for key in ("since", "until"):
            raw = filters.get(key)
            if raw in (None, ""):
                filters.pop(key, None)
                continue
            parsed = parse_instant(raw)
            if parsed is None:
                field_errors[key] = f"{key} must be a valid date"
                continue
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            filters[key] = parsed
        entity = filters.get("entity")
        if entity and self.registry is not None:
            entity_type = self.registry.get(entity)
            if entity_type is not None:
                filters["entity"] = entity_type.name
        action = filters.get("action")
        if action and str(action).upper() not in AUDIT_ACTIONS:
            field_errors["action"] = f"action must be one of {list(AUDIT_ACTIONS)}"
        if field_errors:
            raise ValidationError(field_errors)
        page = max(int(page or 1), 1)
        limit = min(max(int(limit or 50), 1), MAX_AUDIT_PAGE_SIZE)
        items, total = self.store.query(filters, skip=(page - 1) * limit, limit=limit)
        return {"entries": items, "pagination": pagination(page, limit, total)}
