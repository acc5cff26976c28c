"""Generic CRUD gateway over every registered entity type."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from app.audit import AuditTrail, MutationResult, RequestContext
from app.errors import (
    AdminError,
    OperationNotSupported,
    RecordNotFound,
    ReferenceIntegrityError,
    ValidationError,
)
from app.model_registry import SYSTEM_FIELDS, EntityType, ModelRegistry
from app.records_validation import ValidationMode, is_uuid, validate_record_payload
from app.references import check_references
from app.schema import COMMON_LABEL_FIELDS, label_fields, record_label
from app.shards import InventoryShardAdapter, ShardResolver
from app.stores import RecordQuery, pagination, run_store


logger = logging.getLogger("tingle.admin")

MAX_PAGE_SIZE = 5000
DEFAULT_PAGE_SIZE = 50


def _clamp_page(page: Any, page_size: Any) -> tuple[int, int]:
    try:
        page = int(page)
    except (TypeError, ValueError):
        page = 1
    try:
        page_size = int(page_size)
    except (TypeError, ValueError):
        page_size = DEFAULT_PAGE_SIZE
    return max(page, 1), min(max(page_size, 1), MAX_PAGE_SIZE)


def _failure_errors(exc: AdminError) -> Dict[str, str]:
    field_errors = getattr(exc, "field_errors", None)
    if field_errors:
        return dict(field_errors)
    return {exc.path or "_record": exc.message}


class AdminGateway:
    def __init__(self, registry: ModelRegistry, records, audit: AuditTrail, resolver: ShardResolver) -> None:
        self.registry = registry
        self.records = records
        self.audit = audit
        self.inventory = InventoryShardAdapter(registry, records, resolver, audit, self.check_refs)

    # -- helpers -----------------------------------------------------------

    def _collection(self, entity_type: EntityType):
        return self.records.collection(entity_type.name)

    async def _target_exists(self, target: str, record_id: str) -> bool:
        entity_type = self.registry.get(target)
        if entity_type is None or entity_type.sharded:
            return False
        found = await run_store(self._collection(entity_type).find_by_id, record_id)
        return found is not None

    async def check_refs(self, entity_type: EntityType, data: dict) -> Dict[str, str]:
        return await check_references(self.registry, data, entity_type, self._target_exists)

    async def _load(self, entity_type: EntityType, record_id: str) -> dict:
        record = None
        if isinstance(record_id, str) and record_id:
            record = await run_store(self._collection(entity_type).find_by_id, record_id)
        if record is None:
            raise RecordNotFound(entity_type.name, record_id=record_id)
        return record

    async def _audit(self, ctx: RequestContext, action: str, entity_type: EntityType, record_id: str, before: dict | None, after: dict | None) -> None:
        label = record_label(entity_type, after if after is not None else before)
        await run_store(self.audit.record, ctx, action, entity_type.name, record_id, label, before, after)

    def _not_addressable(self, entity_type: EntityType, operation: str) -> OperationNotSupported:
        return OperationNotSupported(
            f"{entity_type.name} items can only be changed through their owner",
            path="id",
            detail={"model": entity_type.name, "operation": operation},
        )

    # -- reads -------------------------------------------------------------

    async def list(
        self,
        entity: str,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
        q: str | None = None,
        sort_field: str | None = None,
        sort_dir: str | None = None,
    ) -> dict:
        entity_type = self.registry.resolve(entity)
        page, page_size = _clamp_page(page, page_size)
        if entity_type.sharded:
            return await self.inventory.list(page, page_size, q)

        errors: Dict[str, str] = {}
        if sort_field and sort_field != "id" and not entity_type.has_field(sort_field):
            errors["sort"] = f"Unknown sort field: {sort_field}"
        direction = (sort_dir or "asc").lower()
        if direction not in ("asc", "desc"):
            errors["order"] = "order must be 'asc' or 'desc'"
        if errors:
            raise ValidationError(errors)
        if not sort_field:
            labels = label_fields(entity_type)
            sort_field = labels[0] if labels else "id"

        query = RecordQuery(
            text=q,
            text_fields=[f for f in COMMON_LABEL_FIELDS if entity_type.has_field(f)],
            sort_field=sort_field,
            sort_desc=direction == "desc",
            skip=(page - 1) * page_size,
            limit=page_size,
        )
        coll = self._collection(entity_type)
        records = await run_store(coll.find, query)
        total = await run_store(coll.count_documents, query)
        return {"model": entity_type.name, "records": records, "pagination": pagination(page, page_size, total)}

    async def get(self, entity: str, record_id: str) -> dict:
        entity_type = self.registry.resolve(entity)
        if entity_type.sharded:
            return await self.inventory.get(record_id)
        return await self._load(entity_type, record_id)

    # -- writes ------------------------------------------------------------

    async def _insert(self, entity_type: EntityType, payload: Any, ctx: RequestContext, action: str) -> MutationResult:
        result = validate_record_payload(entity_type, payload, ValidationMode.CREATE)
        if not result.ok:
            raise ValidationError(result.field_errors)
        ref_errors = await self.check_refs(entity_type, result.data)
        if ref_errors:
            raise ReferenceIntegrityError(ref_errors)
        created = await run_store(self._collection(entity_type).insert, result.data)
        await self._audit(ctx, action, entity_type, created["id"], None, created)
        logger.info("record_created model=%s id=%s action=%s", entity_type.name, created["id"], action)
        return MutationResult(created, result.warnings)

    async def _insert_item(self, payload: Any, ctx: RequestContext, action: str) -> MutationResult:
        owner_id = payload.get("characterId") if isinstance(payload, dict) else None
        if not isinstance(owner_id, str) or not is_uuid(owner_id):
            raise ValidationError({"characterId": "characterId must reference the owning character"})
        return await self.inventory.create_item(owner_id, payload, ctx, action=action)

    async def create(self, entity: str, payload: Any, ctx: RequestContext) -> MutationResult:
        entity_type = self.registry.resolve(entity)
        if entity_type.sharded:
            return await self._insert_item(payload, ctx, "CREATE")
        return await self._insert(entity_type, payload, ctx, "CREATE")

    async def update(self, entity: str, record_id: str, patch: Any, ctx: RequestContext) -> MutationResult:
        entity_type = self.registry.resolve(entity)
        if entity_type.sharded:
            raise self._not_addressable(entity_type, "update")
        before = await self._load(entity_type, record_id)
        result = validate_record_payload(entity_type, patch, ValidationMode.PARTIAL_UPDATE)
        if not result.ok:
            raise ValidationError(result.field_errors)
        ref_errors = await self.check_refs(entity_type, result.data)
        if ref_errors:
            raise ReferenceIntegrityError(ref_errors)
        after = before
        if result.data:
            after = await run_store(self._collection(entity_type).update_by_id, record_id, result.data)
            if after is None:
                raise RecordNotFound(entity_type.name, record_id=record_id)
        await self._audit(ctx, "UPDATE", entity_type, record_id, before, after)
        logger.info("record_updated model=%s id=%s fields=%s", entity_type.name, record_id, sorted(result.data))
        return MutationResult(after, result.warnings)

    async def delete(self, entity: str, record_id: str, ctx: RequestContext) -> MutationResult:
        entity_type = self.registry.resolve(entity)
        if entity_type.sharded:
            raise self._not_addressable(entity_type, "delete")
        before = await self._load(entity_type, record_id)
        if not await run_store(self._collection(entity_type).delete_by_id, record_id):
            raise RecordNotFound(entity_type.name, record_id=record_id)
        await self._audit(ctx, "DELETE", entity_type, record_id, before, None)
        logger.info("record_deleted model=%s id=%s", entity_type.name, record_id)
        return MutationResult(before)

    async def bulk_delete(self, entity: str, ids: Any, ctx: RequestContext) -> dict:
        entity_type = self.registry.resolve(entity)
        if entity_type.sharded:
            raise self._not_addressable(entity_type, "bulk_delete")
        if not isinstance(ids, list) or not ids:
            raise ValidationError({"ids": "ids must be a non-empty list"})
        if not all(isinstance(i, str) and i for i in ids):
            raise ValidationError({"ids": "ids must be strings"})
        unique = list(dict.fromkeys(ids))

        coll = self._collection(entity_type)
        found = {r["id"]: r for r in await run_store(coll.find_by_ids, unique)}
        missing = [i for i in unique if i not in found]
        if missing:
            raise RecordNotFound(entity_type.name, missing_ids=missing)

        # Records removed between the check and the delete are skipped.
        deleted: List[str] = []
        for record_id in unique:
            if not await run_store(coll.delete_by_id, record_id):
                logger.warning("bulk_delete_vanished model=%s id=%s", entity_type.name, record_id)
                continue
            await self._audit(ctx, "BULK_DELETE", entity_type, record_id, found[record_id], None)
            deleted.append(record_id)
        logger.info("records_bulk_deleted model=%s count=%s", entity_type.name, len(deleted))
        return {"deleted": len(deleted), "ids": deleted}

    async def import_records(self, entity: str, payloads: Any, ctx: RequestContext) -> dict:
        entity_type = self.registry.resolve(entity)
        if not isinstance(payloads, list):
            raise ValidationError({"records": "records must be a list"})

        ids: List[str] = []
        failures: List[dict] = []
        for index, payload in enumerate(payloads):
            if isinstance(payload, dict):
                payload = {k: v for k, v in payload.items() if k not in SYSTEM_FIELDS}
            try:
                if entity_type.sharded:
                    result = await self._insert_item(payload, ctx, "IMPORT")
                else:
                    result = await self._insert(entity_type, payload, ctx, "IMPORT")
            except (ValidationError, ReferenceIntegrityError, RecordNotFound) as exc:
                failures.append({"index": index, "errors": _failure_errors(exc)})
                continue
            ids.append(result.record["id"])
        logger.info("records_imported model=%s imported=%s failed=%s", entity_type.name, len(ids), len(failures))
        return {"imported": len(ids), "failed": len(failures), "failures": failures, "ids": ids}
