"""Per-owner inventory shards served through the generic admin surface."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Dict, List, Tuple

from app.audit import AuditTrail, MutationResult, RequestContext
from app.cache import TtlCache
from app.catalog import INVENTORY_MODEL, OWNER_MODELS
from app.errors import RecordNotFound, ReferenceIntegrityError, ValidationError
from app.model_registry import EntityType, ModelRegistry
from app.records_validation import ValidationMode, is_uuid, validate_record_payload
from app.stores import RecordQuery, pagination, run_store
from tingle import normalize_owner_key


logger = logging.getLogger("tingle.shards")

ReferenceCheck = Callable[[EntityType, dict], Awaitable[Dict[str, str]]]


class ShardResolver:
    """Maps owner display names to shard handles, keeping a bounded handle cache."""

    def __init__(self, store, max_handles: int = 256, cache: TtlCache | None = None) -> None:
        self.store = store
        self._handles: TtlCache = cache if cache is not None else TtlCache(float("inf"), max_entries=max_handles)

    @staticmethod
    def key(owner_name: str) -> str:
        return normalize_owner_key(owner_name)

    def is_connected(self) -> bool:
        return bool(self.store.is_connected())

    def connect(self) -> bool:
        return bool(self.store.connect())

    def handle(self, owner_name: str):
        shard_key = self.key(owner_name)
        handle = self._handles.get(shard_key)
        if handle is None:
            handle = self.store.open_collection(shard_key)
            self._handles.set(shard_key, handle)
            logger.debug("shard_opened key=%s", shard_key)
        return handle

    def known_shards(self) -> Dict[str, int]:
        return dict(self.store.collection_counts())

    def cached_handles(self) -> int:
        return len(self._handles)


def _owner_summary(model: str, record: dict) -> dict:
    return {
        "owner_id": record.get("id"),
        "owner_model": model,
        "display_name": record.get("name"),
        "icon": record.get("icon"),
    }


class InventoryShardAdapter:
    def __init__(
        self,
        registry: ModelRegistry,
        records,
        resolver: ShardResolver,
        audit: AuditTrail,
        check_refs: ReferenceCheck,
    ) -> None:
        self.registry = registry
        self.records = records
        self.resolver = resolver
        self.audit = audit
        self.check_refs = check_refs

    def _require_store(self) -> EntityType:
        return self.registry.resolve(INVENTORY_MODEL)

    def _owner_collections(self) -> List[Tuple[str, object]]:
        out = []
        for name in OWNER_MODELS:
            entity_type = self.registry.get(name)
            if entity_type is not None:
                out.append((entity_type.name, self.records.collection(entity_type.name)))
        return out

    async def owner(self, owner_id: str) -> Tuple[str, dict]:
        if is_uuid(owner_id):
            for model, coll in self._owner_collections():
                record = await run_store(coll.find_by_id, owner_id)
                if record is not None:
                    return model, record
        raise RecordNotFound(OWNER_MODELS[0], record_id=owner_id)

    async def _owner_index(self) -> Dict[str, dict]:
        index: Dict[str, dict] = {}
        for model, coll in self._owner_collections():
            for record in await run_store(coll.find, None):
                name = record.get("name")
                if not isinstance(name, str) or not name.strip():
                    continue
                # Character wins over ModCharacter on a name clash.
                index.setdefault(normalize_owner_key(name), _owner_summary(model, record))
        return index

    async def list(self, page: int = 1, page_size: int = 50, q: str | None = None) -> dict:
        self._require_store()
        counts = await run_store(self.resolver.known_shards)
        owners = await self._owner_index()
        entries = []
        for shard_key, count in counts.items():
            if count <= 0:
                continue
            owner = owners.get(shard_key)
            entry = dict(owner) if owner else {"owner_id": None, "owner_model": None, "display_name": shard_key, "icon": None}
            entry["shard"] = shard_key
            entry["item_count"] = count
            entries.append(entry)
        needle = (q or "").strip().casefold()
        if needle:
            entries = [e for e in entries if needle in str(e["display_name"]).casefold()]
        entries.sort(key=lambda e: (str(e["display_name"]).casefold(), e["shard"]))
        total = len(entries)
        start = (page - 1) * page_size
        return {
            "model": INVENTORY_MODEL,
            "records": entries[start : start + page_size],
            "pagination": pagination(page, page_size, total),
        }

    async def get(self, owner_id: str) -> dict:
        self._require_store()
        model, owner, handle = await self._shard_for(owner_id)
        items = await run_store(handle.find, RecordQuery(sort_field="itemName"))
        summary = _owner_summary(model, owner)
        summary["shard"] = self.resolver.key(owner["name"])
        summary["items"] = items
        summary["item_count"] = len(items)
        return summary

    def _label(self, owner: dict, item: dict | None) -> str:
        item_name = (item or {}).get("itemName") or (item or {}).get("id")
        return f"{owner.get('name')}: {item_name}"

    async def _shard_for(self, owner_id: str) -> Tuple[str, dict, object]:
        model, owner = await self.owner(owner_id)
        name = owner.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ValidationError({"characterId": "Owner has no name to derive an inventory from"})
        return model, owner, self.resolver.handle(name)

    async def create_item(self, owner_id: str, payload: dict, ctx: RequestContext, action: str = "CREATE") -> MutationResult:
        entity_type = self._require_store()
        if not isinstance(payload, dict):
            raise ValidationError({"_payload": "Record data must be an object"})
        _, owner, handle = await self._shard_for(owner_id)
        data = dict(payload)
        data["characterId"] = owner["id"]
        result = validate_record_payload(entity_type, data, ValidationMode.CREATE)
        if not result.ok:
            raise ValidationError(result.field_errors)
        ref_errors = await self.check_refs(entity_type, result.data)
        if ref_errors:
            raise ReferenceIntegrityError(ref_errors)
        created = await run_store(handle.insert, result.data)
        await run_store(self.audit.record, ctx, action, INVENTORY_MODEL, created["id"], self._label(owner, created), None, created)
        logger.info("inventory_item_created owner=%s item_id=%s action=%s", owner["id"], created["id"], action)
        return MutationResult(created, result.warnings)

    async def update_item(self, owner_id: str, item_id: str, patch: dict, ctx: RequestContext) -> MutationResult:
        entity_type = self._require_store()
        _, owner, handle = await self._shard_for(owner_id)
        before = await run_store(handle.find_by_id, item_id)
        if before is None:
            raise RecordNotFound(INVENTORY_MODEL, record_id=item_id)
        if isinstance(patch, dict) and "characterId" in patch and patch["characterId"] != owner["id"]:
            raise ValidationError({"characterId": "Items cannot be moved between owners; delete and re-create instead"})
        result = validate_record_payload(entity_type, patch, ValidationMode.PARTIAL_UPDATE)
        if not result.ok:
            raise ValidationError(result.field_errors)
        ref_errors = await self.check_refs(entity_type, result.data)
        if ref_errors:
            raise ReferenceIntegrityError(ref_errors)
        after = before
        if result.data:
            after = await run_store(handle.update_by_id, item_id, result.data)
            if after is None:
                raise RecordNotFound(INVENTORY_MODEL, record_id=item_id)
        await run_store(self.audit.record, ctx, "UPDATE", INVENTORY_MODEL, item_id, self._label(owner, after), before, after)
        return MutationResult(after, result.warnings)

    async def delete_item(self, owner_id: str, item_id: str, ctx: RequestContext) -> MutationResult:
        self._require_store()
        _, owner, handle = await self._shard_for(owner_id)
        before = await run_store(handle.find_by_id, item_id)
        if before is None:
            raise RecordNotFound(INVENTORY_MODEL, record_id=item_id)
        if not await run_store(handle.delete_by_id, item_id):
            raise RecordNotFound(INVENTORY_MODEL, record_id=item_id)
        await run_store(self.audit.record, ctx, "DELETE", INVENTORY_MODEL, item_id, self._label(owner, before), before, None)
        logger.info("inventory_item_deleted owner=%s item_id=%s", owner["id"], item_id)
        return MutationResult(before)
