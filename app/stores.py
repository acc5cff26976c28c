"""In-memory record, shard and audit stores."""

from __future__ import annotations

import copy
import functools
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Tuple, TypeVar

import anyio

T = TypeVar("T")


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


async def run_store(fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking store call on a worker thread."""
    return await anyio.to_thread.run_sync(functools.partial(fn, *args, **kwargs))


@dataclass
class RecordQuery:
    text: str | None = None
    text_fields: List[str] = field(default_factory=list)
    sort_field: str | None = None
    sort_desc: bool = False
    skip: int = 0
    limit: int | None = None


def pagination(page: int, limit: int, total: int) -> dict:
    pages = (total + limit - 1) // limit if limit > 0 else 0
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": pages,
        "has_next": page < pages,
        "has_prev": page > 1,
    }


def _sort_key(value: Any) -> tuple:
    if value is None:
        return (1, 0, "")
    if isinstance(value, bool):
        return (0, 0, float(value))
    if isinstance(value, (int, float)):
        return (0, 0, float(value))
    if isinstance(value, str):
        return (0, 1, value.casefold())
    return (0, 2, repr(value))


def matches_text(record: dict, text: str | None, text_fields: Iterable[str]) -> bool:
    fields = list(text_fields)
    if not text or not fields:
        return True
    needle = text.strip().casefold()
    if not needle:
        return True
    for field_id in fields:
        value = record.get(field_id)
        if isinstance(value, str) and needle in value.casefold():
            return True
    return False


def apply_query(records: List[dict], query: RecordQuery | None) -> List[dict]:
    query = query or RecordQuery()
    items = [r for r in records if matches_text(r, query.text, query.text_fields)]
    if query.sort_field:
        # Records missing the sort field go last in both directions.
        present = [r for r in items if r.get(query.sort_field) is not None]
        missing = [r for r in items if r.get(query.sort_field) is None]
        present.sort(key=lambda r: (_sort_key(r.get(query.sort_field)), str(r.get("id"))), reverse=query.sort_desc)
        items = present + missing
    skip = max(query.skip, 0)
    if query.limit is not None:
        return items[skip : skip + max(query.limit, 0)]
    return items[skip:]


class MemoryCollection:
    """One physical collection of JSON records keyed by a generated id."""

    def __init__(self, name: str, on_first_write=None) -> None:
        self.name = name
        self._records: Dict[str, dict] = {}
        self._lock = threading.Lock()
        self._on_first_write = on_first_write

    def find(self, query: RecordQuery | None = None) -> list[dict]:
        with self._lock:
            items = list(self._records.values())
        return [copy.deepcopy(r) for r in apply_query(items, query)]

    def count_documents(self, query: RecordQuery | None = None) -> int:
        query = query or RecordQuery()
        with self._lock:
            return sum(1 for r in self._records.values() if matches_text(r, query.text, query.text_fields))

    def find_by_id(self, record_id: str) -> dict | None:
        with self._lock:
            record = self._records.get(record_id)
            return copy.deepcopy(record) if record else None

    def find_by_ids(self, record_ids: Iterable[str]) -> list[dict]:
        with self._lock:
            return [copy.deepcopy(self._records[rid]) for rid in record_ids if rid in self._records]

    def insert(self, data: dict) -> dict:
        record = copy.deepcopy(data)
        record["id"] = str(uuid.uuid4())
        record["_v"] = 0
        with self._lock:
            first = not self._records
            self._records[record["id"]] = record
        if first and self._on_first_write is not None:
            self._on_first_write(self.name)
        return copy.deepcopy(record)

    def update_by_id(self, record_id: str, changes: dict) -> dict | None:
        with self._lock:
            record = self._records.get(record_id)
            if record is None:
                return None
            record.update(copy.deepcopy(changes))
            record["id"] = record_id
            record["_v"] = int(record.get("_v", 0)) + 1
            return copy.deepcopy(record)

    def delete_by_id(self, record_id: str) -> bool:
        with self._lock:
            return self._records.pop(record_id, None) is not None


class MemoryRecordStore:
    """Shared collections, one per entity type."""

    def __init__(self) -> None:
        self._collections: Dict[str, MemoryCollection] = {}
        self._lock = threading.Lock()

    def collection(self, entity: str) -> MemoryCollection:
        with self._lock:
            coll = self._collections.get(entity)
            if coll is None:
                coll = MemoryCollection(entity)
                self._collections[entity] = coll
            return coll


class MemoryShardedStore:
    """Logical store that opens or creates named sub-collections."""

    def __init__(self, connected: bool = True) -> None:
        self._collections: Dict[str, MemoryCollection] = {}
        self._created: Dict[str, str] = {}
        self._lock = threading.Lock()
        self.connected = connected
        self.opened = 0

    def is_connected(self) -> bool:
        return self.connected

    def connect(self) -> bool:
        return self.connected

    def _mark_created(self, name: str) -> None:
        with self._lock:
            self._created.setdefault(name, _now())

    def open_collection(self, name: str) -> MemoryCollection:
        with self._lock:
            coll = self._collections.get(name)
            if coll is None:
                coll = MemoryCollection(name, on_first_write=self._mark_created)
                self._collections[name] = coll
                self.opened += 1
            return coll

    def list_collections(self) -> list[str]:
        with self._lock:
            return sorted(self._created.keys())

    def collection_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for name in self.list_collections():
            counts[name] = self.open_collection(name).count_documents()
        return counts


def _parse_ts(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def audit_entry_matches(entry: dict, filters: dict) -> bool:
    actor = filters.get("actor")
    if actor:
        who = entry.get("actor") or {}
        needle = str(actor).casefold()
        candidates = [who.get("id"), who.get("username"), who.get("discord_id")]
        if not any(isinstance(c, str) and c.casefold() == needle for c in candidates):
            return False
    if filters.get("entity") and entry.get("entity") != filters["entity"]:
        return False
    if filters.get("action") and entry.get("action") != str(filters["action"]).upper():
        return False
    if filters.get("record_id") and entry.get("record_id") != filters["record_id"]:
        return False
    ts = _parse_ts(entry.get("timestamp"))
    since = filters.get("since")
    until = filters.get("until")
    if since is not None and (ts is None or ts < since):
        return False
    if until is not None and (ts is None or ts > until):
        return False
    return True


class MemoryAuditStore:
    def __init__(self) -> None:
        self._entries: List[dict] = []
        self._lock = threading.Lock()

    def append(self, entry: dict) -> dict:
        item = copy.deepcopy(entry)
        with self._lock:
            self._entries.insert(0, item)
        return copy.deepcopy(item)

    def query(self, filters: dict | None = None, skip: int = 0, limit: int = 50) -> Tuple[list[dict], int]:
        filters = filters or {}
        with self._lock:
            matched = [e for e in self._entries if audit_entry_matches(e, filters)]
        page = matched[max(skip, 0) : max(skip, 0) + max(limit, 0)]
        return [copy.deepcopy(e) for e in page], len(matched)
