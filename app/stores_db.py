"""Postgres-backed record, shard and audit stores."""

from __future__ import annotations

import copy
import json
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Tuple

from app.db import execute, fetch_all, fetch_one, get_conn, init_pool, pool_ready
from app.stores import RecordQuery

logger = logging.getLogger("tingle.db")


SCHEMA_SQL = """
create table if not exists admin_records (
    id uuid primary key,
    entity text not null,
    data jsonb not null default '{}'::jsonb,
    version integer not null default 0,
    created_at timestamptz not null default now(),
    updated_at timestamptz not null default now()
);
create index if not exists admin_records_entity_idx on admin_records (entity);

create table if not exists inventory_shards (
    name text primary key,
    created_at timestamptz not null default now()
);

create table if not exists inventory_shard_items (
    id uuid primary key,
    shard text not null references inventory_shards (name),
    data jsonb not null default '{}'::jsonb,
    version integer not null default 0,
    created_at timestamptz not null default now(),
    updated_at timestamptz not null default now()
);
create index if not exists inventory_shard_items_shard_idx on inventory_shard_items (shard);

create table if not exists admin_audit_log (
    id uuid primary key,
    actor jsonb,
    action text not null,
    entity text not null,
    record_id text,
    record_label text,
    before jsonb,
    after jsonb,
    origin jsonb,
    created_at timestamptz not null default now()
);
create index if not exists admin_audit_log_record_idx on admin_audit_log (record_id);
create index if not exists admin_audit_log_created_idx on admin_audit_log (created_at desc);
"""


def ensure_schema() -> None:
    with get_conn() as conn:
        execute(conn, SCHEMA_SQL, query_name="schema.ensure")


def _json_dumps(value: object) -> str:
    return json.dumps(value, default=str)


def _valid_id(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
        return True
    except ValueError:
        return False


def _like_escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _row_to_record(row: dict) -> dict:
    data = row.get("data") or {}
    if isinstance(data, str):
        data = json.loads(data)
    record = copy.deepcopy(data)
    record["id"] = str(row.get("id"))
    record["_v"] = int(row.get("version") or 0)
    return record


class DbCollection:
    """Records of one scope (entity name or shard name) in a jsonb table."""

    def __init__(self, table: str, scope_column: str, scope: str) -> None:
        self.table = table
        self.scope_column = scope_column
        self.scope = scope
        self.name = scope

    def _where(self, query: RecordQuery | None) -> Tuple[str, list]:
        where = f"where {self.scope_column}=%s"
        params: list = [self.scope]
        if query and query.text and query.text.strip() and query.text_fields:
            needle = f"%{_like_escape(query.text.strip().lower())}%"
            clauses = []
            for field_id in query.text_fields:
                clauses.append("lower(data ->> %s) like %s")
                params.extend([field_id, needle])
            where += " and (" + " or ".join(clauses) + ")"
        return where, params

    def find(self, query: RecordQuery | None = None) -> list[dict]:
        query = query or RecordQuery()
        where, params = self._where(query)
        order = "order by created_at, id"
        direction = "desc" if query.sort_desc else "asc"
        if query.sort_field == "id":
            order = f"order by id {direction}"
        elif query.sort_field:
            order = f"order by (data -> %s) is null, data -> %s {direction}, id"
            params.extend([query.sort_field, query.sort_field])
        sql = f"select id, data, version from {self.table} {where} {order}"
        if query.limit is not None:
            sql += " limit %s"
            params.append(max(query.limit, 0))
        sql += " offset %s"
        params.append(max(query.skip, 0))
        with get_conn() as conn:
            rows = fetch_all(conn, sql, params, query_name=f"{self.table}.find")
        return [_row_to_record(r) for r in rows]

    def count_documents(self, query: RecordQuery | None = None) -> int:
        where, params = self._where(query)
        with get_conn() as conn:
            row = fetch_one(conn, f"select count(*) as n from {self.table} {where}", params, query_name=f"{self.table}.count")
        return int((row or {}).get("n") or 0)

    def find_by_id(self, record_id: str) -> dict | None:
        if not _valid_id(record_id):
            return None
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"select id, data, version from {self.table} where {self.scope_column}=%s and id=%s",
                [self.scope, record_id],
                query_name=f"{self.table}.find_by_id",
            )
        return _row_to_record(row) if row else None

    def find_by_ids(self, record_ids: Iterable[str]) -> list[dict]:
        ids = [rid for rid in record_ids if _valid_id(rid)]
        if not ids:
            return []
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                f"select id, data, version from {self.table} where {self.scope_column}=%s and id::text = any(%s)",
                [self.scope, ids],
                query_name=f"{self.table}.find_by_ids",
            )
        return [_row_to_record(r) for r in rows]

    def _before_insert(self, conn) -> None:
        return None

    def insert(self, data: dict) -> dict:
        record_id = str(uuid.uuid4())
        payload = {k: v for k, v in data.items() if k not in ("id", "_v")}
        with get_conn() as conn:
            self._before_insert(conn)
            row = fetch_one(
                conn,
                f"""
                insert into {self.table} (id, {self.scope_column}, data, version)
                values (%s, %s, %s::jsonb, 0)
                returning id, data, version
                """,
                [record_id, self.scope, _json_dumps(payload)],
                query_name=f"{self.table}.insert",
            )
        return _row_to_record(row)

    def update_by_id(self, record_id: str, changes: dict) -> dict | None:
        if not _valid_id(record_id):
            return None
        payload = {k: v for k, v in changes.items() if k not in ("id", "_v")}
        with get_conn() as conn:
            row = fetch_one(
                conn,
                f"""
                update {self.table}
                set data = data || %s::jsonb, version = version + 1, updated_at = now()
                where {self.scope_column}=%s and id=%s
                returning id, data, version
                """,
                [_json_dumps(payload), self.scope, record_id],
                query_name=f"{self.table}.update",
            )
        return _row_to_record(row) if row else None

    def delete_by_id(self, record_id: str) -> bool:
        if not _valid_id(record_id):
            return False
        with get_conn() as conn:
            count = execute(
                conn,
                f"delete from {self.table} where {self.scope_column}=%s and id=%s",
                [self.scope, record_id],
                query_name=f"{self.table}.delete",
            )
        return count > 0


class DbShardCollection(DbCollection):
    def __init__(self, shard: str) -> None:
        super().__init__("inventory_shard_items", "shard", shard)

    def _before_insert(self, conn) -> None:
        execute(
            conn,
            "insert into inventory_shards (name) values (%s) on conflict (name) do nothing",
            [self.scope],
            query_name="inventory_shards.ensure",
        )


class DbRecordStore:
    def collection(self, entity: str) -> DbCollection:
        return DbCollection("admin_records", "entity", entity)


class DbShardedStore:
    def is_connected(self) -> bool:
        return pool_ready()

    def connect(self) -> bool:
        """Open the pool if needed. Blocks on the network, so call it off the event loop."""
        if pool_ready():
            return True
        try:
            init_pool()
        except Exception as exc:
            logger.warning("shard_store_unavailable error=%s", exc)
            return False
        return True

    def open_collection(self, name: str) -> DbShardCollection:
        return DbShardCollection(name)

    def list_collections(self) -> list[str]:
        with get_conn() as conn:
            rows = fetch_all(conn, "select name from inventory_shards order by name", query_name="inventory_shards.list")
        return [r["name"] for r in rows]

    def collection_counts(self) -> Dict[str, int]:
        with get_conn() as conn:
            rows = fetch_all(
                conn,
                """
                select s.name, count(i.id) as n
                from inventory_shards s
                left join inventory_shard_items i on i.shard = s.name
                group by s.name
                order by s.name
                """,
                query_name="inventory_shards.counts",
            )
        return {r["name"]: int(r["n"] or 0) for r in rows}


def _audit_row(row: dict) -> dict:
    created = row.get("created_at")
    if isinstance(created, datetime):
        created = created.isoformat().replace("+00:00", "Z")
    return {
        "id": str(row.get("id")),
        "actor": row.get("actor"),
        "action": row.get("action"),
        "entity": row.get("entity"),
        "record_id": row.get("record_id"),
        "record_label": row.get("record_label"),
        "before": row.get("before"),
        "after": row.get("after"),
        "origin": row.get("origin"),
        "timestamp": created,
    }


class DbAuditStore:
    def append(self, entry: dict) -> dict:
        with get_conn() as conn:
            row = fetch_one(
                conn,
                """
                insert into admin_audit_log
                    (id, actor, action, entity, record_id, record_label, before, after, origin, created_at)
                values (%s, %s::jsonb, %s, %s, %s, %s, %s::jsonb, %s::jsonb, %s::jsonb, %s)
                returning *
                """,
                [
                    entry["id"],
                    _json_dumps(entry.get("actor")),
                    entry["action"],
                    entry["entity"],
                    entry.get("record_id"),
                    entry.get("record_label"),
                    _json_dumps(entry.get("before")),
                    _json_dumps(entry.get("after")),
                    _json_dumps(entry.get("origin")),
                    entry["timestamp"],
                ],
                query_name="admin_audit_log.append",
            )
        return _audit_row(row)

    def query(self, filters: dict | None = None, skip: int = 0, limit: int = 50) -> Tuple[List[dict], int]:
        filters = filters or {}
        clauses: list[str] = []
        params: list = []
        if filters.get("actor"):
            clauses.append(
                "(lower(actor ->> 'id') = %s or lower(actor ->> 'username') = %s or lower(actor ->> 'discord_id') = %s)"
            )
            needle = str(filters["actor"]).lower()
            params.extend([needle, needle, needle])
        if filters.get("entity"):
            clauses.append("entity = %s")
            params.append(filters["entity"])
        if filters.get("action"):
            clauses.append("action = %s")
            params.append(str(filters["action"]).upper())
        if filters.get("record_id"):
            clauses.append("record_id = %s")
            params.append(filters["record_id"])
        if filters.get("since") is not None:
            clauses.append("created_at >= %s")
            params.append(filters["since"])
        if filters.get("until") is not None:
            clauses.append("created_at <= %s")
            params.append(filters["until"])
        where = ("where " + " and ".join(clauses)) if clauses else ""
        with get_conn() as conn:
            total_row = fetch_one(conn, f"select count(*) as n from admin_audit_log {where}", params, query_name="admin_audit_log.count")
            rows = fetch_all(
                conn,
                f"select * from admin_audit_log {where} order by created_at desc, id desc limit %s offset %s",
                params + [max(limit, 0), max(skip, 0)],
                query_name="admin_audit_log.query",
            )
        return [_audit_row(r) for r in rows], int((total_row or {}).get("n") or 0)
