from __future__ import annotations

import logging
import os
import re
import time
from dataclasses import dataclass

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.audit import AuditTrail, MutationResult, RequestContext
from app.auth import AdminAuthMiddleware
from app.cache import TtlCache
from app.catalog import INVENTORY_MODEL, build_registry
from app.db import get_db_stats, reset_db_stats
from app.errors import AdminError
from app.gateway import DEFAULT_PAGE_SIZE, AdminGateway
from app.model_registry import ModelRegistry
from app.permissions import DiscordRoleLookup, PermissionChecker
from app.schema import describe_schema
from app.shards import ShardResolver
from app.stores import MemoryAuditStore, MemoryRecordStore, MemoryShardedStore, run_store


app = FastAPI(title="Tinglebot Admin DB")
logger = logging.getLogger("tingle")
logging.basicConfig(level=logging.INFO)

_LOCAL_CORS_ORIGINS = {
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:3000",
    "http://127.0.0.1:3000",
}
_LOCAL_CORS_REGEX = re.compile(r"^http://(localhost|127\.0\.0\.1):\d+$")
_EXTRA_CORS_ORIGINS = {
    origin.strip().rstrip("/")
    for origin in os.getenv("TINGLE_CORS_ORIGINS", "").split(",")
    if origin.strip()
}
_CORS_ORIGINS = _LOCAL_CORS_ORIGINS | _EXTRA_CORS_ORIGINS

USE_DB = os.getenv("USE_DB", "").strip() == "1"
APP_ENV = os.getenv("APP_ENV", os.getenv("ENV", "dev")).strip().lower() or "dev"
IS_DEV = APP_ENV == "dev"
REQ_SLOW_MS = float(os.getenv("TINGLE_REQ_SLOW_MS", "500"))
DISABLE_AUTH = os.getenv("TINGLE_DISABLE_AUTH", "").strip().lower() in ("1", "true", "yes")
AUTH_JWKS_URL = os.getenv("AUTH_JWKS_URL", "").strip() or None
AUTH_ISSUER = os.getenv("AUTH_ISSUER", "").strip() or None
AUTH_AUDIENCE = os.getenv("AUTH_AUDIENCE", "").strip() or None
DISCORD_TOKEN = os.getenv("DISCORD_TOKEN", "").strip() or None
DISCORD_GUILD_ID = os.getenv("DISCORD_GUILD_ID", "").strip() or None
ADMIN_ROLE_ID = os.getenv("ADMIN_ROLE_ID", "").strip() or None
ADMIN_USER_IDS = [v.strip() for v in os.getenv("ADMIN_USER_IDS", "").split(",") if v.strip()]
ADMIN_ROLE_CACHE_TTL_S = float(os.getenv("ADMIN_ROLE_CACHE_TTL_S", "300"))
SHARD_HANDLE_CACHE = int(os.getenv("TINGLE_SHARD_HANDLE_CACHE", "256"))

logger.info("auth_disabled=%s use_db=%s app_env=%s", DISABLE_AUTH, USE_DB, APP_ENV)


@dataclass
class AdminEngine:
    """Everything the admin routes share: registry, stores, caches and the gateway."""

    registry: ModelRegistry
    records: object
    shard_store: object
    audit: AuditTrail
    resolver: ShardResolver
    permissions: PermissionChecker
    gateway: AdminGateway


def build_engine(use_db: bool = USE_DB, records=None, shard_store=None, audit_store=None, role_lookup=None) -> AdminEngine:
    if use_db:
        from app.stores_db import DbAuditStore, DbRecordStore, DbShardedStore, ensure_schema

        try:
            ensure_schema()
        except Exception as exc:
            logger.warning("db_schema_unavailable error=%s", exc)
        records = records or DbRecordStore()
        shard_store = shard_store or DbShardedStore()
        audit_store = audit_store or DbAuditStore()
    else:
        records = records or MemoryRecordStore()
        shard_store = shard_store or MemoryShardedStore()
        audit_store = audit_store or MemoryAuditStore()

    resolver = ShardResolver(shard_store, max_handles=SHARD_HANDLE_CACHE)
    registry = build_registry(shard_connected=resolver.is_connected)
    audit = AuditTrail(audit_store, registry)
    permissions = PermissionChecker(
        role_lookup or DiscordRoleLookup(DISCORD_TOKEN, DISCORD_GUILD_ID),
        ADMIN_ROLE_ID,
        allow_ids=ADMIN_USER_IDS,
        cache=TtlCache(ADMIN_ROLE_CACHE_TTL_S),
    )
    gateway = AdminGateway(registry, records, audit, resolver)
    return AdminEngine(registry, records, shard_store, audit, resolver, permissions, gateway)


engine = build_engine()
app.state.engine = engine


@app.middleware("http")
async def local_cors_fallback_middleware(request: Request, call_next):
    origin = request.headers.get("origin")
    if request.method == "OPTIONS":
        response = JSONResponse({}, status_code=200)
    else:
        response = await call_next(request)
    normalized_origin = origin.rstrip("/") if isinstance(origin, str) else origin
    if normalized_origin and (normalized_origin in _CORS_ORIGINS or _LOCAL_CORS_REGEX.match(normalized_origin)):
        response.headers.setdefault("Access-Control-Allow-Origin", origin)
        response.headers.setdefault("Access-Control-Allow-Credentials", "true")
        response.headers.setdefault("Access-Control-Allow-Headers", "*")
        response.headers.setdefault("Access-Control-Allow-Methods", "*")
        response.headers.setdefault("Vary", "Origin")
    return response


@app.middleware("http")
async def timing_middleware(request: Request, call_next):
    reset_db_stats()
    start = time.perf_counter()
    response = await call_next(request)
    total_ms = (time.perf_counter() - start) * 1000
    auth_ms = getattr(request.state, "auth_ms", 0.0)
    db_stats = get_db_stats()
    db_ms = db_stats.get("total_ms", 0.0)
    route = request.scope.get("route")
    route_name = getattr(route, "name", None) or "unknown"
    logger.info(
        "%s %s %s route=%s total_ms=%.1f auth_ms=%.1f db_ms=%.1f db_q=%s",
        request.method,
        request.url.path,
        response.status_code,
        route_name,
        total_ms,
        auth_ms,
        db_ms,
        db_stats.get("queries", 0),
    )
    if total_ms >= REQ_SLOW_MS:
        logger.warning(
            "slow_request method=%s path=%s route=%s total_ms=%.1f db_ms=%.1f status=%s",
            request.method,
            request.url.path,
            route_name,
            total_ms,
            db_ms,
            response.status_code,
        )
    if IS_DEV:
        response.headers["X-Req-MS"] = f"{total_ms:.1f}"
        response.headers["X-DB-MS"] = f"{db_ms:.1f}"
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=sorted(_CORS_ORIGINS),
    allow_origin_regex=r"http://localhost:\d+|http://127\.0\.0\.1:\d+",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
if not DISABLE_AUTH and not AUTH_JWKS_URL:
    raise RuntimeError("AUTH_JWKS_URL is required for auth")
app.add_middleware(AdminAuthMiddleware, jwks_url=AUTH_JWKS_URL, issuer=AUTH_ISSUER, audience=AUTH_AUDIENCE)


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    body = {
        "ok": False,
        "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
        "warnings": [],
    }
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _ok_response(payload: dict, warnings: list | None = None, status: int = 200) -> JSONResponse:
    body = {"ok": True, **payload, "errors": [], "warnings": warnings or []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _admin_error_response(exc: AdminError) -> JSONResponse:
    body = {"ok": False, **exc.payload(), "errors": exc.issues(), "warnings": []}
    return JSONResponse(jsonable_encoder(body), status_code=exc.status)


@app.exception_handler(AdminError)
async def admin_error_handler(request: Request, exc: AdminError):
    logging.getLogger("tingle.admin").info(
        "admin_error method=%s path=%s code=%s message=%s", request.method, request.url.path, exc.code, exc.message
    )
    return _admin_error_response(exc)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    actor = getattr(request.state, "user", None) or {}
    logger.exception(
        "unhandled_error method=%s path=%s model=%s actor=%s",
        request.method,
        request.url.path,
        request.path_params.get("model"),
        actor.get("id"),
    )
    return _error_response("INTERNAL_ERROR", "Unexpected server error", detail={"error": str(exc)}, status=500)


def _engine(request: Request) -> AdminEngine:
    return request.app.state.engine


async def _authorize(request: Request) -> RequestContext:
    actor = getattr(request.state, "user", None)
    await _engine(request).permissions.require(actor)
    origin = {
        "ip": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
        "path": request.url.path,
    }
    return RequestContext(actor=actor, origin=origin)


async def _safe_json(request: Request):
    try:
        return await request.json()
    except Exception:
        return None


def _mutation_response(result: MutationResult, status: int = 200) -> JSONResponse:
    return _ok_response({"record": result.record}, warnings=result.warnings, status=status)


@app.get("/health")
async def health(request: Request) -> dict:
    connected = await run_store(_engine(request).resolver.connect)
    return {"ok": True, "shard_store": "connected" if connected else "unavailable"}


@app.get("/api/admin/db/models")
async def list_models(request: Request):
    await _authorize(request)
    registry = _engine(request).registry
    return _ok_response({"models": registry.names(), "details": registry.describe()})


@app.get("/api/admin/db/schema/{model}")
async def get_model_schema(request: Request, model: str):
    await _authorize(request)
    entity_type = _engine(request).registry.resolve(model)
    return _ok_response({"schema": describe_schema(entity_type)})


@app.get("/api/admin/db/audit-logs")
async def list_audit_logs(
    request: Request,
    actor: str | None = None,
    model: str | None = None,
    action: str | None = None,
    record_id: str | None = None,
    since: str | None = None,
    until: str | None = None,
    page: int = 1,
    limit: int = 50,
):
    await _authorize(request)
    filters = {"actor": actor, "entity": model, "action": action, "record_id": record_id, "since": since, "until": until}
    result = await run_store(_engine(request).audit.query, filters, page, limit)
    return _ok_response(result)


@app.post("/api/admin/db/Inventory/item/{owner_id}")
async def create_inventory_item(request: Request, owner_id: str):
    ctx = await _authorize(request)
    body = await _safe_json(request)
    result = await _engine(request).gateway.inventory.create_item(owner_id, body, ctx)
    return _mutation_response(result, status=201)


@app.put("/api/admin/db/Inventory/item/{owner_id}/{item_id}")
async def update_inventory_item(request: Request, owner_id: str, item_id: str):
    ctx = await _authorize(request)
    body = await _safe_json(request)
    result = await _engine(request).gateway.inventory.update_item(owner_id, item_id, body, ctx)
    return _mutation_response(result)


@app.delete("/api/admin/db/Inventory/item/{owner_id}/{item_id}")
async def delete_inventory_item(request: Request, owner_id: str, item_id: str):
    ctx = await _authorize(request)
    result = await _engine(request).gateway.inventory.delete_item(owner_id, item_id, ctx)
    return _ok_response({"deleted": True, "record": result.record})


@app.get("/api/admin/db/{model}")
async def list_records(
    request: Request,
    model: str,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
    search: str | None = None,
    sort: str | None = None,
    order: str | None = None,
):
    await _authorize(request)
    result = await _engine(request).gateway.list(model, page, limit, q=search, sort_field=sort, sort_dir=order)
    return _ok_response(result)


@app.post("/api/admin/db/{model}")
async def create_record(request: Request, model: str):
    ctx = await _authorize(request)
    body = await _safe_json(request)
    result = await _engine(request).gateway.create(model, body, ctx)
    return _mutation_response(result, status=201)


@app.post("/api/admin/db/{model}/bulk-delete")
async def bulk_delete_records(request: Request, model: str):
    ctx = await _authorize(request)
    body = await _safe_json(request)
    ids = body.get("ids") if isinstance(body, dict) else None
    result = await _engine(request).gateway.bulk_delete(model, ids, ctx)
    return _ok_response(result)


@app.post("/api/admin/db/{model}/import")
async def import_records(request: Request, model: str):
    ctx = await _authorize(request)
    body = await _safe_json(request)
    payloads = body.get("records") if isinstance(body, dict) else body
    result = await _engine(request).gateway.import_records(model, payloads, ctx)
    return _ok_response(result)


@app.get("/api/admin/db/{model}/{record_id}")
async def get_record(request: Request, model: str, record_id: str):
    await _authorize(request)
    entity_type = _engine(request).registry.resolve(model)
    record = await _engine(request).gateway.get(model, record_id)
    if entity_type.name == INVENTORY_MODEL:
        return _ok_response({"inventory": record})
    return _ok_response({"record": record})


@app.put("/api/admin/db/{model}/{record_id}")
async def update_record(request: Request, model: str, record_id: str):
    ctx = await _authorize(request)
    body = await _safe_json(request)
    result = await _engine(request).gateway.update(model, record_id, body, ctx)
    return _mutation_response(result)


@app.delete("/api/admin/db/{model}/{record_id}")
async def delete_record(request: Request, model: str, record_id: str):
    ctx = await _authorize(request)
    result = await _engine(request).gateway.delete(model, record_id, ctx)
    return _ok_response({"deleted": True, "record": result.record})
