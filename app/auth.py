"""Bearer JWT auth middleware that attaches the acting operator."""

from __future__ import annotations

import logging
import os
import re
import time
from typing import Any, Dict, Optional

import httpx
from jose import jwt
from jose.exceptions import JWTError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse


logger = logging.getLogger("tingle.auth")

_JWKS_CACHE: Dict[str, Any] = {"keys": None, "fetched_at": 0.0, "ttl": 600.0}
_LOCAL_ORIGIN_RE = re.compile(r"^http://(localhost|127\.0\.0\.1):\d+$")
_PUBLIC_PATHS = {"/health"}


def auth_disabled() -> bool:
    return os.getenv("TINGLE_DISABLE_AUTH", "").strip().lower() in ("1", "true", "yes")


def _attach_local_cors(request: Request, response: JSONResponse) -> JSONResponse:
    origin = request.headers.get("origin")
    if origin and _LOCAL_ORIGIN_RE.match(origin):
        response.headers.setdefault("Access-Control-Allow-Origin", origin)
        response.headers.setdefault("Access-Control-Allow-Credentials", "true")
        response.headers.setdefault("Access-Control-Allow-Headers", "*")
        response.headers.setdefault("Access-Control-Allow-Methods", "*")
        response.headers.setdefault("Vary", "Origin")
    return response


def _auth_error(request: Request, code: str, message: str, detail: dict | None = None) -> JSONResponse:
    return _attach_local_cors(
        request,
        JSONResponse(
            {
                "ok": False,
                "errors": [{"code": code, "message": message, "path": "Authorization", "detail": detail}],
                "warnings": [],
            },
            status_code=401,
        ),
    )


def _fetch_jwks(jwks_url: str, force: bool = False) -> dict:
    now = time.time()
    if not force and _JWKS_CACHE["keys"] and now - _JWKS_CACHE["fetched_at"] < _JWKS_CACHE["ttl"]:
        return _JWKS_CACHE["keys"]
    resp = httpx.get(jwks_url, timeout=10.0)
    resp.raise_for_status()
    data = resp.json()
    _JWKS_CACHE["keys"] = data
    _JWKS_CACHE["fetched_at"] = now
    return data


def _get_bearer_token(request: Request) -> Optional[str]:
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth.split(" ", 1)[1].strip() or None


def _find_key(jwks: dict, kid: str | None) -> dict | None:
    for jwk in jwks.get("keys", []):
        if jwk.get("kid") == kid:
            return jwk
    return None


def _verify_jwt(token: str, jwks_url: str, issuer: str | None, audience: Optional[str]) -> dict:
    headers = jwt.get_unverified_header(token)
    kid = headers.get("kid")
    key = _find_key(_fetch_jwks(jwks_url), kid)
    if key is None:
        key = _find_key(_fetch_jwks(jwks_url, force=True), kid)
    if key is None:
        raise JWTError("Unknown kid")
    options = {"verify_aud": audience is not None, "verify_iss": issuer is not None}
    return jwt.decode(
        token,
        key,
        algorithms=[headers.get("alg", "RS256")],
        issuer=issuer,
        audience=audience,
        options=options,
    )


def actor_from_claims(claims: dict) -> dict:
    """Map verified token claims onto the actor shape used by audit entries.

    Discord OAuth sessions carry the Discord user id and name in
    ``user_metadata``; plain tokens fall back to the subject.
    """
    meta = claims.get("user_metadata") or {}
    discord_id = meta.get("provider_id") or claims.get("discord_id") or meta.get("sub")
    username = (
        meta.get("full_name")
        or meta.get("user_name")
        or meta.get("name")
        or claims.get("preferred_username")
        or claims.get("email")
    )
    return {
        "id": claims.get("sub"),
        "username": username,
        "discord_id": str(discord_id) if discord_id is not None else None,
    }


def actor_from_headers(request: Request) -> dict | None:
    actor_id = request.headers.get("X-Actor-Id", "").strip()
    if not actor_id:
        return None
    return {
        "id": actor_id,
        "username": request.headers.get("X-Actor-Username", "").strip() or None,
        "discord_id": request.headers.get("X-Actor-Discord-Id", "").strip() or actor_id,
    }


class AdminAuthMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, jwks_url: str | None, issuer: str | None = None, audience: Optional[str] = None) -> None:
        super().__init__(app)
        self._jwks_url = jwks_url
        self._issuer = issuer
        self._audience = audience

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        request.state.user = None
        if request.method == "OPTIONS" or request.url.path in _PUBLIC_PATHS:
            return await call_next(request)
        if auth_disabled():
            request.state.user = actor_from_headers(request)
            return await call_next(request)

        token = _get_bearer_token(request)
        if not token:
            logger.warning("auth_missing_token path=%s", request.url.path)
            return _auth_error(request, "AUTH_MISSING_TOKEN", "Missing bearer token")
        if not self._jwks_url:
            logger.error("auth_not_configured path=%s", request.url.path)
            return _auth_error(request, "AUTH_NOT_CONFIGURED", "Token verification is not configured")

        try:
            claims = _verify_jwt(token, self._jwks_url, self._issuer, self._audience)
        except (JWTError, httpx.HTTPError, ValueError) as exc:
            logger.warning(
                "auth_invalid_token path=%s issuer=%s audience=%s error=%s",
                request.url.path,
                self._issuer,
                self._audience,
                exc,
            )
            return _auth_error(request, "AUTH_INVALID_TOKEN", "Invalid bearer token", {"error": str(exc)})

        request.state.user = actor_from_claims(claims)
        request.state.auth_ms = (time.perf_counter() - start) * 1000
        return await call_next(request)
