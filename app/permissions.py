"""Capability check: is the acting operator allowed to use the admin editor."""

from __future__ import annotations

import logging
from typing import Iterable, Protocol

import anyio
import httpx

from app.cache import TtlCache
from app.errors import AuthorizationUnavailable, AuthRequired, PermissionDenied


logger = logging.getLogger("tingle.auth")

DISCORD_API_BASE = "https://discord.com/api/v10"


class RoleLookupError(Exception):
    """Upstream role lookup failed; the verdict is unknown, not negative."""


class RoleLookup(Protocol):
    def member_roles(self, discord_id: str) -> list[str] | None:
        ...


class DiscordRoleLookup:
    """Reads a member's role ids from the Discord guild-member endpoint."""

    def __init__(self, bot_token: str | None, guild_id: str | None, base_url: str = DISCORD_API_BASE, timeout: float = 10.0) -> None:
        self.bot_token = bot_token
        self.guild_id = guild_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def member_roles(self, discord_id: str) -> list[str] | None:
        """Return the member's role ids, or None when they are not in the guild."""
        if not self.bot_token or not self.guild_id:
            raise RoleLookupError("Discord role lookup is not configured")
        url = f"{self.base_url}/guilds/{self.guild_id}/members/{discord_id}"
        headers = {"Authorization": f"Bot {self.bot_token}"}
        try:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.get(url, headers=headers)
        except httpx.HTTPError as exc:
            raise RoleLookupError(f"Discord request failed: {exc}") from exc
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise RoleLookupError(f"Discord returned {resp.status_code}")
        data = resp.json()
        return [str(role) for role in data.get("roles") or []]


class PermissionChecker:
    def __init__(
        self,
        lookup: RoleLookup,
        admin_role_id: str | None,
        allow_ids: Iterable[str] = (),
        cache: TtlCache[str, bool] | None = None,
        ttl_s: float = 300.0,
    ) -> None:
        self.lookup = lookup
        self.admin_role_id = admin_role_id
        self.allow_ids = {str(v).strip() for v in allow_ids if str(v).strip()}
        self.cache: TtlCache[str, bool] = cache if cache is not None else TtlCache(ttl_s)

    def _fetch_verdict(self, discord_id: str) -> bool:
        roles = self.lookup.member_roles(discord_id)
        if roles is None or not self.admin_role_id:
            return False
        return str(self.admin_role_id) in roles

    async def is_privileged(self, actor: dict | None) -> bool:
        if not actor:
            return False
        discord_id = str(actor.get("discord_id") or "").strip()
        if not discord_id:
            return False
        if discord_id in self.allow_ids:
            return True
        cached = self.cache.get(discord_id)
        if cached is not None:
            return cached
        try:
            verdict = await anyio.to_thread.run_sync(self._fetch_verdict, discord_id)
        except RoleLookupError as exc:
            stale = self.cache.get_stale(discord_id)
            if stale is None:
                logger.error("role_lookup_failed discord_id=%s error=%s", discord_id, exc)
                raise AuthorizationUnavailable(
                    "Unable to verify admin role right now",
                    detail={"error": str(exc)},
                ) from exc
            logger.warning("role_lookup_stale discord_id=%s verdict=%s error=%s", discord_id, stale, exc)
            return stale
        self.cache.set(discord_id, verdict)
        logger.info("role_lookup discord_id=%s privileged=%s", discord_id, verdict)
        return verdict

    async def require(self, actor: dict | None) -> dict:
        if not actor:
            raise AuthRequired("Authentication required")
        if not await self.is_privileged(actor):
            raise PermissionDenied("Admin role required", detail={"actor": actor.get("id")})
        return actor
