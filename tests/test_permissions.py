import os
import sys
import unittest
from unittest import mock

import httpx


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.cache import TtlCache
from app.errors import AuthorizationUnavailable, AuthRequired, PermissionDenied
from app.permissions import DiscordRoleLookup, PermissionChecker, RoleLookupError


ADMIN_ROLE = "606128760655183882"


class FakeRoleLookup:
    def __init__(self, roles=None) -> None:
        self.roles = roles or {}
        self.fail = False
        self.calls = 0

    def member_roles(self, discord_id):
        self.calls += 1
        if self.fail:
            raise RoleLookupError("discord down")
        return self.roles.get(discord_id)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def actor(discord_id: str) -> dict:
    return {"id": f"user-{discord_id}", "username": "op", "discord_id": discord_id}


class TestPermissionChecker(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.lookup = FakeRoleLookup({"1": [ADMIN_ROLE, "other"], "2": ["other"]})
        self.clock = FakeClock()
        self.checker = PermissionChecker(self.lookup, ADMIN_ROLE, cache=TtlCache(300, clock=self.clock))

    async def test_admin_role_grants_access(self) -> None:
        self.assertTrue(await self.checker.is_privileged(actor("1")))
        self.assertFalse(await self.checker.is_privileged(actor("2")))
        self.assertFalse(await self.checker.is_privileged(actor("3")))

    async def test_verdict_cached_within_ttl(self) -> None:
        await self.checker.is_privileged(actor("1"))
        await self.checker.is_privileged(actor("1"))
        self.assertEqual(self.lookup.calls, 1)
        self.clock.now += 301
        await self.checker.is_privileged(actor("1"))
        self.assertEqual(self.lookup.calls, 2)

    async def test_lookup_failure_uses_last_known_verdict(self) -> None:
        self.assertTrue(await self.checker.is_privileged(actor("1")))
        self.clock.now += 1000
        self.lookup.fail = True
        self.assertTrue(await self.checker.is_privileged(actor("1")))

    async def test_lookup_failure_without_verdict_is_unavailable(self) -> None:
        self.lookup.fail = True
        with self.assertRaises(AuthorizationUnavailable) as ctx:
            await self.checker.is_privileged(actor("1"))
        self.assertEqual(ctx.exception.status, 503)

    async def test_allow_list_skips_lookup(self) -> None:
        checker = PermissionChecker(self.lookup, ADMIN_ROLE, allow_ids=["99"])
        self.assertTrue(await checker.is_privileged(actor("99")))
        self.assertEqual(self.lookup.calls, 0)

    async def test_require(self) -> None:
        with self.assertRaises(AuthRequired):
            await self.checker.require(None)
        with self.assertRaises(PermissionDenied):
            await self.checker.require(actor("2"))
        self.assertEqual((await self.checker.require(actor("1")))["discord_id"], "1")

    async def test_actor_without_discord_id_denied(self) -> None:
        self.assertFalse(await self.checker.is_privileged({"id": "x"}))


class TestDiscordRoleLookup(unittest.TestCase):
    def _client(self, response=None, error=None):
        client = mock.MagicMock()
        client.__enter__.return_value = client
        if error is not None:
            client.get.side_effect = error
        else:
            client.get.return_value = response
        return client

    def test_reads_member_roles(self) -> None:
        request = httpx.Request("GET", "https://discord.test")
        response = httpx.Response(200, json={"roles": [ADMIN_ROLE, 42]}, request=request)
        client = self._client(response)
        with mock.patch("app.permissions.httpx.Client", return_value=client):
            roles = DiscordRoleLookup("token", "guild").member_roles("1")
        self.assertEqual(roles, [ADMIN_ROLE, "42"])
        url = client.get.call_args[0][0]
        self.assertTrue(url.endswith("/guilds/guild/members/1"))
        self.assertEqual(client.get.call_args[1]["headers"]["Authorization"], "Bot token")

    def test_non_member_returns_none(self) -> None:
        request = httpx.Request("GET", "https://discord.test")
        client = self._client(httpx.Response(404, request=request))
        with mock.patch("app.permissions.httpx.Client", return_value=client):
            self.assertIsNone(DiscordRoleLookup("token", "guild").member_roles("1"))

    def test_upstream_errors_raise_lookup_error(self) -> None:
        request = httpx.Request("GET", "https://discord.test")
        for client in (
            self._client(httpx.Response(502, request=request)),
            self._client(error=httpx.ConnectError("boom")),
        ):
            with mock.patch("app.permissions.httpx.Client", return_value=client):
                with self.assertRaises(RoleLookupError):
                    DiscordRoleLookup("token", "guild").member_roles("1")

    def test_unconfigured_lookup_raises(self) -> None:
        with self.assertRaises(RoleLookupError):
            DiscordRoleLookup(None, None).member_roles("1")


if __name__ == "__main__":
    unittest.main()
