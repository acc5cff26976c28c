import os
import sys
import unittest
import uuid
from unittest import mock


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.audit import AuditTrail, RequestContext
from app.catalog import build_registry
from app.errors import (
    OperationNotSupported,
    RecordNotFound,
    ReferenceIntegrityError,
    StoreUnavailable,
    ValidationError,
)
from app.gateway import AdminGateway
from app.shards import ShardResolver
from app.stores import MemoryAuditStore, MemoryRecordStore, MemoryShardedStore
from app.stores_db import DbShardedStore
from tingle import normalize_owner_key


def character_payload(name: str, **overrides) -> dict:
    payload = {
        "userId": "211111111111111111",
        "name": name,
        "pronouns": "they/them",
        "race": "Hylian",
        "homeVillage": "Rudania",
        "currentVillage": "Rudania",
        "job": "Blacksmith",
        "maxHearts": 3,
        "currentHearts": 3,
        "maxStamina": 5,
        "currentStamina": 5,
        "icon": f"https://cdn.example/{name}.png",
    }
    payload.update(overrides)
    return payload


class TestShardKey(unittest.TestCase):
    def test_equivalent_names_share_a_key(self) -> None:
        self.assertEqual({normalize_owner_key(n) for n in ("Zelda", " zelda ", "ZELDA")}, {"zelda"})

    def test_invalid_names(self) -> None:
        with self.assertRaises(ValueError):
            normalize_owner_key("   ")
        with self.assertRaises(TypeError):
            normalize_owner_key(None)


class TestShardResolver(unittest.TestCase):
    def test_equivalent_names_resolve_to_same_handle(self) -> None:
        store = MemoryShardedStore()
        resolver = ShardResolver(store)
        handles = {id(resolver.handle(n)) for n in ("Zelda", " zelda ", "ZELDA")}
        self.assertEqual(len(handles), 1)
        self.assertEqual(store.opened, 1)

    def test_handle_cache_is_bounded(self) -> None:
        resolver = ShardResolver(MemoryShardedStore(), max_handles=2)
        for name in ("a", "b", "c"):
            resolver.handle(name)
        self.assertEqual(resolver.cached_handles(), 2)

    def test_shards_exist_after_first_write(self) -> None:
        store = MemoryShardedStore()
        resolver = ShardResolver(store)
        resolver.handle("Zelda")
        self.assertEqual(resolver.known_shards(), {})
        resolver.handle("Zelda").insert({"itemName": "Apple", "quantity": 1})
        self.assertEqual(resolver.known_shards(), {"zelda": 1})


class TestDbShardProbe(unittest.TestCase):
    def test_probe_never_opens_the_pool(self) -> None:
        store = DbShardedStore()
        with mock.patch("app.stores_db.pool_ready", return_value=False), mock.patch("app.stores_db.init_pool") as init_pool:
            self.assertFalse(store.is_connected())
            registry = build_registry(shard_connected=ShardResolver(store).is_connected)
            with self.assertRaises(StoreUnavailable):
                registry.resolve("Inventory")
            init_pool.assert_not_called()

    def test_connect_opens_the_pool(self) -> None:
        store = DbShardedStore()
        with mock.patch("app.stores_db.pool_ready", return_value=False), mock.patch("app.stores_db.init_pool") as init_pool:
            self.assertTrue(store.connect())
            init_pool.assert_called_once_with()
            init_pool.side_effect = RuntimeError("connection refused")
            self.assertFalse(store.connect())


class TestInventoryAdapter(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.records = MemoryRecordStore()
        self.shard_store = MemoryShardedStore()
        self.audit = AuditTrail(MemoryAuditStore())
        self.resolver = ShardResolver(self.shard_store)
        self.registry = build_registry(shard_connected=self.resolver.is_connected)
        self.gateway = AdminGateway(self.registry, self.records, self.audit, self.resolver)
        self.ctx = RequestContext(actor={"id": "u1", "username": "Purah", "discord_id": "1"})

    async def asyncSetUp(self) -> None:
        self.zelda = (await self.gateway.create("Character", character_payload("Zelda"), self.ctx)).record
        self.link = (await self.gateway.create("Character", character_payload("Link"), self.ctx)).record
        self.apple = (await self.gateway.create("Item", {"itemName": "Apple"}, self.ctx)).record

    async def add_item(self, owner: dict, name: str, quantity: int = 1) -> dict:
        payload = {"itemName": name, "quantity": quantity}
        return (await self.gateway.inventory.create_item(owner["id"], payload, self.ctx)).record

    async def test_create_item_lands_in_owner_shard(self) -> None:
        item = await self.add_item(self.zelda, "Apple", 3)
        self.assertEqual(item["characterId"], self.zelda["id"])
        self.assertEqual(self.resolver.known_shards(), {"zelda": 1})
        entry = self.audit.query({"record_id": item["id"]})["entries"][0]
        self.assertEqual(entry["entity"], "Inventory")
        self.assertEqual(entry["record_label"], "Zelda: Apple")

    async def test_gateway_create_routes_by_character_id(self) -> None:
        payload = {"characterId": self.link["id"], "itemName": "Apple", "quantity": 2, "itemId": self.apple["id"]}
        result = await self.gateway.create("Inventory", payload, self.ctx)
        self.assertEqual(result.record["itemId"], self.apple["id"])
        self.assertIn("link", self.resolver.known_shards())

    async def test_gateway_create_without_owner(self) -> None:
        with self.assertRaises(ValidationError) as exc:
            await self.gateway.create("Inventory", {"itemName": "Apple", "quantity": 1}, self.ctx)
        self.assertIn("characterId", exc.exception.field_errors)

    async def test_item_reference_checked(self) -> None:
        payload = {"itemName": "Apple", "quantity": 1, "itemId": str(uuid.uuid4())}
        with self.assertRaises(ReferenceIntegrityError):
            await self.gateway.inventory.create_item(self.zelda["id"], payload, self.ctx)

    async def test_list_owners_with_counts(self) -> None:
        await self.add_item(self.zelda, "Apple")
        await self.add_item(self.zelda, "Wood")
        await self.add_item(self.link, "Arrow")
        page = await self.gateway.list("Inventory")
        rows = [(r["display_name"], r["item_count"], r["owner_id"]) for r in page["records"]]
        self.assertEqual(rows, [("Link", 1, self.link["id"]), ("Zelda", 2, self.zelda["id"])])
        self.assertEqual(page["records"][0]["icon"], "https://cdn.example/Link.png")
        filtered = await self.gateway.list("Inventory", q="zel")
        self.assertEqual([r["display_name"] for r in filtered["records"]], ["Zelda"])

    async def test_orphan_shard_listed_without_owner(self) -> None:
        self.resolver.handle("Ganon").insert({"itemName": "Malice", "quantity": 1})
        page = await self.gateway.list("Inventory")
        orphan = [r for r in page["records"] if r["shard"] == "ganon"][0]
        self.assertIsNone(orphan["owner_id"])

    async def test_get_owner_inventory(self) -> None:
        await self.add_item(self.zelda, "Wood")
        await self.add_item(self.zelda, "Apple")
        inventory = await self.gateway.get("Inventory", self.zelda["id"])
        self.assertEqual(inventory["display_name"], "Zelda")
        self.assertEqual([i["itemName"] for i in inventory["items"]], ["Apple", "Wood"])

    async def test_get_falls_back_to_mod_character(self) -> None:
        mod = (
            await self.gateway.create(
                "ModCharacter", character_payload("Rauru", modTitle="Oracle", modType="Light"), self.ctx
            )
        ).record
        await self.add_item(mod, "Light Shard")
        inventory = await self.gateway.get("Inventory", mod["id"])
        self.assertEqual(inventory["owner_model"], "ModCharacter")
        self.assertEqual(inventory["item_count"], 1)

    async def test_get_unknown_owner(self) -> None:
        with self.assertRaises(RecordNotFound):
            await self.gateway.get("Inventory", str(uuid.uuid4()))

    async def test_update_and_delete_item(self) -> None:
        item = await self.add_item(self.zelda, "Apple", 1)
        updated = (await self.gateway.inventory.update_item(self.zelda["id"], item["id"], {"quantity": 5}, self.ctx)).record
        self.assertEqual(updated["quantity"], 5)
        await self.gateway.inventory.delete_item(self.zelda["id"], item["id"], self.ctx)
        with self.assertRaises(RecordNotFound):
            await self.gateway.inventory.delete_item(self.zelda["id"], item["id"], self.ctx)
        actions = [e["action"] for e in self.audit.query({"record_id": item["id"]})["entries"]]
        self.assertEqual(actions, ["DELETE", "UPDATE", "CREATE"])

    async def test_item_is_scoped_to_owner(self) -> None:
        item = await self.add_item(self.zelda, "Apple", 1)
        with self.assertRaises(RecordNotFound):
            await self.gateway.inventory.update_item(self.link["id"], item["id"], {"quantity": 2}, self.ctx)

    async def test_item_cannot_change_owner(self) -> None:
        item = await self.add_item(self.zelda, "Apple", 1)
        with self.assertRaises(ValidationError):
            await self.gateway.inventory.update_item(self.zelda["id"], item["id"], {"characterId": self.link["id"]}, self.ctx)

    async def test_bare_id_mutations_not_supported(self) -> None:
        item = await self.add_item(self.zelda, "Apple", 1)
        with self.assertRaises(OperationNotSupported):
            await self.gateway.update("Inventory", item["id"], {"quantity": 2}, self.ctx)
        with self.assertRaises(OperationNotSupported):
            await self.gateway.delete("Inventory", item["id"], self.ctx)
        with self.assertRaises(OperationNotSupported):
            await self.gateway.bulk_delete("Inventory", [item["id"]], self.ctx)

    async def test_import_into_shards(self) -> None:
        result = await self.gateway.import_records(
            "Inventory",
            [
                {"characterId": self.zelda["id"], "itemName": "Apple", "quantity": 1},
                {"characterId": str(uuid.uuid4()), "itemName": "Wood", "quantity": 1},
                {"itemName": "Arrow", "quantity": 1},
            ],
            self.ctx,
        )
        self.assertEqual(result["imported"], 1)
        self.assertEqual([f["index"] for f in result["failures"]], [1, 2])

    async def test_disconnected_store_unavailable(self) -> None:
        self.shard_store.connected = False
        with self.assertRaises(StoreUnavailable):
            await self.gateway.list("Inventory")
        with self.assertRaises(StoreUnavailable):
            await self.gateway.inventory.create_item(self.zelda["id"], {"itemName": "Apple", "quantity": 1}, self.ctx)
        page = await self.gateway.list("Character")
        self.assertEqual(page["pagination"]["total"], 2)


if __name__ == "__main__":
    unittest.main()
