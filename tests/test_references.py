import os
import sys
import unittest
import uuid

import anyio


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.catalog import build_registry
from app.model_registry import EntityType, F
from app.references import check_references


class TestReferences(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.registry = build_registry(shard_connected=lambda: True)
        self.existing = {("Character", str(uuid.uuid4())), ("Character", str(uuid.uuid4()))}
        self.calls = []

    async def loader(self, target: str, record_id: str) -> bool:
        self.calls.append((target, record_id))
        return (target, record_id) in self.existing

    def _ids(self):
        return sorted(rid for _, rid in self.existing)

    async def test_existing_targets_pass(self) -> None:
        a, b = self._ids()
        party = self.registry.resolve("Party")
        errors = await check_references(self.registry, {"leaderId": a, "characterIds": [a, b]}, party, self.loader)
        self.assertEqual(errors, {})

    async def test_dangling_reference_named(self) -> None:
        missing = str(uuid.uuid4())
        pet = self.registry.resolve("Pet")
        errors = await check_references(self.registry, {"owner": missing}, pet, self.loader)
        self.assertEqual(errors, {"owner": f"Character not found: {missing}"})

    async def test_array_elements_keyed_by_index(self) -> None:
        a, _ = self._ids()
        missing = str(uuid.uuid4())
        party = self.registry.resolve("Party")
        errors = await check_references(self.registry, {"characterIds": [a, missing, "junk"]}, party, self.loader)
        self.assertEqual(set(errors), {"characterIds[1]", "characterIds[2]"})
        self.assertEqual(errors["characterIds[2]"], "Character not found: junk")

    async def test_invalid_ids_are_not_looked_up(self) -> None:
        pet = self.registry.resolve("Pet")
        errors = await check_references(self.registry, {"owner": "junk"}, pet, self.loader)
        self.assertIn("owner", errors)
        self.assertEqual(self.calls, [])

    async def test_repeated_values_looked_up_once(self) -> None:
        a, _ = self._ids()
        relationship = self.registry.resolve("Relationship")
        await check_references(self.registry, {"characterId": a, "targetCharacterId": a}, relationship, self.loader)
        self.assertEqual(self.calls, [("Character", a)])

    async def test_empty_values_and_plain_fields_skipped(self) -> None:
        mount = self.registry.resolve("Mount")
        errors = await check_references(self.registry, {"characterId": None, "name": "Epona"}, mount, self.loader)
        self.assertEqual(errors, {})
        self.assertEqual(self.calls, [])

    async def test_lookups_overlap_and_are_joined(self) -> None:
        a, b = self._ids()
        missing = str(uuid.uuid4())
        arrived = []
        everyone_waiting = anyio.Event()

        async def gated_loader(target: str, record_id: str) -> bool:
            arrived.append(record_id)
            if len(arrived) == 3:
                everyone_waiting.set()
            # Each lookup waits until all three are in flight.
            with anyio.fail_after(2):
                await everyone_waiting.wait()
            return (target, record_id) in self.existing

        party = self.registry.resolve("Party")
        errors = await check_references(
            self.registry, {"leaderId": a, "characterIds": [b, missing]}, party, gated_loader
        )
        self.assertEqual(sorted(arrived), sorted([a, b, missing]))
        self.assertEqual(errors, {"characterIds[1]": f"Character not found: {missing}"})

    async def test_unregistered_target_skipped(self) -> None:
        entity_type = EntityType(name="Stray", fields=(F("dragonId", "identifier", ref="Dragon"),))
        errors = await check_references(self.registry, {"dragonId": str(uuid.uuid4())}, entity_type, self.loader)
        self.assertEqual(errors, {})


if __name__ == "__main__":
    unittest.main()
