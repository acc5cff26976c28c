import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.audit import AuditTrail, RequestContext
from app.catalog import build_registry
from app.errors import ServerError, ValidationError
from app.stores import MemoryAuditStore


class BrokenAuditStore:
    def append(self, entry):
        raise RuntimeError("disk full")


def ctx(username: str = "link", discord_id: str = "1") -> RequestContext:
    return RequestContext(
        actor={"id": f"u-{discord_id}", "username": username, "discord_id": discord_id, "claims": {"secret": True}},
        origin={"ip": "127.0.0.1", "user_agent": "tests", "path": "/api/admin/db/Item"},
    )


class TestAuditTrail(unittest.TestCase):
    def setUp(self) -> None:
        self.trail = AuditTrail(MemoryAuditStore())

    def test_entry_shape(self) -> None:
        entry = self.trail.record(ctx(), "CREATE", "Item", "r1", "Apple", None, {"id": "r1", "itemName": "Apple"})
        self.assertEqual(entry["action"], "CREATE")
        self.assertEqual(entry["actor"], {"id": "u-1", "username": "link", "discord_id": "1"})
        self.assertIsNone(entry["before"])
        self.assertEqual(entry["after"]["itemName"], "Apple")
        self.assertTrue(entry["timestamp"].endswith("Z"))
        self.assertEqual(entry["origin"]["path"], "/api/admin/db/Item")

    def test_snapshots_are_detached(self) -> None:
        record = {"id": "r1", "tags": ["a"]}
        self.trail.record(ctx(), "UPDATE", "Item", "r1", "r1", record, record)
        record["tags"].append("b")
        entry = self.trail.query({"record_id": "r1"})["entries"][0]
        self.assertEqual(entry["before"]["tags"], ["a"])

    def test_query_filters_newest_first(self) -> None:
        self.trail.record(ctx("link", "1"), "CREATE", "Item", "r1", "Apple", None, {"id": "r1"})
        self.trail.record(ctx("zelda", "2"), "DELETE", "Pet", "p1", "Fluffy", {"id": "p1"}, None)
        self.trail.record(ctx("link", "1"), "UPDATE", "Item", "r1", "Apple", {"id": "r1"}, {"id": "r1"})
        everything = self.trail.query()
        self.assertEqual([e["action"] for e in everything["entries"]], ["UPDATE", "DELETE", "CREATE"])
        self.assertEqual(everything["pagination"]["total"], 3)
        self.assertEqual(self.trail.query({"actor": "ZELDA"})["pagination"]["total"], 1)
        self.assertEqual(self.trail.query({"entity": "Item", "action": "update"})["pagination"]["total"], 1)
        self.assertEqual(self.trail.query({"since": "2000-01-01"})["pagination"]["total"], 3)
        self.assertEqual(self.trail.query({"until": "2000-01-01T00:00:00Z"})["pagination"]["total"], 0)

    def test_model_filter_is_case_insensitive(self) -> None:
        trail = AuditTrail(MemoryAuditStore(), build_registry(shard_connected=lambda: True))
        trail.record(ctx(), "CREATE", "Character", "c1", "Zelda", None, {"id": "c1"})
        trail.record(ctx(), "CREATE", "Item", "r1", "Apple", None, {"id": "r1"})
        for name in ("Character", "character", " CHARACTER "):
            entries = trail.query({"entity": name})["entries"]
            self.assertEqual([e["record_id"] for e in entries], ["c1"], name)

    def test_query_pagination(self) -> None:
        for i in range(5):
            self.trail.record(ctx(), "CREATE", "Item", f"r{i}", None, None, {"id": f"r{i}"})
        page = self.trail.query(page=2, limit=2)
        self.assertEqual([e["record_id"] for e in page["entries"]], ["r2", "r1"])
        self.assertTrue(page["pagination"]["has_next"])
        self.assertTrue(page["pagination"]["has_prev"])
        self.assertEqual(page["pagination"]["pages"], 3)

    def test_bad_filters_rejected(self) -> None:
        with self.assertRaises(ValidationError) as exc:
            self.trail.query({"since": "yesterday", "action": "EXPLODE"})
        self.assertEqual(set(exc.exception.field_errors), {"since", "action"})

    def test_append_failure_is_server_error(self) -> None:
        trail = AuditTrail(BrokenAuditStore())
        with self.assertRaises(ServerError):
            trail.record(ctx(), "CREATE", "Item", "r1", None, None, {"id": "r1"})


if __name__ == "__main__":
    unittest.main()
