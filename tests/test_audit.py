"""
tests/test_audit.py
====================
Audit Log Tests — ReturnGuard

Test categories:
    1. Entry construction
    2. Append / query ordering
    3. Sink failures (all-or-nothing)
    4. JSONL persistence
    5. Engine-level trail lookups
"""

import json
import os
import sys
import tempfile
import unittest
from datetime import datetime, timedelta, timezone

# Ensure project root is on sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from returnguard.audit.log import AuditLog, JsonlAuditSink, make_entry
from returnguard.engine import ReturnGuardEngine
from returnguard.errors import AuditWriteError, UnknownEntity
from returnguard.models import EntityRef

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
RET_1 = EntityRef("return", "RET-1")
RET_2 = EntityRef("return", "RET-2")


class BrokenSink:
    def write(self, entries):
        raise OSError("read-only file system")


def _entry(target: EntityRef = RET_1, action: str = "return_filed", minutes: int = 0):
    return make_entry(
        actor="tester",
        action=action,
        target=target,
        reason="because",
        policy_version=1,
        details={"b": 2, "a": 1},
        timestamp=NOW + timedelta(minutes=minutes),
    )


# ===================================================================
# 1. Entry Construction
# ===================================================================

class TestMakeEntry(unittest.TestCase):

    def test_fields(self):
        entry = _entry()
        self.assertTrue(entry.entry_id.startswith("AUD-"))
        self.assertEqual(entry.timestamp, NOW)
        self.assertEqual(entry.details, (("a", 1), ("b", 2)))

    def test_unique_ids(self):
        self.assertNotEqual(_entry().entry_id, _entry().entry_id)

    def test_to_dict(self):
        data = _entry().to_dict()
        self.assertEqual(data["target"], "return:RET-1")
        self.assertEqual(data["details"], {"a": 1, "b": 2})
        self.assertEqual(data["timestamp"], NOW.isoformat())


# ===================================================================
# 2. Ordering
# ===================================================================

class TestAppendAndQuery(unittest.TestCase):

    def test_query_by_target_oldest_first(self):
        log = AuditLog()
        first, other, second = _entry(minutes=0), _entry(RET_2, minutes=1), _entry(minutes=2)
        for entry in (first, other, second):
            log.append(entry)
        self.assertEqual(log.query_by_target(RET_1), [first, second])
        self.assertEqual(log.query_by_target(RET_2), [other])
        self.assertEqual(log.query_by_target(EntityRef("return", "nope")), [])

    def test_recent_newest_first(self):
        log = AuditLog()
        entries = [_entry(minutes=n) for n in range(5)]
        log.append_many(entries)
        self.assertEqual(log.recent(2), [entries[4], entries[3]])
        self.assertEqual(log.recent(0), [])
        self.assertEqual(len(log), 5)

    def test_empty_batch_is_noop(self):
        log = AuditLog(sink=BrokenSink())
        log.append_many([])
        self.assertEqual(len(log), 0)


# ===================================================================
# 3. Sink Failures
# ===================================================================

class TestSinkFailure(unittest.TestCase):

    def test_failed_batch_records_nothing(self):
        log = AuditLog(sink=BrokenSink())
        with self.assertRaises(AuditWriteError):
            log.append_many([_entry(), _entry(RET_2)])
        self.assertEqual(len(log), 0)
        self.assertEqual(log.query_by_target(RET_1), [])


# ===================================================================
# 4. JSONL Persistence
# ===================================================================

class TestJsonlSink(unittest.TestCase):

    def test_one_line_per_entry(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "audit.jsonl")
            log = AuditLog(sink=JsonlAuditSink(path))
            log.append(_entry())
            log.append_many([_entry(RET_2), _entry(action="return_decided")])

            with open(path, encoding="utf-8") as fh:
                lines = [json.loads(line) for line in fh]

        self.assertEqual(len(lines), 3)
        self.assertEqual(lines[0]["target"], "return:RET-1")
        self.assertEqual(lines[2]["action"], "return_decided")


# ===================================================================
# 5. Engine Trails
# ===================================================================

class TestEngineTrails(unittest.TestCase):

    def setUp(self):
        self.engine = ReturnGuardEngine(clock=lambda: NOW)
        self.engine.register_customer("C-1", risk_score=84)

    def test_customer_trail(self):
        actions = [e.action for e in self.engine.get_audit_trail("customer", "C-1")]
        self.assertEqual(actions, ["customer_registered"])

    def test_policy_trail(self):
        self.engine.update_policy({"maxReturnsPerMonth": 3}, actor="alice")
        trail = self.engine.get_audit_trail("policy", "active")
        self.assertEqual([e.action for e in trail], ["policy_updated"])

    def test_unknown_kind(self):
        with self.assertRaises(ValueError):
            self.engine.get_audit_trail("invoice", "C-1")

    def test_unknown_entity(self):
        with self.assertRaises(UnknownEntity):
            self.engine.get_audit_trail("customer", "C-404")

    def test_every_decision_is_traceable(self):
        ret = self.engine.submit_return("C-1", "Wrong size", 120.0)
        decided = self.engine.get_audit_trail("return", ret.return_id)[-1]
        self.assertEqual(decided.action, "return_decided")
        self.assertEqual(decided.actor, "decision_engine")
        self.assertEqual(decided.policy_version, 1)
        details = dict(decided.details)
        self.assertEqual(details["risk_score"], 84)
        self.assertEqual(details["band"], "high")
        self.assertEqual(details["to_status"], "under_review")

    def test_recent_audit(self):
        self.engine.submit_return("C-1", "Wrong size", 120.0)
        recent = self.engine.recent_audit(1)
        self.assertEqual(len(recent), 1)
        # the imported score is a floor, so the filing leaves no re-score entry
        self.assertEqual(recent[0].action, "return_decided")


if __name__ == "__main__":
    unittest.main()
