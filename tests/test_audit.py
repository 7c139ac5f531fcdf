"""
Casework — Immutable Audit Trail Tests
"""

import os
import sqlite3
import sys
import tempfile
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from services.audit import GENESIS_HASH, AuditTrail, compute_event_hash


class _AuditTestCase(unittest.TestCase):
    """Base class that creates a temp audit DB per test."""
    def setUp(self):
        self._tmpfile = tempfile.NamedTemporaryFile(suffix=".db", delete=False)
        self._tmpfile.close()
        self.trail = AuditTrail(self._tmpfile.name)

    def tearDown(self):
        self.trail.close()
        os.unlink(self._tmpfile.name)
        for suffix in ("-wal", "-shm"):
            if os.path.exists(self._tmpfile.name + suffix):
                os.unlink(self._tmpfile.name + suffix)


class TestRecording(_AuditTestCase):

    def test_record_and_trail(self):
        self.trail.record("CASE_CREATE", "u1", "case_a", {"department_id": "onc"})
        self.trail.record("CASE_SUBMIT", "u1", "case_a", {"meeting_id": "m1"})
        self.trail.record("CASE_CREATE", "u2", "case_b")

        events = self.trail.get_trail("case_a")
        self.assertEqual([e.action for e in events], ["CASE_CREATE", "CASE_SUBMIT"])
        self.assertEqual(events[1].details, {"meeting_id": "m1"})
        self.assertEqual(self.trail.count_events(), 3)

    def test_first_event_links_to_genesis(self):
        event = self.trail.record("CASE_CREATE", "u1", "case_a")
        self.assertEqual(event.previous_hash, GENESIS_HASH)
        second = self.trail.record("CASE_SUBMIT", "u1", "case_a")
        self.assertEqual(second.previous_hash, event.event_hash)

    def test_hash_is_deterministic(self):
        h1 = compute_event_hash(GENESIS_HASH, "c", "A", "u", 1.5, "{}")
        h2 = compute_event_hash(GENESIS_HASH, "c", "A", "u", 1.5, "{}")
        h3 = compute_event_hash(GENESIS_HASH, "c", "A", "u", 1.5, '{"x": 1}')
        self.assertEqual(h1, h2)
        self.assertNotEqual(h1, h3)
        self.assertEqual(len(h1), 64)

    def test_events_by_action(self):
        for case_id in ("a", "b", "c"):
            self.trail.record("CASE_ARCHIVE", "admin", case_id)
        self.trail.record("CASE_CREATE", "u1", "d")
        archived = self.trail.get_events_by_action("CASE_ARCHIVE", limit=2)
        self.assertEqual([e.case_id for e in archived], ["c", "b"])

    def test_persists_across_reopen(self):
        self.trail.record("CASE_CREATE", "u1", "case_a")
        self.trail.close()
        self.trail = AuditTrail(self._tmpfile.name)
        self.assertEqual(self.trail.count_events(), 1)


class TestChainVerification(_AuditTestCase):

    def test_empty_trail(self):
        ok, message = self.trail.verify_chain()
        self.assertTrue(ok)
        self.assertIn("Empty", message)

    def test_intact_chain(self):
        for i in range(5):
            self.trail.record("CASE_UPDATE", "u1", "case_a", {"n": i})
        ok, message = self.trail.verify_chain()
        self.assertTrue(ok)
        self.assertEqual(message, "Chain intact (5 events)")

    def test_tampered_details_detected(self):
        self.trail.record("CONSENSUS_CREATE", "u_coord", "case_a", {"report_id": "r1"})
        self.trail.record("CASE_ARCHIVE", "u_admin", "case_a")
        conn = sqlite3.connect(self._tmpfile.name)
        conn.execute("UPDATE audit_events SET details = ? WHERE id = 1", ('{"report_id": "r2"}',))
        conn.commit()
        conn.close()

        ok, message = self.trail.verify_chain()
        self.assertFalse(ok)
        self.assertIn("Tampered event 1", message)

    def test_deleted_event_detected(self):
        for i in range(3):
            self.trail.record("CASE_UPDATE", "u1", "case_a", {"n": i})
        conn = sqlite3.connect(self._tmpfile.name)
        conn.execute("DELETE FROM audit_events WHERE id = 2")
        conn.commit()
        conn.close()

        ok, message = self.trail.verify_chain()
        self.assertFalse(ok)
        self.assertIn("Chain broken at event 3", message)


if __name__ == "__main__":
    unittest.main()
