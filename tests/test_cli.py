"""
Casework — Operator CLI Tests
"""

import io
import json
import os
import shutil
import sys
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from datetime import date, timedelta

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from casework_fixtures import CONSULTANT_A, patient

from casework.cli import build_parser, main
from casework.runtime import CaseWorkflowEngine


class TestCLI(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.db = os.path.join(self.tmpdir, "cases.db")
        self.audit_db = os.path.join(self.tmpdir, "audit.db")
        self.missing_config = os.path.join(self.tmpdir, "absent.yaml")

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def run_cli(self, *args, audit=True):
        argv = ["--config", self.missing_config, "--db", self.db, "--log-level", "ERROR"]
        if audit:
            argv += ["--audit-db", self.audit_db]
        out, err = io.StringIO(), io.StringIO()
        with redirect_stdout(out), redirect_stderr(err):
            code = main(argv + list(args))
        return code, out.getvalue()

    def engine(self):
        return CaseWorkflowEngine.from_config({
            "database": {"path": self.db},
            "audit": {"path": self.audit_db},
        })

    def test_no_command(self):
        code, _ = self.run_cli()
        self.assertEqual(code, 1)

    def test_parser(self):
        args = build_parser().parse_args(["meetings", "--add", "2026-11-03", "--id", "m1"])
        self.assertEqual(args.command, "meetings")
        self.assertEqual(args.add, "2026-11-03")

    def test_stats_empty(self):
        code, out = self.run_cli("stats")
        self.assertEqual(code, 0)
        self.assertEqual(json.loads(out), {"cases": {}, "consensus_reports": 0})

    def test_schedule_and_list_meetings(self):
        upcoming = (date.today() + timedelta(days=7)).isoformat()
        code, out = self.run_cli("meetings", "--add", upcoming, "--id", "mtg_1",
                                 "--description", "Tumour board")
        self.assertEqual(code, 0)
        self.assertIn("mtg_1", out)

        code, out = self.run_cli("meetings")
        self.assertEqual(code, 0)
        self.assertIn("mtg_1", out)
        self.assertIn("Tumour board", out)

    def test_bad_meeting_date(self):
        code, _ = self.run_cli("meetings", "--add", "next tuesday")
        self.assertEqual(code, 2)

    def test_show_and_trail(self):
        upcoming = (date.today() + timedelta(days=7)).isoformat()
        self.run_cli("meetings", "--add", upcoming, "--id", "mtg_1")
        engine = self.engine()
        try:
            case = engine.create_case(CONSULTANT_A, patient(), "onc")
            engine.submit_case(CONSULTANT_A, case.case_id, "mtg_1")
        finally:
            engine.close()

        code, out = self.run_cli("show", case.case_id)
        self.assertEqual(code, 0)
        shown = json.loads(out)
        self.assertEqual(shown["case"]["status"], "submitted")
        self.assertIsNone(shown["consensus"])

        code, out = self.run_cli("trail", case.case_id)
        self.assertEqual(code, 0)
        self.assertIn("CASE_CREATE", out)
        self.assertIn("CASE_SUBMIT", out)

        code, out = self.run_cli("verify-audit")
        self.assertEqual(code, 0)
        self.assertIn("Chain intact (2 events)", out)

    def test_show_missing(self):
        code, _ = self.run_cli("show", "case_missing")
        self.assertEqual(code, 1)

    def test_trail_without_audit(self):
        code, _ = self.run_cli("trail", "case_x", audit=False)
        self.assertEqual(code, 1)

    def test_sweep_once(self):
        past = (date.today() - timedelta(days=2)).isoformat()
        self.run_cli("meetings", "--add", past, "--id", "mtg_old")
        engine = self.engine()
        try:
            case = engine.create_case(CONSULTANT_A, patient(), "onc")
            engine.submit_case(CONSULTANT_A, case.case_id, "mtg_old")
        finally:
            engine.close()

        code, out = self.run_cli("sweep")
        self.assertEqual(code, 0)
        self.assertEqual(json.loads(out)["cases_demoted"], 1)

        code, out = self.run_cli("stats")
        self.assertEqual(json.loads(out)["cases"], {"pending": 1})


if __name__ == "__main__":
    unittest.main()
