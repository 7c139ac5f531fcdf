"""
Casework — Case State Machine Tests

Tests:
  - create: DRAFT, validation, department guard, viewer denied
  - submit: DRAFT only, sets meeting and submitted_at once, guard leaves case unchanged
  - resubmit: REVIEWED only, optional meeting re-link, report kept
  - archive: from every non-terminal state, terminal afterwards
  - update_details: draft edits by creator, coordinator-only afterwards
  - transition table and timestamp rules
  - post-commit audit + notifications, collaborator failures swallowed
"""

import os
import sys
import unittest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from casework_fixtures import (
    ADMIN, CONSENSUS, CONSULTANT_A, CONSULTANT_A2, CONSULTANT_B, COORDINATOR, NOW, VIEWER,
    make_harness, patient,
)

from casework.errors import (
    Forbidden, InvalidTransition, MeetingUnavailable, NotFound, ValidationFailed,
)
from casework.machine import apply_status
from casework.types import AUDIENCE_ALL, Case, CaseStatus, EventType


class _EngineTestCase(unittest.TestCase):

    def setUp(self):
        self.h = make_harness()
        self.engine = self.h.engine

    def tearDown(self):
        self.h.close()


class TestCreate(_EngineTestCase):

    def test_create_starts_in_draft(self):
        case = self.h.draft()
        self.assertEqual(case.status, CaseStatus.DRAFT)
        self.assertEqual(case.created_by_id, CONSULTANT_A.user_id)
        self.assertIsNone(case.assigned_meeting_id)
        self.assertIsNone(case.submitted_at)
        stored = self.h.store.get_case(case.case_id)
        self.assertEqual(stored.patient.patient_name, "Jane Roe")

    def test_consultant_other_department_forbidden(self):
        with self.assertRaises(Forbidden):
            self.engine.create_case(CONSULTANT_A, patient(), "neuro")

    def test_admin_any_department(self):
        case = self.engine.create_case(ADMIN, patient(), "neuro")
        self.assertEqual(case.presenting_department_id, "neuro")

    def test_viewer_cannot_create(self):
        with self.assertRaises(Forbidden):
            self.engine.create_case(VIEWER, patient(), "onc")

    def test_invalid_patient(self):
        with self.assertRaises(ValidationFailed) as ctx:
            self.engine.create_case(CONSULTANT_A, patient(age=0, patient_name=""), "onc")
        self.assertTrue(any("age" in e for e in ctx.exception.errors))
        self.assertTrue(any("patient_name" in e for e in ctx.exception.errors))
        self.assertEqual(self.h.store.stats()["cases"], {})

    def test_missing_department_is_a_validation_error(self):
        for actor in (COORDINATOR, CONSULTANT_A):
            with self.assertRaises(ValidationFailed) as ctx:
                self.engine.create_case(actor, patient(), "")
            self.assertIn("presenting_department_id is required", ctx.exception.errors)
        self.assertEqual(self.h.store.stats()["cases"], {})

    def test_create_audited(self):
        case = self.h.draft()
        trail = self.h.audit.get_trail(case.case_id)
        self.assertEqual([e.action for e in trail], ["CASE_CREATE"])


class TestSubmit(_EngineTestCase):

    def test_submit_sets_meeting_and_timestamp(self):
        case = self.h.draft()
        self.h.clock.tick(60)
        submitted = self.engine.submit_case(CONSULTANT_A, case.case_id, "m_next")
        self.assertEqual(submitted.status, CaseStatus.SUBMITTED)
        self.assertEqual(submitted.assigned_meeting_id, "m_next")
        self.assertEqual(submitted.submitted_at, NOW + 60)

    def test_submit_non_draft_is_invalid_and_unchanged(self):
        case = self.h.submitted()
        before = self.h.store.get_case(case.case_id)
        with self.assertRaises(InvalidTransition):
            self.engine.submit_case(CONSULTANT_A, case.case_id, "m_later")
        after = self.h.store.get_case(case.case_id)
        self.assertEqual(after.to_dict(), before.to_dict())

    def test_submit_to_unavailable_meeting(self):
        case = self.h.draft()
        for meeting_id in ("m_cancelled", "m_completed", "m_missing"):
            with self.assertRaises(MeetingUnavailable):
                self.engine.submit_case(CONSULTANT_A, case.case_id, meeting_id)
        self.assertEqual(self.h.store.get_case(case.case_id).status, CaseStatus.DRAFT)

    def test_submit_unknown_case(self):
        with self.assertRaises(NotFound):
            self.engine.submit_case(ADMIN, "case_nope", "m_next")

    def test_submit_by_coordinator_for_someone_else(self):
        case = self.h.draft()
        submitted = self.engine.submit_case(COORDINATOR, case.case_id, "m_next")
        self.assertEqual(submitted.status, CaseStatus.SUBMITTED)

    def test_submit_by_other_consultant_forbidden(self):
        case = self.h.draft()
        with self.assertRaises(Forbidden):
            self.engine.submit_case(CONSULTANT_A2, case.case_id, "m_next")
        with self.assertRaises(Forbidden):
            self.engine.submit_case(CONSULTANT_B, case.case_id, "m_next")

    def test_forbidden_checked_before_status(self):
        case = self.h.submitted()
        with self.assertRaises(Forbidden):
            self.engine.submit_case(CONSULTANT_B, case.case_id, "m_next")

    def test_submit_broadcasts(self):
        case = self.h.submitted()
        events = self.h.dispatcher.of_type(EventType.CASE_SUBMITTED)
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].case_id, case.case_id)
        self.assertEqual(events[0].recipients, [AUDIENCE_ALL])
        self.assertEqual(events[0].meeting_id, "m_next")

    def test_submit_audited(self):
        case = self.h.submitted()
        actions = [e.action for e in self.h.audit.get_trail(case.case_id)]
        self.assertEqual(actions, ["CASE_CREATE", "CASE_SUBMIT"])


class TestResubmit(_EngineTestCase):

    def test_resubmit_without_meeting_keeps_assignment(self):
        case = self.h.reviewed()
        resubmitted = self.engine.resubmit_case(CONSULTANT_A, case.case_id)
        self.assertEqual(resubmitted.status, CaseStatus.RESUBMITTED)
        self.assertEqual(resubmitted.assigned_meeting_id, "m_next")
        self.assertEqual(self.h.dispatcher.of_type(EventType.CASE_RESUBMITTED), [])

    def test_resubmit_with_meeting_relinks_and_broadcasts(self):
        case = self.h.reviewed()
        resubmitted = self.engine.resubmit_case(CONSULTANT_A, case.case_id, "m_later")
        self.assertEqual(resubmitted.assigned_meeting_id, "m_later")
        events = self.h.dispatcher.of_type(EventType.CASE_RESUBMITTED)
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].recipients, [AUDIENCE_ALL])

    def test_resubmit_requires_reviewed(self):
        case = self.h.submitted()
        with self.assertRaises(InvalidTransition):
            self.engine.resubmit_case(CONSULTANT_A, case.case_id)

    def test_resubmit_to_cancelled_meeting(self):
        case = self.h.reviewed()
        with self.assertRaises(MeetingUnavailable):
            self.engine.resubmit_case(CONSULTANT_A, case.case_id, "m_cancelled")
        self.assertEqual(self.h.store.get_case(case.case_id).status, CaseStatus.REVIEWED)

    def test_resubmit_keeps_consensus_report(self):
        case = self.h.reviewed()
        self.engine.resubmit_case(CONSULTANT_A, case.case_id)
        self.assertIsNotNone(self.h.store.get_report(case.case_id))


class TestArchive(_EngineTestCase):

    def test_archive_from_every_non_terminal_state(self):
        cases = [self.h.draft(), self.h.submitted(), self.h.reviewed()]
        resubmitted = self.h.reviewed()
        self.engine.resubmit_case(CONSULTANT_A, resubmitted.case_id)
        cases.append(resubmitted)
        for case in cases:
            archived = self.engine.archive_case(COORDINATOR, case.case_id)
            self.assertEqual(archived.status, CaseStatus.ARCHIVED)
            self.assertEqual(archived.archived_at, NOW)

    def test_archive_is_terminal(self):
        case = self.h.draft()
        self.engine.archive_case(ADMIN, case.case_id)
        with self.assertRaises(InvalidTransition):
            self.engine.archive_case(ADMIN, case.case_id)
        with self.assertRaises(InvalidTransition):
            self.engine.submit_case(ADMIN, case.case_id, "m_next")
        with self.assertRaises(InvalidTransition):
            self.engine.create_consensus(ADMIN, case.case_id, dict(CONSENSUS))

    def test_consultant_cannot_archive(self):
        case = self.h.draft()
        with self.assertRaises(Forbidden):
            self.engine.archive_case(CONSULTANT_A, case.case_id)

    def test_archived_at_only_when_archived(self):
        case = self.h.reviewed()
        self.assertIsNone(case.archived_at)
        archived = self.engine.archive_case(COORDINATOR, case.case_id)
        self.assertIsNotNone(archived.archived_at)


class TestUpdateDetails(_EngineTestCase):

    def test_creator_edits_draft(self):
        case = self.h.draft()
        updated = self.engine.update_case_details(
            CONSULTANT_A, case.case_id, {"question": "Radiotherapy?", "age": 59},
        )
        self.assertEqual(updated.patient.question, "Radiotherapy?")
        self.assertEqual(updated.patient.age, 59)
        self.assertEqual(updated.patient.mrn, "MRN-0042")

    def test_consultant_cannot_edit_after_submit(self):
        case = self.h.submitted()
        with self.assertRaises(Forbidden):
            self.engine.update_case_details(CONSULTANT_A, case.case_id, {"age": 60})
        updated = self.engine.update_case_details(COORDINATOR, case.case_id, {"age": 60})
        self.assertEqual(updated.patient.age, 60)

    def test_unknown_or_invalid_fields(self):
        case = self.h.draft()
        with self.assertRaises(ValidationFailed):
            self.engine.update_case_details(CONSULTANT_A, case.case_id, {"status": "reviewed"})
        with self.assertRaises(ValidationFailed):
            self.engine.update_case_details(CONSULTANT_A, case.case_id, {"age": -3})
        with self.assertRaises(ValidationFailed):
            self.engine.update_case_details(CONSULTANT_A, case.case_id, {})

    def test_archived_case_not_editable(self):
        case = self.h.draft()
        self.engine.archive_case(ADMIN, case.case_id)
        with self.assertRaises(InvalidTransition):
            self.engine.update_case_details(ADMIN, case.case_id, {"age": 60})


class TestApplyStatus(unittest.TestCase):

    def _case(self, status):
        case = Case.create("u", "onc", patient(), now=NOW)
        case.status = status
        return case

    def test_submitted_at_set_once(self):
        case = self._case(CaseStatus.DRAFT)
        apply_status(case, CaseStatus.SUBMITTED, NOW + 1)
        apply_status(case, CaseStatus.PENDING, NOW + 2)
        apply_status(case, CaseStatus.SUBMITTED, NOW + 3)
        self.assertEqual(case.submitted_at, NOW + 1)

    def test_reviewed_at_refreshed(self):
        case = self._case(CaseStatus.SUBMITTED)
        apply_status(case, CaseStatus.REVIEWED, NOW + 1)
        apply_status(case, CaseStatus.REVIEWED, NOW + 5)
        self.assertEqual(case.reviewed_at, NOW + 5)

    def test_disallowed_transitions(self):
        with self.assertRaises(InvalidTransition):
            apply_status(self._case(CaseStatus.REVIEWED), CaseStatus.PENDING, NOW)
        with self.assertRaises(InvalidTransition):
            apply_status(self._case(CaseStatus.DRAFT), CaseStatus.RESUBMITTED, NOW)
        with self.assertRaises(InvalidTransition):
            apply_status(self._case(CaseStatus.ARCHIVED), CaseStatus.ARCHIVED, NOW)


class _BrokenCollaborator:
    def record(self, *args, **kwargs):
        raise RuntimeError("audit store down")

    def notify(self, event):
        raise RuntimeError("webhook down")


class TestCollaboratorFailures(unittest.TestCase):

    def test_failures_do_not_fail_the_operation(self):
        h = make_harness()
        broken = _BrokenCollaborator()
        h.engine.machine.audit = broken
        h.engine.machine.dispatcher = broken
        try:
            case = h.draft()
            submitted = h.engine.submit_case(CONSULTANT_A, case.case_id, "m_next")
            self.assertEqual(submitted.status, CaseStatus.SUBMITTED)
            self.assertEqual(h.store.get_case(case.case_id).status, CaseStatus.SUBMITTED)
        finally:
            h.close()


if __name__ == "__main__":
    unittest.main()
