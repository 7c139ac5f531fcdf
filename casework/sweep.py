"""
Casework — Reconciliation Sweep

Demotes SUBMITTED cases whose meeting date has passed without a
consensus report to PENDING. Housekeeping only: no notifications, the
assigned meeting is left in place.

Selection happens outside the write lock (meeting lookups may be
remote). The batch write re-checks status, meeting id and the absence
of a report, so a case that moved on in between is skipped.

Safe to run at any frequency and concurrently with user operations.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from typing import Callable

from casework.ports import MeetingRepository
from casework.store import CaseStore
from services.logging import TransitionLogger

logger = logging.getLogger("casework.sweep")


@dataclass
class SweepResult:
    cases_demoted: int = 0
    candidates_scanned: int = 0
    meetings_checked: int = 0
    elapsed_seconds: float = 0.0

    def to_dict(self) -> dict:
        return {
            "cases_demoted": self.cases_demoted,
            "candidates_scanned": self.candidates_scanned,
            "meetings_checked": self.meetings_checked,
            "elapsed_seconds": round(self.elapsed_seconds, 4),
        }


class ReconciliationSweep:
    """One idempotent pass over stale SUBMITTED cases."""

    def __init__(
        self,
        store: CaseStore,
        meetings: MeetingRepository,
        clock: Callable[[], float] = time.time,
        tlog: TransitionLogger | None = None,
    ):
        self.store = store
        self.meetings = meetings
        self.clock = clock
        self.tlog = tlog or TransitionLogger(component="sweep")

    def run(self) -> SweepResult:
        started = time.perf_counter()
        now = self.clock()
        today = date.fromtimestamp(now)

        candidates = self.store.find_stale_candidates()
        by_meeting: dict[str, list[str]] = defaultdict(list)
        for case_id, meeting_id in candidates:
            by_meeting[meeting_id].append(case_id)

        stale: dict[str, list[str]] = {}
        for meeting_id, case_ids in by_meeting.items():
            meeting = self.meetings.get(meeting_id)
            if meeting is None:
                logger.warning(
                    "Meeting %s referenced by %d cases not found; skipped",
                    meeting_id, len(case_ids),
                )
                continue
            # Date-only comparison: a meeting today is not stale yet
            if meeting.date < today:
                stale[meeting_id] = case_ids

        demoted = 0
        if stale:
            with self.store.transaction():
                for meeting_id, case_ids in stale.items():
                    demoted += self.store.demote_to_pending(meeting_id, case_ids, now)

        result = SweepResult(
            cases_demoted=demoted,
            candidates_scanned=len(candidates),
            meetings_checked=len(by_meeting),
            elapsed_seconds=time.perf_counter() - started,
        )
        self.tlog.on_sweep(demoted, len(candidates), result.elapsed_seconds)
        return result


class SweepScheduler:
    """
    Runs a sweep every ``interval_seconds`` on a daemon thread.

    Usage:
        scheduler = SweepScheduler(sweep, interval_seconds=300)
        scheduler.start()
        ...
        scheduler.stop()
    """

    def __init__(self, sweep: ReconciliationSweep, interval_seconds: float = 300.0):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.sweep = sweep
        self.interval_seconds = interval_seconds
        self.runs = 0
        self.last_result: SweepResult | None = None
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, name="casework-sweep", daemon=True,
        )
        self._thread.start()
        logger.info("Sweep scheduler started (every %.0fs)", self.interval_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Sweep scheduler stopped after %d runs", self.runs)

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.last_result = self.sweep.run()
            except Exception:
                # Next tick retries; the sweep is idempotent
                logger.exception("Reconciliation sweep failed")
            self.runs += 1
            self._stop.wait(self.interval_seconds)
