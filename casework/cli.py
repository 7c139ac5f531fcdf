"""
Casework — Operator CLI

Housekeeping commands against a configured deployment. These run as
the operator, outside the actor-based permission model.

Usage:
    # Run the reconciliation sweep once (or keep running with --watch)
    casework sweep [--watch]

    # Case counts by status
    casework stats

    # Show a case with its consensus report
    casework show <case_id>

    # Audit trail for a case, and chain verification
    casework trail <case_id>
    casework verify-audit

    # List or schedule meetings
    casework meetings [--all]
    casework meetings --add 2026-11-03 [--id mtg_nov03] [--description "Tumour board"]
"""

import argparse
import json
import sys
import time
from datetime import date
from pathlib import Path

from casework.runtime import CaseWorkflowEngine
from casework.store import SQLiteMeetingRepository
from casework.types import Meeting, new_id
from services.config import deep_merge, load_config
from services.logging import configure_logging_from_config


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_sweep(args, engine: CaseWorkflowEngine) -> int:
    if not args.watch:
        _print_json(engine.run_reconciliation_sweep().to_dict())
        return 0

    scheduler = engine.start_scheduler()
    print(f"Sweeping every {scheduler.interval_seconds:.0f}s (Ctrl-C to stop)",
          file=sys.stderr)
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        scheduler.stop()
    return 0


def cmd_stats(args, engine: CaseWorkflowEngine) -> int:
    _print_json(engine.stats())
    return 0


def cmd_show(args, engine: CaseWorkflowEngine) -> int:
    case = engine.store.get_case(args.case_id)
    if case is None:
        print(f"Error: case {args.case_id} not found", file=sys.stderr)
        return 1
    report = engine.store.get_report(args.case_id)
    _print_json({
        "case": case.to_dict(),
        "consensus": report.to_dict() if report else None,
    })
    return 0


def cmd_trail(args, engine: CaseWorkflowEngine) -> int:
    get_trail = getattr(engine.audit, "get_trail", None)
    if get_trail is None:
        print("Error: audit trail is disabled (audit.path is empty)", file=sys.stderr)
        return 1
    events = get_trail(args.case_id)
    if not events:
        print(f"No audit events for {args.case_id}.")
        return 0

    print(f"\nAudit Trail: {args.case_id} ({len(events)} events)")
    print(f"{'─' * 70}")
    for e in events:
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(e.timestamp))
        print(f"  {ts}  {e.action:20s} {e.actor_id:16s} {json.dumps(e.details, default=str)}")
    return 0


def cmd_verify_audit(args, engine: CaseWorkflowEngine) -> int:
    verify = getattr(engine.audit, "verify_chain", None)
    if verify is None:
        print("Error: audit trail is disabled (audit.path is empty)", file=sys.stderr)
        return 1
    ok, message = verify()
    print(f"{'✓' if ok else '✗'} {message}")
    return 0 if ok else 2


def cmd_meetings(args, engine: CaseWorkflowEngine) -> int:
    if args.add:
        repo = engine.meeting_repository
        if not isinstance(repo, SQLiteMeetingRepository):
            print("Error: meetings are managed outside this database", file=sys.stderr)
            return 1
        try:
            meeting_date = date.fromisoformat(args.add)
        except ValueError:
            print(f"Error: not a date: {args.add}", file=sys.stderr)
            return 2
        meeting = repo.save(Meeting(
            meeting_id=args.id or new_id("mtg"),
            date=meeting_date,
            description=args.description or "",
        ))
        print(f"Scheduled {meeting.meeting_id} on {meeting.date.isoformat()}")
        return 0

    meetings = engine.candidate_meetings(upcoming_only=not args.all)
    if not meetings:
        print("No meetings.")
        return 0
    print(f"\nMeetings ({len(meetings)})")
    print(f"{'─' * 70}")
    for m in meetings:
        print(f"  {m.date.isoformat()}  {m.meeting_id:20s} {m.status.value:10s} {m.description}")
    return 0


_COMMANDS = {
    "sweep": cmd_sweep,
    "stats": cmd_stats,
    "show": cmd_show,
    "trail": cmd_trail,
    "verify-audit": cmd_verify_audit,
    "meetings": cmd_meetings,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="casework",
        description="MDT case workflow engine: operator commands",
    )
    parser.add_argument("--config", default="config/casework.yaml",
                        help="Base config file")
    parser.add_argument("--env", default="", help="Config overlay (dev, prod, ...)")
    parser.add_argument("--db", help="Override database.path")
    parser.add_argument("--audit-db", help="Override audit.path")
    parser.add_argument("--log-level", default="", help="Override logging.level")

    subs = parser.add_subparsers(dest="command")

    sweep_p = subs.add_parser("sweep", help="Run the reconciliation sweep")
    sweep_p.add_argument("--watch", action="store_true",
                         help="Keep sweeping at sweep.interval_seconds")

    subs.add_parser("stats", help="Case counts by status")

    show_p = subs.add_parser("show", help="Show a case and its consensus report")
    show_p.add_argument("case_id")

    trail_p = subs.add_parser("trail", help="Audit trail for a case")
    trail_p.add_argument("case_id")

    subs.add_parser("verify-audit", help="Verify the audit hash chain")

    meetings_p = subs.add_parser("meetings", help="List or schedule meetings")
    meetings_p.add_argument("--all", action="store_true",
                            help="Include past meetings")
    meetings_p.add_argument("--add", metavar="DATE",
                            help="Schedule a meeting on DATE (YYYY-MM-DD)")
    meetings_p.add_argument("--id", help="Meeting id for --add")
    meetings_p.add_argument("--description", help="Description for --add")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    if not Path(args.config).exists():
        print(f"Warning: config not found at {args.config}, using defaults",
              file=sys.stderr)
    config = load_config(args.config, env=args.env)
    overrides: dict = {}
    if args.db:
        overrides["database"] = {"path": args.db}
    if args.audit_db:
        overrides["audit"] = {"path": args.audit_db}
    if args.log_level:
        overrides["logging"] = {"level": args.log_level}
    config = deep_merge(config, overrides)

    configure_logging_from_config(config, default_level="WARNING")
    engine = CaseWorkflowEngine.from_config(config)
    try:
        return _COMMANDS[args.command](args, engine)
    finally:
        engine.close()


if __name__ == "__main__":
    sys.exit(main())
