"""
Casework — API Server

FastAPI adapter over CaseWorkflowEngine. The caller's identity arrives
in X-Actor-Id / X-Actor-Role / X-Actor-Department headers set by the
authenticating gateway in front of this service.

  POST   /v1/cases                         — create a case (DRAFT)
  GET    /v1/cases                         — list visible cases
  GET    /v1/cases/{id}                    — case detail
  PATCH  /v1/cases/{id}                    — edit patient details
  GET    /v1/cases/{id}/permissions        — capability map
  POST   /v1/cases/{id}/submit             — submit to a meeting
  POST   /v1/cases/{id}/meeting            — assign a meeting
  PUT    /v1/cases/{id}/meeting            — reassign (null = unassign)
  DELETE /v1/cases/{id}/meeting            — unassign
  POST   /v1/cases/{id}/resubmit           — resubmit a reviewed case
  POST   /v1/cases/{id}/archive            — archive
  GET    /v1/cases/{id}/consensus          — consensus report
  POST   /v1/cases/{id}/consensus          — record consensus
  PATCH  /v1/cases/{id}/consensus          — amend consensus
  GET    /v1/cases/{id}/trail              — audit trail
  GET    /v1/meetings                      — candidate meetings
  POST   /v1/meetings/{id}/relocate        — move cases off a meeting
  POST   /v1/sweep                         — run the reconciliation sweep
  GET    /v1/stats                         — case statistics
  GET    /health                           — liveness

Usage:
    uvicorn api.server:app --host 0.0.0.0 --port 8000

Requires: pip install fastapi uvicorn
"""

import json
import logging
import os
import time
from typing import Any

from casework.errors import CaseworkError, Forbidden, ValidationFailed

logger = logging.getLogger("casework.api")


def create_app(engine: Any = None, config_path: str = "config/casework.yaml") -> Any:
    """
    Create and configure the FastAPI application.

    Pass an engine to share one with the caller (tests, embedding);
    otherwise one is built from config on first use.
    """
    from fastapi import FastAPI, Request
    from fastapi.responses import JSONResponse

    from api.models import ActorHeaders, CaseCreateRequest, MeetingTarget, RelocationRequest
    from casework.runtime import CaseWorkflowEngine
    from casework.types import CaseStatus

    app = FastAPI(
        title="Casework API",
        version="0.1.0",
        description="MDT case lifecycle and consensus workflow engine",
    )

    # ── State ────────────────────────────────────────────────

    _engine: CaseWorkflowEngine | None = engine

    def get_engine() -> CaseWorkflowEngine:
        nonlocal _engine
        if _engine is None:
            from services.config import load_config
            from services.logging import configure_logging_from_config

            config = load_config(config_path)
            configure_logging_from_config(config)
            _engine = CaseWorkflowEngine.from_config(config)
        return _engine

    def actor_of(request: Request):
        headers = ActorHeaders.from_headers(request.headers)
        errors = headers.validate()
        if errors:
            raise ValidationFailed("Missing or invalid actor headers", errors=errors)
        return headers.to_actor()

    async def body_of(request: Request) -> dict[str, Any]:
        raw = await request.body()
        if not raw:
            return {}
        try:
            body = json.loads(raw)
        except ValueError:
            raise ValidationFailed(errors=["request body must be valid JSON"])
        if not isinstance(body, dict):
            raise ValidationFailed(errors=["request body must be a JSON object"])
        return body

    def check(errors: list[str]) -> None:
        if errors:
            raise ValidationFailed(errors=errors)

    # ── Errors ───────────────────────────────────────────────

    @app.exception_handler(CaseworkError)
    async def casework_error(request: Request, exc: CaseworkError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # ── Lifecycle ─────────────────────────────────────────────

    @app.on_event("shutdown")
    async def shutdown():
        if _engine is not None and engine is None:
            _engine.close()

    # ── Cases ─────────────────────────────────────────────────

    @app.post("/v1/cases")
    async def create_case(request: Request):
        actor = actor_of(request)
        req = CaseCreateRequest.from_body(await body_of(request))
        check(req.validate())
        case = get_engine().create_case(actor, req.to_patient(), req.presenting_department_id)
        return JSONResponse(status_code=201, content=case.to_dict())

    @app.get("/v1/cases")
    async def list_cases(
        request: Request,
        status: str | None = None,
        department_id: str | None = None,
        meeting_id: str | None = None,
        limit: int = 500,
    ):
        actor = actor_of(request)
        try:
            status_filter = CaseStatus(status) if status else None
        except ValueError:
            raise ValidationFailed(errors=[f"unknown status: {status}"])
        cases = get_engine().list_cases(
            actor, status=status_filter, department_id=department_id,
            meeting_id=meeting_id, limit=limit,
        )
        return JSONResponse(content={
            "count": len(cases),
            "cases": [c.to_dict() for c in cases],
        })

    @app.get("/v1/cases/{case_id}")
    async def get_case(case_id: str, request: Request):
        case = get_engine().get_case(actor_of(request), case_id)
        return JSONResponse(content=case.to_dict())

    @app.patch("/v1/cases/{case_id}")
    async def update_case(case_id: str, request: Request):
        actor = actor_of(request)
        case = get_engine().update_case_details(actor, case_id, await body_of(request))
        return JSONResponse(content=case.to_dict())

    @app.get("/v1/cases/{case_id}/permissions")
    async def case_permissions(case_id: str, request: Request):
        caps = get_engine().capabilities(actor_of(request), case_id)
        return JSONResponse(content={"case_id": case_id, "permissions": caps})

    # ── Meeting linkage ───────────────────────────────────────

    @app.post("/v1/cases/{case_id}/submit")
    async def submit_case(case_id: str, request: Request):
        actor = actor_of(request)
        target = MeetingTarget.from_body(await body_of(request))
        check(target.validate(required=True))
        case = get_engine().submit_case(actor, case_id, target.value)
        return JSONResponse(content=case.to_dict())

    @app.post("/v1/cases/{case_id}/meeting")
    async def assign_meeting(case_id: str, request: Request):
        actor = actor_of(request)
        target = MeetingTarget.from_body(await body_of(request))
        check(target.validate(required=True))
        case = get_engine().assign_meeting(actor, case_id, target.value)
        return JSONResponse(content=case.to_dict())

    @app.put("/v1/cases/{case_id}/meeting")
    async def reassign_meeting(case_id: str, request: Request):
        actor = actor_of(request)
        target = MeetingTarget.from_body(await body_of(request))
        check(target.validate(required=True, nullable=True))
        case = get_engine().reassign_meeting(actor, case_id, target.value)
        return JSONResponse(content=case.to_dict())

    @app.delete("/v1/cases/{case_id}/meeting")
    async def unassign_meeting(case_id: str, request: Request):
        case = get_engine().unassign_meeting(actor_of(request), case_id)
        return JSONResponse(content=case.to_dict())

    @app.post("/v1/cases/{case_id}/resubmit")
    async def resubmit_case(case_id: str, request: Request):
        actor = actor_of(request)
        target = MeetingTarget.from_body(await body_of(request))
        check(target.validate(required=False, nullable=True))
        case = get_engine().resubmit_case(actor, case_id, target.value)
        return JSONResponse(content=case.to_dict())

    @app.post("/v1/cases/{case_id}/archive")
    async def archive_case(case_id: str, request: Request):
        case = get_engine().archive_case(actor_of(request), case_id)
        return JSONResponse(content=case.to_dict())

    # ── Consensus ─────────────────────────────────────────────

    @app.get("/v1/cases/{case_id}/consensus")
    async def get_consensus(case_id: str, request: Request):
        report = get_engine().get_consensus(actor_of(request), case_id)
        return JSONResponse(content=report.to_dict())

    @app.post("/v1/cases/{case_id}/consensus")
    async def create_consensus(case_id: str, request: Request):
        actor = actor_of(request)
        report = get_engine().create_consensus(actor, case_id, await body_of(request))
        return JSONResponse(status_code=201, content=report.to_dict())

    @app.patch("/v1/cases/{case_id}/consensus")
    async def update_consensus(case_id: str, request: Request):
        actor = actor_of(request)
        report = get_engine().update_consensus(actor, case_id, await body_of(request))
        return JSONResponse(content=report.to_dict())

    # ── Audit Trail ───────────────────────────────────────────

    @app.get("/v1/cases/{case_id}/trail")
    async def get_case_trail(case_id: str, request: Request):
        eng = get_engine()
        eng.get_case(actor_of(request), case_id)
        get_trail = getattr(eng.audit, "get_trail", None)
        events = get_trail(case_id) if get_trail else []
        return JSONResponse(content={
            "case_id": case_id,
            "count": len(events),
            "events": [e.to_dict() for e in events[:100]],
        })

    # ── Meetings ──────────────────────────────────────────────

    @app.get("/v1/meetings")
    async def list_meetings(request: Request, upcoming: bool = True):
        actor_of(request)
        meetings = get_engine().candidate_meetings(upcoming_only=upcoming)
        return JSONResponse(content={
            "count": len(meetings),
            "meetings": [
                {
                    "meeting_id": m.meeting_id,
                    "date": m.date.isoformat(),
                    "status": m.status.value,
                    "description": m.description,
                }
                for m in meetings
            ],
        })

    @app.post("/v1/meetings/{meeting_id}/relocate")
    async def relocate_cases(meeting_id: str, request: Request):
        actor = actor_of(request)
        req = RelocationRequest.from_body(await body_of(request))
        check(req.validate())
        cases = get_engine().relocate_meeting_cases(actor, meeting_id, req.reassignments)
        return JSONResponse(content={
            "meeting_id": meeting_id,
            "relocated": len(cases),
            "cases": [c.to_dict() for c in cases],
        })

    # ── Reconciliation & Stats ────────────────────────────────

    @app.post("/v1/sweep")
    async def run_sweep(request: Request):
        if not actor_of(request).is_coordinator:
            raise Forbidden()
        result = get_engine().run_reconciliation_sweep()
        return JSONResponse(content=result.to_dict())

    @app.get("/v1/stats")
    async def get_stats(request: Request):
        actor_of(request)
        return JSONResponse(content=get_engine().stats())

    # ── Health ────────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return JSONResponse(content={
            "status": "ok",
            "timestamp": time.time(),
        })

    return app


# ── Module-level app for uvicorn ──────────────────────────────

try:
    app = create_app(config_path=os.environ.get("MDT_CONFIG", "config/casework.yaml"))
except ImportError:
    # FastAPI not installed; app creation deferred
    app = None
