"""
Casework - API Server

FastAPI application serving:
  POST /v1/cases                              open a case
  GET  /v1/cases/{id}                         case snapshot
  POST /v1/cases/{id}/transition              governed state change
  GET  /v1/cases/{id}/timeline                audit read (audience=internal|public)
  GET  /v1/cases/{id}/decisions               decision logs
  GET  /v1/cases/{id}/pendencies              pendencies of a case
  POST /v1/pendencies/{id}/answer|approve|dismiss
  POST /v1/presence/punch                     record a punch
  POST /v1/presence/cases/{id}/justify        answer justification pendencies
  POST /v1/presence/cases/{id}/close          close the day (human)
  POST /v1/presence/punches/{id}/adjust       adjust a punch (human)
  GET  /v1/presence/employees/{ref}/ledger    bank-hour ledger and balance
  POST /v1/classification/suggest             category suggestion
  POST /v1/classification/learn               feedback on a suggestion
  GET  /v1/messages                           outbound messages
  POST /v1/messages/{id}/approve|reject       human dispatch decision
  GET  /v1/journeys/{key}/board               cases grouped by state
  GET  /v1/stats                              case and pendency counts
  GET  /v1/audit/verify                       hash-chain check for the tenant
  GET  /health                                liveness
  GET  /ready                                 readiness

Every /v1 request carries X-Tenant-Id, and optionally X-Actor-Id,
X-Actor-Type (human | system | ai) and X-Trace-Id.

Usage:
    uvicorn api.server:app --host 0.0.0.0 --port 8080
"""

from __future__ import annotations

import logging
import os
import time
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api.models import (
    AdjustPunchRequest,
    CaseOpenRequest,
    JustifyRequest,
    LearnRequest,
    PendencyAnswer,
    PunchSubmission,
    SuggestRequest,
    TransitionRequest,
)
from core.config import get_config
from core.context import RequestContext
from core.errors import (
    EngineError,
    HumanApprovalRequired,
    NotFound,
    ValidationError,
)
from core.logging import configure_logging
from journeys.runtime import Engine, build_engine
from journeys.types import Journey

logger = logging.getLogger("casework.api")


def status_for(error: EngineError) -> int:
    if isinstance(error, NotFound):
        return 404
    if isinstance(error, ValidationError):
        return 422
    if isinstance(error, HumanApprovalRequired):
        return 403
    return 409


def context_from(request: Request) -> RequestContext:
    kwargs: dict[str, Any] = {
        "tenant_id": request.headers.get("x-tenant-id", ""),
        "actor_type": request.headers.get("x-actor-type", "human"),
        "actor_ref": request.headers.get("x-actor-id"),
    }
    if request.headers.get("x-trace-id"):
        kwargs["trace_id"] = request.headers["x-trace-id"]
    return RequestContext(**kwargs)


async def _json(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("request body must be JSON")
    if not isinstance(body, dict):
        raise ValidationError("request body must be a JSON object")
    return body


def _invalid(errors: list[str]) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={"ok": False, "reason": "validation_error", "errors": errors},
    )


def create_app(project_root: str = ".", engine: Engine | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Pass ``engine`` to serve a pre-built engine (tests); otherwise it is
    built from config on first use.
    """
    app = FastAPI(
        title="Casework API",
        version="0.1.0",
        description="Governed journey engine",
    )

    # ── State ────────────────────────────────────────────────

    _engine: Engine | None = engine
    _owns_engine = engine is None

    def get_engine() -> Engine:
        nonlocal _engine
        if _engine is None:
            config = get_config(project_root=project_root)
            configure_logging(level=config.get("logging.level", "INFO"))
            _engine = build_engine(config)
        return _engine

    # ── Lifecycle ─────────────────────────────────────────────

    @app.on_event("shutdown")
    async def shutdown():
        # Injected engines belong to the caller
        if _engine is not None and _owns_engine:
            _engine.close()

    @app.exception_handler(EngineError)
    async def engine_error(request: Request, exc: EngineError):
        headers = {"Retry-After": "1"} if exc.retryable else None
        return JSONResponse(status_code=status_for(exc), content=exc.to_dict(), headers=headers)

    # ── Cases ────────────────────────────────────────────────

    @app.post("/v1/cases")
    async def open_case(request: Request):
        ctx = context_from(request)
        req = CaseOpenRequest.from_body(await _json(request))
        errors = req.validate()
        if errors:
            return _invalid(errors)
        case = get_engine().executor.open_case(
            ctx, req.journey_key, state=req.state,
            owner_ref=req.owner_ref, subject_ref=req.subject_ref, metadata=req.metadata,
        )
        return JSONResponse(status_code=201, content=case.to_dict())

    @app.get("/v1/cases/{case_id}")
    async def get_case(case_id: str, request: Request):
        ctx = context_from(request)
        eng = get_engine()
        case = eng.executor.get_case(ctx, case_id)
        journey = eng.registry.find(ctx.tenant_id, case.journey_key)
        content = case.to_dict()
        content["column"] = eng.registry.classify_state(journey, case.state) if journey else None
        return JSONResponse(content=content)

    @app.post("/v1/cases/{case_id}/transition")
    async def transition(case_id: str, request: Request):
        ctx = context_from(request)
        req = TransitionRequest.from_body(await _json(request))
        errors = req.validate()
        if errors:
            return _invalid(errors)
        journey = Journey.from_dict(req.journey, tenant_id=ctx.tenant_id) if req.journey else None
        ack = get_engine().executor.transition(
            ctx, case_id, req.from_state, req.to_state, journey=journey,
        )
        return JSONResponse(content=ack.to_dict())

    # ── Audit ────────────────────────────────────────────────

    @app.get("/v1/cases/{case_id}/timeline")
    async def timeline(
        case_id: str, request: Request,
        audience: str = "internal", limit: int = 50, before: str | None = None,
    ):
        ctx = context_from(request)
        eng = get_engine()
        eng.executor.get_case(ctx, case_id)
        if audience == "public":
            page = eng.audit.public_timeline(ctx.tenant_id, case_id, limit=limit, before=before)
            return JSONResponse(content=page.to_dict(public=True))
        if audience != "internal":
            raise ValidationError(f"Unknown audience {audience!r}")
        page = eng.audit.timeline(ctx.tenant_id, case_id, limit=limit, before=before)
        return JSONResponse(content=page.to_dict())

    @app.get("/v1/cases/{case_id}/decisions")
    async def decisions(case_id: str, request: Request, limit: int = 50, before: str | None = None):
        ctx = context_from(request)
        eng = get_engine()
        eng.executor.get_case(ctx, case_id)
        page = eng.audit.decisions(ctx.tenant_id, case_id, limit=limit, before=before)
        return JSONResponse(content=page.to_dict())

    # ── Pendencies ───────────────────────────────────────────

    @app.get("/v1/cases/{case_id}/pendencies")
    async def list_pendencies(case_id: str, request: Request):
        ctx = context_from(request)
        eng = get_engine()
        eng.executor.get_case(ctx, case_id)
        pendencies = eng.store.list_pendencies(ctx.tenant_id, case_id)
        blocking = eng.gate.list_open_required(ctx.tenant_id, case_id)
        return JSONResponse(content={
            "count": len(pendencies),
            "pendencies": [p.to_dict() for p in pendencies],
            "blocking": [p.id for p in blocking],
        })

    @app.post("/v1/pendencies/{pendency_id}/answer")
    async def answer_pendency(pendency_id: str, request: Request):
        ctx = context_from(request)
        body = await _json(request)
        req = PendencyAnswer(answer=body.get("answer", ""))
        errors = req.validate()
        if errors:
            return _invalid(errors)
        pendency = get_engine().gate.answer(ctx, pendency_id, req.answer)
        return JSONResponse(content=pendency.to_dict())

    @app.post("/v1/pendencies/{pendency_id}/approve")
    async def approve_pendency(pendency_id: str, request: Request):
        ctx = context_from(request)
        return JSONResponse(content=get_engine().gate.approve(ctx, pendency_id).to_dict())

    @app.post("/v1/pendencies/{pendency_id}/dismiss")
    async def dismiss_pendency(pendency_id: str, request: Request):
        ctx = context_from(request)
        return JSONResponse(content=get_engine().gate.dismiss(ctx, pendency_id).to_dict())

    # ── Presence ─────────────────────────────────────────────

    @app.post("/v1/presence/punch")
    async def punch(request: Request):
        ctx = context_from(request)
        req = PunchSubmission.from_body(await _json(request))
        errors = req.validate()
        if errors:
            return _invalid(errors)
        result = get_engine().presence.submit_punch(
            ctx,
            latitude=req.latitude,
            longitude=req.longitude,
            accuracy_meters=req.accuracy_meters,
            timestamp=req.timestamp,
            employee_ref=req.employee_ref,
            case_id=req.case_id,
            punch_type=req.punch_type,
            source=req.source,
        )
        return JSONResponse(status_code=201, content=result.to_dict())

    @app.post("/v1/presence/cases/{case_id}/justify")
    async def justify(case_id: str, request: Request):
        ctx = context_from(request)
        body = await _json(request)
        req = JustifyRequest(answers=body.get("answers"))
        errors = req.validate()
        if errors:
            return _invalid(errors)
        return JSONResponse(content=get_engine().presence.justify(ctx, case_id, req.answers))

    @app.post("/v1/presence/cases/{case_id}/close")
    async def close_day(case_id: str, request: Request):
        ctx = context_from(request)
        body = await _json(request)
        return JSONResponse(content=get_engine().presence.close_day(ctx, case_id, note=body.get("note")))

    @app.post("/v1/presence/punches/{punch_id}/adjust")
    async def adjust_punch(punch_id: str, request: Request):
        ctx = context_from(request)
        body = await _json(request)
        req = AdjustPunchRequest(new_timestamp=body.get("new_timestamp", ""), note=body.get("note", ""))
        errors = req.validate()
        if errors:
            return _invalid(errors)
        result = get_engine().presence.adjust_punch(ctx, punch_id, req.new_timestamp, req.note)
        return JSONResponse(content=result)

    @app.get("/v1/presence/employees/{employee_ref}/ledger")
    async def ledger(employee_ref: str, request: Request):
        ctx = context_from(request)
        store = get_engine().presence.store
        return JSONResponse(content={
            "employee_ref": employee_ref,
            "balance_minutes": store.current_balance(ctx.tenant_id, employee_ref),
            "entries": store.ledger(ctx.tenant_id, employee_ref),
        })

    # ── Classification ───────────────────────────────────────

    @app.post("/v1/classification/suggest")
    async def suggest(request: Request):
        ctx = context_from(request)
        body = await _json(request)
        req = SuggestRequest(description=body.get("description", ""), case_id=body.get("case_id"))
        errors = req.validate()
        if errors:
            return _invalid(errors)
        suggestion = get_engine().learner.suggest(ctx, req.description, case_id=req.case_id)
        return JSONResponse(content={"suggestion": suggestion.to_dict() if suggestion else None})

    @app.post("/v1/classification/learn")
    async def learn(request: Request):
        ctx = context_from(request)
        req = LearnRequest.from_body(await _json(request))
        errors = req.validate()
        if errors:
            return _invalid(errors)
        result = get_engine().learner.learn(
            ctx, req.description, req.category_id, req.accepted,
            suggested_rule_id=req.suggested_rule_id,
        )
        return JSONResponse(content=result.to_dict())

    # ── Outbound messages ────────────────────────────────────

    @app.get("/v1/messages")
    async def list_messages(request: Request, status: str | None = None, case_id: str | None = None):
        ctx = context_from(request)
        try:
            messages = get_engine().outbox.list_messages(ctx, status=status, case_id=case_id)
        except ValueError:
            raise ValidationError(f"Unknown message status {status!r}")
        return JSONResponse(content={
            "count": len(messages),
            "messages": [m.to_dict() for m in messages],
        })

    @app.post("/v1/messages/{message_id}/approve")
    async def approve_message(message_id: str, request: Request):
        ctx = context_from(request)
        return JSONResponse(content=get_engine().outbox.approve(ctx, message_id).to_dict())

    @app.post("/v1/messages/{message_id}/reject")
    async def reject_message(message_id: str, request: Request):
        ctx = context_from(request)
        body = await _json(request)
        message = get_engine().outbox.reject(ctx, message_id, reason=body.get("reason", ""))
        return JSONResponse(content=message.to_dict())

    # ── Journeys ─────────────────────────────────────────────

    @app.get("/v1/journeys/{journey_key}/board")
    async def board(journey_key: str, request: Request):
        ctx = context_from(request)
        eng = get_engine()
        journey = eng.registry.get(ctx.tenant_id, journey_key)
        cases = eng.store.list_cases(ctx.tenant_id, journey_key=journey_key)
        columns = eng.registry.board(journey, cases)
        return JSONResponse(content={
            "journey": journey_key,
            "columns": [
                {"state": state, "cases": [c.to_dict() for c in items]}
                for state, items in columns.items()
            ],
        })

    @app.get("/v1/stats")
    async def stats(request: Request):
        ctx = context_from(request)
        return JSONResponse(content=get_engine().store.stats(ctx.tenant_id))

    @app.get("/v1/audit/verify")
    async def verify_audit(request: Request):
        ctx = context_from(request)
        return JSONResponse(content=get_engine().audit.verify_chain(ctx.tenant_id))

    # ── Health ────────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return JSONResponse(content={"status": "ok", "timestamp": time.time()})

    @app.get("/ready")
    async def ready():
        try:
            eng = get_engine()
        except EngineError as e:
            return JSONResponse(status_code=503, content={"status": "fail", "error": e.message[:200]})
        if not eng.db.ping():
            return JSONResponse(status_code=503, content={"status": "fail", "error": "database unavailable"})
        return JSONResponse(content={"status": "ok", "journeys": len(eng.registry)})

    return app


# ── Module-level app for uvicorn ──────────────────────────────

app = create_app(project_root=os.environ.get("CW_PROJECT_ROOT", "."))
