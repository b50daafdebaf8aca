"""
Casework - Automation Runner

Executes the ordered action list bound to a transition. Actions are
declarative ``ActionSpec`` records dispatched to registered handlers:

  create_pendency   open a pendency on the case
  create_task       add a task for a role, optionally with a due date
  notify_customer   draft an OutboundMessage in status "prepared".
                    Nothing is sent: a human must approve it (see outbox)
  log_event         append a free-form timeline event

Every action runs, in declared order, even if an earlier one failed.
Each failure becomes an ``ActionOutcome(status="failed")``; no
exception leaves ``run``.

Two dispatch modes:

  inline      run() inside the transition call; outcomes end up on the
              transition's timeline event.
  background  submit() onto a thread pool after the state write has
              committed; outcomes are logged as automation_executed /
              automation_failed events once they complete.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable

from core.context import RequestContext
from core.errors import ActionFailed, ValidationError
from core.logging import TraceLogger
from journeys.audit import AuditLog
from journeys.pendency import PendencyGate
from journeys.store import CaseStore
from journeys.types import (
    ActionKind,
    ActionOutcome,
    ActionSpec,
    Case,
    Journey,
    OutboundMessage,
    Task,
    new_id,
)

logger = logging.getLogger("casework.automation")

# (ctx, case, spec) -> id of whatever the action created, or None
ActionHandler = Callable[[RequestContext, Case, ActionSpec], "str | None"]


class _TemplateFields(dict):
    def __missing__(self, key):
        raise ActionFailed("notify_customer", f"template field {key!r} is not available")


class AutomationRunner:

    def __init__(
        self,
        store: CaseStore,
        audit: AuditLog,
        pendencies: PendencyGate,
        max_workers: int = 4,
    ):
        self.store = store
        self.audit = audit
        self.pendencies = pendencies
        self.max_workers = max_workers
        self._handlers: dict[str, ActionHandler] = {
            ActionKind.CREATE_PENDENCY.value: self._create_pendency,
            ActionKind.CREATE_TASK.value: self._create_task,
            ActionKind.NOTIFY_CUSTOMER.value: self._notify_customer,
            ActionKind.LOG_EVENT.value: self._log_event,
        }
        self._pool: ThreadPoolExecutor | None = None
        self._futures: list[Future] = []
        self._lock = threading.Lock()

    def register(self, kind: ActionKind | str, handler: ActionHandler):
        """Replace the handler for an action kind."""
        key = kind.value if isinstance(kind, ActionKind) else ActionKind(kind).value
        self._handlers[key] = handler

    # ── Inline ──────────────────────────────────────────────────

    def run(
        self,
        ctx: RequestContext,
        case: Case,
        from_state: str,
        to_state: str,
        journey: Journey,
    ) -> list[ActionOutcome]:
        log = TraceLogger.for_context(ctx, component="automation")
        outcomes: list[ActionOutcome] = []
        for spec in journey.actions_for(from_state, to_state):
            outcome = self._run_one(ctx, case, spec)
            log.on_action_outcome(case.id, outcome.kind, outcome.status, outcome.error or "")
            outcomes.append(outcome)
        return outcomes

    def _run_one(self, ctx: RequestContext, case: Case, spec: ActionSpec) -> ActionOutcome:
        handler = self._handlers.get(spec.kind.value)
        if handler is None:
            return ActionOutcome(kind=spec.kind.value, status="failed",
                                 error=f"no handler for {spec.kind.value!r}")
        try:
            ref_id = handler(ctx, case, spec)
            return ActionOutcome(kind=spec.kind.value, status="ok", ref_id=ref_id)
        except Exception as e:
            logger.warning("Action %s failed on case %s: %s", spec.kind.value, case.id, e)
            return ActionOutcome(kind=spec.kind.value, status="failed", error=str(e))

    # ── Background ──────────────────────────────────────────────

    def submit(
        self,
        ctx: RequestContext,
        case: Case,
        from_state: str,
        to_state: str,
        journey: Journey,
    ) -> Future:
        with self._lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self.max_workers,
                    thread_name_prefix="cw_automation",
                )
                logger.info("Automation pool started: max_workers=%d", self.max_workers)
            future = self._pool.submit(
                self._run_and_record, ctx, case, from_state, to_state, journey,
            )
            self._futures = [f for f in self._futures if not f.done()]
            self._futures.append(future)
        return future

    def _run_and_record(
        self,
        ctx: RequestContext,
        case: Case,
        from_state: str,
        to_state: str,
        journey: Journey,
    ) -> list[ActionOutcome]:
        outcomes = self.run(ctx, case, from_state, to_state, journey)
        for outcome in outcomes:
            event_type = "automation_executed" if outcome.ok else "automation_failed"
            self.audit.record_event(
                ctx, case.id, event_type,
                f"{outcome.kind} {outcome.status}",
                meta={"from": from_state, "to": to_state, **outcome.to_dict()},
            )
        return outcomes

    def drain(self, timeout: float | None = None) -> bool:
        """Wait for submitted automations. True if all finished in time."""
        with self._lock:
            pending = list(self._futures)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for: bool = True):
        with self._lock:
            if self._pool is not None:
                self._pool.shutdown(wait=wait_for)
                self._pool = None
                logger.info("Automation pool stopped")

    # ── Handlers ────────────────────────────────────────────────

    def _create_pendency(self, ctx: RequestContext, case: Case, spec: ActionSpec) -> str:
        p = spec.params
        question = p.get("question")
        if not question:
            raise ActionFailed("create_pendency", "question is required")
        pendency = self.pendencies.create(
            ctx, case.id,
            pendency_type=p.get("type", "automation"),
            question=question,
            required=bool(p.get("required", True)),
            assigned_role=p.get("assigned_role", "admin"),
        )
        return pendency.id

    def _create_task(self, ctx: RequestContext, case: Case, spec: ActionSpec) -> str:
        p = spec.params
        title = p.get("title")
        if not title:
            raise ActionFailed("create_task", "title is required")
        due_at = None
        if p.get("due_in_hours") is not None:
            try:
                due_at = time.time() + float(p["due_in_hours"]) * 3600
            except (TypeError, ValueError):
                raise ActionFailed("create_task", f"bad due_in_hours {p['due_in_hours']!r}")
        task = Task(
            id=new_id("task"),
            tenant_id=ctx.tenant_id,
            case_id=case.id,
            title=title,
            assigned_role=p.get("assigned_role") or case.owner_ref,
            due_at=due_at,
        )
        self.store.insert_task(task)
        return task.id

    def _notify_customer(self, ctx: RequestContext, case: Case, spec: ActionSpec) -> str:
        p = spec.params
        template = p.get("template") or p.get("body")
        if not template:
            raise ActionFailed("notify_customer", "template or body is required")
        fields: dict[str, Any] = _TemplateFields(case.metadata)
        fields.update(case_id=case.id, state=case.state, subject_ref=case.subject_ref or "")
        body = template.format_map(fields)
        message = OutboundMessage(
            id=new_id("msg"),
            tenant_id=ctx.tenant_id,
            case_id=case.id,
            channel=p.get("channel", "whatsapp"),
            template=p.get("template_key"),
            body=body,
            recipient_ref=case.subject_ref,
            prepared_by=ctx.actor_type.value,
        )
        self.store.insert_message(message)
        self.audit.record_event(
            ctx, case.id, "message_prepared",
            "Customer message prepared, waiting for human approval",
            meta={"message_id": message.id, "channel": message.channel},
        )
        return message.id

    def _log_event(self, ctx: RequestContext, case: Case, spec: ActionSpec) -> str:
        p = spec.params
        message = p.get("message")
        if not message:
            raise ValidationError("log_event needs a message")
        event_type = p.get("event_type", "note")
        if event_type == "transition":
            raise ValidationError("log_event cannot write transition events")
        event = self.audit.record_event(
            ctx, case.id, event_type, message,
            meta={k: v for k, v in p.items() if k not in ("message", "event_type")},
        )
        return str(event.id)
