"""
Casework - Pendency Gate

Outstanding questions and exceptions attached to a case. Required
pendencies block entry into the journey's closing states; advisory
ones never block anything. Movement between non-closing states is
never gated.

Lifecycle:

    open ──answer──▶ answered ──approve──▶ approved
      │                 │
      └──── dismiss ────┴──────────────▶ dismissed

approve and dismiss are human actions. Whether ``answered`` alone
unblocks a closing state is a deployment choice
(``pendencies.answered_unblocks``); by default it does not.
"""

from __future__ import annotations

import logging

from core.context import RequestContext
from core.errors import InvalidTransition, NotFound, ValidationError
from journeys.audit import AuditLog
from journeys.store import CaseStore
from journeys.types import Journey, Pendency, PendencyStatus, new_id

logger = logging.getLogger("casework.pendency")


class PendencyGate:

    def __init__(self, store: CaseStore, audit: AuditLog, answered_unblocks: bool = False):
        self.store = store
        self.audit = audit
        self.answered_unblocks = answered_unblocks

    @property
    def blocking_statuses(self) -> tuple[PendencyStatus, ...]:
        if self.answered_unblocks:
            return (PendencyStatus.OPEN,)
        return (PendencyStatus.OPEN, PendencyStatus.ANSWERED)

    # ── Gate ────────────────────────────────────────────────────

    def list_open_required(self, tenant_id: str, case_id: str) -> list[Pendency]:
        return self.store.list_pendencies(
            tenant_id, case_id, statuses=self.blocking_statuses, required=True,
        )

    def can_transition(self, tenant_id: str, case_id: str, journey: Journey, to_state: str) -> bool:
        if not journey.is_closing(to_state):
            return True
        return not self.list_open_required(tenant_id, case_id)

    def check(self, tenant_id: str, case_id: str, journey: Journey, to_state: str):
        """Raise InvalidTransition when required pendencies block ``to_state``."""
        if not journey.is_closing(to_state):
            return
        blocking = self.list_open_required(tenant_id, case_id)
        if blocking:
            raise InvalidTransition(
                f"{len(blocking)} required pendencies block {to_state!r}",
                blocking=[p.id for p in blocking],
            )

    # ── Lifecycle ───────────────────────────────────────────────

    def create(
        self,
        ctx: RequestContext,
        case_id: str,
        pendency_type: str,
        question: str,
        required: bool = True,
        assigned_role: str = "admin",
        meta: dict | None = None,
    ) -> Pendency:
        if not pendency_type:
            raise ValidationError("pendency type is required")
        if not question or not question.strip():
            raise ValidationError("pendency question is required")
        pendency = Pendency(
            id=new_id("pend"),
            tenant_id=ctx.tenant_id,
            case_id=case_id,
            type=pendency_type,
            question=question.strip(),
            required=required,
            assigned_role=assigned_role,
            meta=meta or {},
        )
        self.store.insert_pendency(pendency)
        self.audit.record_event(
            ctx, case_id, "pendency_created",
            f"Pendency opened: {pendency.question}",
            meta={"pendency_id": pendency.id, "type": pendency_type, "required": required},
        )
        logger.info("Pendency %s created on %s (type=%s required=%s)",
                    pendency.id, case_id, pendency_type, required)
        return pendency

    def get(self, tenant_id: str, pendency_id: str) -> Pendency:
        pendency = self.store.get_pendency(tenant_id, pendency_id)
        if pendency is None:
            raise NotFound(f"Unknown pendency {pendency_id!r}")
        return pendency

    def answer(self, ctx: RequestContext, pendency_id: str, text: str) -> Pendency:
        """Record an answer. Required pendencies then still wait for approval."""
        if not text or not text.strip():
            raise ValidationError("answer text is required")
        pendency = self.get(ctx.tenant_id, pendency_id)
        updated = self.store.update_pendency_status(
            ctx.tenant_id, pendency_id,
            from_statuses=(PendencyStatus.OPEN, PendencyStatus.ANSWERED),
            new_status=PendencyStatus.ANSWERED,
            answer=text.strip(),
        )
        if not updated:
            raise InvalidTransition(
                f"Pendency {pendency_id!r} is {pendency.status.value}, cannot answer"
            )
        self.audit.record_event(
            ctx, pendency.case_id, "pendency_answered",
            "Pendency answered",
            meta={"pendency_id": pendency_id, "required": pendency.required},
        )
        return self.get(ctx.tenant_id, pendency_id)

    def approve(self, ctx: RequestContext, pendency_id: str) -> Pendency:
        ctx.require_human("approving a pendency")
        return self._resolve(ctx, pendency_id, PendencyStatus.APPROVED, "pendency_approved")

    def dismiss(self, ctx: RequestContext, pendency_id: str) -> Pendency:
        ctx.require_human("dismissing a pendency")
        return self._resolve(ctx, pendency_id, PendencyStatus.DISMISSED, "pendency_dismissed")

    def waive_all(self, ctx: RequestContext, case_id: str, reason: str) -> list[str]:
        """Dismiss every unresolved pendency of a case (used when a day is closed)."""
        ctx.require_human("waiving pendencies")
        waived = []
        for p in self.store.list_pendencies(
            ctx.tenant_id, case_id, statuses=(PendencyStatus.OPEN, PendencyStatus.ANSWERED),
        ):
            if self.store.update_pendency_status(
                ctx.tenant_id, p.id,
                from_statuses=(PendencyStatus.OPEN, PendencyStatus.ANSWERED),
                new_status=PendencyStatus.DISMISSED,
                resolved_by=ctx.actor_ref,
            ):
                waived.append(p.id)
        if waived:
            self.audit.record_event(
                ctx, case_id, "pendency_dismissed",
                f"{len(waived)} pendencies waived: {reason}",
                meta={"pendency_ids": waived},
            )
        return waived

    def _resolve(
        self, ctx: RequestContext, pendency_id: str, status: PendencyStatus, event_type: str,
    ) -> Pendency:
        pendency = self.get(ctx.tenant_id, pendency_id)
        updated = self.store.update_pendency_status(
            ctx.tenant_id, pendency_id,
            from_statuses=(PendencyStatus.OPEN, PendencyStatus.ANSWERED),
            new_status=status,
            resolved_by=ctx.actor_ref,
        )
        if not updated:
            raise InvalidTransition(
                f"Pendency {pendency_id!r} is already {pendency.status.value}"
            )
        self.audit.record_event(
            ctx, pendency.case_id, event_type,
            f"Pendency {status.value}",
            meta={"pendency_id": pendency_id},
        )
        logger.info("Pendency %s %s by %s", pendency_id, status.value, ctx.actor_ref)
        return self.get(ctx.tenant_id, pendency_id)
