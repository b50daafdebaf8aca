"""
Casework - Outbound Message Governance

Automation and AI may draft customer communication; only a human
dispatches it. Drafts sit in status ``prepared`` until a human approves
(``queued``, visible to the external transport) or rejects them.
"""

from __future__ import annotations

from core.context import RequestContext
from core.errors import InvalidTransition, NotFound
from core.logging import TraceLogger
from journeys.audit import AuditLog
from journeys.store import CaseStore
from journeys.types import MessageStatus, OutboundMessage


class MessageGovernance:

    def __init__(self, store: CaseStore, audit: AuditLog):
        self.store = store
        self.audit = audit

    def get(self, tenant_id: str, message_id: str) -> OutboundMessage:
        message = self.store.get_message(tenant_id, message_id)
        if message is None:
            raise NotFound(f"Unknown message {message_id!r}")
        return message

    def approve(self, ctx: RequestContext, message_id: str) -> OutboundMessage:
        ctx.require_human("dispatching a customer message")
        return self._decide(ctx, message_id, MessageStatus.QUEUED, "message_queued", "")

    def reject(self, ctx: RequestContext, message_id: str, reason: str = "") -> OutboundMessage:
        ctx.require_human("rejecting a customer message")
        return self._decide(ctx, message_id, MessageStatus.REJECTED, "message_rejected", reason)

    def list_messages(
        self,
        ctx: RequestContext,
        status: MessageStatus | str | None = None,
        case_id: str | None = None,
    ) -> list[OutboundMessage]:
        if isinstance(status, str):
            status = MessageStatus(status)
        return self.store.list_messages(ctx.tenant_id, status=status, case_id=case_id)

    def _decide(
        self, ctx: RequestContext, message_id: str, status: MessageStatus,
        event_type: str, reason: str,
    ) -> OutboundMessage:
        message = self.get(ctx.tenant_id, message_id)
        if not self.store.decide_message(ctx.tenant_id, message_id, status, ctx.actor_ref):
            raise InvalidTransition(
                f"Message {message_id!r} is already {message.status.value}"
            )
        meta = {"message_id": message_id, "channel": message.channel}
        if reason:
            meta["reason"] = reason
        self.audit.record_event(
            ctx, message.case_id, event_type,
            f"Customer message {status.value}", meta=meta,
        )
        TraceLogger.for_context(ctx, component="outbox").on_message_decision(
            message_id, status.value,
        )
        return self.get(ctx.tenant_id, message_id)
