"""
Casework - Structured Logging with Correlation IDs

JSON log lines for every engine event. Each request gets a TraceLogger
bound to its trace_id, tenant and actor, so one transition (and the
automations it fires) can be followed end to end across log lines.

Field names follow OpenTelemetry conventions (trace_id, service.name)
so the output can be shipped to an OTel collector unchanged.

Usage:
    from core.logging import TraceLogger, configure_logging

    configure_logging(level="INFO")
    log = TraceLogger.for_context(ctx, component="executor")
    log.on_transition_start(case_id, "CRIAR", "PRODUCAO")
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import datetime, timezone
from typing import Any

ROOT_LOGGER = "casework"


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """Formats log records as JSON lines."""

    def __init__(self, service_name: str = "casework"):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("CW_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = "casework",
) -> logging.Logger:
    """
    Configure the casework logger with JSON output.

    Replaces any handler installed by a previous call, so tests can
    reconfigure onto a fresh buffer.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()

    for name in list(logging.Logger.manager.loggerDict.keys()):
        if name.startswith(ROOT_LOGGER + "."):
            child = logging.getLogger(name)
            child.handlers.clear()
            child.setLevel(logging.NOTSET)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter(service_name=service_name))
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the casework namespace."""
    if name:
        return logging.getLogger(f"{ROOT_LOGGER}.{name}")
    return logging.getLogger(ROOT_LOGGER)


def generate_trace_id() -> str:
    """32 hex chars, OTel trace-id sized."""
    return uuid.uuid4().hex


# ═══════════════════════════════════════════════════════════════════
# Trace Logger
# ═══════════════════════════════════════════════════════════════════

class TraceLogger:
    """
    Structured logger bound to one request.

    Every entry carries trace_id, tenant_id and actor fields plus the
    event-specific fields passed to the on_* method.
    """

    def __init__(
        self,
        component: str = "",
        tenant_id: str = "",
        actor_type: str = "",
        actor_ref: str | None = None,
        trace_id: str | None = None,
    ):
        self.component = component
        self.tenant_id = tenant_id
        self.actor_type = actor_type
        self.actor_ref = actor_ref
        self.trace_id = trace_id or generate_trace_id()
        self._logger = get_logger(component or "trace")

    @classmethod
    def for_context(cls, ctx: Any, component: str = "") -> TraceLogger:
        actor_type = getattr(ctx.actor_type, "value", ctx.actor_type)
        return cls(
            component=component,
            tenant_id=ctx.tenant_id,
            actor_type=actor_type,
            actor_ref=ctx.actor_ref,
            trace_id=ctx.trace_id,
        )

    def _base_fields(self) -> dict[str, Any]:
        fields = {
            "trace_id": self.trace_id,
            "tenant_id": self.tenant_id,
            "actor_type": self.actor_type,
        }
        if self.actor_ref:
            fields["actor_ref"] = self.actor_ref
        return fields

    def _emit(self, level: int, action: str, **fields):
        if not self._logger.isEnabledFor(level):
            return
        structured = {**self._base_fields(), "action": action, **fields}
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="", lno=0, msg=action,
            args=(), exc_info=None,
        )
        record.structured = structured
        self._logger.handle(record)

    # ── Transitions ─────────────────────────────────────────────

    def on_transition_start(self, case_id: str, from_state: str, to_state: str) -> None:
        self._emit(
            logging.DEBUG, "transition_start",
            case_id=case_id, from_state=from_state, to_state=to_state,
        )

    def on_transition_committed(
        self, case_id: str, from_state: str, to_state: str,
        actions_run: int, actions_failed: int,
    ) -> None:
        self._emit(
            logging.INFO, "transition_committed",
            case_id=case_id, from_state=from_state, to_state=to_state,
            actions_run=actions_run, actions_failed=actions_failed,
        )

    def on_transition_rejected(self, case_id: str, to_state: str, reason: str, detail: str = "") -> None:
        self._emit(
            logging.INFO, "transition_rejected",
            case_id=case_id, to_state=to_state, reason=reason,
            detail=detail[:500],
        )

    # ── Automation ──────────────────────────────────────────────

    def on_action_outcome(self, case_id: str, kind: str, status: str, error: str = "") -> None:
        level = logging.WARNING if status == "failed" else logging.INFO
        fields = {"case_id": case_id, "kind": kind, "status": status}
        if error:
            fields["error"] = error[:500]
        self._emit(level, "action_outcome", **fields)

    def on_message_decision(self, message_id: str, decision: str) -> None:
        self._emit(logging.INFO, "message_" + decision, message_id=message_id)

    # ── Presence ────────────────────────────────────────────────

    def on_punch_recorded(
        self, case_id: str, punch_type: str, within_radius: bool,
        distance_meters: float | None, state: str,
    ) -> None:
        self._emit(
            logging.INFO, "punch_recorded",
            case_id=case_id, punch_type=punch_type,
            within_radius=within_radius,
            distance_meters=round(distance_meters, 1) if distance_meters is not None else None,
            state=state,
        )

    # ── Classification ──────────────────────────────────────────

    def on_suggestion(self, rule_id: str | None, category_id: str | None, confidence: float | None) -> None:
        self._emit(
            logging.INFO, "suggestion_made",
            rule_id=rule_id, category_id=category_id, confidence=confidence,
            matched=rule_id is not None,
        )

    def on_rule_learned(self, rule_id: str, mode: str, used_count: int, confidence: float) -> None:
        self._emit(
            logging.INFO, "rule_learned",
            rule_id=rule_id, mode=mode, used_count=used_count,
            confidence=confidence,
        )
