"""
Casework - Audit and Explainability Log

Append-only store with two event families:

  timeline_events  operational history of a case, human readable.
                   The public history view is a filtered projection.
  decision_logs    machine rationale for suggestions and automatic
                   decisions: input, output, reasoning, structured why
                   and confidence.

No UPDATE or DELETE is exposed. Timeline events carry a per-tenant
SHA-256 hash chain so ``verify_chain`` can detect tampering.

Reads are paginated newest first by (occurred_at, id). The cursor
returned with a page is passed back as ``before`` to get the next one.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Iterable

from core.context import RequestContext
from core.db import SQLiteBackend
from core.errors import ValidationError
from journeys.types import DecisionLog, TimelineEvent

logger = logging.getLogger("casework.audit")

GENESIS_HASH = "0" * 64

DEFAULT_INTERNAL_EVENT_TYPES = frozenset({
    "automation_executed",
    "automation_failed",
    "message_prepared",
    "message_queued",
    "message_rejected",
    "pendency_created",
    "pendency_answered",
    "pendency_approved",
    "pendency_dismissed",
    "punch_adjusted",
    "bank_hours_posted",
})

MAX_PAGE_SIZE = 200


def compute_event_hash(
    previous_hash: str,
    tenant_id: str,
    case_id: str | None,
    event_type: str,
    occurred_at: float,
    payload_json: str,
) -> str:
    content = f"{previous_hash}|{tenant_id}|{case_id or ''}|{event_type}|{occurred_at!r}|{payload_json}"
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def _payload_json(message: str, actor_type: str, actor_ref: str | None, meta: dict[str, Any]) -> str:
    return json.dumps(
        {"message": message, "actor_type": actor_type, "actor_ref": actor_ref, "meta": meta},
        sort_keys=True, default=str,
    )


def encode_cursor(occurred_at: float, row_id: int) -> str:
    return f"{occurred_at!r}:{row_id}"


def decode_cursor(cursor: str) -> tuple[float, int]:
    try:
        ts, row_id = cursor.rsplit(":", 1)
        return float(ts), int(row_id)
    except (ValueError, AttributeError):
        raise ValidationError(f"Malformed cursor {cursor!r}")


@dataclass
class Page:
    items: list[Any] = field(default_factory=list)
    next_cursor: str | None = None

    def to_dict(self, public: bool = False) -> dict[str, Any]:
        items = [
            i.to_public_dict() if public and hasattr(i, "to_public_dict") else i.to_dict()
            for i in self.items
        ]
        return {"items": items, "next_cursor": self.next_cursor}


class AuditLog:
    """Write-only sink for every component, readable page by page."""

    def __init__(
        self,
        db: SQLiteBackend,
        internal_event_types: Iterable[str] | None = None,
    ):
        self.db = db
        self.internal_event_types = frozenset(
            internal_event_types if internal_event_types is not None
            else DEFAULT_INTERNAL_EVENT_TYPES
        )
        self._create_tables()

    def _create_tables(self):
        self.db.executescript("""
            CREATE TABLE IF NOT EXISTS timeline_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id TEXT NOT NULL,
                case_id TEXT,
                subject_ref TEXT,
                type TEXT NOT NULL,
                actor_type TEXT NOT NULL,
                actor_ref TEXT,
                message TEXT NOT NULL,
                meta TEXT NOT NULL DEFAULT '{}',
                occurred_at REAL NOT NULL,
                event_hash TEXT NOT NULL,
                previous_hash TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS decision_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id TEXT NOT NULL,
                case_id TEXT,
                subject_ref TEXT,
                kind TEXT NOT NULL,
                input_summary TEXT NOT NULL,
                output_summary TEXT NOT NULL,
                reasoning TEXT NOT NULL DEFAULT '',
                why_json TEXT NOT NULL DEFAULT '{}',
                confidence_json TEXT NOT NULL DEFAULT '{}',
                occurred_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_timeline_case
                ON timeline_events(tenant_id, case_id, occurred_at);
            CREATE INDEX IF NOT EXISTS idx_timeline_type
                ON timeline_events(tenant_id, type);
            CREATE INDEX IF NOT EXISTS idx_decisions_case
                ON decision_logs(tenant_id, case_id, occurred_at);
        """)

    # ── Writes ──────────────────────────────────────────────────

    def record_event(
        self,
        ctx: RequestContext,
        case_id: str | None,
        event_type: str,
        message: str,
        meta: dict[str, Any] | None = None,
        subject_ref: str | None = None,
    ) -> TimelineEvent:
        """Append one timeline event and extend the tenant's hash chain."""
        if not event_type:
            raise ValidationError("event type is required")
        meta = meta or {}
        actor_type = ctx.actor_type.value
        payload_json = _payload_json(message, actor_type, ctx.actor_ref, meta)

        with self.db.transaction():
            occurred_at = time.time()
            row = self.db.fetchone(
                "SELECT event_hash FROM timeline_events WHERE tenant_id = ? ORDER BY id DESC LIMIT 1",
                (ctx.tenant_id,),
            )
            previous_hash = row["event_hash"] if row else GENESIS_HASH
            event_hash = compute_event_hash(
                previous_hash, ctx.tenant_id, case_id, event_type, occurred_at, payload_json,
            )
            cursor = self.db.execute("""
                INSERT INTO timeline_events
                (tenant_id, case_id, subject_ref, type, actor_type, actor_ref,
                 message, meta, occurred_at, event_hash, previous_hash)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                ctx.tenant_id, case_id, subject_ref, event_type, actor_type,
                ctx.actor_ref, message, json.dumps(meta, sort_keys=True, default=str),
                occurred_at, event_hash, previous_hash,
            ))

        return TimelineEvent(
            id=cursor.lastrowid,
            tenant_id=ctx.tenant_id,
            case_id=case_id,
            type=event_type,
            actor_type=actor_type,
            actor_ref=ctx.actor_ref,
            subject_ref=subject_ref,
            message=message,
            meta=meta,
            occurred_at=occurred_at,
            event_hash=event_hash,
            previous_hash=previous_hash,
        )

    def record_decision(
        self,
        ctx: RequestContext,
        kind: str,
        input_summary: str,
        output_summary: str,
        reasoning: str = "",
        why: dict[str, Any] | None = None,
        confidence: dict[str, Any] | None = None,
        case_id: str | None = None,
        subject_ref: str | None = None,
    ) -> DecisionLog:
        why = why or {}
        confidence = confidence or {}
        occurred_at = time.time()
        cursor = self.db.execute("""
            INSERT INTO decision_logs
            (tenant_id, case_id, subject_ref, kind, input_summary, output_summary,
             reasoning, why_json, confidence_json, occurred_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            ctx.tenant_id, case_id, subject_ref, kind, input_summary, output_summary,
            reasoning, json.dumps(why, sort_keys=True, default=str),
            json.dumps(confidence, sort_keys=True, default=str), occurred_at,
        ))
        return DecisionLog(
            id=cursor.lastrowid,
            tenant_id=ctx.tenant_id,
            case_id=case_id,
            subject_ref=subject_ref,
            kind=kind,
            input_summary=input_summary,
            output_summary=output_summary,
            reasoning=reasoning,
            why=why,
            confidence=confidence,
            occurred_at=occurred_at,
        )

    # ── Reads ───────────────────────────────────────────────────

    def timeline(
        self,
        tenant_id: str,
        case_id: str,
        limit: int = 50,
        before: str | None = None,
        event_type: str | None = None,
        exclude_types: Iterable[str] = (),
    ) -> Page:
        query = "SELECT * FROM timeline_events WHERE tenant_id = ? AND case_id = ?"
        params: list[Any] = [tenant_id, case_id]
        if event_type:
            query += " AND type = ?"
            params.append(event_type)
        exclude = sorted(exclude_types)
        if exclude:
            query += f" AND type NOT IN ({', '.join('?' for _ in exclude)})"
            params.extend(exclude)
        rows, next_cursor = self._page(query, params, limit, before)
        return Page(items=[self._row_to_event(r) for r in rows], next_cursor=next_cursor)

    def public_timeline(
        self, tenant_id: str, case_id: str, limit: int = 50, before: str | None = None,
    ) -> Page:
        """Customer-facing history: internal event types filtered out."""
        return self.timeline(
            tenant_id, case_id, limit=limit, before=before,
            exclude_types=self.internal_event_types,
        )

    def decisions(
        self,
        tenant_id: str,
        case_id: str | None = None,
        limit: int = 50,
        before: str | None = None,
        subject_ref: str | None = None,
        kind: str | None = None,
    ) -> Page:
        query = "SELECT * FROM decision_logs WHERE tenant_id = ?"
        params: list[Any] = [tenant_id]
        if case_id:
            query += " AND case_id = ?"
            params.append(case_id)
        if subject_ref:
            query += " AND subject_ref = ?"
            params.append(subject_ref)
        if kind:
            query += " AND kind = ?"
            params.append(kind)
        rows, next_cursor = self._page(query, params, limit, before)
        return Page(items=[self._row_to_decision(r) for r in rows], next_cursor=next_cursor)

    def history(self, tenant_id: str, case_id: str, limit: int = 50) -> list[dict[str, Any]]:
        """Timeline events and decision logs of a case merged newest first."""
        events = self.timeline(tenant_id, case_id, limit=limit).items
        decisions = self.decisions(tenant_id, case_id, limit=limit).items
        merged = (
            [("timeline", e.occurred_at, e.id, e) for e in events]
            + [("decision", d.occurred_at, d.id, d) for d in decisions]
        )
        merged.sort(key=lambda m: (m[1], m[2]), reverse=True)
        return [{"family": fam, **item.to_dict()} for fam, _, _, item in merged[:limit]]

    def count_events(self, tenant_id: str, case_id: str, event_type: str) -> int:
        row = self.db.fetchone(
            "SELECT COUNT(*) AS n FROM timeline_events WHERE tenant_id = ? AND case_id = ? AND type = ?",
            (tenant_id, case_id, event_type),
        )
        return row["n"] if row else 0

    def _page(
        self, query: str, params: list[Any], limit: int, before: str | None,
    ) -> tuple[list[dict[str, Any]], str | None]:
        if limit < 1:
            raise ValidationError("limit must be positive")
        limit = min(limit, MAX_PAGE_SIZE)
        if before:
            ts, row_id = decode_cursor(before)
            query += " AND (occurred_at < ? OR (occurred_at = ? AND id < ?))"
            params.extend([ts, ts, row_id])
        query += " ORDER BY occurred_at DESC, id DESC LIMIT ?"
        params.append(limit + 1)
        rows = self.db.fetchall(query, tuple(params))
        next_cursor = None
        if len(rows) > limit:
            rows = rows[:limit]
            next_cursor = encode_cursor(rows[-1]["occurred_at"], rows[-1]["id"])
        return rows, next_cursor

    # ── Integrity ───────────────────────────────────────────────

    def verify_chain(self, tenant_id: str) -> dict[str, Any]:
        """
        Recompute every hash in the tenant's chain.

        Returns {"valid": bool, "events_checked": int, "broken_at": id | None}.
        """
        rows = self.db.fetchall(
            "SELECT * FROM timeline_events WHERE tenant_id = ? ORDER BY id",
            (tenant_id,),
        )
        expected_previous = GENESIS_HASH
        for i, r in enumerate(rows):
            meta = json.loads(r["meta"] or "{}")
            payload_json = _payload_json(r["message"], r["actor_type"], r["actor_ref"], meta)
            recomputed = compute_event_hash(
                r["previous_hash"], r["tenant_id"], r["case_id"], r["type"],
                r["occurred_at"], payload_json,
            )
            if r["previous_hash"] != expected_previous or recomputed != r["event_hash"]:
                logger.warning("Audit chain broken for tenant %s at event %s", tenant_id, r["id"])
                return {"valid": False, "events_checked": i + 1, "broken_at": r["id"]}
            expected_previous = r["event_hash"]
        return {"valid": True, "events_checked": len(rows), "broken_at": None}

    # ── Row mapping ─────────────────────────────────────────────

    def _row_to_event(self, r: dict[str, Any]) -> TimelineEvent:
        return TimelineEvent(
            id=r["id"],
            tenant_id=r["tenant_id"],
            case_id=r["case_id"],
            subject_ref=r["subject_ref"],
            type=r["type"],
            actor_type=r["actor_type"],
            actor_ref=r["actor_ref"],
            message=r["message"],
            meta=json.loads(r["meta"] or "{}"),
            occurred_at=r["occurred_at"],
            event_hash=r["event_hash"],
            previous_hash=r["previous_hash"],
        )

    def _row_to_decision(self, r: dict[str, Any]) -> DecisionLog:
        return DecisionLog(
            id=r["id"],
            tenant_id=r["tenant_id"],
            case_id=r["case_id"],
            subject_ref=r["subject_ref"],
            kind=r["kind"],
            input_summary=r["input_summary"],
            output_summary=r["output_summary"],
            reasoning=r["reasoning"],
            why=json.loads(r["why_json"] or "{}"),
            confidence=json.loads(r["confidence_json"] or "{}"),
            occurred_at=r["occurred_at"],
        )
