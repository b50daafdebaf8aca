"""
Casework - Classification Rule Learner

Suggests a category for a transaction description from learned
pattern rules, and learns from what the human does with the
suggestion:

  accepted unchanged  the suggesting rule is reinforced
                      (used_count + 1, confidence + step)
  corrected / none    a rule keyed by the normalized description is
                      created or strengthened for the chosen category

Matching is greedy and explicit: a rule matches when its normalized
pattern is a substring of the normalized description. Ties go to
higher confidence, then longer pattern, then higher used_count.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any

from core.context import RequestContext
from core.db import SQLiteBackend
from core.errors import NotFound, ValidationError
from core.logging import TraceLogger
from core.normalize import normalize_text
from journeys.audit import AuditLog
from journeys.types import new_id

logger = logging.getLogger("casework.classification")

INITIAL_CONFIDENCE = 0.60
CONFIDENCE_STEP = 0.05
MAX_CONFIDENCE = 0.99
MIN_PATTERN_LENGTH = 3


@dataclass
class ClassificationRule:
    id: str
    tenant_id: str
    pattern: str
    category_id: str
    confidence: float
    used_count: int
    created_at: float
    updated_at: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Suggestion:
    category_id: str
    rule_id: str
    confidence: float
    pattern: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class LearnResult:
    rule: ClassificationRule
    mode: str    # reinforced | learned

    def to_dict(self) -> dict[str, Any]:
        return {"mode": self.mode, "rule": self.rule.to_dict()}


class RuleLearner:

    def __init__(
        self,
        db: SQLiteBackend,
        audit: AuditLog | None = None,
        initial_confidence: float = INITIAL_CONFIDENCE,
        confidence_step: float = CONFIDENCE_STEP,
        max_confidence: float = MAX_CONFIDENCE,
        min_pattern_length: int = MIN_PATTERN_LENGTH,
    ):
        if not 0 < initial_confidence <= max_confidence <= 1:
            raise ValidationError("confidence bounds must satisfy 0 < initial <= max <= 1")
        self.db = db
        self.audit = audit
        self.initial_confidence = initial_confidence
        self.confidence_step = confidence_step
        self.max_confidence = max_confidence
        self.min_pattern_length = min_pattern_length
        self._create_tables()

    @classmethod
    def from_config(cls, db: SQLiteBackend, audit: AuditLog | None, config) -> RuleLearner:
        return cls(
            db, audit,
            initial_confidence=float(config.get("classification.initial_confidence", INITIAL_CONFIDENCE)),
            confidence_step=float(config.get("classification.confidence_step", CONFIDENCE_STEP)),
            max_confidence=float(config.get("classification.max_confidence", MAX_CONFIDENCE)),
            min_pattern_length=int(config.get("classification.min_pattern_length", MIN_PATTERN_LENGTH)),
        )

    def _create_tables(self):
        self.db.executescript("""
            CREATE TABLE IF NOT EXISTS classification_rules (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                pattern TEXT NOT NULL,
                category_id TEXT NOT NULL,
                confidence REAL NOT NULL,
                used_count INTEGER NOT NULL DEFAULT 0,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL,
                UNIQUE (tenant_id, pattern, category_id)
            );

            CREATE INDEX IF NOT EXISTS idx_rules_tenant
                ON classification_rules(tenant_id);
        """)

    # ── Suggest ─────────────────────────────────────────────────

    def suggest(
        self, ctx: RequestContext, description: str, case_id: str | None = None,
    ) -> Suggestion | None:
        normalized = self._normalized(description)
        rule = self._best_match(ctx.tenant_id, normalized)
        suggestion = None
        if rule is not None:
            suggestion = Suggestion(
                category_id=rule.category_id,
                rule_id=rule.id,
                confidence=rule.confidence,
                pattern=rule.pattern,
            )

        if self.audit is not None:
            self.audit.record_decision(
                ctx, "classification_suggestion",
                input_summary=normalized,
                output_summary=suggestion.category_id if suggestion else "no suggestion",
                reasoning=(
                    f"Pattern {rule.pattern!r} found in the description"
                    if rule else "No learned pattern occurs in the description"
                ),
                why={
                    "rule_id": rule.id if rule else None,
                    "pattern": rule.pattern if rule else None,
                    "used_count": rule.used_count if rule else 0,
                },
                confidence={"overall": rule.confidence if rule else 0.0},
                case_id=case_id,
            )
        TraceLogger.for_context(ctx, component="classification").on_suggestion(
            suggestion.rule_id if suggestion else None,
            suggestion.category_id if suggestion else None,
            suggestion.confidence if suggestion else None,
        )
        return suggestion

    def _best_match(self, tenant_id: str, normalized: str) -> ClassificationRule | None:
        row = self.db.fetchone("""
            SELECT * FROM classification_rules
            WHERE tenant_id = ?
              AND length(pattern) >= ?
              AND instr(?, pattern) > 0
            ORDER BY confidence DESC, length(pattern) DESC, used_count DESC, created_at
            LIMIT 1
        """, (tenant_id, self.min_pattern_length, normalized))
        return self._row_to_rule(row) if row else None

    # ── Learn ───────────────────────────────────────────────────

    def learn(
        self,
        ctx: RequestContext,
        description: str,
        category_id: str,
        accepted: bool,
        suggested_rule_id: str | None = None,
    ) -> LearnResult:
        """
        Feed back what the human chose for ``description``.

        With ``accepted`` and a suggestion for the same category, that rule
        is reinforced. Anything else upserts the description's own rule.
        """
        normalized = self._normalized(description)
        if not category_id or not str(category_id).strip():
            raise ValidationError("category_id is required")
        category_id = str(category_id).strip()

        suggested = None
        if accepted:
            if suggested_rule_id:
                suggested = self.get_rule(ctx.tenant_id, suggested_rule_id)
            else:
                suggested = self._best_match(ctx.tenant_id, normalized)

        if suggested is not None and suggested.category_id == category_id:
            rule = self._reinforce(suggested)
            mode = "reinforced"
        else:
            if len(normalized) < self.min_pattern_length:
                raise ValidationError(
                    f"Pattern {normalized!r} is shorter than {self.min_pattern_length} characters"
                )
            rule = self._upsert(ctx.tenant_id, normalized, category_id)
            mode = "learned"

        TraceLogger.for_context(ctx, component="classification").on_rule_learned(
            rule.id, mode, rule.used_count, rule.confidence,
        )
        return LearnResult(rule=rule, mode=mode)

    def _reinforce(self, rule: ClassificationRule) -> ClassificationRule:
        self.db.execute("""
            UPDATE classification_rules
            SET used_count = used_count + 1,
                confidence = MIN(?, confidence + ?),
                updated_at = ?
            WHERE tenant_id = ? AND id = ?
        """, (self.max_confidence, self.confidence_step, time.time(), rule.tenant_id, rule.id))
        return self.get_rule(rule.tenant_id, rule.id)

    def _upsert(self, tenant_id: str, pattern: str, category_id: str) -> ClassificationRule:
        now = time.time()
        with self.db.transaction():
            self.db.execute("""
                INSERT INTO classification_rules
                (id, tenant_id, pattern, category_id, confidence, used_count, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, 1, ?, ?)
                ON CONFLICT (tenant_id, pattern, category_id) DO UPDATE SET
                    used_count = used_count + 1,
                    confidence = MIN(?, confidence + ?),
                    updated_at = excluded.updated_at
            """, (
                new_id("rule"), tenant_id, pattern, category_id,
                self.initial_confidence, now, now,
                self.max_confidence, self.confidence_step,
            ))
            row = self.db.fetchone("""
                SELECT * FROM classification_rules
                WHERE tenant_id = ? AND pattern = ? AND category_id = ?
            """, (tenant_id, pattern, category_id))
        return self._row_to_rule(row)

    # ── Reads ───────────────────────────────────────────────────

    def get_rule(self, tenant_id: str, rule_id: str) -> ClassificationRule:
        row = self.db.fetchone(
            "SELECT * FROM classification_rules WHERE tenant_id = ? AND id = ?",
            (tenant_id, rule_id),
        )
        if row is None:
            raise NotFound(f"Unknown rule {rule_id!r}")
        return self._row_to_rule(row)

    def list_rules(self, tenant_id: str, limit: int = 500) -> list[ClassificationRule]:
        rows = self.db.fetchall("""
            SELECT * FROM classification_rules WHERE tenant_id = ?
            ORDER BY confidence DESC, used_count DESC LIMIT ?
        """, (tenant_id, limit))
        return [self._row_to_rule(r) for r in rows]

    def _normalized(self, description: str) -> str:
        if not isinstance(description, str):
            raise ValidationError("description must be a string")
        normalized = normalize_text(description)
        if not normalized:
            raise ValidationError("description is empty after normalization")
        return normalized

    @staticmethod
    def _row_to_rule(row: dict[str, Any]) -> ClassificationRule:
        return ClassificationRule(
            id=row["id"],
            tenant_id=row["tenant_id"],
            pattern=row["pattern"],
            category_id=row["category_id"],
            confidence=round(row["confidence"], 4),
            used_count=row["used_count"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
