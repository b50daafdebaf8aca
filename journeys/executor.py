"""
Casework - Transition Executor

The single runtime for every journey. A transition:

  1. rejects no-op and malformed requests
  2. resolves the case and its configured journey; the target must be a
     configured state and derived journeys only move when asked by their
     owning service
  3. takes the per-case single-flight guard (Busy if already held)
  4. re-reads the case; StaleState if it moved since the caller looked
  5. consults the pendency gate for closing states
  6. writes the new state with compare-and-swap
  7. runs the bound automations (inline) or hands them to the pool
  8. writes exactly one "transition" timeline event
  9. releases the guard and returns an ack with cache keys to invalidate

Automation failures never undo step 6. They are reported as warnings
on the transition event.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from core.context import RequestContext
from core.errors import (
    EngineError,
    InvalidTransition,
    NotFound,
    StaleState,
    ValidationError,
)
from core.logging import TraceLogger
from journeys.audit import AuditLog
from journeys.automation import AutomationRunner
from journeys.guard import MemoryGuard, SingleFlightGuard, guard_key
from journeys.pendency import PendencyGate
from journeys.registry import JourneyRegistry
from journeys.store import CaseStore
from journeys.types import ActionOutcome, Case, Journey

logger = logging.getLogger("casework.executor")

TRANSITION_EVENT = "transition"
AUTOMATION_MODES = ("inline", "background")


def invalidation_keys(tenant_id: str, case_id: str) -> list[str]:
    return [
        f"case:{tenant_id}:{case_id}",
        f"timeline:{tenant_id}:{case_id}",
        f"cases:{tenant_id}",
    ]


@dataclass
class TransitionAck:
    case_id: str
    from_state: str
    to_state: str
    status: str
    event_id: int | None
    outcomes: list[ActionOutcome] = field(default_factory=list)
    automation: str = "inline"
    invalidate: list[str] = field(default_factory=list)

    @property
    def warnings(self) -> list[str]:
        return [f"{o.kind}: {o.error}" for o in self.outcomes if not o.ok]

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "case_id": self.case_id,
            "from": self.from_state,
            "to": self.to_state,
            "status": self.status,
            "event_id": self.event_id,
            "automation": self.automation,
            "actions": [o.to_dict() for o in self.outcomes],
            "warnings": self.warnings,
            "invalidate": list(self.invalidate),
        }


class TransitionExecutor:
    """Generic state-machine runtime driven by journey data."""

    def __init__(
        self,
        registry: JourneyRegistry,
        store: CaseStore,
        audit: AuditLog,
        gate: PendencyGate,
        runner: AutomationRunner,
        guard: SingleFlightGuard | None = None,
        automation_mode: str = "inline",
    ):
        if automation_mode not in AUTOMATION_MODES:
            raise ValidationError(f"Unknown automation mode {automation_mode!r}")
        self.registry = registry
        self.store = store
        self.audit = audit
        self.gate = gate
        self.runner = runner
        self.guard = guard or MemoryGuard()
        self.automation_mode = automation_mode

    # ── Case creation ───────────────────────────────────────────

    def open_case(
        self,
        ctx: RequestContext,
        journey_key: str,
        state: str | None = None,
        owner_ref: str | None = None,
        subject_ref: str | None = None,
        metadata: dict[str, Any] | None = None,
        case_date: str | None = None,
    ) -> Case:
        journey = self.registry.get(ctx.tenant_id, journey_key)
        state = state or journey.initial_state
        if not journey.has_state(state):
            raise InvalidTransition(
                f"State {state!r} is not part of journey {journey_key!r}"
            )
        case = self.store.create_case(
            ctx.tenant_id, journey_key, state,
            status=journey.status_for(state),
            owner_ref=owner_ref,
            subject_ref=subject_ref,
            metadata=metadata,
            case_date=case_date,
        )
        self.audit.record_event(
            ctx, case.id, "case_created",
            f"Case opened in {state}",
            meta={"journey": journey_key, "state": state},
            subject_ref=subject_ref,
        )
        logger.info("Case %s opened in %s/%s", case.id, journey_key, state)
        return case

    def get_case(self, ctx: RequestContext, case_id: str) -> Case:
        case = self.store.get_case(ctx.tenant_id, case_id)
        if case is None:
            raise NotFound(f"Unknown case {case_id!r}", case_id=case_id)
        return case

    # ── Transition ──────────────────────────────────────────────

    def transition(
        self,
        ctx: RequestContext,
        case_id: str,
        expected_state: str,
        next_state: str,
        journey: Journey | None = None,
        derived: bool = False,
    ) -> TransitionAck:
        """
        Move a case from ``expected_state`` to ``next_state``.

        A supplied ``journey`` must match the configured one in everything
        but its actions. ``derived`` is passed only by the service that
        computes the state of a derived journey.
        """
        log = TraceLogger.for_context(ctx, component="executor")
        log.on_transition_start(case_id, expected_state, next_state)
        try:
            return self._transition(
                ctx, log, case_id, expected_state, next_state, journey, derived,
            )
        except EngineError as e:
            log.on_transition_rejected(case_id, next_state, e.code, e.message)
            raise

    def _transition(
        self,
        ctx: RequestContext,
        log: TraceLogger,
        case_id: str,
        expected_state: str,
        next_state: str,
        journey: Journey | None,
        derived: bool,
    ) -> TransitionAck:
        if not case_id:
            raise ValidationError("case_id is required")
        if not expected_state or not next_state:
            raise ValidationError("expected and next state are required")
        if next_state == expected_state:
            raise ValidationError(f"No-op transition {expected_state!r} -> {next_state!r}")

        case = self.get_case(ctx, case_id)
        configured = self.registry.get(ctx.tenant_id, case.journey_key)
        if journey is None:
            journey = configured
        elif journey.key != case.journey_key:
            raise ValidationError(
                f"Case {case_id!r} belongs to journey {case.journey_key!r}, not {journey.key!r}"
            )
        elif not journey.same_shape(configured):
            raise InvalidTransition(
                f"Supplied journey {journey.key!r} does not match the configured states"
            )
        if configured.derived and not derived:
            raise InvalidTransition(
                f"Cases of journey {configured.key!r} have a derived state; "
                "it cannot be set directly"
            )
        if not configured.has_state(next_state):
            raise InvalidTransition(
                f"State {next_state!r} is not part of journey {configured.key!r}"
            )

        with self.guard.hold(guard_key(ctx.tenant_id, case_id)):
            current = self.get_case(ctx, case_id)
            if current.state != expected_state:
                raise StaleState(case_id, expected_state, current.state)

            self.gate.check(ctx.tenant_id, case_id, journey, next_state)

            status = journey.status_for(next_state)
            if not self.store.compare_and_set_state(
                ctx.tenant_id, case_id, expected_state, next_state, status,
            ):
                latest = self.store.get_case(ctx.tenant_id, case_id)
                raise StaleState(case_id, expected_state, latest.state if latest else None)

            current.state = next_state
            current.status = status

            if self.automation_mode == "background":
                outcomes: list[ActionOutcome] = []
                automation = "deferred"
            else:
                outcomes = self.runner.run(ctx, current, expected_state, next_state, journey)
                automation = "inline"

            warnings = [f"{o.kind}: {o.error}" for o in outcomes if not o.ok]
            meta: dict[str, Any] = {
                "from": expected_state,
                "to": next_state,
                "automation": automation,
                "actions": [o.to_dict() for o in outcomes],
            }
            if warnings:
                meta["warnings"] = warnings
            event = self.audit.record_event(
                ctx, case_id, TRANSITION_EVENT,
                f"{expected_state} -> {next_state}",
                meta=meta,
                subject_ref=current.subject_ref,
            )

            if automation == "deferred":
                self.runner.submit(ctx, current, expected_state, next_state, journey)

        log.on_transition_committed(
            case_id, expected_state, next_state,
            actions_run=len(outcomes),
            actions_failed=len(warnings),
        )
        return TransitionAck(
            case_id=case_id,
            from_state=expected_state,
            to_state=next_state,
            status=status.value,
            event_id=event.id,
            outcomes=outcomes,
            automation=automation,
            invalidate=invalidation_keys(ctx.tenant_id, case_id),
        )
