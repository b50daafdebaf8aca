"""
Casework - Runtime Wiring

Builds every engine component over one database from a ConfigLoader.
The API server and the tests both go through ``build_engine`` so they
run the same object graph.

    config = load_config(env="dev", project_root=".")
    engine = build_engine(config)
    engine.executor.transition(ctx, case_id, "CRIAR", "PRODUCAO")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from classification.learner import RuleLearner
from core.db import SQLiteBackend, create_backend
from journeys.audit import DEFAULT_INTERNAL_EVENT_TYPES, AuditLog
from journeys.automation import AutomationRunner
from journeys.executor import TransitionExecutor
from journeys.guard import SingleFlightGuard, create_guard
from journeys.outbox import MessageGovernance
from journeys.pendency import PendencyGate
from journeys.registry import JourneyRegistry
from journeys.store import CaseStore
from presence.clock import PolicyBook, PresenceService
from presence.store import PresenceStore

logger = logging.getLogger("casework.runtime")


@dataclass
class Engine:
    db: SQLiteBackend
    registry: JourneyRegistry
    store: CaseStore
    audit: AuditLog
    gate: PendencyGate
    runner: AutomationRunner
    guard: SingleFlightGuard
    executor: TransitionExecutor
    outbox: MessageGovernance
    presence: PresenceService
    learner: RuleLearner

    def close(self):
        self.runner.shutdown(wait_for=True)
        self.db.close()


def build_engine(
    config,
    db: SQLiteBackend | None = None,
    registry: JourneyRegistry | None = None,
) -> Engine:
    db = db or create_backend(path=config.get("database.path", ":memory:"))
    registry = registry or JourneyRegistry.from_config(config)

    store = CaseStore(db)
    audit = AuditLog(
        db,
        internal_event_types=config.get(
            "audit.internal_event_types", sorted(DEFAULT_INTERNAL_EVENT_TYPES),
        ),
    )
    gate = PendencyGate(
        store, audit,
        answered_unblocks=bool(config.get("pendencies.answered_unblocks", False)),
    )
    runner = AutomationRunner(
        store, audit, gate,
        max_workers=int(config.get("automation.max_workers", 4)),
    )
    guard = create_guard(
        backend=config.get("single_flight.backend", "memory"),
        db=db,
        lease_seconds=float(config.get("single_flight.lease_seconds", 30)),
    )
    executor = TransitionExecutor(
        registry, store, audit, gate, runner,
        guard=guard,
        automation_mode=config.get("automation.mode", "inline"),
    )
    presence = PresenceService(
        executor,
        PresenceStore(db),
        policies=PolicyBook.from_config(config),
        journey_key=config.get("presence.journey_key", "presence"),
    )
    learner = RuleLearner.from_config(db, audit, config)

    logger.info(
        "Engine ready: journeys=%d guard=%s automation=%s",
        len(registry), guard.backend, executor.automation_mode,
    )
    return Engine(
        db=db,
        registry=registry,
        store=store,
        audit=audit,
        gate=gate,
        runner=runner,
        guard=guard,
        executor=executor,
        outbox=MessageGovernance(store, audit),
        presence=presence,
        learner=learner,
    )
