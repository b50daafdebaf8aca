"""
Casework - Journeys Package

The governed workflow engine: journey definitions, the transition
executor, the pendency gate, the automation runner, the outbox and the
audit log.

  - journeys.types: Journey, Case, Pendency, ActionSpec, ...
  - journeys.registry: JourneyRegistry
  - journeys.executor: TransitionExecutor, TransitionAck
  - journeys.runtime: Engine, build_engine
"""

from journeys.types import (
    Journey, Case, CaseStatus, ActionSpec, ActionKind, ActionOutcome,
    Pendency, PendencyStatus, TimelineEvent, DecisionLog, OutboundMessage,
    MessageStatus, Task, UNCLASSIFIED,
)
from journeys.registry import JourneyRegistry
from journeys.executor import TransitionExecutor, TransitionAck

__all__ = [
    "Journey",
    "Case",
    "CaseStatus",
    "ActionSpec",
    "ActionKind",
    "ActionOutcome",
    "Pendency",
    "PendencyStatus",
    "TimelineEvent",
    "DecisionLog",
    "OutboundMessage",
    "MessageStatus",
    "Task",
    "UNCLASSIFIED",
    "JourneyRegistry",
    "TransitionExecutor",
    "TransitionAck",
]
