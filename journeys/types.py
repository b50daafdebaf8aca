"""
Casework - Journey Type Definitions

Data structures shared by the registry, the executor, the pendency
gate, the automation runner and the audit log.
"""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any

from core.errors import ValidationError

WILDCARD = ""
UNCLASSIFIED = "__unclassified__"


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def action_key(from_state: str, to_state: str) -> str:
    """Key used in a journey's transition action map: ``FROM->TO``."""
    return f"{from_state}->{to_state}"


# ─── Enums ──────────────────────────────────────────────────────────

class CaseStatus(str, enum.Enum):
    """Coarse lifecycle, independent of the journey's own states."""
    OPEN = "open"
    CONFIRMED = "confirmed"
    CLOSED = "closed"


class PendencyStatus(str, enum.Enum):
    OPEN = "open"
    ANSWERED = "answered"
    APPROVED = "approved"
    DISMISSED = "dismissed"


RESOLVED_PENDENCY_STATUSES = (PendencyStatus.APPROVED, PendencyStatus.DISMISSED)


class ActionKind(str, enum.Enum):
    CREATE_PENDENCY = "create_pendency"
    CREATE_TASK = "create_task"
    NOTIFY_CUSTOMER = "notify_customer"
    LOG_EVENT = "log_event"


class MessageStatus(str, enum.Enum):
    PREPARED = "prepared"    # drafted by automation or AI, not sent
    QUEUED = "queued"        # approved by a human, visible to transport
    REJECTED = "rejected"


class TaskStatus(str, enum.Enum):
    OPEN = "open"
    DONE = "done"


# ─── Journey ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ActionSpec:
    """One declarative automation step bound to a transition."""
    kind: ActionKind
    params: dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_dict(raw: dict[str, Any]) -> ActionSpec:
        if not isinstance(raw, dict) or "kind" not in raw:
            raise ValidationError(f"Action spec needs a 'kind': {raw!r}")
        try:
            kind = ActionKind(raw["kind"])
        except ValueError:
            raise ValidationError(f"Unknown action kind {raw['kind']!r}")
        params = {k: v for k, v in raw.items() if k != "kind"}
        params.update(raw.get("params") or {})
        params.pop("params", None)
        return ActionSpec(kind=kind, params=params)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "params": dict(self.params)}


@dataclass(frozen=True)
class Journey:
    """
    A named state machine defined by data.

    ``transition_actions`` maps ``"FROM->TO"`` (or ``"->TO"`` for any
    source state) to the ordered actions fired by that transition.
    A ``derived`` journey computes its state from other records; its
    cases only move through the service that owns that derivation.
    """
    key: str
    name: str
    states: tuple[str, ...]
    is_governed: bool = True
    transition_actions: dict[str, tuple[ActionSpec, ...]] = field(default_factory=dict)
    closing_states: frozenset[str] = frozenset()
    status_by_state: dict[str, CaseStatus] = field(default_factory=dict)
    derived: bool = False
    tenant_id: str | None = None

    def __post_init__(self):
        if not self.key:
            raise ValidationError("Journey key is required")
        if not self.states:
            raise ValidationError(f"Journey {self.key!r} has no states")
        if len(set(self.states)) != len(self.states):
            raise ValidationError(f"Journey {self.key!r} has duplicate states")
        unknown = set(self.closing_states) - set(self.states)
        if unknown:
            raise ValidationError(
                f"Journey {self.key!r} closing states not in states: {sorted(unknown)}"
            )

    @property
    def initial_state(self) -> str:
        return self.states[0]

    def has_state(self, state: str) -> bool:
        return state in self.states

    def is_closing(self, state: str) -> bool:
        return state in self.closing_states

    def actions_for(self, from_state: str, to_state: str) -> list[ActionSpec]:
        """Exact ``FROM->TO`` actions first, then wildcard ``->TO`` actions."""
        exact = self.transition_actions.get(action_key(from_state, to_state), ())
        wildcard = self.transition_actions.get(action_key(WILDCARD, to_state), ())
        return list(exact) + list(wildcard)

    def same_shape(self, other: Journey) -> bool:
        """Same states, closing states, status mapping and derivation; actions may differ."""
        return (
            self.key == other.key
            and self.states == other.states
            and self.closing_states == other.closing_states
            and self.status_by_state == other.status_by_state
            and self.derived == other.derived
        )

    def status_for(self, state: str) -> CaseStatus:
        if state in self.status_by_state:
            return self.status_by_state[state]
        if self.is_closing(state):
            return CaseStatus.CLOSED
        return CaseStatus.OPEN

    @staticmethod
    def from_dict(raw: dict[str, Any], tenant_id: str | None = None) -> Journey:
        actions = {}
        for key, specs in (raw.get("transition_actions") or {}).items():
            if "->" not in key:
                raise ValidationError(f"Action key {key!r} must look like 'FROM->TO'")
            actions[key] = tuple(ActionSpec.from_dict(s) for s in specs or [])
        try:
            status_by_state = {
                s: CaseStatus(v) for s, v in (raw.get("status_by_state") or {}).items()
            }
        except ValueError as e:
            raise ValidationError(f"Bad status_by_state in journey {raw.get('key')!r}: {e}")
        return Journey(
            key=raw.get("key", ""),
            name=raw.get("name") or raw.get("key", ""),
            states=tuple(raw.get("states") or ()),
            is_governed=bool(raw.get("is_governed", True)),
            transition_actions=actions,
            closing_states=frozenset(raw.get("closing_states") or ()),
            status_by_state=status_by_state,
            derived=bool(raw.get("derived", False)),
            tenant_id=tenant_id,
        )


# ─── Cases and audit records ────────────────────────────────────────

@dataclass
class Case:
    id: str
    tenant_id: str
    journey_key: str
    state: str
    status: CaseStatus = CaseStatus.OPEN
    owner_ref: str | None = None
    subject_ref: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    case_date: str | None = None
    archived_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d


@dataclass
class TimelineEvent:
    id: int | None
    tenant_id: str
    case_id: str | None
    type: str
    actor_type: str
    message: str
    meta: dict[str, Any] = field(default_factory=dict)
    actor_ref: str | None = None
    subject_ref: str | None = None
    occurred_at: float = field(default_factory=time.time)
    event_hash: str = ""
    previous_hash: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def to_public_dict(self) -> dict[str, Any]:
        """Customer-facing projection: no actor identity, no internals."""
        return {
            "id": self.id,
            "case_id": self.case_id,
            "type": self.type,
            "message": self.message,
            "occurred_at": self.occurred_at,
        }


@dataclass
class DecisionLog:
    id: int | None
    tenant_id: str
    case_id: str | None
    kind: str
    input_summary: str
    output_summary: str
    reasoning: str = ""
    why: dict[str, Any] = field(default_factory=dict)
    confidence: dict[str, Any] = field(default_factory=dict)
    subject_ref: str | None = None
    occurred_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Pendency:
    id: str
    tenant_id: str
    case_id: str
    type: str
    question: str
    required: bool = True
    assigned_role: str = "admin"
    status: PendencyStatus = PendencyStatus.OPEN
    answer: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    resolved_at: float | None = None
    resolved_by: str | None = None

    @property
    def is_resolved(self) -> bool:
        return self.status in RESOLVED_PENDENCY_STATUSES

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d


@dataclass
class ActionOutcome:
    """Result of one automation step. Failures are data, not exceptions."""
    kind: str
    status: str                 # ok | failed
    ref_id: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def to_dict(self) -> dict[str, Any]:
        d = {"kind": self.kind, "status": self.status}
        if self.ref_id:
            d["ref_id"] = self.ref_id
        if self.error:
            d["error"] = self.error
        return d


@dataclass
class OutboundMessage:
    id: str
    tenant_id: str
    case_id: str | None
    channel: str
    body: str
    template: str | None = None
    recipient_ref: str | None = None
    status: MessageStatus = MessageStatus.PREPARED
    prepared_by: str = "system"
    decided_by: str | None = None
    created_at: float = field(default_factory=time.time)
    decided_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d


@dataclass
class Task:
    id: str
    tenant_id: str
    case_id: str
    title: str
    assigned_role: str | None = None
    due_at: float | None = None
    status: TaskStatus = TaskStatus.OPEN
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d
