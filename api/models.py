"""
Casework - API Models

Request dataclasses for the API server. Each parses a JSON body with
``from_body`` and reports problems with ``validate()``.
No FastAPI dependency, so tests can use them directly.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass
class CaseOpenRequest:
    """POST /v1/cases body."""
    journey_key: str
    state: str | None = None
    owner_ref: str | None = None
    subject_ref: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_body(cls, body: dict[str, Any]) -> CaseOpenRequest:
        return cls(
            journey_key=body.get("journey_key", ""),
            state=body.get("state"),
            owner_ref=body.get("owner_ref"),
            subject_ref=body.get("subject_ref"),
            metadata=body.get("metadata") or {},
        )

    def validate(self) -> list[str]:
        errors = []
        if not self.journey_key or not isinstance(self.journey_key, str):
            errors.append("journey_key is required and must be a string")
        if self.state is not None and not isinstance(self.state, str):
            errors.append("state must be a string")
        if not isinstance(self.metadata, dict):
            errors.append("metadata must be an object")
        return errors


@dataclass
class TransitionRequest:
    """POST /v1/cases/{id}/transition body."""
    from_state: str
    to_state: str
    journey: dict[str, Any] | None = None

    @classmethod
    def from_body(cls, body: dict[str, Any]) -> TransitionRequest:
        return cls(
            from_state=body.get("from_state", ""),
            to_state=body.get("to_state", ""),
            journey=body.get("journey"),
        )

    def validate(self) -> list[str]:
        errors = []
        if not self.from_state or not isinstance(self.from_state, str):
            errors.append("from_state is required and must be a string")
        if not self.to_state or not isinstance(self.to_state, str):
            errors.append("to_state is required and must be a string")
        if self.journey is not None and not isinstance(self.journey, dict):
            errors.append("journey must be an object")
        return errors


@dataclass
class PendencyAnswer:
    """POST /v1/pendencies/{id}/answer body."""
    answer: str

    def validate(self) -> list[str]:
        if not isinstance(self.answer, str) or not self.answer.strip():
            return ["answer is required and must be a non-empty string"]
        return []


@dataclass
class PunchSubmission:
    """POST /v1/presence/punch body."""
    latitude: Any
    longitude: Any
    accuracy_meters: Any = None
    timestamp: str | None = None
    employee_ref: str | None = None
    case_id: str | None = None
    punch_type: str | None = None
    source: str = "APP"

    @classmethod
    def from_body(cls, body: dict[str, Any]) -> PunchSubmission:
        return cls(
            latitude=body.get("latitude"),
            longitude=body.get("longitude"),
            accuracy_meters=body.get("accuracy_meters"),
            timestamp=body.get("timestamp"),
            employee_ref=body.get("employee_ref"),
            case_id=body.get("case_id"),
            punch_type=body.get("punch_type"),
            source=body.get("source") or "APP",
        )

    def validate(self) -> list[str]:
        errors = []
        if not _is_number(self.latitude):
            errors.append("latitude is required and must be a number")
        if not _is_number(self.longitude):
            errors.append("longitude is required and must be a number")
        if self.accuracy_meters is not None and not _is_number(self.accuracy_meters):
            errors.append("accuracy_meters must be a number")
        if not self.employee_ref and not self.case_id:
            errors.append("employee_ref or case_id is required")
        return errors


@dataclass
class JustifyRequest:
    """POST /v1/presence/cases/{id}/justify body."""
    answers: list[dict[str, str]]

    def validate(self) -> list[str]:
        if not isinstance(self.answers, list) or not self.answers:
            return ["answers must be a non-empty list"]
        if not all(isinstance(a, dict) for a in self.answers):
            return ["each answer must be an object with pendency_id and answer"]
        return []


@dataclass
class AdjustPunchRequest:
    """POST /v1/presence/punches/{id}/adjust body."""
    new_timestamp: str
    note: str

    def validate(self) -> list[str]:
        errors = []
        if not self.new_timestamp or not isinstance(self.new_timestamp, str):
            errors.append("new_timestamp is required and must be an ISO string")
        if not isinstance(self.note, str) or not self.note.strip():
            errors.append("note is required")
        return errors


@dataclass
class SuggestRequest:
    """POST /v1/classification/suggest body."""
    description: str
    case_id: str | None = None

    def validate(self) -> list[str]:
        if not isinstance(self.description, str) or not self.description.strip():
            return ["description is required and must be a non-empty string"]
        return []


@dataclass
class LearnRequest:
    """POST /v1/classification/learn body."""
    description: str
    category_id: str
    accepted: bool = False
    suggested_rule_id: str | None = None

    @classmethod
    def from_body(cls, body: dict[str, Any]) -> LearnRequest:
        return cls(
            description=body.get("description", ""),
            category_id=body.get("category_id", ""),
            accepted=body.get("accepted", False),
            suggested_rule_id=body.get("suggested_rule_id"),
        )

    def validate(self) -> list[str]:
        errors = []
        if not isinstance(self.description, str) or not self.description.strip():
            errors.append("description is required and must be a non-empty string")
        if not isinstance(self.category_id, str) or not self.category_id.strip():
            errors.append("category_id is required and must be a string")
        if not isinstance(self.accepted, bool):
            errors.append("accepted must be a boolean")
        return errors
