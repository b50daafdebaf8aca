"""
Casework - Error Taxonomy

Every failure an engine operation can surface to a caller. Each class
carries a stable ``code`` (used verbatim as the ``reason`` in API
responses) and a ``retryable`` flag telling callers whether a fresh
attempt can succeed without any other change.

  StaleState          optimistic-concurrency violation, reload and retry
  Busy                single-flight contention, retry with backoff
  InvalidTransition   unreachable target or blocked by pendencies
  ActionFailed        automation side effect failed (never caller-visible
                      from a transition, only from the audit trail)
  ValidationError     malformed input, never partially applied
"""

from __future__ import annotations

from typing import Any


class EngineError(Exception):
    """Base class for all engine errors."""
    code = "engine_error"
    retryable = False

    def __init__(self, message: str = "", **details: Any):
        self.message = message or self.code
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        out = {"ok": False, "reason": self.code, "detail": self.message}
        if self.details:
            out["details"] = self.details
        return out


class ValidationError(EngineError):
    code = "validation_error"


class NotFound(ValidationError):
    code = "not_found"


class StaleState(EngineError):
    """Stored state no longer matches the caller's expected state."""
    code = "stale_state"
    retryable = True

    def __init__(self, case_id: str, expected: str, actual: str | None):
        self.case_id = case_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Case {case_id!r} is in state {actual!r}, expected {expected!r}",
            expected=expected, actual=actual,
        )


class Busy(EngineError):
    """Another operation on the same case is in flight."""
    code = "busy"
    retryable = True

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Operation already in flight for {key!r}")


class InvalidTransition(EngineError):
    code = "invalid_transition"


class HumanApprovalRequired(InvalidTransition):
    """Only a human actor may perform this action."""
    code = "human_approval_required"


class ActionFailed(EngineError):
    code = "action_failed"

    def __init__(self, kind: str, message: str):
        self.kind = kind
        super().__init__(f"Action {kind!r} failed: {message}", kind=kind)
