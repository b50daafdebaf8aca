"""
Casework - Request Context

Tenant and actor identity travel explicitly with every call instead of
living in module globals, so engine objects can be shared by concurrent
request handlers without leaking identity between them.
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field

from core.errors import HumanApprovalRequired, ValidationError


class ActorType(str, enum.Enum):
    HUMAN = "human"
    SYSTEM = "system"
    AI = "ai"


def _trace_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class RequestContext:
    """Who is acting, on behalf of which tenant."""
    tenant_id: str
    actor_type: ActorType = ActorType.HUMAN
    actor_ref: str | None = None
    trace_id: str = field(default_factory=_trace_id)

    def __post_init__(self):
        if not self.tenant_id or not isinstance(self.tenant_id, str):
            raise ValidationError("tenant_id is required")
        if not isinstance(self.actor_type, ActorType):
            try:
                object.__setattr__(self, "actor_type", ActorType(self.actor_type))
            except ValueError:
                raise ValidationError(f"Unknown actor_type {self.actor_type!r}")

    @property
    def is_human(self) -> bool:
        return self.actor_type == ActorType.HUMAN

    def require_human(self, action: str):
        """Raise unless a human is performing ``action``."""
        if not self.is_human:
            raise HumanApprovalRequired(
                f"{action} requires a human actor, got {self.actor_type.value}"
            )

    def as_system(self) -> RequestContext:
        """Same tenant and trace, acting as the system."""
        return RequestContext(
            tenant_id=self.tenant_id,
            actor_type=ActorType.SYSTEM,
            actor_ref=None,
            trace_id=self.trace_id,
        )
