"""
Casework - Core Package

Shared plumbing used by every engine component: error taxonomy,
request context, configuration, structured logging, the database
backend and text normalization. Nothing here knows about journeys.
"""

from core.context import RequestContext, ActorType
from core.errors import (
    EngineError, ValidationError, NotFound, StaleState, Busy,
    InvalidTransition, HumanApprovalRequired, ActionFailed,
)

__all__ = [
    "RequestContext",
    "ActorType",
    "EngineError",
    "ValidationError",
    "NotFound",
    "StaleState",
    "Busy",
    "InvalidTransition",
    "HumanApprovalRequired",
    "ActionFailed",
]
