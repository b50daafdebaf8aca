"""
Casework - Presence Package

Attendance punch clock built on the journey engine.
"""

from presence.punch import (
    PunchType, PunchStatus, PunchSource, DayState,
    infer_next_punch_type, haversine_meters, derive_day_state, worked_minutes,
)
from presence.clock import PresencePolicy, PolicyBook, PresenceService, PunchResult

__all__ = [
    "PunchType",
    "PunchStatus",
    "PunchSource",
    "DayState",
    "infer_next_punch_type",
    "haversine_meters",
    "derive_day_state",
    "worked_minutes",
    "PresencePolicy",
    "PolicyBook",
    "PresenceService",
    "PunchResult",
]
