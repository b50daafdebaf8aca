"""
Casework - Punch Sequence Rules

Pure functions behind the attendance clock. No I/O here: the service
in presence.clock feeds these with stored punches and pendencies.

Canonical day:

    ENTRY → (BREAK_START → BREAK_END)? → (BREAK2_START → BREAK2_END)? → EXIT

Break legs exist only when the tenant policy requires a break. The
second break is never inferred; it has to be requested explicitly
after BREAK_END.
"""

from __future__ import annotations

import enum
import math
from datetime import datetime
from typing import Iterable, Sequence


class PunchType(str, enum.Enum):
    ENTRY = "ENTRY"
    BREAK_START = "BREAK_START"
    BREAK_END = "BREAK_END"
    BREAK2_START = "BREAK2_START"
    BREAK2_END = "BREAK2_END"
    EXIT = "EXIT"


class PunchStatus(str, enum.Enum):
    VALID = "VALID"
    VALID_WITH_EXCEPTION = "VALID_WITH_EXCEPTION"
    PENDING_REVIEW = "PENDING_REVIEW"   # location fix too imprecise to judge


class PunchSource(str, enum.Enum):
    APP = "APP"
    WHATSAPP = "WHATSAPP"


class DayState(str, enum.Enum):
    AGUARDANDO_ENTRADA = "AGUARDANDO_ENTRADA"
    EM_EXPEDIENTE = "EM_EXPEDIENTE"
    EM_INTERVALO = "EM_INTERVALO"
    AGUARDANDO_SAIDA = "AGUARDANDO_SAIDA"
    PENDENTE_JUSTIFICATIVA = "PENDENTE_JUSTIFICATIVA"
    PENDENTE_APROVACAO = "PENDENTE_APROVACAO"
    FECHADO = "FECHADO"
    AJUSTADO = "AJUSTADO"


PROGRESS = {
    PunchType.ENTRY: 0,
    PunchType.BREAK_START: 1,
    PunchType.BREAK_END: 2,
    PunchType.BREAK2_START: 3,
    PunchType.BREAK2_END: 4,
    PunchType.EXIT: 5,
}

EARTH_RADIUS_METERS = 6371000.0


def infer_next_punch_type(
    last: PunchType | None, break_required: bool,
) -> PunchType | None:
    """The single legal next punch, or None once EXIT is recorded."""
    if last is None:
        return PunchType.ENTRY
    if last == PunchType.ENTRY:
        return PunchType.BREAK_START if break_required else PunchType.EXIT
    if last == PunchType.BREAK_START:
        return PunchType.BREAK_END
    if last == PunchType.BREAK_END:
        return PunchType.EXIT
    if last == PunchType.BREAK2_START:
        return PunchType.BREAK2_END
    if last == PunchType.BREAK2_END:
        return PunchType.EXIT
    return None


def allowed_punch_types(last: PunchType | None, break_required: bool) -> list[PunchType]:
    """Inferred type plus the optional second break after BREAK_END."""
    nxt = infer_next_punch_type(last, break_required)
    allowed = [nxt] if nxt is not None else []
    if last == PunchType.BREAK_END and break_required:
        allowed.append(PunchType.BREAK2_START)
    return allowed


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two WGS84 points."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.asin(min(1.0, math.sqrt(a)))


def derive_day_state(
    punch_types: Sequence[PunchType],
    justification_open: bool = False,
    closed: bool = False,
    adjusted: bool = False,
) -> DayState:
    """
    Day state as a function of the punch sequence and pendency status.

    ``justification_open`` only matters once EXIT is recorded: during
    the day the state follows the punches.
    """
    if closed:
        return DayState.AJUSTADO if adjusted else DayState.FECHADO
    if not punch_types:
        return DayState.AGUARDANDO_ENTRADA
    last = punch_types[-1]
    if last == PunchType.ENTRY:
        return DayState.EM_EXPEDIENTE
    if last in (PunchType.BREAK_START, PunchType.BREAK2_START):
        return DayState.EM_INTERVALO
    if last in (PunchType.BREAK_END, PunchType.BREAK2_END):
        return DayState.AGUARDANDO_SAIDA
    if justification_open:
        return DayState.PENDENTE_JUSTIFICATIVA
    return DayState.PENDENTE_APROVACAO


def has_complete_break(punch_types: Iterable[PunchType]) -> bool:
    types = set(punch_types)
    return PunchType.BREAK_START in types and PunchType.BREAK_END in types


def _minutes(start: datetime, end: datetime) -> int:
    return int(round((end - start).total_seconds() / 60))


def worked_minutes(punches: Sequence[tuple[PunchType, datetime]]) -> int:
    """
    Minutes between ENTRY and EXIT minus every completed break.

    Raises ValueError when ENTRY or EXIT is missing.
    """
    first: dict[PunchType, datetime] = {}
    for ptype, ts in punches:
        first.setdefault(ptype, ts)
    if PunchType.ENTRY not in first or PunchType.EXIT not in first:
        raise ValueError("worked minutes need both ENTRY and EXIT")
    total = _minutes(first[PunchType.ENTRY], first[PunchType.EXIT])
    for start, end in (
        (PunchType.BREAK_START, PunchType.BREAK_END),
        (PunchType.BREAK2_START, PunchType.BREAK2_END),
    ):
        if start in first and end in first:
            total -= _minutes(first[start], first[end])
    return total


def parse_hhmm(value: str) -> tuple[int, int]:
    try:
        hh, mm = value.split(":")
        hh_i, mm_i = int(hh), int(mm)
    except (ValueError, AttributeError):
        raise ValueError(f"bad HH:MM value {value!r}")
    if not (0 <= hh_i < 24 and 0 <= mm_i < 60):
        raise ValueError(f"bad HH:MM value {value!r}")
    return hh_i, mm_i


def minutes_late(local_time: datetime, scheduled_start: str) -> int:
    """Minutes after the scheduled start (negative when early)."""
    hh, mm = parse_hhmm(scheduled_start)
    return (local_time.hour * 60 + local_time.minute) - (hh * 60 + mm)
