"""
Casework - Presence Clock

Attendance days as cases of the ``presence`` journey. One case per
employee per local date. Every punch is recorded, whatever its
location: exceptions (outside the site radius, late arrival, missing
break) open required pendencies instead of blocking the punch.

The day's state is never set directly. After every change it is
re-derived from the punches and pendencies and, if different, applied
through the TransitionExecutor so the usual single-flight, gate and
audit rules hold.

Policy is resolved from config, most specific wins:

    presence:
      radius_meters: 100
      tenants:
        acme:
          site: {latitude: -23.55, longitude: -46.63, name: "HQ"}
          employees:
            emp_1: {scheduled_start: "09:00"}
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, fields
from datetime import date, datetime, timezone
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from core.context import RequestContext
from core.db import IntegrityError
from core.errors import InvalidTransition, NotFound, ValidationError
from core.logging import TraceLogger
from journeys.executor import TransitionExecutor
from journeys.guard import guard_key
from journeys.types import Case, CaseStatus, PendencyStatus
from presence.punch import (
    DayState,
    PunchSource,
    PunchStatus,
    PunchType,
    allowed_punch_types,
    derive_day_state,
    has_complete_break,
    haversine_meters,
    minutes_late,
    parse_hhmm,
    worked_minutes,
)
from presence.store import PresenceStore, PunchRecord, new_punch_id

logger = logging.getLogger("casework.presence")

JUSTIFICATION_TYPES = ("outside_radius", "late_arrival", "missing_break")
APPROVAL_TYPE = "approval_required"
UNRESOLVED = (PendencyStatus.OPEN, PendencyStatus.ANSWERED)


# ═══════════════════════════════════════════════════════════════════
# Policy
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class PresencePolicy:
    radius_meters: float = 100.0
    lateness_tolerance_minutes: int = 10
    break_required: bool = True
    planned_minutes: int = 480
    time_zone: str = "America/Sao_Paulo"
    scheduled_start: str = "08:00"
    site_latitude: float | None = None
    site_longitude: float | None = None
    location_name: str | None = None

    def __post_init__(self):
        if self.radius_meters <= 0:
            raise ValidationError("radius_meters must be positive")
        try:
            parse_hhmm(self.scheduled_start)
        except ValueError as e:
            raise ValidationError(str(e))
        try:
            ZoneInfo(self.time_zone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValidationError(f"Unknown time zone {self.time_zone!r}")

    @property
    def has_site(self) -> bool:
        return self.site_latitude is not None and self.site_longitude is not None

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.time_zone)

    def local_date(self, ts: datetime) -> str:
        return ts.astimezone(self.tz).date().isoformat()

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> PresencePolicy:
        known = {f.name for f in fields(cls)}
        site = data.get("site") or {}
        values = {k: v for k, v in data.items() if k in known}
        if site:
            values.setdefault("site_latitude", site.get("latitude"))
            values.setdefault("site_longitude", site.get("longitude"))
            values.setdefault("location_name", site.get("name"))
        return cls(**values)


@dataclass
class PolicyBook:
    """Defaults, per-tenant overrides and per-employee overrides."""
    defaults: dict[str, Any] = field(default_factory=dict)
    tenants: dict[str, dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_config(cls, config) -> PolicyBook:
        raw = dict(config.get("presence", {}) or {})
        tenants = raw.pop("tenants", {}) or {}
        raw.pop("journey_key", None)
        return cls(defaults=raw, tenants=tenants)

    def policy_for(self, tenant_id: str, employee_ref: str | None = None) -> PresencePolicy:
        merged = dict(self.defaults)
        tenant = dict(self.tenants.get(tenant_id) or {})
        employees = tenant.pop("employees", {}) or {}
        merged.update(tenant)
        if employee_ref and employee_ref in employees:
            merged.update(employees[employee_ref] or {})
        return PresencePolicy.from_mapping(merged)


@dataclass
class PunchResult:
    case_id: str
    punch: PunchRecord
    state: str
    pendency_ids: list[str] = field(default_factory=list)
    outside_radius_pendency: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "case_id": self.case_id,
            "recorded_type": self.punch.type.value,
            "within_radius": self.punch.within_radius,
            "distance_meters": self.punch.distance_meters,
            "status": self.punch.status.value,
            "state": self.state,
            "pendency_created": self.outside_radius_pendency,
            "pendency_ids": list(self.pendency_ids),
            "punch": self.punch.to_dict(),
        }


# ═══════════════════════════════════════════════════════════════════
# Input validation
# ═══════════════════════════════════════════════════════════════════

def _coordinate(value: Any, name: str, bound: float) -> float:
    try:
        v = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} is not a number: {value!r}")
    if not math.isfinite(v) or abs(v) > bound:
        raise ValidationError(f"{name} out of range: {value!r}")
    return v


def parse_timestamp(value: datetime | str | None) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"Unparsable timestamp {value!r}")
    if not isinstance(value, datetime):
        raise ValidationError(f"Unparsable timestamp {value!r}")
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


# ═══════════════════════════════════════════════════════════════════
# Service
# ═══════════════════════════════════════════════════════════════════

class PresenceService:

    def __init__(
        self,
        executor: TransitionExecutor,
        store: PresenceStore,
        policies: PolicyBook | None = None,
        journey_key: str = "presence",
    ):
        self.executor = executor
        self.store = store
        self.policies = policies or PolicyBook()
        self.journey_key = journey_key

    @property
    def gate(self):
        return self.executor.gate

    @property
    def audit(self):
        return self.executor.audit

    def policy_for(self, tenant_id: str, employee_ref: str | None = None) -> PresencePolicy:
        return self.policies.policy_for(tenant_id, employee_ref)

    # ── Day cases ───────────────────────────────────────────────

    def ensure_day_case(self, ctx: RequestContext, employee_ref: str, day: date | str) -> Case:
        if not employee_ref:
            raise ValidationError("employee_ref is required")
        day_str = day.isoformat() if isinstance(day, date) else str(day)
        try:
            date.fromisoformat(day_str)
        except ValueError:
            raise ValidationError(f"Bad day {day_str!r}")
        existing = self.executor.store.find_day_case(
            ctx.tenant_id, self.journey_key, employee_ref, day_str,
        )
        if existing:
            return existing
        try:
            return self.executor.open_case(
                ctx, self.journey_key,
                state=DayState.AGUARDANDO_ENTRADA.value,
                subject_ref=employee_ref,
                metadata={"employee_ref": employee_ref, "day": day_str},
                case_date=day_str,
            )
        except IntegrityError:
            # lost a race with a concurrent punch for the same day
            return self.executor.store.find_day_case(
                ctx.tenant_id, self.journey_key, employee_ref, day_str,
            )

    def _day_case(self, ctx: RequestContext, case_id: str) -> Case:
        case = self.executor.get_case(ctx, case_id)
        if case.journey_key != self.journey_key:
            raise ValidationError(f"Case {case_id!r} is not a presence day")
        return case

    def _punch_lock(self, ctx: RequestContext, case_id: str):
        return self.executor.guard.hold("punch:" + guard_key(ctx.tenant_id, case_id))

    def _atomic(self):
        """Punches, pendencies, ledger rows and the derived transition commit together."""
        return self.store.db.transaction()

    # ── Punches ─────────────────────────────────────────────────

    def submit_punch(
        self,
        ctx: RequestContext,
        latitude: Any,
        longitude: Any,
        accuracy_meters: Any = None,
        timestamp: datetime | str | None = None,
        employee_ref: str | None = None,
        case_id: str | None = None,
        punch_type: PunchType | str | None = None,
        source: PunchSource | str = PunchSource.APP,
    ) -> PunchResult:
        lat = _coordinate(latitude, "latitude", 90.0)
        lon = _coordinate(longitude, "longitude", 180.0)
        accuracy = None
        if accuracy_meters is not None:
            accuracy = _coordinate(accuracy_meters, "accuracy_meters", 1e7)
            if accuracy < 0:
                raise ValidationError("accuracy_meters must be >= 0")
        ts = parse_timestamp(timestamp)
        try:
            source = PunchSource(source)
            forced = PunchType(punch_type) if punch_type else None
        except ValueError as e:
            raise ValidationError(str(e))

        if case_id:
            case = self._day_case(ctx, case_id)
            employee_ref = case.subject_ref
        elif employee_ref:
            policy = self.policy_for(ctx.tenant_id, employee_ref)
            case = self.ensure_day_case(ctx, employee_ref, policy.local_date(ts))
        else:
            raise ValidationError("case_id or employee_ref is required")
        policy = self.policy_for(ctx.tenant_id, employee_ref)

        with self._punch_lock(ctx, case.id):
            case = self._day_case(ctx, case.id)
            if case.status == CaseStatus.CLOSED:
                raise InvalidTransition(f"Day {case.id!r} is closed to punches")
            punches = self.store.list_punches(ctx.tenant_id, case.id)
            last = punches[-1].type if punches else None
            allowed = allowed_punch_types(last, policy.break_required)
            if not allowed:
                raise InvalidTransition("No punch expected: EXIT already recorded")
            ptype = forced or allowed[0]
            # after ENTRY, EXIT may be forced early; a skipped break becomes a pendency
            early_exit = ptype == PunchType.EXIT and last is not None
            if ptype not in allowed and not early_exit:
                raise InvalidTransition(
                    f"Expected {' or '.join(a.value for a in allowed)}, got {ptype.value}"
                )
            if punches and ts < punches[-1].effective_timestamp:
                raise ValidationError("Punch timestamp is earlier than the previous punch")

            with self._atomic():
                return self._record(
                    ctx, case, policy, punches, ptype, ts, lat, lon, accuracy, source,
                )

    def _record(
        self,
        ctx: RequestContext,
        case: Case,
        policy: PresencePolicy,
        punches: list[PunchRecord],
        ptype: PunchType,
        ts: datetime,
        lat: float,
        lon: float,
        accuracy: float | None,
        source: PunchSource,
    ) -> PunchResult:
        """
        Store one punch and open the pendencies its exceptions call for.

        A punch outside the radius opens exactly one ``outside_radius``
        pendency. Lateness and a skipped break are separate exceptions
        with pendencies of their own, so a late entry from outside the
        site carries two required pendencies.
        """
        within = True
        distance = None
        if policy.has_site:
            distance = haversine_meters(lat, lon, policy.site_latitude, policy.site_longitude)
            within = distance <= policy.radius_meters

        late_by = None
        if ptype == PunchType.ENTRY:
            late_by = minutes_late(ts.astimezone(policy.tz), policy.scheduled_start)
            if late_by <= policy.lateness_tolerance_minutes:
                late_by = None

        status = PunchStatus.VALID
        if not within or late_by is not None:
            status = PunchStatus.VALID_WITH_EXCEPTION
        elif accuracy is not None and policy.has_site and accuracy > policy.radius_meters:
            status = PunchStatus.PENDING_REVIEW

        punch = PunchRecord(
            id=new_punch_id(),
            tenant_id=ctx.tenant_id,
            case_id=case.id,
            employee_ref=case.subject_ref or "",
            type=ptype,
            timestamp=ts,
            latitude=lat,
            longitude=lon,
            accuracy_meters=accuracy,
            distance_meters=distance,
            within_radius=within,
            status=status,
            source=source,
            meta={
                "day": case.case_date,
                "radius_meters": policy.radius_meters,
                "break_required": policy.break_required,
                "location_name": policy.location_name,
            },
        )
        try:
            self.store.insert_punch(punch)
        except IntegrityError:
            raise InvalidTransition(f"{ptype.value} already recorded for this day")

        created: list[str] = []
        outside_pendency = None
        if not within:
            p = self.gate.create(
                ctx, case.id, "outside_radius",
                f"Punch outside the radius ({round(distance)}m from "
                f"{policy.location_name or 'the site'}). Send a justification.",
                required=True, meta={"punch_id": punch.id},
            )
            outside_pendency = p.id
            created.append(p.id)

        if late_by is not None:
            p = self.gate.create(
                ctx, case.id, "late_arrival",
                f"Entry after tolerance (+{policy.lateness_tolerance_minutes} min). "
                "Send a justification.",
                required=True, meta={"punch_id": punch.id, "minutes_late": late_by},
            )
            created.append(p.id)
            self.audit.record_event(
                ctx.as_system(), case.id, "late_arrival",
                "Late arrival detected (entry outside tolerance)",
                meta={
                    "minutes_late": late_by,
                    "tolerance_minutes": policy.lateness_tolerance_minutes,
                    "scheduled_start": policy.scheduled_start,
                },
            )

        if ptype == PunchType.EXIT:
            types = [p.type for p in punches] + [ptype]
            if policy.break_required and not has_complete_break(types):
                p = self.gate.create(
                    ctx, case.id, "missing_break",
                    "Required break not recorded (start and end). Send a justification.",
                    required=True,
                )
                created.append(p.id)
            if not self._justification_open(ctx.tenant_id, case.id):
                approval = self._ensure_approval_pendency(ctx, case.id)
                if approval:
                    created.append(approval)

        self.audit.record_event(
            ctx, case.id, "presence_punch",
            f"Punch recorded: {ptype.value}",
            meta={
                "punch_id": punch.id,
                "type": ptype.value,
                "source": source.value,
                "within_radius": within,
                "distance_meters": distance,
                "status": status.value,
            },
            subject_ref=case.subject_ref,
        )
        if status == PunchStatus.VALID_WITH_EXCEPTION:
            self.audit.record_decision(
                ctx.as_system(), "presence_exception",
                input_summary="Punch submission",
                output_summary="Punch valid with exception",
                reasoning=(
                    "Punches are never blocked. When an exception is found "
                    "(geofence or lateness) a required pendency is opened."
                ),
                why={
                    "type": ptype.value,
                    "within_radius": within,
                    "distance_meters": distance,
                    "minutes_late": late_by,
                },
                confidence={"overall": 0.9},
                case_id=case.id,
                subject_ref=case.subject_ref,
            )

        state = self._sync_state(ctx, case.id)
        TraceLogger.for_context(ctx, component="presence").on_punch_recorded(
            case.id, ptype.value, within, distance, state,
        )
        return PunchResult(
            case_id=case.id,
            punch=punch,
            state=state,
            pendency_ids=created,
            outside_radius_pendency=outside_pendency,
        )

    # ── Justification ───────────────────────────────────────────

    def justify(
        self, ctx: RequestContext, case_id: str, answers: list[dict[str, str]],
    ) -> dict[str, Any]:
        """
        Answer justification pendencies of a day.

        ``answers`` items are {"pendency_id": ..., "answer": ...}. Once no
        required pendency is left unanswered the day waits for approval.
        """
        if not answers:
            raise ValidationError("at least one answer is required")
        case = self._day_case(ctx, case_id)
        with self._punch_lock(ctx, case.id), self._atomic():
            for item in answers:
                pendency_id = (item.get("pendency_id") or "").strip()
                text = (item.get("answer") or "").strip()
                if not pendency_id or not text:
                    raise ValidationError("each answer needs pendency_id and answer")
                pendency = self.gate.get(ctx.tenant_id, pendency_id)
                if pendency.case_id != case.id:
                    raise ValidationError(f"Pendency {pendency_id!r} belongs to another case")
                self.gate.answer(ctx, pendency_id, text)

            required_open = bool(self.executor.store.list_pendencies(
                ctx.tenant_id, case.id, statuses=(PendencyStatus.OPEN,), required=True,
            ))
            has_exit = any(
                p.type == PunchType.EXIT for p in self.store.list_punches(ctx.tenant_id, case.id)
            )
            if not required_open:
                if has_exit:
                    self._ensure_approval_pendency(ctx, case.id)
                self.audit.record_event(
                    ctx, case.id, "presence_justification_sent",
                    "Justifications sent by the employee",
                    subject_ref=case.subject_ref,
                )
            state = self._sync_state(ctx, case.id)
        return {"ok": True, "case_id": case.id, "state": state, "required_open": required_open}

    # ── Closing ─────────────────────────────────────────────────

    def close_day(self, ctx: RequestContext, case_id: str, note: str | None = None) -> dict[str, Any]:
        ctx.require_human("closing a presence day")
        case = self._day_case(ctx, case_id)
        policy = self.policy_for(ctx.tenant_id, case.subject_ref)

        with self._punch_lock(ctx, case.id), self._atomic():
            case = self._day_case(ctx, case.id)
            if case.status == CaseStatus.CLOSED:
                raise InvalidTransition(f"Day {case.id!r} is already closed")
            punches = self.store.list_punches(ctx.tenant_id, case.id)
            types = [p.type for p in punches]
            if PunchType.ENTRY not in types:
                raise ValidationError("Missing ENTRY")
            if PunchType.EXIT not in types:
                raise ValidationError("Missing EXIT")
            if policy.break_required and not has_complete_break(types):
                raise ValidationError("Missing required break (BREAK_START/BREAK_END)")

            worked = worked_minutes([(p.type, p.effective_timestamp) for p in punches])
            delta = worked - policy.planned_minutes
            entry = self.store.append_ledger(
                ctx.tenant_id, case.subject_ref or "", case.id,
                worked_minutes=worked, minutes_delta=delta, source="AUTO", note=note,
            )

            for p in self.executor.store.list_pendencies(
                ctx.tenant_id, case.id, statuses=UNRESOLVED,
            ):
                if p.type == APPROVAL_TYPE:
                    self.gate.approve(ctx, p.id)
            self.gate.waive_all(ctx, case.id, reason="day closed")

            self.executor.transition(
                ctx, case.id, case.state, DayState.FECHADO.value, derived=True,
            )

            self.audit.record_event(
                ctx, case.id, "presence_day_closed",
                f"Day closed. Worked: {worked}min, planned: {policy.planned_minutes}min, "
                f"delta: {delta}min.",
                meta={
                    "worked_minutes": worked,
                    "planned_minutes": policy.planned_minutes,
                    "minutes_delta": delta,
                    "balance_after": entry["balance_after"],
                    "note": note,
                },
                subject_ref=case.subject_ref,
            )
            self.audit.record_decision(
                ctx, "presence_close",
                input_summary="Day closing",
                output_summary="Bank-hour ledger entry created",
                reasoning=(
                    "Worked minutes are entry to exit minus recorded breaks; "
                    "the delta against the planned minutes goes to the ledger."
                ),
                why={
                    "worked_minutes": worked,
                    "planned_minutes": policy.planned_minutes,
                    "minutes_delta": delta,
                },
                confidence={"overall": 0.9},
                case_id=case.id,
                subject_ref=case.subject_ref,
            )
        logger.info("Presence day %s closed: worked=%d delta=%d", case.id, worked, delta)
        return {
            "ok": True,
            "case_id": case.id,
            "state": DayState.FECHADO.value,
            "worked_minutes": worked,
            "planned_minutes": policy.planned_minutes,
            "minutes_delta": delta,
            "balance_after": entry["balance_after"],
        }

    # ── Adjustments ─────────────────────────────────────────────

    def adjust_punch(
        self,
        ctx: RequestContext,
        punch_id: str,
        new_timestamp: datetime | str,
        note: str,
    ) -> dict[str, Any]:
        ctx.require_human("adjusting a punch")
        if not note or not note.strip():
            raise ValidationError("an adjustment note is required")
        ts = parse_timestamp(new_timestamp)
        punch = self.store.get_punch(ctx.tenant_id, punch_id)
        if punch is None:
            raise NotFound(f"Unknown punch {punch_id!r}")

        with self._punch_lock(ctx, punch.case_id), self._atomic():
            case = self._day_case(ctx, punch.case_id)
            punches = self.store.list_punches(ctx.tenant_id, case.id)
            idx = next(i for i, p in enumerate(punches) if p.id == punch_id)
            if idx > 0 and ts < punches[idx - 1].effective_timestamp:
                raise ValidationError("Adjusted time is earlier than the previous punch")
            if idx + 1 < len(punches) and ts > punches[idx + 1].effective_timestamp:
                raise ValidationError("Adjusted time is later than the next punch")

            previous = punches[idx].effective_timestamp
            adjustment_id = self.store.insert_adjustment(
                ctx.tenant_id, punches[idx], ts, note.strip(), ctx.actor_ref,
            )
            self.audit.record_event(
                ctx, case.id, "punch_adjusted",
                f"Punch {punch.type.value} adjusted",
                meta={
                    "punch_id": punch_id,
                    "adjustment_id": adjustment_id,
                    "previous_timestamp": previous.isoformat(),
                    "new_timestamp": ts.isoformat(),
                    "note": note.strip(),
                },
                subject_ref=case.subject_ref,
            )

            result: dict[str, Any] = {
                "ok": True,
                "case_id": case.id,
                "punch_id": punch_id,
                "adjustment_id": adjustment_id,
                "state": case.state,
                "ledger_correction": None,
            }
            if case.status != CaseStatus.CLOSED:
                return result

            policy = self.policy_for(ctx.tenant_id, case.subject_ref)
            punches = self.store.list_punches(ctx.tenant_id, case.id)
            worked = worked_minutes([(p.type, p.effective_timestamp) for p in punches])
            new_delta = worked - policy.planned_minutes
            correction = new_delta - (self.store.posted_delta(ctx.tenant_id, case.id) or 0)
            if correction:
                result["ledger_correction"] = self.store.append_ledger(
                    ctx.tenant_id, case.subject_ref or "", case.id,
                    worked_minutes=worked, minutes_delta=correction,
                    source="MANUAL", note=note.strip(),
                )
                self.audit.record_event(
                    ctx, case.id, "bank_hours_posted",
                    f"Ledger corrected by {correction}min after adjustment",
                    meta=result["ledger_correction"],
                )
            if case.state == DayState.FECHADO.value:
                self.executor.transition(
                    ctx, case.id, case.state, DayState.AJUSTADO.value, derived=True,
                )
                result["state"] = DayState.AJUSTADO.value
        return result

    # ── Helpers ─────────────────────────────────────────────────

    def _justification_open(self, tenant_id: str, case_id: str) -> bool:
        return any(
            p.type in JUSTIFICATION_TYPES
            for p in self.executor.store.list_pendencies(
                tenant_id, case_id, statuses=(PendencyStatus.OPEN,), required=True,
            )
        )

    def _ensure_approval_pendency(self, ctx: RequestContext, case_id: str) -> str | None:
        existing = [
            p for p in self.executor.store.list_pendencies(ctx.tenant_id, case_id, statuses=UNRESOLVED)
            if p.type == APPROVAL_TYPE
        ]
        if existing:
            return None
        p = self.gate.create(
            ctx.as_system(), case_id, APPROVAL_TYPE,
            "Manager approval required to close the day.",
            required=True,
        )
        return p.id

    def _sync_state(self, ctx: RequestContext, case_id: str) -> str:
        case = self._day_case(ctx, case_id)
        if case.status == CaseStatus.CLOSED:
            return case.state
        punches = self.store.list_punches(ctx.tenant_id, case_id)
        target = derive_day_state(
            [p.type for p in punches],
            justification_open=self._justification_open(ctx.tenant_id, case_id),
        ).value
        if target != case.state:
            self.executor.transition(ctx, case_id, case.state, target, derived=True)
        return target
