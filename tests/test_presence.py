"""
Casework - Presence Clock Tests

End to end over a real engine built from the project config:
tenant "acme" has a site at (-23.5505, -46.6333) with a 100 m radius,
scheduled start 08:00 America/Sao_Paulo (11:00 UTC), 10 min tolerance
and a required break.
"""

import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from core.config import load_config
from core.context import ActorType, RequestContext
from core.errors import Busy, HumanApprovalRequired, InvalidTransition, NotFound, ValidationError
from journeys.guard import guard_key
from journeys.runtime import build_engine
from journeys.types import CaseStatus, PendencyStatus
from presence.clock import PolicyBook, PresencePolicy, parse_timestamp
from presence.punch import PunchStatus

SITE = (-23.5505, -46.6333)
FAR = (-23.5605, -46.6333)      # about 1.1 km south


def _ts(hhmm, day="2026-03-02"):
    return f"{day}T{hhmm}:00Z"


class PresenceTestCase(unittest.TestCase):

    def setUp(self):
        config = load_config(
            env="test", project_root=_base,
            overrides={"database": {"path": ":memory:"}, "automation": {"mode": "inline"}},
        )
        self.engine = build_engine(config)
        self.presence = self.engine.presence
        self.employee = RequestContext(tenant_id="acme", actor_ref="emp_1")
        self.manager = RequestContext(tenant_id="acme", actor_ref="manager")

    def tearDown(self):
        self.engine.close()

    def punch(self, hhmm, where=SITE, **kwargs):
        kwargs.setdefault("employee_ref", "emp_1")
        return self.presence.submit_punch(
            self.employee, where[0], where[1], timestamp=_ts(hhmm), **kwargs,
        )

    def full_day(self, entry="11:05", exit="20:05"):
        first = self.punch(entry)
        self.punch("15:00")
        self.punch("16:00")
        last = self.punch(exit)
        return first.case_id, last

    def pendencies(self, case_id, **kwargs):
        return self.engine.store.list_pendencies("acme", case_id, **kwargs)


class TestPunching(PresenceTestCase):

    def test_day_case_created_once(self):
        a = self.punch("11:05")
        b = self.punch("15:00")
        self.assertEqual(a.case_id, b.case_id)
        case = self.engine.store.get_case("acme", a.case_id)
        self.assertEqual(case.journey_key, "presence")
        self.assertEqual(case.case_date, "2026-03-02")
        self.assertEqual(case.subject_ref, "emp_1")

    def test_state_follows_punches(self):
        states = [self.punch(t).state for t in ("11:05", "15:00", "16:00")]
        self.assertEqual(states, ["EM_EXPEDIENTE", "EM_INTERVALO", "AGUARDANDO_SAIDA"])

    def test_exit_without_exceptions_waits_for_approval(self):
        case_id, last = self.full_day()
        self.assertEqual(last.state, "PENDENTE_APROVACAO")
        types = [p.type for p in self.pendencies(case_id)]
        self.assertEqual(types, ["approval_required"])
        self.assertEqual(self.engine.store.get_case("acme", case_id).state, "PENDENTE_APROVACAO")

    def test_each_state_change_is_one_transition_event(self):
        case_id, _ = self.full_day()
        events = self.engine.audit.timeline("acme", case_id, event_type="transition").items
        self.assertEqual(
            [e.meta["to"] for e in reversed(events)],
            ["EM_EXPEDIENTE", "EM_INTERVALO", "AGUARDANDO_SAIDA", "PENDENTE_APROVACAO"],
        )
        self.assertEqual(self.engine.audit.count_events("acme", case_id, "presence_punch"), 4)

    def test_local_date_uses_policy_time_zone(self):
        # 01:30 UTC on the 3rd is 22:30 on the 2nd in Sao Paulo
        result = self.presence.submit_punch(
            self.employee, *SITE, timestamp="2026-03-03T01:30:00Z", employee_ref="emp_night",
        )
        case = self.engine.store.get_case("acme", result.case_id)
        self.assertEqual(case.case_date, "2026-03-02")

    def test_no_break_policy_goes_straight_to_exit(self):
        first = self.presence.submit_punch(
            self.employee, *SITE, timestamp="2026-03-03T01:00:00Z", employee_ref="emp_night",
        )
        second = self.presence.submit_punch(
            self.employee, *SITE, timestamp="2026-03-03T05:00:00Z", case_id=first.case_id,
        )
        self.assertEqual(second.punch.type.value, "EXIT")
        self.assertEqual(second.pendency_ids, [p.id for p in self.pendencies(first.case_id)])

    def test_day_state_is_not_directly_settable(self):
        first = self.punch("11:05")
        bot = RequestContext(tenant_id="acme", actor_type=ActorType.AI, actor_ref="assistant")
        for ctx in (bot, self.manager):
            with self.assertRaises(InvalidTransition):
                self.engine.executor.transition(ctx, first.case_id, "EM_EXPEDIENTE", "FECHADO")
        case = self.engine.store.get_case("acme", first.case_id)
        self.assertEqual(case.state, "EM_EXPEDIENTE")
        self.assertEqual(case.status, CaseStatus.OPEN)
        self.assertEqual(self.presence.store.ledger("acme", "emp_1"), [])

    def test_punch_rolls_back_when_state_cannot_follow(self):
        case = self.presence.ensure_day_case(self.employee, "emp_1", "2026-03-02")
        with self.engine.executor.guard.hold(guard_key("acme", case.id)):
            with self.assertRaises(Busy):
                self.punch("11:05", where=FAR)
        self.assertEqual(self.presence.store.list_punches("acme", case.id), [])
        self.assertEqual(self.pendencies(case.id), [])
        self.assertEqual(self.engine.store.get_case("acme", case.id).state, "AGUARDANDO_ENTRADA")

        retry = self.punch("11:05", where=FAR)
        self.assertEqual(retry.case_id, case.id)
        self.assertEqual(retry.state, "EM_EXPEDIENTE")
        self.assertEqual(len(self.pendencies(case.id)), 1)


class TestExceptions(PresenceTestCase):

    def test_outside_radius_is_recorded_with_one_pendency(self):
        result = self.punch("11:05", where=FAR)
        self.assertFalse(result.punch.within_radius)
        self.assertGreater(result.punch.distance_meters, 1000)
        self.assertEqual(result.punch.status, PunchStatus.VALID_WITH_EXCEPTION)
        required = self.pendencies(result.case_id, required=True)
        self.assertEqual([p.type for p in required], ["outside_radius"])
        self.assertEqual(result.outside_radius_pendency, required[0].id)
        self.assertEqual(result.state, "EM_EXPEDIENTE")

        decisions = self.engine.audit.decisions("acme", result.case_id).items
        self.assertEqual(decisions[0].kind, "presence_exception")

    def test_open_justification_holds_the_day_after_exit(self):
        entry = self.punch("11:05", where=FAR)
        self.punch("15:00")
        self.punch("16:00")
        last = self.punch("20:05")
        self.assertEqual(last.state, "PENDENTE_JUSTIFICATIVA")
        types = {p.type for p in self.pendencies(entry.case_id)}
        self.assertNotIn("approval_required", types)

    def test_justify_moves_to_approval(self):
        entry = self.punch("11:05", where=FAR)
        self.punch("15:00")
        self.punch("16:00")
        self.punch("20:05")
        result = self.presence.justify(self.employee, entry.case_id, [
            {"pendency_id": entry.outside_radius_pendency, "answer": "Visiting a client"},
        ])
        self.assertEqual(result["state"], "PENDENTE_APROVACAO")
        self.assertFalse(result["required_open"])
        pendency = self.engine.gate.get("acme", entry.outside_radius_pendency)
        self.assertEqual(pendency.status, PendencyStatus.ANSWERED)
        self.assertIn("approval_required", {p.type for p in self.pendencies(entry.case_id)})

    def test_justify_rejects_foreign_pendency(self):
        a = self.punch("11:05", where=FAR)
        other = self.presence.submit_punch(
            self.employee, *FAR, timestamp=_ts("11:05"), employee_ref="emp_2",
        )
        with self.assertRaises(ValidationError):
            self.presence.justify(self.employee, a.case_id, [
                {"pendency_id": other.outside_radius_pendency, "answer": "x"},
            ])

    def test_late_arrival(self):
        result = self.punch("11:30")
        self.assertEqual(result.punch.status, PunchStatus.VALID_WITH_EXCEPTION)
        self.assertEqual([p.type for p in self.pendencies(result.case_id)], ["late_arrival"])
        self.assertEqual(self.engine.audit.count_events("acme", result.case_id, "late_arrival"), 1)

    def test_late_entry_from_outside_keeps_one_geofence_pendency(self):
        result = self.punch("11:30", where=FAR)
        required = [p.type for p in self.pendencies(result.case_id, required=True)]
        self.assertEqual(sorted(required), ["late_arrival", "outside_radius"])
        self.assertEqual(required.count("outside_radius"), 1)
        self.assertEqual(result.punch.status, PunchStatus.VALID_WITH_EXCEPTION)

    def test_within_tolerance_is_not_late(self):
        result = self.punch("11:10")
        self.assertEqual(result.punch.status, PunchStatus.VALID)
        self.assertEqual(self.pendencies(result.case_id), [])

    def test_forced_early_exit_flags_missing_break(self):
        first = self.punch("11:00")
        last = self.punch("15:00", punch_type="EXIT")
        self.assertIn("missing_break", {p.type for p in self.pendencies(first.case_id)})
        self.assertEqual(last.state, "PENDENTE_JUSTIFICATIVA")
        with self.assertRaises(ValidationError):
            self.presence.close_day(self.manager, first.case_id)

    def test_poor_accuracy_needs_review(self):
        result = self.punch("11:05", accuracy_meters=500)
        self.assertTrue(result.punch.within_radius)
        self.assertEqual(result.punch.status, PunchStatus.PENDING_REVIEW)

    def test_tenant_without_site_never_out_of_radius(self):
        ctx = RequestContext(tenant_id="globex", actor_ref="emp_9")
        result = self.presence.submit_punch(ctx, *FAR, timestamp=_ts("11:05"), employee_ref="emp_9")
        self.assertTrue(result.punch.within_radius)
        self.assertIsNone(result.punch.distance_meters)


class TestPunchValidation(PresenceTestCase):

    def test_bad_coordinates(self):
        for lat, lon in ((91, 0), (0, 181), ("north", 0), (None, 0), (float("nan"), 0)):
            with self.assertRaises(ValidationError):
                self.presence.submit_punch(self.employee, lat, lon, employee_ref="emp_1")

    def test_nothing_after_exit(self):
        self.full_day()
        with self.assertRaises(InvalidTransition):
            self.punch("21:00")

    def test_out_of_order_type(self):
        with self.assertRaises(InvalidTransition):
            self.punch("11:05", punch_type="BREAK_END")

    def test_exit_cannot_open_the_day(self):
        with self.assertRaises(InvalidTransition):
            self.punch("11:05", punch_type="EXIT")
        entry = self.punch("11:06")
        self.assertEqual(entry.punch.type.value, "ENTRY")
        self.assertEqual(len(self.presence.store.list_punches("acme", entry.case_id)), 1)

    def test_timestamp_cannot_go_back(self):
        self.punch("11:05")
        with self.assertRaises(ValidationError):
            self.punch("10:00")

    def test_identity_required(self):
        with self.assertRaises(ValidationError):
            self.presence.submit_punch(self.employee, *SITE)

    def test_unknown_case(self):
        with self.assertRaises(NotFound):
            self.presence.submit_punch(self.employee, *SITE, case_id="case_missing")

    def test_second_break_on_request(self):
        first = self.punch("11:05")
        self.punch("14:00")
        self.punch("15:00")
        extra = self.punch("17:00", punch_type="BREAK2_START")
        self.assertEqual(extra.state, "EM_INTERVALO")
        self.assertEqual(self.punch("17:15").punch.type.value, "BREAK2_END")
        self.assertEqual(self.punch("20:05").punch.type.value, "EXIT")
        result = self.presence.close_day(self.manager, first.case_id)
        self.assertEqual(result["worked_minutes"], 465)


class TestClosing(PresenceTestCase):

    def test_close_posts_ledger_and_closes(self):
        case_id, _ = self.full_day(entry="11:05", exit="20:35")
        result = self.presence.close_day(self.manager, case_id, note="ok")
        self.assertEqual(result["state"], "FECHADO")
        self.assertEqual(result["worked_minutes"], 510)
        self.assertEqual(result["minutes_delta"], 30)
        self.assertEqual(result["balance_after"], 30)

        case = self.engine.store.get_case("acme", case_id)
        self.assertEqual(case.state, "FECHADO")
        self.assertEqual(case.status, CaseStatus.CLOSED)
        self.assertTrue(all(p.is_resolved for p in self.pendencies(case_id)))
        self.assertEqual(self.engine.audit.count_events("acme", case_id, "presence_day_closed"), 1)
        kinds = [d.kind for d in self.engine.audit.decisions("acme", case_id).items]
        self.assertIn("presence_close", kinds)

    def test_balance_accumulates_across_days(self):
        case_id, _ = self.full_day(entry="11:05", exit="19:35")
        self.presence.close_day(self.manager, case_id)
        second = self.presence.submit_punch(
            self.employee, *SITE, timestamp=_ts("11:00", "2026-03-03"), employee_ref="emp_1",
        )
        for hhmm in ("15:00", "16:00", "20:20"):
            self.presence.submit_punch(
                self.employee, *SITE, timestamp=_ts(hhmm, "2026-03-03"), case_id=second.case_id,
            )
        result = self.presence.close_day(self.manager, second.case_id)
        self.assertEqual(result["minutes_delta"], 20)
        self.assertEqual(result["balance_after"], -10)
        self.assertEqual(len(self.presence.store.ledger("acme", "emp_1")), 2)

    def test_failed_close_posts_nothing(self):
        case_id, _ = self.full_day()
        with self.engine.executor.guard.hold(guard_key("acme", case_id)):
            with self.assertRaises(Busy):
                self.presence.close_day(self.manager, case_id)

        self.assertEqual(self.presence.store.ledger("acme", "emp_1"), [])
        self.assertEqual(self.engine.store.get_case("acme", case_id).state, "PENDENTE_APROVACAO")
        approval = self.pendencies(case_id)[0]
        self.assertEqual(approval.status, PendencyStatus.OPEN)
        self.assertEqual(self.engine.audit.count_events("acme", case_id, "presence_day_closed"), 0)
        self.assertTrue(self.engine.audit.verify_chain("acme")["valid"])

        result = self.presence.close_day(self.manager, case_id)
        self.assertEqual(result["state"], "FECHADO")
        self.assertEqual(len(self.presence.store.ledger("acme", "emp_1")), 1)

    def test_close_requires_human(self):
        case_id, _ = self.full_day()
        bot = RequestContext(tenant_id="acme", actor_type=ActorType.AI)
        with self.assertRaises(HumanApprovalRequired):
            self.presence.close_day(bot, case_id)

    def test_close_requires_exit(self):
        first = self.punch("11:05")
        with self.assertRaises(ValidationError):
            self.presence.close_day(self.manager, first.case_id)

    def test_close_twice(self):
        case_id, _ = self.full_day()
        self.presence.close_day(self.manager, case_id)
        with self.assertRaises(InvalidTransition):
            self.presence.close_day(self.manager, case_id)

    def test_closed_day_rejects_punches(self):
        case_id, _ = self.full_day()
        self.presence.close_day(self.manager, case_id)
        with self.assertRaises(InvalidTransition):
            self.presence.submit_punch(self.employee, *SITE, case_id=case_id)


class TestAdjustments(PresenceTestCase):

    def test_adjust_closed_day(self):
        case_id, last = self.full_day()
        self.presence.close_day(self.manager, case_id)
        result = self.presence.adjust_punch(
            self.manager, last.punch.id, _ts("20:35"), note="Forgot to punch out",
        )
        self.assertEqual(result["state"], "AJUSTADO")
        self.assertEqual(result["ledger_correction"]["minutes_delta"], 30)
        self.assertEqual(result["ledger_correction"]["balance_after"], 30)
        self.assertEqual(self.presence.store.count_adjustments("acme", case_id), 1)

        punch = self.presence.store.get_punch("acme", last.punch.id)
        self.assertEqual(punch.timestamp, parse_timestamp(_ts("20:05")))
        self.assertEqual(punch.effective_timestamp, parse_timestamp(_ts("20:35")))
        self.assertEqual(self.engine.store.get_case("acme", case_id).state, "AJUSTADO")

    def test_second_adjustment_posts_only_the_difference(self):
        case_id, last = self.full_day()
        self.presence.close_day(self.manager, case_id)
        self.presence.adjust_punch(self.manager, last.punch.id, _ts("20:35"), note="a")
        result = self.presence.adjust_punch(self.manager, last.punch.id, _ts("20:15"), note="b")
        self.assertEqual(result["ledger_correction"]["minutes_delta"], -20)
        self.assertEqual(self.presence.store.current_balance("acme", "emp_1"), 10)

    def test_adjust_open_day(self):
        first = self.punch("11:05")
        result = self.presence.adjust_punch(self.manager, first.punch.id, _ts("11:00"), note="clock skew")
        self.assertIsNone(result["ledger_correction"])
        self.assertEqual(result["state"], "EM_EXPEDIENTE")

    def test_adjust_keeps_order(self):
        first = self.punch("11:05")
        self.punch("15:00")
        with self.assertRaises(ValidationError):
            self.presence.adjust_punch(self.manager, first.punch.id, _ts("15:30"), note="x")

    def test_adjust_rules(self):
        first = self.punch("11:05")
        bot = RequestContext(tenant_id="acme", actor_type=ActorType.SYSTEM)
        with self.assertRaises(HumanApprovalRequired):
            self.presence.adjust_punch(bot, first.punch.id, _ts("11:00"), note="x")
        with self.assertRaises(ValidationError):
            self.presence.adjust_punch(self.manager, first.punch.id, _ts("11:00"), note="  ")
        with self.assertRaises(NotFound):
            self.presence.adjust_punch(self.manager, "punch_missing", _ts("11:00"), note="x")


class TestPolicy(unittest.TestCase):

    def test_most_specific_wins(self):
        book = PolicyBook(
            defaults={"radius_meters": 100, "scheduled_start": "08:00"},
            tenants={"acme": {
                "radius_meters": 50,
                "site": {"latitude": 1.0, "longitude": 2.0, "name": "HQ"},
                "employees": {"emp_1": {"scheduled_start": "09:30"}},
            }},
        )
        policy = book.policy_for("acme", "emp_1")
        self.assertEqual(policy.radius_meters, 50)
        self.assertEqual(policy.scheduled_start, "09:30")
        self.assertEqual(policy.location_name, "HQ")
        self.assertTrue(policy.has_site)
        self.assertEqual(book.policy_for("acme", "emp_2").scheduled_start, "08:00")
        self.assertFalse(book.policy_for("globex").has_site)

    def test_invalid_policy(self):
        with self.assertRaises(ValidationError):
            PresencePolicy(radius_meters=0)
        with self.assertRaises(ValidationError):
            PresencePolicy(time_zone="Mars/Olympus")
        with self.assertRaises(ValidationError):
            PresencePolicy(scheduled_start="25:00")


if __name__ == "__main__":
    unittest.main()
