"""
Casework - API Server Tests

Runs the FastAPI app in-process over an engine built from the project
config with an in-memory database.
"""

import os
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _base)

from fastapi.testclient import TestClient

from api.models import CaseOpenRequest, JustifyRequest, PunchSubmission, TransitionRequest
from api.server import create_app, status_for
from core.config import load_config
from core.errors import Busy, HumanApprovalRequired, InvalidTransition, NotFound, ValidationError
from journeys.runtime import build_engine

HUMAN = {"X-Tenant-Id": "acme", "X-Actor-Id": "ana", "X-Actor-Type": "human"}
BOT = {"X-Tenant-Id": "acme", "X-Actor-Id": "assistant", "X-Actor-Type": "ai"}


class ApiTestCase(unittest.TestCase):

    def setUp(self):
        config = load_config(
            env="test", project_root=_base,
            overrides={"database": {"path": ":memory:"}, "automation": {"mode": "inline"}},
        )
        self.engine = build_engine(config)
        self.client = TestClient(create_app(engine=self.engine))

    def tearDown(self):
        self.engine.close()

    def open_case(self, journey_key="crm", headers=HUMAN, **body):
        body.setdefault("subject_ref", "cust_1")
        body.setdefault("metadata", {"name": "Ana", "order_number": "A-1"})
        r = self.client.post("/v1/cases", json={"journey_key": journey_key, **body}, headers=headers)
        self.assertEqual(r.status_code, 201, r.text)
        return r.json()

    def move(self, case_id, from_state, to_state, headers=HUMAN):
        return self.client.post(
            f"/v1/cases/{case_id}/transition",
            json={"from_state": from_state, "to_state": to_state},
            headers=headers,
        )


class TestRequestModels(unittest.TestCase):
    """Body parsing and validation without the HTTP layer."""

    def test_case_open(self):
        self.assertEqual(CaseOpenRequest.from_body({"journey_key": "crm"}).validate(), [])
        errors = CaseOpenRequest.from_body({"journey_key": "", "metadata": "x"}).validate()
        self.assertTrue(any("journey_key" in e for e in errors))
        self.assertTrue(any("metadata" in e for e in errors))

    def test_transition(self):
        req = TransitionRequest.from_body({"from_state": "NOVO", "to_state": "GANHO"})
        self.assertEqual(req.validate(), [])
        req = TransitionRequest.from_body({"from_state": "NOVO", "to_state": "GANHO", "journey": []})
        self.assertTrue(any("journey" in e for e in req.validate()))

    def test_punch_rejects_booleans_as_coordinates(self):
        req = PunchSubmission.from_body({"latitude": True, "longitude": 1.0, "employee_ref": "e"})
        self.assertTrue(any("latitude" in e for e in req.validate()))
        self.assertEqual(PunchSubmission.from_body({}).source, "APP")

    def test_justify(self):
        self.assertTrue(JustifyRequest(answers=[]).validate())
        self.assertTrue(JustifyRequest(answers=["text"]).validate())
        self.assertEqual(JustifyRequest(answers=[{"pendency_id": "p", "answer": "a"}]).validate(), [])


class TestErrorMapping(unittest.TestCase):

    def test_status_codes(self):
        self.assertEqual(status_for(NotFound("x")), 404)
        self.assertEqual(status_for(ValidationError("x")), 422)
        self.assertEqual(status_for(HumanApprovalRequired("x")), 403)
        self.assertEqual(status_for(InvalidTransition("x")), 409)
        self.assertEqual(status_for(Busy("k")), 409)


class TestCases(ApiTestCase):

    def test_open_and_read(self):
        case = self.open_case()
        self.assertEqual(case["state"], "NOVO")
        self.assertEqual(case["status"], "open")

        r = self.client.get(f"/v1/cases/{case['id']}", headers=HUMAN)
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["column"], "NOVO")

    def test_transition_ack(self):
        case = self.open_case()
        r = self.move(case["id"], "NOVO", "QUALIFICADO")
        self.assertEqual(r.status_code, 200, r.text)
        ack = r.json()
        self.assertTrue(ack["ok"])
        self.assertEqual(ack["to"], "QUALIFICADO")
        self.assertEqual([a["kind"] for a in ack["actions"]], ["create_task"])
        self.assertEqual(ack["warnings"], [])
        self.assertIn(f"case:acme:{case['id']}", ack["invalidate"])

    def test_stale_state_is_retryable_conflict(self):
        case = self.open_case()
        self.move(case["id"], "NOVO", "QUALIFICADO")
        r = self.move(case["id"], "NOVO", "PROPOSTA")
        self.assertEqual(r.status_code, 409)
        self.assertEqual(r.json()["reason"], "stale_state")
        self.assertEqual(r.json()["details"]["actual"], "QUALIFICADO")
        self.assertEqual(r.headers["retry-after"], "1")

    def test_unconfigured_target(self):
        case = self.open_case()
        r = self.move(case["id"], "NOVO", "ARQUIVADO")
        self.assertEqual(r.status_code, 409)
        self.assertEqual(r.json()["reason"], "invalid_transition")
        self.assertNotIn("retry-after", r.headers)

    def test_caller_supplied_journey(self):
        case = self.open_case()
        r = self.client.post(
            f"/v1/cases/{case['id']}/transition",
            json={
                "from_state": "NOVO", "to_state": "ARQUIVADO",
                "journey": {"key": "crm", "states": ["NOVO", "ARQUIVADO"]},
            },
            headers=HUMAN,
        )
        self.assertEqual(r.status_code, 409, r.text)
        self.assertEqual(r.json()["reason"], "invalid_transition")
        r = self.client.get(f"/v1/cases/{case['id']}", headers=HUMAN)
        self.assertEqual(r.json()["state"], "NOVO")

    def test_unknown_case_and_journey(self):
        self.assertEqual(self.client.get("/v1/cases/case_missing", headers=HUMAN).status_code, 404)
        r = self.client.post("/v1/cases", json={"journey_key": "nope"}, headers=HUMAN)
        self.assertEqual(r.status_code, 404)
        self.assertEqual(r.json()["reason"], "not_found")

    def test_other_tenant_sees_nothing(self):
        case = self.open_case()
        r = self.client.get(f"/v1/cases/{case['id']}", headers={"X-Tenant-Id": "globex"})
        self.assertEqual(r.status_code, 404)

    def test_bad_requests(self):
        case = self.open_case()
        r = self.client.post(f"/v1/cases/{case['id']}/transition", json={"to_state": "X"}, headers=HUMAN)
        self.assertEqual(r.status_code, 422)
        self.assertEqual(r.json()["reason"], "validation_error")
        self.assertTrue(r.json()["errors"])

        r = self.client.post(
            f"/v1/cases/{case['id']}/transition", content=b"not json",
            headers={**HUMAN, "Content-Type": "application/json"},
        )
        self.assertEqual(r.status_code, 422)

        r = self.client.post("/v1/cases", json=["crm"], headers=HUMAN)
        self.assertEqual(r.status_code, 422)

    def test_tenant_header_required(self):
        r = self.client.post("/v1/cases", json={"journey_key": "crm"})
        self.assertEqual(r.status_code, 422)

    def test_unknown_actor_type(self):
        r = self.client.post(
            "/v1/cases", json={"journey_key": "crm"},
            headers={"X-Tenant-Id": "acme", "X-Actor-Type": "robot"},
        )
        self.assertEqual(r.status_code, 422)


class TestGovernance(ApiTestCase):

    def test_required_pendency_blocks_closing(self):
        order = self.open_case("orders")
        self.assertEqual(self.move(order["id"], "RECEBIDO", "CANCELADO").status_code, 200)
        self.assertEqual(self.move(order["id"], "CANCELADO", "RECEBIDO").status_code, 200)

        r = self.move(order["id"], "RECEBIDO", "ENTREGUE")
        self.assertEqual(r.status_code, 409)
        blocking = r.json()["details"]["blocking"]
        self.assertEqual(len(blocking), 1)

        listed = self.client.get(f"/v1/cases/{order['id']}/pendencies", headers=HUMAN).json()
        self.assertEqual(listed["blocking"], blocking)
        self.assertEqual(listed["pendencies"][0]["type"], "refund_check")

        r = self.client.post(f"/v1/pendencies/{blocking[0]}/answer", json={"answer": "Refunded"}, headers=BOT)
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["status"], "answered")
        self.assertEqual(self.move(order["id"], "RECEBIDO", "ENTREGUE").status_code, 409)

        r = self.client.post(f"/v1/pendencies/{blocking[0]}/approve", headers=BOT)
        self.assertEqual(r.status_code, 403)
        self.assertEqual(r.json()["reason"], "human_approval_required")

        r = self.client.post(f"/v1/pendencies/{blocking[0]}/approve", headers=HUMAN)
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["status"], "approved")

        r = self.move(order["id"], "RECEBIDO", "ENTREGUE")
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["status"], "closed")

    def test_blank_answer(self):
        r = self.client.post("/v1/pendencies/pend_x/answer", json={"answer": " "}, headers=HUMAN)
        self.assertEqual(r.status_code, 422)

    def test_messages_need_a_human(self):
        case = self.open_case()
        self.move(case["id"], "NOVO", "QUALIFICADO")
        ack = self.move(case["id"], "QUALIFICADO", "PROPOSTA").json()
        message_id = ack["actions"][0]["ref_id"]

        listed = self.client.get("/v1/messages?status=prepared", headers=HUMAN).json()
        self.assertEqual(listed["count"], 1)
        self.assertEqual(listed["messages"][0]["body"], "Hello Ana, your proposal is ready.")
        self.assertEqual(self.client.get("/v1/messages?status=queued", headers=HUMAN).json()["count"], 0)

        self.assertEqual(self.client.post(f"/v1/messages/{message_id}/approve", headers=BOT).status_code, 403)
        r = self.client.post(f"/v1/messages/{message_id}/approve", headers=HUMAN)
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["status"], "queued")
        self.assertEqual(r.json()["decided_by"], "ana")

        r = self.client.post(f"/v1/messages/{message_id}/reject", json={"reason": "late"}, headers=HUMAN)
        self.assertEqual(r.status_code, 409)

    def test_unknown_message_status(self):
        r = self.client.get("/v1/messages?status=sent", headers=HUMAN)
        self.assertEqual(r.status_code, 422)


class TestAuditReads(ApiTestCase):

    def test_public_timeline_hides_internal_events(self):
        case = self.open_case("orders")
        self.move(case["id"], "RECEBIDO", "CANCELADO")

        internal = self.client.get(f"/v1/cases/{case['id']}/timeline", headers=HUMAN).json()
        public = self.client.get(f"/v1/cases/{case['id']}/timeline?audience=public", headers=HUMAN).json()
        internal_types = {e["type"] for e in internal["items"]}
        public_types = {e["type"] for e in public["items"]}
        self.assertIn("pendency_created", internal_types)
        self.assertNotIn("pendency_created", public_types)
        self.assertIn("transition", public_types)
        self.assertNotIn("actor_ref", public["items"][0])

    def test_timeline_pagination(self):
        case = self.open_case("content")
        self.move(case["id"], "CRIAR", "PRODUCAO")
        self.move(case["id"], "PRODUCAO", "CRIAR")

        first = self.client.get(f"/v1/cases/{case['id']}/timeline?limit=2", headers=HUMAN).json()
        self.assertEqual(len(first["items"]), 2)
        self.assertIsNotNone(first["next_cursor"])
        rest = self.client.get(
            f"/v1/cases/{case['id']}/timeline",
            params={"limit": 50, "before": first["next_cursor"]}, headers=HUMAN,
        ).json()
        seen = {e["id"] for e in first["items"]}
        self.assertFalse(seen & {e["id"] for e in rest["items"]})
        self.assertIsNone(rest["next_cursor"])

    def test_unknown_audience(self):
        case = self.open_case()
        r = self.client.get(f"/v1/cases/{case['id']}/timeline?audience=partner", headers=HUMAN)
        self.assertEqual(r.status_code, 422)

    def test_chain_verifies(self):
        case = self.open_case()
        self.move(case["id"], "NOVO", "QUALIFICADO")
        result = self.client.get("/v1/audit/verify", headers=HUMAN).json()
        self.assertTrue(result["valid"])
        self.assertGreater(result["events_checked"], 0)


class TestPresenceApi(ApiTestCase):

    def punch(self, timestamp, latitude=-23.5505, **extra):
        body = {"latitude": latitude, "longitude": -46.6333, "timestamp": timestamp, **extra}
        body.setdefault("employee_ref", "emp_1")
        return self.client.post("/v1/presence/punch", json=body, headers=HUMAN)

    def test_day_through_the_api(self):
        r = self.punch("2026-03-02T11:05:00Z", latitude=-23.5605)
        self.assertEqual(r.status_code, 201, r.text)
        entry = r.json()
        self.assertFalse(entry["within_radius"])
        self.assertEqual(entry["status"], "VALID_WITH_EXCEPTION")
        self.assertIsNotNone(entry["pendency_created"])
        case_id = entry["case_id"]

        for ts in ("2026-03-02T15:00:00Z", "2026-03-02T16:00:00Z", "2026-03-02T20:05:00Z"):
            self.assertEqual(self.punch(ts, case_id=case_id).status_code, 201)

        r = self.client.post(
            f"/v1/presence/cases/{case_id}/justify",
            json={"answers": [{"pendency_id": entry["pendency_created"], "answer": "Client visit"}]},
            headers=HUMAN,
        )
        self.assertEqual(r.status_code, 200, r.text)
        self.assertEqual(r.json()["state"], "PENDENTE_APROVACAO")

        r = self.client.post(f"/v1/presence/cases/{case_id}/close", json={}, headers=BOT)
        self.assertEqual(r.status_code, 403)
        r = self.client.post(f"/v1/presence/cases/{case_id}/close", json={"note": "ok"}, headers=HUMAN)
        self.assertEqual(r.status_code, 200, r.text)
        self.assertEqual(r.json()["worked_minutes"], 480)

        exit_punch = self.punch("2026-03-02T21:00:00Z", case_id=case_id)
        self.assertEqual(exit_punch.status_code, 409)

        ledger = self.client.get("/v1/presence/employees/emp_1/ledger", headers=HUMAN).json()
        self.assertEqual(ledger["balance_minutes"], 0)
        self.assertEqual(len(ledger["entries"]), 1)

    def test_day_state_cannot_be_set_directly(self):
        case_id = self.punch("2026-03-02T11:05:00Z").json()["case_id"]
        for headers in (BOT, HUMAN):
            r = self.move(case_id, "EM_EXPEDIENTE", "FECHADO", headers=headers)
            self.assertEqual(r.status_code, 409, r.text)
            self.assertEqual(r.json()["reason"], "invalid_transition")
        r = self.client.get(f"/v1/cases/{case_id}", headers=HUMAN)
        self.assertEqual(r.json()["state"], "EM_EXPEDIENTE")
        self.assertEqual(r.json()["status"], "open")

    def test_adjust_after_close(self):
        case_id = self.punch("2026-03-02T11:05:00Z").json()["case_id"]
        for ts in ("2026-03-02T15:00:00Z", "2026-03-02T16:00:00Z"):
            self.punch(ts, case_id=case_id)
        last = self.punch("2026-03-02T20:05:00Z", case_id=case_id).json()
        self.client.post(f"/v1/presence/cases/{case_id}/close", json={}, headers=HUMAN)

        r = self.client.post(
            f"/v1/presence/punches/{last['punch']['id']}/adjust",
            json={"new_timestamp": "2026-03-02T20:35:00Z", "note": "Forgot to punch out"},
            headers=HUMAN,
        )
        self.assertEqual(r.status_code, 200, r.text)
        self.assertEqual(r.json()["state"], "AJUSTADO")
        ledger = self.client.get("/v1/presence/employees/emp_1/ledger", headers=HUMAN).json()
        self.assertEqual(ledger["balance_minutes"], 30)
        self.assertEqual([e["source"] for e in ledger["entries"]], ["AUTO", "MANUAL"])

    def test_punch_validation(self):
        r = self.client.post("/v1/presence/punch", json={"latitude": "x", "longitude": 1}, headers=HUMAN)
        self.assertEqual(r.status_code, 422)
        self.assertEqual(len(r.json()["errors"]), 2)
        r = self.punch("2026-03-02T11:05:00Z", latitude=95)
        self.assertEqual(r.status_code, 422)

    def test_adjust_validation(self):
        r = self.client.post("/v1/presence/punches/punch_x/adjust", json={"new_timestamp": ""}, headers=HUMAN)
        self.assertEqual(r.status_code, 422)
        self.assertEqual(len(r.json()["errors"]), 2)


class TestClassificationApi(ApiTestCase):

    def test_suggest_then_learn(self):
        r = self.client.post("/v1/classification/suggest", json={"description": "UBER *TRIP"}, headers=HUMAN)
        self.assertEqual(r.status_code, 200)
        self.assertIsNone(r.json()["suggestion"])

        r = self.client.post(
            "/v1/classification/learn",
            json={"description": "UBER *TRIP", "category_id": "transport", "accepted": False},
            headers=HUMAN,
        )
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["mode"], "learned")

        r = self.client.post("/v1/classification/suggest", json={"description": "Uber Trip 99"}, headers=HUMAN)
        suggestion = r.json()["suggestion"]
        self.assertEqual(suggestion["category_id"], "transport")

        r = self.client.post(
            "/v1/classification/learn",
            json={
                "description": "Uber Trip 99", "category_id": "transport",
                "accepted": True, "suggested_rule_id": suggestion["rule_id"],
            },
            headers=HUMAN,
        )
        self.assertEqual(r.json()["mode"], "reinforced")
        self.assertEqual(r.json()["rule"]["used_count"], 2)

    def test_learn_validation(self):
        r = self.client.post(
            "/v1/classification/learn",
            json={"description": "", "category_id": 5, "accepted": "yes"},
            headers=HUMAN,
        )
        self.assertEqual(r.status_code, 422)
        self.assertEqual(len(r.json()["errors"]), 3)


class TestBoardAndHealth(ApiTestCase):

    def test_board(self):
        a = self.open_case()
        b = self.open_case()
        self.move(b["id"], "NOVO", "QUALIFICADO")
        board = self.client.get("/v1/journeys/crm/board", headers=HUMAN).json()
        columns = {c["state"]: [x["id"] for x in c["cases"]] for c in board["columns"]}
        self.assertEqual([c["state"] for c in board["columns"]][0], "NOVO")
        self.assertEqual(columns["NOVO"], [a["id"]])
        self.assertEqual(columns["QUALIFICADO"], [b["id"]])
        self.assertEqual(columns["__unclassified__"], [])

    def test_unknown_board(self):
        self.assertEqual(self.client.get("/v1/journeys/nope/board", headers=HUMAN).status_code, 404)

    def test_stats(self):
        self.open_case()
        stats = self.client.get("/v1/stats", headers=HUMAN).json()
        self.assertEqual(stats["cases"], {"open": 1})
        self.assertEqual(stats["open_pendencies"], 0)

    def test_health_and_ready(self):
        self.assertEqual(self.client.get("/health").json()["status"], "ok")
        r = self.client.get("/ready")
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["journeys"], 4)


if __name__ == "__main__":
    unittest.main()
