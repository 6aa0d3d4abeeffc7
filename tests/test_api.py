"""
Tests for the REST API.

The app runs with an in-memory store and queue and no workers, so queued
jobs stay queued and every response is deterministic.
"""
import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from channels.registry import Collaborators
from config.settings import BusinessHoursConfig, Settings
from database.store_memory import InMemoryEngagementStore
from job_queue.message_queue import InMemoryMessageQueue

CONTACT = {
    "contact_id": "c_001",
    "name": "Sharma Ji",
    "phone_number": "+919876543210",
    "lead_source": "IndiaMART",
    "entry_type": "webform",
}

FLOW = {
    "name": "IndiaMART Follow-up",
    "priority": 0,
    "is_enabled": True,
    "trigger_conditions": [
        {"condition_type": "lead_source", "condition_operator": "equals", "condition_value": "IndiaMART"},
    ],
    "actions": [
        {"action_order": 1, "action_type": "ai_call",
         "action_config": {"agent_id": "agent_a", "phone_number_id": "pn_1"}},
        {"action_order": 2, "action_type": "whatsapp_message",
         "action_config": {"template_id": "tmpl_followup"}},
    ],
}


@pytest.fixture
def client():
    settings = Settings(business_hours=BusinessHoursConfig(start="00:00", end="23:59:59.999999"))
    app = create_app(
        settings=settings,
        store=InMemoryEngagementStore(),
        queue=InMemoryMessageQueue(),
        collaborators=Collaborators(),
        run_workers=False,
    )
    with TestClient(app) as c:
        yield c


@pytest.fixture
def flow_id(client):
    resp = client.post("/api/v1/flows", json=FLOW)
    assert resp.status_code == 201
    return resp.json()["id"]


class TestHealth:

    def test_health(self, client):
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["collaborators"] == {"ai_call": False, "whatsapp": False, "email": False}
        assert data["queue"]["dispatch"] == 0


class TestFlows:

    def test_create_and_get(self, client, flow_id):
        flow = client.get(f"/api/v1/flows/{flow_id}").json()
        assert flow["name"] == "IndiaMART Follow-up"
        assert [a["action_type"] for a in flow["actions"]] == ["ai_call", "whatsapp_message"]
        assert [f["id"] for f in client.get("/api/v1/flows").json()] == [flow_id]

    def test_invalid_flow_rejected(self, client):
        resp = client.post("/api/v1/flows", json={**FLOW, "name": ""})
        assert resp.status_code == 400
        assert "Flow name is required" in resp.json()["detail"]["errors"]

    def test_enabled_flow_needs_actions(self, client):
        resp = client.post("/api/v1/flows", json={**FLOW, "actions": []})
        assert resp.status_code == 400
        assert "Flow must have at least one action" in resp.json()["detail"]["errors"]

    def test_draft_without_actions_allowed(self, client):
        resp = client.post("/api/v1/flows", json={**FLOW, "is_enabled": False, "actions": []})
        assert resp.status_code == 201

    def test_update(self, client, flow_id):
        resp = client.put(f"/api/v1/flows/{flow_id}", json={**FLOW, "name": "Renamed", "priority": 3})
        assert resp.status_code == 200
        assert resp.json()["id"] == flow_id
        assert client.get(f"/api/v1/flows/{flow_id}").json()["priority"] == 3

    def test_missing_flow(self, client):
        assert client.get("/api/v1/flows/nope").status_code == 404
        assert client.put("/api/v1/flows/nope", json=FLOW).status_code == 404
        assert client.delete("/api/v1/flows/nope").status_code == 404

    def test_delete(self, client, flow_id):
        assert client.delete(f"/api/v1/flows/{flow_id}").json() == {"deleted": True, "flow_id": flow_id}
        assert client.get(f"/api/v1/flows/{flow_id}").status_code == 404

    def test_toggle(self, client, flow_id):
        assert client.post(f"/api/v1/flows/{flow_id}/toggle").json()["is_enabled"] is False
        assert client.post(f"/api/v1/flows/{flow_id}/toggle").json()["is_enabled"] is True
        resp = client.post(f"/api/v1/flows/{flow_id}/toggle", json={"is_enabled": True})
        assert resp.json()["is_enabled"] is True
        assert client.get("/api/v1/flows", params={"enabled_only": True}).json()[0]["id"] == flow_id

    def test_enabling_empty_draft_rejected(self, client):
        draft = client.post("/api/v1/flows", json={**FLOW, "is_enabled": False, "actions": []}).json()
        assert client.post(f"/api/v1/flows/{draft['id']}/toggle").status_code == 400

    def test_bulk_priorities(self, client, flow_id):
        other = client.post("/api/v1/flows", json={**FLOW, "name": "Other", "priority": 1}).json()["id"]
        resp = client.put("/api/v1/flows/priorities/bulk", json={"priorities": [
            {"flow_id": flow_id, "priority": 5},
            {"flow_id": other, "priority": 0},
        ]})
        assert resp.status_code == 200
        assert [f["id"] for f in client.get("/api/v1/flows").json()] == [other, flow_id]

    def test_bulk_priorities_unknown_flow(self, client):
        resp = client.put("/api/v1/flows/priorities/bulk",
                          json={"priorities": [{"flow_id": "nope", "priority": 1}]})
        assert resp.status_code == 404


class TestDryRunAndTestRun:

    def test_dry_run(self, client, flow_id):
        report = client.post(f"/api/v1/flows/{flow_id}/test", json={"contact": CONTACT}).json()
        assert report["matches"] is True
        assert len(report["action_plan"]) == 2

        other = {**CONTACT, "lead_source": "website"}
        assert client.post(f"/api/v1/flows/{flow_id}/test", json={"contact": other}).json()["matches"] is False
        assert client.get("/api/v1/executions").json() == []

    def test_test_run(self, client, flow_id):
        resp = client.post(f"/api/v1/flows/{flow_id}/test-run", json={"contact": CONTACT})
        assert resp.status_code == 200
        data = resp.json()
        assert data["execution"]["is_test_run"] is True
        assert data["execution"]["status"] == "completed"
        assert [l["status"] for l in data["action_logs"]] == ["success", "success"]

    def test_test_run_missing_flow(self, client):
        assert client.post("/api/v1/flows/nope/test-run", json={"contact": CONTACT}).status_code == 404


class TestEventsAndExecutions:

    def test_event_starts_execution(self, client, flow_id):
        resp = client.post("/api/v1/contacts/events", json={"contact": CONTACT})
        data = resp.json()
        assert data["triggered"] is True
        assert data["execution"]["flow_id"] == flow_id
        assert data["execution"]["status"] == "pending"
        assert client.get("/health").json()["queue"]["dispatch"] == 1

        again = client.post("/api/v1/contacts/events", json={"contact": CONTACT}).json()
        assert again == {"triggered": False, "execution": None}

    def test_event_keeps_trigger_timestamp(self, client, flow_id):
        resp = client.post("/api/v1/contacts/events",
                           json={"contact": CONTACT, "triggered_at": "2026-01-01T10:00:00Z"})
        execution = resp.json()["execution"]
        assert execution["triggered_at"].startswith("2026-01-01T10:00:00")

        stats = client.get(f"/api/v1/flows/{flow_id}/statistics").json()
        assert stats["last_execution"].startswith("2026-01-01T10:00:00")

    def test_no_matching_flow(self, client, flow_id):
        resp = client.post("/api/v1/contacts/events", json={"contact": {**CONTACT, "lead_source": "website"}})
        assert resp.json()["triggered"] is False

    def test_list_and_get(self, client, flow_id):
        execution_id = client.post("/api/v1/contacts/events", json={"contact": CONTACT}).json()["execution"]["id"]
        listed = client.get("/api/v1/executions", params={"contact_id": "c_001"}).json()
        assert [e["id"] for e in listed] == [execution_id]
        detail = client.get(f"/api/v1/executions/{execution_id}").json()
        assert detail["execution"]["id"] == execution_id
        assert detail["action_logs"] == []

    def test_bad_status_filter(self, client):
        assert client.get("/api/v1/executions", params={"status": "sleeping"}).status_code == 400

    def test_missing_execution(self, client):
        assert client.get("/api/v1/executions/nope").status_code == 404
        assert client.post("/api/v1/executions/nope/cancel").status_code == 404

    def test_cancel(self, client, flow_id):
        execution_id = client.post("/api/v1/contacts/events", json={"contact": CONTACT}).json()["execution"]["id"]
        resp = client.post(f"/api/v1/executions/{execution_id}/cancel")
        assert resp.status_code == 200
        assert resp.json()["status"] == "cancelled"

        again = client.post(f"/api/v1/executions/{execution_id}/cancel")
        assert again.status_code == 409
        assert again.json()["detail"] == "Execution already cancelled"


class TestAnalytics:

    def test_report(self, client, flow_id):
        client.post(f"/api/v1/flows/{flow_id}/test-run", json={"contact": CONTACT})
        report = client.get("/api/v1/analytics").json()
        assert report["summary"]["total_flows"] == 1
        assert report["summary"]["total_executions"] == 0

        with_tests = client.get("/api/v1/analytics", params={"include_test_runs": True}).json()
        assert with_tests["summary"]["total_executions"] == 1
        assert with_tests["summary"]["completed_executions"] == 1


class TestFlowStatistics:

    def test_statistics(self, client, flow_id):
        client.post(f"/api/v1/flows/{flow_id}/test-run", json={"contact": CONTACT})
        stats = client.get(f"/api/v1/flows/{flow_id}/statistics").json()
        assert stats["flow_id"] == flow_id
        assert stats["flow_name"] == "IndiaMART Follow-up"
        assert stats["execution_count"] == 0

        with_tests = client.get(f"/api/v1/flows/{flow_id}/statistics",
                                params={"include_test_runs": True}).json()
        assert with_tests["execution_count"] == 1
        assert with_tests["success_count"] == 1
        assert with_tests["success_rate"] == 100.0

    def test_deleted_flow_keeps_history(self, client, flow_id):
        client.post("/api/v1/contacts/events", json={"contact": CONTACT})
        client.delete(f"/api/v1/flows/{flow_id}")
        stats = client.get(f"/api/v1/flows/{flow_id}/statistics").json()
        assert stats["execution_count"] == 1
        assert stats["priority"] is None

    def test_unknown_flow(self, client):
        assert client.get("/api/v1/flows/nope/statistics").status_code == 404
