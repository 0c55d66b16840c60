"""
HTTP API tests

Runs the real application (lifespan included) with persistence and
remote sync disabled.
"""
import pytest
from fastapi.testclient import TestClient

from bpm_engine.main import create_app

from ..factories import approval_definition, review_definition

ADMIN = {"X-User-Id": "admin-1", "X-User-Role": "Admin"}
MEMBER = {"X-User-Id": "member-1", "X-User-Role": "member"}


@pytest.fixture
def client(settings):
    app = create_app(settings.model_copy(update={"default_org_id": "api-org"}))
    with TestClient(app) as test_client:
        test_client.post("/api/v1/definitions", json=approval_definition())
        test_client.post("/api/v1/definitions", json=review_definition())
        yield test_client


def start_review(client, headers=MEMBER):
    response = client.post("/api/v1/processes", json={"definitionId": "document_review"}, headers=headers)
    assert response.status_code == 201
    return response.json()


class TestHealth:
    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["orgId"] == "api-org"
        assert body["scheduler"] is True
        assert body["sync"]["remoteEnabled"] is False

    def test_correlation_id_is_echoed(self, client):
        response = client.get("/health", headers={"X-Correlation-Id": "corr-123"})
        assert response.headers["X-Correlation-Id"] == "corr-123"


class TestDefinitions:
    def test_list_and_get(self, client):
        body = client.get("/api/v1/definitions").json()
        assert body["total"] == 2
        definition = client.get("/api/v1/definitions/purchase_approval").json()
        assert definition["initialState"] == "draft"

    def test_invalid_definition_rejected(self, client):
        definition = approval_definition()
        definition["initialState"] = "nowhere"
        response = client.post("/api/v1/definitions", json=definition)
        assert response.status_code == 400
        assert response.json()["detail"]["error"]["code"] == "DEFINITION_VALIDATION_ERROR"

    def test_validate_does_not_register(self, client):
        definition = approval_definition()
        definition["id"] = "scratch"
        assert client.post("/api/v1/definitions/validate", json=definition).json()["is_valid"] is True
        assert client.get("/api/v1/definitions/scratch").status_code == 404

        definition["states"]["draft"]["transitions"] = ["missing"]
        result = client.post("/api/v1/definitions/validate", json=definition).json()
        assert result["is_valid"] is False
        assert result["errors"]

    def test_unregister(self, client):
        assert client.delete("/api/v1/definitions/document_review").status_code == 204
        assert client.delete("/api/v1/definitions/document_review").status_code == 404


class TestProcesses:
    def test_create_and_transition(self, client):
        created = client.post(
            "/api/v1/processes",
            json={"definitionId": "purchase_approval", "variables": {"amount": 120}},
            headers=MEMBER,
        ).json()
        process_id = created["_id"]
        assert created["currentState"] == "draft"
        assert created["metadata"]["createdBy"] == "member-1"

        transitions = client.get(f"/api/v1/processes/{process_id}/transitions").json()
        assert [t["targetState"] for t in transitions] == ["submitted"]

        moved = client.post(
            f"/api/v1/processes/{process_id}/transitions",
            json={"targetState": "submitted"},
            headers=MEMBER,
        ).json()
        assert moved["currentState"] == "submitted"
        history = client.get(f"/api/v1/processes/{process_id}/history").json()
        assert history[0]["from"] == "draft"
        assert history[0]["context"]["userId"] == "member-1"

    def test_illegal_transition_is_conflict(self, client):
        process = start_review(client)
        response = client.post(
            f"/api/v1/processes/{process['_id']}/transitions", json={"targetState": "accepted"}
        )
        assert response.status_code == 409
        assert response.json()["detail"]["error"]["code"] == "ILLEGAL_TRANSITION"

    def test_unknown_process(self, client):
        response = client.get("/api/v1/processes/process_inst:nope_1_x")
        assert response.status_code == 404
        assert response.json()["detail"]["error"]["code"] == "PROCESS_NOT_FOUND"

    def test_invalid_variables(self, client):
        response = client.post(
            "/api/v1/processes", json={"definitionId": "purchase_approval", "variables": {"amount": "lots"}}
        )
        assert response.status_code == 400
        assert response.json()["detail"]["error"]["code"] == "VARIABLE_VALIDATION_ERROR"

    def test_request_validation_error_shape(self, client):
        response = client.post("/api/v1/processes", json={})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_lifecycle_endpoints(self, client):
        process_id = start_review(client)["_id"]

        suspended = client.post(f"/api/v1/processes/{process_id}/suspend", json={"reason": "hold"}).json()
        assert suspended["status"] == "suspended"
        assert client.post(f"/api/v1/processes/{process_id}/suspend", json={}).status_code == 409
        assert client.post(f"/api/v1/processes/{process_id}/resume").json()["status"] == "active"

        patched = client.patch(f"/api/v1/processes/{process_id}/variables", json={"priority": "high"}).json()
        assert patched["variables"]["priority"] == "high"
        patched = client.patch(f"/api/v1/processes/{process_id}/metadata", json={"source": "api"}).json()
        assert patched["metadata"]["source"] == "api"

        cancelled = client.post(f"/api/v1/processes/{process_id}/cancel", json={"reason": "dup"}).json()
        assert cancelled["status"] == "cancelled"
        actions = [e["action"] for e in client.get(f"/api/v1/processes/{process_id}/audit").json()]
        assert actions[0] == "process_created"
        assert "variables_updated" in actions

    def test_list_filters_and_pages(self, client):
        for _ in range(3):
            start_review(client)
        client.post("/api/v1/processes", json={"definitionId": "purchase_approval", "variables": {"amount": 1}})

        body = client.get(
            "/api/v1/processes", params={"definitionId": "document_review", "limit": 2}
        ).json()
        assert body["total"] == 3
        assert len(body["items"]) == 2
        assert body["hasMore"] is True

        stats = client.get("/api/v1/processes/statistics").json()
        assert stats["total"] == 4

    def test_delete(self, client):
        process_id = start_review(client)["_id"]
        assert client.delete(f"/api/v1/processes/{process_id}").status_code == 204
        assert client.get(f"/api/v1/processes/{process_id}").status_code == 404
        assert client.delete(f"/api/v1/processes/{process_id}").status_code == 404


class TestTasks:
    def test_task_flow(self, client):
        process_id = start_review(client)["_id"]

        tasks = client.get("/api/v1/tasks", headers=MEMBER).json()
        assert [t["type"] for t in tasks] == ["manual"]
        assert client.get("/api/v1/processes/" + process_id + "/tasks").json()[0]["id"] == tasks[0]["id"]

        done = client.post(f"/api/v1/tasks/{tasks[0]['id']}/complete", json={}, headers=MEMBER).json()
        assert done["success"] is True
        assert done["process"]["currentState"] == "in_review"

        review_task = client.get("/api/v1/tasks", params={"type": "review"}).json()[0]
        denied = client.post(
            f"/api/v1/tasks/{review_task['id']}/complete", json={"data": {"decision": "accept"}}, headers=MEMBER
        )
        assert denied.status_code == 403

        accepted = client.post(
            f"/api/v1/tasks/{review_task['id']}/complete", json={"data": {"decision": "accept"}}, headers=ADMIN
        ).json()
        assert accepted["process"]["currentState"] == "accepted"
        assert accepted["process"]["status"] == "completed"

    def test_stale_task_is_not_found(self, client):
        process_id = start_review(client)["_id"]
        task_id = client.get(f"/api/v1/processes/{process_id}/tasks").json()[0]["id"]
        client.post(f"/api/v1/processes/{process_id}/transitions", json={"targetState": "in_review"})

        response = client.get(f"/api/v1/tasks/{task_id}")
        assert response.status_code == 404
        assert response.json()["detail"]["error"]["code"] == "TASK_NOT_FOUND"

    def test_statistics(self, client):
        start_review(client)
        stats = client.get("/api/v1/tasks/statistics").json()
        assert stats == {"total": 1, "byType": {"manual": 1}, "byProcess": {"document_review": 1}}


class TestEventsAndSync:
    def test_emit_event(self, client):
        client.post("/api/v1/definitions", json={
            "id": "invoice",
            "name": "Invoice",
            "initialState": "sent",
            "states": {
                "sent": {
                    "transitions": ["paid"],
                    "autoTransition": {"conditions": [{"type": "event", "toState": "paid", "event": "payment.received"}]},
                },
                "paid": {"transitions": []},
            },
        })
        process_id = client.post("/api/v1/processes", json={"definitionId": "invoice"}).json()["_id"]

        response = client.post("/api/v1/events", json={"event": "payment.received", "payload": {"ref": "P1"}})

        assert response.status_code == 202
        assert response.json()["listeners"] == 1
        assert client.get(f"/api/v1/processes/{process_id}").json()["currentState"] == "paid"

    def test_sync_without_remote(self, client):
        status = client.get("/api/v1/sync/status").json()
        assert status["remoteEnabled"] is False

        result = client.post("/api/v1/sync", json={}).json()
        assert result["skipped"] is True
        assert result["reason"] == "remote sync not configured"

        updated = client.put("/api/v1/sync/interval", json={"seconds": 90}).json()
        assert updated["intervalSeconds"] == 90
