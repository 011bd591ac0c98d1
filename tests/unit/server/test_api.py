import uuid

import pytest
from fastapi.testclient import TestClient

from server.api.interface import ApiInterface, secrets_match
from server.core.coordinator import Coordinator
from server.core.repository import InMemoryRepository
from shared.protocol import AGENT_SECRET_HEADER

AGENT_SECRET = "agent-s3cret"
ADMIN_TOKEN = "admin-t0ken"

REGISTRATION = {"hostname": "box-1", "os": "Ubuntu", "os_version": "22.04", "agent_version": "0.1.0"}
SNAPSHOT = {"cpu_usage": 12.5, "memory_total": 8, "memory_used": 4, "disk_total": 100, "disk_used": 50}
PORT_CHECK = {"name": "ssh port", "check_type": "port_open", "parameters": {"port": 22}}


@pytest.fixture
def coordinator():
    return Coordinator(InMemoryRepository())


@pytest.fixture
def client(coordinator):
    api = ApiInterface(coordinator, agent_secret=AGENT_SECRET, admin_token=ADMIN_TOKEN)
    return TestClient(api.app)


@pytest.fixture
def agent_headers():
    return {AGENT_SECRET_HEADER: AGENT_SECRET}


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}


def test_secrets_match():
    assert secrets_match("abc", "abc")
    assert not secrets_match("abd", "abc")
    assert not secrets_match(None, "abc")


def test_health_needs_no_auth(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


class TestAgentRoutes:
    def test_missing_secret(self, client):
        response = client.post("/api/agent/register", json=REGISTRATION)

        assert response.status_code == 401
        assert response.json() == {
            "error": "401 Unauthorized",
            "message": "Invalid or missing agent secret",
        }

    def test_wrong_secret_is_rejected_before_body_validation(self, client):
        response = client.post("/api/agent/register", json={"bogus": True}, headers={AGENT_SECRET_HEADER: "nope"})
        assert response.status_code == 401

    def test_register(self, client, agent_headers):
        response = client.post("/api/agent/register", json=REGISTRATION, headers=agent_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Registration successful"
        uuid.UUID(body["endpoint_id"])

    def test_register_twice_returns_same_id(self, client, agent_headers):
        first = client.post("/api/agent/register", json=REGISTRATION, headers=agent_headers).json()
        second = client.post("/api/agent/register", json=REGISTRATION, headers=agent_headers).json()
        assert first["endpoint_id"] == second["endpoint_id"]

    def test_invalid_body(self, client, agent_headers):
        response = client.post("/api/agent/register", json={"hostname": "box-1"}, headers=agent_headers)

        assert response.status_code == 422
        body = response.json()
        assert body["error"] == "422 Unprocessable Entity"
        assert body["message"].startswith("Invalid request:")

    def test_heartbeat(self, client, agent_headers):
        endpoint_id = client.post("/api/agent/register", json=REGISTRATION, headers=agent_headers).json()[
            "endpoint_id"
        ]

        response = client.post(
            "/api/agent/heartbeat",
            json={"endpoint_id": endpoint_id, "snapshot": SNAPSHOT},
            headers=agent_headers,
        )

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_heartbeat_from_unknown_endpoint(self, client, agent_headers):
        response = client.post(
            "/api/agent/heartbeat",
            json={"endpoint_id": str(uuid.uuid4()), "snapshot": SNAPSHOT},
            headers=agent_headers,
        )

        assert response.status_code == 404
        assert response.json()["error"] == "404 Not Found"
        assert response.json()["message"].startswith("Endpoint not found")

    def test_checks_and_results(self, client, agent_headers, admin_headers):
        endpoint_id = client.post("/api/agent/register", json=REGISTRATION, headers=agent_headers).json()[
            "endpoint_id"
        ]
        client.post("/api/checks", json=PORT_CHECK, headers=admin_headers)

        checks = client.get("/api/agent/checks", headers=agent_headers).json()["checks"]
        assert [c["check_type"] for c in checks] == ["port_open"]

        response = client.post(
            "/api/agent/results",
            json={
                "endpoint_id": endpoint_id,
                "results": [{"check_id": checks[0]["id"], "status": "fail", "message": "closed"}],
            },
            headers=agent_headers,
        )

        assert response.status_code == 200
        assert response.json() == {"accepted": 1, "message": "Accepted 1 results"}

        endpoint = client.get(f"/api/endpoints/{endpoint_id}", headers=admin_headers).json()
        assert endpoint["endpoint"]["status"] == "warning"

    def test_malformed_result_does_not_reject_batch(self, client, agent_headers, admin_headers):
        endpoint_id = client.post("/api/agent/register", json=REGISTRATION, headers=agent_headers).json()[
            "endpoint_id"
        ]
        check_id = client.post("/api/checks", json=PORT_CHECK, headers=admin_headers).json()["id"]

        response = client.post(
            "/api/agent/results",
            json={
                "endpoint_id": endpoint_id,
                "results": [
                    {"check_id": check_id, "status": "fail"},
                    {"check_id": check_id, "status": "bogus"},
                ],
            },
            headers=agent_headers,
        )

        assert response.status_code == 200
        assert response.json() == {"accepted": 1, "message": "Accepted 1 results"}


class TestAdminRoutes:
    def test_missing_token(self, client):
        response = client.get("/api/endpoints")

        assert response.status_code == 401
        assert response.json()["error"] == "401 Unauthorized"
        assert response.json()["message"] == "Invalid authentication credentials"
        assert response.headers["www-authenticate"] == "Bearer"

    def test_wrong_token(self, client):
        response = client.get("/api/endpoints", headers={"Authorization": "Bearer wrong"})
        assert response.status_code == 401

    def test_agent_secret_does_not_grant_admin(self, client, agent_headers):
        assert client.get("/api/endpoints", headers=agent_headers).status_code == 401

    def test_disabled_without_token(self, coordinator):
        client = TestClient(ApiInterface(coordinator, agent_secret=AGENT_SECRET).app)

        response = client.get("/api/endpoints", headers={"Authorization": "Bearer anything"})

        assert response.status_code == 503
        assert response.json()["error"] == "503 Service Unavailable"

    def test_check_crud(self, client, admin_headers):
        created = client.post("/api/checks", json=PORT_CHECK, headers=admin_headers)
        assert created.status_code == 200
        check_id = created.json()["id"]
        assert created.json()["severity"] == "medium"

        updated = client.put(
            f"/api/checks/{check_id}",
            json={**PORT_CHECK, "parameters": {"port": 2222}, "enabled": False},
            headers=admin_headers,
        )
        assert updated.status_code == 200
        assert updated.json()["parameters"] == {"port": 2222}

        fetched = client.get(f"/api/checks/{check_id}", headers=admin_headers).json()
        assert fetched["enabled"] is False

        deleted = client.delete(f"/api/checks/{check_id}", headers=admin_headers)
        assert deleted.json() == {"success": True, "message": "Check deleted"}

        missing = client.get(f"/api/checks/{check_id}", headers=admin_headers)
        assert missing.status_code == 404
        assert missing.json()["message"] == f"Check not found: {check_id}"

    def test_create_check_with_unknown_type(self, client, admin_headers):
        response = client.post(
            "/api/checks", json={**PORT_CHECK, "check_type": "usb_device"}, headers=admin_headers
        )

        assert response.status_code == 422
        assert response.json() == {
            "error": "422 Unprocessable Entity",
            "message": "Unknown check type: usb_device",
        }

    def test_create_check_with_bad_parameters(self, client, admin_headers):
        response = client.post(
            "/api/checks",
            json={**PORT_CHECK, "check_type": "file_content", "parameters": {"path": "/etc/hosts", "pattern": "("}},
            headers=admin_headers,
        )

        assert response.status_code == 422
        assert response.json()["message"].startswith("Invalid parameters")

    def test_delete_endpoint(self, client, agent_headers, admin_headers):
        endpoint_id = client.post("/api/agent/register", json=REGISTRATION, headers=agent_headers).json()[
            "endpoint_id"
        ]

        response = client.delete(f"/api/endpoints/{endpoint_id}", headers=admin_headers)
        assert response.json() == {"success": True, "message": "Endpoint deleted"}
        assert client.get("/api/endpoints", headers=admin_headers).json() == []
        assert client.delete(f"/api/endpoints/{endpoint_id}", headers=admin_headers).status_code == 404

    def test_malformed_id(self, client, admin_headers):
        response = client.get("/api/endpoints/not-a-uuid", headers=admin_headers)
        assert response.status_code == 422

    def test_results_limit_is_bounded(self, client, admin_headers):
        assert client.get("/api/results?limit=0", headers=admin_headers).status_code == 422
        assert client.get("/api/results?limit=1001", headers=admin_headers).status_code == 422
        assert client.get("/api/results?limit=5", headers=admin_headers).json() == []

    def test_summary(self, client, agent_headers, admin_headers):
        client.post("/api/agent/register", json=REGISTRATION, headers=agent_headers)

        summary = client.get("/api/reports/summary", headers=admin_headers).json()

        assert summary["total_endpoints"] == 1
        assert summary["online_endpoints"] == 1
        assert summary["recent_results"] == []

    def test_check_types(self, client, admin_headers):
        types = client.get("/api/check-types", headers=admin_headers).json()

        assert "command_output" in types
        assert types["registry_key"] == "Check Windows registry key value (Windows only)"

    def test_unknown_route(self, client):
        response = client.get("/nowhere")

        assert response.status_code == 404
        assert response.json()["error"] == "404 Not Found"
