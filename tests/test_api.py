import types

import pytest
from fastapi.testclient import TestClient

from async_reply_service import api
from async_reply_service.api import create_app, API_TOKEN_HEADER_NAME


API_TOKEN = "secret-token"


class DummyService:
    def __init__(self):
        self.calls = []
        self.metrics = types.SimpleNamespace(generate_latest=lambda: b"metrics-data")
        self.poll_result = {
            "ok": True,
            "tenant_id": "corner_shop",
            "emails_checked": 2,
            "replies_added": 1,
            "errors": ["error finding messages for x@y.z: locked"],
            "marked_read": ["<a@example.com>"],
        }

    async def handle_command(self, cmd, payload):
        self.calls.append((cmd, payload))
        if cmd == "listTenants":
            return {
                "ok": True,
                "tenants": [
                    {
                        "id": "corner_shop",
                        "site_name": "Corner Shop",
                        "directory": "corner",
                        "imap_configured": True,
                        "smtp_configured": False,
                        "last_poll": None,
                    }
                ],
            }
        if cmd == "pollTenant":
            if payload.get("tenant_id") == "broken":
                return {"ok": False, "error": "failed to connect to IMAP server: refused"}
            return dict(self.poll_result)
        if cmd == "sendReply":
            if payload.get("conversation_id") == 404:
                return {"ok": False, "error": "Message 404 not found"}
            return {"ok": True, "message_id": "<sent@corner.test>"}
        return {"ok": True}


@pytest.fixture(autouse=True)
def reset_service():
    original = api.service
    original_token = getattr(api.app.state, "api_token", None)
    api.service = None
    api.app.state.api_token = None
    try:
        yield
    finally:
        api.service = original
        api.app.state.api_token = original_token


@pytest.fixture
def client_and_service():
    svc = DummyService()
    client = TestClient(create_app(svc, api_token=API_TOKEN))
    client.headers.update({API_TOKEN_HEADER_NAME: API_TOKEN})
    return client, svc


def test_returns_500_when_service_missing():
    create_app(DummyService(), api_token=API_TOKEN)
    api.service = None
    client = TestClient(api.app)
    response = client.post("/commands/run-now", headers={API_TOKEN_HEADER_NAME: API_TOKEN})
    assert response.status_code == 500
    assert response.json()["detail"] == "Service not initialized"


def test_rejects_missing_token():
    svc = DummyService()
    client = TestClient(create_app(svc, api_token=API_TOKEN))
    response = client.get("/status")
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or missing API token"


def test_rejects_wrong_token():
    client = TestClient(create_app(DummyService(), api_token=API_TOKEN))
    response = client.post("/commands/run-now", headers={API_TOKEN_HEADER_NAME: "nope"})
    assert response.status_code == 401


def test_no_token_configured_allows_requests():
    client = TestClient(create_app(DummyService()))
    assert client.get("/status").json() == {"ok": True}


def test_basic_endpoints_dispatch_to_service(client_and_service):
    client, svc = client_and_service

    assert client.get("/status").json() == {"ok": True}
    assert client.post("/commands/run-now").json()["ok"] is True
    assert client.post("/commands/suspend").json()["ok"] is True
    assert client.post("/commands/activate").json()["ok"] is True

    tenants = client.get("/tenants").json()
    assert tenants["tenants"][0]["id"] == "corner_shop"
    assert tenants["tenants"][0]["smtp_configured"] is False

    assert svc.calls == [("run now", {}), ("suspend", {}), ("activate", {}), ("listTenants", {})]


def test_poll_tenant_returns_summary(client_and_service):
    client, svc = client_and_service

    response = client.post("/commands/poll-tenant", json={"tenant_id": "corner_shop"})

    assert response.status_code == 200
    body = response.json()
    assert body["emails_checked"] == 2
    assert body["replies_added"] == 1
    assert body["marked_read"] == ["<a@example.com>"]
    assert svc.calls == [("pollTenant", {"tenant_id": "corner_shop"})]


def test_poll_tenant_failure_is_400(client_and_service):
    client, _ = client_and_service
    response = client.post("/commands/poll-tenant", json={"tenant_id": "broken"})
    assert response.status_code == 400
    assert "refused" in response.json()["detail"]["error"]


def test_send_reply_forwards_payload(client_and_service):
    client, svc = client_and_service

    payload = {
        "tenant_id": "corner_shop",
        "conversation_id": 7,
        "text": "We open at 9.",
        "original": {"sender": "alice@example.com", "message_id": "<A>", "references": "<X>"},
    }
    response = client.post("/commands/send-reply", json=payload)

    assert response.status_code == 200
    assert response.json() == {"ok": True, "message_id": "<sent@corner.test>"}
    assert svc.calls == [
        (
            "sendReply",
            {
                "tenant_id": "corner_shop",
                "conversation_id": 7,
                "text": "We open at 9.",
                "original": {"sender": "alice@example.com", "message_id": "<A>", "references": "<X>"},
            },
        )
    ]


def test_send_reply_failure_is_400(client_and_service):
    client, _ = client_and_service
    response = client.post(
        "/commands/send-reply", json={"tenant_id": "corner_shop", "conversation_id": 404, "text": "x"}
    )
    assert response.status_code == 400
    assert response.json()["detail"] == {"error": "Message 404 not found"}


def test_send_reply_validates_payload(client_and_service):
    client, svc = client_and_service
    response = client.post("/commands/send-reply", json={"tenant_id": "corner_shop"})
    assert response.status_code == 422
    assert svc.calls == []


def test_metrics_endpoint_uses_service_metrics():
    svc = DummyService()
    client = TestClient(create_app(svc, api_token=API_TOKEN))
    client.headers.update({API_TOKEN_HEADER_NAME: API_TOKEN})

    response = client.get("/metrics")
    assert response.status_code == 200
    assert response.text == "metrics-data"
