from __future__ import annotations

import base64

import pytest
from fastapi.testclient import TestClient

from dochub.api.app import create_app
from dochub.api.deps import get_dispatcher, get_renderer

from conftest import FakeDispatcher, SelectiveFailRenderer


@pytest.fixture
def app(dispatcher):
    app = create_app()
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    return app


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


def _generate(client: TestClient, workflow, index: int = 0, **fields) -> dict:
    resp = client.post(
        "/api/letters/generate",
        json={
            "template_id": workflow.template_id,
            "employee_id": workflow.employee_ids[index],
            "field_values": {"Amount": "500", **fields},
        },
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


def test_reference_data_create_and_list(client: TestClient) -> None:
    template_resp = client.post(
        "/api/templates",
        json={
            "name": "Relieving",
            "letter_type": "Relieving Letter",
            "template_content": "<p>{{ EmployeeName }} is relieved on {{ LastDay }}.</p>",
            "fields": [
                {"field_name": "EmployeeName", "is_required": True},
                {"field_name": "LastDay", "data_type": "Date", "is_required": True},
            ],
        },
    )
    assert template_resp.status_code == 200
    assert [item["field_name"] for item in template_resp.json()["fields"]] == ["EmployeeName", "LastDay"]

    employee_resp = client.post(
        "/api/employees",
        json={"employee_code": "E900", "first_name": "Dana", "last_name": "Reyes", "email": "dana@example.com"},
    )
    assert employee_resp.status_code == 200
    assert employee_resp.json()["full_name"] == "Dana Reyes"

    duplicate = client.post("/api/employees", json={"employee_code": "E900", "first_name": "Other"})
    assert duplicate.status_code == 409

    signature_resp = client.post(
        "/api/signatures",
        json={
            "signature_name": "CEO",
            "authority_name": "Sam Lee",
            "image_base64": base64.b64encode(b"\x89PNG data").decode(),
        },
    )
    assert signature_resp.status_code == 200
    assert signature_resp.json()["has_image"] is True

    bad_image = client.post(
        "/api/signatures",
        json={"signature_name": "Bad", "authority_name": "X", "image_base64": "***not-base64***"},
    )
    assert bad_image.status_code == 422

    assert any(item["name"] == "Relieving" for item in client.get("/api/templates").json())
    assert any(item["employee_code"] == "E900" for item in client.get("/api/employees").json())
    assert any(item["signature_name"] == "CEO" for item in client.get("/api/signatures").json())


def test_generate_letter_api(client: TestClient, workflow) -> None:
    letter = _generate(client, workflow)

    assert letter["status"] == "Generated"
    assert letter["letter_number"] == "OFFERLETTER-000001"
    assert letter["fields"]["EmployeeName"] == "Alice Tester"
    assert letter["fields"]["Designation"] == "Associate"
    assert letter["signature_id"] == workflow.signature_id

    fetched = client.get(f"/api/letters/{letter['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["letter_number"] == letter["letter_number"]

    listed = client.get("/api/letters", params={"status": "Generated"}).json()
    assert [item["id"] for item in listed] == [letter["id"]]


def test_generate_letter_error_mapping(app, client: TestClient, workflow) -> None:
    missing = client.post(
        "/api/letters/generate",
        json={"template_id": workflow.template_id, "employee_id": workflow.employee_ids[0]},
    )
    assert missing.status_code == 422
    assert missing.json()["detail"]["kind"] == "MissingRequiredField"
    assert missing.json()["detail"]["field"] == "Amount"

    unknown = client.post(
        "/api/letters/generate",
        json={"template_id": workflow.template_id, "employee_id": 999, "field_values": {"Amount": "1"}},
    )
    assert unknown.status_code == 404
    assert unknown.json()["detail"]["kind"] == "NotFound"

    app.dependency_overrides[get_renderer] = lambda: SelectiveFailRenderer({"Alice"})
    failed = client.post(
        "/api/letters/generate",
        json={"template_id": workflow.template_id, "employee_id": workflow.employee_ids[0], "field_values": {"Amount": "1"}},
    )
    assert failed.status_code == 502
    assert failed.json()["detail"]["kind"] == "RenderFailure"
    assert client.get("/api/letters").json() == []

    assert client.get("/api/letters/12345").status_code == 404


def test_send_and_delivery_webhook(client: TestClient, workflow, dispatcher) -> None:
    letter = _generate(client, workflow)

    sent = client.post(f"/api/letters/{letter['id']}/send", json={"actor": "hr-admin"})
    assert sent.status_code == 200
    assert sent.json()["status"] == "Sent"
    assert sent.json()["email_message_id"] == "msg-1"
    assert dispatcher.sent[0]["to"] == "alice@example.com"

    again = client.post(f"/api/letters/{letter['id']}/send")
    assert again.status_code == 422
    assert again.json()["detail"]["kind"] == "InvalidTransition"

    events = client.post(
        "/api/webhooks/email-events",
        json=[
            {"event": "delivered", "sg_message_id": "msg-1.filter0001"},
            {"event": "open", "sg_message_id": "msg-1"},
        ],
    )
    assert events.status_code == 200
    assert events.json()["processed"] == 1
    assert events.json()["ignored"] == 1

    history = client.get(f"/api/letters/{letter['id']}/history").json()
    assert [row["to_status"] for row in history] == ["Generated", "Sent", "Delivered"]
    assert history[1]["actor"] == "hr-admin"
    assert history[2]["actor"] == "email-webhook"
    assert client.get(f"/api/letters/{letter['id']}").json()["delivered_at"] is not None


def test_manual_status_update_and_conflict(client: TestClient, workflow) -> None:
    letter = _generate(client, workflow)

    stale = client.put(
        f"/api/letters/{letter['id']}/status",
        json={"new_status": "Failed", "expected_status": "Sent"},
    )
    assert stale.status_code == 409
    assert stale.json()["detail"]["kind"] == "Conflict"

    skipped = client.put(f"/api/letters/{letter['id']}/status", json={"new_status": "Delivered"})
    assert skipped.status_code == 422
    assert skipped.json()["detail"]["kind"] == "InvalidTransition"

    bogus = client.put(f"/api/letters/{letter['id']}/status", json={"new_status": "Archived"})
    assert bogus.status_code == 422

    updated = client.put(
        f"/api/letters/{letter['id']}/status",
        json={"new_status": "Failed", "notes": "printer jam", "expected_status": "Generated"},
    )
    assert updated.status_code == 200
    assert updated.json()["success"] is True
    assert updated.json()["letter"]["status"] == "Failed"

    assert client.get("/api/letters/777/history").status_code == 404


def test_status_batch_and_summary(client: TestClient, workflow) -> None:
    first = _generate(client, workflow, 0)
    second = _generate(client, workflow, 1)
    client.post(f"/api/letters/{second['id']}/send")

    batch = client.put(
        "/api/letters/status-batch",
        json={"letter_ids": [first["id"], second["id"], 999], "new_status": "Delivered"},
    )
    assert batch.status_code == 200
    body = batch.json()
    assert body["success"] is False
    assert (body["updated"], body["failed"]) == (1, 2)
    kinds = {item["letter_id"]: item["error_kind"] for item in body["items"]}
    assert kinds == {first["id"]: "InvalidTransition", second["id"]: "", 999: "NotFound"}

    summary = client.get("/api/letters/status-summary").json()
    assert summary["total_letters"] == 2
    assert summary["status_breakdown"] == {"Generated": 1, "Sent": 0, "Delivered": 1, "Failed": 0}


def test_resend_until_retry_ceiling(app, client: TestClient, workflow) -> None:
    failing = FakeDispatcher(fail_for={"alice@example.com"})
    app.dependency_overrides[get_dispatcher] = lambda: failing
    letter = _generate(client, workflow)

    first = client.post(f"/api/letters/{letter['id']}/send")
    assert first.status_code == 502
    assert first.json()["detail"]["kind"] == "DispatchFailure"
    assert client.get(f"/api/letters/{letter['id']}").json()["status"] == "Failed"

    for _ in range(3):
        assert client.post(f"/api/letters/{letter['id']}/resend").status_code == 502

    exhausted = client.post(f"/api/letters/{letter['id']}/resend", json={"regenerate": True})
    assert exhausted.status_code == 409
    assert exhausted.json()["detail"]["kind"] == "RetryLimitExceeded"
    stored = client.get(f"/api/letters/{letter['id']}").json()
    assert stored["status"] == "Failed"
    assert stored["retry_count"] == 3


def test_resend_after_bounce(client: TestClient, workflow) -> None:
    letter = _generate(client, workflow)
    client.post(f"/api/letters/{letter['id']}/send")
    client.post("/api/webhooks/email-events", json=[{"event": "bounce", "sg_message_id": "msg-1", "reason": "550"}])
    assert client.get(f"/api/letters/{letter['id']}").json()["error_message"] == "550"

    resent = client.post(f"/api/letters/{letter['id']}/resend", json={"actor": "hr-admin"})

    assert resent.status_code == 200
    assert resent.json()["letter_status"] == "Sent"
    assert resent.json()["retry_count"] == 1


def test_health_reports_running_bulk_operations(client: TestClient) -> None:
    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["environment"] == "test"
    assert isinstance(body["running_bulk_operations"], list)
