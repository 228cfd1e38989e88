import logging

from fastapi.testclient import TestClient

from ledger_api.main import app


def test_healthz() -> None:
    client = TestClient(app)
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_ledger_routes_require_module_credentials() -> None:
    client = TestClient(app)
    response = client.get("/employees/emp-1/status")
    assert response.status_code == 401


def test_request_log_names_route_and_employee(caplog) -> None:
    client = TestClient(app)
    caplog.set_level(logging.INFO, logger="ledger_api.main")

    response = client.get("/employees/emp-1/status", headers={"X-Module-Id": "portal"})

    assert response.status_code == 401
    messages = [record.getMessage() for record in caplog.records if record.name == "ledger_api.main"]
    assert len(messages) == 1
    assert "route=/employees/{employee_id}/status" in messages[0]
    assert "employee_id=emp-1" in messages[0]
    assert "module_id=portal" in messages[0]
    assert "status=401" in messages[0]
