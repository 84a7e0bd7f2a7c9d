from __future__ import annotations

import asyncio

import pytest
from fastapi.testclient import TestClient

from contract_preview.main import app
from contract_preview.routes.previews import bearer_token
from contract_preview.services import backend_client
from contract_preview.services.config import get_settings
from contract_preview.services.session_manager import session_manager

EXPENSES = {
    "subcontractorFees": [{"id": "fee-1", "job_description": "Excavation", "expected_value": 2000}],
    "equipment": [{"id": "eq-1", "name": "Pump", "expected_price": 500}],
    "materials": [],
    "additionalExpenses": [],
    "totals": {"total": 2500},
}

AUTH = {"Authorization": "Bearer tok"}


@pytest.fixture
def backend(monkeypatch, tmp_path):
    """Stand-in for the persistence API; records every PUT."""
    state = {"saved": [], "puts": [], "fail_save": False, "tokens": []}

    async def fake_fetch_expenses(project_id, token):
        state["tokens"].append(token)
        if not token:
            raise backend_client.NotAuthenticatedError()
        return dict(EXPENSES)

    async def fake_fetch_milestones(project_id, token):
        return list(state["saved"])

    async def fake_save_milestones(project_id, milestones, token):
        if state["fail_save"]:
            raise backend_client.BackendError(500, "database unavailable")
        state["puts"].append((project_id, milestones))
        state["saved"] = list(milestones)
        return {"milestones": milestones}

    monkeypatch.setattr(backend_client, "fetch_expenses", fake_fetch_expenses)
    monkeypatch.setattr(backend_client, "fetch_milestones", fake_fetch_milestones)
    monkeypatch.setattr(backend_client, "save_milestones", fake_save_milestones)
    monkeypatch.setenv("DOCUMENTS_DIR", str(tmp_path))
    get_settings.cache_clear()
    yield state
    get_settings.cache_clear()


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


def open_preview(client, document_type="contract") -> dict:
    response = client.post(
        "/api/previews",
        json={
            "project_id": "p-1",
            "document_type": document_type,
            "context": {"document_number": "1042", "company": {"company_name": "Blue Lagoon Pools"}},
        },
        headers=AUTH,
    )
    assert response.status_code == 200, response.text
    return response.json()


def test_health(client) -> None:
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_open_contract_preview(client, backend) -> None:
    body = open_preview(client)

    assert backend["tokens"] == ["tok"]
    assert [m["milestone_type"] for m in body["milestones"]] == [
        "initial_fee",
        "subcontractor",
        "equipment",
        "final_inspection",
    ]
    totals = body["totals"]
    assert (totals["total_cost"], totals["total_customer_price"], totals["profit"]) == (2500.0, 4500.0, 2000.0)
    assert totals["margin_percent"] == pytest.approx(80.0)
    assert body["grand_total"] == 4500.0


def test_open_without_token_is_401(client, backend) -> None:
    response = client.post("/api/previews", json={"project_id": "p-1"})
    assert response.status_code == 401
    assert response.json()["detail"] == "Not authenticated"


@pytest.mark.parametrize(
    "header, expected",
    [
        ("Bearer tok", "tok"),
        ("bearer tok", "tok"),
        ("BEARER  tok ", "tok"),
        ("Basic abc", None),
        ("Bearer ", None),
        (None, None),
    ],
)
def test_bearer_token_scheme_is_case_insensitive(header, expected) -> None:
    assert bearer_token(header) == expected


def test_price_edit_save_and_reopen(client, backend) -> None:
    session_id = open_preview(client)["session_id"]

    response = client.put(
        f"/api/previews/{session_id}/milestones/new-equipment/price",
        json={"customer_price": "900"},
    )
    assert response.status_code == 200
    assert response.json()["totals"]["total_customer_price"] == 4900.0

    response = client.post(f"/api/previews/{session_id}/save", headers=AUTH)
    assert response.status_code == 200
    assert response.json()["saved_at"]
    project_id, rows = backend["puts"][-1]
    assert project_id == "p-1"
    assert [r["customer_price"] for r in rows] == [1000.0, 2000.0, 900.0, 1000.0]

    reopened = open_preview(client)
    equipment = [m for m in reopened["milestones"] if m["milestone_type"] == "equipment"][0]
    assert equipment["customer_price"] == 900.0


def test_unknown_milestone_and_session_are_404(client, backend) -> None:
    session_id = open_preview(client)["session_id"]

    response = client.put(
        f"/api/previews/{session_id}/milestones/nope/price", json={"customer_price": 1}
    )
    assert response.status_code == 404
    assert client.get("/api/previews/missing").status_code == 404


def test_change_order_line_items(client, backend) -> None:
    session_id = open_preview(client, "change_order")["session_id"]

    client.post(f"/api/previews/{session_id}/line-items")
    body = client.post(f"/api/previews/{session_id}/line-items").json()
    assert [i["id"] for i in body["line_items"]] == ["custom-1", "custom-2"]

    client.delete(f"/api/previews/{session_id}/line-items/custom-2")
    body = client.post(f"/api/previews/{session_id}/line-items").json()
    # removed ids are not handed out again
    assert [i["id"] for i in body["line_items"]] == ["custom-1", "custom-3"]

    client.patch(
        f"/api/previews/{session_id}/line-items/custom-1",
        json={"field": "name", "value": "Extra tile"},
    )
    client.patch(
        f"/api/previews/{session_id}/line-items/custom-1",
        json={"field": "cost_amount", "value": "300"},
    )
    body = client.patch(
        f"/api/previews/{session_id}/line-items/custom-1",
        json={"field": "customer_price", "value": "450"},
    ).json()

    assert body["totals"]["total_customer_price"] == 450.0
    assert body["totals"]["profit"] == 150.0
    assert [line["description"] for line in body["schedule"]] == [
        "Initial Fee",
        "Extra tile",
        "Balance of schedule will be provided with contract",
    ]


def test_line_items_rejected_on_contracts(client, backend) -> None:
    session_id = open_preview(client)["session_id"]
    response = client.post(f"/api/previews/{session_id}/line-items")
    assert response.status_code == 400


def test_generate_saves_then_returns_pdf(client, backend, tmp_path) -> None:
    session_id = open_preview(client, "proposal")["session_id"]

    response = client.post(f"/api/previews/{session_id}/generate", headers=AUTH)

    assert response.status_code == 200
    assert response.headers["content-type"] == "application/pdf"
    assert response.content.startswith(b"%PDF")
    assert len(backend["puts"]) == 1
    assert len(list(tmp_path.glob("proposal-p-1-1042-*.pdf"))) == 1


def test_failed_save_blocks_rendering(client, backend, tmp_path) -> None:
    session_id = open_preview(client)["session_id"]
    backend["fail_save"] = True

    response = client.post(f"/api/previews/{session_id}/generate", headers=AUTH)

    assert response.status_code == 502
    assert response.json()["detail"] == "database unavailable"
    assert list(tmp_path.iterdir()) == []
    assert client.get(f"/api/previews/{session_id}").json()["saved_at"] is None


def test_close_preview(client, backend) -> None:
    session_id = open_preview(client)["session_id"]

    assert client.delete(f"/api/previews/{session_id}").json() == {"status": "ok"}
    assert client.get(f"/api/previews/{session_id}").status_code == 404
    assert client.delete(f"/api/previews/{session_id}").status_code == 404


def teardown_function() -> None:
    asyncio.run(session_manager.clear_all())
