from __future__ import annotations

import asyncio
import json

import httpx
import pytest
from tenacity import wait_none

from contract_preview.services import backend_client
from contract_preview.services.config import get_settings


@pytest.fixture(autouse=True)
def backend_url(monkeypatch):
    monkeypatch.setenv("BACKEND_API_URL", "http://backend.test/api/")
    monkeypatch.setattr(backend_client._request.retry, "wait", wait_none())
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_fetch_expenses_sends_bearer_token() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={"subcontractorFees": [], "equipment": [{"id": "eq"}]})

    data = asyncio.run(
        backend_client.fetch_expenses("p-1", "tok", transport=httpx.MockTransport(handler))
    )

    assert seen == {"url": "http://backend.test/api/projects/p-1/expenses", "auth": "Bearer tok"}
    assert data["equipment"] == [{"id": "eq"}]


@pytest.mark.parametrize(
    "body",
    [
        [{"milestone_type": "initial_fee"}],
        {"milestones": [{"milestone_type": "initial_fee"}, "junk"]},
    ],
)
def test_fetch_milestones_accepts_list_or_wrapper(body) -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json=body))
    rows = asyncio.run(backend_client.fetch_milestones("p-1", "tok", transport=transport))
    assert rows == [{"milestone_type": "initial_fee"}]


def test_save_milestones_puts_full_payload() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"saved": 1})

    rows = [{"name": "Initial Fee", "milestone_type": "initial_fee", "cost": 0, "customer_price": 10}]
    result = asyncio.run(
        backend_client.save_milestones("p-9", rows, "tok", transport=httpx.MockTransport(handler))
    )

    assert result == {"saved": 1}
    assert seen["method"] == "PUT"
    assert seen["url"] == "http://backend.test/api/projects/p-9/milestones"
    assert seen["body"] == {"milestones": rows}


def test_missing_token_fails_before_any_request() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    with pytest.raises(backend_client.NotAuthenticatedError, match="Not authenticated"):
        asyncio.run(backend_client.fetch_expenses("p-1", None, transport=httpx.MockTransport(handler)))
    assert calls == []


def test_client_error_is_not_retried() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(404, json={"error": "Project not found"})

    with pytest.raises(backend_client.BackendError) as excinfo:
        asyncio.run(backend_client.fetch_expenses("p-1", "tok", transport=httpx.MockTransport(handler)))

    assert excinfo.value.status_code == 404
    assert excinfo.value.detail == "Project not found"
    assert len(calls) == 1


def test_temporary_error_is_retried_until_success() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(503, json={"error": "warming up"})
        return httpx.Response(200, json={"equipment": []})

    data = asyncio.run(backend_client.fetch_expenses("p-1", "tok", transport=httpx.MockTransport(handler)))

    assert data == {"equipment": []}
    assert len(calls) == 2


@pytest.mark.parametrize("status", [503, 429])
def test_temporary_error_gives_up_after_three_attempts(status) -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(status, json={"error": "unavailable"})

    with pytest.raises(backend_client.BackendError) as excinfo:
        asyncio.run(backend_client.fetch_expenses("p-1", "tok", transport=httpx.MockTransport(handler)))

    assert excinfo.value.status_code == status
    assert excinfo.value.detail == "unavailable"
    assert len(calls) == 3


def test_transport_errors_are_retried() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) < 3:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json=[])

    rows = asyncio.run(backend_client.fetch_milestones("p-1", "tok", transport=httpx.MockTransport(handler)))

    assert rows == []
    assert len(calls) == 3
