from __future__ import annotations

from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from contract_preview.services.config import get_settings
from contract_preview.services.logging_config import get_logger

logger = get_logger("backend_client")

TEMPORARY_STATUSES = {408, 409, 425, 429}


class BackendError(RuntimeError):
    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(f"Backend request failed ({status_code}): {detail}")
        self.status_code = status_code
        self.detail = detail


class TemporaryBackendError(BackendError):
    pass


class NotAuthenticatedError(RuntimeError):
    def __init__(self) -> None:
        super().__init__("Not authenticated")


def _project_url(project_id: str, resource: str) -> str:
    settings = get_settings()
    return f"{settings.backend_api_url.rstrip('/')}/projects/{project_id}/{resource}"


def _headers(token: Optional[str]) -> dict[str, str]:
    if not token:
        raise NotAuthenticatedError()
    return {
        "Authorization": f"Bearer {token}",
        "Content-Type": "application/json",
    }


def _detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:300]
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return response.text[:300]


@retry(
    retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError, TemporaryBackendError)),
    wait=wait_exponential(multiplier=1, min=1, max=8),
    stop=stop_after_attempt(3),
    reraise=True,
)
async def _request(
    method: str,
    url: str,
    token: Optional[str],
    payload: Optional[dict[str, Any]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Any:
    headers = _headers(token)
    settings = get_settings()
    timeout = httpx.Timeout(settings.backend_timeout_seconds)
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        response = await client.request(method, url, headers=headers, json=payload)

    if response.status_code >= 500 or response.status_code in TEMPORARY_STATUSES:
        logger.warning("%s %s returned %d, will retry", method, url, response.status_code)
        raise TemporaryBackendError(response.status_code, _detail(response))

    if response.status_code >= 400:
        raise BackendError(response.status_code, _detail(response))

    if not response.content:
        return None
    return response.json()


async def fetch_expenses(
    project_id: str, token: Optional[str], *, transport: Optional[httpx.AsyncBaseTransport] = None
) -> dict[str, Any]:
    data = await _request("GET", _project_url(project_id, "expenses"), token, transport=transport)
    return data if isinstance(data, dict) else {}


async def fetch_milestones(
    project_id: str, token: Optional[str], *, transport: Optional[httpx.AsyncBaseTransport] = None
) -> list[dict[str, Any]]:
    data = await _request("GET", _project_url(project_id, "milestones"), token, transport=transport)
    if isinstance(data, dict):
        data = data.get("milestones")
    if not isinstance(data, list):
        return []
    return [row for row in data if isinstance(row, dict)]


async def save_milestones(
    project_id: str,
    milestones: list[dict[str, Any]],
    token: Optional[str],
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Any:
    """Replace the project's saved milestones with ``milestones``."""
    return await _request(
        "PUT",
        _project_url(project_id, "milestones"),
        token,
        payload={"milestones": milestones},
        transport=transport,
    )
