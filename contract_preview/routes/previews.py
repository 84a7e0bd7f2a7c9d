from __future__ import annotations

from typing import Any, Awaitable, Optional, TypeVar

from fastapi import APIRouter, Header, HTTPException
from fastapi.responses import FileResponse
from pydantic import BaseModel, Field

from contract_preview.services import preview_workflow
from contract_preview.services.backend_client import BackendError, NotAuthenticatedError
from contract_preview.services.document_renderer import RenderError
from contract_preview.services.preview_workflow import (
    PreviewNotFoundError,
    PreviewStateError,
    session_snapshot,
)

router = APIRouter(prefix="/api/previews", tags=["previews"])

T = TypeVar("T")


class OpenPreviewRequest(BaseModel):
    project_id: str
    document_type: Optional[str] = "contract"
    context: dict[str, Any] = Field(default_factory=dict)


class PriceUpdateRequest(BaseModel):
    customer_price: Any = None


class LineItemUpdateRequest(BaseModel):
    field: str
    value: Any = None


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


async def run_step(step: Awaitable[T]) -> T:
    try:
        return await step
    except PreviewNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except PreviewStateError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except NotAuthenticatedError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    except BackendError as exc:
        raise HTTPException(status_code=502, detail=exc.detail) from exc
    except RenderError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@router.post("")
async def open_preview(
    body: OpenPreviewRequest, authorization: Optional[str] = Header(default=None)
) -> dict[str, Any]:
    state = await run_step(
        preview_workflow.open_preview(
            body.project_id, body.document_type, body.context, bearer_token(authorization)
        )
    )
    return session_snapshot(state)


@router.get("/{session_id}")
async def get_preview(session_id: str) -> dict[str, Any]:
    state = await run_step(preview_workflow.get_preview(session_id))
    return session_snapshot(state)


@router.put("/{session_id}/milestones/{milestone_id}/price")
async def set_milestone_price(
    session_id: str, milestone_id: str, body: PriceUpdateRequest
) -> dict[str, Any]:
    state = await run_step(
        preview_workflow.set_milestone_price(session_id, milestone_id, body.customer_price)
    )
    return session_snapshot(state)


@router.post("/{session_id}/line-items")
async def add_line_item(session_id: str) -> dict[str, Any]:
    state = await run_step(preview_workflow.add_line_item(session_id))
    return session_snapshot(state)


@router.patch("/{session_id}/line-items/{item_id}")
async def update_line_item(
    session_id: str, item_id: str, body: LineItemUpdateRequest
) -> dict[str, Any]:
    state = await run_step(
        preview_workflow.update_line_item(session_id, item_id, body.field, body.value)
    )
    return session_snapshot(state)


@router.delete("/{session_id}/line-items/{item_id}")
async def remove_line_item(session_id: str, item_id: str) -> dict[str, Any]:
    state = await run_step(preview_workflow.remove_line_item(session_id, item_id))
    return session_snapshot(state)


@router.post("/{session_id}/save")
async def save_preview(
    session_id: str, authorization: Optional[str] = Header(default=None)
) -> dict[str, Any]:
    state = await run_step(preview_workflow.save_preview(session_id, bearer_token(authorization)))
    return session_snapshot(state)


@router.post("/{session_id}/generate")
async def generate_document(
    session_id: str, authorization: Optional[str] = Header(default=None)
) -> FileResponse:
    path = await run_step(
        preview_workflow.generate_document(session_id, bearer_token(authorization))
    )
    return FileResponse(path, media_type="application/pdf", filename=path.name)


@router.delete("/{session_id}")
async def close_preview(session_id: str) -> dict[str, str]:
    await run_step(preview_workflow.close_preview(session_id))
    return {"status": "ok"}
