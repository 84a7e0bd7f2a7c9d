"""Open, edit, save and render document previews.

The save-then-render order matters: the milestone PUT has to succeed before
a document is produced, and a failed save leaves the session as it was.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from contract_preview.services import backend_client, pricing_engine
from contract_preview.services.config import get_settings
from contract_preview.services.document_renderer import render_document
from contract_preview.services.logging_config import get_logger
from contract_preview.services.session_manager import PreviewSession, SessionManager, session_manager

logger = get_logger("preview_workflow")


class PreviewNotFoundError(LookupError):
    pass


class PreviewStateError(ValueError):
    pass


def utc_now() -> str:
    return datetime.utcnow().replace(microsecond=0).isoformat() + "Z"


def fee_defaults(context: dict[str, Any], expenses: dict[str, Any]) -> tuple[float, float]:
    settings = get_settings()
    if not settings.use_company_fee_defaults:
        return settings.default_initial_fee, settings.default_final_fee
    return pricing_engine.company_fee_defaults(
        context.get("company"),
        expenses,
        settings.default_initial_fee,
        settings.default_final_fee,
    )


async def open_preview(
    project_id: str,
    document_type: Optional[str],
    context: Optional[dict[str, Any]],
    token: Optional[str],
    manager: SessionManager = session_manager,
) -> PreviewSession:
    doc_type = pricing_engine.normalize_document_type(document_type)
    expenses, saved = await asyncio.gather(
        backend_client.fetch_expenses(project_id, token),
        backend_client.fetch_milestones(project_id, token),
    )

    context = dict(context or {})
    context["project"] = {"id": project_id, **(context.get("project") or {})}
    context["expenses"] = expenses
    context.setdefault("totals", expenses.get("totals") or {})

    initial_fee, final_fee = fee_defaults(context, expenses)
    milestones, line_items = pricing_engine.build_milestones(
        expenses, saved, doc_type, initial_fee, final_fee
    )
    state = await manager.create(project_id, doc_type, context, milestones, line_items)
    logger.info(
        "Opened %s preview %s for project %s (%d milestones, %d line items)",
        doc_type,
        state.session_id,
        project_id,
        len(milestones),
        len(line_items),
    )
    return state


async def get_preview(session_id: str, manager: SessionManager = session_manager) -> PreviewSession:
    state = await manager.get(session_id)
    if state is None:
        raise PreviewNotFoundError("Unknown preview session")
    return state


async def set_milestone_price(
    session_id: str, milestone_id: str, raw_value: Any, manager: SessionManager = session_manager
) -> PreviewSession:
    state = await get_preview(session_id, manager)
    if not any(m.id == milestone_id for m in state.milestones):
        raise PreviewNotFoundError("Unknown milestone")
    milestones = pricing_engine.set_customer_price(state.milestones, milestone_id, raw_value)
    return await _apply(manager, session_id, milestones=milestones)


async def _apply(manager: SessionManager, session_id: str, **changes: Any) -> PreviewSession:
    state = await manager.update(session_id, **changes)
    if state is None:
        raise PreviewNotFoundError("Preview session was closed")
    return state


def _require_change_order(state: PreviewSession) -> None:
    if state.document_type != "change_order":
        raise PreviewStateError("Line items are only available on change orders")


async def add_line_item(session_id: str, manager: SessionManager = session_manager) -> PreviewSession:
    state = await get_preview(session_id, manager)
    _require_change_order(state)
    number = state.next_line_item_number
    line_items = pricing_engine.add_line_item(
        state.line_items, pricing_engine.line_item_id(number)
    )
    return await _apply(manager, session_id, line_items=line_items, next_line_item_number=number + 1)


async def update_line_item(
    session_id: str,
    item_id: str,
    field: str,
    raw_value: Any,
    manager: SessionManager = session_manager,
) -> PreviewSession:
    state = await get_preview(session_id, manager)
    _require_change_order(state)
    if not any(item.id == item_id for item in state.line_items):
        raise PreviewNotFoundError("Unknown line item")
    line_items = pricing_engine.update_line_item(state.line_items, item_id, field, raw_value)
    return await _apply(manager, session_id, line_items=line_items)


async def remove_line_item(
    session_id: str, item_id: str, manager: SessionManager = session_manager
) -> PreviewSession:
    state = await get_preview(session_id, manager)
    _require_change_order(state)
    line_items = pricing_engine.remove_line_item(state.line_items, item_id)
    return await _apply(manager, session_id, line_items=line_items)


async def save_preview(
    session_id: str, token: Optional[str], manager: SessionManager = session_manager
) -> PreviewSession:
    state = await get_preview(session_id, manager)
    return await _save_snapshot(state, token, manager)


async def _save_snapshot(
    state: PreviewSession, token: Optional[str], manager: SessionManager
) -> PreviewSession:
    rows = pricing_engine.to_save_payload(state.milestones, state.line_items, state.document_type)
    try:
        await backend_client.save_milestones(state.project_id, rows, token)
    except (backend_client.BackendError, backend_client.NotAuthenticatedError) as exc:
        logger.warning("Saving milestones for project %s failed: %s", state.project_id, exc)
        raise
    logger.info("Saved %d milestones for project %s", len(rows), state.project_id)
    return await _apply(manager, state.session_id, saved_at=utc_now())


async def generate_document(
    session_id: str,
    token: Optional[str],
    target: Optional[Path] = None,
    manager: SessionManager = session_manager,
) -> Path:
    # Render the snapshot that was saved, not whatever the session holds afterwards
    state = await get_preview(session_id, manager)
    await _save_snapshot(state, token, manager)
    context = pricing_engine.build_render_context(
        state.context, state.milestones, state.line_items, state.document_type
    )
    return await asyncio.to_thread(render_document, context, target)


async def close_preview(session_id: str, manager: SessionManager = session_manager) -> None:
    if not await manager.close(session_id):
        raise PreviewNotFoundError("Unknown preview session")


def session_snapshot(state: PreviewSession) -> dict[str, Any]:
    totals = pricing_engine.compute_totals(state.milestones, state.line_items, state.document_type)
    render = pricing_engine.to_render_payload(state.milestones, state.line_items, state.document_type)
    return {
        "session_id": state.session_id,
        "project_id": state.project_id,
        "document_type": state.document_type,
        "created_at": state.created_at,
        "saved_at": state.saved_at,
        "milestones": [
            {
                "id": m.id,
                "name": m.name,
                "cost_amount": m.cost_amount,
                "customer_price": m.customer_price,
                "milestone_type": m.milestone_type,
                "subcontractor_fee_id": m.subcontractor_fee_id,
                "sort_order": m.sort_order,
            }
            for m in state.milestones
        ],
        "line_items": [
            {
                "id": item.id,
                "name": item.name,
                "description": item.description,
                "cost_amount": item.cost_amount,
                "customer_price": item.customer_price,
            }
            for item in state.line_items
        ],
        "totals": {
            "total_cost": totals.total_cost,
            "total_customer_price": totals.total_customer_price,
            "profit": totals.profit,
            "margin_percent": totals.margin_percent,
        },
        "schedule": [
            {"description": line.description, "amount": line.amount} for line in render.schedule
        ],
        "grand_total": render.grand_total,
    }
