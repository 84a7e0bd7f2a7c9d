from __future__ import annotations

import asyncio

import pytest

from contract_preview.services import backend_client, pricing_engine, preview_workflow
from contract_preview.services.session_manager import SessionManager

EXPENSES = {"subcontractorFees": [{"id": "fee-1", "job_description": "Excavation", "expected_value": 2000}]}


async def open_session(manager: SessionManager):
    milestones, line_items = pricing_engine.build_milestones(EXPENSES, [], "contract")
    context = {"project": {"id": "p-1"}, "expenses": EXPENSES}
    return await manager.create("p-1", "contract", context, milestones, line_items)


def test_generate_renders_the_snapshot_that_was_saved(monkeypatch) -> None:
    manager = SessionManager()
    rendered = {}

    async def save_while_user_edits(project_id, rows, token):
        state = await manager.get(session_id)
        edited = pricing_engine.set_customer_price(state.milestones, "new-initial-fee", 99999)
        await manager.update(session_id, milestones=edited)
        rendered["saved_rows"] = rows
        return {"milestones": rows}

    def fake_render(context, target=None):
        rendered["schedule"] = context["customer_payment_schedule"]
        return target

    monkeypatch.setattr(backend_client, "save_milestones", save_while_user_edits)
    monkeypatch.setattr(preview_workflow, "render_document", fake_render)

    async def scenario():
        nonlocal session_id
        state = await open_session(manager)
        session_id = state.session_id
        await preview_workflow.generate_document(session_id, "tok", manager=manager)

    session_id = None
    asyncio.run(scenario())

    assert rendered["saved_rows"][0]["customer_price"] == 1000.0
    assert rendered["schedule"][0]["amount"] == 1000.0


def test_generate_reports_session_closed_during_save(monkeypatch) -> None:
    manager = SessionManager()
    renders = []

    async def save_then_close(project_id, rows, token):
        await manager.clear_all()
        return {"milestones": rows}

    monkeypatch.setattr(backend_client, "save_milestones", save_then_close)
    monkeypatch.setattr(preview_workflow, "render_document", lambda context, target=None: renders.append(context))

    async def scenario():
        state = await open_session(manager)
        await preview_workflow.generate_document(state.session_id, "tok", manager=manager)

    with pytest.raises(preview_workflow.PreviewNotFoundError):
        asyncio.run(scenario())
    assert renders == []
