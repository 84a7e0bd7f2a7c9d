#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from contract_preview.services import pricing_engine
from contract_preview.services.config import get_settings
from contract_preview.services.document_renderer import RenderError, render_document
from contract_preview.services.logging_config import configure_logging
from contract_preview.services.preview_workflow import fee_defaults


def build_report(payload: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    """Price a preview file offline; returns (report, render context)."""
    doc_type = pricing_engine.normalize_document_type(payload.get("documentType"))
    expenses = payload.get("expenses") or {}
    context = dict(payload.get("context") or {})
    context["expenses"] = expenses

    initial_fee, final_fee = fee_defaults(context, expenses)

    milestones, line_items = pricing_engine.build_milestones(
        expenses, payload.get("savedMilestones"), doc_type, initial_fee, final_fee
    )
    totals = pricing_engine.compute_totals(milestones, line_items, doc_type)
    render = pricing_engine.to_render_payload(milestones, line_items, doc_type)

    report = {
        "document_type": doc_type,
        "milestones": [
            {
                "name": m.name,
                "milestone_type": m.milestone_type,
                "cost": m.cost_amount,
                "customer_price": m.customer_price,
            }
            for m in milestones
        ],
        "line_items": [
            {"name": i.name, "cost": i.cost_amount, "customer_price": i.customer_price}
            for i in line_items
        ],
        "totals": {
            "total_cost": totals.total_cost,
            "total_customer_price": totals.total_customer_price,
            "profit": totals.profit,
            "margin_percent": round(totals.margin_percent, 2),
        },
        "schedule": [{"description": s.description, "amount": s.amount} for s in render.schedule],
        "grand_total": render.grand_total,
        "save_payload": pricing_engine.to_save_payload(milestones, line_items, doc_type),
    }
    render_context = pricing_engine.build_render_context(context, milestones, line_items, doc_type)
    return report, render_context


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Price a contract/proposal/change order preview from a JSON file")
    parser.add_argument("input", type=Path, help="JSON with expenses, savedMilestones, documentType, context")
    parser.add_argument("--document-type", choices=pricing_engine.DOCUMENT_TYPES, default=None)
    parser.add_argument("--pdf", type=Path, default=None, help="Also render the document to this path")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    configure_logging(get_settings().log_level)

    try:
        payload = json.loads(args.input.read_text())
    except (OSError, json.JSONDecodeError) as exc:
        print(f"Could not read {args.input}: {exc}")
        raise SystemExit(1)
    if args.document_type:
        payload["documentType"] = args.document_type

    report, render_context = build_report(payload)
    print(json.dumps(report, indent=2))

    if args.pdf:
        try:
            path = render_document(render_context, args.pdf)
        except RenderError as exc:
            print(f"Render failed: {exc}")
            raise SystemExit(1)
        print(f"Document: {path}")


if __name__ == "__main__":
    main()
