"""Milestone pricing for contract, proposal and change order documents.

Milestones are rebuilt from scratch from the project's expenses every time a
preview opens. Costs always come from the current expense rows; customer
prices are carried forward from previously saved milestones, matched on
``(milestone_type, subcontractor_fee_id)``.

Every function here is pure: collections go in as tuples and come back as new
tuples of frozen dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Iterable, Literal, Mapping, Optional, Sequence
from uuid import uuid4

from contract_preview.services.expenses import (
    ExpenseSet,
    SavedMilestone,
    normalize_expenses,
    parse_amount,
    parse_saved_milestones,
)
from contract_preview.services.logging_config import get_logger

logger = get_logger("pricing_engine")

DocumentType = Literal["contract", "proposal", "change_order"]
DOCUMENT_TYPES: tuple[str, ...] = ("contract", "proposal", "change_order")

DEFAULT_INITIAL_FEE = 1000.0
DEFAULT_FINAL_FEE = 1000.0
BALANCE_MESSAGE = "Balance of schedule will be provided with contract"
DEFAULT_LINE_ITEM_NAME = "Change Order Item"

_TEXT_FIELDS = {"name", "description"}
_NUMBER_FIELDS = {
    "cost_amount": "cost_amount",
    "costAmount": "cost_amount",
    "customer_price": "customer_price",
    "customerPrice": "customer_price",
}


@dataclass(frozen=True)
class Milestone:
    id: str
    name: str
    cost_amount: float
    customer_price: float
    milestone_type: str
    sort_order: int
    subcontractor_fee_id: Optional[str] = None


@dataclass(frozen=True)
class ChangeOrderLineItem:
    id: str
    name: str = ""
    description: str = ""
    cost_amount: float = 0.0
    customer_price: float = 0.0


@dataclass(frozen=True)
class PricingTotals:
    total_cost: float
    total_customer_price: float
    profit: float

    @property
    def margin_percent(self) -> float:
        return margin_percent(self)


@dataclass(frozen=True)
class ScheduleLine:
    description: str
    amount: float


@dataclass(frozen=True)
class RenderPayload:
    schedule: tuple[ScheduleLine, ...]
    grand_total: float


def normalize_document_type(value: Optional[str]) -> str:
    if value in DOCUMENT_TYPES:
        return value
    return "contract"


def saved_price(
    saved_milestones: Sequence[SavedMilestone],
    milestone_type: str,
    subcontractor_fee_id: Optional[str] = None,
) -> Optional[float]:
    """Customer price of the first saved milestone of this type, or None.

    Subcontractor milestones also have to match the fee id when one is given.
    A saved price of 0 is a real price.
    """
    for saved in saved_milestones:
        if saved.milestone_type != milestone_type:
            continue
        if milestone_type == "subcontractor" and subcontractor_fee_id:
            if saved.subcontractor_fee_id != subcontractor_fee_id:
                continue
        return saved.customer_price
    return None


def _or_default(value: Optional[float], default: float) -> float:
    return default if value is None else value


def line_item_id(number: int) -> str:
    return f"custom-{number}"


def build_milestones(
    expenses: ExpenseSet | Mapping[str, Any] | None,
    saved_milestones: Iterable[Any] | None = None,
    document_type: Optional[str] = "contract",
    default_initial_fee: float = DEFAULT_INITIAL_FEE,
    default_final_fee: float = DEFAULT_FINAL_FEE,
) -> tuple[tuple[Milestone, ...], tuple[ChangeOrderLineItem, ...]]:
    """Derive the ordered milestone list and change order line items."""
    expense_set = normalize_expenses(expenses)
    saved = parse_saved_milestones(saved_milestones)
    doc_type = normalize_document_type(document_type)

    if doc_type == "change_order":
        initial = Milestone(
            id="new-initial-fee",
            name="Initial Fee",
            cost_amount=0.0,
            customer_price=_or_default(saved_price(saved, "initial_fee"), 0.0),
            milestone_type="initial_fee",
            sort_order=0,
        )
        line_items = tuple(
            ChangeOrderLineItem(
                id=line_item_id(index),
                name=row.name,
                description=row.description,
                cost_amount=row.cost,
                customer_price=_or_default(row.customer_price, 0.0),
            )
            for index, row in enumerate(
                (m for m in saved if m.milestone_type == "change_order_item"), start=1
            )
        )
        logger.debug("Built change order preview with %d line items", len(line_items))
        return (initial,), line_items

    milestones: list[Milestone] = []

    def emit(**fields: Any) -> None:
        milestones.append(Milestone(sort_order=len(milestones), **fields))

    emit(
        id="new-initial-fee",
        name="Initial Sign Fee" if doc_type == "proposal" else "Initial Contract Fee",
        cost_amount=0.0,
        customer_price=_or_default(saved_price(saved, "initial_fee"), default_initial_fee),
        milestone_type="initial_fee",
    )

    for fee in expense_set.subcontractor_fees:
        emit(
            id=f"new-subcontractor-{fee.source_id}",
            name=fee.name,
            cost_amount=fee.cost,
            customer_price=_or_default(saved_price(saved, "subcontractor", fee.source_id), fee.cost),
            milestone_type="subcontractor",
            subcontractor_fee_id=fee.source_id,
        )

    # Equipment and material prices are stored as extended totals.
    if expense_set.equipment:
        cost = sum(row.cost for row in expense_set.equipment)
        emit(
            id="new-equipment",
            name="Equipment Order",
            cost_amount=cost,
            customer_price=_or_default(saved_price(saved, "equipment"), cost),
            milestone_type="equipment",
        )

    if expense_set.materials:
        cost = sum(row.cost for row in expense_set.materials)
        emit(
            id="new-materials",
            name="Material Order",
            cost_amount=cost,
            customer_price=_or_default(saved_price(saved, "materials"), cost),
            milestone_type="materials",
        )

    additional_cost = sum(row.cost for row in expense_set.additional_expenses)
    if additional_cost > 0:
        emit(
            id="new-additional",
            name="Additional Fees",
            cost_amount=additional_cost,
            customer_price=_or_default(saved_price(saved, "additional"), additional_cost),
            milestone_type="additional",
        )

    emit(
        id="new-final-inspection",
        name="Final Inspection",
        cost_amount=0.0,
        customer_price=_or_default(saved_price(saved, "final_inspection"), default_final_fee),
        milestone_type="final_inspection",
    )

    logger.debug("Built %s preview with %d milestones", doc_type, len(milestones))
    return tuple(milestones), ()


def set_customer_price(
    milestones: Sequence[Milestone], milestone_id: str, raw_value: Any
) -> tuple[Milestone, ...]:
    price = parse_amount(raw_value, 0.0)
    return tuple(
        replace(m, customer_price=price) if m.id == milestone_id else m
        for m in milestones
    )


def add_line_item(
    items: Sequence[ChangeOrderLineItem], item_id: Optional[str] = None
) -> tuple[ChangeOrderLineItem, ...]:
    """Append a blank line item.

    Callers that keep a per-session counter pass ``item_id``; otherwise a
    random id is used so ids are never reused after a removal.
    """
    new_id = item_id or f"custom-{uuid4().hex[:12]}"
    return tuple(items) + (ChangeOrderLineItem(id=new_id),)


def remove_line_item(
    items: Sequence[ChangeOrderLineItem], item_id: str
) -> tuple[ChangeOrderLineItem, ...]:
    return tuple(item for item in items if item.id != item_id)


def update_line_item(
    items: Sequence[ChangeOrderLineItem], item_id: str, field: str, raw_value: Any
) -> tuple[ChangeOrderLineItem, ...]:
    if field in _TEXT_FIELDS:
        changes = {field: "" if raw_value is None else str(raw_value)}
    elif field in _NUMBER_FIELDS:
        changes = {_NUMBER_FIELDS[field]: parse_amount(raw_value, 0.0)}
    else:
        logger.debug("Ignoring update to unknown line item field %r", field)
        return tuple(items)
    return tuple(
        replace(item, **changes) if item.id == item_id else item
        for item in items
    )


def _initial_fee(milestones: Sequence[Milestone]) -> Optional[Milestone]:
    for milestone in milestones:
        if milestone.milestone_type == "initial_fee":
            return milestone
    return None


def compute_totals(
    milestones: Sequence[Milestone],
    line_items: Sequence[ChangeOrderLineItem] = (),
    document_type: Optional[str] = "contract",
) -> PricingTotals:
    if normalize_document_type(document_type) == "change_order":
        initial = _initial_fee(milestones)
        total_customer_price = (initial.customer_price if initial else 0.0) + sum(
            item.customer_price for item in line_items
        )
        total_cost = (initial.cost_amount if initial else 0.0) + sum(
            item.cost_amount for item in line_items
        )
    else:
        total_cost = sum(m.cost_amount for m in milestones)
        total_customer_price = sum(m.customer_price for m in milestones)

    return PricingTotals(
        total_cost=total_cost,
        total_customer_price=total_customer_price,
        profit=total_customer_price - total_cost,
    )


def margin_percent(totals: PricingTotals) -> float:
    if totals.total_cost > 0:
        return totals.profit / totals.total_cost * 100
    return 0.0


def to_save_payload(
    milestones: Sequence[Milestone],
    line_items: Sequence[ChangeOrderLineItem] = (),
    document_type: Optional[str] = "contract",
) -> list[dict[str, Any]]:
    """Rows for the milestones PUT, which replaces everything saved before."""
    if normalize_document_type(document_type) == "change_order":
        rows: list[dict[str, Any]] = []
        initial = _initial_fee(milestones)
        if initial is not None:
            rows.append(
                {
                    "name": initial.name,
                    "milestone_type": "initial_fee",
                    "cost": initial.cost_amount,
                    "customer_price": initial.customer_price,
                    "subcontractor_fee_id": None,
                }
            )
        for item in line_items:
            rows.append(
                {
                    "name": item.name or DEFAULT_LINE_ITEM_NAME,
                    "description": item.description or "",
                    "milestone_type": "change_order_item",
                    "cost": item.cost_amount,
                    "customer_price": item.customer_price,
                    "subcontractor_fee_id": None,
                }
            )
        return rows

    return [
        {
            "name": m.name,
            "milestone_type": m.milestone_type,
            "cost": m.cost_amount,
            "customer_price": m.customer_price,
            "subcontractor_fee_id": m.subcontractor_fee_id,
        }
        for m in sorted(milestones, key=lambda m: m.sort_order)
    ]


def to_render_payload(
    milestones: Sequence[Milestone],
    line_items: Sequence[ChangeOrderLineItem] = (),
    document_type: Optional[str] = "contract",
) -> RenderPayload:
    doc_type = normalize_document_type(document_type)
    initial = _initial_fee(milestones)
    initial_lines = (
        (ScheduleLine(description=initial.name, amount=initial.customer_price),) if initial else ()
    )
    balance = (ScheduleLine(description=BALANCE_MESSAGE, amount=0.0),)

    if doc_type == "proposal":
        # Only the signing fee is shown, but the total covers every milestone.
        totals = compute_totals(milestones, line_items, "contract")
        return RenderPayload(schedule=initial_lines + balance, grand_total=totals.total_customer_price)

    if doc_type == "change_order":
        item_lines = tuple(
            ScheduleLine(description=item.name, amount=item.customer_price)
            for item in line_items
            if item.name and item.customer_price
        )
        totals = compute_totals(milestones, line_items, "change_order")
        return RenderPayload(
            schedule=initial_lines + item_lines + balance,
            grand_total=totals.total_customer_price,
        )

    ordered = sorted(milestones, key=lambda m: m.sort_order)
    return RenderPayload(
        schedule=tuple(ScheduleLine(description=m.name, amount=m.customer_price) for m in ordered),
        grand_total=compute_totals(milestones, line_items, "contract").total_customer_price,
    )


def build_render_context(
    context: Mapping[str, Any],
    milestones: Sequence[Milestone],
    line_items: Sequence[ChangeOrderLineItem] = (),
    document_type: Optional[str] = "contract",
) -> dict[str, Any]:
    """Merge the customer-facing schedule into the caller's document context."""
    doc_type = normalize_document_type(document_type)
    payload = to_render_payload(milestones, line_items, doc_type)
    merged = dict(context)
    merged["document_type"] = doc_type
    merged["customer_payment_schedule"] = [
        {"description": line.description, "amount": line.amount} for line in payload.schedule
    ]
    merged["customer_grand_total"] = payload.grand_total
    if doc_type == "change_order":
        merged["change_order_items"] = [
            {
                "id": item.id,
                "name": item.name,
                "description": item.description,
                "cost_amount": item.cost_amount,
                "customer_price": item.customer_price,
            }
            for item in line_items
        ]
    return merged


def _fee_from_percent(
    company: Mapping[str, Any], prefix: str, base: float, fallback: float
) -> float:
    percent = parse_amount(company.get(f"default_{prefix}_fee_percent"), None)
    if percent is None:
        return fallback
    fee = base * percent / 100
    minimum = parse_amount(company.get(f"default_{prefix}_fee_min"), None)
    maximum = parse_amount(company.get(f"default_{prefix}_fee_max"), None)
    if minimum is not None and fee < minimum:
        fee = minimum
    if maximum is not None and fee > maximum:
        fee = maximum
    return fee


def company_fee_defaults(
    company: Optional[Mapping[str, Any]],
    expenses: ExpenseSet | Mapping[str, Any] | None,
    fallback_initial: float = DEFAULT_INITIAL_FEE,
    fallback_final: float = DEFAULT_FINAL_FEE,
) -> tuple[float, float]:
    """Initial/final fee defaults from the company's percent and min/max columns."""
    if not company:
        return fallback_initial, fallback_final
    base = normalize_expenses(expenses).itemized_cost
    return (
        _fee_from_percent(company, "initial", base, fallback_initial),
        _fee_from_percent(company, "final", base, fallback_final),
    )
