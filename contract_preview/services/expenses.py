"""Adapters from raw backend rows to the shapes the pricing engine works on.

Expense rows arrive with inconsistent field names depending on their
category (``expected_value`` / ``flat_fee`` for subcontractor fees,
``expected_price`` / ``actual_price`` for equipment and materials,
``expected_value`` / ``amount`` for additional expenses). Everything that
knows which field means "cost" lives here, so the engine only ever sees
``ExpenseLineItem.cost``.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, Iterable, Literal, Mapping, Optional

ExpenseCategory = Literal["subcontractor", "equipment", "materials", "additional"]

_LEADING_NUMBER = re.compile(r"^\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")

# Raw fields tried in order for each category's cost.
_COST_FIELDS: dict[str, tuple[str, ...]] = {
    "subcontractor": ("expected_value", "flat_fee"),
    "equipment": ("expected_price", "actual_price"),
    "materials": ("expected_price", "actual_price"),
    "additional": ("expected_value", "amount"),
}

# camelCase keys from the expenses endpoint, with snake_case aliases.
_CATEGORY_KEYS: dict[str, tuple[str, ...]] = {
    "subcontractor": ("subcontractorFees", "subcontractor_fees"),
    "equipment": ("equipment",),
    "materials": ("materials",),
    "additional": ("additionalExpenses", "additional_expenses"),
}


def parse_amount(value: Any, default: Optional[float] = 0.0) -> Optional[float]:
    """Parse a loosely typed number, returning ``default`` when it can't.

    Strings are read the way a browser's ``parseFloat`` reads them: a leading
    numeric prefix is enough ("12.5 sqft" -> 12.5).
    """
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, str):
        match = _LEADING_NUMBER.match(value)
        if not match:
            return default
        value = match.group(0)
    try:
        number = float(value)
    except (OverflowError, TypeError, ValueError):
        return default
    if math.isnan(number):
        return default
    return number


def _first_present(row: Mapping[str, Any], fields: Iterable[str]) -> Any:
    for name in fields:
        value = row.get(name)
        if value is not None:
            return value
    return None


@dataclass(frozen=True)
class ExpenseLineItem:
    category: ExpenseCategory
    source_id: Optional[str]
    name: str
    cost: float


@dataclass(frozen=True)
class ExpenseSet:
    subcontractor_fees: tuple[ExpenseLineItem, ...] = ()
    equipment: tuple[ExpenseLineItem, ...] = ()
    materials: tuple[ExpenseLineItem, ...] = ()
    additional_expenses: tuple[ExpenseLineItem, ...] = ()

    @property
    def itemized_cost(self) -> float:
        rows = self.subcontractor_fees + self.equipment + self.materials + self.additional_expenses
        return sum(row.cost for row in rows)


@dataclass(frozen=True)
class SavedMilestone:
    milestone_type: str
    subcontractor_fee_id: Optional[str] = None
    name: str = ""
    description: str = ""
    cost: float = 0.0
    # None when the stored value is missing or not a number
    customer_price: Optional[float] = None


def _source_id(row: Mapping[str, Any]) -> Optional[str]:
    value = row.get("id")
    return None if value is None else str(value)


def normalize_expense(category: ExpenseCategory, row: Mapping[str, Any]) -> ExpenseLineItem:
    cost = parse_amount(_first_present(row, _COST_FIELDS[category]), 0.0)
    if category == "subcontractor":
        name = row.get("job_description") or row.get("name") or "Work"
    else:
        name = row.get("name") or (row.get("inventory") or {}).get("name") or ""
    return ExpenseLineItem(category=category, source_id=_source_id(row), name=str(name), cost=cost)


def raw_rows(raw: Optional[Mapping[str, Any]], category: ExpenseCategory) -> list[Mapping[str, Any]]:
    """The unnormalized rows of one category, under either key spelling."""
    raw = raw or {}
    rows: Any = None
    for key in _CATEGORY_KEYS[category]:
        if raw.get(key) is not None:
            rows = raw[key]
            break
    if not isinstance(rows, (list, tuple)):
        return []
    return [row for row in rows if isinstance(row, Mapping)]


def normalize_expenses(raw: Optional[Mapping[str, Any]]) -> ExpenseSet:
    """Build an ExpenseSet from the expenses endpoint payload."""
    if isinstance(raw, ExpenseSet):
        return raw

    def rows_for(category: ExpenseCategory) -> tuple[ExpenseLineItem, ...]:
        return tuple(normalize_expense(category, row) for row in raw_rows(raw, category))

    return ExpenseSet(
        subcontractor_fees=rows_for("subcontractor"),
        equipment=rows_for("equipment"),
        materials=rows_for("materials"),
        additional_expenses=rows_for("additional"),
    )


def parse_saved_milestone(row: Mapping[str, Any] | SavedMilestone) -> SavedMilestone:
    if isinstance(row, SavedMilestone):
        return row
    fee_id = row.get("subcontractor_fee_id")
    return SavedMilestone(
        milestone_type=str(row.get("milestone_type") or ""),
        subcontractor_fee_id=None if fee_id is None else str(fee_id),
        name=row.get("name") or "",
        description=row.get("description") or "",
        cost=parse_amount(row.get("cost"), 0.0),
        customer_price=parse_amount(row.get("customer_price"), None),
    )


def parse_saved_milestones(rows: Optional[Iterable[Any]]) -> tuple[SavedMilestone, ...]:
    if not rows:
        return ()
    return tuple(
        parse_saved_milestone(row)
        for row in rows
        if isinstance(row, (Mapping, SavedMilestone))
    )
