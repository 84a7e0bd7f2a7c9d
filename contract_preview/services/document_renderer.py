from __future__ import annotations

import math
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Optional
from uuid import uuid4

from reportlab.lib import colors
from reportlab.lib.pagesizes import LETTER
from reportlab.lib.units import inch
from reportlab.lib.utils import simpleSplit
from reportlab.pdfgen import canvas

from contract_preview.services.config import get_settings
from contract_preview.services.expenses import normalize_expenses, parse_amount, raw_rows
from contract_preview.services.logging_config import get_logger
from contract_preview.services.pricing_engine import BALANCE_MESSAGE, normalize_document_type

logger = get_logger("document_renderer")

TITLES = {
    "contract": "POOL CONSTRUCTION CONTRACT",
    "proposal": "POOL CONSTRUCTION PROPOSAL",
    "change_order": "CHANGE ORDER",
}

DOCUMENT_NOUNS = {"contract": "contract", "proposal": "proposal", "change_order": "change order"}

PRIMARY = colors.HexColor("#1e40af")
MUTED = colors.HexColor("#6b7280")
RULE = colors.HexColor("#e5e7eb")
SHADE = colors.HexColor("#f3f4f6")

MARGIN = 0.55 * inch
HEADER_HEIGHT = 1.25 * inch
FOOTER_HEIGHT = 0.6 * inch


class RenderError(RuntimeError):
    pass


def format_currency(amount: Any) -> str:
    value = parse_amount(amount, None)
    if not value or math.isinf(value):
        return "$0.00"
    sign = "-" if value < 0 else ""
    return f"{sign}${abs(value):,.2f}"


def format_date(value: Any) -> str:
    if not value:
        return ""
    try:
        parsed = datetime.strptime(str(value)[:10], "%Y-%m-%d")
    except ValueError:
        return str(value)
    return f"{parsed.strftime('%B')} {parsed.day}, {parsed.year}"


def _join_address(record: Mapping[str, Any]) -> list[str]:
    city_line = ", ".join(
        str(part) for part in (record.get("city"), record.get("state"), record.get("zip_code")) if part
    )
    return [str(part) for part in (record.get("address_line1"), record.get("address_line2"), city_line) if part]


def default_payment_schedule(context: Mapping[str, Any]) -> list[dict[str, Any]]:
    """Schedule used when the caller didn't supply customer prices."""
    doc_type = normalize_document_type(context.get("document_type"))
    if doc_type == "proposal":
        return [
            {"description": "Initial Sign Fee", "amount": 1000.0},
            {"description": BALANCE_MESSAGE, "amount": 0.0},
        ]
    if doc_type == "change_order":
        return [
            {"description": "Initial Fee", "amount": 0.0},
            {"description": BALANCE_MESSAGE, "amount": 0.0},
        ]

    expenses = normalize_expenses(context.get("expenses"))
    schedule: list[dict[str, Any]] = [{"description": "Initial Contract Fee", "amount": 0.0}]
    for fee in expenses.subcontractor_fees:
        if fee.cost > 0:
            schedule.append({"description": fee.name, "amount": fee.cost})
    if expenses.equipment:
        schedule.append({"description": "Equipment Order", "amount": sum(r.cost for r in expenses.equipment)})
    if expenses.materials:
        schedule.append({"description": "Material Order", "amount": sum(r.cost for r in expenses.materials)})
    additional = sum(r.cost for r in expenses.additional_expenses)
    if additional > 0:
        schedule.append({"description": "Additional Fees", "amount": additional})
    schedule.append({"description": "Final Inspection", "amount": 1000.0})
    return schedule


def payment_schedule(context: Mapping[str, Any]) -> list[dict[str, Any]]:
    schedule = context.get("customer_payment_schedule")
    if schedule:
        return list(schedule)
    return default_payment_schedule(context)


def scope_of_work(context: Mapping[str, Any]) -> list[tuple[str, str]]:
    """(item, detail) rows: change order items, or subcontractor jobs."""
    doc_type = normalize_document_type(context.get("document_type"))
    items = context.get("change_order_items") or []
    if doc_type == "change_order" and items:
        return [(item["name"], item.get("description") or "") for item in items if item.get("name")]

    fees = raw_rows(context.get("expenses"), "subcontractor")
    return [
        (
            fee.get("job_description") or "Work",
            (fee.get("subcontractors") or {}).get("name") or "TBD",
        )
        for fee in fees
    ]


def equipment_list(context: Mapping[str, Any]) -> list[tuple[str, str, str]]:
    rows = raw_rows(context.get("expenses"), "equipment")
    result = []
    for row in rows:
        inventory = row.get("inventory") or {}
        result.append(
            (
                str(inventory.get("name") or row.get("name") or "Equipment"),
                str(row.get("description") or inventory.get("description") or ""),
                str(row.get("quantity") or 1),
            )
        )
    return result


class _DocumentWriter:
    def __init__(self, target: Path, context: Mapping[str, Any]) -> None:
        self.context = context
        self.company = context.get("company") or {}
        self.doc_number = context.get("document_number") or context.get("contract_number") or ""
        self.doc_date = context.get("document_date") or context.get("contract_date")
        self.c = canvas.Canvas(str(target), pagesize=LETTER)
        self.width, self.height = LETTER
        self.page = 0
        self.y = 0.0
        self._start_page()

    # -- page furniture -------------------------------------------------

    def _start_page(self) -> None:
        self.page += 1
        c = self.c
        top = self.height - MARGIN
        company = self.company

        c.setFillColor(PRIMARY)
        c.setFont("Helvetica-Bold", 14)
        c.drawString(MARGIN, top - 0.15 * inch, company.get("company_name") or "Pool Construction Company")

        c.setFillColor(MUTED)
        c.setFont("Helvetica", 8)
        line_y = top - 0.33 * inch
        address = "  •  ".join(_join_address(company))
        contact = "  •  ".join(str(p) for p in (company.get("phone"), company.get("website")) if p)
        licenses = company.get("license_numbers")
        if isinstance(licenses, (list, tuple)):
            licenses = ", ".join(str(n) for n in licenses)
        for text in (address, contact, f"License: {licenses}" if licenses else ""):
            if text:
                c.drawString(MARGIN, line_y, text)
                line_y -= 0.14 * inch

        c.setFillColor(colors.HexColor("#374151"))
        c.setFont("Helvetica-Bold", 12)
        c.drawRightString(self.width - MARGIN, top - 0.15 * inch, f"#{self.doc_number}")
        c.setFillColor(MUTED)
        c.setFont("Helvetica", 8)
        c.drawRightString(self.width - MARGIN, top - 0.33 * inch, format_date(self.doc_date))

        c.setStrokeColor(RULE)
        c.setLineWidth(1)
        rule_y = self.height - HEADER_HEIGHT + 0.15 * inch
        c.line(MARGIN, rule_y, self.width - MARGIN, rule_y)

        c.setFillColor(colors.HexColor("#9ca3af"))
        c.setFont("Helvetica", 8)
        c.drawString(MARGIN, FOOTER_HEIGHT / 2, str(company.get("company_name") or ""))
        c.drawRightString(
            self.width - MARGIN, FOOTER_HEIGHT / 2, f"Document #{self.doc_number}  •  Page {self.page}"
        )
        c.setFillColor(colors.black)
        self.y = self.height - HEADER_HEIGHT - 0.1 * inch

    def new_page(self) -> None:
        self.c.showPage()
        self._start_page()

    def ensure_space(self, needed: float) -> None:
        if self.y - needed < FOOTER_HEIGHT + 0.2 * inch:
            self.new_page()

    # -- content blocks -------------------------------------------------

    def title(self, text: str) -> None:
        self.c.setFont("Helvetica-Bold", 18)
        self.c.drawCentredString(self.width / 2, self.y - 0.2 * inch, text)
        self.y -= 0.55 * inch

    def section(self, text: str) -> None:
        self.ensure_space(0.6 * inch)
        self.c.setFillColor(PRIMARY)
        self.c.setFont("Helvetica-Bold", 11)
        self.c.drawString(MARGIN, self.y - 0.15 * inch, text)
        self.c.setFillColor(colors.black)
        self.y -= 0.32 * inch

    def paragraph(self, text: str, font: str = "Helvetica", size: float = 9.5) -> None:
        usable = self.width - 2 * MARGIN
        for raw_line in str(text).splitlines() or [""]:
            for line in simpleSplit(raw_line, font, size, usable) or [""]:
                self.ensure_space(size * 1.5)
                self.c.setFont(font, size)
                self.c.drawString(MARGIN, self.y - size, line)
                self.y -= size * 1.4
        self.y -= 0.1 * inch

    def label_rows(self, rows: list[tuple[str, str]]) -> None:
        for label, value in rows:
            self.ensure_space(0.25 * inch)
            self.c.setFont("Helvetica-Bold", 9.5)
            self.c.drawString(MARGIN, self.y - 0.15 * inch, label)
            self.c.setFont("Helvetica", 9.5)
            self.c.drawString(MARGIN + 2.1 * inch, self.y - 0.15 * inch, value)
            self.y -= 0.22 * inch
        self.y -= 0.15 * inch

    def table(
        self,
        headers: list[str],
        rows: list[list[str]],
        columns: list[float],
        right_aligned: frozenset[int] = frozenset(),
    ) -> None:
        """Draw a simple lined table; ``columns`` are fractions of the usable width."""
        usable = self.width - 2 * MARGIN
        x_positions = [MARGIN]
        for fraction in columns[:-1]:
            x_positions.append(x_positions[-1] + fraction * usable)

        def draw_row(cells: list[str], bold: bool) -> None:
            font = "Helvetica-Bold" if bold else "Helvetica"
            wrapped = [
                simpleSplit(str(cell), font, 9, columns[i] * usable - 6) or [""]
                for i, cell in enumerate(cells)
            ]
            height = max(len(lines) for lines in wrapped) * 0.16 * inch + 0.1 * inch
            self.ensure_space(height)
            self.c.setFont(font, 9)
            for i, lines in enumerate(wrapped):
                line_y = self.y - 0.16 * inch
                for line in lines:
                    if i in right_aligned:
                        self.c.drawRightString(x_positions[i] + columns[i] * usable - 4, line_y, line)
                    else:
                        self.c.drawString(x_positions[i] + 2, line_y, line)
                    line_y -= 0.16 * inch
            self.y -= height
            self.c.setStrokeColor(RULE)
            self.c.setLineWidth(0.6)
            self.c.line(MARGIN, self.y, MARGIN + usable, self.y)

        draw_row(headers, bold=True)
        for row in rows:
            draw_row(row, bold=False)
        self.y -= 0.2 * inch

    def total_row(self, label: str, amount: str) -> None:
        usable = self.width - 2 * MARGIN
        self.ensure_space(0.3 * inch)
        self.c.setFillColor(SHADE)
        self.c.rect(MARGIN, self.y - 0.26 * inch, usable, 0.26 * inch, stroke=0, fill=1)
        self.c.setFillColor(colors.black)
        self.c.setFont("Helvetica-Bold", 10)
        self.c.drawString(MARGIN + 2, self.y - 0.18 * inch, label)
        self.c.drawRightString(MARGIN + usable - 4, self.y - 0.18 * inch, amount)
        self.y -= 0.5 * inch

    def signature_block(self, party: str) -> None:
        self.ensure_space(1.3 * inch)
        self.c.setFont("Helvetica-Bold", 10)
        self.c.drawString(MARGIN, self.y - 0.15 * inch, party)
        self.c.setFont("Helvetica", 8)
        base = self.y - 0.6 * inch
        self.c.line(MARGIN, base, MARGIN + 3.8 * inch, base)
        self.c.drawString(MARGIN, base - 0.14 * inch, "Signature")
        self.c.line(MARGIN + 4.3 * inch, base, self.width - MARGIN, base)
        self.c.drawString(MARGIN + 4.3 * inch, base - 0.14 * inch, "Date")
        base -= 0.45 * inch
        self.c.line(MARGIN, base, MARGIN + 3.8 * inch, base)
        self.c.drawString(MARGIN, base - 0.14 * inch, "Printed Name")
        self.y = base - 0.45 * inch

    def save(self) -> None:
        self.c.showPage()
        self.c.save()


def _write_document(target: Path, context: Mapping[str, Any]) -> None:
    doc_type = normalize_document_type(context.get("document_type"))
    project = context.get("project") or {}
    customer = context.get("customer")
    company = context.get("company") or {}
    writer = _DocumentWriter(target, context)

    writer.title(TITLES[doc_type])

    writer.section("PROJECT INFORMATION")
    project_type = f"{project.get('project_type') or ''} - {project.get('pool_or_spa') or ''}".upper()
    writer.label_rows(
        [
            ("Project Address:", str(project.get("address") or "TBD")),
            ("Project Type:", project_type),
            ("Square Feet:", f"{project['sq_feet']} sq ft" if project.get("sq_feet") else "TBD"),
        ]
    )

    writer.section("CLIENT INFORMATION")
    if customer:
        full_name = f"{customer.get('first_name') or ''} {customer.get('last_name') or ''}".strip()
        writer.label_rows(
            [
                ("Client Name:", full_name or "TBD"),
                ("Client Address:", ", ".join(_join_address(customer)) or "TBD"),
                ("Client Email:", str(customer.get("email") or "TBD")),
                ("Client Phone:", str(customer.get("phone") or "TBD")),
            ]
        )
    else:
        writer.paragraph("No customer assigned to this project.", font="Helvetica-Oblique")

    writer.section("SCOPE OF WORK")
    writer.paragraph("The Contractor agrees to perform the following work:")
    scope = scope_of_work(context)
    if not scope:
        writer.paragraph("Scope of work to be determined.", font="Helvetica-Oblique")
    elif doc_type == "change_order":
        writer.table(
            ["Item"],
            [[f"{item}\n{detail}" if detail else item] for item, detail in scope],
            [1.0],
        )
    else:
        writer.table(["Work Description", "Subcontractor"], [list(row) for row in scope], [0.6, 0.4])

    equipment = equipment_list(context)
    if doc_type != "change_order" and equipment:
        writer.section("EQUIPMENT LIST")
        writer.table(["Equipment", "Description", "Qty"], [list(row) for row in equipment], [0.4, 0.45, 0.15])

    schedule = payment_schedule(context)
    grand_total = context.get("customer_grand_total") or sum(
        parse_amount(line.get("amount"), 0.0) for line in schedule
    )
    writer.new_page()
    writer.section("MILESTONE PAYMENT SCHEDULE")
    rows = []
    for line in schedule:
        description = str(line.get("description") or "")
        amount = parse_amount(line.get("amount"), 0.0)
        shown = "-" if amount == 0 and "balance" in description.lower() else format_currency(amount)
        rows.append([description, shown])
    writer.table(["Milestone", "Amount"], rows, [0.7, 0.3], right_aligned=frozenset({1}))
    writer.total_row("GRAND TOTAL", format_currency(grand_total))

    if company.get("terms_of_service"):
        writer.section("TERMS & CONDITIONS")
        writer.paragraph(company["terms_of_service"])

    if project.get("notes"):
        writer.section("NOTES")
        writer.paragraph(project["notes"])

    writer.new_page()
    writer.section("SIGNATURES")
    writer.paragraph(signature_statement(doc_type))
    writer.signature_block("OWNER")
    writer.signature_block("CONTRACTOR")
    writer.save()


def signature_statement(doc_type: str) -> str:
    noun = DOCUMENT_NOUNS[normalize_document_type(doc_type)]
    return f"By signing below, both parties agree to the terms and conditions set forth in this {noun}."


def _safe_part(value: Any) -> str:
    return "".join(ch if ch.isalnum() or ch in "-_" else "_" for ch in str(value))


def document_filename(context: Mapping[str, Any]) -> str:
    """Unique file name, so concurrent renders never share a path."""
    doc_type = normalize_document_type(context.get("document_type"))
    number = context.get("document_number") or context.get("contract_number") or "draft"
    project_id = (context.get("project") or {}).get("id")
    parts = [doc_type]
    if project_id is not None:
        parts.append(_safe_part(project_id))
    parts.extend([_safe_part(number), uuid4().hex[:8]])
    return "-".join(parts) + ".pdf"


def render_document(context: Mapping[str, Any], target: Optional[Path] = None) -> Path:
    """Write the PDF for ``context`` and return its path."""
    if target is None:
        directory = get_settings().resolved_documents_dir
        target = directory / document_filename(context)
    target = Path(target)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        _write_document(target, context)
    except Exception as exc:
        logger.error("Rendering %s failed: %s", target.name, exc)
        raise RenderError(f"Failed to generate PDF: {exc}") from exc

    logger.info("Rendered %s", target)
    return target
