"""Turns extracted spreadsheet rows into invoices and schedule items."""
from __future__ import annotations

import math
import re
from collections import OrderedDict
from datetime import date, datetime, timedelta
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

from invoiceflow.core.config import Settings, get_settings
from invoiceflow.core.errors import ValidationError
from invoiceflow.core.logging import logger
from invoiceflow.models.invoice import (
    InvoiceLineItem,
    InvoiceRecord,
    LineItemStatus,
    RowError,
    ScheduleItem,
)

INVOICE_COLUMN_ALIASES: Dict[str, Tuple[str, ...]] = {
    "invoice": ("invoice", "invoice_number", "Invoice Number", "Invoice", "Invoice No", "InvoiceNo"),
    "customer": ("customer", "Cust Name", "Customer", "Customer Name", "CustomerName"),
    "part": ("part", "Item Number", "Part", "Part Number", "part_number"),
    "qty": ("qty", "Qty", "Quantity", "quantity", "Quantity Invoiced"),
    "bill_to": ("bill_to", "Bill To", "BillTo", "bill to", "Bill-To"),
    "invoice_date": ("invoice_date", "Invoice Date", "InvoiceDate", "Date"),
    "customer_item": ("customer_item", "Customer Item", "CustomerItem", "Cust Item", "Customer Part"),
    "part_description": ("part_description", "Part Description", "Description", "Item Description"),
    "delivery_time": ("delivery_time", "Delivery Time"),
    "plant": ("plant", "Plant"),
    "unloading_loc": ("unloading_loc", "Unloading Loc", "Unloading Location"),
}

SCHEDULE_COLUMN_ALIASES: Dict[str, Tuple[str, ...]] = {
    "customer_code": ("customer_code", "Customer Code", "CustomerCode", "Cust Code"),
    "part_number": ("part_number", "Part Number", "PartNumber", "Customer Part", "Part"),
    "snp": ("snp", "SNP", "Qty"),
    "bin": ("bin", "Bin", "Bin Qty", "Bin Capacity"),
    "sheet_name": ("sheet_name", "Sheet Name", "Sheet"),
    "delivery_date": ("delivery_date", "Delivery Date", "Supply Date"),
    "delivery_time": ("delivery_time", "Delivery Time", "Supply Time"),
    "plant": ("plant", "Plant"),
    "unloading_loc": ("unloading_loc", "Unloading Loc", "Unloading Location"),
}

REQUIRED_INVOICE_FIELDS = ("invoice", "customer", "part", "qty")

_DATE_FORMATS = ("%Y-%m-%d", "%d-%m-%Y", "%d/%m/%Y", "%d.%m.%Y", "%d-%b-%Y", "%d-%b-%y", "%d %b %Y")
_EXCEL_EPOCH = date(1899, 12, 30)
_NUMBER_CLEANUP = re.compile(r"[,\s]")


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _text(value: Any) -> Optional[str]:
    if _blank(value):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def normalize_row(row: Mapping[str, Any], aliases: Mapping[str, Sequence[str]]) -> Dict[str, Any]:
    """Map spreadsheet headers onto canonical field names. First non-blank alias wins."""
    normalized: Dict[str, Any] = {}
    lowered = {str(key).strip().lower(): value for key, value in row.items()}
    for field, names in aliases.items():
        for name in names:
            value = row.get(name)
            if _blank(value):
                value = lowered.get(name.lower())
            if not _blank(value):
                normalized[field] = value
                break
    return normalized


def parse_quantity(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"invalid quantity {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"invalid quantity {value!r}")
        return int(round(value))
    text = _NUMBER_CLEANUP.sub("", str(value or ""))
    if not text:
        raise ValueError("quantity is empty")
    return int(round(float(text)))


def parse_date(value: Any) -> Optional[date]:
    """Accept dates, ISO/day-first strings and Excel serial day numbers."""
    if _blank(value):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if 0 < value < 100000:
            return _EXCEL_EPOCH + timedelta(days=int(value))
        raise ValueError(f"invalid date {value!r}")

    text = str(value).strip()
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"invalid date {value!r}")


def expected_bin_count(total_quantity: int, bin_capacity: int) -> int:
    if bin_capacity <= 0:
        raise ValueError("bin capacity must be positive")
    return math.ceil(max(0, total_quantity) / bin_capacity)


class InvoiceIngestor:
    """Validates extracted rows and groups them into invoice records."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    @property
    def capacities(self) -> FrozenSet[int]:
        return self.settings.plant_bin_capacities()

    def validate_rows(
        self,
        rows: Sequence[Mapping[str, Any]],
        expected_customer_code: Optional[str] = None,
    ) -> List[RowError]:
        errors: List[RowError] = []
        seen: Dict[str, Tuple[Optional[str], Optional[str], int]] = {}
        expected_code = _text(expected_customer_code)

        for index, raw in enumerate(rows):
            row_number = index + 2
            row = normalize_row(raw, INVOICE_COLUMN_ALIASES)
            invoice_number = _text(row.get("invoice"))

            missing = [field for field in REQUIRED_INVOICE_FIELDS if _blank(row.get(field))]
            if missing:
                errors.append(
                    RowError(
                        row=row_number,
                        invoice_number=invoice_number,
                        message=f"Missing required field(s): {', '.join(missing)}",
                    )
                )
                continue

            try:
                parse_quantity(row["qty"])
            except ValueError:
                errors.append(
                    RowError(row=row_number, invoice_number=invoice_number, message=f"Invalid quantity {row['qty']!r}")
                )
            if not _blank(row.get("invoice_date")):
                try:
                    parse_date(row["invoice_date"])
                except ValueError:
                    errors.append(
                        RowError(
                            row=row_number,
                            invoice_number=invoice_number,
                            message=f"Invalid invoice date {row['invoice_date']!r}",
                        )
                    )

            bill_to = _text(row.get("bill_to"))
            customer = _text(row.get("customer"))
            if expected_code and bill_to and bill_to != expected_code:
                errors.append(
                    RowError(
                        row=row_number,
                        invoice_number=invoice_number,
                        message=f"Bill To {bill_to} does not match expected customer code {expected_code}",
                    )
                )

            previous = seen.get(invoice_number)
            if previous is None:
                seen[invoice_number] = (bill_to, customer, row_number)
                continue
            first_bill_to, first_customer, first_row = previous
            if first_bill_to != bill_to:
                errors.append(
                    RowError(
                        row=row_number,
                        invoice_number=invoice_number,
                        message=f"Bill To {bill_to!r} differs from {first_bill_to!r} on row {first_row}",
                    )
                )
            if first_customer != customer:
                errors.append(
                    RowError(
                        row=row_number,
                        invoice_number=invoice_number,
                        message=f"Customer {customer!r} differs from {first_customer!r} on row {first_row}",
                    )
                )
        return errors

    def resolve_bin_capacity(
        self,
        bill_to: Optional[str],
        parts: Iterable[str],
        schedule: Sequence[ScheduleItem],
    ) -> int:
        """Schedule bin size for this customer/part when it is a plant capacity."""
        capacities = self.capacities
        part_set = {part for part in parts if part}
        for item in schedule:
            if item.bin not in capacities:
                continue
            code_matches = not item.customer_code or (bill_to and item.customer_code.strip() == bill_to)
            part_matches = not item.part_number or item.part_number.strip() in part_set
            if code_matches and part_matches and (item.customer_code or item.part_number):
                return item.bin
        return self.settings.default_bin_capacity

    def build_invoices(
        self,
        rows: Sequence[Mapping[str, Any]],
        schedule: Sequence[ScheduleItem] = (),
        expected_customer_code: Optional[str] = None,
    ) -> List[InvoiceRecord]:
        """Validate then group rows per invoice number, first occurrence order."""
        if not rows:
            raise ValidationError("No invoice rows supplied")

        errors = self.validate_rows(rows, expected_customer_code)
        if errors:
            logger.warning("Invoice rows rejected", error_count=len(errors), row_count=len(rows))
            raise ValidationError(
                f"{len(errors)} row(s) failed validation",
                errors=[error.model_dump() for error in errors],
            )

        grouped: "OrderedDict[str, List[Dict[str, Any]]]" = OrderedDict()
        for raw in rows:
            row = normalize_row(raw, INVOICE_COLUMN_ALIASES)
            grouped.setdefault(_text(row["invoice"]), []).append(row)

        invoices: List[InvoiceRecord] = []
        for invoice_number, invoice_rows in grouped.items():
            first = invoice_rows[0]
            items = [
                InvoiceLineItem(
                    invoice=invoice_number,
                    customer=_text(row["customer"]),
                    part=_text(row["part"]),
                    qty=parse_quantity(row["qty"]),
                    customer_item=_text(row.get("customer_item")),
                    part_description=_text(row.get("part_description")),
                )
                for row in invoice_rows
            ]
            bill_to = _text(first.get("bill_to"))
            total_quantity = sum(abs(item.qty) for item in items)
            bin_capacity = self.resolve_bin_capacity(
                bill_to,
                [item.customer_item or item.part for item in items] + [item.part for item in items],
                schedule,
            )
            invoices.append(
                InvoiceRecord(
                    id=invoice_number,
                    customer=_text(first["customer"]),
                    bill_to=bill_to,
                    invoice_date=parse_date(first.get("invoice_date")),
                    total_quantity=total_quantity,
                    bin_capacity=bin_capacity,
                    expected_bins=expected_bin_count(total_quantity, bin_capacity),
                    delivery_time=_text(first.get("delivery_time")),
                    plant=_text(first.get("plant")),
                    unloading_loc=_text(first.get("unloading_loc")),
                    items=items,
                )
            )

        logger.info("Invoice rows grouped", row_count=len(rows), invoice_count=len(invoices))
        return invoices

    def build_schedule(self, rows: Sequence[Mapping[str, Any]]) -> List[ScheduleItem]:
        schedule: List[ScheduleItem] = []
        errors: List[Dict[str, Any]] = []
        for index, raw in enumerate(rows):
            row = normalize_row(raw, SCHEDULE_COLUMN_ALIASES)
            try:
                schedule.append(
                    ScheduleItem(
                        customer_code=_text(row.get("customer_code")),
                        part_number=_text(row.get("part_number")),
                        snp=max(0, parse_quantity(row["snp"])) if not _blank(row.get("snp")) else 0,
                        bin=max(0, parse_quantity(row["bin"])) if not _blank(row.get("bin")) else 0,
                        sheet_name=_text(row.get("sheet_name")) or "",
                        delivery_date=parse_date(row.get("delivery_date")),
                        delivery_time=_text(row.get("delivery_time")),
                        plant=_text(row.get("plant")),
                        unloading_loc=_text(row.get("unloading_loc")),
                    )
                )
            except ValueError as exc:
                errors.append({"row": index + 2, "message": str(exc)})

        if errors:
            raise ValidationError(f"{len(errors)} schedule row(s) failed validation", errors=errors)
        return schedule

    @staticmethod
    def classify_line_items(
        invoices: Iterable[InvoiceRecord],
        schedule: Sequence[ScheduleItem],
    ) -> Dict[str, List[Dict[str, Any]]]:
        """Check each line item's customer item against the schedule part numbers."""
        parts_by_code: Dict[Optional[str], set] = {}
        for item in schedule:
            if item.part_number:
                parts_by_code.setdefault(item.customer_code, set()).add(item.part_number.strip())
        all_parts = set().union(*parts_by_code.values()) if parts_by_code else set()

        results: Dict[str, List[Dict[str, Any]]] = {}
        for invoice in invoices:
            scoped = parts_by_code.get(invoice.bill_to, set()) | parts_by_code.get(None, set())
            candidates = scoped or all_parts
            statuses: List[Dict[str, Any]] = []
            for line in invoice.items:
                if not line.customer_item:
                    statuses.append({"status": LineItemStatus.ERROR, "error_message": "Missing Customer Item"})
                elif line.customer_item in candidates:
                    statuses.append({"status": LineItemStatus.VALID_MATCHED, "error_message": None})
                else:
                    statuses.append({"status": LineItemStatus.VALID_UNMATCHED, "error_message": None})
            results[invoice.id] = statuses
        return results
