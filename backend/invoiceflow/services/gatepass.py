"""Gatepass construction and the registry of issued gatepasses."""
from __future__ import annotations

from collections import OrderedDict
from datetime import date, datetime
from threading import Lock
from typing import Dict, List, Optional, Sequence

from invoiceflow.core.config import Settings, get_settings
from invoiceflow.models.dispatch import (
    DeliveryStatus,
    Gatepass,
    GatepassInvoice,
    GatepassItem,
    GatepassItemTotals,
    GatepassSummary,
)
from invoiceflow.models.invoice import InvoiceRecord
from invoiceflow.models.scan import LoadedBarcode
from invoiceflow.services.sequences import SequenceCounter

NOT_AVAILABLE = "N/A"


def _quantity(value: Optional[str]) -> int:
    try:
        return int(float(str(value or "0").replace(",", "")))
    except (ValueError, OverflowError):
        return 0


def delivery_status(delivery_date: Optional[date], dispatched_at: datetime) -> DeliveryStatus:
    if delivery_date is None:
        return DeliveryStatus.UNKNOWN
    if dispatched_at.date() <= delivery_date:
        return DeliveryStatus.ON_TIME
    return DeliveryStatus.LATE


def _invoice_totals(invoice: InvoiceRecord, loaded: Sequence[LoadedBarcode], dispatched_at: datetime) -> GatepassInvoice:
    own = [item for item in loaded if item.invoice_id == invoice.id]
    grouped: "OrderedDict[tuple, GatepassItemTotals]" = OrderedDict()
    for item in own:
        key = (item.customer_item or item.part_code or NOT_AVAILABLE, item.item_number or item.part_code or NOT_AVAILABLE)
        totals = grouped.get(key)
        if totals is None:
            totals = GatepassItemTotals(customer_item=key[0], item_number=key[1])
            grouped[key] = totals
        totals.bins_loaded += 1
        totals.qty_loaded += _quantity(item.quantity)

    return GatepassInvoice(
        id=invoice.id,
        customer=invoice.customer,
        delivery_date=invoice.delivery_date,
        delivery_time=invoice.delivery_time,
        unloading_loc=invoice.unloading_loc,
        status=delivery_status(invoice.delivery_date, dispatched_at),
        bins_loaded=len(own),
        qty_loaded=sum(_quantity(item.quantity) for item in own),
        items=list(grouped.values()),
    )


def build_gatepass(
    gatepass_number: str,
    vehicle_number: str,
    authorized_by: str,
    invoices: Sequence[InvoiceRecord],
    loaded: Sequence[LoadedBarcode],
    dispatched_at: datetime,
) -> Gatepass:
    """Assemble the gatepass for a set of dispatched invoices and their loaded items."""
    items = [
        GatepassItem(
            item_number=index,
            invoice_id=entry.invoice_id,
            part_code=entry.part_code or NOT_AVAILABLE,
            bin_number=entry.bin_number or NOT_AVAILABLE,
            quantity=entry.quantity or "0",
            customer_barcode=entry.customer_barcode,
        )
        for index, entry in enumerate(loaded, start=1)
    ]
    part_codes = sorted({item.part_code for item in items if item.part_code != NOT_AVAILABLE})
    bin_numbers = sorted({item.bin_number for item in items if item.bin_number != NOT_AVAILABLE})
    first = invoices[0] if invoices else None

    return Gatepass(
        gatepass_number=gatepass_number,
        vehicle_number=vehicle_number,
        date_time=dispatched_at,
        authorized_by=authorized_by,
        customer=first.customer if first else "",
        customer_code=first.bill_to if first else None,
        invoice_ids=[invoice.id for invoice in invoices],
        invoices=[_invoice_totals(invoice, loaded, dispatched_at) for invoice in invoices],
        items=items,
        part_codes=part_codes,
        bin_numbers=bin_numbers,
        summary=GatepassSummary(
            total_items=len(items),
            invoice_count=len(invoices),
            total_quantity=sum(_quantity(item.quantity) for item in items),
            unique_part_codes=len(part_codes),
            unique_bin_numbers=len(bin_numbers),
        ),
    )


class GatepassRegistry:
    """Issued gatepasses, keyed by number. Numbers restart each calendar day."""

    def __init__(self, sequences: Optional[SequenceCounter] = None, settings: Optional[Settings] = None) -> None:
        self._sequences = sequences or SequenceCounter()
        self.settings = settings or get_settings()
        self._lock = Lock()
        self._gatepasses: Dict[str, Gatepass] = {}

    def next_number(self, issued_at: datetime) -> str:
        day = issued_at.strftime("%Y%m%d")
        sequence = self._sequences.next_sequence(f"gatepass:{day}")
        return f"{self.settings.gatepass_prefix}-{day}-{sequence:04d}"

    def record(self, gatepass: Gatepass) -> Gatepass:
        with self._lock:
            self._gatepasses[gatepass.gatepass_number] = gatepass
        return gatepass

    def get(self, gatepass_number: str) -> Optional[Gatepass]:
        with self._lock:
            return self._gatepasses.get(gatepass_number)

    def list_gatepasses(self, limit: int = 100) -> List[Gatepass]:
        """Latest first."""
        with self._lock:
            gatepasses = list(self._gatepasses.values())
        gatepasses.sort(key=lambda gatepass: (gatepass.date_time, gatepass.gatepass_number), reverse=True)
        return gatepasses[:limit]

    def __len__(self) -> int:
        with self._lock:
            return len(self._gatepasses)
