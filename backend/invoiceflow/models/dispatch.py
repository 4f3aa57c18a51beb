"""Models for loading sessions and gatepasses."""
from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from invoiceflow.models.scan import LoadedBarcode, ScanResult


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LoadingState(str, Enum):
    """Phase of one vehicle's loading session."""

    SELECTING_INVOICES = "selecting_invoices"
    SCANNING_ITEMS = "scanning_items"
    READY_TO_GENERATE = "ready_to_generate"
    GATEPASS_GENERATED = "gatepass_generated"
    CLOSED = "closed"


class DeliveryStatus(str, Enum):
    ON_TIME = "on-time"
    LATE = "late"
    UNKNOWN = "unknown"


class GatepassItem(BaseModel):
    item_number: int
    invoice_id: Optional[str] = None
    part_code: str = "N/A"
    bin_number: str = "N/A"
    quantity: str = "0"
    customer_barcode: str


class GatepassItemTotals(BaseModel):
    customer_item: str
    item_number: str
    bins_loaded: int = 0
    qty_loaded: int = 0


class GatepassInvoice(BaseModel):
    """Per-invoice delivery details and loaded totals printed on the gatepass."""

    id: str
    customer: Optional[str] = None
    delivery_date: Optional[date] = None
    delivery_time: Optional[str] = None
    unloading_loc: Optional[str] = None
    status: DeliveryStatus = DeliveryStatus.UNKNOWN
    bins_loaded: int = 0
    qty_loaded: int = 0
    items: List[GatepassItemTotals] = Field(default_factory=list)


class GatepassSummary(BaseModel):
    total_items: int
    invoice_count: int
    total_quantity: int
    unique_part_codes: int
    unique_bin_numbers: int


class Gatepass(BaseModel):
    """Exit authorisation for a fully loaded vehicle. Built once, never mutated."""

    model_config = {"frozen": True}

    gatepass_number: str
    vehicle_number: str
    date_time: datetime
    authorized_by: str
    customer: str = ""
    customer_code: Optional[str] = None
    invoice_ids: List[str]
    invoices: List[GatepassInvoice] = Field(default_factory=list)
    items: List[GatepassItem] = Field(default_factory=list)
    part_codes: List[str] = Field(default_factory=list)
    bin_numbers: List[str] = Field(default_factory=list)
    summary: GatepassSummary


class LoadingSessionSnapshot(BaseModel):
    """Read-only view of a loading session."""

    session_id: str
    operator: str
    state: LoadingState
    customer: Optional[str] = None
    customer_code: Optional[str] = None
    selected_invoice_ids: List[str] = Field(default_factory=list)
    loaded_barcodes: List[LoadedBarcode] = Field(default_factory=list)
    loaded_count: int = 0
    expected_count: int = 0
    gatepass_number: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)


class SelectInvoiceRequest(BaseModel):
    invoice_id: str


class DispatchScanRequest(BaseModel):
    customer_scan: ScanResult
    matched_scan: Optional[ScanResult] = None


class GenerateGatepassRequest(BaseModel):
    vehicle_number: str


class GatepassListResponse(BaseModel):
    gatepasses: List[Gatepass]


class AnalyticsSnapshot(BaseModel):
    total_invoices: int
    counts_by_state: Dict[str, int]
    blocked_invoices: int
    pending_alerts: int
    gatepasses_issued: int
    total_scanned_bins: int
    total_expected_bins: int
