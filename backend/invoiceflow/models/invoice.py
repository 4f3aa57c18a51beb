"""Domain models for invoices, line items and delivery schedules."""
from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from invoiceflow.models.scan import LoadedBarcode, ValidatedBarcodePair


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InvoiceState(str, Enum):
    """Lifecycle phase of an invoice. Blocking is tracked separately."""

    UPLOADED = "uploaded"
    AUDITING = "auditing"
    AUDIT_COMPLETE = "audit_complete"
    LOADING = "loading"
    DISPATCHED = "dispatched"


class LineItemStatus(str, Enum):
    """Result of checking a line item against the delivery schedule."""

    VALID = "valid"
    VALID_MATCHED = "valid-matched"
    VALID_UNMATCHED = "valid-unmatched"
    ERROR = "error"


class InvoiceLineItem(BaseModel):
    """One raw row of an uploaded invoice, kept for traceability."""

    invoice: str
    customer: str
    part: str
    qty: int
    customer_item: Optional[str] = None
    part_description: Optional[str] = None
    status: LineItemStatus = LineItemStatus.VALID
    error_message: Optional[str] = None


class InvoiceRecord(BaseModel):
    """Canonical invoice entity owned by the invoice store."""

    id: str
    customer: str
    bill_to: Optional[str] = None
    invoice_date: Optional[date] = None
    total_quantity: int = Field(default=0, ge=0)
    bin_capacity: int = Field(default=80, ge=1)
    expected_bins: int = Field(default=0, ge=0)
    scanned_bins: int = Field(default=0, ge=0)
    bins_loaded: int = Field(default=0, ge=0)
    state: InvoiceState = InvoiceState.UPLOADED
    audit_complete: bool = False
    audit_date: Optional[datetime] = None
    blocked: bool = False
    blocked_at: Optional[datetime] = None
    uploaded_by: Optional[str] = None
    uploaded_at: Optional[datetime] = None
    audited_by: Optional[str] = None
    audited_at: Optional[datetime] = None
    dispatched_by: Optional[str] = None
    dispatched_at: Optional[datetime] = None
    vehicle_number: Optional[str] = None
    gatepass_number: Optional[str] = None
    delivery_date: Optional[date] = None
    delivery_time: Optional[str] = None
    plant: Optional[str] = None
    unloading_loc: Optional[str] = None
    validated_barcodes: List[ValidatedBarcodePair] = Field(default_factory=list)
    loaded_barcodes: List[LoadedBarcode] = Field(default_factory=list)
    items: List[InvoiceLineItem] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class ScheduleItem(BaseModel):
    """Per-customer delivery expectation from the uploaded schedule."""

    customer_code: Optional[str] = None
    part_number: Optional[str] = None
    snp: int = Field(default=0, ge=0)
    bin: int = Field(default=0, ge=0)
    sheet_name: str = ""
    delivery_date: Optional[date] = None
    delivery_time: Optional[str] = None
    plant: Optional[str] = None
    unloading_loc: Optional[str] = None


class AuditUpdate(BaseModel):
    """Patch fields accepted by the store's audit update."""

    scanned_bins: Optional[int] = Field(default=None, ge=0)
    audit_complete: Optional[bool] = None
    blocked: Optional[bool] = None
    delivery_date: Optional[date] = None
    delivery_time: Optional[str] = None
    unloading_loc: Optional[str] = None


class AddInvoicesResult(BaseModel):
    """Outcome of inserting a batch of invoices."""

    inserted: int
    inserted_ids: List[str] = Field(default_factory=list)
    skipped_ids: List[str] = Field(default_factory=list)


class RowError(BaseModel):
    """One rejected ingestion row (row numbers count the header as row 1)."""

    row: int
    invoice_number: Optional[str] = None
    message: str


class InvoiceUploadRequest(BaseModel):
    """Rows produced by the external tabular extractor."""

    rows: List[Dict[str, Any]]
    expected_customer_code: Optional[str] = None


class InvoiceUploadResponse(BaseModel):
    inserted: int
    inserted_ids: List[str] = Field(default_factory=list)
    skipped_ids: List[str] = Field(default_factory=list)
    invoice_count: int
    item_count: int


class ScheduleUploadRequest(BaseModel):
    rows: List[Dict[str, Any]]


class ScheduleUploadResponse(BaseModel):
    schedule_items: int
    customer_codes: List[str] = Field(default_factory=list)
    matched_items: int = 0
    unmatched_items: int = 0
    error_items: int = 0


class InvoiceListResponse(BaseModel):
    view: str
    invoices: List[InvoiceRecord]
