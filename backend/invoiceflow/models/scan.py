"""Scan payloads, validated bin records and mismatch alerts."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScanStep(str, Enum):
    """Workflow stage a pair of scans was captured in."""

    DOC_AUDIT = "doc-audit"
    LOADING_DISPATCH = "loading-dispatch"


class AlertStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ScanResult(BaseModel):
    """An already-decoded label scan. Origin (scanner, camera, keyboard) is irrelevant."""

    part_code: str = Field(default="", validation_alias=AliasChoices("part_code", "partCode"))
    quantity: str = Field(default="", validation_alias=AliasChoices("quantity", "qty"))
    bin_number: str = Field(default="", validation_alias=AliasChoices("bin_number", "binNumber"))
    raw_value: str = Field(validation_alias=AliasChoices("raw_value", "rawValue"))

    @field_validator("part_code", "quantity", "bin_number", "raw_value", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> Any:
        if value is None:
            return ""
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @property
    def normalized_raw(self) -> str:
        return self.raw_value.strip()


class ValidatedBarcodePair(BaseModel):
    """A doc-audit match: both labels plus the validated bin record."""

    customer_barcode: str
    autoliv_barcode: str
    bin_number: str = ""
    part_code: str = ""
    quantity: int = 1
    scanned_by: Optional[str] = None
    scanned_at: datetime = Field(default_factory=_utcnow)


class LoadedBarcode(BaseModel):
    """An item accepted onto the vehicle during loading."""

    invoice_id: Optional[str] = None
    customer_barcode: str
    autoliv_barcode: str = ""
    bin_number: str = ""
    part_code: str = ""
    quantity: str = ""
    customer_item: Optional[str] = None
    item_number: Optional[str] = None
    loaded_by: Optional[str] = None
    loaded_at: datetime = Field(default_factory=_utcnow)


class MismatchAlert(BaseModel):
    """An exception raised when two scans fail their stage's equality rule."""

    id: str
    user: Optional[str] = None
    customer: Optional[str] = None
    invoice_id: Optional[str] = None
    step: ScanStep = ScanStep.DOC_AUDIT
    customer_scan: ScanResult
    autoliv_scan: ScanResult
    timestamp: datetime = Field(default_factory=_utcnow)
    status: AlertStatus = AlertStatus.PENDING
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None


class ReconciliationStatus(str, Enum):
    MATCHED = "matched"
    MISMATCHED = "mismatched"
    ALREADY_COMPLETE = "already_complete"
    UNKNOWN_INVOICE = "unknown_invoice"


class ReconciliationResult(BaseModel):
    """What happened to one submitted pair of doc-audit scans."""

    status: ReconciliationStatus
    invoice_id: str
    scanned_bins: int = 0
    expected_bins: int = 0
    audit_complete: bool = False
    blocked: bool = False
    validated: Optional[ValidatedBarcodePair] = None
    alert: Optional[MismatchAlert] = None

    @property
    def matched(self) -> bool:
        return self.status in {ReconciliationStatus.MATCHED, ReconciliationStatus.ALREADY_COMPLETE}


class AuditScanRequest(BaseModel):
    customer_scan: ScanResult
    autoliv_scan: ScanResult


class AlertDecisionRequest(BaseModel):
    status: AlertStatus


class AlertListResponse(BaseModel):
    alerts: List[MismatchAlert]


class ScanHistoryResponse(BaseModel):
    invoice_id: str
    doc_audit: List[ValidatedBarcodePair] = Field(default_factory=list)
    loading_dispatch: List[LoadedBarcode] = Field(default_factory=list)
