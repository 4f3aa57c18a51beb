"""Doc-audit scan reconciliation: two labels per bin must carry the same payload."""
from __future__ import annotations

from typing import Any, Dict, Union

from pydantic import ValidationError as PydanticValidationError

from invoiceflow.core.errors import PreconditionError, ValidationError
from invoiceflow.core.logging import logger
from invoiceflow.models.scan import (
    ReconciliationResult,
    ReconciliationStatus,
    ScanResult,
    ScanStep,
    ValidatedBarcodePair,
)
from invoiceflow.services.audit_tracker import AuditProgressTracker
from invoiceflow.services.barcodes import canonicalize_barcode, strip_unsafe_control_chars
from invoiceflow.services.invoice_store import InvoiceStore
from invoiceflow.services.mismatch_manager import MismatchManager

ScanInput = Union[ScanResult, Dict[str, Any]]


def coerce_scan(scan: ScanInput, label: str = "scan") -> ScanResult:
    """Validate a scan payload and canonicalise its text fields."""
    try:
        parsed = scan if isinstance(scan, ScanResult) else ScanResult.model_validate(scan)
    except PydanticValidationError as exc:
        raise ValidationError(
            f"Malformed {label}",
            errors=[{"loc": list(error["loc"]), "message": error["msg"]} for error in exc.errors()],
        ) from exc

    raw_value = canonicalize_barcode(parsed.raw_value)
    if not raw_value.strip():
        raise ValidationError(f"{label} has an empty raw value")
    return ScanResult(
        part_code=strip_unsafe_control_chars(parsed.part_code).strip(),
        quantity=strip_unsafe_control_chars(parsed.quantity).strip(),
        bin_number=strip_unsafe_control_chars(parsed.bin_number).strip(),
        raw_value=raw_value,
    )


def _bin_quantity(value: str) -> int:
    try:
        return int(float(value.replace(",", ""))) or 1
    except (ValueError, OverflowError):
        return 1


class ScanReconciler:
    """Compares customer and Autoliv labels and routes the outcome."""

    def __init__(
        self,
        store: InvoiceStore,
        tracker: AuditProgressTracker,
        alerts: MismatchManager,
    ) -> None:
        self._store = store
        self._tracker = tracker
        self._alerts = alerts

    @staticmethod
    def match(scan_a: ScanResult, scan_b: ScanResult) -> bool:
        return scan_a.raw_value.strip() == scan_b.raw_value.strip()

    def reconcile(
        self,
        invoice_id: str,
        customer_scan: ScanInput,
        autoliv_scan: ScanInput,
        scanned_by: str,
    ) -> ReconciliationResult:
        customer = coerce_scan(customer_scan, "customer scan")
        autoliv = coerce_scan(autoliv_scan, "autoliv scan")

        record = self._store.get(invoice_id)
        if record is None:
            logger.info("Scan ignored for unknown invoice", invoice_id=invoice_id)
            return ReconciliationResult(status=ReconciliationStatus.UNKNOWN_INVOICE, invoice_id=invoice_id)
        if record.dispatched_by:
            raise PreconditionError(f"Invoice {invoice_id} is already dispatched", invoice_id=invoice_id)
        if record.blocked:
            raise PreconditionError(
                f"Invoice {invoice_id} is blocked until its mismatch is reviewed",
                invoice_id=invoice_id,
            )
        if not self.match(customer, autoliv):
            alert = self._alerts.raise_alert(
                scanned_by,
                record.customer,
                invoice_id,
                ScanStep.DOC_AUDIT,
                customer,
                autoliv,
            )
            current = self._store.get(invoice_id) or record
            return ReconciliationResult(
                status=ReconciliationStatus.MISMATCHED,
                invoice_id=invoice_id,
                scanned_bins=current.scanned_bins,
                expected_bins=current.expected_bins,
                audit_complete=current.audit_complete,
                blocked=current.blocked,
                alert=alert,
            )

        if record.audit_complete:
            return ReconciliationResult(
                status=ReconciliationStatus.ALREADY_COMPLETE,
                invoice_id=invoice_id,
                scanned_bins=record.scanned_bins,
                expected_bins=record.expected_bins,
                audit_complete=True,
                blocked=record.blocked,
            )

        pair = ValidatedBarcodePair(
            customer_barcode=customer.normalized_raw,
            autoliv_barcode=autoliv.normalized_raw,
            bin_number=customer.bin_number or autoliv.bin_number,
            part_code=customer.part_code or autoliv.part_code,
            quantity=_bin_quantity(customer.quantity or autoliv.quantity),
            scanned_by=scanned_by,
        )
        return self._tracker.record_match(invoice_id, pair, scanned_by)
