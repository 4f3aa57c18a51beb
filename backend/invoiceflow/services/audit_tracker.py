"""Per-invoice audit progress driven by validated scan matches."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Iterable, Optional

from invoiceflow.core.config import Settings, get_settings
from invoiceflow.core.errors import ConflictError, PreconditionError
from invoiceflow.core.logging import logger
from invoiceflow.models.invoice import InvoiceRecord, InvoiceState
from invoiceflow.models.scan import (
    LoadedBarcode,
    ReconciliationResult,
    ReconciliationStatus,
    ScanResult,
    ValidatedBarcodePair,
)
from invoiceflow.services.invoice_store import InvoiceStore

DISPATCH_MATCH_FIELDS = ("part_code", "quantity", "bin_number")


class AuditProgressTracker:
    """Counts validated bins and flips audit completion exactly once."""

    def __init__(self, store: InvoiceStore, settings: Optional[Settings] = None) -> None:
        self._store = store
        self.settings = settings or get_settings()

    def record_match(
        self,
        invoice_id: str,
        pair: ValidatedBarcodePair,
        scanned_by: str,
    ) -> ReconciliationResult:
        outcome: Dict[str, object] = {"status": ReconciliationStatus.MATCHED, "completed": False}

        def _apply(record: InvoiceRecord) -> None:
            if record.dispatched_by:
                raise PreconditionError(f"Invoice {record.id} is already dispatched", invoice_id=record.id)
            if record.blocked:
                raise PreconditionError(
                    f"Invoice {record.id} is blocked until its mismatch is reviewed",
                    invoice_id=record.id,
                )
            if record.audit_complete:
                outcome["status"] = ReconciliationStatus.ALREADY_COMPLETE
                return
            if self.settings.reject_duplicate_audit_bins and any(
                existing.customer_barcode == pair.customer_barcode for existing in record.validated_barcodes
            ):
                raise ConflictError(
                    f"Bin {pair.customer_barcode!r} was already scanned for invoice {record.id}",
                    invoice_id=record.id,
                )

            now = datetime.now(timezone.utc)
            record.validated_barcodes.append(pair)
            record.scanned_bins = min(record.scanned_bins + 1, record.expected_bins)
            record.audited_by = scanned_by
            record.audited_at = now

            if record.scanned_bins >= record.expected_bins:
                self._store.transition(record, InvoiceState.AUDIT_COMPLETE)
                record.audit_complete = True
                record.audit_date = now
                outcome["completed"] = True
            elif record.state == InvoiceState.UPLOADED:
                self._store.transition(record, InvoiceState.AUDITING)

        updated = self._store.mutate(invoice_id, _apply)
        if updated is None:
            return ReconciliationResult(status=ReconciliationStatus.UNKNOWN_INVOICE, invoice_id=invoice_id)

        if outcome["completed"]:
            logger.info("Invoice audit completed", invoice_id=invoice_id, scanned_bins=updated.scanned_bins)
            self._store.record_audit_completed(updated, scanned_by)

        status = outcome["status"]
        return ReconciliationResult(
            status=status,
            invoice_id=invoice_id,
            scanned_bins=updated.scanned_bins,
            expected_bins=updated.expected_bins,
            audit_complete=updated.audit_complete,
            blocked=updated.blocked,
            validated=pair if status == ReconciliationStatus.MATCHED else None,
        )

    @staticmethod
    def dispatch_scans_agree(customer_scan: ScanResult, matched_scan: ScanResult) -> bool:
        """Loading-stage rule: both labels describe the same part, quantity and bin."""
        return all(
            str(getattr(customer_scan, field) or "").strip() == str(getattr(matched_scan, field) or "").strip()
            for field in DISPATCH_MATCH_FIELDS
        )

    @staticmethod
    def is_already_loaded(scan: ScanResult, loaded: Iterable[LoadedBarcode]) -> bool:
        raw = scan.normalized_raw
        return any(item.customer_barcode.strip() == raw for item in loaded)
