"""Orchestration layer wiring store, reconciliation, alerts and dispatch together."""
from __future__ import annotations

from collections import Counter
from datetime import date
from typing import Any, Dict, List, Mapping, Optional, Sequence

from invoiceflow.core.config import Settings, get_settings
from invoiceflow.core.errors import PreconditionError
from invoiceflow.core.logging import logger
from invoiceflow.models.activity import LogEntry, LogType
from invoiceflow.models.dispatch import AnalyticsSnapshot, Gatepass, LoadingSessionSnapshot
from invoiceflow.models.invoice import (
    AuditUpdate,
    InvoiceRecord,
    InvoiceState,
    InvoiceUploadResponse,
    LineItemStatus,
    ScheduleItem,
    ScheduleUploadResponse,
)
from invoiceflow.models.scan import (
    AlertStatus,
    MismatchAlert,
    ReconciliationResult,
    ScanHistoryResponse,
    ScanStep,
)
from invoiceflow.services.activity_log import ActivityLog
from invoiceflow.services.audit_tracker import AuditProgressTracker
from invoiceflow.services.dispatch_loader import DispatchLoader, LoadingSession
from invoiceflow.services.gatepass import GatepassRegistry
from invoiceflow.services.ingestor import InvoiceIngestor
from invoiceflow.services.invoice_store import InvoiceStore
from invoiceflow.services.mismatch_manager import MismatchManager
from invoiceflow.services.reconciler import ScanInput, ScanReconciler
from invoiceflow.services.sequences import SequenceCounter


class InvoiceEngine:
    """Single entry point for the upload, audit, exception and dispatch workflows."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self.sequences = SequenceCounter()
        self.activity_log = ActivityLog(self.sequences)
        self.store = InvoiceStore(self.activity_log)
        self.ingestor = InvoiceIngestor(self.settings)
        self.alerts = MismatchManager(self.store, self.sequences, self.settings)
        self.tracker = AuditProgressTracker(self.store, self.settings)
        self.reconciler = ScanReconciler(self.store, self.tracker, self.alerts)
        self.gatepasses = GatepassRegistry(self.sequences, self.settings)
        self.loader = DispatchLoader(self.store, self.alerts, self.gatepasses, self.sequences, self.settings)

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    def upload_invoices(
        self,
        rows: Sequence[Mapping[str, Any]],
        uploaded_by: str,
        expected_customer_code: Optional[str] = None,
    ) -> InvoiceUploadResponse:
        schedule = self.store.schedule()
        invoices = self.ingestor.build_invoices(rows, schedule, expected_customer_code)
        result = self.store.add_invoices(invoices, uploaded_by)

        if schedule and result.inserted_ids:
            inserted = [invoice for invoice in invoices if invoice.id in set(result.inserted_ids)]
            self.store.apply_line_item_statuses(self.ingestor.classify_line_items(inserted, schedule))
            self._apply_schedule_details(schedule, result.inserted_ids)

        logger.info(
            "Invoices uploaded",
            uploaded_by=uploaded_by,
            inserted=result.inserted,
            skipped=len(result.skipped_ids),
        )
        return InvoiceUploadResponse(
            inserted=result.inserted,
            inserted_ids=result.inserted_ids,
            skipped_ids=result.skipped_ids,
            invoice_count=len(invoices),
            item_count=sum(len(invoice.items) for invoice in invoices),
        )

    def upload_schedule(self, rows: Sequence[Mapping[str, Any]], uploaded_by: str) -> ScheduleUploadResponse:
        """Replace the delivery schedule and re-check every invoice's line items against it."""
        schedule = self.store.set_schedule(self.ingestor.build_schedule(rows))
        invoices = self.store.snapshot()
        statuses = self.ingestor.classify_line_items(invoices, schedule)
        self.store.apply_line_item_statuses(statuses)
        self._apply_schedule_details(schedule, [invoice.id for invoice in invoices])

        counts = Counter(result["status"] for results in statuses.values() for result in results)
        codes = sorted(self.store.schedule_customer_codes())
        self.activity_log.append(
            uploaded_by,
            f"Uploaded schedule with {len(schedule)} item(s)",
            f"Customer codes: {', '.join(codes) if codes else 'none'}",
            LogType.UPLOAD,
        )
        return ScheduleUploadResponse(
            schedule_items=len(schedule),
            customer_codes=codes,
            matched_items=counts.get(LineItemStatus.VALID_MATCHED, 0),
            unmatched_items=counts.get(LineItemStatus.VALID_UNMATCHED, 0),
            error_items=counts.get(LineItemStatus.ERROR, 0),
        )

    def _apply_schedule_details(self, schedule: Sequence[ScheduleItem], invoice_ids: Sequence[str]) -> None:
        """Copy delivery date, time and unloading location from the schedule onto open invoices."""

        def _apply(record: InvoiceRecord) -> None:
            if record.dispatched_by or not record.bill_to:
                return
            parts = {item.customer_item for item in record.items if item.customer_item}
            parts |= {item.part for item in record.items}
            match = next(
                (
                    item
                    for item in schedule
                    if item.customer_code
                    and item.customer_code.strip() == record.bill_to.strip()
                    and (not item.part_number or item.part_number.strip() in parts)
                ),
                None,
            )
            if match is None:
                return
            record.delivery_date = match.delivery_date or record.delivery_date
            record.delivery_time = match.delivery_time or record.delivery_time
            record.unloading_loc = match.unloading_loc or record.unloading_loc
            record.plant = match.plant or record.plant

        for invoice_id in invoice_ids:
            self.store.mutate(invoice_id, _apply)

    # ------------------------------------------------------------------
    # Invoices
    # ------------------------------------------------------------------

    def list_invoices(self, view: str = "all", today: Optional[date] = None) -> List[InvoiceRecord]:
        return self.store.list_invoices(view, today)

    def get_invoice(self, invoice_id: str) -> Optional[InvoiceRecord]:
        return self.store.get(invoice_id)

    def delete_invoice(self, invoice_id: str, deleted_by: str) -> bool:
        if invoice_id in self.loader.active_invoice_ids():
            raise PreconditionError(
                f"Invoice {invoice_id} is part of an active loading session",
                invoice_id=invoice_id,
            )
        deleted = self.store.delete_invoice(invoice_id)
        if deleted:
            self.activity_log.append(
                deleted_by,
                f"Deleted invoice {invoice_id}",
                "",
                LogType.UPLOAD,
                invoice_id=invoice_id,
            )
        return deleted

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def audit_scan(
        self,
        invoice_id: str,
        customer_scan: ScanInput,
        autoliv_scan: ScanInput,
        scanned_by: str,
    ) -> ReconciliationResult:
        return self.reconciler.reconcile(invoice_id, customer_scan, autoliv_scan, scanned_by)

    def update_audit(
        self,
        invoice_id: str,
        fields: AuditUpdate | Mapping[str, Any],
        audited_by: str,
    ) -> Optional[InvoiceRecord]:
        return self.store.update_audit(invoice_id, fields, audited_by)

    def scans(self, invoice_id: str, context: ScanStep | str | None = None) -> Optional[ScanHistoryResponse]:
        """Validated doc-audit pairs and loaded items recorded for one invoice."""
        record = self.store.get(invoice_id)
        if record is None:
            return None
        step = ScanStep(context) if context is not None else None
        loaded = list(record.loaded_barcodes)
        if not loaded:
            for session in self.loader.sessions():
                if session.is_open and invoice_id in session.selected_invoice_ids:
                    loaded = [item for item in session.loaded_barcodes if item.invoice_id == invoice_id]
        return ScanHistoryResponse(
            invoice_id=invoice_id,
            doc_audit=record.validated_barcodes if step in (None, ScanStep.DOC_AUDIT) else [],
            loading_dispatch=loaded if step in (None, ScanStep.LOADING_DISPATCH) else [],
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def open_session(self, operator: str) -> LoadingSessionSnapshot:
        return self.loader.open_session(operator).snapshot()

    def session(self, session_id: str) -> LoadingSession:
        return self.loader.session(session_id)

    def close_session(self, session_id: str) -> LoadingSessionSnapshot:
        return self.loader.close_session(session_id)

    def select_invoice(self, session_id: str, invoice_id: str) -> LoadingSessionSnapshot:
        return self.loader.session(session_id).select_invoice(invoice_id)

    def deselect_invoice(self, session_id: str, invoice_id: str) -> LoadingSessionSnapshot:
        return self.loader.session(session_id).deselect_invoice(invoice_id)

    def dispatch_scan(
        self,
        session_id: str,
        customer_scan: ScanInput,
        matched_scan: Optional[ScanInput] = None,
        scanned_by: Optional[str] = None,
    ) -> LoadingSessionSnapshot:
        return self.loader.session(session_id).scan(customer_scan, matched_scan, scanned_by)

    def generate_gatepass(self, session_id: str, vehicle_number: str, authorized_by: str) -> Gatepass:
        return self.loader.session(session_id).generate_gatepass(vehicle_number, authorized_by)

    def ready_invoices(self) -> List[InvoiceRecord]:
        return self.loader.ready_invoices()

    def get_gatepass(self, gatepass_number: str) -> Optional[Gatepass]:
        return self.gatepasses.get(gatepass_number)

    def list_gatepasses(self, limit: int = 100) -> List[Gatepass]:
        return self.gatepasses.list_gatepasses(limit)

    # ------------------------------------------------------------------
    # Exceptions, logs, analytics
    # ------------------------------------------------------------------

    def list_alerts(
        self,
        status: AlertStatus | str | None = None,
        invoice_id: Optional[str] = None,
    ) -> List[MismatchAlert]:
        return self.alerts.list_alerts(status, invoice_id)

    def resolve_alert(self, alert_id: str, status: AlertStatus | str, reviewed_by: str) -> Optional[MismatchAlert]:
        return self.alerts.resolve(alert_id, status, reviewed_by)

    def logs(self, type: LogType | str | None = None, invoice_id: Optional[str] = None) -> List[LogEntry]:
        return self.activity_log.entries(type, invoice_id)

    def analytics(self) -> AnalyticsSnapshot:
        invoices = self.store.snapshot()
        counts: Dict[str, int] = {state.value: 0 for state in InvoiceState}
        for record in invoices:
            counts[record.state.value] += 1
        return AnalyticsSnapshot(
            total_invoices=len(invoices),
            counts_by_state=counts,
            blocked_invoices=sum(1 for record in invoices if record.blocked),
            pending_alerts=len(self.alerts.pending()),
            gatepasses_issued=len(self.gatepasses),
            total_scanned_bins=sum(record.scanned_bins for record in invoices),
            total_expected_bins=sum(record.expected_bins for record in invoices),
        )


invoice_engine = InvoiceEngine()
