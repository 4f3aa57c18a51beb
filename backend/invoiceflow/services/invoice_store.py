"""Shared in-process invoice store with per-invoice locking.

The store is the single source of truth for invoice lifecycle state. Every
mutation of one invoice runs under that invoice's ``RLock``; records are
copied in and out so callers never hold a live reference.
"""
from __future__ import annotations

from contextlib import contextmanager
from datetime import date, datetime, timezone
from threading import Lock, RLock
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Set

from invoiceflow.core.errors import ConflictError, PreconditionError, ValidationError
from invoiceflow.core.logging import logger
from invoiceflow.models.activity import LogType
from invoiceflow.models.invoice import (
    AddInvoicesResult,
    AuditUpdate,
    InvoiceRecord,
    InvoiceState,
    ScheduleItem,
)
from invoiceflow.models.scan import LoadedBarcode
from invoiceflow.services.activity_log import ActivityLog
from invoiceflow.services.ingestor import expected_bin_count


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InvoiceStore:
    """Canonical collection of invoices and the current delivery schedule."""

    ALLOWED_STATE_TRANSITIONS = {
        InvoiceState.UPLOADED: {InvoiceState.AUDITING, InvoiceState.AUDIT_COMPLETE},
        InvoiceState.AUDITING: {InvoiceState.AUDIT_COMPLETE},
        InvoiceState.AUDIT_COMPLETE: {InvoiceState.LOADING, InvoiceState.DISPATCHED, InvoiceState.AUDITING},
        InvoiceState.LOADING: {InvoiceState.AUDIT_COMPLETE, InvoiceState.DISPATCHED},
        InvoiceState.DISPATCHED: set(),
    }

    VIEWS = (
        "all",
        "uploaded",
        "pending_audit",
        "audited",
        "dispatchable",
        "dispatched",
        "today",
        "schedule_matched",
        "eligible_today",
    )

    def __init__(self, activity_log: Optional[ActivityLog] = None) -> None:
        self._log = activity_log or ActivityLog()
        self._guard = Lock()
        self._invoices: Dict[str, InvoiceRecord] = {}
        self._locks: Dict[str, RLock] = {}
        self._schedule: List[ScheduleItem] = []

    @property
    def activity_log(self) -> ActivityLog:
        return self._log

    # ------------------------------------------------------------------
    # Locking and copy-in/copy-out primitives
    # ------------------------------------------------------------------

    def _lock_for(self, invoice_id: str) -> RLock:
        with self._guard:
            lock = self._locks.get(invoice_id)
            if lock is None:
                lock = RLock()
                self._locks[invoice_id] = lock
            return lock

    @contextmanager
    def locked(self, *invoice_ids: str) -> Iterator[None]:
        """Hold the locks of several invoices, always acquired in sorted order."""
        locks = [self._lock_for(invoice_id) for invoice_id in sorted(set(invoice_ids))]
        acquired: List[RLock] = []
        try:
            for lock in locks:
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    def _read(self, invoice_id: str) -> Optional[InvoiceRecord]:
        with self._guard:
            record = self._invoices.get(invoice_id)
            return record.model_copy(deep=True) if record is not None else None

    def _write(self, record: InvoiceRecord) -> bool:
        record.updated_at = _utcnow()
        stored = record.model_copy(deep=True)
        with self._guard:
            if record.id not in self._invoices:
                return False
            self._invoices[record.id] = stored
            return True

    def mutate(
        self,
        invoice_id: str,
        apply: Callable[[InvoiceRecord], Any],
    ) -> Optional[InvoiceRecord]:
        """Run ``apply`` on a private copy of the invoice and commit it atomically.

        Unknown ids are a no-op and return ``None``. If ``apply`` raises,
        nothing is committed.
        """
        with self.locked(invoice_id):
            record = self._read(invoice_id)
            if record is None:
                return None
            apply(record)
            self._validate_invariants(record)
            if not self._write(record):
                return None
            return record.model_copy(deep=True)

    @classmethod
    def transition(cls, record: InvoiceRecord, next_state: InvoiceState) -> None:
        """Move an invoice to ``next_state`` if the lifecycle allows it."""
        current = record.state
        if current == next_state:
            return
        allowed = cls.ALLOWED_STATE_TRANSITIONS.get(current, set())
        if next_state not in allowed:
            raise PreconditionError(
                f"Invalid state transition {current.value} -> {next_state.value} for invoice {record.id}. "
                f"Allowed: {sorted(state.value for state in allowed)}",
                invoice_id=record.id,
            )
        record.state = next_state

    @staticmethod
    def _validate_invariants(record: InvoiceRecord) -> None:
        derived = expected_bin_count(record.total_quantity, record.bin_capacity)
        if record.expected_bins != derived:
            raise PreconditionError(
                f"Invoice {record.id} expects {derived} bins for {record.total_quantity} units "
                f"at {record.bin_capacity} per bin, not {record.expected_bins}",
                invoice_id=record.id,
            )
        if record.scanned_bins > record.expected_bins:
            raise PreconditionError(
                f"Invoice {record.id} cannot have more scanned bins ({record.scanned_bins}) "
                f"than expected ({record.expected_bins})",
                invoice_id=record.id,
            )
        if record.audit_complete and record.scanned_bins != record.expected_bins:
            raise PreconditionError(
                f"Invoice {record.id} cannot be audit-complete with {record.scanned_bins}/"
                f"{record.expected_bins} bins scanned",
                invoice_id=record.id,
            )
        if record.dispatched_by and (not record.audit_complete or record.blocked):
            raise PreconditionError(
                f"Invoice {record.id} cannot be dispatched unless audited and unblocked",
                invoice_id=record.id,
            )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_invoices(self, invoices: Iterable[InvoiceRecord], uploaded_by: str) -> AddInvoicesResult:
        """Insert invoices whose id is not yet known. Existing invoices always win."""
        now = _utcnow()
        inserted: List[str] = []
        skipped: List[str] = []

        with self._guard:
            for invoice in invoices:
                if invoice.id in self._invoices:
                    skipped.append(invoice.id)
                    continue
                record = invoice.model_copy(deep=True)
                record.expected_bins = expected_bin_count(record.total_quantity, record.bin_capacity)
                record.uploaded_by = uploaded_by
                record.uploaded_at = now
                record.audit_complete = False
                record.audit_date = None
                record.scanned_bins = 0
                record.bins_loaded = 0
                record.state = InvoiceState.UPLOADED
                record.created_at = now
                record.updated_at = now
                self._invoices[record.id] = record
                inserted.append(record.id)

        if skipped:
            logger.warning("Skipped duplicate invoice ids on upload", skipped=skipped, uploaded_by=uploaded_by)

        if inserted or skipped:
            details = f"Invoices: {', '.join(inserted) if inserted else 'none'}"
            if skipped:
                details += f"; skipped existing: {', '.join(skipped)}"
            self._log.append(
                uploaded_by,
                f"Uploaded {len(inserted)} invoice(s)",
                details,
                LogType.UPLOAD,
            )

        return AddInvoicesResult(inserted=len(inserted), inserted_ids=inserted, skipped_ids=skipped)

    def update_audit(
        self,
        invoice_id: str,
        fields: AuditUpdate | Mapping[str, Any],
        audited_by: str,
    ) -> Optional[InvoiceRecord]:
        """Merge audit fields into an invoice, keeping the bin invariants intact."""
        update = fields if isinstance(fields, AuditUpdate) else AuditUpdate.model_validate(dict(fields))
        patch = update.model_dump(exclude_none=True)
        completed: Dict[str, bool] = {"flag": False}

        def _apply(record: InvoiceRecord) -> None:
            if record.state == InvoiceState.DISPATCHED:
                raise PreconditionError(f"Invoice {record.id} is already dispatched", invoice_id=record.id)

            was_complete = record.audit_complete
            now = _utcnow()

            if "scanned_bins" in patch:
                record.scanned_bins = min(patch["scanned_bins"], record.expected_bins)
                if record.scanned_bins > 0 and record.state == InvoiceState.UPLOADED:
                    self.transition(record, InvoiceState.AUDITING)

            if patch.get("audit_complete") is True and not was_complete:
                if record.scanned_bins != record.expected_bins:
                    raise PreconditionError(
                        f"Invoice {record.id} has {record.scanned_bins}/{record.expected_bins} bins scanned",
                        invoice_id=record.id,
                    )
                self.transition(record, InvoiceState.AUDIT_COMPLETE)
                record.audit_complete = True
                record.audit_date = now
                completed["flag"] = True
            elif patch.get("audit_complete") is False and was_complete:
                self.transition(record, InvoiceState.AUDITING)
                record.audit_complete = False
                record.audit_date = None

            if "blocked" in patch:
                record.blocked = patch["blocked"]
                record.blocked_at = now if record.blocked else None

            for key in ("delivery_date", "delivery_time", "unloading_loc"):
                if key in patch:
                    setattr(record, key, patch[key])

            record.audited_by = audited_by
            record.audited_at = now

        updated = self.mutate(invoice_id, _apply)
        if updated is None:
            logger.info("Audit update ignored for unknown invoice", invoice_id=invoice_id)
            return None
        if completed["flag"]:
            self.record_audit_completed(updated, audited_by)
        return updated

    def set_blocked(self, invoice_id: str, blocked: bool) -> Optional[InvoiceRecord]:
        """Block or unblock an invoice without touching its audit stamps."""

        def _apply(record: InvoiceRecord) -> None:
            if record.dispatched_by:
                raise PreconditionError(f"Invoice {record.id} is already dispatched", invoice_id=record.id)
            if record.blocked == blocked:
                return
            record.blocked = blocked
            record.blocked_at = _utcnow() if blocked else None

        updated = self.mutate(invoice_id, _apply)
        if updated is not None:
            logger.info("Invoice block flag set", invoice_id=invoice_id, blocked=blocked)
        return updated

    def record_audit_completed(self, record: InvoiceRecord, audited_by: str) -> None:
        self._log.append(
            audited_by,
            f"Completed audit for invoice {record.id}",
            f"Customer: {record.customer}, Items: {record.scanned_bins}",
            LogType.AUDIT,
            invoice_id=record.id,
        )

    def update_dispatch(
        self,
        invoice_id: str,
        dispatched_by: str,
        vehicle_number: Optional[str] = None,
        bin_number: Optional[str] = None,
        quantity: Optional[int] = None,
        *,
        gatepass_number: Optional[str] = None,
        dispatched_at: Optional[datetime] = None,
        loaded_barcodes: Optional[List[LoadedBarcode]] = None,
    ) -> Optional[InvoiceRecord]:
        """Stamp an invoice as dispatched. Only audited, unblocked invoices qualify."""
        if not str(dispatched_by or "").strip():
            raise ValidationError("dispatched_by is required")

        def _apply(record: InvoiceRecord) -> None:
            if record.dispatched_by:
                raise ConflictError(f"Invoice {record.id} is already dispatched", invoice_id=record.id)
            if not record.audit_complete:
                raise PreconditionError(f"Invoice {record.id} has not completed audit", invoice_id=record.id)
            if record.blocked:
                raise PreconditionError(f"Invoice {record.id} is blocked pending review", invoice_id=record.id)
            self.transition(record, InvoiceState.DISPATCHED)
            record.dispatched_by = dispatched_by
            record.dispatched_at = dispatched_at or _utcnow()
            if vehicle_number:
                record.vehicle_number = vehicle_number
            if gatepass_number:
                record.gatepass_number = gatepass_number
            if loaded_barcodes:
                record.loaded_barcodes = [item.model_copy() for item in loaded_barcodes]

        updated = self.mutate(invoice_id, _apply)
        if updated is None:
            logger.info("Dispatch update ignored for unknown invoice", invoice_id=invoice_id)
            return None

        self._log.append(
            dispatched_by,
            f"Dispatched invoice {invoice_id}",
            f"Customer: {updated.customer}, Bin Number: {bin_number or 'N/A'}, "
            f"Quantity: {quantity if quantity is not None else 0}, Vehicle: {vehicle_number or 'N/A'}",
            LogType.DISPATCH,
            invoice_id=invoice_id,
        )
        return updated

    def delete_invoice(self, invoice_id: str) -> bool:
        """Remove an invoice unless a vehicle is currently being loaded with it."""
        with self.locked(invoice_id):
            with self._guard:
                record = self._invoices.get(invoice_id)
                if record is None:
                    return False
                if record.state == InvoiceState.LOADING:
                    raise PreconditionError(
                        f"Invoice {invoice_id} is part of an active loading session",
                        invoice_id=invoice_id,
                    )
                del self._invoices[invoice_id]
        logger.info("Invoice deleted", invoice_id=invoice_id)
        return True

    def set_schedule(self, items: Iterable[ScheduleItem]) -> List[ScheduleItem]:
        """Replace the current delivery schedule."""
        schedule = [item.model_copy() for item in items]
        with self._guard:
            self._schedule = schedule
        return [item.model_copy() for item in schedule]

    def apply_line_item_statuses(self, statuses: Mapping[str, List[Dict[str, Any]]]) -> None:
        """Record schedule validation results on invoice line items."""
        for invoice_id, results in statuses.items():
            def _apply(record: InvoiceRecord, results: List[Dict[str, Any]] = results) -> None:
                for item, result in zip(record.items, results):
                    item.status = result["status"]
                    item.error_message = result.get("error_message")

            self.mutate(invoice_id, _apply)

    # ------------------------------------------------------------------
    # Queries (snapshot reads)
    # ------------------------------------------------------------------

    def get(self, invoice_id: str) -> Optional[InvoiceRecord]:
        return self._read(invoice_id)

    def __contains__(self, invoice_id: object) -> bool:
        with self._guard:
            return invoice_id in self._invoices

    def __len__(self) -> int:
        with self._guard:
            return len(self._invoices)

    def snapshot(self) -> List[InvoiceRecord]:
        """Consistent copy of every invoice, oldest upload first."""
        with self._guard:
            records = [record.model_copy(deep=True) for record in self._invoices.values()]
        return sorted(records, key=lambda record: (record.created_at, record.id))

    def schedule(self) -> List[ScheduleItem]:
        with self._guard:
            return [item.model_copy() for item in self._schedule]

    def schedule_customer_codes(self) -> Set[str]:
        return {
            str(item.customer_code).strip()
            for item in self.schedule()
            if item.customer_code and str(item.customer_code).strip()
        }

    def uploaded_invoices(self) -> List[InvoiceRecord]:
        return [record for record in self.snapshot() if record.uploaded_by]

    def pending_audit_invoices(self) -> List[InvoiceRecord]:
        return [record for record in self.snapshot() if not record.audit_complete and not record.dispatched_by]

    def audited_invoices(self) -> List[InvoiceRecord]:
        return [record for record in self.snapshot() if record.audit_complete]

    def dispatchable_invoices(self) -> List[InvoiceRecord]:
        return [record for record in self.snapshot() if record.audit_complete and not record.dispatched_by]

    def dispatched_invoices(self) -> List[InvoiceRecord]:
        return [record for record in self.snapshot() if record.dispatched_by]

    def todays_invoices(self, today: Optional[date] = None) -> List[InvoiceRecord]:
        current_day = today or date.today()
        return [
            record
            for record in self.snapshot()
            if record.invoice_date == current_day and not record.dispatched_by
        ]

    def schedule_matched_invoices(self) -> List[InvoiceRecord]:
        codes = self.schedule_customer_codes()
        return [
            record
            for record in self.snapshot()
            if record.bill_to and record.bill_to.strip() in codes
        ]

    def dispatch_eligible_today(self, today: Optional[date] = None) -> List[InvoiceRecord]:
        """Audited, unblocked invoices whose customer has a delivery scheduled today."""
        current_day = today or date.today()
        codes_due = {
            str(item.customer_code).strip()
            for item in self.schedule()
            if item.customer_code and (item.delivery_date is None or item.delivery_date == current_day)
        }
        return [
            record
            for record in self.dispatchable_invoices()
            if not record.blocked and record.bill_to and record.bill_to.strip() in codes_due
        ]

    def list_invoices(self, view: str = "all", today: Optional[date] = None) -> List[InvoiceRecord]:
        normalized = str(view or "all").strip().lower().replace("-", "_")
        if normalized not in self.VIEWS:
            raise ValidationError(f"Unknown invoice view '{view}'. Expected one of: {list(self.VIEWS)}")
        if normalized == "uploaded":
            return self.uploaded_invoices()
        if normalized == "pending_audit":
            return self.pending_audit_invoices()
        if normalized == "audited":
            return self.audited_invoices()
        if normalized == "dispatchable":
            return self.dispatchable_invoices()
        if normalized == "dispatched":
            return self.dispatched_invoices()
        if normalized == "today":
            return self.todays_invoices(today)
        if normalized == "schedule_matched":
            return self.schedule_matched_invoices()
        if normalized == "eligible_today":
            return self.dispatch_eligible_today(today)
        return self.snapshot()
