"""Vehicle loading sessions: select audited invoices, scan items, issue the gatepass."""
from __future__ import annotations

from datetime import datetime, timezone
from threading import Lock, RLock
from typing import Dict, List, Optional, Set

from invoiceflow.core.config import Settings, get_settings
from invoiceflow.core.errors import ConflictError, NotFoundError, PreconditionError, ValidationError
from invoiceflow.core.logging import logger
from invoiceflow.models.activity import LogType
from invoiceflow.models.dispatch import Gatepass, LoadingSessionSnapshot, LoadingState
from invoiceflow.models.invoice import InvoiceRecord, InvoiceState
from invoiceflow.models.scan import LoadedBarcode, ScanResult, ScanStep
from invoiceflow.services.audit_tracker import AuditProgressTracker
from invoiceflow.services.gatepass import GatepassRegistry, build_gatepass
from invoiceflow.services.invoice_store import InvoiceStore
from invoiceflow.services.mismatch_manager import MismatchManager
from invoiceflow.services.reconciler import ScanInput, coerce_scan
from invoiceflow.services.sequences import SequenceCounter


def _customer_key(record: InvoiceRecord) -> str:
    return (record.bill_to or record.customer or "").strip()


def _quantity(value: str) -> int:
    try:
        return int(float(str(value or "0").replace(",", "")))
    except (ValueError, OverflowError):
        return 0


class InvoiceClaims:
    """Which open loading session holds each invoice."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._owners: Dict[str, str] = {}

    def claim(self, invoice_id: str, session_id: str) -> bool:
        with self._lock:
            owner = self._owners.setdefault(invoice_id, session_id)
            return owner == session_id

    def release(self, invoice_ids: List[str], session_id: str) -> None:
        with self._lock:
            for invoice_id in invoice_ids:
                if self._owners.get(invoice_id) == session_id:
                    del self._owners[invoice_id]

    def claimed(self) -> Set[str]:
        with self._lock:
            return set(self._owners)


class LoadingSession:
    """One vehicle being loaded. All selected invoices share one customer."""

    def __init__(
        self,
        session_id: str,
        operator: str,
        store: InvoiceStore,
        alerts: MismatchManager,
        gatepasses: GatepassRegistry,
        claims: "InvoiceClaims",
    ) -> None:
        self.session_id = session_id
        self.operator = operator
        self.created_at = datetime.now(timezone.utc)
        self._store = store
        self._alerts = alerts
        self._gatepasses = gatepasses
        self._claims = claims
        self._lock = RLock()
        self._selected: List[str] = []
        self._customer: Optional[str] = None
        self._customer_code: Optional[str] = None
        self._loaded: List[LoadedBarcode] = []
        self._gatepass_number: Optional[str] = None
        self._closed = False

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> LoadingState:
        with self._lock:
            if self._gatepass_number:
                return LoadingState.GATEPASS_GENERATED
            if self._closed:
                return LoadingState.CLOSED
            if not self._selected:
                return LoadingState.SELECTING_INVOICES
            if len(self._loaded) == self.expected_count():
                return LoadingState.READY_TO_GENERATE
            return LoadingState.SCANNING_ITEMS

    @property
    def is_open(self) -> bool:
        return self._gatepass_number is None and not self._closed

    @property
    def selected_invoice_ids(self) -> List[str]:
        with self._lock:
            return list(self._selected)

    @property
    def loaded_barcodes(self) -> List[LoadedBarcode]:
        with self._lock:
            return [item.model_copy() for item in self._loaded]

    def expected_count(self) -> int:
        """Sum of audited bin counts across the selected invoices."""
        with self._lock:
            total = 0
            for invoice_id in self._selected:
                record = self._store.get(invoice_id)
                if record is not None:
                    total += record.scanned_bins
            return total

    def snapshot(self) -> LoadingSessionSnapshot:
        with self._lock:
            return LoadingSessionSnapshot(
                session_id=self.session_id,
                operator=self.operator,
                state=self.state,
                customer=self._customer,
                customer_code=self._customer_code,
                selected_invoice_ids=list(self._selected),
                loaded_barcodes=[item.model_copy() for item in self._loaded],
                loaded_count=len(self._loaded),
                expected_count=self.expected_count(),
                gatepass_number=self._gatepass_number,
                created_at=self.created_at,
            )

    def _ensure_open(self) -> None:
        if self._closed:
            raise PreconditionError(f"Loading session {self.session_id} is closed", session_id=self.session_id)
        if self._gatepass_number:
            raise PreconditionError(
                f"Loading session {self.session_id} already issued gatepass {self._gatepass_number}",
                session_id=self.session_id,
            )

    def close(self) -> LoadingSessionSnapshot:
        """Abandon the session: unload its items and free its invoices for other vehicles."""
        with self._lock:
            if self.is_open:
                self._reset_loading()
                self._claims.release(self._selected, self.session_id)
                self._closed = True
                logger.info(
                    "Loading session closed",
                    session_id=self.session_id,
                    released=list(self._selected),
                )
            return self.snapshot()

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select_invoice(self, invoice_id: str) -> LoadingSessionSnapshot:
        with self._lock:
            self._ensure_open()
            if invoice_id in self._selected:
                return self.snapshot()

            record = self._store.get(invoice_id)
            if record is None:
                raise NotFoundError(f"Invoice {invoice_id} not found", invoice_id=invoice_id)
            if record.dispatched_by:
                raise PreconditionError(f"Invoice {invoice_id} is already dispatched", invoice_id=invoice_id)
            if not record.audit_complete:
                raise PreconditionError(f"Invoice {invoice_id} has not completed audit", invoice_id=invoice_id)
            if record.blocked:
                raise PreconditionError(f"Invoice {invoice_id} is blocked pending review", invoice_id=invoice_id)
            key = _customer_key(record)
            if self._selected and key != self._customer_code:
                self._store.activity_log.append(
                    self.operator,
                    "Customer code mismatch detected",
                    f"Invoice {invoice_id} (Customer: {key or 'N/A'}) cannot be loaded with "
                    f"{self._customer_code or 'N/A'} invoices",
                    LogType.DISPATCH,
                    invoice_id=invoice_id,
                )
                logger.warning(
                    "Cross-customer selection rejected",
                    session_id=self.session_id,
                    invoice_id=invoice_id,
                    customer_code=key,
                    session_customer_code=self._customer_code,
                )
                raise ConflictError(
                    f"Invoice {invoice_id} belongs to a different customer; different customer not allowed",
                    invoice_id=invoice_id,
                    customer_code=key,
                )

            if not self._claims.claim(invoice_id, self.session_id):
                raise PreconditionError(
                    f"Invoice {invoice_id} is being loaded in another session",
                    invoice_id=invoice_id,
                )

            self._reset_loading()
            self._selected.append(invoice_id)
            self._customer_code = key
            self._customer = record.customer
            logger.info("Invoice selected for loading", session_id=self.session_id, invoice_id=invoice_id)
            return self.snapshot()

    def deselect_invoice(self, invoice_id: str) -> LoadingSessionSnapshot:
        with self._lock:
            self._ensure_open()
            if invoice_id not in self._selected:
                return self.snapshot()
            self._reset_loading()
            self._selected.remove(invoice_id)
            self._claims.release([invoice_id], self.session_id)
            if not self._selected:
                self._customer = None
                self._customer_code = None
            logger.info("Invoice deselected from loading", session_id=self.session_id, invoice_id=invoice_id)
            return self.snapshot()

    def _reset_loading(self) -> None:
        """Drop loaded items and return the selected invoices to audit-complete."""
        self._loaded.clear()

        def _apply(record: InvoiceRecord) -> None:
            record.bins_loaded = 0
            if record.state == InvoiceState.LOADING:
                self._store.transition(record, InvoiceState.AUDIT_COMPLETE)

        for invoice_id in self._selected:
            self._store.mutate(invoice_id, _apply)

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    def _attribute(self, scan: ScanResult) -> tuple:
        """Find which selected invoice a scanned item belongs to, plus its line item.

        Matches the audited bin labels first, then part or customer item codes.
        """
        records = [record for record in (self._store.get(i) for i in self._selected) if record is not None]
        for record in records:
            for pair in record.validated_barcodes:
                if pair.customer_barcode.strip() == scan.normalized_raw:
                    line = next((item for item in record.items if item.part == pair.part_code), None)
                    return record.id, line
        if scan.part_code:
            for record in records:
                for line in record.items:
                    if scan.part_code in {line.part, line.customer_item}:
                        return record.id, line
                if any(pair.part_code == scan.part_code for pair in record.validated_barcodes):
                    return record.id, None
        raise ValidationError(
            f"Item {scan.part_code or scan.normalized_raw!r} not found in any selected invoice",
            session_id=self.session_id,
            part_code=scan.part_code,
        )

    def scan(
        self,
        customer_scan: ScanInput,
        matched_scan: Optional[ScanInput] = None,
        scanned_by: Optional[str] = None,
    ) -> LoadingSessionSnapshot:
        customer = coerce_scan(customer_scan, "customer scan")
        matched = coerce_scan(matched_scan, "matched scan") if matched_scan is not None else None
        loader = scanned_by or self.operator

        with self._lock:
            self._ensure_open()
            if not self._selected:
                raise PreconditionError("Select at least one invoice before scanning", session_id=self.session_id)

            owner_id, line = self._attribute(customer)

            if matched is not None and not AuditProgressTracker.dispatch_scans_agree(customer, matched):
                alert = self._alerts.raise_alert(
                    loader,
                    self._customer,
                    owner_id,
                    ScanStep.LOADING_DISPATCH,
                    customer,
                    matched,
                )
                raise ConflictError(
                    "Loaded item does not match the customer label (part, quantity and bin must agree)",
                    alert_id=alert.id,
                    invoice_id=owner_id,
                )

            if AuditProgressTracker.is_already_loaded(customer, self._loaded):
                raise ConflictError(
                    f"Item {customer.normalized_raw!r} is already loaded",
                    session_id=self.session_id,
                )

            expected = self.expected_count()
            if len(self._loaded) >= expected:
                raise PreconditionError(
                    f"All {expected} expected item(s) are already loaded",
                    session_id=self.session_id,
                )

            item = LoadedBarcode(
                invoice_id=owner_id,
                customer_barcode=customer.normalized_raw,
                autoliv_barcode=matched.normalized_raw if matched is not None else "",
                bin_number=customer.bin_number,
                part_code=customer.part_code,
                quantity=customer.quantity,
                customer_item=line.customer_item if line is not None else None,
                item_number=line.part if line is not None else None,
                loaded_by=loader,
            )

            def _apply(record: InvoiceRecord) -> None:
                record.bins_loaded += 1
                self._store.transition(record, InvoiceState.LOADING)

            for invoice_id in self._selected:
                self._store.mutate(invoice_id, _apply)
            self._loaded.append(item)

            logger.info(
                "Item loaded",
                session_id=self.session_id,
                invoice_id=owner_id,
                loaded=len(self._loaded),
                expected=expected,
            )
            return self.snapshot()

    # ------------------------------------------------------------------
    # Gatepass
    # ------------------------------------------------------------------

    def generate_gatepass(self, vehicle_number: str, authorized_by: str) -> Gatepass:
        vehicle = str(vehicle_number or "").strip()
        with self._lock:
            self._ensure_open()
            if not vehicle:
                raise PreconditionError("A vehicle number is required", session_id=self.session_id)
            if not self._selected:
                raise PreconditionError("No invoices selected for dispatch", session_id=self.session_id)

            expected = self.expected_count()
            loaded_count = len(self._loaded)
            if loaded_count != expected:
                raise PreconditionError(
                    f"Not all items loaded: {expected - loaded_count} item(s) remaining",
                    loaded=loaded_count,
                    expected=expected,
                )

            with self._store.locked(*self._selected):
                records: List[InvoiceRecord] = []
                for invoice_id in self._selected:
                    record = self._store.get(invoice_id)
                    if record is None:
                        raise NotFoundError(f"Invoice {invoice_id} not found", invoice_id=invoice_id)
                    if record.dispatched_by:
                        raise ConflictError(f"Invoice {invoice_id} is already dispatched", invoice_id=invoice_id)
                    if not record.audit_complete or record.blocked:
                        raise PreconditionError(
                            f"Invoice {invoice_id} is not dispatchable (audit incomplete or blocked)",
                            invoice_id=invoice_id,
                        )
                    records.append(record)

                dispatched_at = datetime.now(timezone.utc)
                gatepass_number = self._gatepasses.next_number(dispatched_at)
                dispatched: List[InvoiceRecord] = []
                for record in records:
                    own = [item for item in self._loaded if item.invoice_id == record.id]
                    bins = sorted({item.bin_number for item in own if item.bin_number})
                    updated = self._store.update_dispatch(
                        record.id,
                        authorized_by,
                        vehicle_number=vehicle,
                        bin_number=", ".join(bins) or None,
                        quantity=sum(_quantity(item.quantity) for item in own),
                        gatepass_number=gatepass_number,
                        dispatched_at=dispatched_at,
                        loaded_barcodes=own,
                    )
                    dispatched.append(updated)

                gatepass = build_gatepass(
                    gatepass_number,
                    vehicle,
                    authorized_by,
                    dispatched,
                    self._loaded,
                    dispatched_at,
                )
                self._gatepasses.record(gatepass)

            self._gatepass_number = gatepass_number
            self._claims.release(self._selected, self.session_id)

        self._store.activity_log.append(
            authorized_by,
            f"Generated gatepass {gatepass_number}",
            f"Vehicle: {vehicle}, Customer code: {self._customer_code or 'N/A'}, "
            f"Invoices: {', '.join(gatepass.invoice_ids)}",
            LogType.DISPATCH,
        )
        logger.info(
            "Gatepass generated",
            gatepass_number=gatepass_number,
            session_id=self.session_id,
            invoice_count=len(gatepass.invoice_ids),
            total_items=gatepass.summary.total_items,
        )
        return gatepass


class DispatchLoader:
    """Registry of loading sessions sharing one invoice store."""

    def __init__(
        self,
        store: InvoiceStore,
        alerts: MismatchManager,
        gatepasses: GatepassRegistry,
        sequences: Optional[SequenceCounter] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._store = store
        self._alerts = alerts
        self._gatepasses = gatepasses
        self._sequences = sequences or SequenceCounter()
        self.settings = settings or get_settings()
        self._lock = Lock()
        self._sessions: Dict[str, LoadingSession] = {}
        self._claims = InvoiceClaims()

    def open_session(self, operator: str) -> LoadingSession:
        session = LoadingSession(
            self._sequences.next_id("session", "LS"),
            operator,
            self._store,
            self._alerts,
            self._gatepasses,
            self._claims,
        )
        with self._lock:
            self._sessions[session.session_id] = session
        logger.info("Loading session opened", session_id=session.session_id, operator=operator)
        return session

    def session(self, session_id: str) -> LoadingSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"Loading session {session_id} not found", session_id=session_id)
        return session

    def close_session(self, session_id: str) -> LoadingSessionSnapshot:
        """Close a session and drop it from the registry, releasing any invoices it held."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            raise NotFoundError(f"Loading session {session_id} not found", session_id=session_id)
        return session.close()

    def sessions(self) -> List[LoadingSession]:
        with self._lock:
            return list(self._sessions.values())

    def active_invoice_ids(self) -> Set[str]:
        """Invoices currently selected by a session that has not issued its gatepass."""
        return self._claims.claimed()

    def ready_invoices(self) -> List[InvoiceRecord]:
        """Audited, unblocked invoices not yet claimed by a loading session."""
        claimed = self.active_invoice_ids()
        return [
            record
            for record in self._store.dispatchable_invoices()
            if not record.blocked and record.id not in claimed
        ]
