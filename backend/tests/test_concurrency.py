"""Concurrent operator sessions against one shared engine."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from invoiceflow.core.config import Settings  # noqa: E402
from invoiceflow.core.errors import PreconditionError  # noqa: E402
from invoiceflow.models.invoice import InvoiceRecord  # noqa: E402
from invoiceflow.models.scan import ReconciliationStatus  # noqa: E402
from invoiceflow.services.engine import InvoiceEngine  # noqa: E402


def _scan(raw: str) -> dict:
    return {"part_code": "P-1", "quantity": "80", "bin_number": "B1", "raw_value": raw}


def test_concurrent_matches_never_overshoot_expected_bins():
    engine = InvoiceEngine(settings=Settings())
    engine.upload_invoices([{"invoice": "INV-1", "customer": "Acme", "part": "P-1", "qty": 240}], "alice")

    def _submit(index: int):
        raw = f"LBL-{index}"
        return engine.audit_scan("INV-1", _scan(raw), _scan(raw), f"operator-{index % 4}")

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(_submit, range(24)))

    statuses = [result.status for result in results]
    assert statuses.count(ReconciliationStatus.MATCHED) == 3
    assert statuses.count(ReconciliationStatus.ALREADY_COMPLETE) == 21

    record = engine.get_invoice("INV-1")
    assert record.scanned_bins == 3
    assert record.audit_complete is True
    assert len(record.validated_barcodes) == 3
    assert len(engine.activity_log.audits()) == 1


def test_concurrent_uploads_of_same_invoice_insert_once():
    engine = InvoiceEngine(settings=Settings())

    def _upload(index: int):
        invoice = InvoiceRecord(id="INV-RACE", customer=f"Customer {index}", total_quantity=80)
        return engine.store.add_invoices([invoice], f"operator-{index}")

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(_upload, range(16)))

    assert sum(result.inserted for result in results) == 1
    assert len(engine.list_invoices()) == 1


def test_two_sessions_racing_for_one_invoice():
    engine = InvoiceEngine(settings=Settings())
    engine.upload_invoices([{"invoice": "INV-2", "customer": "Acme", "part": "P-1", "qty": 80}], "alice")
    engine.audit_scan("INV-2", _scan("LBL-1"), _scan("LBL-1"), "bob")
    sessions = [engine.open_session(f"loader-{index}").session_id for index in range(6)]

    def _select(session_id: str) -> bool:
        try:
            engine.select_invoice(session_id, "INV-2")
            return True
        except PreconditionError:
            return False

    with ThreadPoolExecutor(max_workers=6) as pool:
        outcomes = list(pool.map(_select, sessions))

    assert outcomes.count(True) == 1
