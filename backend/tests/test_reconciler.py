"""Doc-audit reconciliation and audit progression tests."""
from __future__ import annotations

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from invoiceflow.core.config import Settings  # noqa: E402
from invoiceflow.core.errors import ConflictError, PreconditionError, ValidationError  # noqa: E402
from invoiceflow.models.invoice import InvoiceState  # noqa: E402
from invoiceflow.models.scan import AlertStatus, ReconciliationStatus, ScanResult, ScanStep  # noqa: E402
from invoiceflow.services.audit_tracker import AuditProgressTracker  # noqa: E402
from invoiceflow.services.engine import InvoiceEngine  # noqa: E402
from invoiceflow.services.reconciler import ScanReconciler, coerce_scan  # noqa: E402


ROWS = [{"invoice": "INV-1", "customer": "Acme", "part": "P-100", "qty": 240, "bill_to": "C001"}]


def _engine(**overrides) -> InvoiceEngine:
    engine = InvoiceEngine(settings=Settings(**overrides))
    engine.upload_invoices(ROWS, uploaded_by="alice")
    return engine


def _scan(raw: str, part: str = "P-100", qty: str = "80", bin_number: str = "B1") -> dict:
    return {"part_code": part, "quantity": qty, "bin_number": bin_number, "raw_value": raw}


def test_three_matching_pairs_complete_a_240_unit_invoice():
    engine = _engine()
    assert engine.get_invoice("INV-1").expected_bins == 3

    for index in range(1, 4):
        result = engine.audit_scan("INV-1", _scan(f"LBL-{index}"), _scan(f"LBL-{index}"), "bob")
        assert result.status == ReconciliationStatus.MATCHED

    record = engine.get_invoice("INV-1")
    assert record.scanned_bins == 3
    assert record.audit_complete is True
    assert record.audit_date is not None
    assert record.state == InvoiceState.AUDIT_COMPLETE
    assert [pair.customer_barcode for pair in record.validated_barcodes] == ["LBL-1", "LBL-2", "LBL-3"]
    assert record.validated_barcodes[0].quantity == 80
    assert len(engine.activity_log.audits()) == 1


def test_match_after_completion_changes_nothing():
    engine = _engine()
    for index in range(1, 4):
        engine.audit_scan("INV-1", _scan(f"LBL-{index}"), _scan(f"LBL-{index}"), "bob")
    completed_at = engine.get_invoice("INV-1").audit_date

    again = engine.audit_scan("INV-1", _scan("LBL-4"), _scan("LBL-4"), "bob")
    assert again.status == ReconciliationStatus.ALREADY_COMPLETE
    assert again.matched is True

    record = engine.get_invoice("INV-1")
    assert record.scanned_bins == 3
    assert record.audit_date == completed_at
    assert len(engine.activity_log.audits()) == 1


def test_mismatch_raises_one_alert_and_records_no_progress():
    engine = _engine()
    result = engine.audit_scan("INV-1", _scan("A"), _scan("B"), "bob")

    assert result.status == ReconciliationStatus.MISMATCHED
    assert result.alert is not None
    assert result.alert.step == ScanStep.DOC_AUDIT
    assert result.alert.status == AlertStatus.PENDING
    assert result.alert.customer == "Acme"

    pending = engine.alerts.pending()
    assert [alert.id for alert in pending] == [result.alert.id]

    record = engine.get_invoice("INV-1")
    assert record.scanned_bins == 0
    assert record.blocked is True
    assert record.blocked_at is not None
    assert record.audited_by is None
    assert record.audited_at is None


def test_mismatch_after_completion_still_raises_alert():
    engine = _engine()
    for index in range(1, 4):
        engine.audit_scan("INV-1", _scan(f"LBL-{index}"), _scan(f"LBL-{index}"), "bob")

    result = engine.audit_scan("INV-1", _scan("A"), _scan("B"), "carol")
    assert result.status == ReconciliationStatus.MISMATCHED
    assert result.matched is False
    assert result.alert is not None
    assert result.audit_complete is True
    assert [alert.id for alert in engine.alerts.pending()] == [result.alert.id]

    record = engine.get_invoice("INV-1")
    assert record.scanned_bins == 3
    assert record.blocked is True
    assert record.audited_by == "bob"


def test_alert_review_keeps_audit_stamps():
    engine = _engine()
    engine.audit_scan("INV-1", _scan("LBL-1"), _scan("LBL-1"), "bob")
    audited_at = engine.get_invoice("INV-1").audited_at

    mismatch = engine.audit_scan("INV-1", _scan("A"), _scan("B"), "carol")
    engine.resolve_alert(mismatch.alert.id, AlertStatus.APPROVED, "admin")

    record = engine.get_invoice("INV-1")
    assert record.blocked is False
    assert record.audited_by == "bob"
    assert record.audited_at == audited_at


def test_blocked_invoice_accepts_scans_again_after_approval():
    engine = _engine()
    mismatch = engine.audit_scan("INV-1", _scan("A"), _scan("B"), "bob")

    with pytest.raises(PreconditionError):
        engine.audit_scan("INV-1", _scan("LBL-1"), _scan("LBL-1"), "bob")

    engine.resolve_alert(mismatch.alert.id, AlertStatus.APPROVED, "admin")
    assert engine.get_invoice("INV-1").blocked is False

    result = engine.audit_scan("INV-1", _scan("LBL-1"), _scan("LBL-1"), "bob")
    assert result.status == ReconciliationStatus.MATCHED
    assert result.scanned_bins == 1


def test_mismatch_leaves_invoice_open_when_blocking_disabled():
    engine = _engine(block_on_mismatch=False)
    engine.audit_scan("INV-1", _scan("A"), _scan("B"), "bob")

    assert engine.get_invoice("INV-1").blocked is False
    result = engine.audit_scan("INV-1", _scan("LBL-1"), _scan("LBL-1"), "bob")
    assert result.status == ReconciliationStatus.MATCHED


def test_same_bin_cannot_be_counted_twice():
    engine = _engine()
    engine.audit_scan("INV-1", _scan("LBL-1"), _scan("LBL-1"), "bob")

    with pytest.raises(ConflictError):
        engine.audit_scan("INV-1", _scan("LBL-1"), _scan("LBL-1"), "bob")
    assert engine.get_invoice("INV-1").scanned_bins == 1


def test_duplicate_bins_counted_when_rejection_disabled():
    engine = _engine(reject_duplicate_audit_bins=False)
    engine.audit_scan("INV-1", _scan("LBL-1"), _scan("LBL-1"), "bob")
    engine.audit_scan("INV-1", _scan("LBL-1"), _scan("LBL-1"), "bob")
    assert engine.get_invoice("INV-1").scanned_bins == 2


def test_ascii_triplet_payload_matches_its_decoded_text():
    engine = _engine()
    result = engine.audit_scan("INV-1", _scan("065066067068"), _scan("ABCD"), "bob")

    assert result.status == ReconciliationStatus.MATCHED
    assert result.validated.customer_barcode == "ABCD"


def test_unknown_invoice_is_reported_without_side_effects():
    engine = _engine()
    result = engine.audit_scan("INV-404", _scan("A"), _scan("B"), "bob")

    assert result.status == ReconciliationStatus.UNKNOWN_INVOICE
    assert engine.alerts.list_alerts() == []


def test_blank_or_missing_raw_value_is_a_validation_error():
    engine = _engine()
    with pytest.raises(ValidationError):
        engine.audit_scan("INV-1", _scan("   "), _scan("LBL-1"), "bob")
    with pytest.raises(ValidationError):
        engine.audit_scan("INV-1", {"part_code": "P-100"}, _scan("LBL-1"), "bob")
    assert engine.get_invoice("INV-1").scanned_bins == 0


def test_camel_case_scan_payload_is_accepted():
    scan = coerce_scan({"partCode": "P-1", "qty": 5, "binNumber": "B7", "rawValue": "RAW"})
    assert scan.part_code == "P-1"
    assert scan.quantity == "5"
    assert scan.bin_number == "B7"
    assert scan.raw_value == "RAW"


def test_match_compares_trimmed_raw_values_only():
    left = ScanResult(part_code="P-1", quantity="1", bin_number="B1", raw_value=" SAME ")
    right = ScanResult(part_code="P-2", quantity="9", bin_number="B9", raw_value="SAME")
    assert ScanReconciler.match(left, right) is True
    assert ScanReconciler.match(left, ScanResult(raw_value="OTHER")) is False


def test_dispatch_predicate_compares_part_quantity_and_bin():
    base = ScanResult(part_code="P-1", quantity="10", bin_number="B1", raw_value="X")
    same = ScanResult(part_code="P-1", quantity="10", bin_number="B1", raw_value="Y")
    other_bin = ScanResult(part_code="P-1", quantity="10", bin_number="B2", raw_value="X")

    assert AuditProgressTracker.dispatch_scans_agree(base, same) is True
    assert AuditProgressTracker.dispatch_scans_agree(base, other_bin) is False
