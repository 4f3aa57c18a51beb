"""Mismatch alert lifecycle tests."""
from __future__ import annotations

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from invoiceflow.core.config import Settings  # noqa: E402
from invoiceflow.core.errors import ConflictError, ValidationError  # noqa: E402
from invoiceflow.models.invoice import InvoiceRecord  # noqa: E402
from invoiceflow.models.scan import AlertStatus, ScanResult, ScanStep  # noqa: E402
from invoiceflow.services.invoice_store import InvoiceStore  # noqa: E402
from invoiceflow.services.mismatch_manager import MismatchManager  # noqa: E402


def _setup(**overrides):
    store = InvoiceStore()
    store.add_invoices(
        [
            InvoiceRecord(id="INV-1", customer="Acme", bill_to="C001", total_quantity=160),
            InvoiceRecord(id="INV-2", customer="Beta", bill_to="C002", total_quantity=80),
        ],
        "alice",
    )
    return store, MismatchManager(store, settings=Settings(**overrides))


def _raise(manager: MismatchManager, invoice_id: str = "INV-1"):
    return manager.raise_alert(
        "bob",
        "Acme",
        invoice_id,
        ScanStep.DOC_AUDIT,
        ScanResult(raw_value="A"),
        ScanResult(raw_value="B"),
    )


def test_raise_alert_is_pending_and_blocks_invoice():
    store, manager = _setup()
    alert = _raise(manager)

    assert alert.id.startswith("ALERT-")
    assert alert.status == AlertStatus.PENDING
    assert alert.reviewed_by is None
    assert store.get("INV-1").blocked is True


def test_pending_lists_oldest_first():
    _, manager = _setup()
    first = _raise(manager, "INV-1")
    second = _raise(manager, "INV-2")

    assert [alert.id for alert in manager.pending()] == [first.id, second.id]


def test_alert_can_be_resolved_only_once():
    store, manager = _setup()
    alert = _raise(manager)

    resolved = manager.resolve(alert.id, "approved", "admin")
    assert resolved.status == AlertStatus.APPROVED
    assert resolved.reviewed_by == "admin"
    assert resolved.reviewed_at is not None
    assert store.get("INV-1").blocked is False
    assert manager.pending() == []

    with pytest.raises(ConflictError):
        manager.resolve(alert.id, "rejected", "other-admin")
    assert manager.get(alert.id).status == AlertStatus.APPROVED


def test_rejection_keeps_invoice_blocked():
    store, manager = _setup()
    alert = _raise(manager)

    manager.resolve(alert.id, AlertStatus.REJECTED, "admin")
    assert store.get("INV-1").blocked is True
    assert manager.list_alerts(status="rejected")[0].id == alert.id


def test_approval_keeps_block_while_other_alerts_pending():
    store, manager = _setup()
    first = _raise(manager)
    second = _raise(manager)

    manager.resolve(first.id, "approved", "admin")
    assert store.get("INV-1").blocked is True

    manager.resolve(second.id, "approved", "admin")
    assert store.get("INV-1").blocked is False


def test_unknown_alert_resolution_is_noop():
    _, manager = _setup()
    assert manager.resolve("ALERT-999999", "approved", "admin") is None


def test_resolving_back_to_pending_is_rejected():
    _, manager = _setup()
    alert = _raise(manager)
    with pytest.raises(ValidationError):
        manager.resolve(alert.id, "pending", "admin")


def test_alerts_do_not_block_when_disabled():
    store, manager = _setup(block_on_mismatch=False)
    _raise(manager)
    assert store.get("INV-1").blocked is False


def test_list_alerts_filters_by_invoice():
    _, manager = _setup()
    _raise(manager, "INV-1")
    other = _raise(manager, "INV-2")

    assert [alert.id for alert in manager.list_alerts(invoice_id="INV-2")] == [other.id]


def test_block_and_unblock_leave_audit_stamps_alone():
    store, manager = _setup()
    alert = _raise(manager)
    blocked = store.get("INV-1")
    assert blocked.blocked_at is not None
    assert blocked.audited_by is None

    manager.resolve(alert.id, "approved", "admin")
    record = store.get("INV-1")
    assert record.blocked_at is None
    assert record.audited_by is None
    assert record.audited_at is None
