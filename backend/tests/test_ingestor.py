"""Invoice and schedule ingestion tests."""
from __future__ import annotations

import sys
from datetime import date
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from invoiceflow.core.config import Settings  # noqa: E402
from invoiceflow.core.errors import ValidationError  # noqa: E402
from invoiceflow.models.invoice import LineItemStatus, ScheduleItem  # noqa: E402
from invoiceflow.services.engine import InvoiceEngine  # noqa: E402
from invoiceflow.services.ingestor import InvoiceIngestor, expected_bin_count, parse_date  # noqa: E402


def test_rows_group_into_invoices_with_expected_bins():
    ingestor = InvoiceIngestor(Settings())
    invoices = ingestor.build_invoices(
        [
            {"invoice": "INV-1", "customer": "Acme", "part": "P-1", "qty": 200, "bill_to": "C001"},
            {"invoice": "INV-2", "customer": "Beta", "part": "P-9", "qty": 10, "bill_to": "C002"},
            {"invoice": "INV-1", "customer": "Acme", "part": "P-2", "qty": 40, "bill_to": "C001"},
        ]
    )

    assert [invoice.id for invoice in invoices] == ["INV-1", "INV-2"]
    first = invoices[0]
    assert first.total_quantity == 240
    assert first.bin_capacity == 80
    assert first.expected_bins == 3
    assert [item.part for item in first.items] == ["P-1", "P-2"]
    assert invoices[1].expected_bins == 1


def test_negative_quantities_count_by_magnitude():
    invoices = InvoiceIngestor(Settings()).build_invoices(
        [
            {"invoice": "CR-1", "customer": "Acme", "part": "P-1", "qty": 100},
            {"invoice": "CR-1", "customer": "Acme", "part": "P-1", "qty": -20},
        ]
    )
    assert invoices[0].total_quantity == 120
    assert invoices[0].expected_bins == 2


def test_spreadsheet_headers_are_recognised():
    invoices = InvoiceIngestor(Settings()).build_invoices(
        [
            {
                "Invoice Number": "X-1",
                "Cust Name": "Acme",
                "Item Number": "P-7",
                "Qty": "1,200",
                "Bill To": "C009",
                "Invoice Date": "01/05/2024",
                "Customer Item": "CP-7",
            }
        ]
    )
    invoice = invoices[0]
    assert invoice.bill_to == "C009"
    assert invoice.invoice_date == date(2024, 5, 1)
    assert invoice.total_quantity == 1200
    assert invoice.expected_bins == 15
    assert invoice.items[0].customer_item == "CP-7"


def test_schedule_bin_size_applies_when_it_is_a_plant_capacity():
    ingestor = InvoiceIngestor(Settings())
    rows = [{"invoice": "INV-1", "customer": "Acme", "part": "P-1", "qty": 240, "bill_to": "C001", "customer_item": "CP-1"}]

    small_bins = [ScheduleItem(customer_code="C001", part_number="CP-1", bin=50)]
    assert ingestor.build_invoices(rows, small_bins)[0].expected_bins == 5

    odd_bins = [ScheduleItem(customer_code="C001", part_number="CP-1", bin=30)]
    invoice = ingestor.build_invoices(rows, odd_bins)[0]
    assert invoice.bin_capacity == 80
    assert invoice.expected_bins == 3


def test_row_errors_reject_the_whole_upload():
    ingestor = InvoiceIngestor(Settings())
    with pytest.raises(ValidationError) as excinfo:
        ingestor.build_invoices(
            [
                {"invoice": "INV-1", "customer": "Acme", "part": "P-1", "qty": 10, "bill_to": "C001"},
                {"invoice": "INV-1", "customer": "Acme", "part": "P-2", "qty": 10, "bill_to": "C002"},
                {"invoice": "INV-2", "customer": "Acme", "part": "P-3"},
            ]
        )

    errors = excinfo.value.errors
    assert [error["row"] for error in errors] == [3, 4]
    assert "Bill To" in errors[0]["message"]
    assert "qty" in errors[1]["message"]


def test_expected_customer_code_restricts_upload():
    ingestor = InvoiceIngestor(Settings())
    with pytest.raises(ValidationError):
        ingestor.build_invoices(
            [{"invoice": "INV-1", "customer": "Acme", "part": "P-1", "qty": 10, "bill_to": "C002"}],
            expected_customer_code="C001",
        )


def test_empty_upload_is_rejected():
    with pytest.raises(ValidationError):
        InvoiceIngestor(Settings()).build_invoices([])


def test_schedule_upload_classifies_line_items():
    engine = InvoiceEngine(settings=Settings())
    engine.upload_invoices(
        [
            {"invoice": "INV-1", "customer": "Acme", "part": "P-1", "qty": 10, "bill_to": "C001", "customer_item": "CP-1"},
            {"invoice": "INV-1", "customer": "Acme", "part": "P-2", "qty": 10, "bill_to": "C001", "customer_item": "CP-X"},
            {"invoice": "INV-1", "customer": "Acme", "part": "P-3", "qty": 10, "bill_to": "C001"},
        ],
        uploaded_by="alice",
    )

    response = engine.upload_schedule(
        [
            {
                "Customer Code": "C001",
                "Part Number": "CP-1",
                "SNP": 10,
                "Bin": 50,
                "Sheet Name": "Plant 1",
                "Delivery Date": "2024-05-01",
                "Delivery Time": "09:00",
            }
        ],
        uploaded_by="alice",
    )

    assert response.schedule_items == 1
    assert response.customer_codes == ["C001"]
    assert (response.matched_items, response.unmatched_items, response.error_items) == (1, 1, 1)

    record = engine.get_invoice("INV-1")
    assert [item.status for item in record.items] == [
        LineItemStatus.VALID_MATCHED,
        LineItemStatus.VALID_UNMATCHED,
        LineItemStatus.ERROR,
    ]
    assert record.items[2].error_message == "Missing Customer Item"
    assert record.delivery_date == date(2024, 5, 1)
    assert record.delivery_time == "09:00"
    assert [invoice.id for invoice in engine.list_invoices("schedule_matched")] == ["INV-1"]


def test_duplicate_upload_reports_skipped_ids():
    engine = InvoiceEngine(settings=Settings())
    rows = [{"invoice": "INV-1", "customer": "Acme", "part": "P-1", "qty": 240}]

    first = engine.upload_invoices(rows, uploaded_by="alice")
    second = engine.upload_invoices(rows, uploaded_by="alice")

    assert first.inserted == 1
    assert second.inserted == 0
    assert second.skipped_ids == ["INV-1"]
    assert len(engine.list_invoices()) == 1


def test_date_parsing_accepts_common_formats():
    assert parse_date("2024-05-01") == date(2024, 5, 1)
    assert parse_date("01-05-2024") == date(2024, 5, 1)
    assert parse_date(45413) == date(2024, 5, 1)
    assert parse_date("") is None
    with pytest.raises(ValueError):
        parse_date("not a date")


def test_expected_bin_count_rounds_up():
    assert expected_bin_count(240, 80) == 3
    assert expected_bin_count(241, 80) == 4
    assert expected_bin_count(0, 80) == 0
