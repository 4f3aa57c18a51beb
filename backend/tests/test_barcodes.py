"""Barcode canonicalisation and gatepass helper tests."""
from __future__ import annotations

import sys
from datetime import date, datetime, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from invoiceflow.core.config import Settings  # noqa: E402
from invoiceflow.models.dispatch import DeliveryStatus  # noqa: E402
from invoiceflow.services.barcodes import (  # noqa: E402
    canonicalize_barcode,
    decode_ascii_triplets,
    encode_ascii_triplets,
)
from invoiceflow.services.gatepass import GatepassRegistry, delivery_status  # noqa: E402


def test_triplet_payload_decodes_to_text():
    assert decode_ascii_triplets("050048056") == "208"
    assert canonicalize_barcode("065066067") == "ABC"
    assert decode_ascii_triplets(encode_ascii_triplets("PART-42")) == "PART-42"


def test_non_triplet_payloads_pass_through():
    assert decode_ascii_triplets("12345") is None
    assert decode_ascii_triplets("999999") is None
    assert decode_ascii_triplets("001002003") is None
    assert canonicalize_barcode("001002003") == "001002003"
    assert canonicalize_barcode("PART|80|B1") == "PART|80|B1"


def test_control_characters_are_stripped():
    assert canonicalize_barcode("AB\x00C\x1b") == "ABC"
    assert canonicalize_barcode("line1\r\nline2") == "line1\nline2"
    assert canonicalize_barcode(None) == ""


def test_delivery_status_compares_dispatch_day():
    dispatched = datetime(2024, 5, 1, 18, 30, tzinfo=timezone.utc)
    assert delivery_status(date(2024, 5, 1), dispatched) == DeliveryStatus.ON_TIME
    assert delivery_status(date(2024, 5, 3), dispatched) == DeliveryStatus.ON_TIME
    assert delivery_status(date(2024, 4, 30), dispatched) == DeliveryStatus.LATE
    assert delivery_status(None, dispatched) == DeliveryStatus.UNKNOWN


def test_gatepass_numbers_restart_per_day():
    registry = GatepassRegistry(settings=Settings(gatepass_prefix="GP"))
    first_day = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)
    second_day = datetime(2024, 5, 2, 8, 0, tzinfo=timezone.utc)

    assert registry.next_number(first_day) == "GP-20240501-0001"
    assert registry.next_number(first_day) == "GP-20240501-0002"
    assert registry.next_number(second_day) == "GP-20240502-0001"
