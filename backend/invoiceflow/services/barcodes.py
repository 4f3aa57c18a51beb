"""Barcode payload normalisation.

Some wired scanners emit ASCII-triplet encoded payloads such as
``"050048056"`` for the bytes ``[50, 48, 56]`` (``"208"``). Payloads are
canonicalised to readable text before they are compared or stored.
"""
from __future__ import annotations

import re
from typing import Any, Optional

_UNSAFE_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_PRINTABLE = re.compile(r"[\x09\x0A\x0D\x20-\x7E]")
_DIGITS = re.compile(r"^\d+$")

MIN_TRIPLET_LENGTH = 6
MIN_PRINTABLE_RATIO = 0.85


def strip_unsafe_control_chars(value: str) -> str:
    """Drop control characters other than tab, newline and carriage return."""
    return _UNSAFE_CONTROL_CHARS.sub("", value)


def _is_likely_ascii_triplets(value: str) -> bool:
    trimmed = value.strip()
    if len(trimmed) < MIN_TRIPLET_LENGTH or len(trimmed) % 3 != 0:
        return False
    return bool(_DIGITS.match(trimmed))


def decode_ascii_triplets(value: str) -> Optional[str]:
    """Decode a triplet payload, or return None when it does not look like one."""
    text = value.strip()
    if not _is_likely_ascii_triplets(text):
        return None

    codes = [int(text[i:i + 3]) for i in range(0, len(text), 3)]
    if any(code > 255 for code in codes):
        return None

    decoded = "".join(chr(code) for code in codes)
    printable = len(_PRINTABLE.findall(decoded))
    if not decoded or printable / len(decoded) < MIN_PRINTABLE_RATIO:
        return None
    return decoded


def encode_ascii_triplets(value: str) -> str:
    return "".join(f"{ord(char) & 0xFF:03d}" for char in str(value or ""))


def canonicalize_barcode(value: Any) -> str:
    """Return the readable form of a scanned payload."""
    text = strip_unsafe_control_chars(str(value if value is not None else "")).replace("\r\n", "\n")
    decoded = decode_ascii_triplets(text)
    if decoded is not None:
        return strip_unsafe_control_chars(decoded).replace("\r\n", "\n")
    return text
