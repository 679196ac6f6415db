"""Content checksums stored in memory metadata.

``content_checksum`` is the legacy 32-bit rolling hash kept for change
detection and compatibility with records already on the ledger. It is not a
security control. ``content_hash`` is a SHA-256 digest used for tamper
evidence.
"""

from __future__ import annotations

import hashlib


def _utf16_units(text: str):
    data = text.encode("utf-16-le")
    for i in range(0, len(data), 2):
        yield data[i] | (data[i + 1] << 8)


def content_checksum(text: str) -> str:
    """Return the 32-bit rolling hash of ``text`` as lowercase hex."""
    value = 0
    for unit in _utf16_units(text):
        value = ((value << 5) - value + unit) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return format(abs(value), "x")


def content_hash(text: str) -> str:
    """Return the SHA-256 hex digest of ``text`` encoded as UTF-8."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()
