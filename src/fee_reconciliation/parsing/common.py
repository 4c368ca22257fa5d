"""Parsing helpers shared by the statement and notification parsers."""

import re
import uuid
import base64
import hashlib
import logging
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Optional

logger = logging.getLogger(__name__)

# Tried in order; the first format that parses wins
DATE_FORMATS = [
    "%d %b %y",
    "%d %b %Y",
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%d %B %Y",
    "%Y/%m/%d",
]

PAYER_IDENTIFIER_PATTERN = re.compile(r"STU-\d{4}-\d{3}")

MAX_PSEUDO_REFERENCE_LENGTH = 50

_NON_NUMERIC = re.compile(r"[^0-9.]")
_TWO_PLACES = Decimal("0.01")


def parse_date(text: Optional[str]) -> Optional[date]:
    """Parse a statement or notification date.

    Two-digit years are always read as 20yy.

    Args:
        text: Date text such as "05 Mar 25", "2025-03-05" or "05/03/2025".

    Returns:
        The parsed date, or None if no known format matches.
    """
    if not text:
        return None
    value = " ".join(text.strip().split())
    for fmt in DATE_FORMATS:
        try:
            parsed = datetime.strptime(value, fmt).date()
        except ValueError:
            continue
        if "%y" in fmt:
            parsed = parsed.replace(year=2000 + parsed.year % 100)
        return parsed
    return None


def parse_currency(text: Optional[str]) -> Optional[Decimal]:
    """Convert a money string to a two-place Decimal.

    Every character other than digits and the decimal point is discarded
    first, so signs, currency symbols and thousands separators are ignored.
    Use is_negative_amount() to detect debits.

    Args:
        text: Money text such as "R1,500.00".

    Returns:
        The amount, or None if nothing numeric remains.
    """
    if text is None:
        return None
    cleaned = _NON_NUMERIC.sub("", text)
    if not cleaned or cleaned == ".":
        return None
    try:
        return Decimal(cleaned).quantize(_TWO_PLACES)
    except InvalidOperation:
        logger.debug(f"Could not convert amount: {text!r}")
        return None


def is_negative_amount(text: Optional[str]) -> bool:
    """Whether a money string denotes a debit: leading or trailing minus, or parentheses."""
    if not text:
        return False
    value = text.strip()
    if value.startswith("(") and value.endswith(")"):
        return True
    if value.endswith("-"):
        return True
    return bool(re.match(r"^[A-Za-z]{0,3}\s*-", value))


def extract_payer_identifier(text: Optional[str]) -> Optional[str]:
    """Return the first STU-YYYY-NNN identifier in the text, if any."""
    if not text:
        return None
    match = PAYER_IDENTIFIER_PATTERN.search(text)
    return match.group(0) if match else None


def extract_payment_reference(description: Optional[str]) -> Optional[str]:
    """Derive a reference for a statement row.

    The payer identifier wins when the description carries one; otherwise
    the description itself, truncated, stands in as a pseudo-reference.
    """
    identifier = extract_payer_identifier(description)
    if identifier:
        return identifier
    if not description or not description.strip():
        return None
    return description.strip()[:MAX_PSEUDO_REFERENCE_LENGTH]


def generate_bank_reference(txn_date: date, amount: Decimal) -> str:
    """Unique key for a statement row: date, amount digits and a random salt."""
    amount_digits = f"{amount:.2f}".replace(".", "")
    return f"{txn_date.isoformat()}-{amount_digits}-{uuid.uuid4().hex[:8]}"


def content_fingerprint(txn_date: date, amount: Decimal, text: str) -> str:
    """Base64 SHA-256 over "date|amount|text"."""
    payload = f"{txn_date.isoformat()}|{amount.quantize(_TWO_PLACES)}|{text}"
    digest = hashlib.sha256(payload.encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")
