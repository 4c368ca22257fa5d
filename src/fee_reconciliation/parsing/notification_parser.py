"""Parser for bank-alert notification emails.

Each field has its own extractor: a single regular expression run over the
whole text. Extractors do not depend on each other or on field order.
"""

import re
import logging
from datetime import date
from decimal import Decimal
from typing import Optional, List

from .common import parse_date, parse_currency, content_fingerprint, extract_payer_identifier
from .models import ParsedNotification, TransactionType

logger = logging.getLogger(__name__)

_LABELS = r"Date:|Amount:|New Balance:|Balance:|Description:|Reference:"
_LABEL_STOP = r"(?=\n|\r|$|" + _LABELS + ")"
# Values may sit on the line after their label, but never start with another label
_VALUE = r"\s*(?!" + _LABELS + r")(\S.*?)"
_CURRENCY = r"(?:R|ZAR|\$|€|£)?"

DATE_PATTERN = re.compile(
    r"Date:\s*(\d{2}[/-]\d{2}[/-]\d{4}|\d{4}-\d{2}-\d{2})",
    re.IGNORECASE,
)
AMOUNT_PATTERN = re.compile(
    r"Amount:\s*" + _CURRENCY + r"\s*([\d,]+\.\d{2})\b",
    re.IGNORECASE,
)
REFERENCE_PATTERN = re.compile(
    r"Reference:" + _VALUE + _LABEL_STOP,
    re.IGNORECASE | re.DOTALL,
)
BALANCE_PATTERN = re.compile(
    r"(?:New )?Balance:\s*" + _CURRENCY + r"\s*(-?[\d,]+\.\d{2})",
    re.IGNORECASE,
)
DESCRIPTION_PATTERN = re.compile(
    r"Description:" + _VALUE + _LABEL_STOP,
    re.IGNORECASE | re.DOTALL,
)
SENDER_NAME_PATTERN = re.compile(
    r"(?:From|Sender):[ \t]*(.+?)(?=\n|\r|$)",
    re.IGNORECASE,
)
CREDIT_PATTERN = re.compile(r"\b(credit|deposit|received|payment received)\b", re.IGNORECASE)
DEBIT_PATTERN = re.compile(r"\b(debit|withdrawal|payment sent)\b", re.IGNORECASE)

DESCRIPTION_FALLBACK_LENGTH = 100


def _first_group(pattern: "re.Pattern", text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    match = pattern.search(text)
    if not match:
        return None
    value = match.group(1).strip()
    return value or None


def extract_date(text: str) -> Optional[date]:
    return parse_date(_first_group(DATE_PATTERN, text))


def extract_amount(text: str) -> Optional[Decimal]:
    return parse_currency(_first_group(AMOUNT_PATTERN, text))


def extract_reference(text: str) -> Optional[str]:
    return _first_group(REFERENCE_PATTERN, text)


def extract_balance(text: str) -> Optional[Decimal]:
    value = _first_group(BALANCE_PATTERN, text)
    amount = parse_currency(value)
    if amount is not None and value.startswith("-"):
        return -amount
    return amount


def extract_description(text: str, subject: Optional[str] = None) -> Optional[str]:
    """Labelled description, else the subject, else the start of the body."""
    description = _first_group(DESCRIPTION_PATTERN, text)
    if description:
        return description
    if subject and subject.strip():
        return subject.strip()
    if text and text.strip():
        return text.strip()[:DESCRIPTION_FALLBACK_LENGTH]
    return None


def extract_sender_name(text: str) -> Optional[str]:
    return _first_group(SENDER_NAME_PATTERN, text)


def detect_transaction_type(text: str, subject: Optional[str] = None) -> TransactionType:
    """Classify body and subject together.

    Credit vocabulary wins over debit vocabulary; unknown defaults to credit.
    """
    text = " ".join(part for part in (text, subject) if part)
    if CREDIT_PATTERN.search(text):
        return TransactionType.CREDIT
    if DEBIT_PATTERN.search(text):
        return TransactionType.DEBIT
    return TransactionType.CREDIT


def generate_duplicate_hash(txn_date: date, amount: Decimal, reference: str) -> str:
    """Fingerprint of a notification: base64 SHA-256 of "date|amount|reference".

    Args:
        txn_date: Transaction date.
        amount: Transaction amount; formatted with two decimal places.
        reference: Reference as extracted.

    Returns:
        44-character base64 string.
    """
    return content_fingerprint(txn_date, amount, reference)


class NotificationParser:
    """Parses notification bodies into ParsedNotification results."""

    def parse(self, text: str, subject: Optional[str] = None) -> ParsedNotification:
        """Extract fields and validate the required ones.

        Args:
            text: Notification body.
            subject: Email subject, used as a description fallback and when
                classifying credit or debit.

        Returns:
            ParsedNotification; ``valid`` is False when date, amount or
            reference is missing, with the missing names in error_message.
        """
        text = text or ""
        transaction_date = extract_date(text)
        amount = extract_amount(text)
        reference = extract_reference(text)

        missing: List[str] = []
        if transaction_date is None:
            missing.append("date")
        if amount is None or amount <= 0:
            missing.append("amount")
        if not reference:
            missing.append("reference")

        parsed = ParsedNotification(
            valid=not missing,
            transaction_date=transaction_date,
            amount=amount,
            reference=reference,
            balance=extract_balance(text),
            description=extract_description(text, subject),
            sender_name=extract_sender_name(text),
            transaction_type=detect_transaction_type(text, subject),
            error_message=f"Missing required fields: {', '.join(missing)}" if missing else None,
        )
        if missing:
            logger.warning(f"Notification parse incomplete: {parsed.error_message}")
        else:
            logger.debug(f"Parsed notification: {amount} on {transaction_date} ref {reference}")
        return parsed

    @staticmethod
    def extract_payer_identifier(reference: Optional[str]) -> Optional[str]:
        return extract_payer_identifier(reference)
