"""Statement parser for bank statement uploads.

Supported layouts:

* Generic CSV with a header row, columns matched case-insensitively through
  aliases (``Date``/``Transaction Date``, ``Description``/``Narrative``/
  ``Details``, ``Deposits``/``Credit``/``Amount``, ``Balance``/
  ``Running Balance``).
* Bank-block CSV, recognised by a ``Customer Care:`` line near the top. After
  the ``Date Description`` header every logical line reads
  ``<day> <mon> <yy> <description> <amount> <balance>``.
* Markdown exports of the same block layout, one transaction per line.
* PDF statements, reduced to text and read with the block grammar.

Only credits are returned. Malformed rows are logged and counted in
``errors_skipped``; debits are dropped silently.
"""

import csv
import io
import re
import logging
from datetime import date
from decimal import Decimal
from typing import Optional, List, Dict, Iterable, Tuple

from ..errors import UnsupportedFileTypeError
from .common import (
    parse_date,
    parse_currency,
    is_negative_amount,
    extract_payment_reference,
    generate_bank_reference,
)
from .extraction import TextExtractionAdapter, get_text_extractor
from .models import RawTransaction, SourceKind, StatementDialect, StatementParseResult

logger = logging.getLogger(__name__)

BANK_HEADER_MARKER = "Customer Care:"
BANK_MARKER_SCAN_LINES = 5
BLOCK_HEADER = "Date Description"
PAGE_FURNITURE = ("Date Description", "STATEMENT", "Transaction details", "Customer Care")

MARKDOWN_TRANSACTION_LINE = re.compile(r"^\d{1,2} \w{3} \d{2}.*\d+\.\d{2}.*")
MONEY_TOKEN = re.compile(r"^\(?-?R?-?\d[\d,]*\.\d{2}-?\)?$")

DATE_ALIASES = ("date", "transaction date")
DESCRIPTION_ALIASES = ("description", "narrative", "details")
AMOUNT_ALIASES = ("deposits", "deposit", "credit", "amount")
BALANCE_ALIASES = ("balance", "running balance")
DEBIT_ALIASES = ("debit", "debits", "withdrawal", "withdrawals")

EXTENSION_KINDS = {
    ".csv": "csv",
    ".md": "md",
    ".pdf": "pdf",
}


class MalformedRowError(ValueError):
    """A single statement row could not be read."""


class StatementParser:
    """Parses statement uploads into raw credit transactions."""

    def __init__(self, extractor: Optional[TextExtractionAdapter] = None):
        """Initialize the parser.

        Args:
            extractor: Text extraction adapter. Defaults to get_text_extractor().
        """
        self.extractor = extractor or get_text_extractor()

    @staticmethod
    def file_kind(file_name: str) -> str:
        """Map a file name to "csv", "md" or "pdf".

        Raises:
            UnsupportedFileTypeError: For any other extension.
        """
        lowered = (file_name or "").lower()
        for extension, kind in EXTENSION_KINDS.items():
            if lowered.endswith(extension):
                return kind
        raise UnsupportedFileTypeError(file_name)

    def detect_dialect(self, text: str, kind: str) -> StatementDialect:
        if kind == "pdf":
            return StatementDialect.PDF_BLOCK
        if kind == "md":
            return StatementDialect.MARKDOWN
        head = text.splitlines()[:BANK_MARKER_SCAN_LINES]
        if any(BANK_HEADER_MARKER in line for line in head):
            return StatementDialect.BANK_BLOCK_CSV
        return StatementDialect.GENERIC_CSV

    def parse(self, data: bytes, file_name: str) -> StatementParseResult:
        """Parse a statement file.

        Args:
            data: Raw file contents.
            file_name: Original file name; its extension selects the reader.

        Returns:
            StatementParseResult with the credits found and the skipped-row count.

        Raises:
            UnsupportedFileTypeError: If the extension is not .csv, .md or .pdf.
            StatementReadError: If the bytes cannot be read as text.
        """
        kind = self.file_kind(file_name)
        text = self.extractor.extract(data, kind)
        dialect = self.detect_dialect(text, kind)
        logger.info(f"Parsing statement {file_name} as {dialect.value}")

        if dialect == StatementDialect.GENERIC_CSV:
            transactions, skipped = self._parse_generic_csv(text)
        elif dialect == StatementDialect.BANK_BLOCK_CSV:
            transactions, skipped = self._parse_block_lines(
                self._csv_logical_lines(text), pdf_header=False
            )
        elif dialect == StatementDialect.PDF_BLOCK:
            transactions, skipped = self._parse_block_lines(text.splitlines(), pdf_header=True)
        else:
            transactions, skipped = self._parse_markdown(text)

        logger.info(
            f"Parsed {len(transactions)} credit transactions from {file_name}, "
            f"{skipped} rows skipped"
        )
        return StatementParseResult(transactions=transactions, errors_skipped=skipped, dialect=dialect)

    # Generic CSV

    def _parse_generic_csv(self, text: str) -> Tuple[List[RawTransaction], int]:
        reader = csv.DictReader(io.StringIO(text))
        if not reader.fieldnames:
            return [], 0

        columns = {name.strip().lower(): name for name in reader.fieldnames if name}
        date_col = self._find_column(columns, DATE_ALIASES)
        description_col = self._find_column(columns, DESCRIPTION_ALIASES)
        amount_col = self._find_column(columns, AMOUNT_ALIASES)
        balance_col = self._find_column(columns, BALANCE_ALIASES)
        debit_col = self._find_column(columns, DEBIT_ALIASES)

        if date_col is None or description_col is None or amount_col is None:
            logger.warning(f"CSV header is missing date, description or amount columns: {reader.fieldnames}")

        transactions: List[RawTransaction] = []
        skipped = 0
        for row in reader:
            values = [v for k, v in row.items() if k is not None and v]
            if not any(str(v).strip() for v in values):
                continue
            try:
                txn = self._parse_generic_row(row, date_col, description_col, amount_col, balance_col, debit_col)
            except MalformedRowError as e:
                skipped += 1
                logger.warning(f"Skipping CSV row {reader.line_num}: {e}")
                continue
            if txn is not None:
                transactions.append(txn)
        return transactions, skipped

    @staticmethod
    def _find_column(columns: Dict[str, str], aliases: Iterable[str]) -> Optional[str]:
        for alias in aliases:
            if alias in columns:
                return columns[alias]
        return None

    @staticmethod
    def _cell(row: Dict[str, Optional[str]], column: Optional[str]) -> Optional[str]:
        if column is None:
            return None
        value = row.get(column)
        if value is None:
            return None
        value = value.strip()
        return value or None

    def _parse_generic_row(
        self,
        row: Dict[str, Optional[str]],
        date_col: Optional[str],
        description_col: Optional[str],
        amount_col: Optional[str],
        balance_col: Optional[str],
        debit_col: Optional[str],
    ) -> Optional[RawTransaction]:
        date_text = self._cell(row, date_col)
        description = self._cell(row, description_col)
        amount_text = self._cell(row, amount_col)

        if amount_text is None and self._cell(row, debit_col) is not None:
            return None
        if date_text is None or description is None or amount_text is None:
            raise MalformedRowError("missing date, description or amount")

        txn_date = parse_date(date_text)
        if txn_date is None:
            raise MalformedRowError(f"unrecognised date {date_text!r}")

        if is_negative_amount(amount_text):
            return None
        amount = parse_currency(amount_text)
        if amount is None:
            raise MalformedRowError(f"unrecognised amount {amount_text!r}")
        if amount <= 0:
            return None

        balance_text = self._cell(row, balance_col)
        balance = self._signed_currency(balance_text) if balance_text else None
        raw = ",".join(v.strip() for k, v in row.items() if k is not None and v is not None)
        return self._build(txn_date, amount, description, balance, raw)

    # Block layouts

    @staticmethod
    def _csv_logical_lines(text: str) -> List[str]:
        """Read CSV records, joining fields and embedded line breaks with spaces."""
        lines = []
        for record in csv.reader(io.StringIO(text)):
            joined = " ".join(field.strip().strip('"') for field in record)
            lines.append(" ".join(joined.split()))
        return lines

    def _parse_block_lines(self, lines: Iterable[str], pdf_header: bool) -> Tuple[List[RawTransaction], int]:
        transactions: List[RawTransaction] = []
        skipped = 0
        in_section = False

        for line in lines:
            if not in_section:
                if BLOCK_HEADER in line or (pdf_header and "Date" in line and "Description" in line):
                    in_section = True
                continue

            clean = line.strip().strip('"').strip()
            if not clean or any(marker in clean for marker in PAGE_FURNITURE):
                continue

            try:
                txn = self._parse_block_line(clean)
            except MalformedRowError as e:
                skipped += 1
                logger.warning(f"Skipping statement line {clean!r}: {e}")
                continue
            if txn is not None:
                transactions.append(txn)

        if not in_section:
            logger.warning("Statement has no 'Date Description' header; no transactions read")
        return transactions, skipped

    def _parse_markdown(self, text: str) -> Tuple[List[RawTransaction], int]:
        transactions: List[RawTransaction] = []
        skipped = 0
        for line in text.splitlines():
            clean = " ".join(line.replace("|", " ").split())
            if not MARKDOWN_TRANSACTION_LINE.match(clean):
                continue
            try:
                txn = self._parse_block_line(clean)
            except MalformedRowError as e:
                skipped += 1
                logger.warning(f"Skipping markdown line {clean!r}: {e}")
                continue
            if txn is not None:
                transactions.append(txn)
        return transactions, skipped

    def _parse_block_line(self, line: str) -> Optional[RawTransaction]:
        """Read ``<day> <mon> <yy> <description...> <amount> <balance> [trailing]``.

        Amount and balance are the last two money tokens, found scanning
        right to left; any text after the balance belongs to the description.
        """
        tokens = line.split()
        if len(tokens) < 5:
            raise MalformedRowError("too few fields")

        txn_date = parse_date(" ".join(tokens[:3]))
        if txn_date is None:
            raise MalformedRowError(f"unrecognised date {' '.join(tokens[:3])!r}")

        balance_index = None
        amount_index = None
        for index in range(len(tokens) - 1, 2, -1):
            if not MONEY_TOKEN.match(tokens[index]):
                continue
            if balance_index is None:
                balance_index = index
            else:
                amount_index = index
                break

        if amount_index is None or balance_index is None:
            raise MalformedRowError("amount and balance not found")

        amount_text = tokens[amount_index]
        if is_negative_amount(amount_text):
            return None
        amount = parse_currency(amount_text)
        if amount is None or amount <= 0:
            return None

        description = " ".join(tokens[3:amount_index] + tokens[balance_index + 1:])
        balance = self._signed_currency(tokens[balance_index])
        return self._build(txn_date, amount, description, balance, line)

    # Shared

    @staticmethod
    def _signed_currency(text: str) -> Optional[Decimal]:
        value = parse_currency(text)
        if value is not None and is_negative_amount(text):
            return -value
        return value

    @staticmethod
    def _build(
        txn_date: date,
        amount: Decimal,
        description: str,
        balance: Optional[Decimal],
        raw: str,
    ) -> RawTransaction:
        return RawTransaction(
            date=txn_date,
            amount=amount,
            description=description,
            reference=extract_payment_reference(description),
            balance=balance,
            source_kind=SourceKind.STATEMENT,
            bank_reference=generate_bank_reference(txn_date, amount),
            raw_data=raw,
        )
