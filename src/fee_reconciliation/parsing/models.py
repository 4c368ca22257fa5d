"""Value types produced by the statement and notification parsers."""

import enum
import datetime
from decimal import Decimal
from typing import Optional, List

from pydantic import BaseModel, Field, field_validator


class SourceKind(str, enum.Enum):
    """Where a raw transaction came from."""
    STATEMENT = "statement"
    NOTIFICATION = "notification"


class StatementDialect(str, enum.Enum):
    """Statement layouts the parser understands."""
    GENERIC_CSV = "generic_csv"
    BANK_BLOCK_CSV = "bank_block_csv"
    MARKDOWN = "markdown"
    PDF_BLOCK = "pdf_block"


class TransactionType(str, enum.Enum):
    """Direction of money in a notification."""
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class RawTransaction(BaseModel):
    """A parsed credit, before persistence. Amount is always positive."""
    date: datetime.date = Field(..., description="Transaction date")
    amount: Decimal = Field(..., gt=0, description="Credit amount")
    description: str = Field(default="", description="Free-text description")
    reference: Optional[str] = Field(default=None, description="Payment reference or pseudo-reference")
    balance: Optional[Decimal] = Field(default=None, description="Running balance after the transaction")
    sender_name: Optional[str] = Field(default=None, description="Sender as reported by the bank")
    source_kind: SourceKind = Field(default=SourceKind.STATEMENT)
    bank_reference: Optional[str] = Field(default=None, description="Unique key for statement rows")
    raw_data: Optional[str] = Field(default=None, description="Source line or record")

    @field_validator("amount", "balance")
    @classmethod
    def _two_places(cls, value: Optional[Decimal]) -> Optional[Decimal]:
        if value is None:
            return None
        return value.quantize(Decimal("0.01"))


class StatementParseResult(BaseModel):
    """Transactions parsed from one statement file."""
    transactions: List[RawTransaction] = Field(default_factory=list)
    errors_skipped: int = Field(default=0, description="Malformed rows that were skipped")
    dialect: StatementDialect


class ParsedNotification(BaseModel):
    """Fields extracted from a bank-alert notification."""
    valid: bool = False
    transaction_date: Optional[datetime.date] = None
    amount: Optional[Decimal] = None
    reference: Optional[str] = None
    balance: Optional[Decimal] = None
    description: Optional[str] = None
    sender_name: Optional[str] = None
    transaction_type: TransactionType = TransactionType.CREDIT
    error_message: Optional[str] = None

    def to_raw_transaction(self) -> RawTransaction:
        """Convert a valid parse into a RawTransaction.

        Raises:
            ValueError: If the parse is not valid.
        """
        if not self.valid:
            raise ValueError(self.error_message or "Notification parse is not valid")
        return RawTransaction(
            date=self.transaction_date,
            amount=self.amount,
            description=self.description or "",
            reference=self.reference,
            balance=self.balance,
            sender_name=self.sender_name,
            source_kind=SourceKind.NOTIFICATION,
        )
