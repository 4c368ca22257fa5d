"""SQLAlchemy models for the reconciliation ledger."""

import uuid
import enum
from datetime import datetime, date, timezone
from decimal import Decimal
from typing import Optional, Dict, Any

from sqlalchemy import (
    String,
    Integer,
    Boolean,
    Date,
    DateTime,
    Numeric,
    ForeignKey,
    Text,
    Index,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ..errors import InvalidStateTransition


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_id() -> str:
    return str(uuid.uuid4())


def _money(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else f"{value:.2f}"


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class StatementStatus(str, enum.Enum):
    """Lifecycle of an uploaded statement."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class TransactionStatus(str, enum.Enum):
    """Attribution state of a bank transaction."""
    UNMATCHED = "unmatched"
    MATCHED = "matched"
    PARTIALLY_MATCHED = "partially_matched"
    IGNORED = "ignored"
    DISPUTED = "disputed"


class MatchStatus(str, enum.Enum):
    """Processing outcome of a bank notification."""
    PENDING = "pending"
    MATCHED = "matched"
    UNMATCHED = "unmatched"
    MANUAL = "manual"
    FAILED = "failed"
    DUPLICATE = "duplicate"


class PaymentStatus(str, enum.Enum):
    """Settlement state of a payer's fee for one billing period."""
    PENDING = "pending"
    PAID = "paid"
    PARTIAL = "partial"
    OVERPAID = "overpaid"
    REVERSED = "reversed"


def compute_payment_status(amount_paid: Decimal, expected_amount: Decimal) -> PaymentStatus:
    """Derive a payment status from the accumulated amount.

    Args:
        amount_paid: Total received for the period.
        expected_amount: Fee due for the period.

    Returns:
        PAID when the fee is covered, PARTIAL when something was received, otherwise PENDING.
    """
    if amount_paid >= expected_amount:
        return PaymentStatus.PAID
    if amount_paid > 0:
        return PaymentStatus.PARTIAL
    return PaymentStatus.PENDING


class Payer(Base):
    """A fee-paying child account. Owned by the administration side; read-only here."""
    __tablename__ = "payers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    payment_reference: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    student_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True, unique=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    monthly_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_payers_active", "active"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "payment_reference": self.payment_reference,
            "student_number": self.student_number,
            "full_name": self.full_name,
            "monthly_fee": _money(self.monthly_fee),
            "active": self.active,
        }


class Statement(Base):
    """An uploaded statement file and its processing summary."""
    __tablename__ = "statements"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    dialect: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=StatementStatus.PENDING.value)

    total_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    matched_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unmatched_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duplicate_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    uploaded_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_statements_status", "status"),
        Index("ix_statements_uploaded_at", "uploaded_at"),
    )

    def mark_processing(self) -> None:
        if self.status != StatementStatus.PENDING.value:
            raise InvalidStateTransition("statement", self.status, StatementStatus.PROCESSING.value)
        self.status = StatementStatus.PROCESSING.value

    def mark_completed(self) -> None:
        if self.status != StatementStatus.PROCESSING.value:
            raise InvalidStateTransition("statement", self.status, StatementStatus.COMPLETED.value)
        self.status = StatementStatus.COMPLETED.value
        self.processed_at = utcnow()

    def mark_failed(self, error_message: str) -> None:
        self.status = StatementStatus.FAILED.value
        self.error_message = error_message
        self.processed_at = utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "file_name": self.file_name,
            "dialect": self.dialect,
            "status": self.status,
            "total_count": self.total_count,
            "matched_count": self.matched_count,
            "unmatched_count": self.unmatched_count,
            "duplicate_count": self.duplicate_count,
            "skipped_count": self.skipped_count,
            "error_message": self.error_message,
            "uploaded_at": self.uploaded_at.isoformat() if self.uploaded_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }


class Transaction(Base):
    """A bank credit, from a statement row or a notification."""
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    bank_reference: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    transaction_date: Mapped[date] = mapped_column(Date, nullable=False)
    reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    balance: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    sender_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    content_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    source_kind: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default=TransactionStatus.UNMATCHED.value)

    manually_matched: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    match_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    statement_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("statements.id"), nullable=True)
    payer_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("payers.id"), nullable=True)
    payment_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("payments.id"), nullable=True)

    raw_data: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    matched_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_transactions_status", "status"),
        Index("ix_transactions_statement_id", "statement_id"),
        Index("ix_transactions_content_hash", "content_hash"),
        Index("ix_transactions_transaction_date", "transaction_date"),
    )

    def mark_matched(
        self,
        payer_id: str,
        payment_id: str,
        partial: bool,
        note: str,
        manual: bool = False,
    ) -> None:
        """Attribute the transaction to a payer's payment.

        Args:
            payer_id: Matched payer.
            payment_id: Payment row the amount was accumulated into.
            partial: Whether the payment is still short of the fee.
            note: Human-readable explanation stored in match_notes.
            manual: Manual overrides may re-attribute an already matched transaction.

        Raises:
            InvalidStateTransition: If an automatic match targets a non-UNMATCHED transaction.
        """
        target = TransactionStatus.PARTIALLY_MATCHED if partial else TransactionStatus.MATCHED
        if not manual and self.status != TransactionStatus.UNMATCHED.value:
            raise InvalidStateTransition("transaction", self.status, target.value)
        self.status = target.value
        self.payer_id = payer_id
        self.payment_id = payment_id
        self.match_notes = note
        self.manually_matched = manual
        self.matched_at = utcnow()

    def mark_ignored(self, note: Optional[str] = None) -> None:
        if self.status != TransactionStatus.UNMATCHED.value:
            raise InvalidStateTransition("transaction", self.status, TransactionStatus.IGNORED.value)
        self.status = TransactionStatus.IGNORED.value
        self.match_notes = note

    def mark_disputed(self, note: Optional[str] = None) -> None:
        if self.status != TransactionStatus.UNMATCHED.value:
            raise InvalidStateTransition("transaction", self.status, TransactionStatus.DISPUTED.value)
        self.status = TransactionStatus.DISPUTED.value
        self.match_notes = note

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bank_reference": self.bank_reference,
            "amount": _money(self.amount),
            "transaction_date": self.transaction_date.isoformat() if self.transaction_date else None,
            "reference": self.reference,
            "description": self.description,
            "balance": _money(self.balance),
            "sender_name": self.sender_name,
            "source_kind": self.source_kind,
            "status": self.status,
            "manually_matched": self.manually_matched,
            "match_notes": self.match_notes,
            "statement_id": self.statement_id,
            "payer_id": self.payer_id,
            "payment_id": self.payment_id,
            "matched_at": self.matched_at.isoformat() if self.matched_at else None,
        }


class Notification(Base):
    """A bank-alert notification received through the webhook."""
    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    received_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    raw_payload: Mapped[str] = mapped_column(Text, nullable=False)
    subject: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    sender: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    source: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # NULL for rows that were themselves duplicates
    duplicate_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, unique=True)
    match_status: Mapped[str] = mapped_column(String(20), nullable=False, default=MatchStatus.PENDING.value)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    transaction_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    balance: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    transaction_type: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)

    transaction_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("transactions.id"), nullable=True)
    matched_payer_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("payers.id"), nullable=True)
    matched_payment_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("payments.id"), nullable=True)

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("ix_notifications_match_status", "match_status"),
        Index("ix_notifications_received_at", "received_at"),
        Index("ix_notifications_transaction_id", "transaction_id"),
    )

    def finish(self, status: MatchStatus, error_message: Optional[str] = None) -> None:
        self.match_status = status.value
        self.error_message = error_message
        self.processed = True
        self.processed_at = utcnow()

    def mark_failed(self, error_message: str) -> None:
        self.match_status = MatchStatus.FAILED.value
        self.error_message = error_message
        self.processed = False
        self.processed_at = utcnow()

    def reset_for_retry(self) -> None:
        if self.match_status != MatchStatus.FAILED.value:
            raise InvalidStateTransition("notification", self.match_status, MatchStatus.PENDING.value)
        self.match_status = MatchStatus.PENDING.value
        self.error_message = None
        self.duplicate_hash = None
        self.retry_count += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "received_at": self.received_at.isoformat() if self.received_at else None,
            "subject": self.subject,
            "sender": self.sender,
            "source": self.source,
            "match_status": self.match_status,
            "processed": self.processed,
            "transaction_date": self.transaction_date.isoformat() if self.transaction_date else None,
            "amount": _money(self.amount),
            "reference": self.reference,
            "transaction_type": self.transaction_type,
            "transaction_id": self.transaction_id,
            "matched_payer_id": self.matched_payer_id,
            "error_message": self.error_message,
            "retry_count": self.retry_count,
        }


class Payment(Base):
    """Accumulated amount a payer paid for one billing period."""
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    payer_id: Mapped[str] = mapped_column(String(36), ForeignKey("payers.id"), nullable=False)
    period_month: Mapped[int] = mapped_column(Integer, nullable=False)
    period_year: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_paid: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    expected_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    source_transaction_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    matched_automatically: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("payer_id", "period_month", "period_year", name="uq_payments_payer_period"),
        Index("ix_payments_status", "status"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "payer_id": self.payer_id,
            "period_month": self.period_month,
            "period_year": self.period_year,
            "amount_paid": _money(self.amount_paid),
            "expected_amount": _money(self.expected_amount),
            "status": self.status,
            "source_transaction_id": self.source_transaction_id,
            "matched_automatically": self.matched_automatically,
            "notes": self.notes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
