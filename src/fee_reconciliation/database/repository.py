"""Repository layer for ledger persistence operations.

Repositories flush but never commit; the service layer owns the unit of work.
"""

import uuid
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Dict, Any, List

from sqlalchemy import select, update, func, case, and_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    Payer,
    Payment,
    Statement,
    Transaction,
    Notification,
    MatchStatus,
    PaymentStatus,
    TransactionStatus,
    compute_payment_status,
    utcnow,
)

logger = logging.getLogger(__name__)


def _dialect_insert(session: AsyncSession, table):
    """Return an INSERT construct that supports ON CONFLICT for the bound dialect."""
    dialect_name = session.get_bind().dialect.name
    if dialect_name == "postgresql":
        return postgresql.insert(table)
    if dialect_name == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"Upserts are not supported on {dialect_name}")


class PayerDirectory(ABC):
    """Lookup interface the matching engine uses to find payers."""

    @abstractmethod
    async def find_by_id(self, payer_id: str) -> Optional[Payer]:
        pass

    @abstractmethod
    async def find_by_reference(self, reference: str) -> Optional[Payer]:
        pass

    @abstractmethod
    async def find_by_student_number(self, student_number: str) -> Optional[Payer]:
        pass

    @abstractmethod
    async def list_active(self) -> List[Payer]:
        pass


class PayerRepository(PayerDirectory):
    """Read access to payers; the default PayerDirectory."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def create(
        self,
        payment_reference: str,
        full_name: str,
        monthly_fee: Decimal,
        student_number: Optional[str] = None,
        active: bool = True,
    ) -> Payer:
        """Create a payer record. Used for seeding; payer administration lives elsewhere."""
        payer = Payer(
            payment_reference=payment_reference,
            full_name=full_name,
            monthly_fee=monthly_fee,
            student_number=student_number,
            active=active,
        )
        self.session.add(payer)
        await self.session.flush()
        return payer

    async def find_by_id(self, payer_id: str) -> Optional[Payer]:
        return await self.session.get(Payer, payer_id)

    async def find_by_reference(self, reference: str) -> Optional[Payer]:
        """Find an active payer by payment reference, ignoring case and surrounding spaces."""
        normalized = reference.strip().lower()
        if not normalized:
            return None
        result = await self.session.execute(
            select(Payer)
            .where(
                and_(
                    func.lower(Payer.payment_reference) == normalized,
                    Payer.active.is_(True),
                )
            )
            .order_by(Payer.id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_by_student_number(self, student_number: str) -> Optional[Payer]:
        result = await self.session.execute(
            select(Payer).where(Payer.student_number == student_number)
        )
        return result.scalar_one_or_none()

    async def list_active(self) -> List[Payer]:
        """Active payers in a stable order (full name, then id)."""
        result = await self.session.execute(
            select(Payer)
            .where(Payer.active.is_(True))
            .order_by(Payer.full_name, Payer.id)
        )
        return list(result.scalars().all())


class StatementRepository:
    """Repository for Statement records."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, file_name: str) -> Statement:
        statement = Statement(file_name=file_name)
        self.session.add(statement)
        await self.session.flush()
        return statement

    async def get_by_id(self, statement_id: str) -> Optional[Statement]:
        return await self.session.get(Statement, statement_id)

    async def list_recent(self, limit: int = 50) -> List[Statement]:
        result = await self.session.execute(
            select(Statement).order_by(Statement.uploaded_at.desc()).limit(limit)
        )
        return list(result.scalars().all())


class TransactionRepository:
    """Repository for Transaction records."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def insert_if_absent(self, values: Dict[str, Any]) -> Optional[Transaction]:
        """Insert a transaction unless its bank_reference already exists.

        Args:
            values: Column values for the new row; must include bank_reference.

        Returns:
            The inserted Transaction, or None when the bank reference was taken.
        """
        values = dict(values)
        values.setdefault("id", str(uuid.uuid4()))
        values.setdefault("status", TransactionStatus.UNMATCHED.value)
        values.setdefault("created_at", utcnow())

        stmt = (
            _dialect_insert(self.session, Transaction.__table__)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["bank_reference"])
            .returning(Transaction.__table__.c.id)
        )
        result = await self.session.execute(stmt)
        inserted_id = result.scalar_one_or_none()
        if inserted_id is None:
            logger.info(f"Transaction with bank reference {values['bank_reference']} already exists, skipping")
            return None
        return await self.session.get(Transaction, inserted_id)

    async def get_by_id(self, transaction_id: str) -> Optional[Transaction]:
        return await self.session.get(Transaction, transaction_id)

    async def get_by_bank_reference(self, bank_reference: str) -> Optional[Transaction]:
        result = await self.session.execute(
            select(Transaction).where(Transaction.bank_reference == bank_reference)
        )
        return result.scalar_one_or_none()

    async def content_hash_seen_elsewhere(self, content_hash: str, statement_id: str) -> bool:
        """Whether a transaction with this content hash came from another statement."""
        result = await self.session.execute(
            select(Transaction.id)
            .where(
                and_(
                    Transaction.content_hash == content_hash,
                    Transaction.statement_id != statement_id,
                )
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def get_unmatched(self) -> List[Transaction]:
        result = await self.session.execute(
            select(Transaction)
            .where(Transaction.status == TransactionStatus.UNMATCHED.value)
            .order_by(Transaction.transaction_date.desc(), Transaction.created_at.desc())
        )
        return list(result.scalars().all())

    async def get_unmatched_with_reference(self) -> List[Transaction]:
        """Unmatched transactions that carry a non-blank reference, oldest first."""
        result = await self.session.execute(
            select(Transaction)
            .where(
                and_(
                    Transaction.status == TransactionStatus.UNMATCHED.value,
                    Transaction.reference.is_not(None),
                    func.trim(Transaction.reference) != "",
                )
            )
            .order_by(Transaction.transaction_date, Transaction.created_at)
        )
        return list(result.scalars().all())

    async def list_by_statement(self, statement_id: str) -> List[Transaction]:
        result = await self.session.execute(
            select(Transaction)
            .where(Transaction.statement_id == statement_id)
            .order_by(Transaction.transaction_date, Transaction.created_at)
        )
        return list(result.scalars().all())


class NotificationRepository:
    """Repository for Notification records."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        raw_payload: str,
        subject: Optional[str] = None,
        sender: Optional[str] = None,
        source: Optional[str] = None,
    ) -> Notification:
        notification = Notification(
            raw_payload=raw_payload,
            subject=subject,
            sender=sender,
            source=source,
            match_status=MatchStatus.PENDING.value,
        )
        self.session.add(notification)
        await self.session.flush()
        return notification

    async def get_by_id(self, notification_id: str) -> Optional[Notification]:
        return await self.session.get(Notification, notification_id)

    async def get_by_hash(self, duplicate_hash: str) -> Optional[Notification]:
        result = await self.session.execute(
            select(Notification).where(Notification.duplicate_hash == duplicate_hash)
        )
        return result.scalar_one_or_none()

    async def get_by_transaction_id(self, transaction_id: str) -> Optional[Notification]:
        result = await self.session.execute(
            select(Notification).where(Notification.transaction_id == transaction_id).limit(1)
        )
        return result.scalar_one_or_none()

    async def list_by_status(self, status: MatchStatus, limit: Optional[int] = None) -> List[Notification]:
        query = (
            select(Notification)
            .where(Notification.match_status == status.value)
            .order_by(Notification.received_at)
        )
        if limit is not None:
            query = query.limit(limit)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def count_by_status(self) -> Dict[str, int]:
        result = await self.session.execute(
            select(Notification.match_status, func.count(Notification.id))
            .group_by(Notification.match_status)
        )
        return {status: count for status, count in result.all()}

    async def count_since(self, since: datetime) -> int:
        result = await self.session.execute(
            select(func.count(Notification.id)).where(Notification.received_at >= since)
        )
        return result.scalar_one()

    async def count_last_24h(self) -> int:
        return await self.count_since(utcnow() - timedelta(hours=24))


class PaymentRepository:
    """Repository for Payment records."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, payment_id: str) -> Optional[Payment]:
        return await self.session.get(Payment, payment_id)

    async def get_for_period(self, payer_id: str, month: int, year: int) -> Optional[Payment]:
        result = await self.session.execute(
            select(Payment).where(
                and_(
                    Payment.payer_id == payer_id,
                    Payment.period_month == month,
                    Payment.period_year == year,
                )
            )
        )
        return result.scalar_one_or_none()

    async def record_payment(
        self,
        payer_id: str,
        month: int,
        year: int,
        amount: Decimal,
        expected_amount: Decimal,
        source_transaction_id: Optional[str] = None,
        matched_automatically: bool = True,
        notes: Optional[str] = None,
    ) -> Payment:
        """Create the period's payment or add to it, in one atomic statement.

        The increment and the status recomputation happen inside the
        INSERT ... ON CONFLICT DO UPDATE, so concurrent writers for the same
        (payer, month, year) cannot lose updates.

        Args:
            payer_id: Payer being credited.
            month: Billing period month (1-12).
            year: Billing period year.
            amount: Amount to add.
            expected_amount: Fee due; only used when the row is created.
            source_transaction_id: Transaction that produced the amount.
            matched_automatically: False for manual overrides.
            notes: Free-text note stored on the payment.

        Returns:
            The payment row as it is after the write.
        """
        table = Payment.__table__
        now = utcnow()
        stmt = _dialect_insert(self.session, table).values(
            id=str(uuid.uuid4()),
            payer_id=payer_id,
            period_month=month,
            period_year=year,
            amount_paid=amount,
            expected_amount=expected_amount,
            status=compute_payment_status(amount, expected_amount).value,
            source_transaction_id=source_transaction_id,
            matched_automatically=matched_automatically,
            notes=notes,
            created_at=now,
            updated_at=now,
        )
        new_total = table.c.amount_paid + stmt.excluded.amount_paid
        stmt = stmt.on_conflict_do_update(
            index_elements=["payer_id", "period_month", "period_year"],
            set_={
                "amount_paid": new_total,
                "status": case(
                    (new_total >= table.c.expected_amount, PaymentStatus.PAID.value),
                    (new_total > 0, PaymentStatus.PARTIAL.value),
                    else_=PaymentStatus.PENDING.value,
                ),
                "source_transaction_id": stmt.excluded.source_transaction_id,
                "matched_automatically": stmt.excluded.matched_automatically,
                "notes": stmt.excluded.notes,
                "updated_at": stmt.excluded.updated_at,
            },
        ).returning(table.c.id)

        result = await self.session.execute(stmt)
        payment_id = result.scalar_one()
        payment = await self.session.get(Payment, payment_id, populate_existing=True)
        logger.info(
            f"Recorded {amount} for payer {payer_id} period {month:02d}/{year}: "
            f"total {payment.amount_paid}, status {payment.status}"
        )
        return payment

    async def reverse_payment(self, payment_id: str, amount: Decimal) -> Optional[Payment]:
        """Take an amount back off a payment, in one atomic statement.

        Used when a transaction is re-attributed, so the credit it made to
        its previous payment does not stay counted there.

        Args:
            payment_id: Payment previously credited.
            amount: Amount to remove.

        Returns:
            The payment after the write, or None if it no longer exists.
        """
        table = Payment.__table__
        new_total = table.c.amount_paid - amount
        stmt = (
            update(table)
            .where(table.c.id == payment_id)
            .values(
                amount_paid=new_total,
                status=case(
                    (new_total >= table.c.expected_amount, PaymentStatus.PAID.value),
                    (new_total > 0, PaymentStatus.PARTIAL.value),
                    else_=PaymentStatus.PENDING.value,
                ),
                updated_at=utcnow(),
            )
            .returning(table.c.id)
        )
        result = await self.session.execute(stmt)
        if result.scalar_one_or_none() is None:
            logger.warning(f"Payment {payment_id} not found, nothing to reverse")
            return None

        payment = await self.session.get(Payment, payment_id, populate_existing=True)
        logger.info(
            f"Reversed {amount} from payment {payment_id}: "
            f"total {payment.amount_paid}, status {payment.status}"
        )
        return payment
