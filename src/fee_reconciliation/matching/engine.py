"""Matching engine: attributes transactions to payers and updates the ledger."""

import asyncio
import logging
import weakref
from typing import Optional, List, Sequence, Tuple

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models import (
    Payer,
    Payment,
    Transaction,
    MatchStatus,
    PaymentStatus,
    utcnow,
)
from ..database.repository import (
    PayerDirectory,
    PayerRepository,
    PaymentRepository,
    TransactionRepository,
    NotificationRepository,
)
from ..errors import NotFoundError
from ..parsing.models import RawTransaction, SourceKind
from .strategies import MatchingStrategy, DEFAULT_STRATEGIES

logger = logging.getLogger(__name__)

# Batch matching runs one at a time per event loop
_batch_locks = weakref.WeakKeyDictionary()


def get_batch_lock() -> asyncio.Lock:
    """Return the match_all lock for the running event loop, creating it on first use."""
    loop = asyncio.get_running_loop()
    lock = _batch_locks.get(loop)
    if lock is None:
        lock = _batch_locks[loop] = asyncio.Lock()
    return lock


class MatchResult(BaseModel):
    """Outcome of running the strategy chain on one transaction."""
    matched: bool = False
    payer_id: Optional[str] = None
    strategy: Optional[str] = None
    note: Optional[str] = None


def transaction_to_raw(transaction: Transaction) -> RawTransaction:
    """Rebuild the parser view of a stored transaction."""
    return RawTransaction(
        date=transaction.transaction_date,
        amount=transaction.amount,
        description=transaction.description or "",
        reference=transaction.reference,
        balance=transaction.balance,
        sender_name=transaction.sender_name,
        source_kind=SourceKind(transaction.source_kind),
        bank_reference=transaction.bank_reference,
    )


class MatchingEngine:
    """Runs matching strategies and applies matches to the ledger.

    The engine flushes but does not commit; callers own the unit of work.
    """

    def __init__(
        self,
        session: AsyncSession,
        strategies: Sequence[MatchingStrategy] = DEFAULT_STRATEGIES,
        directory: Optional[PayerDirectory] = None,
        batch_lock: Optional[asyncio.Lock] = None,
    ):
        """Initialize the engine.

        Args:
            session: Async database session.
            strategies: Strategies in the order they are tried.
            directory: Payer lookup. Defaults to a PayerRepository on the session.
            batch_lock: Lock serializing match_all(). Defaults to one lock per event loop.
        """
        self.session = session
        self.strategies = tuple(strategies)
        self.directory = directory or PayerRepository(session)
        self.payments = PaymentRepository(session)
        self.transactions = TransactionRepository(session)
        self.notifications = NotificationRepository(session)
        self._batch_lock = batch_lock

    async def _find(self, txn: RawTransaction) -> Optional[Tuple[Payer, MatchingStrategy]]:
        for strategy in self.strategies:
            payer = await strategy.find_payer(txn, self.directory)
            if payer is not None:
                return payer, strategy
        return None

    async def match(self, txn: RawTransaction) -> MatchResult:
        """Run the strategy chain; first success wins. Does not touch the ledger.

        Args:
            txn: Transaction to attribute.

        Returns:
            MatchResult naming the payer and strategy, or matched=False.
        """
        found = await self._find(txn)
        if found is None:
            return MatchResult(matched=False)
        payer, strategy = found
        return MatchResult(
            matched=True,
            payer_id=payer.id,
            strategy=strategy.name,
            note=strategy.describe(txn, payer),
        )

    async def apply_match(
        self,
        transaction: Transaction,
        payer: Payer,
        note: str,
        month: Optional[int] = None,
        year: Optional[int] = None,
        manual: bool = False,
    ) -> Payment:
        """Credit the payer's period payment and mark the transaction matched.

        When the transaction already credited a payment, that credit is
        reversed first.

        Args:
            transaction: Stored transaction being attributed.
            payer: Payer receiving the credit.
            note: Explanation stored on the transaction and payment.
            month: Billing month; defaults to the transaction date's month.
            year: Billing year; defaults to the transaction date's year.
            manual: True for the manual override path.

        Returns:
            The payment after accumulation.
        """
        period_month = month or transaction.transaction_date.month
        period_year = year or transaction.transaction_date.year

        # A re-attributed transaction moves its amount, it does not add it twice
        if transaction.payment_id is not None:
            await self.payments.reverse_payment(transaction.payment_id, transaction.amount)

        payment = await self.payments.record_payment(
            payer_id=payer.id,
            month=period_month,
            year=period_year,
            amount=transaction.amount,
            expected_amount=payer.monthly_fee,
            source_transaction_id=transaction.id,
            matched_automatically=not manual,
            notes=note,
        )
        transaction.mark_matched(
            payer_id=payer.id,
            payment_id=payment.id,
            partial=payment.status == PaymentStatus.PARTIAL.value,
            note=note,
            manual=manual,
        )
        await self.session.flush()

        notification = await self.notifications.get_by_transaction_id(transaction.id)
        if notification is not None:
            notification.match_status = (MatchStatus.MANUAL if manual else MatchStatus.MATCHED).value
            notification.matched_payer_id = payer.id
            notification.matched_payment_id = payment.id
            notification.error_message = None
            notification.processed = True
            notification.processed_at = utcnow()
            await self.session.flush()

        logger.info(f"Transaction {transaction.id} matched to payer {payer.id}: {note}")
        return payment

    async def match_transaction(self, transaction: Transaction) -> MatchResult:
        """Match a stored transaction and apply the result to the ledger."""
        txn = transaction_to_raw(transaction)
        found = await self._find(txn)
        if found is None:
            logger.debug(f"No payer found for transaction {transaction.id}")
            return MatchResult(matched=False)

        payer, strategy = found
        note = strategy.describe(txn, payer)
        await self.apply_match(transaction, payer, note)
        return MatchResult(matched=True, payer_id=payer.id, strategy=strategy.name, note=note)

    async def match_all(self) -> int:
        """Match every UNMATCHED transaction that has a non-blank reference.

        Already matched transactions are never revisited, so repeated runs
        are harmless. Concurrent calls are serialized.

        Returns:
            Number of transactions matched in this run.
        """
        async with self._batch_lock or get_batch_lock():
            candidates = await self.transactions.get_unmatched_with_reference()
            matched = 0
            for transaction in candidates:
                result = await self.match_transaction(transaction)
                if result.matched:
                    matched += 1
            logger.info(f"Batch matching matched {matched} of {len(candidates)} unmatched transactions")
            return matched

    async def manually_match(
        self,
        transaction_id: str,
        payer_id: str,
        month: int,
        year: int,
    ) -> Payment:
        """Attribute a transaction to a payer and period chosen by an operator.

        Skips the strategy chain; the ledger is credited unconditionally.

        Raises:
            ValueError: If month is not 1-12 or year is not positive.
            NotFoundError: If the transaction or payer does not exist.
        """
        if not 1 <= month <= 12:
            raise ValueError(f"Invalid month: {month}")
        if year <= 0:
            raise ValueError(f"Invalid year: {year}")

        transaction = await self.transactions.get_by_id(transaction_id)
        if transaction is None:
            raise NotFoundError("Transaction", transaction_id)
        payer = await self.directory.find_by_id(payer_id)
        if payer is None:
            raise NotFoundError("Payer", payer_id)

        note = f"Manually matched to {payer.full_name}"
        return await self.apply_match(transaction, payer, note, month=month, year=year, manual=True)

    async def get_unmatched(self) -> List[Transaction]:
        return await self.transactions.get_unmatched()
