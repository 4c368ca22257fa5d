"""Service layer tying parsing, deduplication, matching and the ledger together."""

import logging
from typing import Optional, List, Protocol, Tuple

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import SenderValidator, DomainSenderValidator
from .config import Settings, get_settings
from .database.models import (
    Notification,
    Payment,
    Statement,
    Transaction,
    MatchStatus,
)
from .database.repository import (
    NotificationRepository,
    StatementRepository,
    TransactionRepository,
)
from .dedup import DuplicateFilter, DedupOutcome
from .errors import NotFoundError, StatementInputError
from .matching.engine import MatchingEngine
from .parsing.common import content_fingerprint
from .parsing.models import ParsedNotification, RawTransaction, SourceKind, TransactionType
from .parsing.notification_parser import NotificationParser, generate_duplicate_hash
from .parsing.statement_parser import StatementParser

logger = logging.getLogger(__name__)

DEBIT_NOTE = "Debit notification; only incoming payments are reconciled"


class NotificationDispatcher(Protocol):
    """Anything that can schedule a notification for background processing."""

    async def submit(self, notification_id: str) -> None:
        ...


class StatementResult(BaseModel):
    """Outcome of a statement upload."""
    id: str
    file_name: str
    dialect: Optional[str] = None
    status: str
    total_count: int = 0
    matched_count: int = 0
    unmatched_count: int = 0
    duplicate_count: int = 0
    skipped_count: int = 0
    error_message: Optional[str] = None

    class Config:
        from_attributes = True


class IngestResult(BaseModel):
    """Immediate answer to a notification delivery."""
    accepted: bool
    notification_id: Optional[str] = None
    reason: Optional[str] = None


class NotificationStats(BaseModel):
    """Notification processing counters."""
    total: int = 0
    matched: int = Field(default=0, description="Matched automatically or manually")
    unmatched: int = 0
    failed: int = 0
    duplicate: int = 0
    pending: int = 0
    last_24h_count: int = 0
    match_rate_percent: float = 0.0


class ReconciliationService:
    """Entry points for statement uploads, notifications and matching."""

    def __init__(
        self,
        session: AsyncSession,
        dispatcher: Optional[NotificationDispatcher] = None,
        statement_parser: Optional[StatementParser] = None,
        notification_parser: Optional[NotificationParser] = None,
        sender_validator: Optional[SenderValidator] = None,
        matching_engine: Optional[MatchingEngine] = None,
        settings: Optional[Settings] = None,
    ):
        """Initialize the service.

        Args:
            session: Async database session; the service commits it.
            dispatcher: Worker pool that processes accepted notifications.
                Without one, notifications stay PENDING until
                process_notification() is called.
            statement_parser: Statement parser. Defaults to StatementParser().
            notification_parser: Notification parser. Defaults to NotificationParser().
            sender_validator: Sender allow-list. Defaults to DomainSenderValidator().
            matching_engine: Matching engine bound to the same session.
            settings: Settings. Defaults to get_settings().
        """
        self.session = session
        self.dispatcher = dispatcher
        self.settings = settings or get_settings()
        self.statement_parser = statement_parser or StatementParser()
        self.notification_parser = notification_parser or NotificationParser()
        self.sender_validator = sender_validator or DomainSenderValidator(self.settings.trusted_sender_domains)
        self.matching = matching_engine or MatchingEngine(session)
        self.statements = StatementRepository(session)
        self.transactions = TransactionRepository(session)
        self.notifications = NotificationRepository(session)

    # Statements

    async def ingest_statement(self, data: bytes, file_name: str) -> StatementResult:
        """Parse, store and match an uploaded statement.

        Rows are committed only when the whole statement was processed; a
        statement that cannot be read is recorded as FAILED without any
        transactions.

        Args:
            data: Uploaded file contents.
            file_name: Original file name.

        Returns:
            StatementResult with the final status and counts.
        """
        statement = await self.statements.create(file_name)
        await self.session.commit()
        statement_id = statement.id
        logger.info(f"Processing statement {statement_id} ({file_name})")

        try:
            statement.mark_processing()
            parsed = self.statement_parser.parse(data, file_name)
            statement.dialect = parsed.dialect.value
            statement.skipped_count = parsed.errors_skipped

            stored, duplicates = await self._store_statement_rows(statement, parsed.transactions)

            matched = 0
            for transaction in stored:
                result = await self.matching.match_transaction(transaction)
                if result.matched:
                    matched += 1

            statement.total_count = len(stored)
            statement.matched_count = matched
            statement.unmatched_count = len(stored) - matched
            statement.duplicate_count = duplicates
            statement.mark_completed()
            await self.session.commit()
        except StatementInputError as e:
            logger.warning(f"Statement {statement_id} rejected: {e}")
            await self._fail_statement(statement, str(e))
        except Exception as e:
            logger.error(f"Statement {statement_id} failed: {e}", exc_info=True)
            await self._fail_statement(statement, f"Processing failed: {e}")

        logger.info(
            f"Statement {statement_id} {statement.status}: {statement.total_count} stored, "
            f"{statement.matched_count} matched, {statement.duplicate_count} duplicates, "
            f"{statement.skipped_count} skipped"
        )
        return StatementResult.model_validate(statement)

    async def _store_statement_rows(
        self,
        statement: Statement,
        rows: List[RawTransaction],
    ) -> Tuple[List[Transaction], int]:
        stored: List[Transaction] = []
        duplicates = 0
        for txn in rows:
            content_hash = content_fingerprint(txn.date, txn.amount, txn.description)
            if self.settings.statement_content_dedup and await self.transactions.content_hash_seen_elsewhere(
                content_hash, statement.id
            ):
                duplicates += 1
                logger.info(f"Skipping statement row already imported elsewhere: {txn.raw_data}")
                continue

            transaction = await self.transactions.insert_if_absent({
                "bank_reference": txn.bank_reference,
                "amount": txn.amount,
                "transaction_date": txn.date,
                "reference": txn.reference,
                "description": txn.description,
                "balance": txn.balance,
                "content_hash": content_hash,
                "source_kind": SourceKind.STATEMENT.value,
                "statement_id": statement.id,
                "raw_data": txn.raw_data,
            })
            if transaction is None:
                duplicates += 1
                continue
            stored.append(transaction)
        return stored, duplicates

    async def _fail_statement(self, statement: Statement, message: str) -> None:
        await self.session.rollback()
        await self.session.refresh(statement)
        statement.mark_failed(message)
        await self.session.commit()

    async def get_statement(self, statement_id: str) -> StatementResult:
        statement = await self.statements.get_by_id(statement_id)
        if statement is None:
            raise NotFoundError("Statement", statement_id)
        return StatementResult.model_validate(statement)

    async def list_statements(self, limit: int = 50) -> List[StatementResult]:
        return [StatementResult.model_validate(s) for s in await self.statements.list_recent(limit)]

    # Notifications

    async def ingest_notification(
        self,
        raw_body: Optional[str],
        subject: Optional[str],
        sender: Optional[str],
        source: Optional[str] = None,
    ) -> IngestResult:
        """Accept a notification for background processing.

        Only the envelope is checked here. The outcome of parsing and
        matching is visible later on the Notification record.

        Args:
            raw_body: Email body.
            subject: Email subject.
            sender: Sender address.
            source: Forwarding pipeline name, if known.

        Returns:
            IngestResult; rejected deliveries carry a reason and store nothing.
        """
        if not self.sender_validator.is_trusted_sender(sender):
            logger.warning(f"Rejected notification from untrusted sender: {sender}")
            return IngestResult(accepted=False, reason=f"Untrusted sender: {sender}")
        if not raw_body or not raw_body.strip():
            logger.warning(f"Rejected notification with empty body from {sender}")
            return IngestResult(accepted=False, reason="Notification body is required")

        notification = await self.notifications.create(
            raw_payload=raw_body,
            subject=subject,
            sender=sender,
            source=source,
        )
        await self.session.commit()
        logger.info(f"Accepted notification {notification.id} from {sender}")

        if self.dispatcher is not None:
            await self.dispatcher.submit(notification.id)
        return IngestResult(accepted=True, notification_id=notification.id)

    async def process_notification(self, notification_id: str) -> Notification:
        """Parse, deduplicate and match one PENDING notification.

        Notifications in any other state are returned untouched, so repeated
        deliveries of the same job are harmless.

        Args:
            notification_id: Notification to process.

        Returns:
            The notification in its final state.

        Raises:
            NotFoundError: If the notification does not exist.
        """
        notification = await self.notifications.get_by_id(notification_id)
        if notification is None:
            raise NotFoundError("Notification", notification_id)
        if notification.match_status != MatchStatus.PENDING.value:
            logger.info(f"Notification {notification_id} already {notification.match_status}, skipping")
            return notification

        try:
            await self._process_notification(notification)
        except Exception as e:
            logger.error(f"Error processing notification {notification_id}: {e}", exc_info=True)
            await self.session.rollback()
            await self.session.refresh(notification)
            notification.duplicate_hash = None
            notification.mark_failed(f"Processing failed: {e}")
            await self.session.commit()
        return notification

    @staticmethod
    def _copy_fields(notification: Notification, parsed: ParsedNotification) -> None:
        notification.transaction_date = parsed.transaction_date
        notification.amount = parsed.amount
        notification.reference = parsed.reference
        notification.balance = parsed.balance
        notification.description = parsed.description
        notification.transaction_type = parsed.transaction_type.value

    async def _process_notification(self, notification: Notification) -> None:
        parsed = self.notification_parser.parse(notification.raw_payload, notification.subject)
        self._copy_fields(notification, parsed)

        if not parsed.valid:
            notification.mark_failed(parsed.error_message)
            await self.session.commit()
            logger.warning(f"Notification {notification.id} failed validation: {parsed.error_message}")
            return

        duplicate_hash = generate_duplicate_hash(parsed.transaction_date, parsed.amount, parsed.reference)
        dedup = DuplicateFilter(self.session)
        if await dedup.insert_if_new(duplicate_hash, notification) == DedupOutcome.ALREADY_EXISTS:
            await self._mark_duplicate(notification, parsed, duplicate_hash, dedup)
            return

        if parsed.transaction_type == TransactionType.DEBIT:
            notification.finish(MatchStatus.UNMATCHED, DEBIT_NOTE)
            await self.session.commit()
            logger.info(f"Notification {notification.id} is a debit, not reconciled")
            return

        txn = parsed.to_raw_transaction()
        transaction = await self.transactions.insert_if_absent({
            "bank_reference": duplicate_hash,
            "amount": txn.amount,
            "transaction_date": txn.date,
            "reference": txn.reference,
            "description": txn.description,
            "balance": txn.balance,
            "sender_name": txn.sender_name,
            "content_hash": content_fingerprint(txn.date, txn.amount, txn.description),
            "source_kind": SourceKind.NOTIFICATION.value,
            "raw_data": notification.raw_payload,
        })
        if transaction is None:
            await self._mark_duplicate(notification, parsed, duplicate_hash, dedup)
            return

        notification.transaction_id = transaction.id
        await self.session.flush()

        result = await self.matching.match_transaction(transaction)
        if not result.matched:
            notification.finish(MatchStatus.UNMATCHED)
        await self.session.commit()
        logger.info(f"Notification {notification.id} processed: {notification.match_status}")

    async def _mark_duplicate(
        self,
        notification: Notification,
        parsed: ParsedNotification,
        duplicate_hash: str,
        dedup: DuplicateFilter,
    ) -> None:
        # A lost race reloads the row, so the parsed fields are applied again
        self._copy_fields(notification, parsed)
        notification.duplicate_hash = None
        original_id = await dedup.find_holder(duplicate_hash, exclude_id=notification.id)
        notification.finish(MatchStatus.DUPLICATE, f"Duplicate of notification {original_id}")
        await self.session.commit()
        logger.info(f"Notification {notification.id} is a duplicate of {original_id}")

    async def pending_notification_ids(self) -> List[str]:
        return [n.id for n in await self.notifications.list_by_status(MatchStatus.PENDING)]

    async def retry_failed(self) -> int:
        """Reprocess every FAILED notification from its stored payload.

        Returns:
            Number of notifications retried.
        """
        failed = await self.notifications.list_by_status(MatchStatus.FAILED)
        notification_ids = [notification.id for notification in failed]
        for notification in failed:
            notification.reset_for_retry()
        await self.session.commit()

        # A failing retry rolls back and expires the rest, so work from ids
        for notification_id in notification_ids:
            await self.process_notification(notification_id)
        logger.info(f"Retried {len(notification_ids)} failed notifications")
        return len(notification_ids)

    async def stats(self) -> NotificationStats:
        counts = await self.notifications.count_by_status()
        total = sum(counts.values())
        matched = counts.get(MatchStatus.MATCHED.value, 0) + counts.get(MatchStatus.MANUAL.value, 0)
        rate = round(matched * 100.0 / total, 2) if total else 0.0
        return NotificationStats(
            total=total,
            matched=matched,
            unmatched=counts.get(MatchStatus.UNMATCHED.value, 0),
            failed=counts.get(MatchStatus.FAILED.value, 0),
            duplicate=counts.get(MatchStatus.DUPLICATE.value, 0),
            pending=counts.get(MatchStatus.PENDING.value, 0),
            last_24h_count=await self.notifications.count_last_24h(),
            match_rate_percent=rate,
        )

    # Matching

    async def match_all(self) -> int:
        matched = await self.matching.match_all()
        await self.session.commit()
        return matched

    async def manually_match(self, transaction_id: str, payer_id: str, month: int, year: int) -> Payment:
        payment = await self.matching.manually_match(transaction_id, payer_id, month, year)
        await self.session.commit()
        return payment

    async def get_unmatched(self) -> List[Transaction]:
        return await self.matching.get_unmatched()
