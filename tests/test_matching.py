"""Tests for matching strategies and the matching engine."""

import asyncio
import pytest
from datetime import date
from decimal import Decimal
from typing import List, Optional

from fee_reconciliation.database import (
    Payer,
    NotificationRepository,
    PayerDirectory,
    PaymentRepository,
    TransactionRepository,
    MatchStatus,
    PaymentStatus,
    TransactionStatus,
)
from fee_reconciliation.errors import NotFoundError
from fee_reconciliation.matching import MatchingEngine, get_batch_lock
from fee_reconciliation.matching.strategies import (
    NameInDescriptionStrategy,
    PayerIdentifierStrategy,
    PaymentReferenceStrategy,
)
from fee_reconciliation.parsing import RawTransaction


def raw(reference: Optional[str], description: str = "", amount: str = "1500.00") -> RawTransaction:
    return RawTransaction(
        date=date(2025, 1, 15),
        amount=Decimal(amount),
        description=description,
        reference=reference,
    )


async def store(session, bank_reference: str, reference: Optional[str], description: str = "",
                amount: str = "1500.00", txn_date: date = date(2025, 1, 15)):
    return await TransactionRepository(session).insert_if_absent({
        "bank_reference": bank_reference,
        "amount": Decimal(amount),
        "transaction_date": txn_date,
        "reference": reference,
        "description": description,
        "source_kind": "statement",
    })


class InMemoryDirectory(PayerDirectory):
    """Payer directory backed by a list."""

    def __init__(self, payers: List[Payer]):
        self.payers = payers

    async def find_by_id(self, payer_id):
        return next((p for p in self.payers if p.id == payer_id), None)

    async def find_by_reference(self, reference):
        return next(
            (p for p in self.payers if p.active and p.payment_reference.lower() == reference.strip().lower()),
            None,
        )

    async def find_by_student_number(self, student_number):
        return next((p for p in self.payers if p.student_number == student_number), None)

    async def list_active(self):
        return [p for p in self.payers if p.active]


@pytest.fixture
def directory():
    return InMemoryDirectory([
        Payer(id="p1", payment_reference="THABO-MOLEFE", full_name="Thabo Molefe",
              monthly_fee=Decimal("1500.00"), student_number="STU-2025-001", active=True),
        Payer(id="p2", payment_reference="LNKOSI", full_name="Lerato Nkosi",
              monthly_fee=Decimal("1200.00"), student_number="STU-2025-002", active=True),
        Payer(id="p3", payment_reference="FORMER01", full_name="Sipho Dlamini",
              monthly_fee=Decimal("1000.00"), student_number="STU-2024-010", active=False),
    ])


class TestStrategies:
    """Tests for the individual strategies."""

    async def test_identifier_in_reference(self, directory):
        payer = await PayerIdentifierStrategy().find_payer(raw("STU-2025-001 January Fee"), directory)
        assert payer.id == "p1"

    async def test_identifier_in_description(self, directory):
        payer = await PayerIdentifierStrategy().find_payer(
            raw("CAPITEC", description="IB PAYMENT STU-2025-002"), directory
        )
        assert payer.id == "p2"

    async def test_identifier_ignores_active_flag(self, directory):
        payer = await PayerIdentifierStrategy().find_payer(raw("STU-2024-010"), directory)
        assert payer.id == "p3"

    async def test_identifier_unknown(self, directory):
        assert await PayerIdentifierStrategy().find_payer(raw("STU-2099-999"), directory) is None

    async def test_identifier_note(self, directory):
        strategy = PayerIdentifierStrategy()
        payer = await strategy.find_payer(raw("STU-2025-001"), directory)
        assert strategy.describe(raw("STU-2025-001"), payer) == "Auto-matched by student number: STU-2025-001"

    async def test_reference_case_insensitive(self, directory):
        payer = await PaymentReferenceStrategy().find_payer(raw("  lnkosi "), directory)
        assert payer.id == "p2"

    async def test_reference_skips_inactive(self, directory):
        assert await PaymentReferenceStrategy().find_payer(raw("FORMER01"), directory) is None

    async def test_reference_blank(self, directory):
        assert await PaymentReferenceStrategy().find_payer(raw("   "), directory) is None
        assert await PaymentReferenceStrategy().find_payer(raw(None), directory) is None

    async def test_name_in_description(self, directory):
        payer = await NameInDescriptionStrategy().find_payer(
            raw("MAGTAPE CREDIT", description="MAGTAPE CREDIT THABO MOLEFE"), directory
        )
        assert payer.id == "p1"

    async def test_name_skips_inactive(self, directory):
        assert await NameInDescriptionStrategy().find_payer(
            raw(None, description="PAYMENT SIPHO DLAMINI"), directory
        ) is None


class TestMatchingEngineMatch:
    """Tests for strategy ordering without touching the ledger."""

    async def test_identifier_wins_over_reference(self, db_session, directory):
        engine = MatchingEngine(db_session, directory=directory)
        # Reference names Lerato but the identifier names Thabo
        result = await engine.match(raw("LNKOSI", description="STU-2025-001"))

        assert result.matched
        assert result.payer_id == "p1"
        assert result.strategy == "payer_identifier"

    async def test_reference_before_name(self, db_session, directory):
        engine = MatchingEngine(db_session, directory=directory)
        result = await engine.match(raw("LNKOSI", description="for THABO MOLEFE"))

        assert result.payer_id == "p2"
        assert result.strategy == "payment_reference"
        assert result.note == "Automatically matched to Lerato Nkosi via payment reference"

    async def test_no_match(self, db_session, directory):
        engine = MatchingEngine(db_session, directory=directory)
        result = await engine.match(raw("UNKNOWN", description="CASH DEPOSIT"))

        assert result.matched is False
        assert result.payer_id is None


class TestMatchingEngineLedger:
    """Tests for applying matches to the ledger."""

    async def test_match_transaction_records_payment(self, db_session, payers):
        txn = await store(db_session, "r1", "STU-2025-001 January Fee")
        engine = MatchingEngine(db_session)

        result = await engine.match_transaction(txn)
        await db_session.commit()

        assert result.matched
        assert result.payer_id == payers["thabo"].id
        assert txn.status == TransactionStatus.MATCHED.value
        assert txn.payer_id == payers["thabo"].id
        assert txn.match_notes == "Auto-matched by student number: STU-2025-001"

        payment = await PaymentRepository(db_session).get_for_period(payers["thabo"].id, 1, 2025)
        assert payment.amount_paid == Decimal("1500.00")
        assert payment.status == PaymentStatus.PAID.value
        assert payment.source_transaction_id == txn.id
        assert payment.matched_automatically is True
        assert txn.payment_id == payment.id

    async def test_partial_then_paid(self, db_session, payers):
        first = await store(db_session, "r1", "STU-2025-001", amount="750.00")
        second = await store(db_session, "r2", "STU-2025-001", amount="750.00", txn_date=date(2025, 1, 20))
        engine = MatchingEngine(db_session)

        await engine.match_transaction(first)
        await engine.match_transaction(second)

        assert first.status == TransactionStatus.PARTIALLY_MATCHED.value
        assert second.status == TransactionStatus.MATCHED.value
        payment = await PaymentRepository(db_session).get_for_period(payers["thabo"].id, 1, 2025)
        assert payment.amount_paid == Decimal("1500.00")
        assert payment.status == PaymentStatus.PAID.value

    async def test_unmatched_left_alone(self, db_session, payers):
        txn = await store(db_session, "r1", "SOMEONE ELSE", description="CASH DEPOSIT")
        result = await MatchingEngine(db_session).match_transaction(txn)

        assert result.matched is False
        assert txn.status == TransactionStatus.UNMATCHED.value
        assert txn.payer_id is None

    async def test_linked_notification_follows_match(self, db_session, payers):
        txn = await store(db_session, "hash-1", "STU-2025-002")
        notification = await NotificationRepository(db_session).create(raw_payload="body")
        notification.transaction_id = txn.id
        await db_session.flush()

        await MatchingEngine(db_session).match_transaction(txn)

        assert notification.match_status == MatchStatus.MATCHED.value
        assert notification.matched_payer_id == payers["lerato"].id
        assert notification.matched_payment_id == txn.payment_id
        assert notification.processed is True


class TestMatchAll:
    """Tests for batch matching."""

    async def test_matches_and_is_idempotent(self, db_session, payers):
        await store(db_session, "r1", "STU-2025-001")
        await store(db_session, "r2", "lnkosi")
        await store(db_session, "r3", "NOBODY")
        await store(db_session, "r4", None, description="THABO MOLEFE")
        await db_session.commit()
        engine = MatchingEngine(db_session)

        assert await engine.match_all() == 2
        await db_session.commit()
        assert await engine.match_all() == 0

        payment = await PaymentRepository(db_session).get_for_period(payers["thabo"].id, 1, 2025)
        assert payment.amount_paid == Decimal("1500.00")

        unmatched = await engine.get_unmatched()
        assert {t.bank_reference for t in unmatched} == {"r3", "r4"}

    async def test_concurrent_calls_are_serialized(self, db_session, payers):
        await store(db_session, "r1", "STU-2025-001")
        await db_session.commit()
        lock = asyncio.Lock()
        engine = MatchingEngine(db_session, batch_lock=lock)

        async with lock:
            task = asyncio.create_task(engine.match_all())
            await asyncio.sleep(0)
            assert not task.done()

        assert await task == 1

    async def test_default_lock_is_shared_within_a_loop(self):
        assert get_batch_lock() is get_batch_lock()

    def test_default_lock_works_across_event_loops(self):
        async def contend():
            lock = get_batch_lock()
            async with lock:
                waiter = asyncio.create_task(lock.acquire())
                await asyncio.sleep(0)
                assert not waiter.done()
            await waiter
            lock.release()
            return lock

        first = asyncio.run(contend())
        second = asyncio.run(contend())

        assert first is not second


class TestManualMatch:
    """Tests for operator overrides."""

    async def test_manual_match(self, db_session, payers):
        txn = await store(db_session, "r1", "NOBODY", amount="1200.00")
        await db_session.commit()
        engine = MatchingEngine(db_session)

        payment = await engine.manually_match(txn.id, payers["lerato"].id, month=2, year=2025)

        assert payment.period_month == 2
        assert payment.period_year == 2025
        assert payment.status == PaymentStatus.PAID.value
        assert payment.matched_automatically is False
        assert txn.status == TransactionStatus.MATCHED.value
        assert txn.manually_matched is True
        assert txn.match_notes == "Manually matched to Lerato Nkosi"

    async def test_manual_override_of_automatic_match(self, db_session, payers):
        txn = await store(db_session, "r1", "STU-2025-001")
        engine = MatchingEngine(db_session)
        await engine.match_transaction(txn)

        await engine.manually_match(txn.id, payers["lerato"].id, month=1, year=2025)

        assert txn.payer_id == payers["lerato"].id
        assert txn.manually_matched is True

        # The credit moves from Thabo's payment to Lerato's
        payments = PaymentRepository(db_session)
        thabo = await payments.get_for_period(payers["thabo"].id, 1, 2025)
        lerato = await payments.get_for_period(payers["lerato"].id, 1, 2025)
        assert thabo.amount_paid == Decimal("0.00")
        assert thabo.status == PaymentStatus.PENDING.value
        assert lerato.amount_paid == Decimal("1500.00")
        assert lerato.status == PaymentStatus.PAID.value
        assert txn.payment_id == lerato.id

    async def test_repeated_manual_match_counts_once(self, db_session, payers):
        txn = await store(db_session, "r1", "NOBODY", amount="600.00")
        engine = MatchingEngine(db_session)

        await engine.manually_match(txn.id, payers["lerato"].id, month=1, year=2025)
        payment = await engine.manually_match(txn.id, payers["lerato"].id, month=1, year=2025)

        assert payment.amount_paid == Decimal("600.00")
        assert payment.status == PaymentStatus.PARTIAL.value
        assert txn.status == TransactionStatus.PARTIALLY_MATCHED.value

    async def test_manual_match_to_another_period(self, db_session, payers):
        txn = await store(db_session, "r1", "NOBODY", amount="1200.00")
        engine = MatchingEngine(db_session)

        await engine.manually_match(txn.id, payers["lerato"].id, month=1, year=2025)
        await engine.manually_match(txn.id, payers["lerato"].id, month=2, year=2025)

        payments = PaymentRepository(db_session)
        january = await payments.get_for_period(payers["lerato"].id, 1, 2025)
        february = await payments.get_for_period(payers["lerato"].id, 2, 2025)
        assert january.amount_paid == Decimal("0.00")
        assert february.amount_paid == Decimal("1200.00")
        assert february.status == PaymentStatus.PAID.value

    async def test_manual_match_marks_notification_manual(self, db_session, payers):
        txn = await store(db_session, "hash-1", "NOBODY")
        notification = await NotificationRepository(db_session).create(raw_payload="body")
        notification.transaction_id = txn.id
        await db_session.flush()

        await MatchingEngine(db_session).manually_match(txn.id, payers["thabo"].id, 1, 2025)

        assert notification.match_status == MatchStatus.MANUAL.value

    async def test_invalid_period(self, db_session, payers):
        engine = MatchingEngine(db_session)
        with pytest.raises(ValueError):
            await engine.manually_match("any", payers["thabo"].id, month=13, year=2025)
        with pytest.raises(ValueError):
            await engine.manually_match("any", payers["thabo"].id, month=1, year=0)

    async def test_unknown_transaction(self, db_session, payers):
        with pytest.raises(NotFoundError) as exc_info:
            await MatchingEngine(db_session).manually_match("missing", payers["thabo"].id, 1, 2025)
        assert "Transaction not found: missing" in str(exc_info.value)

    async def test_unknown_payer(self, db_session):
        txn = await store(db_session, "r1", "NOBODY")
        with pytest.raises(NotFoundError) as exc_info:
            await MatchingEngine(db_session).manually_match(txn.id, "missing", 1, 2025)
        assert "Payer not found" in str(exc_info.value)
