"""Shared test fixtures and configuration."""

import os
import pytest
from decimal import Decimal

# Set up test environment variables before importing modules
os.environ.setdefault("API_KEY", "test_api_key_12345")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("NOTIFICATION_WORKERS", "1")

from fee_reconciliation.config import get_settings


@pytest.fixture(autouse=True)
def reset_settings():
    """Re-read settings from the environment for every test."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def mock_api_key():
    return "test_api_key_12345"


@pytest.fixture
def auth_headers(mock_api_key):
    """Return headers with authentication."""
    return {"Authorization": f"Bearer {mock_api_key}"}


@pytest.fixture
def credit_notification_text():
    """A bank alert for a full January fee."""
    return (
        "You have received a payment\n"
        "Date: 15/01/2025\n"
        "Amount: R 1,500.00\n"
        "Reference: STU-2025-001 January Fee\n"
        "Balance: R 45,230.50"
    )


# Database fixtures
@pytest.fixture
async def db_engine():
    """Create an in-memory SQLite database for testing."""
    from fee_reconciliation.database import Base, create_async_engine

    engine = create_async_engine(
        database_url="sqlite+aiosqlite:///:memory:",
        echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    from fee_reconciliation.database import get_async_session_factory

    return get_async_session_factory(db_engine)


@pytest.fixture
async def db_session(session_factory):
    """Create a database session for testing."""
    async with session_factory() as session:
        yield session


@pytest.fixture
async def payers(session_factory):
    """Three payers: two active, one inactive. Returned detached, fully loaded."""
    from fee_reconciliation.database import PayerRepository

    async with session_factory() as session:
        repo = PayerRepository(session)
        thabo = await repo.create(
            payment_reference="THABO-MOLEFE",
            full_name="Thabo Molefe",
            monthly_fee=Decimal("1500.00"),
            student_number="STU-2025-001",
        )
        lerato = await repo.create(
            payment_reference="LNKOSI",
            full_name="Lerato Nkosi",
            monthly_fee=Decimal("1200.00"),
            student_number="STU-2025-002",
        )
        former = await repo.create(
            payment_reference="FORMER01",
            full_name="Sipho Dlamini",
            monthly_fee=Decimal("1000.00"),
            student_number="STU-2024-010",
            active=False,
        )
        await session.commit()
    return {"thabo": thabo, "lerato": lerato, "former": former}
