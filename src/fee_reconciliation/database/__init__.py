"""Database module for the reconciliation ledger."""

from .models import (
    Base,
    Payer,
    Payment,
    Statement,
    Transaction,
    Notification,
    StatementStatus,
    TransactionStatus,
    MatchStatus,
    PaymentStatus,
    compute_payment_status,
)
from .session import (
    get_db,
    get_database_url,
    init_db,
    close_db,
    create_async_engine,
    create_schema,
    get_async_session_factory,
    get_db_context,
    DatabaseManager,
)
from .repository import (
    PayerDirectory,
    PayerRepository,
    PaymentRepository,
    StatementRepository,
    TransactionRepository,
    NotificationRepository,
)

__all__ = [
    # Models
    "Base",
    "Payer",
    "Payment",
    "Statement",
    "Transaction",
    "Notification",
    "StatementStatus",
    "TransactionStatus",
    "MatchStatus",
    "PaymentStatus",
    "compute_payment_status",
    # Session management
    "get_db",
    "get_database_url",
    "init_db",
    "close_db",
    "create_async_engine",
    "create_schema",
    "get_async_session_factory",
    "get_db_context",
    "DatabaseManager",
    # Repositories
    "PayerDirectory",
    "PayerRepository",
    "PaymentRepository",
    "StatementRepository",
    "TransactionRepository",
    "NotificationRepository",
]
