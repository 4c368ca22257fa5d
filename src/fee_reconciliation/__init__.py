# fee_reconciliation package
__version__ = "0.1.0"

from .database import (
    Payer,
    Payment,
    Statement,
    Transaction,
    Notification,
    StatementStatus,
    TransactionStatus,
    MatchStatus,
    PaymentStatus,
    init_db,
    close_db,
    get_db,
)
from .errors import (
    ReconciliationError,
    StatementInputError,
    UnsupportedFileTypeError,
    StatementReadError,
    NotFoundError,
    InvalidStateTransition,
)
from .parsing import (
    RawTransaction,
    ParsedNotification,
    StatementParser,
    NotificationParser,
    generate_duplicate_hash,
)
from .dedup import DuplicateFilter, DedupOutcome
from .matching import MatchingEngine, MatchResult
from .services import ReconciliationService, StatementResult, IngestResult, NotificationStats
from .workers import NotificationWorkerPool
