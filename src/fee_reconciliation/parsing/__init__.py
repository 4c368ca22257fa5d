"""Statement and notification parsing."""

from .models import (
    RawTransaction,
    ParsedNotification,
    StatementParseResult,
    SourceKind,
    StatementDialect,
    TransactionType,
)
from .common import (
    parse_date,
    parse_currency,
    extract_payer_identifier,
    extract_payment_reference,
    generate_bank_reference,
    content_fingerprint,
)
from .extraction import TextExtractionAdapter, DefaultTextExtractor, get_text_extractor
from .statement_parser import StatementParser
from .notification_parser import NotificationParser, generate_duplicate_hash

__all__ = [
    "RawTransaction",
    "ParsedNotification",
    "StatementParseResult",
    "SourceKind",
    "StatementDialect",
    "TransactionType",
    "parse_date",
    "parse_currency",
    "extract_payer_identifier",
    "extract_payment_reference",
    "generate_bank_reference",
    "content_fingerprint",
    "TextExtractionAdapter",
    "DefaultTextExtractor",
    "get_text_extractor",
    "StatementParser",
    "NotificationParser",
    "generate_duplicate_hash",
]
