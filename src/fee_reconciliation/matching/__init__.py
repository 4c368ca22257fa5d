"""Payer matching."""

from .strategies import (
    MatchingStrategy,
    PayerIdentifierStrategy,
    PaymentReferenceStrategy,
    NameInDescriptionStrategy,
    DEFAULT_STRATEGIES,
)
from .engine import MatchingEngine, MatchResult, get_batch_lock, transaction_to_raw

__all__ = [
    "MatchingStrategy",
    "PayerIdentifierStrategy",
    "PaymentReferenceStrategy",
    "NameInDescriptionStrategy",
    "DEFAULT_STRATEGIES",
    "MatchingEngine",
    "MatchResult",
    "get_batch_lock",
    "transaction_to_raw",
]
