"""Payer matching strategies, tried in a fixed order."""

import logging
from abc import ABC, abstractmethod
from typing import Optional, Tuple

from ..database.models import Payer
from ..database.repository import PayerDirectory
from ..parsing.common import extract_payer_identifier
from ..parsing.models import RawTransaction

logger = logging.getLogger(__name__)


class MatchingStrategy(ABC):
    """One way of attributing a transaction to a payer."""

    name: str = "base"

    @abstractmethod
    async def find_payer(self, txn: RawTransaction, directory: PayerDirectory) -> Optional[Payer]:
        """Return the payer this strategy attributes the transaction to, or None."""
        pass

    def describe(self, txn: RawTransaction, payer: Payer) -> str:
        """Note stored on the transaction when this strategy fires."""
        return f"Automatically matched to {payer.full_name} via {self.name.replace('_', ' ')}"


class PayerIdentifierStrategy(MatchingStrategy):
    """Exact lookup by an STU-YYYY-NNN identifier in the reference or description."""

    name = "payer_identifier"

    async def find_payer(self, txn: RawTransaction, directory: PayerDirectory) -> Optional[Payer]:
        identifier = extract_payer_identifier(txn.reference) or extract_payer_identifier(txn.description)
        if identifier is None:
            return None
        return await directory.find_by_student_number(identifier)

    def describe(self, txn: RawTransaction, payer: Payer) -> str:
        return f"Auto-matched by student number: {payer.student_number}"


class PaymentReferenceStrategy(MatchingStrategy):
    """Active payer whose payment reference equals the trimmed reference, ignoring case."""

    name = "payment_reference"

    async def find_payer(self, txn: RawTransaction, directory: PayerDirectory) -> Optional[Payer]:
        if not txn.reference or not txn.reference.strip():
            return None
        return await directory.find_by_reference(txn.reference.strip())


class NameInDescriptionStrategy(MatchingStrategy):
    """First active payer whose full name appears in the description.

    No ranking: the directory's list order decides between candidates.
    """

    name = "name_in_description"

    async def find_payer(self, txn: RawTransaction, directory: PayerDirectory) -> Optional[Payer]:
        description = (txn.description or "").upper()
        if not description.strip():
            return None
        for payer in await directory.list_active():
            full_name = (payer.full_name or "").strip().upper()
            if full_name and full_name in description:
                return payer
        return None

    def describe(self, txn: RawTransaction, payer: Payer) -> str:
        return f"Automatically matched to {payer.full_name} via name in description"


DEFAULT_STRATEGIES: Tuple[MatchingStrategy, ...] = (
    PayerIdentifierStrategy(),
    PaymentReferenceStrategy(),
    NameInDescriptionStrategy(),
)
