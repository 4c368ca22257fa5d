"""Authentication, sender validation and rate limiting helpers for the API."""

import secrets
import logging
from abc import ABC, abstractmethod
from typing import Iterable, Optional

from fastapi import HTTPException, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from slowapi import Limiter
from slowapi.util import get_remote_address

from .config import get_settings

logger = logging.getLogger(__name__)

security = HTTPBearer()
optional_security = HTTPBearer(auto_error=False)

# Rate limiter
limiter = Limiter(key_func=get_remote_address)


def check_api_key(api_key: Optional[str]) -> str:
    """Compare a presented key with the configured API_KEY.

    Args:
        api_key: Key presented by the caller.

    Returns:
        The verified API key.

    Raises:
        HTTPException: 500 if no key is configured, 401 if the key is missing or wrong.
    """
    expected_key = get_settings().api_key
    if not expected_key:
        logger.error("API_KEY environment variable is not configured")
        raise HTTPException(status_code=500, detail="Server configuration error")
    if not api_key or not secrets.compare_digest(api_key, expected_key):
        raise HTTPException(status_code=401, detail="Invalid API key")
    return api_key


async def verify_api_key(credentials: HTTPAuthorizationCredentials = Security(security)) -> str:
    """Verify the API key from the Authorization header.

    Args:
        credentials: HTTP Bearer credentials from the request.

    Returns:
        The verified API key.

    Raises:
        HTTPException: If API key is invalid or not configured.
    """
    return check_api_key(credentials.credentials)


class SenderValidator(ABC):
    """Decides whether a notification sender address is trusted."""

    @abstractmethod
    def is_trusted_sender(self, address: Optional[str]) -> bool:
        pass


class DomainSenderValidator(SenderValidator):
    """Trusts addresses containing one of the configured domain fragments."""

    def __init__(self, trusted_domains: Optional[Iterable[str]] = None):
        domains = trusted_domains if trusted_domains is not None else get_settings().trusted_sender_domains
        self.trusted_domains = [d.strip().lower() for d in domains if d and d.strip()]

    def is_trusted_sender(self, address: Optional[str]) -> bool:
        if not address or not address.strip():
            return False
        lowered = address.strip().lower()
        return any(domain in lowered for domain in self.trusted_domains)
