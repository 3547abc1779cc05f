"""
Delivery session - the Postmark server token the email sender delivers with.
The lifecycle controller only asks is_authenticated(); the token is seeded from
POSTMARK_SERVER_TOKEN or handed over (after verification) via /api/session.
"""
import logging
import os
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


class CredentialProvider(ABC):
    @abstractmethod
    def is_authenticated(self) -> bool:
        pass


class TokenSessionProvider(CredentialProvider):
    """Holds a single server token, optionally with expiry. Expired tokens are cleared on read."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at: Optional[float] = None

    def save_token(self, token: str, expires_in: Optional[int] = None) -> None:
        if not token:
            raise ValueError("Token must not be empty")
        if expires_in is not None and expires_in <= 0:
            raise ValueError("expires_in must be positive")
        self._token = token
        self._expires_at = self._clock() + expires_in if expires_in is not None else None
        if expires_in is None:
            logger.info("Delivery session token saved (no expiry)")
        else:
            logger.info(f"Delivery session token saved (expires in {expires_in}s)")

    def get_token(self) -> Optional[str]:
        if self._token is None:
            return None
        if self._expires_at is not None and self._clock() >= self._expires_at:
            logger.info("Delivery session token expired")
            self.clear_token()
            return None
        return self._token

    def clear_token(self) -> None:
        self._token = None
        self._expires_at = None

    def is_authenticated(self) -> bool:
        return self.get_token() is not None

    def describe(self) -> Dict:
        """Session state for the API (never exposes the token itself)."""
        authenticated = self.is_authenticated()
        expires_in = None
        if authenticated and self._expires_at is not None:
            expires_in = max(0, round(self._expires_at - self._clock()))
        return {"authenticated": authenticated, "expires_in": expires_in}


class StaticCredentialProvider(CredentialProvider):
    def __init__(self, authenticated: bool = True):
        self.authenticated = authenticated

    def is_authenticated(self) -> bool:
        return self.authenticated


def build_session_from_env() -> TokenSessionProvider:
    """Session pre-seeded from POSTMARK_SERVER_TOKEN if set."""
    provider = TokenSessionProvider()
    token = os.getenv("POSTMARK_SERVER_TOKEN")
    if token:
        provider.save_token(token)
    return provider


# Global session instance
session_provider = build_session_from_env()


def get_session_provider() -> TokenSessionProvider:
    return session_provider
