"""
Core interfaces for the Fleet session client.

This module defines the abstract interfaces that session components must
implement so they can be swapped for fakes in tests.
"""

from abc import ABC, abstractmethod
from typing import Optional

from .models import TokenPair, LoginCredentials, RegisterCredentials


class ITokenStore(ABC):
    """Interface for durable storage of the current token pair."""

    @abstractmethod
    async def load(self) -> Optional[TokenPair]:
        """Load the stored pair, or None when nothing is stored."""
        pass

    @abstractmethod
    async def save(self, pair: TokenPair) -> None:
        """Persist the pair, replacing any previous one. Raises PersistenceError."""
        pass

    @abstractmethod
    async def clear(self) -> None:
        """Remove the stored pair. Raises PersistenceError."""
        pass


class IAuthClient(ABC):
    """Interface for the authentication network exchanges."""

    @abstractmethod
    async def login(self, credentials: LoginCredentials) -> TokenPair:
        """Exchange username/password for a token pair."""
        pass

    @abstractmethod
    async def register(self, credentials: RegisterCredentials,
                       confirm_password: Optional[str] = None) -> TokenPair:
        """Create an account and return its token pair."""
        pass

    @abstractmethod
    async def refresh(self, refresh_token: str) -> TokenPair:
        """Mint a new token pair from a refresh token."""
        pass


class ISessionManager(ABC):
    """Interface consumed by screens and the HTTP request layer."""

    @abstractmethod
    async def sign_in(self, pair: TokenPair) -> None:
        """Persist and publish an authenticated session."""
        pass

    @abstractmethod
    async def sign_out(self) -> None:
        """End the current session. Never fails."""
        pass

    @abstractmethod
    def get_valid_access_token(self) -> str:
        """Return the current access token or raise UnauthenticatedError."""
        pass

    @abstractmethod
    async def refresh_session(self) -> TokenPair:
        """Run (or join) the single in-flight refresh exchange."""
        pass
