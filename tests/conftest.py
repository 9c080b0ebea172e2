"""
Shared fixtures for the Fleet session client tests.
"""

import asyncio
import time
from typing import Optional

import pytest
import pytest_asyncio
from jose import jwt

from fleet_client.auth.session_manager import SessionManager
from fleet_client.auth.token_storage import InMemoryTokenStore
from fleet_shared.exceptions import PersistenceError, ErrorCode
from fleet_shared.interfaces import IAuthClient
from fleet_shared.models import TokenPair, LoginCredentials, RegisterCredentials


def _access_token(expires_in: float, subject: str) -> str:
    claims = {'sub': subject, 'exp': int(time.time() + expires_in)}
    return jwt.encode(claims, 'test-secret', algorithm='HS256')


class RecordingStore(InMemoryTokenStore):
    """In-memory store that counts calls and can be told to fail."""

    def __init__(self, pair: Optional[TokenPair] = None):
        super().__init__(pair)
        self.save_calls = 0
        self.clear_calls = 0
        self.fail_load = False
        self.fail_save = False
        self.fail_clear = 0

    async def load(self) -> Optional[TokenPair]:
        if self.fail_load:
            raise PersistenceError("keychain locked", error_code=ErrorCode.PERSISTENCE_READ_FAILED)
        return await super().load()

    async def save(self, pair: TokenPair) -> None:
        self.save_calls += 1
        if self.fail_save:
            raise PersistenceError("disk full")
        await super().save(pair)

    async def clear(self) -> None:
        self.clear_calls += 1
        if self.fail_clear > 0:
            self.fail_clear -= 1
            raise PersistenceError("keychain locked", error_code=ErrorCode.PERSISTENCE_CLEAR_FAILED)
        await super().clear()


class FakeAuthClient(IAuthClient):
    """
    Scripted auth client.

    Every exchange sets `started` and then waits for `release`, which is set
    up front unless a test closes the gate to hold an exchange in flight.
    """

    def __init__(self):
        self.login_result: Optional[TokenPair] = None
        self.register_result: Optional[TokenPair] = None
        self.refresh_result: Optional[TokenPair] = None
        self.error: Optional[Exception] = None

        self.login_calls = []
        self.register_calls = []
        self.refresh_calls = []

        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.release.set()

    def hold(self) -> None:
        self.release.clear()

    async def _respond(self, result: Optional[TokenPair]) -> TokenPair:
        self.started.set()
        await self.release.wait()
        if self.error is not None:
            raise self.error
        return result

    async def login(self, credentials: LoginCredentials) -> TokenPair:
        self.login_calls.append(credentials)
        return await self._respond(self.login_result)

    async def register(self, credentials: RegisterCredentials,
                       confirm_password: Optional[str] = None) -> TokenPair:
        self.register_calls.append((credentials, confirm_password))
        return await self._respond(self.register_result)

    async def refresh(self, refresh_token: str) -> TokenPair:
        self.refresh_calls.append(refresh_token)
        return await self._respond(self.refresh_result)


@pytest.fixture
def make_pair():
    """Factory for token pairs with a real JWT access token."""
    counter = {'n': 0}

    def factory(expires_in: float = 3600, subject: str = "driver-1") -> TokenPair:
        counter['n'] += 1
        return TokenPair(
            access_token=_access_token(expires_in, f"{subject}-{counter['n']}"),
            refresh_token=f"refresh-{counter['n']}"
        )

    return factory


@pytest.fixture
def store():
    return RecordingStore()


@pytest.fixture
def auth_client():
    return FakeAuthClient()


@pytest_asyncio.fixture
async def manager(store, auth_client):
    manager = SessionManager(store, auth_client, clear_retry_delays=(0.0, 0.0))
    yield manager
    await manager.shutdown()
