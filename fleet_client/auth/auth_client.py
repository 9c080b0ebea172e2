"""
Authentication HTTP client for the Fleet session client.

This module performs the login, registration and refresh exchanges against
the API server and maps every outcome onto the client error taxonomy. It
never touches token storage or session state.
"""

import asyncio
import logging
from typing import Optional, Dict, Any

import aiohttp
from aiohttp import ClientSession, ClientTimeout, ClientError

from fleet_shared.exceptions import (
    ExchangeKind, ServerError, RefreshRejectedError, FleetClientError, ErrorCode,
    classify_http_failure
)
from fleet_shared.interfaces import IAuthClient
from fleet_shared.logging_config import AuditLogger
from fleet_shared.models import TokenPair, LoginCredentials, RegisterCredentials
from fleet_client.auth.validation import validate_login, validate_registration

logger = logging.getLogger(__name__)


LOGIN_PATH = '/auth/mobile/login'
REGISTER_PATH = '/auth/mobile/register'
REFRESH_PATH = '/auth/mobile/refresh'


class AuthClient(IAuthClient):
    """
    Client for the mobile authentication endpoints.

    Exchanges are never retried automatically: a refresh token replayed after
    rotation would be revoked by the server.
    """

    def __init__(
        self,
        server_url: str,
        timeout: float = 10.0,
        refresh_timeout: float = 15.0,
        session: Optional[ClientSession] = None
    ):
        self.server_url = server_url.rstrip('/')
        self.timeout = ClientTimeout(total=timeout)
        self.refresh_timeout = ClientTimeout(total=refresh_timeout)

        self._session = session
        self._owns_session = session is None
        self._audit_logger = AuditLogger()

        logger.info(f"Auth client initialized for server: {self.server_url}")

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _ensure_session(self) -> None:
        """Ensure HTTP session is available."""
        if self._session is None or self._session.closed:
            self._session = ClientSession(
                headers={
                    'User-Agent': 'FleetClient/1.0',
                    'Content-Type': 'application/json'
                }
            )
            self._owns_session = True

    async def close(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _read_body(self, response: aiohttp.ClientResponse) -> Any:
        """Decode a JSON body, or None when there is none."""
        try:
            return await response.json(content_type=None)
        except ValueError:
            return None

    async def _exchange(
        self,
        exchange: ExchangeKind,
        path: str,
        body: Dict[str, Any],
        timeout: ClientTimeout
    ) -> TokenPair:
        """
        POST an authentication request and return the resulting token pair.

        Raises:
            FleetClientError: The classified failure
        """
        await self._ensure_session()
        url = f"{self.server_url}{path}"

        try:
            logger.debug(f"Auth exchange {exchange.value}: POST {url}")
            async with self._session.post(url, json=body, timeout=timeout) as response:
                data = await self._read_body(response)

                if 200 <= response.status < 300:
                    pair = TokenPair.from_response(data)
                    if pair is None:
                        raise ServerError(
                            f"{exchange.value} response did not contain a token pair",
                            error_code=ErrorCode.AUTH_INCOMPLETE_RESPONSE,
                            status=response.status,
                            user_message="The server returned an incomplete response. Please try again."
                        )
                    return pair

                raise classify_http_failure(exchange, response.status, data)

        except (ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Network error during {exchange.value}: {e!r}")
            raise classify_http_failure(exchange, None, transport_message=str(e) or type(e).__name__) from e

    async def login(self, credentials: LoginCredentials) -> TokenPair:
        """
        Exchange username and password for a token pair.

        Raises:
            ValidationError: Input rejected before any network call
            InvalidCredentialsError: Username/password rejected
            NetworkError: No response from the server
            ServerError: Server failure
        """
        validate_login(credentials)
        username = credentials.username.strip()

        try:
            pair = await self._exchange(
                ExchangeKind.LOGIN, LOGIN_PATH, credentials.to_request(), self.timeout
            )
        except FleetClientError as e:
            self._audit_logger.log_authentication(username, success=False,
                                                  failure_reason=e.error_code.value)
            raise

        self._audit_logger.log_authentication(username, success=True)
        logger.info(f"Login successful for user {username}")
        return pair

    async def register(self, credentials: RegisterCredentials,
                       confirm_password: Optional[str] = None) -> TokenPair:
        """
        Create an account with an invite code and return its token pair.

        Raises:
            ValidationError: Input rejected before any network call
            InvalidInviteError: Invite code rejected
            UsernameTakenError: Username already exists
            NetworkError: No response from the server
            ServerError: Server failure
        """
        validate_registration(credentials, confirm_password)
        username = credentials.username.strip()

        try:
            pair = await self._exchange(
                ExchangeKind.REGISTER, REGISTER_PATH, credentials.to_request(), self.timeout
            )
        except FleetClientError as e:
            self._audit_logger.log_authentication(username, success=False,
                                                  failure_reason=e.error_code.value,
                                                  registration=True)
            raise

        self._audit_logger.log_authentication(username, success=True, registration=True)
        logger.info(f"Registration successful for user {username}")
        return pair

    async def refresh(self, refresh_token: str) -> TokenPair:
        """
        Mint a new token pair from a refresh token.

        Raises:
            RefreshRejectedError: Refresh token expired, revoked or invalid
            NetworkError: No response from the server (retryable)
            ServerError: Server failure (retryable)
        """
        if not refresh_token:
            raise RefreshRejectedError("No refresh token available")

        return await self._exchange(
            ExchangeKind.REFRESH, REFRESH_PATH, {'refresh_token': refresh_token},
            self.refresh_timeout
        )
