"""
HTTP API Client for the Fleet session client.

This module provides the authorized request layer used by data screens:
it attaches the current access token to every request, refreshes the session
once on a 401 and retries the request exactly once with the new token.
"""

import asyncio
import logging
import random
from typing import Optional, Dict, Any, Tuple

from aiohttp import ClientSession, ClientTimeout, ClientError

from fleet_shared.exceptions import ExchangeKind, classify_http_failure
from fleet_shared.interfaces import ISessionManager

logger = logging.getLogger(__name__)


class RetryConfig:
    """Configuration for network retry logic."""

    def __init__(
        self,
        max_retries: int = 2,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    def delay_for(self, attempt: int) -> float:
        """Backoff delay before retry number `attempt` (0-based)."""
        delay = min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)
        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)
        return delay


class FleetAPIClient:
    """
    HTTP client for the Fleet API server.

    Authenticated requests read the access token from the session manager
    before being sent and never trigger network activity for authentication
    on their own, except the single refresh after a 401.
    """

    def __init__(
        self,
        server_url: str,
        session_manager: ISessionManager,
        timeout: float = 10.0,
        retry_config: Optional[RetryConfig] = None,
        session: Optional[ClientSession] = None
    ):
        self.server_url = server_url.rstrip('/')
        self.session_manager = session_manager
        self.timeout = ClientTimeout(total=timeout)
        self.retry_config = retry_config or RetryConfig()

        self._session = session
        self._owns_session = session is None

        logger.info(f"API client initialized for server: {self.server_url}")

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _ensure_session(self) -> None:
        """Ensure HTTP session is available."""
        if self._session is None or self._session.closed:
            self._session = ClientSession(
                timeout=self.timeout,
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

    @staticmethod
    def _is_auth_path(path: str) -> bool:
        return '/auth/' in path

    async def _send(
        self,
        method: str,
        path: str,
        headers: Dict[str, str],
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        retry: bool = True
    ) -> Tuple[int, Any]:
        """
        Send one logical request, retrying network failures with backoff.

        Returns:
            (status, decoded body or None)

        Raises:
            NetworkError: No response after all retries
        """
        await self._ensure_session()
        url = f"{self.server_url}/{path.lstrip('/')}"
        max_retries = self.retry_config.max_retries if retry else 0

        attempt = 0
        while True:
            try:
                logger.debug(f"Making {method} request to {url} (attempt {attempt + 1})")
                async with self._session.request(
                    method=method,
                    url=url,
                    json=data,
                    params=params,
                    headers=headers
                ) as response:
                    try:
                        body = await response.json(content_type=None)
                    except ValueError:
                        body = None
                    return response.status, body

            except (ClientError, asyncio.TimeoutError) as e:
                logger.warning(f"Network error on attempt {attempt + 1}: {e!r}")
                if attempt >= max_retries:
                    raise classify_http_failure(
                        ExchangeKind.REQUEST, None,
                        transport_message=f"{method} {path} failed after {attempt + 1} attempts: {e!r}"
                    ) from e

                delay = self.retry_config.delay_for(attempt)
                logger.info(f"Retrying in {delay:.1f} seconds...")
                await asyncio.sleep(delay)
                attempt += 1

    async def request(
        self,
        method: str,
        path: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        authenticated: bool = True,
        retry: bool = True
    ) -> Any:
        """
        Make an API request.

        Args:
            method: HTTP method
            path: API path relative to the server URL
            data: JSON request body
            params: Query parameters
            authenticated: Whether to attach the session's access token
            retry: Whether to retry network failures

        Returns:
            Decoded JSON response body (None for empty bodies)

        Raises:
            UnauthenticatedError: No session, or still unauthorized after refresh
            RefreshRejectedError / NetworkError / ServerError: From the refresh exchange
            APIError: Other 4xx responses
        """
        headers: Dict[str, str] = {}
        if authenticated:
            headers['Authorization'] = f"Bearer {self.session_manager.get_valid_access_token()}"

        status, body = await self._send(method, path, headers, data, params, retry)

        if status == 401 and authenticated and not self._is_auth_path(path):
            logger.info(f"{method} {path} unauthorized; refreshing session")
            pair = await self.session_manager.refresh_session()

            headers['Authorization'] = f"Bearer {pair.access_token}"
            status, body = await self._send(method, path, headers, data, params, retry)

        if 200 <= status < 300:
            return body

        raise classify_http_failure(ExchangeKind.REQUEST, status, body)

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None, **kwargs) -> Any:
        return await self.request('GET', path, params=params, **kwargs)

    async def post(self, path: str, data: Optional[Dict[str, Any]] = None, **kwargs) -> Any:
        return await self.request('POST', path, data=data, **kwargs)

    async def put(self, path: str, data: Optional[Dict[str, Any]] = None, **kwargs) -> Any:
        return await self.request('PUT', path, data=data, **kwargs)

    async def patch(self, path: str, data: Optional[Dict[str, Any]] = None, **kwargs) -> Any:
        return await self.request('PATCH', path, data=data, **kwargs)

    async def delete(self, path: str, **kwargs) -> Any:
        return await self.request('DELETE', path, **kwargs)
