"""
Session Manager for the Fleet session client.

This module owns sign-in, sign-out and token refresh. It is the only writer
of the token store and the session state, and it guarantees that at most one
refresh exchange is in flight per process.
"""

import asyncio
import logging
import time
from typing import Optional, Dict, Any, Iterable

from jose import jwt, JWTError

from fleet_shared.exceptions import (
    FleetClientError, PersistenceError, RefreshRejectedError, UnauthenticatedError
)
from fleet_shared.interfaces import ISessionManager, ITokenStore, IAuthClient
from fleet_shared.logging_config import AuditLogger, log_structured_error
from fleet_shared.models import TokenPair, SessionSnapshot
from fleet_client.auth.session_state import SessionState

logger = logging.getLogger(__name__)


def parse_token_claims(token: str) -> Optional[Dict[str, Any]]:
    """
    Read the claims of a JWT access token without verifying its signature.

    Returns:
        The claims, or None when the token is not a JWT
    """
    try:
        return jwt.get_unverified_claims(token)
    except JWTError as e:
        logger.debug(f"Access token claims unavailable: {e}")
        return None


def seconds_until_expiry(token: str) -> Optional[float]:
    """Seconds until the token's `exp` claim, negative once expired, None if unknown."""
    claims = parse_token_claims(token)
    if not claims:
        return None

    expires_at = claims.get('exp')
    if not isinstance(expires_at, (int, float)):
        return None
    return expires_at - time.time()


def needs_refresh(token: str, threshold: float) -> bool:
    """
    Whether a token expires within `threshold` seconds.

    A token that cannot be decoded is refreshed; a JWT without an `exp`
    claim is not.
    """
    if parse_token_claims(token) is None:
        return True
    remaining = seconds_until_expiry(token)
    return remaining is not None and remaining <= threshold


class SessionManager(ISessionManager):
    """
    Orchestrates the authenticated session.

    All token store writes and session state changes happen under one lock,
    in the order the operations were issued. Every sign-in and sign-out starts
    a new session generation; a refresh result is only applied to the
    generation that started it.
    """

    def __init__(
        self,
        token_store: ITokenStore,
        auth_client: IAuthClient,
        session_state: Optional[SessionState] = None,
        refresh_threshold: float = 60.0,
        clear_retry_delays: Iterable[float] = (1.0, 5.0, 30.0)
    ):
        self.token_store = token_store
        self.auth_client = auth_client
        self.state = session_state or SessionState()
        self.refresh_threshold = refresh_threshold
        self.clear_retry_delays = list(clear_retry_delays)

        self._current_pair: Optional[TokenPair] = None
        self._generation = 0
        self._initialized = False
        self._write_lock = asyncio.Lock()

        self._refresh_task: Optional[asyncio.Task] = None
        self._clear_retry_task: Optional[asyncio.Task] = None

        self._audit_logger = AuditLogger()

        logger.info("Session manager initialized")

    @property
    def is_authenticated(self) -> bool:
        return self.state.current.is_authenticated

    @property
    def is_refreshing(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    def _apply_pair(self, pair: TokenPair) -> None:
        self._current_pair = pair
        self.state.publish(SessionSnapshot.authenticated(pair.access_token))

    async def initialize(self) -> SessionSnapshot:
        """
        Restore the stored session once at startup.

        Publishes `authenticated` for a stored pair and `anonymous` otherwise.
        An already-expired access token triggers one refresh attempt; only a
        rejected refresh token ends the restored session.

        Returns:
            The resolved session snapshot
        """
        if self._initialized:
            return self.state.current
        self._initialized = True

        generation = self._generation
        try:
            pair = await self.token_store.load()
        except PersistenceError as e:
            log_structured_error(logger, e, logging.WARNING)
            pair = None
        except asyncio.CancelledError:
            self._initialized = False
            raise
        except Exception:
            logger.exception("Token store failed while loading; starting anonymous")
            pair = None

        async with self._write_lock:
            if self._generation != generation:
                logger.info("Session changed while loading stored tokens; keeping newer state")
                return self.state.current

            if pair is None:
                logger.info("No stored session; starting anonymous")
                self.state.publish(SessionSnapshot.anonymous())
                return self.state.current

            self._apply_pair(pair)

        self._audit_logger.log_session_restore()
        logger.info("Stored session restored")

        if needs_refresh(pair.access_token, 0):
            logger.info("Stored access token is expired or unreadable; refreshing")
            try:
                await self.refresh_session()
            except RefreshRejectedError:
                logger.info("Stored session could not be refreshed; signed out")
            except FleetClientError as e:
                # Tokens may still work once connectivity returns
                logger.warning(f"Startup refresh failed, keeping stored session: {e.message}")

        return self.state.current

    async def sign_in(self, pair: TokenPair) -> None:
        """
        Persist a token pair and publish the authenticated session.

        Signing in again with the current pair changes nothing.

        Raises:
            PersistenceError: The pair could not be stored; state is unchanged
        """
        if not isinstance(pair, TokenPair):
            raise TypeError(f"sign_in expects a TokenPair, got {type(pair).__name__}")

        async with self._write_lock:
            if pair == self._current_pair and self.is_authenticated:
                logger.debug("Sign-in with the current token pair; nothing to do")
                return

            try:
                await self.token_store.save(pair)
            except PersistenceError as e:
                self._audit_logger.log_error(e)
                raise

            self._generation += 1
            self._initialized = True
            self._cancel_clear_retry()
            self._apply_pair(pair)

        logger.info("Signed in")

    async def sign_out(self, reason: str = "user") -> None:
        """
        End the current session.

        Always completes. If the stored tokens cannot be removed the
        discrepancy is logged and clearing is retried in the background.
        """
        async with self._write_lock:
            await self._end_session(reason)

    async def _end_session(self, reason: str) -> None:
        """Publish `anonymous` and clear storage. Caller holds the write lock."""
        self._generation += 1
        self._initialized = True
        self._current_pair = None
        self.state.publish(SessionSnapshot.anonymous())

        try:
            await self.token_store.clear()
            storage_cleared = True
        except PersistenceError as e:
            storage_cleared = False
            log_structured_error(logger, e, logging.WARNING)
            logger.warning("Signed out but stored tokens remain; retrying clear in background")
            self._schedule_clear_retry(self._generation)

        self._audit_logger.log_sign_out(reason, storage_cleared)
        logger.info(f"Signed out ({reason})")

    def _schedule_clear_retry(self, generation: int) -> None:
        self._cancel_clear_retry()
        if not self.clear_retry_delays:
            logger.error("Stored tokens could not be cleared and retries are disabled")
            return
        self._clear_retry_task = asyncio.create_task(self._retry_clear(generation))

    def _cancel_clear_retry(self) -> None:
        if self._clear_retry_task and not self._clear_retry_task.done():
            self._clear_retry_task.cancel()
        self._clear_retry_task = None

    async def _retry_clear(self, generation: int) -> None:
        """Background retry of a failed sign-out clear."""
        for attempt, delay in enumerate(self.clear_retry_delays, 1):
            await asyncio.sleep(delay)

            async with self._write_lock:
                if self._generation != generation:
                    logger.debug("A new session replaced the stored tokens; clear retry abandoned")
                    return
                try:
                    await self.token_store.clear()
                except PersistenceError as e:
                    logger.warning(f"Clear retry {attempt} failed: {e.message}")
                    continue

            logger.info(f"Stored tokens cleared on retry {attempt}")
            return

        logger.error(
            f"Stored tokens could not be cleared after {len(self.clear_retry_delays)} retries; "
            "stale tokens remain on this device"
        )

    def get_valid_access_token(self) -> str:
        """
        Get the current access token without any network activity.

        Raises:
            UnauthenticatedError: No authenticated session
        """
        snapshot = self.state.current
        if snapshot.is_authenticated:
            return snapshot.access_token
        raise UnauthenticatedError("No authenticated session")

    def current_claims(self) -> Optional[Dict[str, Any]]:
        """Unverified claims of the current access token."""
        if self._current_pair is None:
            return None
        return parse_token_claims(self._current_pair.access_token)

    async def refresh_session(self) -> TokenPair:
        """
        Refresh the session tokens.

        Concurrent callers share a single network exchange and all receive
        its outcome.

        Raises:
            RefreshRejectedError: The session has been signed out
            NetworkError / ServerError: Retryable; the session is unchanged
            UnauthenticatedError: There is no session, or it ended mid-refresh
        """
        if self._refresh_task is None:
            if self._current_pair is None:
                raise UnauthenticatedError("No session to refresh")

            self._refresh_task = asyncio.create_task(
                self._run_refresh(self._current_pair, self._generation)
            )
            self._refresh_task.add_done_callback(self._on_refresh_done)
        else:
            logger.debug("Refresh already in flight; waiting for its result")

        # Shielded so a cancelled caller does not cancel the shared exchange
        return await asyncio.shield(self._refresh_task)

    def _on_refresh_done(self, task: asyncio.Task) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if not task.cancelled():
            # Outcome already logged by _run_refresh; mark it retrieved
            task.exception()

    async def _run_refresh(self, pair: TokenPair, generation: int) -> TokenPair:
        logger.info("Refreshing session tokens")

        try:
            new_pair = await self.auth_client.refresh(pair.refresh_token)
        except RefreshRejectedError as e:
            self._audit_logger.log_token_refresh(False, e.error_code.value)
            async with self._write_lock:
                if self._generation == generation:
                    logger.warning("Refresh token rejected; ending session")
                    await self._end_session("refresh_rejected")
            raise
        except FleetClientError as e:
            self._audit_logger.log_token_refresh(False, e.error_code.value)
            logger.warning(f"Token refresh failed ({e.error_code.value}); session unchanged")
            raise

        async with self._write_lock:
            if self._generation != generation:
                logger.info("Discarding refresh result for a session that is no longer current")
                if self._current_pair is not None:
                    return self._current_pair
                raise UnauthenticatedError("Session ended while refresh was in flight")

            try:
                await self.token_store.save(new_pair)
            except PersistenceError as e:
                # The server already rotated the old refresh token
                log_structured_error(logger, e)
                logger.error("Refreshed tokens kept in memory only; stored tokens are stale")

            self._apply_pair(new_pair)

        self._audit_logger.log_token_refresh(True)
        logger.info("Token refresh successful")
        return new_pair

    async def ensure_fresh(self, threshold_seconds: Optional[float] = None) -> Optional[TokenPair]:
        """
        Refresh if the access token expires within the threshold.

        Intended for app resume. JWTs without an `exp` claim are left alone;
        tokens that are not JWTs are refreshed.

        Returns:
            The current (possibly refreshed) pair, or None when anonymous
        """
        if self._current_pair is None:
            return None

        threshold = self.refresh_threshold if threshold_seconds is None else threshold_seconds
        if not needs_refresh(self._current_pair.access_token, threshold):
            return self._current_pair

        logger.info("Access token expires soon or is unreadable; refreshing")
        return await self.refresh_session()

    async def shutdown(self) -> None:
        """Cancel background work."""
        logger.info("Shutting down session manager")

        for task in (self._clear_retry_task, self._refresh_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        self._clear_retry_task = None
        self._refresh_task = None
