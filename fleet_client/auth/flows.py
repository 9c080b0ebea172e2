"""
Login and registration flows backing the authentication screens.

A flow holds the entered form input, the loading flag and the last error
message. Input is never cleared on failure.
"""

import logging
from typing import Optional, Callable, Awaitable

from fleet_shared.exceptions import FleetClientError
from fleet_shared.interfaces import IAuthClient, ISessionManager
from fleet_shared.models import TokenPair, LoginCredentials, RegisterCredentials

logger = logging.getLogger(__name__)


class AuthFlow:
    """Shared submit/sign-in handling for the authentication screens."""

    def __init__(self, auth_client: IAuthClient, session_manager: ISessionManager):
        self.auth_client = auth_client
        self.session_manager = session_manager

        self.is_loading = False
        self.error: Optional[str] = None
        self.last_error: Optional[FleetClientError] = None

    def reset(self) -> None:
        """Clear the error state. Entered input is kept."""
        self.error = None
        self.last_error = None

    async def _run(self, exchange: Callable[[], Awaitable[TokenPair]]) -> Optional[TokenPair]:
        if self.is_loading:
            logger.debug("Submission ignored; an exchange is already in progress")
            return None

        self.is_loading = True
        self.reset()
        try:
            pair = await exchange()
            await self.session_manager.sign_in(pair)
        except FleetClientError as e:
            self.last_error = e
            self.error = e.user_message
            logger.info(f"{type(self).__name__} failed: {e.error_code.value}")
            return None
        finally:
            self.is_loading = False

        return pair


class LoginFlow(AuthFlow):
    """Username/password sign-in."""

    def __init__(self, auth_client: IAuthClient, session_manager: ISessionManager):
        super().__init__(auth_client, session_manager)
        self.username = ""
        self.password = ""
        self.company_id: Optional[str] = None

    @property
    def can_submit(self) -> bool:
        return (not self.is_loading
                and bool(self.username.strip())
                and bool(self.password.strip()))

    async def submit(self) -> Optional[TokenPair]:
        """
        Log in with the entered credentials and sign in on success.

        Returns:
            The new token pair, or None on failure (see `error`)
        """
        credentials = LoginCredentials(
            username=self.username,
            password=self.password,
            company_id=self.company_id
        )
        return await self._run(lambda: self.auth_client.login(credentials))


class RegisterFlow(AuthFlow):
    """Invite-code registration."""

    def __init__(self, auth_client: IAuthClient, session_manager: ISessionManager):
        super().__init__(auth_client, session_manager)
        self.invite_code = ""
        self.username = ""
        self.password = ""
        self.confirm_password = ""

    @property
    def can_submit(self) -> bool:
        fields = (self.invite_code, self.username, self.password, self.confirm_password)
        return not self.is_loading and all(field.strip() for field in fields)

    async def submit(self) -> Optional[TokenPair]:
        """
        Register with the entered fields and sign in on success.

        Returns:
            The new token pair, or None on failure (see `error`)
        """
        credentials = RegisterCredentials(
            username=self.username,
            password=self.password,
            invite_code=self.invite_code
        )
        return await self._run(
            lambda: self.auth_client.register(credentials, self.confirm_password)
        )
