"""
Startup wiring for the Fleet session client.

Builds the process-wide session components once and restores the stored
session before any screen subscribes to session state.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Dict

from fleet_client.api_client import FleetAPIClient, RetryConfig
from fleet_client.auth.auth_client import AuthClient
from fleet_client.auth.session_manager import SessionManager
from fleet_client.auth.session_state import SessionState
from fleet_client.auth.token_storage import SecureTokenStore
from fleet_client.config import ClientConfiguration
from fleet_shared.interfaces import ITokenStore
from fleet_shared.logging_config import setup_logging

logger = logging.getLogger(__name__)


@dataclass
class SessionComponents:
    """The session collaborators shared by the whole application."""
    config: ClientConfiguration
    token_store: ITokenStore
    auth_client: AuthClient
    session_manager: SessionManager
    api_client: FleetAPIClient

    @property
    def state(self) -> SessionState:
        return self.session_manager.state

    async def close(self) -> None:
        """Stop background work and close HTTP sessions."""
        await self.session_manager.shutdown()
        await self.api_client.close()
        await self.auth_client.close()


def configure_logging(config: ClientConfiguration) -> Dict[str, logging.Logger]:
    """Apply the configured logging settings to the process."""
    return setup_logging(
        log_level=config.get_log_level(),
        log_format=config.get_log_format(),
        log_file=config.get_log_file(),
        max_file_size=config.get_log_max_size(),
        backup_count=config.get_log_backup_count()
    )


def build_session_components(
    config: ClientConfiguration,
    token_store: Optional[ITokenStore] = None
) -> SessionComponents:
    """
    Construct the session components without touching storage or network.

    Args:
        config: Effective client configuration
        token_store: Store override (defaults to the secure store)
    """
    if token_store is None:
        token_store = SecureTokenStore(
            service_name=config.get_service_name(),
            storage_dir=config.get_storage_dir(),
            use_keyring=config.use_keyring()
        )

    server_url = config.get_server_url()
    auth_client = AuthClient(
        server_url,
        timeout=config.get_timeout(),
        refresh_timeout=config.get_refresh_timeout()
    )
    session_manager = SessionManager(
        token_store,
        auth_client,
        refresh_threshold=config.get_refresh_threshold(),
        clear_retry_delays=config.get_clear_retry_delays()
    )
    api_client = FleetAPIClient(
        server_url,
        session_manager,
        timeout=config.get_timeout(),
        retry_config=RetryConfig(
            max_retries=config.get_retry_attempts(),
            base_delay=config.get_retry_delay()
        )
    )

    return SessionComponents(
        config=config,
        token_store=token_store,
        auth_client=auth_client,
        session_manager=session_manager,
        api_client=api_client
    )


async def start_session(
    config: Optional[ClientConfiguration] = None,
    token_store: Optional[ITokenStore] = None,
    configure_logs: bool = False
) -> SessionComponents:
    """
    Build the session components and restore the stored session.

    Session state is resolved (no longer `unknown`) when this returns.

    Args:
        config: Client configuration (loaded from defaults when omitted)
        token_store: Store override
        configure_logs: Whether to install the configured logging handlers

    Raises:
        ConfigurationError: Invalid configuration
    """
    config = config or ClientConfiguration()
    config.validate()

    if configure_logs:
        configure_logging(config)

    components = build_session_components(config, token_store)
    if isinstance(components.token_store, SecureTokenStore):
        logger.info(f"Token storage: {components.token_store.describe()}")

    snapshot = await components.session_manager.initialize()
    logger.info(f"Session ready: {snapshot.status.value}")
    return components
