"""
Secure Token Storage for the Fleet session client.

This module persists the current access/refresh token pair using the system
keyring, or an encrypted file when no keyring backend is usable. The pair is
stored as one value in one slot so it is always replaced as a whole.
"""

import asyncio
import os
import json
import logging
import tempfile
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import Optional, Dict, Any

import keyring
from keyring.errors import PasswordDeleteError
from cryptography.fernet import Fernet, InvalidToken

from fleet_shared.exceptions import PersistenceError, ErrorCode
from fleet_shared.interfaces import ITokenStore
from fleet_shared.models import TokenPair

logger = logging.getLogger(__name__)


class SecureTokenStore(ITokenStore):
    """
    Durable storage for the session token pair.

    Uses the system keyring when available, falls back to a Fernet-encrypted
    file readable only by the current user. Blocking backend calls run in the
    default executor.
    """

    SLOT_KEY = "session_tokens"

    def __init__(
        self,
        service_name: str = "fleet-client",
        storage_dir: Optional[Path] = None,
        use_keyring: bool = True
    ):
        self.service_name = service_name
        self.keyring_available = use_keyring and self._check_keyring_availability()
        self.storage_dir = Path(storage_dir) if storage_dir else self._get_default_storage_dir()
        self.storage_path = self.storage_dir / 'session_tokens.enc'
        self.key_path = self.storage_dir / 'session_tokens.key'

        # Encryption key for file storage
        self._encryption_key: Optional[bytes] = None

        logger.info(f"Token storage initialized (backend: {self.backend})")

    @property
    def backend(self) -> str:
        return "keyring" if self.keyring_available else "encrypted_file"

    def _check_keyring_availability(self) -> bool:
        """Check if system keyring is available."""
        try:
            test_key = f"{self.service_name}_test"
            keyring.set_password(self.service_name, test_key, "test")
            result = keyring.get_password(self.service_name, test_key)
            keyring.delete_password(self.service_name, test_key)
            return result == "test"
        except Exception as e:
            logger.debug(f"Keyring not available: {e}")
            return False

    def _get_default_storage_dir(self) -> Path:
        """Get directory for encrypted file storage."""
        xdg_config = os.environ.get('XDG_CONFIG_HOME')
        if xdg_config:
            return Path(xdg_config) / 'fleet-client'
        return Path.home() / '.config' / 'fleet-client'

    def _ensure_storage_dir(self) -> None:
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self.storage_dir, 0o700)

    def _get_encryption_key(self, create: bool) -> Optional[bytes]:
        """Get (or create) the file storage key kept beside the token file."""
        if self._encryption_key:
            return self._encryption_key

        if self.key_path.exists():
            self._encryption_key = self.key_path.read_bytes().strip()
            return self._encryption_key

        if not create:
            return None

        self._ensure_storage_dir()
        key = Fernet.generate_key()
        fd = os.open(self.key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, 'wb') as f:
            f.write(key)

        self._encryption_key = key
        return key

    def _serialize(self, pair: TokenPair) -> str:
        token_data = pair.to_dict()
        token_data['stored_at'] = datetime.now().isoformat()
        return json.dumps(token_data)

    def _deserialize(self, value: str) -> TokenPair:
        try:
            pair = TokenPair.from_response(json.loads(value))
        except (json.JSONDecodeError, TypeError) as e:
            raise PersistenceError(
                f"Stored session is not valid JSON: {e}",
                error_code=ErrorCode.PERSISTENCE_READ_FAILED,
                cause=e
            )
        if pair is None:
            raise PersistenceError(
                "Stored session is missing a token",
                error_code=ErrorCode.PERSISTENCE_READ_FAILED
            )
        return pair

    # Blocking backend operations

    def _load_sync(self) -> Optional[TokenPair]:
        if self.keyring_available:
            value = keyring.get_password(self.service_name, self.SLOT_KEY)
        else:
            value = self._read_file()

        if value is None:
            return None
        return self._deserialize(value)

    def _read_file(self) -> Optional[str]:
        if not self.storage_path.exists():
            return None

        key = self._get_encryption_key(create=False)
        if key is None:
            raise PersistenceError(
                f"Encryption key missing for {self.storage_path}",
                error_code=ErrorCode.PERSISTENCE_READ_FAILED
            )

        try:
            return Fernet(key).decrypt(self.storage_path.read_bytes()).decode()
        except InvalidToken as e:
            raise PersistenceError(
                "Stored session could not be decrypted",
                error_code=ErrorCode.PERSISTENCE_READ_FAILED,
                cause=e
            )

    def _save_sync(self, pair: TokenPair) -> None:
        value = self._serialize(pair)

        if self.keyring_available:
            keyring.set_password(self.service_name, self.SLOT_KEY, value)
            return

        self._ensure_storage_dir()
        encrypted_data = Fernet(self._get_encryption_key(create=True)).encrypt(value.encode())

        # Write beside the target then swap in, so readers never see a partial file
        fd, tmp_path = tempfile.mkstemp(dir=self.storage_dir, prefix='.session_tokens.')
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(encrypted_data)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.storage_path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _clear_sync(self) -> None:
        if self.keyring_available:
            try:
                keyring.delete_password(self.service_name, self.SLOT_KEY)
            except PasswordDeleteError:
                # Nothing stored
                pass
            return

        self.storage_path.unlink(missing_ok=True)

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args))

    def _storage_failure(self, action: str, error: Exception, error_code: ErrorCode) -> PersistenceError:
        """Wrap a backend failure; a corrupt key or slot surfaces as ValueError."""
        logger.error(f"Failed to {action}: {error}")
        return PersistenceError(f"Failed to {action}: {error}", error_code=error_code, cause=error)

    # ITokenStore

    async def load(self) -> Optional[TokenPair]:
        """
        Load the stored token pair.

        Returns:
            The stored pair, or None when nothing is stored

        Raises:
            PersistenceError: When the slot exists but cannot be read
        """
        try:
            pair = await self._run(self._load_sync)
        except PersistenceError:
            raise
        except Exception as e:
            raise self._storage_failure("load stored session", e, ErrorCode.PERSISTENCE_READ_FAILED)

        logger.debug(f"Stored session {'found' if pair else 'not found'} ({self.backend})")
        return pair

    async def save(self, pair: TokenPair) -> None:
        """
        Persist the token pair, replacing any previous pair.

        Raises:
            PersistenceError: When the pair could not be durably written
        """
        try:
            await self._run(self._save_sync, pair)
        except Exception as e:
            raise self._storage_failure("store session", e, ErrorCode.PERSISTENCE_WRITE_FAILED)

        logger.info(f"Session stored securely ({self.backend})")

    async def clear(self) -> None:
        """
        Remove the stored token pair.

        Raises:
            PersistenceError: When the slot could not be removed
        """
        try:
            await self._run(self._clear_sync)
        except Exception as e:
            raise self._storage_failure("clear stored session", e, ErrorCode.PERSISTENCE_CLEAR_FAILED)

        logger.info("Stored session cleared")

    def describe(self) -> Dict[str, Any]:
        """Storage details for diagnostics (never token values)."""
        return {
            'backend': self.backend,
            'service_name': self.service_name,
            'storage_path': None if self.keyring_available else str(self.storage_path)
        }


class InMemoryTokenStore(ITokenStore):
    """Process-local token store with the same contract. Not durable."""

    def __init__(self, pair: Optional[TokenPair] = None):
        self._pair = pair

    async def load(self) -> Optional[TokenPair]:
        return self._pair

    async def save(self, pair: TokenPair) -> None:
        self._pair = pair

    async def clear(self) -> None:
        self._pair = None
