"""
Configuration for the Fleet session client.

Values come from four layers, highest priority first: runtime overrides,
`FLEET_CLIENT_*` environment variables, the INI configuration file and the
built-in defaults.
"""

import os
import json
import logging
from configparser import ConfigParser
from copy import deepcopy
from pathlib import Path
from typing import Optional, Dict, Any, List

from fleet_shared.exceptions import ConfigurationError
from fleet_shared.logging_config import LogLevel, LogFormat

logger = logging.getLogger(__name__)


DEFAULT_SERVER_URL = "http://localhost:4000"

DEFAULTS: Dict[str, Dict[str, Any]] = {
    'server': {
        'url': DEFAULT_SERVER_URL,
        'timeout': 10.0,
        'refresh_timeout': 15.0,
        'retry_attempts': 2,
        'retry_delay': 1.0
    },
    'auth': {
        'service_name': 'fleet-client',
        'storage_dir': None,
        'use_keyring': True,
        'refresh_threshold': 60,
        'clear_retry_delays': [1.0, 5.0, 30.0]
    },
    'logging': {
        'level': 'INFO',
        'format': 'standard',
        'file': None,
        'max_size': 10 * 1024 * 1024,
        'backup_count': 3
    }
}

ENVIRONMENT_KEYS = {
    'FLEET_CLIENT_SERVER_URL': ('server', 'url'),
    'FLEET_CLIENT_TIMEOUT': ('server', 'timeout'),
    'FLEET_CLIENT_REFRESH_TIMEOUT': ('server', 'refresh_timeout'),
    'FLEET_CLIENT_STORAGE_DIR': ('auth', 'storage_dir'),
    'FLEET_CLIENT_USE_KEYRING': ('auth', 'use_keyring'),
    'FLEET_CLIENT_LOG_LEVEL': ('logging', 'level'),
    'FLEET_CLIENT_LOG_FORMAT': ('logging', 'format'),
    'FLEET_CLIENT_LOG_FILE': ('logging', 'file'),
}


def _parse_file_value(raw: str) -> Any:
    # JSON when it parses ("5", "false", "[1, 2]"), otherwise the bare string
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def _parse_env_value(raw: str) -> Any:
    lowered = raw.lower()
    if lowered in ('true', 'false'):
        return lowered == 'true'
    if raw.isdigit():
        return int(raw)
    return raw


class ClientConfiguration:
    """
    Effective client configuration.

    The file is read once at construction and is never created; a missing
    file simply leaves the defaults in place.
    """

    def __init__(self, config_file: Optional[str] = None):
        self._config_file = config_file or str(Path.home() / '.fleet-client' / 'client.conf')
        self._config_data: Dict[str, Dict[str, Any]] = deepcopy(DEFAULTS)
        self._overrides: Dict[str, Any] = {}

        self._merge(self._read_file())
        self._merge(self._read_environment())

    def _merge(self, layer: Dict[str, Dict[str, Any]]) -> None:
        for section, values in layer.items():
            self._config_data.setdefault(section, {}).update(values)

    def _read_file(self) -> Dict[str, Dict[str, Any]]:
        if not os.path.exists(self._config_file):
            logger.info(f"Configuration file not found: {self._config_file}")
            return {}

        parser = ConfigParser()
        try:
            parser.read(self._config_file)
        except Exception as e:
            logger.warning(f"Failed to load configuration file: {e}")
            return {}

        logger.info(f"Configuration loaded from: {self._config_file}")
        return {
            section: {key: _parse_file_value(raw) for key, raw in parser[section].items()}
            for section in parser.sections()
        }

    def _read_environment(self) -> Dict[str, Dict[str, Any]]:
        layer: Dict[str, Dict[str, Any]] = {}
        for env_var, (section, key) in ENVIRONMENT_KEYS.items():
            raw = os.environ.get(env_var)
            if raw is not None:
                layer.setdefault(section, {})[key] = _parse_env_value(raw)
        return layer

    def _get(self, section: str, key: str) -> Any:
        override_key = f"{section}.{key}"
        if override_key in self._overrides:
            return self._overrides[override_key]
        return self._config_data[section].get(key)

    def get_server_url(self) -> str:
        """Get API server URL."""
        return str(self._get('server', 'url')).rstrip('/')

    def get_timeout(self) -> float:
        """Get request timeout in seconds."""
        return float(self._get('server', 'timeout'))

    def get_refresh_timeout(self) -> float:
        """Get refresh exchange timeout in seconds."""
        return float(self._get('server', 'refresh_timeout'))

    def get_retry_attempts(self) -> int:
        return int(self._get('server', 'retry_attempts'))

    def get_retry_delay(self) -> float:
        return float(self._get('server', 'retry_delay'))

    def get_service_name(self) -> str:
        """Get the keyring service name (storage namespace)."""
        return str(self._get('auth', 'service_name'))

    def get_storage_dir(self) -> Optional[Path]:
        """Get directory for encrypted file storage, if configured."""
        value = self._get('auth', 'storage_dir')
        return Path(value).expanduser() if value else None

    def use_keyring(self) -> bool:
        value = self._get('auth', 'use_keyring')
        if isinstance(value, str):
            return value.lower() == 'true'
        return bool(value)

    def get_refresh_threshold(self) -> float:
        """Seconds before access token expiry at which a resume triggers refresh."""
        return float(self._get('auth', 'refresh_threshold'))

    def get_clear_retry_delays(self) -> List[float]:
        """Backoff delays for retrying a failed sign-out storage clear."""
        value = self._get('auth', 'clear_retry_delays')
        if isinstance(value, str):
            value = [part for part in value.split(',') if part.strip()]
        return [float(delay) for delay in value]

    def get_log_level(self) -> LogLevel:
        value = str(self._get('logging', 'level')).upper()
        try:
            return LogLevel(value)
        except ValueError:
            logger.warning(f"Unknown log level {value!r}, using INFO")
            return LogLevel.INFO

    def get_log_format(self) -> LogFormat:
        value = str(self._get('logging', 'format')).lower()
        try:
            return LogFormat(value)
        except ValueError:
            logger.warning(f"Unknown log format {value!r}, using standard")
            return LogFormat.STANDARD

    def get_log_file(self) -> Optional[str]:
        return self._get('logging', 'file') or None

    def get_log_max_size(self) -> int:
        return int(self._get('logging', 'max_size'))

    def get_log_backup_count(self) -> int:
        return int(self._get('logging', 'backup_count'))

    def get_config(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Configuration key in format 'section.key'
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        if key in self._overrides:
            return self._overrides[key]

        if '.' not in key:
            return self._config_data.get(key, default)

        section, config_key = key.split('.', 1)
        return self._config_data.get(section, {}).get(config_key, default)

    def set_override(self, key: str, value: Any) -> None:
        """
        Override a configuration value for this process only.

        Args:
            key: Configuration key in format 'section.key'
            value: Value to use
        """
        if '.' not in key:
            raise ConfigurationError(f"Override key must be 'section.key': {key}", config_key=key)
        self._overrides[key] = value
        logger.debug(f"Configuration override set: {key}")

    def clear_override(self, key: str) -> None:
        self._overrides.pop(key, None)

    def validate(self) -> None:
        """
        Validate the effective configuration.

        Raises:
            ConfigurationError: When a value is unusable
        """
        url = self.get_server_url()
        if not url.startswith(('http://', 'https://')):
            raise ConfigurationError(f"Server URL must be http(s): {url}", config_key='server.url')

        try:
            timeout = self.get_timeout()
            refresh_timeout = self.get_refresh_timeout()
            delays = self.get_clear_retry_delays()
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid numeric configuration value: {e}", cause=e)

        if timeout <= 0 or refresh_timeout <= 0:
            raise ConfigurationError("Timeouts must be positive", config_key='server.timeout')
        if any(delay < 0 for delay in delays):
            raise ConfigurationError("Retry delays cannot be negative",
                                     config_key='auth.clear_retry_delays')

    def get_config_file_path(self) -> str:
        return self._config_file
