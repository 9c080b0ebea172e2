"""
Exception hierarchy for the Fleet session client.

This module defines structured exceptions with error codes, context information,
and recovery suggestions, plus the pure classification function that maps an
HTTP exchange outcome onto that closed taxonomy.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List, Union, Sequence
from enum import Enum


CONNECTIVITY_MESSAGE = (
    "Unable to reach the server. Check your internet connection and try again."
)


class ErrorCode(Enum):
    """Standardized error codes for the Fleet session client."""

    # Validation Errors (1000-1099)
    VALIDATION_INVALID_INPUT = "VALIDATION_1001"
    VALIDATION_MISSING_REQUIRED_FIELD = "VALIDATION_1002"
    VALIDATION_PASSWORD_TOO_SHORT = "VALIDATION_1003"
    VALIDATION_PASSWORD_MISMATCH = "VALIDATION_1004"

    # Authentication Errors (2000-2099)
    AUTH_INVALID_CREDENTIALS = "AUTH_2001"
    AUTH_INVALID_INVITE = "AUTH_2002"
    AUTH_USERNAME_TAKEN = "AUTH_2003"
    AUTH_REFRESH_REJECTED = "AUTH_2004"
    AUTH_UNAUTHENTICATED = "AUTH_2005"
    AUTH_INCOMPLETE_RESPONSE = "AUTH_2006"

    # Network and Communication Errors (3000-3099)
    NETWORK_CONNECTION_FAILED = "NETWORK_3001"
    NETWORK_TIMEOUT = "NETWORK_3002"

    # Server Errors (4000-4099)
    SERVER_INTERNAL_ERROR = "SERVER_4001"
    SERVER_UNEXPECTED_STATUS = "SERVER_4002"

    # Request Errors (5000-5099)
    REQUEST_REJECTED = "REQUEST_5001"

    # Persistence Errors (6000-6099)
    PERSISTENCE_READ_FAILED = "PERSISTENCE_6001"
    PERSISTENCE_WRITE_FAILED = "PERSISTENCE_6002"
    PERSISTENCE_CLEAR_FAILED = "PERSISTENCE_6003"

    # Configuration Errors (8000-8099)
    CONFIG_INVALID_VALUE = "CONFIG_8001"


class ErrorSeverity(Enum):
    """Error severity levels for logging and handling."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryAction(Enum):
    """Suggested recovery actions for errors."""
    RETRY = "retry"
    RETRY_WITH_BACKOFF = "retry_with_backoff"
    REFRESH_TOKEN = "refresh_token"
    SIGN_IN_AGAIN = "sign_in_again"
    USER_INTERVENTION = "user_intervention"
    CONTACT_ADMIN = "contact_admin"


class ExchangeKind(Enum):
    """The authentication exchange an HTTP outcome belongs to."""
    LOGIN = "login"
    REGISTER = "register"
    REFRESH = "refresh"
    REQUEST = "request"


class FleetClientError(Exception):
    """
    Base exception class for all Fleet session client errors.

    Provides structured error information including error codes, context,
    and recovery suggestions so callers never see raw transport exceptions.
    """

    retryable = False

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
        recovery_actions: Optional[List[RecoveryAction]] = None,
        cause: Optional[Exception] = None,
        user_message: Optional[str] = None
    ):
        super().__init__(message)

        self.message = message
        self.error_code = error_code
        self.severity = severity
        self.context = context or {}
        self.recovery_actions = recovery_actions or []
        self.cause = cause
        self.user_message = user_message or message
        self.timestamp = datetime.now()

        # Add cause information to context if available
        if cause:
            self.context['cause_type'] = type(cause).__name__
            self.context['cause_message'] = str(cause)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary format for serialization."""
        return {
            'error': {
                'code': self.error_code.value,
                'message': self.message,
                'user_message': self.user_message,
                'severity': self.severity.value,
                'retryable': self.retryable,
                'timestamp': self.timestamp.isoformat(),
                'context': self.context,
                'recovery_actions': [action.value for action in self.recovery_actions],
                'cause': {
                    'type': self.context.get('cause_type'),
                    'message': self.context.get('cause_message')
                } if self.cause else None
            }
        }


# Specific exception classes for the session taxonomy

class ValidationError(FleetClientError):
    """Malformed or missing input, detected before any network call where possible."""

    def __init__(self, message: str, field_name: Optional[str] = None, **kwargs):
        # Extract context from kwargs to avoid duplicate parameter
        context = kwargs.pop('context', {})
        if field_name:
            context['field_name'] = field_name

        error_code = kwargs.pop('error_code', ErrorCode.VALIDATION_INVALID_INPUT)
        severity = kwargs.pop('severity', ErrorSeverity.LOW)
        recovery_actions = kwargs.pop('recovery_actions', [RecoveryAction.USER_INTERVENTION])

        super().__init__(
            message=message,
            error_code=error_code,
            severity=severity,
            recovery_actions=recovery_actions,
            context=context,
            **kwargs
        )
        self.field_name = field_name


class InvalidCredentialsError(FleetClientError):
    """Server rejected the username/password combination."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.AUTH_INVALID_CREDENTIALS,
            severity=ErrorSeverity.LOW,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            **kwargs
        )


class InvalidInviteError(FleetClientError):
    """Server rejected the registration invite code."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.AUTH_INVALID_INVITE,
            severity=ErrorSeverity.LOW,
            recovery_actions=[RecoveryAction.USER_INTERVENTION, RecoveryAction.CONTACT_ADMIN],
            **kwargs
        )


class UsernameTakenError(FleetClientError):
    """Registration username already exists."""

    def __init__(self, message: str, **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.AUTH_USERNAME_TAKEN,
            severity=ErrorSeverity.LOW,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            **kwargs
        )


class NetworkError(FleetClientError):
    """No response reached the client. Retryable."""

    retryable = True

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.NETWORK_CONNECTION_FAILED, **kwargs):
        kwargs.setdefault('user_message', CONNECTIVITY_MESSAGE)
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.MEDIUM,
            recovery_actions=[RecoveryAction.RETRY_WITH_BACKOFF],
            **kwargs
        )


class ServerError(FleetClientError):
    """Server was reached but failed. Retryable by the user."""

    retryable = True

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.SERVER_INTERNAL_ERROR,
                 status: Optional[int] = None, **kwargs):
        context = kwargs.pop('context', {})
        if status is not None:
            context['status'] = status

        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.MEDIUM,
            recovery_actions=[RecoveryAction.RETRY],
            context=context,
            **kwargs
        )
        self.status = status


class RefreshRejectedError(FleetClientError):
    """Refresh token is invalid, expired or revoked. Never retryable."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('user_message', "Your session has expired. Please sign in again.")
        super().__init__(
            message=message,
            error_code=ErrorCode.AUTH_REFRESH_REJECTED,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.SIGN_IN_AGAIN],
            **kwargs
        )


class PersistenceError(FleetClientError):
    """Secure storage read or write failed."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.PERSISTENCE_WRITE_FAILED, **kwargs):
        kwargs.setdefault('user_message', "Your session could not be saved on this device.")
        super().__init__(
            message=message,
            error_code=error_code,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.RETRY, RecoveryAction.USER_INTERVENTION],
            **kwargs
        )


class UnauthenticatedError(FleetClientError):
    """No authenticated session is available."""

    def __init__(self, message: str = "Not authenticated", **kwargs):
        kwargs.setdefault('user_message', "Please sign in to continue.")
        super().__init__(
            message=message,
            error_code=ErrorCode.AUTH_UNAUTHENTICATED,
            severity=ErrorSeverity.MEDIUM,
            recovery_actions=[RecoveryAction.SIGN_IN_AGAIN],
            **kwargs
        )


class APIError(FleetClientError):
    """A non-authentication request was rejected by the server (4xx)."""

    def __init__(self, message: str, status: int, **kwargs):
        context = kwargs.pop('context', {})
        context['status'] = status
        super().__init__(
            message=message,
            error_code=ErrorCode.REQUEST_REJECTED,
            severity=ErrorSeverity.LOW,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            context=context,
            **kwargs
        )
        self.status = status


class ConfigurationError(FleetClientError):
    """Configuration related errors."""

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        context = kwargs.pop('context', {})
        if config_key:
            context['config_key'] = config_key

        super().__init__(
            message=message,
            error_code=ErrorCode.CONFIG_INVALID_VALUE,
            severity=ErrorSeverity.HIGH,
            recovery_actions=[RecoveryAction.USER_INTERVENTION],
            context=context,
            **kwargs
        )


def extract_error_message(body: Any, fallback: str) -> str:
    """
    Pull the user-facing message out of a `{message: str | [str]}` error body.

    Args:
        body: Decoded JSON body, or anything else when the body was not JSON
        fallback: Transport-level message used when the body carries none

    Returns:
        The server message, a joined message list, or the fallback
    """
    if isinstance(body, dict):
        message: Union[str, Sequence[str], None] = body.get('message')
        if isinstance(message, str) and message:
            return message
        if isinstance(message, (list, tuple)):
            parts = [str(part) for part in message if part]
            if parts:
                return ", ".join(parts)
    return fallback


def classify_http_failure(
    exchange: ExchangeKind,
    status: Optional[int],
    body: Any = None,
    transport_message: Optional[str] = None
) -> FleetClientError:
    """
    Map a failed HTTP exchange onto the closed error taxonomy.

    This is a pure function of the transport outcome: whether a response was
    received, its status code, and the shape of its body.

    Args:
        exchange: Which exchange failed
        status: HTTP status, or None when no response was received
        body: Decoded response body (may be None or non-dict)
        transport_message: Message from the transport layer

    Returns:
        The classified error (not raised)
    """
    context = {'exchange': exchange.value}

    if status is None:
        return NetworkError(
            f"No response from server during {exchange.value}: {transport_message or 'connection failed'}",
            context=context
        )

    context['status'] = status
    message = extract_error_message(
        body, transport_message or f"Request failed with status code {status}"
    )

    if exchange is ExchangeKind.LOGIN:
        if status in (401, 403):
            return InvalidCredentialsError(message, context=context)
        if status in (400, 422):
            return ValidationError(message, context=context)

    elif exchange is ExchangeKind.REGISTER:
        if status == 409:
            return UsernameTakenError(message, context=context)
        if status in (403, 404, 410):
            return InvalidInviteError(message, context=context)
        if status in (400, 422):
            if 'invite' in message.lower():
                return InvalidInviteError(message, context=context)
            return ValidationError(message, context=context)

    elif exchange is ExchangeKind.REFRESH:
        if status in (400, 401, 403):
            return RefreshRejectedError(message, context=context)

    elif exchange is ExchangeKind.REQUEST:
        if status == 401:
            return UnauthenticatedError(message, context=context)
        if 400 <= status < 500:
            return APIError(message, status=status, context=context)

    if status >= 500:
        return ServerError(message, status=status, context=context)

    return ServerError(
        message,
        error_code=ErrorCode.SERVER_UNEXPECTED_STATUS,
        status=status,
        context=context
    )
