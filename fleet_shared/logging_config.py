"""
Logging configuration for the Fleet session client.

Module loggers propagate to the root logger, which `setup_logging` wires to
the console and an optional rotating file. Session events (sign-in, sign-out,
refresh, restore) additionally go to the `audit` logger as structured records.
Token values and passwords are never part of any record.
"""

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, Any, Optional

from fleet_shared.exceptions import FleetClientError


AUDIT_LOGGER_NAME = "audit"
TIME_FORMAT = '%Y-%m-%d %H:%M:%S'


class LogLevel(Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(Enum):
    STANDARD = "standard"
    JSON = "json"
    DETAILED = "detailed"


class AuditEventType(Enum):
    """Session events recorded in the audit trail."""
    SIGN_IN = "sign_in"
    REGISTRATION = "registration"
    SIGN_OUT = "sign_out"
    TOKEN_REFRESH = "token_refresh"
    SESSION_RESTORE = "session_restore"
    ERROR_EVENT = "error_event"


# Attributes every LogRecord carries, plus the two this module attaches
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord('', 0, '', 0, '', (), None))) | {
    'message', 'asctime', 'error_info', 'audit_info'
}


def _error_fields(error: FleetClientError) -> Dict[str, Any]:
    return {
        'code': error.error_code.value,
        'severity': error.severity.value,
        'retryable': error.retryable,
        'context': error.context,
        'recovery_actions': [action.value for action in error.recovery_actions],
        'user_message': error.user_message
    }


def _attached_error(record: logging.LogRecord) -> Optional[FleetClientError]:
    error = getattr(record, 'error_info', None)
    return error if isinstance(error, FleetClientError) else None


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def __init__(self, include_extra_fields: bool = True):
        super().__init__()
        self.include_extra_fields = include_extra_fields

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
            'pid': os.getpid()
        }

        if record.exc_info and record.exc_info[0]:
            entry['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': self.formatException(record.exc_info)
            }

        error = _attached_error(record)
        if error:
            entry['error'] = _error_fields(error)

        audit = getattr(record, 'audit_info', None)
        if audit is not None:
            entry['audit'] = audit

        if self.include_extra_fields:
            extra = {k: v for k, v in vars(record).items() if k not in _RESERVED_ATTRS}
            if extra:
                entry['extra'] = extra

        return json.dumps(entry, default=str, ensure_ascii=False)


class DetailedFormatter(logging.Formatter):
    """
    Human-readable formatter that appends error and audit details on
    indented continuation lines.
    """

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s | %(levelname)-8s | %(name)-28s | %(funcName)s:%(lineno)d | %(message)s',
            datefmt=TIME_FORMAT
        )

    def format(self, record: logging.LogRecord) -> str:
        lines = [super().format(record)]

        error = _attached_error(record)
        if error:
            fields = _error_fields(error)
            lines.append(f"  Error Code: {fields['code']} ({fields['severity']})")
            if fields['context']:
                lines.append(f"  Context: {json.dumps(fields['context'], default=str)}")
            if fields['recovery_actions']:
                lines.append(f"  Recovery: {', '.join(fields['recovery_actions'])}")

        audit = getattr(record, 'audit_info', None)
        if audit is not None:
            lines.append(f"  Audit: {json.dumps(audit, default=str)}")

        return "\n".join(lines)


class AuditLogger:
    """Writes session events to the audit logger."""

    def __init__(self, logger_name: str = AUDIT_LOGGER_NAME):
        self.logger = logging.getLogger(logger_name)

    def log_event(
        self,
        event_type: AuditEventType,
        message: str,
        username: Optional[str] = None,
        result: Optional[str] = None,
        additional_context: Optional[Dict[str, Any]] = None
    ):
        """
        Record one session event.

        Args:
            event_type: Kind of event
            message: Human-readable summary
            username: Account involved, when known
            result: Outcome (success, failure, ...)
            additional_context: Extra non-secret fields
        """
        audit_info: Dict[str, Any] = {
            'event_type': event_type.value,
            'timestamp': datetime.now().isoformat(),
            'context': additional_context or {}
        }
        if username is not None:
            audit_info['username'] = username
        if result is not None:
            audit_info['result'] = result

        self.logger.info(message, extra={'audit_info': audit_info})

    def log_authentication(
        self,
        username: str,
        success: bool = True,
        failure_reason: Optional[str] = None,
        registration: bool = False
    ):
        """Log a login or registration exchange."""
        if registration:
            event_type, action = AuditEventType.REGISTRATION, "Registration"
        else:
            event_type, action = AuditEventType.SIGN_IN, "Login"
        outcome = "succeeded" if success else "failed"

        self.log_event(
            event_type,
            f"{action} {outcome} for user: {username}",
            username=username,
            result="success" if success else "failure",
            additional_context={'failure_reason': failure_reason} if failure_reason else None
        )

    def log_sign_out(self, reason: str, storage_cleared: bool = True):
        self.log_event(
            AuditEventType.SIGN_OUT,
            f"Session ended ({reason})",
            result="success" if storage_cleared else "storage_pending",
            additional_context={'reason': reason, 'storage_cleared': storage_cleared}
        )

    def log_session_restore(self):
        self.log_event(AuditEventType.SESSION_RESTORE, "Stored session restored", result="success")

    def log_token_refresh(self, success: bool, failure_reason: Optional[str] = None):
        self.log_event(
            AuditEventType.TOKEN_REFRESH,
            "Token refresh succeeded" if success else "Token refresh failed",
            result="success" if success else "failure",
            additional_context={'failure_reason': failure_reason} if failure_reason else None
        )

    def log_error(self, error: FleetClientError):
        fields = _error_fields(error)
        fields.pop('user_message')
        self.log_event(
            AuditEventType.ERROR_EVENT,
            f"Session error: {error.message}",
            result="error",
            additional_context=fields
        )


def _build_formatter(log_format: LogFormat) -> logging.Formatter:
    if log_format is LogFormat.JSON:
        return StructuredFormatter()
    if log_format is LogFormat.DETAILED:
        return DetailedFormatter()
    return logging.Formatter(
        fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt=TIME_FORMAT
    )


def _rotating_file_handler(path: str, max_bytes: int, backup_count: int) -> logging.Handler:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    return logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8'
    )


def _replace_handlers(logger: logging.Logger, handlers) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    for handler in handlers:
        logger.addHandler(handler)


def setup_logging(
    log_level: LogLevel = LogLevel.INFO,
    log_format: LogFormat = LogFormat.STANDARD,
    log_file: Optional[str] = None,
    max_file_size: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    enable_console: bool = True,
    enable_audit: bool = True,
    audit_file: Optional[str] = None
) -> Dict[str, logging.Logger]:
    """
    Configure process logging for the client.

    Replaces any handlers already on the root logger. The audit logger, when
    enabled, always writes JSON and does not propagate to the root logger.

    Args:
        log_level: Minimum level for the root logger
        log_format: Formatter for console and file output
        log_file: Rotating log file path (optional)
        max_file_size: Rotation size in bytes
        backup_count: Rotated files to keep
        enable_console: Log to stdout
        enable_audit: Configure the audit logger
        audit_file: Audit log file path (stdout when omitted)

    Returns:
        The configured loggers by role
    """
    formatter = _build_formatter(log_format)
    handlers = []
    if enable_console:
        handlers.append(logging.StreamHandler(sys.stdout))
    if log_file:
        handlers.append(_rotating_file_handler(log_file, max_file_size, backup_count))
    for handler in handlers:
        handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level.value)
    _replace_handlers(root_logger, handlers)

    loggers = {
        'root': root_logger,
        'auth': logging.getLogger('fleet_client.auth'),
        'api': logging.getLogger('fleet_client.api_client')
    }

    if enable_audit:
        if audit_file:
            audit_handler = _rotating_file_handler(audit_file, max_file_size, backup_count)
        else:
            audit_handler = logging.StreamHandler(sys.stdout)
        audit_handler.setFormatter(StructuredFormatter())

        audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)
        audit_logger.setLevel(logging.INFO)
        audit_logger.propagate = False
        _replace_handlers(audit_logger, [audit_handler])
        loggers['audit'] = audit_logger

    return loggers


def log_structured_error(logger: logging.Logger, error: FleetClientError, level: int = logging.ERROR):
    """Log `error` with its code, context and recovery actions attached."""
    logger.log(level, error.message, extra={'error_info': error})
