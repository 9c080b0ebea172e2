"""
Client-side credential validation.

Runs before any network activity so malformed input never reaches the server.
"""

from typing import Optional

from fleet_shared.exceptions import ValidationError, ErrorCode
from fleet_shared.models import LoginCredentials, RegisterCredentials

MIN_PASSWORD_LENGTH = 6


def _require(value: Optional[str], field_name: str, label: str) -> None:
    if not value or not value.strip():
        raise ValidationError(
            f"{label} is required",
            field_name=field_name,
            error_code=ErrorCode.VALIDATION_MISSING_REQUIRED_FIELD
        )


def _check_password(password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
            field_name="password",
            error_code=ErrorCode.VALIDATION_PASSWORD_TOO_SHORT
        )


def validate_login(credentials: LoginCredentials) -> None:
    """
    Validate login input.

    Raises:
        ValidationError: On a blank field or a too-short password
    """
    _require(credentials.username, "username", "Username")
    _require(credentials.password, "password", "Password")
    _check_password(credentials.password)


def validate_registration(credentials: RegisterCredentials,
                          confirm_password: Optional[str] = None) -> None:
    """
    Validate registration input.

    Args:
        credentials: Registration fields
        confirm_password: Repeated password, checked when given

    Raises:
        ValidationError: On the first invalid field
    """
    _require(credentials.invite_code, "invite_code", "Invite code")
    _require(credentials.username, "username", "Username")
    _require(credentials.password, "password", "Password")

    if confirm_password is not None and confirm_password != credentials.password:
        raise ValidationError(
            "Passwords do not match",
            field_name="confirm_password",
            error_code=ErrorCode.VALIDATION_PASSWORD_MISMATCH
        )

    _check_password(credentials.password)
