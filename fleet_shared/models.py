"""
Core data models for the Fleet session client.

This module defines the token pair, the ephemeral credential holders and the
session state values published to the rest of the application.
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Mapping
from enum import Enum


class SessionStatus(Enum):
    """Authentication status of the running client."""
    UNKNOWN = "unknown"
    ANONYMOUS = "anonymous"
    AUTHENTICATED = "authenticated"


@dataclass(frozen=True)
class TokenPair:
    """An access/refresh token pair. Replaced as a whole, never edited."""
    access_token: str = field(repr=False)
    refresh_token: str = field(repr=False)

    def __post_init__(self):
        if not isinstance(self.access_token, str) or not self.access_token:
            raise ValueError("Access token cannot be empty")
        if not isinstance(self.refresh_token, str) or not self.refresh_token:
            raise ValueError("Refresh token cannot be empty")

    @classmethod
    def from_response(cls, data: Any) -> Optional["TokenPair"]:
        """
        Build a pair from an authentication response body.

        Returns None unless both `access_token` and `refresh_token` are
        non-empty strings.
        """
        if not isinstance(data, Mapping):
            return None

        access_token = data.get('access_token')
        refresh_token = data.get('refresh_token')
        if not isinstance(access_token, str) or not isinstance(refresh_token, str):
            return None
        if not access_token or not refresh_token:
            return None

        return cls(access_token=access_token, refresh_token=refresh_token)

    def to_dict(self) -> Dict[str, str]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token
        }


@dataclass
class LoginCredentials:
    """Username/password for a single login exchange. Never persisted."""
    username: str
    password: str = field(repr=False)
    company_id: Optional[str] = None

    def to_request(self) -> Dict[str, Any]:
        body = {
            "username": self.username.strip(),
            "password": self.password
        }
        if self.company_id:
            body["companyId"] = self.company_id
        return body


@dataclass
class RegisterCredentials:
    """Registration input for a single exchange. Never persisted."""
    username: str
    password: str = field(repr=False)
    invite_code: str = ""

    def to_request(self) -> Dict[str, Any]:
        return {
            "username": self.username.strip(),
            "password": self.password,
            "inviteCode": self.invite_code.strip()
        }


@dataclass(frozen=True)
class SessionSnapshot:
    """A single published SessionState value."""
    status: SessionStatus
    access_token: Optional[str] = field(default=None, repr=False)

    def __post_init__(self):
        if self.status is SessionStatus.AUTHENTICATED and not self.access_token:
            raise ValueError("Authenticated snapshot requires an access token")
        if self.status is not SessionStatus.AUTHENTICATED and self.access_token:
            raise ValueError(f"{self.status.value} snapshot cannot carry an access token")

    @classmethod
    def unknown(cls) -> "SessionSnapshot":
        return cls(SessionStatus.UNKNOWN)

    @classmethod
    def anonymous(cls) -> "SessionSnapshot":
        return cls(SessionStatus.ANONYMOUS)

    @classmethod
    def authenticated(cls, access_token: str) -> "SessionSnapshot":
        return cls(SessionStatus.AUTHENTICATED, access_token)

    @property
    def is_authenticated(self) -> bool:
        return self.status is SessionStatus.AUTHENTICATED

    @property
    def is_resolved(self) -> bool:
        return self.status is not SessionStatus.UNKNOWN
