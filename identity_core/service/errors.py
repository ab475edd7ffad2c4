from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``.
    Protocol failures inside the authorize and token flows are not raised;
    they come back as ``OAuthFailure`` values instead.
    """

    status_code: int = 400
    error_code: str = "invalid_request"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class InvalidTokenError(ServiceError):
    """Bearer token failed verification (401).

    The message is always generic; the reason is only logged.
    """
    status_code = 401
    error_code = "invalid_token"

    def __init__(self, message: str = "invalid access token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class JwksUnavailableError(ServiceError):
    """No publishable verification key for the configured algorithm (404)."""
    status_code = 404
    error_code = "jwks_unavailable"


class RefreshTokenReplayError(ServiceError):
    """Predecessor refresh token was already revoked by a concurrent rotation."""
    status_code = 400
    error_code = "invalid_grant"


class OAuthErrorCode(str, Enum):
    INVALID_REQUEST = "invalid_request"
    INVALID_CLIENT = "invalid_client"
    INVALID_GRANT = "invalid_grant"
    UNSUPPORTED_GRANT_TYPE = "unsupported_grant_type"
    ACCESS_DENIED = "access_denied"
    LOGIN_REQUIRED = "login_required"
    INVALID_TOKEN = "invalid_token"


OAUTH_STATUS_CODES = {
    OAuthErrorCode.INVALID_REQUEST: 400,
    OAuthErrorCode.INVALID_CLIENT: 401,
    OAuthErrorCode.INVALID_GRANT: 400,
    OAuthErrorCode.UNSUPPORTED_GRANT_TYPE: 400,
    OAuthErrorCode.ACCESS_DENIED: 403,
    OAuthErrorCode.LOGIN_REQUIRED: 401,
    OAuthErrorCode.INVALID_TOKEN: 401,
}


@dataclass(frozen=True)
class OAuthFailure:
    """Terminal protocol outcome of a flow that did not produce a result."""

    code: OAuthErrorCode
    description: str

    @property
    def status_code(self) -> int:
        return OAUTH_STATUS_CODES[self.code]

    @classmethod
    def invalid_request(cls, description: str) -> "OAuthFailure":
        return cls(OAuthErrorCode.INVALID_REQUEST, description)

    @classmethod
    def invalid_client(cls, description: str = "client authentication failed") -> "OAuthFailure":
        return cls(OAuthErrorCode.INVALID_CLIENT, description)

    @classmethod
    def invalid_grant(cls, description: str) -> "OAuthFailure":
        return cls(OAuthErrorCode.INVALID_GRANT, description)

    @classmethod
    def access_denied(cls, description: str) -> "OAuthFailure":
        return cls(OAuthErrorCode.ACCESS_DENIED, description)


__all__ = [
    "ServiceError",
    "InvalidTokenError",
    "JwksUnavailableError",
    "RefreshTokenReplayError",
    "OAuthErrorCode",
    "OAuthFailure",
    "OAUTH_STATUS_CODES",
]
