"""Error taxonomy for the authentication subsystem.

Every error carries an ErrorCode so RPC callers and the CLI can render a
single message without inspecting exception types.
"""

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Error codes shared with the front end."""

    UNKNOWN = "UNKNOWN"
    INTERNAL_ERROR = "INTERNAL_ERROR"

    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    MISSING_REQUIRED_FIELD = "MISSING_REQUIRED_FIELD"

    NOT_FOUND = "NOT_FOUND"
    ALREADY_EXISTS = "ALREADY_EXISTS"
    CONFLICT = "CONFLICT"

    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    PERMISSION_DENIED = "PERMISSION_DENIED"

    DATABASE_ERROR = "DATABASE_ERROR"

    CONNECTION_ERROR = "CONNECTION_ERROR"
    TIMEOUT = "TIMEOUT"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"

    POPUP_BLOCKED = "POPUP_BLOCKED"
    CANCELLED = "CANCELLED"


class AuthError(Exception):
    """Base class for authentication errors."""

    code: ErrorCode = ErrorCode.UNKNOWN

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize for an RPC error envelope."""
        data: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data


class ValidationError(AuthError):
    """Malformed URL or missing field, detected before any network call."""

    code = ErrorCode.VALIDATION_ERROR


class PopupBlockedError(AuthError):
    """The interactive surface could not be opened."""

    code = ErrorCode.POPUP_BLOCKED


class UserCancelledError(AuthError):
    """The user closed the interactive surface before a code arrived."""

    code = ErrorCode.CANCELLED


class AuthTimeoutError(AuthError):
    """No authorization code arrived before the polling ceiling."""

    code = ErrorCode.TIMEOUT


class LoginInProgressError(AuthError):
    """The delivery slot is owned by a login the backend is driving itself."""

    code = ErrorCode.CONFLICT


class SecurityError(AuthError):
    """Unknown, expired or mismatched authorization state.

    Always fatal for the attempt: it may indicate a forged redirect.
    """

    code = ErrorCode.FORBIDDEN


class ProviderError(AuthError):
    """Non-2xx response or network failure talking to the provider."""

    code = ErrorCode.CONNECTION_ERROR


class TokenExchangeError(ProviderError):
    """The authorization code could not be exchanged for tokens."""


class TokenRefreshError(ProviderError):
    """The refresh grant failed."""


class UnauthorizedError(AuthError):
    """No usable credentials are stored for a server."""

    code = ErrorCode.UNAUTHORIZED


class CredentialError(AuthError):
    """A credential patch is invalid for the stored auth type."""

    code = ErrorCode.INVALID_INPUT


class ServerNotFoundError(AuthError):
    """No server is registered under the given id."""

    code = ErrorCode.NOT_FOUND


class CredentialStoreError(AuthError):
    """Error in credential storage operations."""

    code = ErrorCode.DATABASE_ERROR


class CredentialDecryptionError(CredentialStoreError):
    """Failed to decrypt the credential storage file.

    The encryption key has changed (keyring cleared, different machine,
    different NODEREF_MASTER_KEY) and stored credentials cannot be read.
    Callers should prompt the user to re-register the affected servers.
    """
