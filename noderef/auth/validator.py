"""Credential validation against a content server.

Validation calls the people/-me- endpoint with the candidate credentials and
reports whether they work and whether the user is an administrator. It never
raises: every failure becomes a ValidationResult with a message fit for the
user.
"""

import logging
import socket
from dataclasses import dataclass
from typing import Any

import httpx

from .endpoints import public_api_url, validate_url
from .errors import ValidationError
from .flow import DEFAULT_HTTP_TIMEOUT

logger = logging.getLogger(__name__)

MSG_INVALID_CREDENTIALS = "Invalid username or password"
MSG_INVALID_TOKEN = "Invalid access token or insufficient permissions"
MSG_API_NOT_FOUND = "API not found - check the URL"
MSG_SERVER_ERROR = "Server error - please try again later"
MSG_CONNECTION_REFUSED = "Cannot connect to server"
MSG_HOST_NOT_FOUND = "Server not found - check the URL"
MSG_TIMEOUT = "Connection timeout"
MSG_FAILED = "Authentication failed"

_DNS_FAILURE_MARKERS = (
    "getaddrinfo",
    "Name or service not known",
    "nodename nor servname",
    "Temporary failure in name resolution",
    "No address associated with hostname",
)


@dataclass
class ValidationResult:
    """Outcome of a credential check.

    Attributes:
        valid: Whether the server accepted the credentials
        is_admin: Whether the user has administrator capabilities
        error: User-facing failure message
        user: id, displayName and email of the authenticated user
    """

    valid: bool
    is_admin: bool = False
    error: str | None = None
    user: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"valid": self.valid, "isAdmin": self.is_admin}
        if self.error is not None:
            data["error"] = self.error
        if self.user is not None:
            data["user"] = self.user
        return data

    @classmethod
    def failure(cls, message: str) -> "ValidationResult":
        return cls(valid=False, is_admin=False, error=message)


def _is_dns_failure(error: BaseException) -> bool:
    current: BaseException | None = error
    while current is not None:
        if isinstance(current, socket.gaierror):
            return True
        if any(marker in str(current) for marker in _DNS_FAILURE_MARKERS):
            return True
        current = current.__cause__ or current.__context__
    return False


def describe_request_error(error: httpx.RequestError) -> str:
    """Map a transport failure to a user-facing message."""
    if isinstance(error, httpx.TimeoutException):
        return MSG_TIMEOUT
    if isinstance(error, httpx.ConnectError):
        if _is_dns_failure(error):
            return MSG_HOST_NOT_FOUND
        return MSG_CONNECTION_REFUSED
    return MSG_FAILED


def describe_status(status_code: int, unauthorized_message: str = MSG_INVALID_CREDENTIALS) -> str:
    """Map an HTTP error status to a user-facing message."""
    if status_code in (401, 403):
        return unauthorized_message
    if status_code == 404:
        return MSG_API_NOT_FOUND
    if status_code >= 500:
        return MSG_SERVER_ERROR
    return MSG_FAILED


def _user_from_entry(entry: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": entry.get("id"),
        "displayName": entry.get("displayName") or entry.get("firstName") or entry.get("id"),
        "email": entry.get("email"),
    }


class CredentialValidator:
    """Checks credentials against a server without storing anything."""

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
    ):
        self.http_client = http_client
        self.timeout = timeout

    async def validate(self, base_url: str, username: str, password: str) -> ValidationResult:
        """Validate a username and password."""
        if not username or not password:
            return ValidationResult.failure(MSG_INVALID_CREDENTIALS)
        return await self._check(
            base_url,
            auth=httpx.BasicAuth(username, password),
            headers={},
            unauthorized_message=MSG_INVALID_CREDENTIALS,
        )

    async def validate_oidc(self, base_url: str, access_token: str) -> ValidationResult:
        """Validate an OAuth2 access token."""
        if not access_token:
            return ValidationResult.failure(MSG_INVALID_TOKEN)
        return await self._check(
            base_url,
            auth=None,
            headers={"Authorization": f"Bearer {access_token}"},
            unauthorized_message=MSG_INVALID_TOKEN,
        )

    async def _check(
        self,
        base_url: str,
        auth: httpx.Auth | None,
        headers: dict[str, str],
        unauthorized_message: str,
    ) -> ValidationResult:
        try:
            url = f"{public_api_url(validate_url(base_url, 'baseUrl'))}/people/-me-"
        except ValidationError as e:
            return ValidationResult.failure(e.message)

        http = self.http_client or httpx.AsyncClient(timeout=self.timeout)
        should_close = self.http_client is None

        try:
            response = await http.get(
                url, auth=auth, headers={"Accept": "application/json", **headers}
            )

            if not response.is_success:
                logger.debug(f"Credential validation rejected (HTTP {response.status_code})")
                return ValidationResult.failure(
                    describe_status(response.status_code, unauthorized_message)
                )

            entry = response.json().get("entry") or {}
            is_admin = (entry.get("capabilities") or {}).get("isAdmin") is True
            logger.info(f"Credential validation succeeded (admin: {is_admin})")
            return ValidationResult(valid=True, is_admin=is_admin, user=_user_from_entry(entry))

        except httpx.RequestError as e:
            logger.debug(f"Credential validation failed: {type(e).__name__}: {e}")
            return ValidationResult.failure(describe_request_error(e))
        except httpx.InvalidURL as e:
            logger.debug(f"Credential validation failed: {e}")
            return ValidationResult.failure(MSG_HOST_NOT_FOUND)
        except (ValueError, AttributeError) as e:
            logger.debug(f"Unexpected response during credential validation: {e}")
            return ValidationResult.failure(MSG_FAILED)
        finally:
            if should_close:
                await http.aclose()
