"""Authenticated HTTP handles for registered servers.

Every remote operation asks the factory for a fresh handle. For OAuth2
servers the factory first checks the stored expiry and refreshes the access
token when it expires within REFRESH_WINDOW. A failed refresh is logged and
the stale token is used anyway; the remote server has the final word.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Union

import httpx

from .credentials import BasicCredential, OAuth2Credential, ServerCredential
from .endpoints import public_api_url, token_endpoint
from .errors import AuthError, ProviderError, UnauthorizedError
from .flow import DEFAULT_HTTP_TIMEOUT, refresh_access_token
from .store import CredentialRepository

logger = logging.getLogger(__name__)

# Refresh access tokens that expire within this window
REFRESH_WINDOW = timedelta(minutes=5)


@dataclass(frozen=True)
class RefreshSucceeded:
    """The access token was renewed and persisted."""

    credential: OAuth2Credential


@dataclass(frozen=True)
class RefreshFailed:
    """The refresh did not happen; stale_credential is still in use."""

    reason: str
    stale_credential: OAuth2Credential


RefreshOutcome = Union[RefreshSucceeded, RefreshFailed]


class AuthenticatedClient:
    """HTTP client bound to one server's public API.

    Wraps an httpx.AsyncClient carrying Basic auth or a Bearer header.
    Use as an async context manager or call aclose().
    """

    def __init__(
        self,
        server_id: int,
        base_url: str,
        credential: ServerCredential,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.server_id = server_id
        self.base_url = base_url
        self.credential = credential

        auth: httpx.Auth | None = None
        headers: dict[str, str] = {"Accept": "application/json"}
        if isinstance(credential, BasicCredential):
            auth = httpx.BasicAuth(credential.username, credential.secret)
        else:
            headers["Authorization"] = f"Bearer {credential.secret}"

        self.http = httpx.AsyncClient(
            base_url=public_api_url(base_url),
            auth=auth,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @property
    def auth_type(self) -> str:
        return self.credential.auth_type

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        return await self.http.request(method, path, **kwargs)

    async def get(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self.http.get(path, **kwargs)

    async def current_user(self) -> dict[str, Any]:
        """Fetch the authenticated user's person entry.

        Raises:
            UnauthorizedError: The server rejected the credentials
            ProviderError: Any other failure
        """
        try:
            response = await self.http.get("/people/-me-")
        except httpx.RequestError as e:
            raise ProviderError(f"Cannot reach {self.base_url}: {e}") from e

        if response.status_code in (401, 403):
            raise UnauthorizedError(
                f"Server {self.server_id} rejected the stored credentials",
                {"server_id": self.server_id, "status": response.status_code},
            )
        if not response.is_success:
            raise ProviderError(
                f"Unexpected response from {self.base_url} (HTTP {response.status_code})",
                {"status": response.status_code},
            )
        entry: dict[str, Any] = response.json().get("entry", {})
        return entry

    async def aclose(self) -> None:
        await self.http.aclose()

    async def __aenter__(self) -> "AuthenticatedClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()


class ClientFactory:
    """Builds authenticated clients, refreshing OAuth2 tokens on the way."""

    def __init__(
        self,
        repository: CredentialRepository,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        """Initialize the factory.

        Args:
            repository: Credential storage
            http_client: Optional client for token endpoint calls
            timeout: Timeout for token and API requests
            transport: Optional transport for built handles (tests)
            clock: Returns the current UTC time; injectable for tests
        """
        self.repository = repository
        self.http_client = http_client
        self.timeout = timeout
        self.transport = transport
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._locks: dict[int, asyncio.Lock] = {}

    def _lock_for(self, server_id: int) -> asyncio.Lock:
        if server_id not in self._locks:
            self._locks[server_id] = asyncio.Lock()
        return self._locks[server_id]

    def _load(self, server_id: int) -> ServerCredential:
        credential = self.repository.get_credentials(server_id)
        if credential is None or not credential.is_complete():
            raise UnauthorizedError(
                f"No credentials stored for server {server_id}", {"server_id": server_id}
            )
        return credential

    def needs_refresh(self, credential: ServerCredential) -> bool:
        return isinstance(credential, OAuth2Credential) and credential.expires_within(
            REFRESH_WINDOW, self._clock()
        )

    async def authenticate(self, server_id: int, remote_base_url: str) -> AuthenticatedClient:
        """Build a handle for a server, refreshing its token if due.

        The handle is never cached; close it when done.

        Raises:
            UnauthorizedError: No usable credentials for the server
        """
        credential = self._load(server_id)

        if self.needs_refresh(credential):
            async with self._lock_for(server_id):
                # Another caller may have refreshed while we waited
                credential = self._load(server_id)
                if self.needs_refresh(credential):
                    assert isinstance(credential, OAuth2Credential)
                    outcome = await self._refresh(server_id, credential)
                    credential = (
                        outcome.credential
                        if isinstance(outcome, RefreshSucceeded)
                        else outcome.stale_credential
                    )

        return AuthenticatedClient(
            server_id,
            remote_base_url,
            credential,
            timeout=self.timeout,
            transport=self.transport,
        )

    async def refresh(self, server_id: int) -> RefreshOutcome:
        """Refresh a server's access token regardless of its expiry.

        Raises:
            UnauthorizedError: No usable credentials for the server
            ServerNotFoundError: The server is not registered
        """
        async with self._lock_for(server_id):
            credential = self._load(server_id)
            if not isinstance(credential, OAuth2Credential):
                raise UnauthorizedError(
                    f"Server {server_id} does not use OAuth2 authentication",
                    {"server_id": server_id},
                )
            return await self._refresh(server_id, credential)

    async def _refresh(self, server_id: int, credential: OAuth2Credential) -> RefreshOutcome:
        if not credential.has_refresh_token():
            logger.warning(f"Server {server_id}: access token expiring and no refresh token stored")
            return RefreshFailed("No refresh token available", credential)

        try:
            tokens = await refresh_access_token(
                token_endpoint(credential.provider_host, credential.realm),
                credential.refresh_token or "",
                credential.client_id,
                http_client=self.http_client,
                timeout=self.timeout,
            )
        except (ProviderError, httpx.HTTPError) as e:
            logger.warning(f"Server {server_id}: token refresh failed, using stored token: {e}")
            return RefreshFailed(str(e), credential)

        renewed = credential.with_tokens(tokens)
        try:
            stored = self.repository.set_credentials(
                server_id,
                {
                    "secret": renewed.secret,
                    "refresh_token": renewed.refresh_token,
                    "token_expiry": renewed.token_expiry,
                },
            )
        except AuthError as e:
            logger.warning(f"Server {server_id}: could not store refreshed token: {e}")
            return RefreshFailed(str(e), credential)

        assert isinstance(stored, OAuth2Credential)
        logger.info(f"Server {server_id}: access token refreshed")
        return RefreshSucceeded(stored)
