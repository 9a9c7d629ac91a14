"""High-level authentication service for the NodeRef backend.

AuthService is built once per process and owns the mutable login state (the
pending-authorization store and the code delivery slot) together with the
repository, client factory, validator and exchanger. The HTTP server, the RPC
routes and the CLI all go through it.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from .callback import CodeDeliverySlot
from .client import AuthenticatedClient, ClientFactory, RefreshSucceeded
from .credentials import (
    AUTH_TYPE_OAUTH2,
    BasicCredential,
    OAuth2Credential,
)
from .endpoints import require_field, validate_url
from .errors import (
    CredentialError,
    LoginInProgressError,
    ServerNotFoundError,
    UnauthorizedError,
)
from .flow import DEFAULT_HTTP_TIMEOUT, LoginResult, OAuthLogin, TokenExchanger
from .initiator import AuthorizationInitiator, InteractiveSurface, PollingPolicy, StatusCallback
from .sessions import AuthorizationSessionStore
from .store import CredentialRepository, ServerRecord
from .tokens import TokenSet
from .validator import CredentialValidator

logger = logging.getLogger(__name__)


def _format_timedelta(td: timedelta) -> str:
    """Format a timedelta into a human-readable string.

    Examples:
        - "45 minutes"
        - "2 hours"
        - "3 days"
    """
    total_seconds = int(td.total_seconds())

    if total_seconds < 0:
        return "Expired"

    if total_seconds < 60:
        return f"{total_seconds} seconds"

    minutes = total_seconds // 60
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''}"

    hours = minutes // 60
    if hours < 24:
        return f"{hours} hour{'s' if hours != 1 else ''}"

    days = hours // 24
    return f"{days} day{'s' if days != 1 else ''}"


@dataclass
class AuthStatus:
    """Authentication status of a registered server.

    Attributes:
        server_id: Server record id
        server_name: The friendly server name
        base_url: Content server URL
        auth_type: basic or oauth2
        authenticated: Whether usable credentials are stored
        expired: Whether the access token is past its expiry
        expires_at: Access token expiry (ISO format string)
        expires_in_human: Human-readable time until expiry
        has_refresh_token: Whether a refresh token is available
        is_admin: Whether the user was an administrator at registration
        error: Any error message
    """

    server_id: int
    server_name: str
    base_url: str
    auth_type: str
    authenticated: bool = False
    expired: bool = False
    expires_at: str | None = None
    expires_in_human: str | None = None
    has_refresh_token: bool = False
    is_admin: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "server_id": self.server_id,
            "server_name": self.server_name,
            "base_url": self.base_url,
            "auth_type": self.auth_type,
            "authenticated": self.authenticated,
            "expired": self.expired,
            "expires_at": self.expires_at,
            "expires_in_human": self.expires_in_human,
            "has_refresh_token": self.has_refresh_token,
            "is_admin": self.is_admin,
            "error": self.error,
        }


class AuthService:
    """Composition root of the authentication subsystem.

    Usage:
        service = AuthService(CredentialRepository(data_dir))
        service.bind_port(server.port)
        record = await service.register_oauth2_server(name, url, host, realm, client_id)
        async with await service.authenticate(record.id) as client:
            user = await client.current_user()
    """

    def __init__(
        self,
        repository: CredentialRepository,
        policy: PollingPolicy | None = None,
        callback_port: int | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the service.

        Args:
            repository: Credential storage
            policy: Login polling timing
            callback_port: Port of the backend's /auth/callback endpoint
            http_client: Optional client for provider and validation calls
            timeout: HTTP timeout in seconds
            transport: Optional transport for authenticated handles (tests)
        """
        self.repository = repository
        self.policy = policy or PollingPolicy()
        self.sessions = AuthorizationSessionStore(ttl=self.policy.session_ttl)
        self.slot = CodeDeliverySlot()
        self.initiator = AuthorizationInitiator(
            self.sessions, self.slot, policy=self.policy, callback_port=callback_port
        )
        self.exchanger = TokenExchanger(self.sessions, http_client=http_client, timeout=timeout)
        self.factory = ClientFactory(
            repository, http_client=http_client, timeout=timeout, transport=transport
        )
        self.validator = CredentialValidator(http_client=http_client, timeout=timeout)

    def bind_port(self, port: int) -> None:
        """Record the port the backend is listening on."""
        self.initiator.callback_port = port
        logger.debug(f"Redirect URI is {self.initiator.redirect_uri}")

    def _require_server(self, server_id: int) -> ServerRecord:
        record = self.repository.get_server(server_id)
        if record is None:
            raise ServerNotFoundError(f"Server {server_id} not found", {"server_id": server_id})
        return record

    # Login flow

    async def login(
        self,
        provider_host: str,
        realm: str,
        client_id: str,
        remote_base_url: str,
        surface: InteractiveSurface | None = None,
        on_status: StatusCallback | None = None,
    ) -> LoginResult:
        """Run an interactive login and return its tokens."""
        login = OAuthLogin(
            self.initiator,
            self.exchanger,
            provider_host,
            realm,
            client_id,
            remote_base_url,
            surface=surface,
            on_status=on_status,
        )
        return await login.run()

    def _refuse_while_driving(self) -> None:
        if self.initiator.login_in_progress:
            raise LoginInProgressError(
                "A sign-in started by the backend is waiting for this callback"
            )

    def begin_login(
        self, provider_host: str, realm: str, client_id: str, remote_base_url: str
    ) -> dict[str, Any]:
        """Start a login whose code the front end polls for and exchanges.

        Returns:
            The authorization URL to open and its state

        Raises:
            ValidationError: Malformed URL or blank field
            LoginInProgressError: The backend is already driving a login
        """
        self._refuse_while_driving()
        pending, authorization_url = self.initiator.prepare(
            provider_host, realm, client_id, remote_base_url
        )
        return {
            "authorizationUrl": authorization_url,
            "state": pending.state,
            "redirectUri": pending.redirect_uri,
        }

    def poll_code(self) -> dict[str, Any]:
        """Drain the delivery slot for front ends that poll on their own.

        Raises:
            LoginInProgressError: The backend's own poller owns the slot
        """
        self._refuse_while_driving()
        delivered = self.slot.poll()
        return delivered.to_dict() if delivered else {}

    async def exchange_code(self, code: str, state: str) -> TokenSet:
        return await self.exchanger.exchange(code, state)

    # Server registration

    async def register_basic_server(
        self, name: str, base_url: str, username: str, password: str
    ) -> ServerRecord:
        """Validate a username and password, then register the server.

        Raises:
            ValidationError: Malformed URL or blank field
            UnauthorizedError: The server rejected the credentials
        """
        name = require_field(name, "name")
        base_url = validate_url(base_url, "baseUrl")
        username = require_field(username, "username")

        result = await self.validator.validate(base_url, username, password)
        if not result.valid:
            raise UnauthorizedError(result.error or "Authentication failed", {"baseUrl": base_url})

        return self.repository.add_server(
            name,
            base_url,
            BasicCredential(username=username, secret=password),
            is_admin=result.is_admin,
        )

    async def register_oauth2_server(
        self,
        name: str,
        base_url: str,
        provider_host: str,
        realm: str,
        client_id: str,
        surface: InteractiveSurface | None = None,
        on_status: StatusCallback | None = None,
    ) -> ServerRecord:
        """Log in through the provider, check the token, register the server.

        Raises:
            AuthError: Any failure of the login
            UnauthorizedError: The server rejected the issued token
        """
        name = require_field(name, "name")
        result = await self.login(
            provider_host, realm, client_id, base_url, surface=surface, on_status=on_status
        )

        validation = await self.validator.validate_oidc(
            result.remote_base_url, result.tokens.access_token
        )
        if not validation.valid:
            raise UnauthorizedError(
                validation.error or "Authentication failed",
                {"baseUrl": result.remote_base_url},
            )

        credential = OAuth2Credential(
            secret=result.tokens.access_token,
            provider_host=result.provider_host,
            realm=result.realm,
            client_id=result.client_id,
            refresh_token=result.tokens.refresh_token,
            token_expiry=result.tokens.expires_at,
        )
        return self.repository.add_server(
            name, result.remote_base_url, credential, is_admin=validation.is_admin
        )

    async def reauthenticate(
        self,
        server_id: int,
        username: str | None = None,
        password: str | None = None,
        surface: InteractiveSurface | None = None,
        on_status: StatusCallback | None = None,
    ) -> ServerRecord:
        """Obtain fresh credentials for a registered server.

        OAuth2 servers log in again with their stored provider coordinates;
        basic servers need a username and password.

        Raises:
            ServerNotFoundError: The server is not registered
            CredentialError: Basic server without username and password
            UnauthorizedError: The server rejected the new credentials
        """
        record = self._require_server(server_id)

        if record.auth_type == AUTH_TYPE_OAUTH2:
            current = self.repository.get_credentials(server_id)
            if not isinstance(current, OAuth2Credential):
                raise UnauthorizedError(
                    f"No provider settings stored for server {server_id}",
                    {"server_id": server_id},
                )
            result = await self.login(
                current.provider_host,
                current.realm,
                current.client_id,
                record.base_url,
                surface=surface,
                on_status=on_status,
            )
            self.repository.set_credentials(
                server_id,
                {
                    "secret": result.tokens.access_token,
                    "refresh_token": result.tokens.refresh_token,
                    "token_expiry": result.tokens.expires_at,
                },
            )
        else:
            if not username or not password:
                raise CredentialError("Basic servers need a username and password to log in")
            validation = await self.validator.validate(record.base_url, username, password)
            if not validation.valid:
                raise UnauthorizedError(
                    validation.error or "Authentication failed", {"server_id": server_id}
                )
            self.repository.set_credentials(server_id, {"username": username, "secret": password})
            self.repository.set_admin(server_id, validation.is_admin)

        logger.info(f"Re-authenticated server {server_id}")
        return self._require_server(server_id)

    def remove_server(self, server_id: int) -> bool:
        """Delete a server and its credentials."""
        return self.repository.delete_server(server_id)

    def list_servers(self) -> list[ServerRecord]:
        return self.repository.list_servers()

    # Authenticated access

    async def authenticate(self, server_id: int) -> AuthenticatedClient:
        """Build an authenticated handle for a registered server.

        Raises:
            ServerNotFoundError: The server is not registered
            UnauthorizedError: No usable credentials
        """
        record = self._require_server(server_id)
        client = await self.factory.authenticate(server_id, record.base_url)
        self.repository.touch_server(server_id)
        return client

    async def refresh_tokens(self, server_id: int) -> dict[str, Any]:
        """Force a token refresh; reports whether it happened and the expiry."""
        self._require_server(server_id)
        outcome = await self.factory.refresh(server_id)
        if isinstance(outcome, RefreshSucceeded):
            credential = outcome.credential
            refreshed = True
        else:
            credential = outcome.stale_credential
            refreshed = False
        return {
            "refreshed": refreshed,
            "tokenExpiry": credential.token_expiry.isoformat() if credential.token_expiry else None,
        }

    def get_auth_status(self, server_id: int) -> AuthStatus:
        """Describe the stored credentials of a server."""
        record = self._require_server(server_id)
        status = AuthStatus(
            server_id=record.id,
            server_name=record.name,
            base_url=record.base_url,
            auth_type=record.auth_type,
            is_admin=record.is_admin,
        )

        credential = self.repository.get_credentials(server_id)
        if credential is None or not credential.is_complete():
            status.error = "No credentials stored"
            return status

        status.authenticated = True
        if isinstance(credential, OAuth2Credential):
            status.has_refresh_token = credential.has_refresh_token()
            if credential.token_expiry is not None:
                remaining = credential.token_expiry - datetime.now(timezone.utc)
                status.expires_at = credential.token_expiry.isoformat()
                status.expires_in_human = _format_timedelta(remaining)
                status.expired = remaining.total_seconds() <= 0
        return status
