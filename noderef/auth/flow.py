"""Token endpoint calls and the end-to-end login flow.

The backend is a public client: token requests carry the PKCE verifier (or
the refresh token) and the client id, never a client secret.
"""

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from .endpoints import token_endpoint
from .errors import ProviderError, TokenExchangeError, TokenRefreshError
from .initiator import AuthorizationInitiator, InteractiveSurface, StatusCallback
from .sessions import AuthorizationSessionStore
from .tokens import TokenSet

logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT = 30.0


def _provider_error_detail(response: httpx.Response) -> str:
    """Extract the safe error fields from a provider error response."""
    try:
        error_data = response.json()
    except ValueError:
        # Don't include raw response body - it might contain tokens or secrets
        return ""
    if not isinstance(error_data, dict) or not error_data.get("error"):
        return ""
    description = error_data.get("error_description")
    return f": {error_data['error']}" + (f" - {description}" if description else "")


async def _post_token_request(
    token_url: str,
    form: dict[str, str],
    error_cls: type[ProviderError],
    action: str,
    http_client: httpx.AsyncClient | None,
    timeout: float,
) -> TokenSet:
    http = http_client or httpx.AsyncClient(timeout=timeout)
    should_close = http_client is None

    try:
        response = await http.post(
            token_url,
            data=form,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

        if not response.is_success:
            raise error_cls(
                f"{action} failed (HTTP {response.status_code} {response.reason_phrase})"
                f"{_provider_error_detail(response)}",
                {"status": response.status_code},
            )

        try:
            result: dict[str, Any] = response.json()
            return TokenSet.from_token_response(result)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise error_cls(f"{action} failed: provider response has no access token") from e

    except httpx.RequestError as e:
        raise error_cls(f"Network error during {action.lower()}: {e}") from e
    except httpx.InvalidURL as e:
        raise error_cls(f"{action} failed: invalid provider URL: {e}") from e
    finally:
        if should_close:
            await http.aclose()


async def exchange_code_for_tokens(
    token_url: str,
    code: str,
    redirect_uri: str,
    client_id: str,
    code_verifier: str,
    http_client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
) -> TokenSet:
    """Exchange an authorization code for tokens.

    Args:
        token_url: Provider token endpoint
        code: Authorization code from the callback
        redirect_uri: The redirect URI used in authorization
        client_id: Public client id
        code_verifier: PKCE code verifier
        http_client: Optional HTTP client
        timeout: Request timeout when no client is given

    Returns:
        The issued tokens

    Raises:
        TokenExchangeError: If the exchange fails
    """
    form = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri,
        "client_id": client_id,
        "code_verifier": code_verifier,
    }
    return await _post_token_request(
        token_url, form, TokenExchangeError, "Token exchange", http_client, timeout
    )


async def refresh_access_token(
    token_url: str,
    refresh_token: str,
    client_id: str,
    http_client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
) -> TokenSet:
    """Run the refresh_token grant.

    Raises:
        TokenRefreshError: If the refresh fails
    """
    form = {
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
        "client_id": client_id,
    }
    return await _post_token_request(
        token_url, form, TokenRefreshError, "Token refresh", http_client, timeout
    )


class TokenExchanger:
    """Turns a delivered code into tokens, consuming its pending authorization."""

    def __init__(
        self,
        sessions: AuthorizationSessionStore,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
    ):
        self.sessions = sessions
        self.http_client = http_client
        self.timeout = timeout

    async def exchange(self, code: str, state: str) -> TokenSet:
        """Exchange a code for the login identified by state.

        The pending authorization is taken before the request, so it is gone
        whatever the outcome.

        Raises:
            SecurityError: No live pending authorization for state; no
                request is made
            TokenExchangeError: The provider rejected the exchange
        """
        pending = self.sessions.take(state)

        logger.info(f"Exchanging authorization code with {pending.provider_host}")
        tokens = await exchange_code_for_tokens(
            token_endpoint(pending.provider_host, pending.realm),
            code,
            pending.redirect_uri,
            pending.client_id,
            pending.code_verifier,
            http_client=self.http_client,
            timeout=self.timeout,
        )
        logger.info(f"Token exchange succeeded for {pending.remote_base_url}")
        return tokens


@dataclass
class LoginResult:
    """Tokens from a completed login plus the coordinates to refresh them."""

    tokens: TokenSet
    provider_host: str
    realm: str
    client_id: str
    remote_base_url: str


class OAuthLogin:
    """One complete login: begin, wait for the code, exchange it.

    Usage:
        login = OAuthLogin(initiator, exchanger, host, realm, client_id, url)
        result = await login.run()
    """

    def __init__(
        self,
        initiator: AuthorizationInitiator,
        exchanger: TokenExchanger,
        provider_host: str,
        realm: str,
        client_id: str,
        remote_base_url: str,
        surface: InteractiveSurface | None = None,
        on_status: StatusCallback | None = None,
    ):
        self.initiator = initiator
        self.exchanger = exchanger
        self.provider_host = provider_host
        self.realm = realm
        self.client_id = client_id
        self.remote_base_url = remote_base_url
        self.surface = surface
        self.on_status = on_status or (lambda msg: None)

    def _emit_status(self, message: str) -> None:
        logger.info(message)
        self.on_status(message)

    async def run(self) -> LoginResult:
        """Execute the login.

        Raises:
            AuthError: Any failure of the login, see AuthorizationInitiator
                and TokenExchanger
        """
        handle = self.initiator.begin(
            self.provider_host,
            self.realm,
            self.client_id,
            self.remote_base_url,
            surface=self.surface,
            on_status=self.on_status,
        )
        delivered = await handle.wait()

        self._emit_status("Exchanging code for tokens...")
        tokens = await self.exchanger.exchange(delivered.code, delivered.state)
        self._emit_status("Successfully authenticated!")

        pending = handle.pending
        return LoginResult(
            tokens=tokens,
            provider_host=pending.provider_host,
            realm=pending.realm,
            client_id=pending.client_id,
            remote_base_url=pending.remote_base_url,
        )
