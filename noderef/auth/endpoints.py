"""URL normalization and identity provider endpoint layout.

The provider is a Keycloak-style server. Two path layouts exist:
- Legacy (< v17): http://host:port/auth/realms/{realm}/...
- Modern (>= v17): http://host:port/realms/{realm}/...
A host ending in /auth, or already containing /realms/, is used as given;
otherwise the legacy /auth prefix is added. Users on modern Keycloak enter
the host with its path to opt out.
"""

from urllib.parse import urlencode, urlparse

import httpx

from .errors import ValidationError

# Scopes requested at authorization; offline_access yields a refresh token
OIDC_SCOPE = "openid profile email offline_access"

# Context path the content server SDK adds on its own
CONTENT_CONTEXT_PATH = "/alfresco"

# Public REST API root below the content context path
PUBLIC_API_PATH = "/api/-default-/public/alfresco/versions/1"


def ensure_protocol(url: str) -> str:
    """Prepend http:// when a URL has no scheme.

    Other schemes are left alone for validate_url to reject.
    """
    url = url.strip()
    if not url:
        return url
    if "://" in url:
        return url
    return f"http://{url}"


def validate_url(url: str, field_name: str) -> str:
    """Normalize a URL and check that it parses as an http(s) URL.

    Args:
        url: User-entered URL, scheme optional
        field_name: Name of the field for the error message

    Returns:
        Normalized URL without trailing slash

    Raises:
        ValidationError: If the URL is empty or malformed
    """
    if not url or not url.strip():
        raise ValidationError(f"{field_name} is required", {"field": field_name})

    normalized = ensure_protocol(url).rstrip("/")
    try:
        parsed = urlparse(normalized)
        # Accessing port validates it
        parsed.port
    except ValueError as e:
        raise ValidationError(
            f"{field_name} is not a valid URL: {url}", {"field": field_name}
        ) from e

    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise ValidationError(
            f"{field_name} is not a valid URL: {url}", {"field": field_name}
        )
    if any(c.isspace() for c in normalized):
        raise ValidationError(
            f"{field_name} must not contain whitespace", {"field": field_name}
        )

    try:
        # Hosts httpx cannot encode would otherwise fail at request time
        httpx.URL(normalized)
    except httpx.InvalidURL as e:
        raise ValidationError(
            f"{field_name} is not a valid URL: {e}", {"field": field_name}
        ) from e

    return normalized


def require_field(value: str | None, field_name: str) -> str:
    """Strip a required text field, rejecting blanks."""
    if value is None or not value.strip():
        raise ValidationError(f"{field_name} is required", {"field": field_name})
    return value.strip()


def provider_base_url(provider_host: str) -> str:
    """Resolve the base URL that realm paths hang off."""
    host = provider_host.rstrip("/")
    if host.endswith("/auth") or "/realms/" in host:
        return host
    return f"{host}/auth"


def authorization_endpoint(provider_host: str, realm: str) -> str:
    """OpenID Connect authorization endpoint for a realm."""
    return f"{provider_base_url(provider_host)}/realms/{realm}/protocol/openid-connect/auth"


def token_endpoint(provider_host: str, realm: str) -> str:
    """OpenID Connect token endpoint for a realm."""
    return f"{provider_base_url(provider_host)}/realms/{realm}/protocol/openid-connect/token"


def content_root(base_url: str) -> str:
    """Normalize a content server URL to its context path.

    Accepts the server with or without the /alfresco suffix.
    """
    root = base_url.rstrip("/")
    if root.endswith(CONTENT_CONTEXT_PATH):
        root = root[: -len(CONTENT_CONTEXT_PATH)]
    return f"{root}{CONTENT_CONTEXT_PATH}"


def public_api_url(base_url: str) -> str:
    """Root of the public REST API for a content server."""
    return f"{content_root(base_url)}{PUBLIC_API_PATH}"


def build_authorization_url(
    provider_host: str,
    realm: str,
    client_id: str,
    redirect_uri: str,
    code_challenge: str,
    state: str,
    scope: str = OIDC_SCOPE,
) -> str:
    """Build the authorization URL for the interactive surface.

    Args:
        provider_host: Identity provider host
        realm: Provider realm
        client_id: Public client id
        redirect_uri: The callback URI
        code_challenge: PKCE code challenge (S256)
        state: State parameter for CSRF protection
        scope: Space-separated scopes to request

    Returns:
        Complete authorization URL
    """
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": scope,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
        "state": state,
    }
    return f"{authorization_endpoint(provider_host, realm)}?{urlencode(params)}"
