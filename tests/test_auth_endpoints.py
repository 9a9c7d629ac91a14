"""Tests for URL normalization and provider endpoints."""

from urllib.parse import parse_qs, urlparse

import pytest

from noderef.auth.endpoints import (
    OIDC_SCOPE,
    authorization_endpoint,
    build_authorization_url,
    content_root,
    ensure_protocol,
    provider_base_url,
    public_api_url,
    require_field,
    token_endpoint,
    validate_url,
)
from noderef.auth.errors import ValidationError


class TestValidateUrl:
    """Tests for URL validation."""

    def test_prepends_http(self):
        """Test that a bare host gets http://."""
        assert validate_url("localhost:8080", "baseUrl") == "http://localhost:8080"

    def test_keeps_https(self):
        """Test that an explicit scheme is kept."""
        assert ensure_protocol("https://ecm.example.com") == "https://ecm.example.com"

    def test_strips_trailing_slash(self):
        """Test that trailing slashes are removed."""
        assert validate_url("http://localhost:8080/", "baseUrl") == "http://localhost:8080"

    @pytest.mark.parametrize("bad", ["", "   ", "http://", "http://host:notaport", "ftp://host", "http://bad host"])
    def test_rejects_malformed(self, bad):
        """Test that malformed URLs raise ValidationError naming the field."""
        with pytest.raises(ValidationError) as exc_info:
            validate_url(bad, "providerHost")
        assert exc_info.value.details == {"field": "providerHost"}

    @pytest.mark.parametrize("bad", ["http://exa\x00mple.com", "http://☃☃.-x-"])
    def test_rejects_hosts_httpx_cannot_encode(self, bad):
        """Test that URLs the HTTP client would refuse fail validation up front."""
        with pytest.raises(ValidationError, match="not a valid URL") as exc_info:
            validate_url(bad, "baseUrl")
        assert exc_info.value.details == {"field": "baseUrl"}

    def test_require_field(self):
        """Test that blank required fields are rejected and values stripped."""
        assert require_field("  alfresco ", "realm") == "alfresco"
        with pytest.raises(ValidationError, match="realm is required"):
            require_field("  ", "realm")


class TestProviderEndpoints:
    """Tests for Keycloak endpoint layout."""

    def test_legacy_prefix_added(self):
        """Test that a bare host gets the /auth prefix."""
        assert provider_base_url("http://localhost:8180") == "http://localhost:8180/auth"

    def test_auth_suffix_kept(self):
        """Test that a host ending in /auth is used as is."""
        assert provider_base_url("http://localhost:8180/auth/") == "http://localhost:8180/auth"

    def test_token_endpoint(self):
        """Test the token endpoint path."""
        assert (
            token_endpoint("http://localhost:8180", "alfresco")
            == "http://localhost:8180/auth/realms/alfresco/protocol/openid-connect/token"
        )

    def test_authorization_endpoint(self):
        """Test the authorization endpoint path."""
        assert (
            authorization_endpoint("http://kc/auth", "r")
            == "http://kc/auth/realms/r/protocol/openid-connect/auth"
        )


class TestBuildAuthorizationUrl:
    """Tests for authorization URL construction."""

    def test_contains_required_params(self):
        """Test that the URL carries every authorization parameter."""
        url = build_authorization_url(
            "http://localhost:8180",
            "alfresco",
            "noderef-desktop",
            "http://127.0.0.1:5050/auth/callback",
            "challenge-value",
            "state-value",
        )
        parsed = urlparse(url)
        params = {k: v[0] for k, v in parse_qs(parsed.query).items()}

        assert parsed.path == "/auth/realms/alfresco/protocol/openid-connect/auth"
        assert params == {
            "client_id": "noderef-desktop",
            "redirect_uri": "http://127.0.0.1:5050/auth/callback",
            "response_type": "code",
            "scope": OIDC_SCOPE,
            "code_challenge": "challenge-value",
            "code_challenge_method": "S256",
            "state": "state-value",
        }

    def test_scope_requests_offline_access(self):
        """Test that the default scope asks for a refresh token."""
        assert OIDC_SCOPE == "openid profile email offline_access"


class TestContentUrls:
    """Tests for content server URLs."""

    @pytest.mark.parametrize("base", ["http://ecm:8080", "http://ecm:8080/", "http://ecm:8080/alfresco"])
    def test_content_root_normalized(self, base):
        """Test that the context path appears exactly once."""
        assert content_root(base) == "http://ecm:8080/alfresco"

    def test_public_api_url(self):
        """Test the public REST API root."""
        assert (
            public_api_url("http://ecm:8080")
            == "http://ecm:8080/alfresco/api/-default-/public/alfresco/versions/1"
        )
