"""Tests for the stored credential model."""

from datetime import datetime, timedelta, timezone

import pytest

from noderef.auth.credentials import (
    BasicCredential,
    OAuth2Credential,
    apply_patch,
    credential_from_dict,
    normalize_auth_type,
)
from noderef.auth.errors import CredentialError
from noderef.auth.tokens import TokenSet


class TestNormalizeAuthType:
    """Tests for auth type discriminators."""

    @pytest.mark.parametrize("legacy", ["oauth", "openid_connect", "oauth2"])
    def test_legacy_values_map_to_oauth2(self, legacy):
        """Test that older discriminator values are accepted."""
        assert normalize_auth_type(legacy) == "oauth2"

    def test_unknown_type_rejected(self):
        """Test that an unknown discriminator is an error."""
        with pytest.raises(CredentialError, match="Unknown auth type"):
            normalize_auth_type("kerberos")


class TestCredentialFromDict:
    """Tests for deserializing stored records."""

    def test_basic_record(self):
        """Test that a basic record yields a BasicCredential."""
        credential = credential_from_dict(
            {"auth_type": "basic", "username": "admin", "secret": "pw"}
        )
        assert credential == BasicCredential(username="admin", secret="pw")

    def test_openid_connect_record(self):
        """Test that a legacy openid_connect record yields an OAuth2Credential."""
        credential = credential_from_dict(
            {
                "auth_type": "openid_connect",
                "secret": "at",
                "refresh_token": "rt",
                "token_expiry": "2030-01-01T00:00:00",
                "provider_host": "http://kc",
                "realm": "r",
                "client_id": "c",
            }
        )
        assert isinstance(credential, OAuth2Credential)
        assert credential.token_expiry == datetime(2030, 1, 1, tzinfo=timezone.utc)

    def test_basic_credential_has_no_token_fields(self):
        """Test that refresh data on a basic record is not representable."""
        credential = BasicCredential(username="u", secret="s")
        assert not hasattr(credential, "refresh_token")
        assert not hasattr(credential, "token_expiry")


class TestExpiresWithin:
    """Tests for the proactive refresh check."""

    def test_no_expiry_never_due(self):
        """Test that a credential without expiry is never refreshed proactively."""
        credential = OAuth2Credential(
            secret="at", provider_host="h", realm="r", client_id="c", token_expiry=None
        )
        assert credential.expires_within(timedelta(minutes=5)) is False

    def test_due_inside_window(self):
        """Test that a token expiring in two minutes is due."""
        now = datetime(2030, 1, 1, tzinfo=timezone.utc)
        credential = OAuth2Credential(
            secret="at",
            provider_host="h",
            realm="r",
            client_id="c",
            token_expiry=now + timedelta(minutes=2),
        )
        assert credential.expires_within(timedelta(minutes=5), now) is True

    def test_not_due_outside_window(self):
        """Test that a token valid for an hour is not due."""
        now = datetime(2030, 1, 1, tzinfo=timezone.utc)
        credential = OAuth2Credential(
            secret="at",
            provider_host="h",
            realm="r",
            client_id="c",
            token_expiry=now + timedelta(hours=1),
        )
        assert credential.expires_within(timedelta(minutes=5), now) is False


class TestWithTokens:
    """Tests for applying a token response."""

    def test_keeps_refresh_token_when_not_rotated(self, oauth_credential):
        """Test that a response without refresh_token keeps the old one."""
        renewed = oauth_credential.with_tokens(TokenSet(access_token="at-2", expires_in=300))
        assert renewed.secret == "at-2"
        assert renewed.refresh_token == "refresh-token-1"

    def test_replaces_rotated_refresh_token(self, oauth_credential):
        """Test that a rotated refresh token replaces the old one."""
        renewed = oauth_credential.with_tokens(
            TokenSet(access_token="at-2", refresh_token="rt-2", expires_in=300)
        )
        assert renewed.refresh_token == "rt-2"

    def test_clears_expiry_without_lifetime(self, oauth_credential):
        """Test that a response without expires_in clears the expiry."""
        renewed = oauth_credential.with_tokens(TokenSet(access_token="at-2"))
        assert renewed.token_expiry is None


class TestApplyPatch:
    """Tests for partial credential updates."""

    def test_patch_is_idempotent(self, oauth_credential):
        """Test that applying the same patch twice gives the same record."""
        patch = {"secret": "new-token", "refresh_token": None}
        once = apply_patch(oauth_credential, patch)
        twice = apply_patch(once, patch)
        assert once == twice
        assert twice.refresh_token is None

    def test_none_clears_optional_field(self, oauth_credential):
        """Test that None removes the expiry."""
        patched = apply_patch(oauth_credential, {"token_expiry": None})
        assert patched.token_expiry is None

    def test_auth_type_switch_refused(self, basic_credential):
        """Test that a patch cannot change the auth type."""
        with pytest.raises(CredentialError, match="Cannot change auth type"):
            apply_patch(basic_credential, {"auth_type": "oauth2", "secret": "x"})

    def test_oauth_fields_rejected_on_basic(self, basic_credential):
        """Test that token fields cannot be attached to a basic credential."""
        with pytest.raises(CredentialError, match="refresh_token"):
            apply_patch(basic_credential, {"refresh_token": "rt"})

    def test_required_field_cannot_be_cleared(self, basic_credential):
        """Test that clearing a required field is rejected."""
        with pytest.raises(CredentialError, match="require username and secret"):
            apply_patch(basic_credential, {"secret": None})

    def test_create_requires_auth_type(self):
        """Test that creating without a type is rejected."""
        with pytest.raises(CredentialError, match="auth_type is required"):
            apply_patch(None, {"username": "u", "secret": "s"})

    def test_create_oauth2_requires_provider_coordinates(self):
        """Test that an oauth2 credential needs provider host, realm and client id."""
        with pytest.raises(CredentialError, match="provider_host"):
            apply_patch(None, {"secret": "at"}, auth_type="oauth2")

    def test_datetime_expiry_accepted(self, oauth_credential):
        """Test that a datetime expiry in a patch is stored as given."""
        expiry = datetime(2031, 5, 1, 12, 0, tzinfo=timezone.utc)
        patched = apply_patch(oauth_credential, {"token_expiry": expiry})
        assert patched.token_expiry == expiry
