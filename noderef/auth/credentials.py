"""Stored credential model.

A server is authenticated either with a username/password pair or with
OAuth2 tokens. The two shapes are separate classes so that, for example, a
refresh token attached to basic auth cannot be represented at all.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Union

from .errors import CredentialError
from .tokens import TokenSet

AUTH_TYPE_BASIC = "basic"
AUTH_TYPE_OAUTH2 = "oauth2"

# Discriminator values written by older clients
_AUTH_TYPE_ALIASES = {
    "basic": AUTH_TYPE_BASIC,
    "oauth2": AUTH_TYPE_OAUTH2,
    "oauth": AUTH_TYPE_OAUTH2,
    "openid_connect": AUTH_TYPE_OAUTH2,
}

# Fields a patch may touch, per auth type
BASIC_FIELDS = frozenset({"username", "secret"})
OAUTH2_FIELDS = frozenset(
    {"secret", "refresh_token", "token_expiry", "provider_host", "realm", "client_id"}
)
OAUTH2_OPTIONAL_FIELDS = frozenset({"refresh_token", "token_expiry"})


def normalize_auth_type(auth_type: str) -> str:
    """Map an auth type string, including legacy aliases, to its canonical value.

    Raises:
        CredentialError: If the auth type is unknown
    """
    try:
        return _AUTH_TYPE_ALIASES[auth_type]
    except KeyError:
        raise CredentialError(f"Unknown auth type: {auth_type}") from None


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class BasicCredential:
    """Username and password for HTTP Basic authentication."""

    username: str
    secret: str

    auth_type = AUTH_TYPE_BASIC

    def is_complete(self) -> bool:
        return bool(self.username) and bool(self.secret)

    def to_dict(self) -> dict[str, Any]:
        return {"auth_type": self.auth_type, "username": self.username, "secret": self.secret}


@dataclass(frozen=True)
class OAuth2Credential:
    """OAuth2 tokens plus the provider coordinates needed to refresh them.

    Attributes:
        secret: Current access token
        provider_host: Identity provider host
        realm: Provider realm
        client_id: Public client id
        refresh_token: Refresh token, if the provider issued one
        token_expiry: Absolute access token expiry (UTC); None means unknown
    """

    secret: str
    provider_host: str
    realm: str
    client_id: str
    refresh_token: str | None = None
    token_expiry: datetime | None = None

    auth_type = AUTH_TYPE_OAUTH2

    def is_complete(self) -> bool:
        return all((self.secret, self.provider_host, self.realm, self.client_id))

    def has_refresh_token(self) -> bool:
        return self.refresh_token is not None and len(self.refresh_token) > 0

    def expires_within(self, window: timedelta, now: datetime | None = None) -> bool:
        """Check whether the access token expires within window from now.

        A credential without expiry never needs a proactive refresh.
        """
        if self.token_expiry is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now >= self.token_expiry - window

    def with_tokens(self, tokens: TokenSet) -> "OAuth2Credential":
        """Return a copy carrying freshly issued tokens.

        A refresh token is only replaced when the provider rotated it.
        The expiry is cleared when the provider reports no lifetime.
        """
        return replace(
            self,
            secret=tokens.access_token,
            refresh_token=tokens.refresh_token or self.refresh_token,
            token_expiry=tokens.expires_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "auth_type": self.auth_type,
            "secret": self.secret,
            "refresh_token": self.refresh_token,
            "token_expiry": self.token_expiry.isoformat() if self.token_expiry else None,
            "provider_host": self.provider_host,
            "realm": self.realm,
            "client_id": self.client_id,
        }


ServerCredential = Union[BasicCredential, OAuth2Credential]


def credential_from_dict(data: dict[str, Any]) -> ServerCredential:
    """Deserialize a stored credential record.

    Raises:
        CredentialError: If the discriminator or a required field is missing
    """
    auth_type = normalize_auth_type(data.get("auth_type") or "")

    if auth_type == AUTH_TYPE_BASIC:
        return BasicCredential(
            username=data.get("username") or "",
            secret=data.get("secret") or "",
        )

    return OAuth2Credential(
        secret=data.get("secret") or "",
        provider_host=data.get("provider_host") or "",
        realm=data.get("realm") or "",
        client_id=data.get("client_id") or "",
        refresh_token=data.get("refresh_token") or None,
        token_expiry=_parse_datetime(data.get("token_expiry")),
    )


def apply_patch(
    current: ServerCredential | None,
    patch: dict[str, Any],
    auth_type: str | None = None,
) -> ServerCredential:
    """Merge a partial update into a credential.

    Keys present in the patch overwrite; a None value clears an optional
    field. Applying the same patch twice yields the same credential.

    Args:
        current: Stored credential, or None when creating one
        patch: Fields to update
        auth_type: Auth type to create when there is no current credential

    Returns:
        The merged credential

    Raises:
        CredentialError: If the patch switches auth type, touches fields of
            the other auth type, or leaves required fields empty
    """
    patch = dict(patch)
    patched_type = patch.pop("auth_type", None)
    if patched_type is not None:
        patched_type = normalize_auth_type(patched_type)

    if current is not None:
        if patched_type is not None and patched_type != current.auth_type:
            raise CredentialError(
                f"Cannot change auth type from {current.auth_type} to {patched_type}; "
                f"replace the credential instead"
            )
        target_type = current.auth_type
        merged = current.to_dict()
    else:
        target_type = patched_type or (normalize_auth_type(auth_type) if auth_type else None)
        if target_type is None:
            raise CredentialError("auth_type is required to create credentials")
        merged = {}

    allowed = BASIC_FIELDS if target_type == AUTH_TYPE_BASIC else OAUTH2_FIELDS
    unknown = sorted(set(patch) - allowed)
    if unknown:
        raise CredentialError(
            f"Fields not valid for {target_type} credentials: {', '.join(unknown)}"
        )

    if "token_expiry" in patch and isinstance(patch["token_expiry"], datetime):
        patch["token_expiry"] = patch["token_expiry"].isoformat()

    merged.update(patch)
    merged["auth_type"] = target_type
    credential = credential_from_dict(merged)

    if not credential.is_complete():
        if target_type == AUTH_TYPE_BASIC:
            raise CredentialError("Basic credentials require username and secret")
        raise CredentialError(
            "OAuth2 credentials require secret, provider_host, realm and client_id"
        )

    return credential
