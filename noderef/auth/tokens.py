"""OAuth token data structures.

TokenSet is what the token endpoint hands back, for both the
authorization_code and refresh_token grants.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any


@dataclass
class TokenSet:
    """Token endpoint response with metadata.

    Attributes:
        access_token: The access token string
        refresh_token: Optional refresh token (present with offline_access)
        expires_in: Lifetime of the access token in seconds, if reported
        token_type: Token type (typically "Bearer")
        scope: Space-separated list of granted scopes
        issued_at: When the token was received (UTC datetime)
    """

    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None
    token_type: str = "Bearer"
    scope: str | None = None
    issued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def expires_at(self) -> datetime | None:
        """Absolute expiry, or None when the provider reported no lifetime."""
        if self.expires_in is None:
            return None
        return self.issued_at + timedelta(seconds=self.expires_in)

    def to_response(self) -> dict[str, Any]:
        """Shape returned to the front end by the exchange RPC."""
        data: dict[str, Any] = {"accessToken": self.access_token}
        if self.refresh_token:
            data["refreshToken"] = self.refresh_token
        if self.expires_in is not None:
            data["expiresIn"] = self.expires_in
        return data

    @classmethod
    def from_token_response(cls, response: dict[str, Any]) -> "TokenSet":
        """Create TokenSet from an OAuth token endpoint response.

        Raises:
            KeyError: If the response carries no access_token
            ValueError: If expires_in is not an integer
        """
        if not response.get("access_token"):
            raise KeyError("access_token")

        expires_in = None
        if response.get("expires_in") is not None:
            expires_in = int(response["expires_in"])

        return cls(
            access_token=response["access_token"],
            refresh_token=response.get("refresh_token"),
            expires_in=expires_in,
            token_type=response.get("token_type", "Bearer"),
            scope=response.get("scope"),
        )
