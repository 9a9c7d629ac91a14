"""Short-lived store for pending authorizations.

A PendingAuthorization survives the browser redirect round-trip: it is put
under its state token when a login begins and taken exactly once by the
token exchanger. Entries older than the session lifetime are swept on every
access and are never returned, so a stale verifier can never be exchanged.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from .errors import SecurityError

logger = logging.getLogger(__name__)

# Lifetime of a pending authorization (seconds)
SESSION_TTL = 300


class SessionNotFoundError(SecurityError):
    """No live pending authorization exists for a state token."""


@dataclass(frozen=True)
class PendingAuthorization:
    """Context of a login that is waiting for its authorization code.

    Attributes:
        state: Random opaque token, primary key
        code_verifier: PKCE verifier to send at exchange time
        provider_host: Identity provider host (Keycloak base URL)
        realm: Provider realm
        client_id: Public client id registered with the provider
        redirect_uri: Redirect URI sent in the authorization request
        remote_base_url: Content server the login is for
        created_at: Monotonic creation time
    """

    state: str
    code_verifier: str
    provider_host: str
    realm: str
    client_id: str
    redirect_uri: str
    remote_base_url: str
    created_at: float = field(default_factory=time.monotonic)


class AuthorizationSessionStore:
    """Keyed store of pending authorizations with destructive reads."""

    def __init__(
        self,
        ttl: float = SESSION_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the store.

        Args:
            ttl: Seconds after which an entry is unreachable
            clock: Monotonic clock, injectable for tests
        """
        self.ttl = ttl
        self._clock = clock
        self._sessions: dict[str, PendingAuthorization] = {}

    def __len__(self) -> int:
        self.expire_older_than(self.ttl)
        return len(self._sessions)

    def __contains__(self, state: object) -> bool:
        self.expire_older_than(self.ttl)
        return state in self._sessions

    def now(self) -> float:
        """Current time on the store's clock."""
        return self._clock()

    def put(self, pending: PendingAuthorization) -> None:
        """Store a pending authorization under its state.

        Raises:
            SecurityError: If a live entry already uses this state
        """
        self.expire_older_than(self.ttl)
        if pending.state in self._sessions:
            raise SecurityError("Authorization state already in use")
        self._sessions[pending.state] = pending
        logger.debug(f"Stored pending authorization for {pending.remote_base_url}")

    def take(self, state: str) -> PendingAuthorization:
        """Remove and return the pending authorization for a state.

        Raises:
            SessionNotFoundError: If the state is unknown, already taken,
                or expired
        """
        self.expire_older_than(self.ttl)
        pending = self._sessions.pop(state, None)
        if pending is None:
            raise SessionNotFoundError("Unknown or expired authorization session")
        return pending

    def discard(self, state: str) -> bool:
        """Drop a pending authorization without using it.

        Returns:
            True if an entry was removed
        """
        return self._sessions.pop(state, None) is not None

    def expire_older_than(self, duration: float) -> int:
        """Remove entries older than duration seconds.

        Returns:
            Number of entries removed
        """
        cutoff = self._clock() - duration
        expired = [s for s, p in self._sessions.items() if p.created_at <= cutoff]
        for state in expired:
            del self._sessions[state]
        if expired:
            logger.debug(f"Expired {len(expired)} pending authorization(s)")
        return len(expired)

    def new_session(
        self,
        state: str,
        code_verifier: str,
        provider_host: str,
        realm: str,
        client_id: str,
        redirect_uri: str,
        remote_base_url: str,
    ) -> PendingAuthorization:
        """Create and store a pending authorization stamped with the store clock."""
        pending = PendingAuthorization(
            state=state,
            code_verifier=code_verifier,
            provider_host=provider_host,
            realm=realm,
            client_id=client_id,
            redirect_uri=redirect_uri,
            remote_base_url=remote_base_url,
            created_at=self._clock(),
        )
        self.put(pending)
        return pending
