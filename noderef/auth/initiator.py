"""Interactive start of an authorization-code login.

The initiator opens an interactive surface (the system browser, or a window
owned by the embedding application), points it at the provider's
authorization endpoint and then waits for the code to show up in the
delivery slot. Waiting ends in exactly one of:
- a delivered code (success)
- the surface closing, confirmed after a grace period (UserCancelledError)
- the polling ceiling (AuthTimeoutError)
- an explicit LoginHandle.cancel() (UserCancelledError)

Whatever the outcome, both background tasks are stopped and the surface is
closed. Only success leaves the pending authorization in place, for the
token exchanger to consume.

Front ends that drive the wait themselves use prepare() alone: it stores the
pending authorization and returns the URL, and the front end then polls the
slot and exchanges the code over RPC.
"""

import asyncio
import hmac
import logging
import webbrowser
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

from .callback import CALLBACK_PATH, CodeDeliverySlot, DeliveredCode
from .endpoints import build_authorization_url, require_field, validate_url
from .errors import (
    AuthError,
    AuthTimeoutError,
    PopupBlockedError,
    SecurityError,
    UserCancelledError,
)
from .pkce import generate_pkce_pair, generate_state
from .sessions import SESSION_TTL, AuthorizationSessionStore, PendingAuthorization

logger = logging.getLogger(__name__)

StatusCallback = Callable[[str], None]

# Time allowed between the last poll and the token exchange
EXCHANGE_MARGIN = 30.0


@dataclass(frozen=True)
class PollingPolicy:
    """Timing of the wait for an authorization code.

    Attributes:
        interval: Seconds between polls of the delivery slot
        max_attempts: Polls before giving up
        grace_period: Seconds to keep polling after the surface closed
        liveness_interval: Seconds between surface liveness checks
    """

    interval: float = 1.0
    max_attempts: int = 300
    grace_period: float = 3.0
    liveness_interval: float = 0.5

    @property
    def timeout(self) -> float:
        """Overall ceiling in seconds."""
        return self.interval * self.max_attempts

    @property
    def session_ttl(self) -> float:
        """Lifetime of a pending authorization waited on with this policy.

        Outlives the polling ceiling and grace period, so a code collected
        on the last attempt can still be exchanged.
        """
        return max(SESSION_TTL, self.timeout + self.grace_period + EXCHANGE_MARGIN)


def redirect_uri_for_port(port: int) -> str:
    """Redirect URI served by a backend bound to port on loopback."""
    return f"http://127.0.0.1:{port}{CALLBACK_PATH}"


class InteractiveSurface(ABC):
    """Where the user signs in to the provider.

    Application-controlled surfaces (popups) must be opened synchronously,
    before the login does any asynchronous work, and navigated afterwards.
    """

    @abstractmethod
    def open(self) -> bool:
        """Open the surface blank. Returns False if it was blocked."""

    @abstractmethod
    def navigate(self, url: str) -> bool:
        """Point the surface at url. Returns False if that failed."""

    @abstractmethod
    def is_closed(self) -> bool:
        """Whether the user closed the surface."""

    @abstractmethod
    def close(self) -> None:
        """Close the surface; must be safe to call more than once."""


class SystemBrowserSurface(InteractiveSurface):
    """The operating system's default browser.

    A browser tab is not ours to watch, so closure is never reported and
    the login ends by code delivery, timeout or explicit cancel.
    """

    def __init__(self, new: int = 2):
        self.new = new

    def open(self) -> bool:
        return True

    def navigate(self, url: str) -> bool:
        try:
            return webbrowser.open(url, new=self.new)
        except webbrowser.Error as e:
            logger.warning(f"Could not launch browser: {e}")
            return False

    def is_closed(self) -> bool:
        return False

    def close(self) -> None:
        pass


def _consume_outcome(task: asyncio.Task) -> None:
    # Marks the exception retrieved when nobody awaits the handle
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.debug(f"Login ended with {type(error).__name__}: {error}")


class LoginHandle:
    """A login in progress.

    Attributes:
        pending: The stored pending authorization
        authorization_url: URL the surface was navigated to
    """

    def __init__(
        self,
        pending: PendingAuthorization,
        authorization_url: str,
        cancel_event: asyncio.Event,
        task: "asyncio.Task[DeliveredCode]",
    ):
        self.pending = pending
        self.authorization_url = authorization_url
        self._cancel_event = cancel_event
        self._task = task
        task.add_done_callback(_consume_outcome)

    @property
    def state(self) -> str:
        return self.pending.state

    def done(self) -> bool:
        return self._task.done()

    def cancel(self) -> None:
        """Abandon the login; wait() then raises UserCancelledError."""
        if not self._task.done():
            logger.info("Login cancelled by caller")
            self._cancel_event.set()

    async def wait(self) -> DeliveredCode:
        """Wait for the outcome of the login.

        Returns:
            The delivered authorization code

        Raises:
            UserCancelledError: Surface closed or login cancelled
            AuthTimeoutError: No code before the polling ceiling
            SecurityError: A code arrived for a different login
        """
        return await self._task


class AuthorizationInitiator:
    """Starts logins and drives them to a terminal outcome."""

    def __init__(
        self,
        sessions: AuthorizationSessionStore,
        slot: CodeDeliverySlot,
        policy: PollingPolicy | None = None,
        callback_port: int | None = None,
    ):
        """Initialize the initiator.

        Args:
            sessions: Store for pending authorizations
            slot: Delivery slot fed by the callback endpoint
            policy: Polling timing; defaults to PollingPolicy()
            callback_port: Port the backend listens on, if already bound
        """
        self.sessions = sessions
        self.slot = slot
        self.policy = policy or PollingPolicy()
        self.callback_port = callback_port
        self._driving: set[str] = set()

    @property
    def redirect_uri(self) -> str:
        if not self.callback_port:
            raise AuthError("Backend port is not bound; cannot build a redirect URI")
        return redirect_uri_for_port(self.callback_port)

    @property
    def login_in_progress(self) -> bool:
        """Whether a login started by begin() is still polling the slot."""
        return bool(self._driving)

    def prepare(
        self,
        provider_host: str,
        realm: str,
        client_id: str,
        remote_base_url: str,
    ) -> tuple[PendingAuthorization, str]:
        """Store a pending authorization and build its authorization URL.

        Nothing waits for the code: the caller polls the slot and exchanges
        the code itself.

        Returns:
            The pending authorization and the URL to send the user to

        Raises:
            ValidationError: Malformed URL or blank field
        """
        provider_host = validate_url(provider_host, "providerHost")
        remote_base_url = validate_url(remote_base_url, "baseUrl")
        realm = require_field(realm, "realm")
        client_id = require_field(client_id, "clientId")
        redirect_uri = self.redirect_uri

        pkce = generate_pkce_pair()
        pending = self.sessions.new_session(
            state=generate_state(),
            code_verifier=pkce.verifier,
            provider_host=provider_host,
            realm=realm,
            client_id=client_id,
            redirect_uri=redirect_uri,
            remote_base_url=remote_base_url,
        )

        # A code left over from an abandoned attempt must not complete this one
        self.slot.clear()

        authorization_url = build_authorization_url(
            provider_host,
            realm,
            client_id,
            redirect_uri,
            pkce.challenge,
            pending.state,
        )
        logger.info(f"Prepared login against {provider_host} (realm {realm}) for {remote_base_url}")
        return pending, authorization_url

    def begin(
        self,
        provider_host: str,
        realm: str,
        client_id: str,
        remote_base_url: str,
        surface: InteractiveSurface | None = None,
        on_status: StatusCallback | None = None,
    ) -> LoginHandle:
        """Start a login. Must be called from a running event loop.

        Args:
            provider_host: Identity provider host, scheme optional
            realm: Provider realm
            client_id: Public client id
            remote_base_url: Content server the login is for, scheme optional
            surface: Where to sign in; defaults to the system browser
            on_status: Optional callback for progress messages

        Returns:
            Handle to wait on or cancel

        Raises:
            ValidationError: Malformed URL or blank field
            PopupBlockedError: The surface could not be opened
        """
        emit = on_status or (lambda msg: None)

        pending, authorization_url = self.prepare(provider_host, realm, client_id, remote_base_url)

        surface = surface or SystemBrowserSurface()
        if not surface.open():
            self.sessions.discard(pending.state)
            raise PopupBlockedError(
                "Sign-in window was blocked. Allow popups for NodeRef and try again."
            )

        emit("Opening browser for authorization...")
        if not surface.navigate(authorization_url):
            emit(f"Could not open browser. Please open this URL manually:\n{authorization_url}")
        emit(f"Waiting for callback on {pending.redirect_uri}")

        cancel_event = asyncio.Event()
        task = asyncio.get_running_loop().create_task(
            self._drive(pending, surface, cancel_event)
        )
        self._driving.add(pending.state)
        task.add_done_callback(lambda _: self._driving.discard(pending.state))
        return LoginHandle(pending, authorization_url, cancel_event, task)

    async def _drive(
        self,
        pending: PendingAuthorization,
        surface: InteractiveSurface,
        cancel_event: asyncio.Event,
    ) -> DeliveredCode:
        poll_task = asyncio.create_task(self._poll_for_code())
        watch_task = asyncio.create_task(self._watch_surface(surface))
        cancel_task = asyncio.create_task(cancel_event.wait())
        tasks = (poll_task, watch_task, cancel_task)
        succeeded = False

        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)

            if poll_task.done():
                delivered = poll_task.result()
                if not hmac.compare_digest(delivered.state, pending.state):
                    raise SecurityError("State mismatch in callback - possible CSRF attack")
                succeeded = True
                return delivered

            if watch_task.done():
                watch_task.result()
                raise UserCancelledError("Sign-in window was closed before completing login")

            raise UserCancelledError("Login cancelled")

        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            surface.close()
            if not succeeded:
                self.sessions.discard(pending.state)
                logger.debug("Released pending authorization")

    async def _poll_for_code(self) -> DeliveredCode:
        for _ in range(self.policy.max_attempts):
            await asyncio.sleep(self.policy.interval)
            delivered = self.slot.poll()
            if delivered is not None:
                return delivered

        logger.warning(f"No authorization code after {self.policy.timeout:g}s")
        raise AuthTimeoutError(
            f"Timed out waiting for authorization after {self.policy.timeout:g} seconds"
        )

    async def _watch_surface(self, surface: InteractiveSurface) -> None:
        while not surface.is_closed():
            await asyncio.sleep(self.policy.liveness_interval)

        logger.debug("Sign-in surface closed; waiting out grace period")
        await asyncio.sleep(self.policy.grace_period)
