"""Authentication and credential management for the NodeRef backend.

Servers authenticate either with a username and password or with OAuth2
(authorization code with PKCE against a Keycloak-style provider). This
package runs the interactive login, receives the redirected code, exchanges
it for tokens, stores credentials encrypted, and hands out authenticated
HTTP clients that refresh their tokens on the way.

Main Components:
    AuthService: Composition root used by the server, RPC routes and CLI
    AuthorizationInitiator / LoginHandle: Interactive login and its outcome
    TokenExchanger: Authorization code to token exchange
    CredentialRepository: Encrypted per-server credential storage
    ClientFactory: Authenticated clients with proactive token refresh
    CredentialValidator: Credential checks against a content server

Quick Start:
    from noderef.auth import AuthService, CredentialRepository

    service = AuthService(CredentialRepository(data_dir))
    service.bind_port(port)
    record = await service.register_oauth2_server(name, url, host, realm, client_id)
"""

from .callback import CodeDeliverySlot, DeliveredCode
from .client import (
    AuthenticatedClient,
    ClientFactory,
    RefreshFailed,
    RefreshOutcome,
    RefreshSucceeded,
)
from .credentials import BasicCredential, OAuth2Credential, ServerCredential
from .errors import (
    AuthError,
    AuthTimeoutError,
    CredentialDecryptionError,
    CredentialError,
    CredentialStoreError,
    ErrorCode,
    PopupBlockedError,
    ProviderError,
    SecurityError,
    ServerNotFoundError,
    TokenExchangeError,
    TokenRefreshError,
    UnauthorizedError,
    UserCancelledError,
    ValidationError,
)
from .flow import LoginResult, OAuthLogin, TokenExchanger
from .initiator import (
    AuthorizationInitiator,
    InteractiveSurface,
    LoginHandle,
    PollingPolicy,
    SystemBrowserSurface,
)
from .manager import AuthService, AuthStatus
from .pkce import PKCEPair, generate_code_challenge, generate_code_verifier, generate_pkce_pair
from .sessions import AuthorizationSessionStore, PendingAuthorization, SessionNotFoundError
from .store import CredentialRepository, ServerRecord
from .tokens import TokenSet
from .validator import CredentialValidator, ValidationResult

__all__ = [
    # Service (main entry point)
    "AuthService",
    "AuthStatus",
    # Login
    "AuthorizationInitiator",
    "InteractiveSurface",
    "SystemBrowserSurface",
    "LoginHandle",
    "PollingPolicy",
    "OAuthLogin",
    "LoginResult",
    "TokenExchanger",
    "CodeDeliverySlot",
    "DeliveredCode",
    "AuthorizationSessionStore",
    "PendingAuthorization",
    "SessionNotFoundError",
    # Credentials
    "BasicCredential",
    "OAuth2Credential",
    "ServerCredential",
    "CredentialRepository",
    "ServerRecord",
    "TokenSet",
    # Clients
    "AuthenticatedClient",
    "ClientFactory",
    "RefreshOutcome",
    "RefreshSucceeded",
    "RefreshFailed",
    "CredentialValidator",
    "ValidationResult",
    # PKCE
    "generate_pkce_pair",
    "generate_code_verifier",
    "generate_code_challenge",
    "PKCEPair",
    # Errors
    "ErrorCode",
    "AuthError",
    "ValidationError",
    "PopupBlockedError",
    "UserCancelledError",
    "AuthTimeoutError",
    "SecurityError",
    "ProviderError",
    "TokenExchangeError",
    "TokenRefreshError",
    "UnauthorizedError",
    "CredentialError",
    "ServerNotFoundError",
    "CredentialStoreError",
    "CredentialDecryptionError",
]
