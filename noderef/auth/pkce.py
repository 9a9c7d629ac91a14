"""PKCE (Proof Key for Code Exchange) implementation per RFC 7636.

The backend acts as a public client: no client secret is ever sent, so the
PKCE proof is what binds the token request to the authorization request.
"""

import base64
import hashlib
import secrets
from dataclasses import dataclass


# Verifier length constraints per RFC 7636 (characters)
MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128

# Random bytes behind a verifier; 32 bytes = 256 bits = 43 base64url chars
DEFAULT_VERIFIER_BYTES = 32
MIN_VERIFIER_BYTES = 32
MAX_VERIFIER_BYTES = 96

# Random bytes behind a state token (same strength as the verifier)
STATE_BYTES = 32


@dataclass(frozen=True)
class PKCEPair:
    """PKCE code verifier and challenge pair.

    The verifier stays on the backend and is sent in the token request.
    The challenge is sent in the authorization request.
    """

    verifier: str
    challenge: str
    method: str = "S256"


def _b64url(data: bytes) -> str:
    """Base64URL-encode without padding."""
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def generate_code_verifier(num_bytes: int = DEFAULT_VERIFIER_BYTES) -> str:
    """Generate a cryptographically random code verifier.

    Args:
        num_bytes: Number of random bytes to encode (32-96, giving a
            verifier of 43-128 characters)

    Returns:
        URL-safe base64 string without padding

    Raises:
        ValueError: If num_bytes is outside the allowed range
    """
    if num_bytes < MIN_VERIFIER_BYTES or num_bytes > MAX_VERIFIER_BYTES:
        raise ValueError(
            f"Code verifier entropy must be between {MIN_VERIFIER_BYTES} "
            f"and {MAX_VERIFIER_BYTES} bytes, got {num_bytes}"
        )

    return _b64url(secrets.token_bytes(num_bytes))


def generate_code_challenge(verifier: str) -> str:
    """Generate the S256 code challenge for a verifier.

    code_challenge = BASE64URL(SHA256(ASCII(code_verifier)))

    Args:
        verifier: The code verifier string

    Returns:
        Base64URL-encoded SHA256 digest without padding
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return _b64url(digest)


def generate_pkce_pair(num_bytes: int = DEFAULT_VERIFIER_BYTES) -> PKCEPair:
    """Generate a complete PKCE pair (verifier + challenge)."""
    verifier = generate_code_verifier(num_bytes)
    return PKCEPair(verifier=verifier, challenge=generate_code_challenge(verifier))


def generate_state() -> str:
    """Generate an unguessable state token.

    The state binds the redirect callback to the pending authorization and
    keys the session store, so it gets the same entropy as the verifier.
    """
    return secrets.token_urlsafe(STATE_BYTES)
