"""
PKCE (RFC 7636) and state generation.

The verifier stays in memory until the token request; only the challenge
travels with the authorization request.
"""

import base64
import hashlib
import hmac
import secrets
from dataclasses import dataclass

from oauth_config import PKCE_CHALLENGE_METHOD


VERIFIER_BYTES = 32
STATE_BYTES = 32


@dataclass(frozen=True)
class PKCEPair:
    """PKCE code verifier and its S256 challenge."""

    code_verifier: str
    code_challenge: str
    method: str = PKCE_CHALLENGE_METHOD


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def compute_code_challenge(code_verifier: str) -> str:
    """Return base64url(SHA256(code_verifier)) without padding."""
    return _b64url(hashlib.sha256(code_verifier.encode("ascii")).digest())


def verify_code_challenge(code_verifier: str, code_challenge: str) -> bool:
    """Check a verifier against a previously issued S256 challenge."""
    return hmac.compare_digest(compute_code_challenge(code_verifier), code_challenge)


def generate_pkce() -> PKCEPair:
    """Generate a PKCE code verifier and challenge.

    The verifier carries 256 bits of randomness (43 URL-safe characters).
    """
    code_verifier = _b64url(secrets.token_bytes(VERIFIER_BYTES))
    return PKCEPair(
        code_verifier=code_verifier,
        code_challenge=compute_code_challenge(code_verifier),
    )


def generate_state(nbytes: int = STATE_BYTES) -> str:
    """Generate an opaque CSRF state token."""
    if nbytes < 16:
        raise ValueError("state needs at least 16 bytes of randomness")
    return secrets.token_urlsafe(nbytes)
