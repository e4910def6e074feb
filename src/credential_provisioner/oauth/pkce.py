"""PKCE (Proof Key for Code Exchange) implementation.

Implements RFC 7636 S256 challenges plus the anti-forgery state token
sent alongside them.
"""

from __future__ import annotations

import base64
import hashlib
import os
from dataclasses import dataclass, field

from credential_provisioner.errors import EntropyUnavailableError

# Bytes of entropy behind verifiers and state tokens
ENTROPY_BYTES = 32


@dataclass(frozen=True)
class PKCEPair:
    """PKCE code verifier and challenge pair.

    Attributes:
        code_verifier: Random string sent with the token request
        code_challenge: SHA256 hash of the verifier sent with the auth request
    """

    code_verifier: str = field(repr=False)
    code_challenge: str


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _random_token(nbytes: int = ENTROPY_BYTES) -> str:
    """Read ``nbytes`` from the OS random source, base64url without padding.

    Raises:
        EntropyUnavailableError: If the random source cannot be read
    """
    try:
        raw = os.urandom(nbytes)
    except (NotImplementedError, OSError) as e:
        raise EntropyUnavailableError() from e
    return _b64url(raw)


def generate_code_challenge(verifier: str) -> str:
    """Compute the S256 code challenge: BASE64URL(SHA256(code_verifier)).

    Args:
        verifier: The code verifier string

    Returns:
        Base64url-encoded SHA256 hash (without padding)
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return _b64url(digest)


def generate_pkce() -> PKCEPair:
    """Create a new PKCE verifier/challenge pair.

    The verifier is 32 random bytes, which encode to 43 characters and
    satisfy the RFC 7636 length bounds.

    Returns:
        PKCEPair with verifier and challenge

    Raises:
        EntropyUnavailableError: If the random source cannot be read
    """
    verifier = _random_token()
    return PKCEPair(code_verifier=verifier, code_challenge=generate_code_challenge(verifier))


def generate_state() -> str:
    """Generate an unguessable anti-forgery state token.

    Raises:
        EntropyUnavailableError: If the random source cannot be read
    """
    return _random_token()
