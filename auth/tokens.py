"""
auth/tokens.py -- Secret generation for the login flow.

Security design decisions:
  State tokens: secrets.token_hex(32) gives 32 random bytes as 64 lowercase hex
       characters (256 bits). Guessing a pending token is computationally
       infeasible, and the 10-minute TTL bounds the window further.

  PKCE (RFC 7636): the verifier comes from authlib's generate_token(), which
       draws from random.SystemRandom (the OS CSPRNG) over [A-Za-z0-9] -- a
       subset of the RFC's unreserved alphabet. The S256 challenge is
       base64url(SHA256(verifier)) without padding, computed by authlib's
       create_s256_code_challenge().

  Session ids: secrets.token_urlsafe(32). A new id is issued on every
       successful login so a pre-login session id can never be fixated.

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

import hmac
import re
import secrets

from authlib.common.security import generate_token
from authlib.oauth2.rfc7636 import create_s256_code_challenge

STATE_TOKEN_BYTES = 32
PKCE_VERIFIER_LENGTH = 64  # RFC 7636 allows 43..128

_STATE_TOKEN_RE = re.compile(r"^[0-9a-f]{64}$")


def generate_state_token() -> str:
    """Return a new 64-char hex state token."""
    return secrets.token_hex(STATE_TOKEN_BYTES)


def is_well_formed_state(token: str | None) -> bool:
    """Cheap shape check before touching the pending store."""
    return bool(token) and _STATE_TOKEN_RE.match(token) is not None


def generate_pkce_verifier(length: int = PKCE_VERIFIER_LENGTH) -> str:
    if not 43 <= length <= 128:
        raise ValueError("PKCE verifier length must be between 43 and 128")
    return generate_token(length)


def pkce_challenge(verifier: str) -> str:
    """S256 code challenge for a verifier."""
    return create_s256_code_challenge(verifier)


def verify_pkce_challenge(verifier: str, challenge: str) -> bool:
    """Constant-time check that challenge was derived from verifier."""
    return hmac.compare_digest(pkce_challenge(verifier), challenge)


def generate_session_id() -> str:
    return secrets.token_urlsafe(32)


def token_fingerprint(token: str) -> str:
    """First 8 chars of a secret -- the only part of it that may appear in logs."""
    return f"{token[:8]}..." if token else "<empty>"
