"""
tests/test_tokens.py -- Unit tests for state token and PKCE generation.

Covers:
  - State tokens are 64 lowercase hex chars and distinct
  - PKCE verifier length bounds and alphabet (RFC 7636 section 4.1)
  - S256 challenge against the RFC 7636 Appendix B test vector
  - Token fingerprints never reveal more than 8 characters
"""

from __future__ import annotations

import re
import string

import pytest

from auth.tokens import (
    generate_pkce_verifier,
    generate_session_id,
    generate_state_token,
    is_well_formed_state,
    pkce_challenge,
    token_fingerprint,
    verify_pkce_challenge,
)

_UNRESERVED = set(string.ascii_letters + string.digits + "-._~")


class TestStateTokens:
    def test_state_token_is_64_hex(self) -> None:
        token = generate_state_token()
        assert re.fullmatch(r"[0-9a-f]{64}", token)
        assert is_well_formed_state(token)

    def test_state_tokens_are_distinct(self) -> None:
        tokens = {generate_state_token() for _ in range(1000)}
        assert len(tokens) == 1000

    @pytest.mark.parametrize("bad", [None, "", "abc", "G" * 64, "a" * 63, "A" * 64, "a" * 65])
    def test_malformed_state_rejected(self, bad) -> None:
        assert not is_well_formed_state(bad)


class TestPKCE:
    def test_verifier_default_length_and_alphabet(self) -> None:
        verifier = generate_pkce_verifier()
        assert len(verifier) == 64
        assert set(verifier) <= _UNRESERVED

    @pytest.mark.parametrize("length", [43, 128])
    def test_verifier_length_bounds_accepted(self, length: int) -> None:
        assert len(generate_pkce_verifier(length)) == length

    @pytest.mark.parametrize("length", [42, 129])
    def test_verifier_length_out_of_bounds_rejected(self, length: int) -> None:
        with pytest.raises(ValueError):
            generate_pkce_verifier(length)

    def test_challenge_matches_rfc7636_vector(self) -> None:
        """RFC 7636 Appendix B: the published verifier/challenge pair."""
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        assert pkce_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_challenge_is_unpadded_base64url(self) -> None:
        challenge = pkce_challenge(generate_pkce_verifier())
        assert len(challenge) == 43
        assert "=" not in challenge and "+" not in challenge and "/" not in challenge

    def test_verify_recomputes_challenge(self) -> None:
        verifier = generate_pkce_verifier()
        challenge = pkce_challenge(verifier)
        assert verify_pkce_challenge(verifier, challenge)
        assert not verify_pkce_challenge(generate_pkce_verifier(), challenge)


class TestMisc:
    def test_session_ids_are_distinct(self) -> None:
        assert generate_session_id() != generate_session_id()

    def test_fingerprint_truncates(self) -> None:
        token = generate_state_token()
        fp = token_fingerprint(token)
        assert fp == token[:8] + "..."
        assert token not in fp

    def test_fingerprint_of_empty(self) -> None:
        assert token_fingerprint("") == "<empty>"
