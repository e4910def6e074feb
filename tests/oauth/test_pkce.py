"""Tests for PKCE implementation."""

from __future__ import annotations

import base64
import hashlib

import pytest

from credential_provisioner.errors import EntropyUnavailableError
from credential_provisioner.oauth import pkce
from credential_provisioner.oauth.pkce import (
    PKCEPair,
    generate_code_challenge,
    generate_pkce,
    generate_state,
)

URL_SAFE = set("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_")


def s256(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


class TestGeneratePKCE:
    """Tests for generate_pkce function."""

    def test_verifier_encodes_32_bytes(self) -> None:
        """Test that the verifier is 32 bytes, base64url without padding."""
        pair = generate_pkce()
        assert len(pair.code_verifier) == 43
        assert "=" not in pair.code_verifier
        assert set(pair.code_verifier) <= URL_SAFE

    def test_challenge_is_s256_of_verifier(self) -> None:
        """Test that the challenge matches BASE64URL(SHA256(verifier))."""
        for _ in range(50):
            pair = generate_pkce()
            assert pair.code_challenge == s256(pair.code_verifier)
            assert "=" not in pair.code_challenge

    def test_unique_values(self) -> None:
        """Test that verifiers are unique."""
        verifiers = {generate_pkce().code_verifier for _ in range(100)}
        assert len(verifiers) == 100

    def test_verifier_hidden_from_repr(self) -> None:
        """Test that the verifier does not leak through repr."""
        pair = generate_pkce()
        assert pair.code_verifier not in repr(pair)


class TestGenerateCodeChallenge:
    """Tests for generate_code_challenge function."""

    def test_known_value(self) -> None:
        """Test the RFC 7636 appendix B example."""
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        assert generate_code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_consistent_for_same_verifier(self) -> None:
        """Test that same verifier produces same challenge."""
        assert generate_code_challenge("abc") == generate_code_challenge("abc")


class TestGenerateState:
    """Tests for generate_state function."""

    def test_url_safe_without_padding(self) -> None:
        """Test that the state uses URL-safe characters only."""
        state = generate_state()
        assert len(state) == 43
        assert set(state) <= URL_SAFE

    def test_unique_values(self) -> None:
        """Test that states are unique."""
        assert len({generate_state() for _ in range(100)}) == 100


class TestEntropyUnavailable:
    """Tests for random source failures."""

    def test_pkce_raises_when_urandom_fails(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that a failing random source raises EntropyUnavailableError."""

        def broken(n: int) -> bytes:
            raise NotImplementedError("no entropy")

        monkeypatch.setattr(pkce.os, "urandom", broken)

        with pytest.raises(EntropyUnavailableError):
            generate_pkce()
        with pytest.raises(EntropyUnavailableError):
            generate_state()


class TestPKCEPair:
    """Tests for PKCEPair dataclass."""

    def test_is_frozen(self) -> None:
        """Test that PKCEPair is immutable."""
        pair = PKCEPair(code_verifier="verifier", code_challenge="challenge")

        with pytest.raises(AttributeError):
            pair.code_verifier = "new"  # type: ignore[misc]
