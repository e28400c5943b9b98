"""Tests for HS256 access token issue/verify."""

import base64
import json
from datetime import timedelta

import pytest

from susi_auth.service.tokens import (
    KeyNotInitialized,
    SigningKey,
    TokenExpired,
    TokenMalformed,
    TokenSignatureInvalid,
    TokenSigner,
)

NOW = 1_700_000_000


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


@pytest.fixture
def signer():
    key = SigningKey.from_secret("x" * 48)
    return TokenSigner(key, issuer="susi-auth-service")


def test_issue_and_verify_round_trip(signer):
    token = signer.issue("user-1", timedelta(hours=24), now=NOW)
    claims = signer.verify(token, now=NOW + 60)
    assert claims["sub"] == "user-1"
    assert claims["iss"] == "susi-auth-service"
    assert claims["iat"] == NOW
    assert claims["nbf"] == NOW
    assert claims["exp"] == NOW + 24 * 3600
    assert claims["jti"]


def test_expired_token(signer):
    token = signer.issue("user-1", timedelta(minutes=1), now=NOW)
    with pytest.raises(TokenExpired):
        signer.verify(token, now=NOW + 61)


def test_leeway_accepts_slightly_expired_token():
    signer = TokenSigner(SigningKey.from_secret("x" * 48), issuer="i", leeway_seconds=30)
    token = signer.issue("user-1", timedelta(minutes=1), now=NOW)
    assert signer.verify(token, now=NOW + 80)["sub"] == "user-1"


def test_tampered_payload_fails_signature(signer):
    token = signer.issue("user-1", timedelta(hours=1), now=NOW)
    header, _, sig = token.split(".")
    forged = _b64({"sub": "admin", "iat": NOW, "exp": NOW + 3600, "iss": "susi-auth-service"})
    with pytest.raises(TokenSignatureInvalid):
        signer.verify(f"{header}.{forged}.{sig}", now=NOW)


def test_other_key_fails_signature(signer):
    other = TokenSigner(SigningKey.from_secret("y" * 48), issuer="susi-auth-service")
    token = other.issue("user-1", timedelta(hours=1), now=NOW)
    with pytest.raises(TokenSignatureInvalid):
        signer.verify(token, now=NOW)


def test_alg_none_rejected(signer):
    header = _b64({"alg": "none", "typ": "JWT"})
    payload = _b64({"sub": "user-1", "iat": NOW, "exp": NOW + 3600, "iss": "susi-auth-service"})
    with pytest.raises(TokenSignatureInvalid):
        signer.verify(f"{header}.{payload}.", now=NOW)


@pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!.@@.##"])
def test_malformed_tokens(signer, token):
    with pytest.raises(TokenMalformed):
        signer.verify(token, now=NOW)


def test_wrong_issuer_is_malformed(signer):
    other = TokenSigner(SigningKey.from_secret("x" * 48), issuer="someone-else")
    token = other.issue("user-1", timedelta(hours=1), now=NOW)
    with pytest.raises(TokenMalformed):
        signer.verify(token, now=NOW)


def test_not_yet_valid_token(signer):
    token = signer.issue("user-1", timedelta(hours=1), now=NOW + 600)
    with pytest.raises(TokenMalformed):
        signer.verify(token, now=NOW)


def test_generated_key_is_flagged():
    key = SigningKey.from_secret(None)
    assert key.generated is True
    assert len(key.secret) >= 64


def test_missing_key_fails_fast():
    with pytest.raises(KeyNotInitialized):
        TokenSigner(None, issuer="susi-auth-service")
