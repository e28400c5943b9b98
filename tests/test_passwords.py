"""Tests for argon2id credential hashing."""

import pytest
from argon2.exceptions import HashingError as Argon2HashingError

from susi_auth.service.passwords import CredentialHasher, HashingError


class TestCredentialHasher:
    def test_hash_is_argon2id_phc_string(self, hasher):
        digest = hasher.hash("password123")
        assert digest.startswith("$argon2id$")
        assert "password123" not in digest

    def test_same_password_produces_different_hashes(self, hasher):
        """Each hash carries its own random salt."""
        assert hasher.hash("password123") != hasher.hash("password123")

    def test_verify_round_trip(self, hasher):
        digest = hasher.hash("correct horse battery staple")
        assert hasher.verify(digest, "correct horse battery staple") is True

    def test_verify_rejects_wrong_password(self, hasher):
        digest = hasher.hash("password123")
        assert hasher.verify(digest, "password124") is False

    def test_verify_handles_malformed_hash(self, hasher):
        assert hasher.verify("not-a-hash", "password123") is False
        assert hasher.verify("", "password123") is False

    def test_needs_rehash_when_work_factor_changes(self, hasher):
        digest = hasher.hash("password123")
        stronger = CredentialHasher(time_cost=2, memory_cost=1024, parallelism=1)
        assert hasher.needs_rehash(digest) is False
        assert stronger.needs_rehash(digest) is True

    def test_needs_rehash_ignores_garbage(self, hasher):
        assert hasher.needs_rehash("garbage") is False

    def test_primitive_failure_raises_hashing_error(self, hasher, monkeypatch):
        class _ExhaustedHasher:
            def hash(self, password):
                raise Argon2HashingError("out of memory")

        monkeypatch.setattr(hasher, "_pwd_hasher", _ExhaustedHasher())
        with pytest.raises(HashingError):
            hasher.hash("password123")
