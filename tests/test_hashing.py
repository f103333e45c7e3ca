"""Tests for keyed token hashing and password hashing."""

import pytest

from otpgate.service.hashing import SecretHasher


class TestTokenHashing:
    def test_hash_is_deterministic(self, hasher):
        assert hasher.hash("123456") == hasher.hash("123456")

    def test_hash_is_not_plaintext(self, hasher):
        for value in ("123456", "token-value", ""):
            assert hasher.hash(value) != value

    def test_hash_depends_on_secret(self, hasher):
        other = SecretHasher("another-secret-that-is-long-enough-000")
        assert hasher.hash("123456") != other.hash("123456")

    def test_matches(self, hasher):
        digest = hasher.hash("654321")
        assert hasher.matches("654321", digest)
        assert not hasher.matches("654320", digest)
        assert not hasher.matches("654321", None)

    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            SecretHasher("")


class TestPasswordHashing:
    def test_password_roundtrip(self, hasher):
        password_hash = hasher.hash_password("S3cure-Passw0rd")

        assert password_hash != "S3cure-Passw0rd"
        assert password_hash.startswith("$argon2id$")
        assert hasher.verify_password(password_hash, "S3cure-Passw0rd")

    def test_wrong_password(self, hasher):
        password_hash = hasher.hash_password("S3cure-Passw0rd")
        assert not hasher.verify_password(password_hash, "s3cure-passw0rd")

    def test_salted(self, hasher):
        assert hasher.hash_password("same") != hasher.hash_password("same")

    def test_missing_or_malformed_hash(self, hasher):
        assert not hasher.verify_password(None, "anything")
        assert not hasher.verify_password("not-a-hash", "anything")
