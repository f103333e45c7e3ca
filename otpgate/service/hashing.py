from __future__ import annotations

import hashlib
import hmac

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from otpgate.logging import get_logger

logger = get_logger(__name__)


class SecretHasher:
    """One-way hashing for OTP codes, session tokens and passwords.

    Codes and tokens use keyed HMAC-SHA256, deterministic so a presented
    token can be looked up by its hash. Passwords use salted argon2id.
    """

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("hash secret must not be empty")
        self._key = secret.encode("utf-8")
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def hash(self, value: str) -> str:
        return hmac.new(self._key, value.encode("utf-8"), hashlib.sha256).hexdigest()

    def matches(self, value: str, digest: str) -> bool:
        # Constant-time comparison
        return hmac.compare_digest(self.hash(value), digest or "")

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, password_hash: str | None, password: str) -> bool:
        if not password_hash:
            return False
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except (InvalidHash, VerificationError):
            logger.info("password_verification_failed")
            return False
