"""
auth/passwords.py -- Salted password hashing, strength check, random tokens.

Security design decisions:
  Hashing: Argon2id through argon2-cffi's low-level hash_secret_raw(). The salt
       is generated and stored separately from the digest (16 random bytes,
       base64 text), so hash(password, salt) is a pure function of its inputs
       and two accounts with the same password have unrelated digests.
       Argon2id is memory-hard; its cost parameters come from Settings so
       deployments can raise them and tests can lower them.

  Verification: recompute and compare with hmac.compare_digest, which takes
       the same time wherever the first differing byte is.

  Tokens: secrets.choice() over a fixed alphabet. Never the random module.

Layer rule: no imports from api/ or directory/.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import secrets
import string

from argon2.exceptions import HashingError
from argon2.low_level import Type, hash_secret_raw

from core.config import Settings, get_settings

SALT_LENGTH = 16  # bytes
HASH_LENGTH = 32  # bytes
MIN_PASSWORD_LENGTH = 8

TOKEN_ALPHABET = string.ascii_letters + string.digits + "!@#$%^&*"
# Letters and digits only: safe as a cookie value without quoting.
URLSAFE_ALPHABET = string.ascii_letters + string.digits


class PasswordCodec:
    """Argon2id password hasher with explicit salts.

    Usage:
        codec = PasswordCodec.from_settings()
        salt = codec.generate_salt()
        digest = codec.hash("Correct-Horse-9", salt)
        codec.verify("Correct-Horse-9", digest, salt)  # True
    """

    def __init__(self, time_cost: int = 3, memory_cost: int = 65536, parallelism: int = 4) -> None:
        self.time_cost = time_cost
        self.memory_cost = memory_cost
        self.parallelism = parallelism

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> PasswordCodec:
        cfg = settings or get_settings()
        return cls(
            time_cost=cfg.argon2_time_cost,
            memory_cost=cfg.argon2_memory_cost,
            parallelism=cfg.argon2_parallelism,
        )

    @staticmethod
    def generate_salt() -> str:
        """Return 16 cryptographically random bytes as base64 text."""
        return base64.b64encode(secrets.token_bytes(SALT_LENGTH)).decode("ascii")

    def hash(self, password: str, salt: str) -> str:
        """Return the base64 Argon2id digest of password under salt.

        Deterministic for a given (password, salt) and cost parameters.
        Raises binascii.Error if salt is not valid base64.
        """
        raw = hash_secret_raw(
            secret=password.encode("utf-8"),
            salt=base64.b64decode(salt, validate=True),
            time_cost=self.time_cost,
            memory_cost=self.memory_cost,
            parallelism=self.parallelism,
            hash_len=HASH_LENGTH,
            type=Type.ID,
        )
        return base64.b64encode(raw).decode("ascii")

    def verify(self, password: str, digest: str, salt: str) -> bool:
        """Return True iff hash(password, salt) equals digest.

        A malformed or empty salt / digest is a mismatch, not an error.
        """
        if not digest or not salt:
            return False
        try:
            candidate = self.hash(password, salt)
        except (binascii.Error, ValueError, HashingError):
            return False
        return hmac.compare_digest(candidate.encode("ascii"), digest.encode("ascii"))

    @staticmethod
    def is_strong(password: str | None) -> bool:
        """Length >= 8 with at least one upper-case, one lower-case and one digit."""
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            return False
        has_upper = any(c.isupper() for c in password)
        has_lower = any(c.islower() for c in password)
        has_digit = any(c.isdigit() for c in password)
        return has_upper and has_lower and has_digit

    @staticmethod
    def random_token(length: int, alphabet: str = TOKEN_ALPHABET) -> str:
        """Return a uniformly random string of length characters from alphabet."""
        if length <= 0:
            raise ValueError("length must be positive")
        return "".join(secrets.choice(alphabet) for _ in range(length))
