"""Password hashing, verification and strength rules.

Two self-describing record formats are understood:

* ``$argon2id$...`` PHC strings produced by argon2-cffi (the default).
* ``{iterations}:{b64 salt}:{b64 hash}`` PBKDF2-HMAC-SHA256 records.

Verification picks the scheme from the record itself, so stored hashes keep
working after the configured scheme changes and are upgraded on next login.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import re
from typing import Optional

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError

from lawmakers_auth.config import PasswordScheme
from lawmakers_auth.logging import get_logger

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
PBKDF2_SALT_BYTES = 16
PBKDF2_HASH_BYTES = 64
DEFAULT_PBKDF2_ITERATIONS = 100_000

_CHARACTER_CLASSES = (
    re.compile(r"[a-z]"),
    re.compile(r"[A-Z]"),
    re.compile(r"[0-9]"),
    re.compile(r'[!@#$%^&*(),.?":{}|<>]'),
)


def _b64encode(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _b64decode(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"), validate=True)


class PasswordHasher:
    """Hash and verify passwords with a configurable scheme."""

    def __init__(
        self,
        scheme: PasswordScheme = PasswordScheme.ARGON2ID,
        *,
        pbkdf2_iterations: int = DEFAULT_PBKDF2_ITERATIONS,
    ) -> None:
        self.scheme = PasswordScheme(scheme)
        self.pbkdf2_iterations = pbkdf2_iterations
        self._argon2 = Argon2Hasher(type=Type.ID)

    def hash(self, password: str) -> str:
        if self.scheme == PasswordScheme.PBKDF2_SHA256:
            return self._hash_pbkdf2(password, os.urandom(PBKDF2_SALT_BYTES), self.pbkdf2_iterations)
        return self._argon2.hash(password)

    def verify(self, password: str, record: Optional[str]) -> bool:
        """Return True iff ``password`` matches ``record``. Never raises."""
        if not record or not isinstance(record, str) or password is None:
            return False
        if record.startswith("$argon2"):
            try:
                return self._argon2.verify(record, password)
            except (InvalidHash, VerificationError, UnicodeEncodeError):
                return False
        return self._verify_pbkdf2(password, record)

    def needs_rehash(self, record: str) -> bool:
        if self.scheme == PasswordScheme.ARGON2ID:
            if not record.startswith("$argon2id$"):
                return True
            try:
                return self._argon2.check_needs_rehash(record)
            except InvalidHash:
                return True
        parsed = self._parse_pbkdf2(record)
        return parsed is None or parsed[0] < self.pbkdf2_iterations

    @staticmethod
    def validate_strength(password: str) -> Optional[str]:
        """Return a human-readable problem with ``password`` or None if acceptable."""
        try:
            password.encode("utf-8")
        except UnicodeEncodeError:
            return "password contains characters that cannot be encoded"
        if len(password) < MIN_PASSWORD_LENGTH:
            return f"password must be at least {MIN_PASSWORD_LENGTH} characters"
        if len(password) > MAX_PASSWORD_LENGTH:
            return f"password must be at most {MAX_PASSWORD_LENGTH} characters"
        classes = sum(1 for pattern in _CHARACTER_CLASSES if pattern.search(password))
        if classes < 2:
            return (
                "password must mix at least two of: lowercase letters, "
                "uppercase letters, digits, symbols"
            )
        return None

    @staticmethod
    def _hash_pbkdf2(password: str, salt: bytes, iterations: int, length: int = PBKDF2_HASH_BYTES) -> str:
        digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations, dklen=length)
        return f"{iterations}:{_b64encode(salt)}:{_b64encode(digest)}"

    @staticmethod
    def _parse_pbkdf2(record: str) -> Optional[tuple[int, bytes, bytes]]:
        parts = record.split(":")
        if len(parts) != 3:
            return None
        try:
            iterations = int(parts[0])
            salt = _b64decode(parts[1])
            expected = _b64decode(parts[2])
        except (ValueError, binascii.Error, UnicodeEncodeError):
            return None
        if iterations <= 0 or not salt or not expected:
            return None
        return iterations, salt, expected

    def _verify_pbkdf2(self, password: str, record: str) -> bool:
        parsed = self._parse_pbkdf2(record)
        if parsed is None:
            logger.warning("password_record_malformed")
            return False
        iterations, salt, expected = parsed
        try:
            derived = hashlib.pbkdf2_hmac(
                "sha256", password.encode("utf-8"), salt, iterations, dklen=len(expected)
            )
        except (ValueError, OverflowError, UnicodeEncodeError):
            return False
        return hmac.compare_digest(derived, expected)
