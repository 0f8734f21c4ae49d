"""bcrypt password hashing and the password strength policy."""

from __future__ import annotations

import re

import bcrypt

from ..domain.errors import HashFormatError, WeakPassword

DEFAULT_ROUNDS = 12
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
# bcrypt only looks at the first 72 bytes of its input
MAX_PASSWORD_BYTES = 72

_BCRYPT_HASH = re.compile(r"^\$2[abxy]\$\d{2}\$[./A-Za-z0-9]{53}$")


class PasswordHasher:
    """Hash and verify credentials with bcrypt."""

    def __init__(self, rounds: int = DEFAULT_ROUNDS) -> None:
        self._rounds = rounds

    @property
    def rounds(self) -> int:
        return self._rounds

    def hash(self, plaintext: str) -> str:
        """Return a salted bcrypt hash of ``plaintext``.

        Parameters
        ----------
        plaintext:
            Password in clear text; at most 72 UTF-8 bytes.

        Returns
        -------
        str
            The ``$2b$`` encoded hash, embedding salt and cost factor.
        """
        encoded = plaintext.encode("utf-8")
        if len(encoded) > MAX_PASSWORD_BYTES:
            raise WeakPassword(f"password must not exceed {MAX_PASSWORD_BYTES} bytes")
        return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=self._rounds)).decode("utf-8")

    def verify(self, plaintext: str, password_hash: str) -> bool:
        """Return ``True`` iff ``plaintext`` matches ``password_hash``.

        Mismatches return ``False``; only a malformed hash raises
        :class:`HashFormatError`. The comparison itself is bcrypt's
        constant-time check.
        """
        if not password_hash or not _BCRYPT_HASH.match(password_hash):
            raise HashFormatError("stored password hash is not a bcrypt hash")
        encoded = plaintext.encode("utf-8")
        if not encoded or len(encoded) > MAX_PASSWORD_BYTES:
            return False
        try:
            return bcrypt.checkpw(encoded, password_hash.encode("utf-8"))
        except ValueError as exc:
            raise HashFormatError("stored password hash is not a bcrypt hash") from exc

    def validate_strength(self, password: str) -> None:
        """Raise :class:`WeakPassword` unless ``password`` satisfies the policy."""
        if len(password) < MIN_PASSWORD_LENGTH:
            raise WeakPassword(f"password must be at least {MIN_PASSWORD_LENGTH} characters long")
        if len(password) > MAX_PASSWORD_LENGTH:
            raise WeakPassword(f"password must not exceed {MAX_PASSWORD_LENGTH} characters")
        if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            raise WeakPassword(f"password must not exceed {MAX_PASSWORD_BYTES} bytes")
        if not re.search(r"[a-z]", password):
            raise WeakPassword("password must contain a lowercase letter")
        if not re.search(r"[A-Z]", password):
            raise WeakPassword("password must contain an uppercase letter")
        if not re.search(r"\d", password):
            raise WeakPassword("password must contain a digit")
        if not re.search(r"[^A-Za-z0-9]", password):
            raise WeakPassword("password must contain a special character")
