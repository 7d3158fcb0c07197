"""Password hashing and strength policy.

Hashing uses bcrypt by default with argon2id as an optional stronger
algorithm. Stored hashes from either algorithm are verified transparently,
so accounts can be migrated by rehashing on successful login.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Literal, cast

from .exceptions import WeakPasswordError

BCRYPT_MAX_BYTES = 72


def _too_long_message(limit: int) -> str:
    return f"Password must be at most {limit} bytes long when encoded"


class PasswordHasher:
    """Password hasher using bcrypt or argon2id.

    Example:
        ```python
        hasher = PasswordHasher(rounds=12)
        stored = hasher.hash("Correct-Horse-1")

        if hasher.verify(stored, "Correct-Horse-1") and hasher.needs_rehash(stored):
            stored = hasher.hash("Correct-Horse-1")
        ```
    """

    def __init__(
        self,
        *,
        algorithm: Literal["bcrypt", "argon2id"] = "bcrypt",
        rounds: int = 12,
    ) -> None:
        """Initialize the password hasher.

        Args:
            algorithm: Hashing algorithm for new hashes (default bcrypt).
            rounds: bcrypt cost factor (default 12). Tests use 4.
        """
        self.algorithm = algorithm
        self.rounds = rounds
        self._argon2: Any = None

    def _get_argon2(self) -> Any:
        """Lazy import argon2, which is an optional extra."""
        if self._argon2 is None:
            try:
                from argon2 import PasswordHasher as Argon2Hasher
            except ImportError as e:
                raise ImportError(
                    "argon2-cffi is required for argon2id hashing. "
                    "Install with: pip install authcore[argon2]"
                ) from e
            self._argon2 = Argon2Hasher()
        return self._argon2

    def hash(self, password: str) -> str:
        """Hash ``password`` with the configured algorithm.

        Raises:
            WeakPasswordError: Input over bcrypt's 72-byte limit.
        """
        if self.algorithm == "argon2id":
            return cast("str", self._get_argon2().hash(password))
        import bcrypt

        if len(password.encode()) > BCRYPT_MAX_BYTES:
            raise WeakPasswordError([_too_long_message(BCRYPT_MAX_BYTES)])
        salt = bcrypt.gensalt(rounds=self.rounds)
        return bcrypt.hashpw(password.encode(), salt).decode()

    def verify(self, hashed_password: str | None, password: str) -> bool:
        """Verify a password against a stored hash.

        The algorithm is detected from the hash prefix. A missing or malformed
        hash never matches.
        """
        if not hashed_password:
            return False
        if hashed_password.startswith("$argon2"):
            return self._verify_argon2id(hashed_password, password)

        import bcrypt

        try:
            return bcrypt.checkpw(password.encode(), hashed_password.encode())
        except ValueError:
            return False

    def _verify_argon2id(self, hashed_password: str, password: str) -> bool:
        from argon2.exceptions import InvalidHashError, VerificationError

        try:
            return cast("bool", self._get_argon2().verify(hashed_password, password))
        except (VerificationError, InvalidHashError):
            return False

    def needs_rehash(self, hashed_password: str) -> bool:
        """Whether the hash was made with another algorithm or weaker settings."""
        if hashed_password.startswith("$argon2"):
            if self.algorithm != "argon2id":
                return True
            return cast("bool", self._get_argon2().check_needs_rehash(hashed_password))

        if self.algorithm != "bcrypt":
            return True

        # bcrypt format: $2b$12$...
        parts = hashed_password.split("$")
        if len(parts) >= 3 and parts[2].isdigit():
            return int(parts[2]) < self.rounds
        return False


@dataclass(frozen=True)
class PasswordPolicy:
    """Minimum strength rules for new passwords.

    ``max_bytes`` caps the UTF-8 length; the default matches bcrypt's input
    limit. Set it to ``None`` when hashing with argon2id only.
    """

    min_length: int = 8
    max_length: int = 128
    max_bytes: int | None = BCRYPT_MAX_BYTES
    require_upper: bool = True
    require_lower: bool = True
    require_digit: bool = True
    require_special: bool = True

    def violations(self, password: str) -> list[str]:
        errors: list[str] = []
        if len(password) < self.min_length:
            errors.append(f"Password must be at least {self.min_length} characters long")
        if len(password) > self.max_length:
            errors.append(f"Password must be at most {self.max_length} characters long")
        if self.max_bytes is not None and len(password.encode()) > self.max_bytes:
            errors.append(_too_long_message(self.max_bytes))
        if self.require_upper and not re.search(r"[A-Z]", password):
            errors.append("Password must contain at least one uppercase letter")
        if self.require_lower and not re.search(r"[a-z]", password):
            errors.append("Password must contain at least one lowercase letter")
        if self.require_digit and not re.search(r"\d", password):
            errors.append("Password must contain at least one number")
        if self.require_special and not re.search(r"[^A-Za-z0-9]", password):
            errors.append("Password must contain at least one special character")
        return errors

    def enforce(self, password: str) -> None:
        """Raise :class:`WeakPasswordError` listing every failed rule."""
        errors = self.violations(password)
        if errors:
            raise WeakPasswordError(errors)


__all__: list[str] = ["BCRYPT_MAX_BYTES", "PasswordHasher", "PasswordPolicy"]
