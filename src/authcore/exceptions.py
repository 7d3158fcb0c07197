"""Credential-core exceptions.

Every error raised by authcore inherits from :class:`AuthCoreError` and carries
a :class:`FailureKind`. The HTTP layer maps ``kind`` to a status code; authcore
itself never does.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import ClassVar


class FailureKind(str, enum.Enum):
    """Coarse failure categories shared by every authcore operation."""

    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    CONFLICT = "conflict"
    RATE_LIMITED = "rate_limited"
    LOCKED = "locked"
    INVALID = "invalid"
    TRANSIENT = "transient"


# ═══════════════════════════════════════════════════════════════
# BASE ERROR
# ═══════════════════════════════════════════════════════════════


class AuthCoreError(Exception):
    """Root exception for the credential core."""

    kind: ClassVar[FailureKind] = FailureKind.INVALID


# ═══════════════════════════════════════════════════════════════
# NOT FOUND
# ═══════════════════════════════════════════════════════════════


class NotFoundError(AuthCoreError):
    """Raised when an account or resource is absent."""

    kind = FailureKind.NOT_FOUND


class AccountNotFoundError(NotFoundError):
    """Raised when no account matches the given id or identifier."""

    def __init__(self, message: str = "User not found") -> None:
        super().__init__(message)


# ═══════════════════════════════════════════════════════════════
# UNAUTHORIZED
# ═══════════════════════════════════════════════════════════════


class UnauthorizedError(AuthCoreError):
    """Base class for rejected credentials, codes and tokens."""

    kind = FailureKind.UNAUTHORIZED


class InvalidCredentialsError(UnauthorizedError):
    """Raised when an identifier/password pair is not accepted.

    Unknown identifiers raise this too, with the same message, so callers
    cannot tell a missing account from a wrong password.
    """

    def __init__(self, message: str = "Invalid credentials") -> None:
        super().__init__(message)


class InvalidCodeError(UnauthorizedError):
    """Raised when a one-time code is wrong, already used or superseded."""

    def __init__(self, message: str = "Invalid or expired verification code") -> None:
        super().__init__(message)


class ExpiredCodeError(InvalidCodeError):
    """Raised when a matching one-time code is past its expiry.

    The record is marked used before this is raised.
    """

    def __init__(
        self, message: str = "Verification code has expired. Please request a new one."
    ) -> None:
        super().__init__(message)


class InvalidTokenError(UnauthorizedError):
    """Raised when a JWT fails signature, issuer or audience checks."""


class ExpiredTokenError(InvalidTokenError):
    """Raised when a JWT is past its ``exp`` claim."""


class RevokedTokenError(InvalidTokenError):
    """Raised when a refresh token embeds a stale token version."""

    def __init__(self, message: str = "Refresh token has been revoked") -> None:
        super().__init__(message)


# ═══════════════════════════════════════════════════════════════
# FORBIDDEN
# ═══════════════════════════════════════════════════════════════


class ForbiddenError(AuthCoreError):
    """Base class for gates that are not met."""

    kind = FailureKind.FORBIDDEN


class VerificationRequiredError(ForbiddenError):
    """Raised when a contact channel must be verified first.

    Attributes:
        channel: The channel ("email" or "sms") that is not verified.
    """

    def __init__(self, message: str, *, channel: str) -> None:
        super().__init__(message)
        self.channel = channel


class PasswordNotSetError(ForbiddenError):
    """Raised on password login against a social-only account."""

    def __init__(
        self,
        message: str = (
            "This account has no password set. "
            "Sign in with your social provider or reset your password."
        ),
    ) -> None:
        super().__init__(message)


class MfaNotEnabledError(ForbiddenError):
    """Raised when an operation needs MFA to be enabled already."""


class MfaMethodNotAllowedError(ForbiddenError):
    """Raised when a login challenge uses a method the account has not enrolled."""


# ═══════════════════════════════════════════════════════════════
# CONFLICT
# ═══════════════════════════════════════════════════════════════


class ConflictError(AuthCoreError):
    """Base class for duplicate enrollments and taken identifiers."""

    kind = FailureKind.CONFLICT


class IdentifierTakenError(ConflictError):
    """Raised when an email or phone is already registered."""


class AlreadyVerifiedError(ConflictError):
    """Raised when verifying a contact that is already verified."""


class MfaAlreadyEnabledError(ConflictError):
    """Raised by first-time setup when MFA is already on."""

    def __init__(self, message: str = "2FA is already enabled for this account") -> None:
        super().__init__(message)


class MfaMethodAlreadyEnabledError(ConflictError):
    """Raised when adding a method that is already enrolled."""

    def __init__(self, method: str) -> None:
        super().__init__(f"{method} is already enabled")
        self.method = method


# ═══════════════════════════════════════════════════════════════
# RATE LIMITED / LOCKED
# ═══════════════════════════════════════════════════════════════


class RateLimitedError(AuthCoreError):
    """Raised when a cooldown or hourly cap is exceeded.

    Attributes:
        retry_after_seconds: Seconds until the caller may retry, when known.
    """

    kind = FailureKind.RATE_LIMITED

    def __init__(self, message: str, *, retry_after_seconds: int | None = None) -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class AccountLockedError(AuthCoreError):
    """Raised when an account is temporarily locked.

    Attributes:
        locked_until: When the lock elapses.
        remaining_minutes: Whole minutes left, rounded up.
        failed_attempts: Attempt count that triggered the lock, if known.
    """

    kind = FailureKind.LOCKED

    def __init__(
        self,
        message: str | None = None,
        *,
        locked_until: datetime | None = None,
        remaining_minutes: int | None = None,
        failed_attempts: int | None = None,
    ) -> None:
        if message is None:
            if remaining_minutes is not None:
                message = f"Account is locked. Try again in {remaining_minutes} minutes."
            else:
                message = "Account is temporarily locked. Please try again later."
        super().__init__(message)
        self.locked_until = locked_until
        self.remaining_minutes = remaining_minutes
        self.failed_attempts = failed_attempts


# ═══════════════════════════════════════════════════════════════
# INVALID
# ═══════════════════════════════════════════════════════════════


class InvalidRequestError(AuthCoreError):
    """Raised for malformed methods, channels, purposes or identifiers."""

    kind = FailureKind.INVALID


class WeakPasswordError(InvalidRequestError):
    """Raised when a new password fails the password policy.

    Attributes:
        errors: One message per failed rule.
    """

    def __init__(self, errors: list[str]) -> None:
        super().__init__("Password does not meet security requirements")
        self.errors = errors


# ═══════════════════════════════════════════════════════════════
# TRANSIENT
# ═══════════════════════════════════════════════════════════════


class TransientError(AuthCoreError):
    """Base class for failures that are safe to retry."""

    kind = FailureKind.TRANSIENT


class DeliveryError(TransientError):
    """Raised when an email/SMS transport fails or times out.

    The one-time code was already persisted and stays valid.
    """


class StorageError(TransientError):
    """Raised when the backing store fails."""


__all__: list[str] = [
    "FailureKind",
    "AuthCoreError",
    # Not found
    "NotFoundError",
    "AccountNotFoundError",
    # Unauthorized
    "UnauthorizedError",
    "InvalidCredentialsError",
    "InvalidCodeError",
    "ExpiredCodeError",
    "InvalidTokenError",
    "ExpiredTokenError",
    "RevokedTokenError",
    # Forbidden
    "ForbiddenError",
    "VerificationRequiredError",
    "PasswordNotSetError",
    "MfaNotEnabledError",
    "MfaMethodNotAllowedError",
    # Conflict
    "ConflictError",
    "IdentifierTakenError",
    "AlreadyVerifiedError",
    "MfaAlreadyEnabledError",
    "MfaMethodAlreadyEnabledError",
    # Rate limited / locked
    "RateLimitedError",
    "AccountLockedError",
    # Invalid
    "InvalidRequestError",
    "WeakPasswordError",
    # Transient
    "TransientError",
    "DeliveryError",
    "StorageError",
]
