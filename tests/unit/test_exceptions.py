"""Tests for the exception hierarchy."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from authcore.exceptions import (
    AccountLockedError,
    AccountNotFoundError,
    AlreadyVerifiedError,
    AuthCoreError,
    DeliveryError,
    ExpiredCodeError,
    ExpiredTokenError,
    FailureKind,
    IdentifierTakenError,
    InvalidCodeError,
    InvalidCredentialsError,
    InvalidRequestError,
    MfaAlreadyEnabledError,
    MfaMethodAlreadyEnabledError,
    MfaNotEnabledError,
    PasswordNotSetError,
    RateLimitedError,
    RevokedTokenError,
    StorageError,
    VerificationRequiredError,
    WeakPasswordError,
)


class TestFailureKinds:
    @pytest.mark.parametrize(
        ("error", "kind"),
        [
            (AccountNotFoundError(), FailureKind.NOT_FOUND),
            (InvalidCredentialsError(), FailureKind.UNAUTHORIZED),
            (ExpiredCodeError(), FailureKind.UNAUTHORIZED),
            (RevokedTokenError(), FailureKind.UNAUTHORIZED),
            (ExpiredTokenError("expired"), FailureKind.UNAUTHORIZED),
            (VerificationRequiredError("verify", channel="email"), FailureKind.FORBIDDEN),
            (PasswordNotSetError(), FailureKind.FORBIDDEN),
            (MfaNotEnabledError("off"), FailureKind.FORBIDDEN),
            (IdentifierTakenError("taken"), FailureKind.CONFLICT),
            (AlreadyVerifiedError("done"), FailureKind.CONFLICT),
            (MfaAlreadyEnabledError(), FailureKind.CONFLICT),
            (RateLimitedError("slow down"), FailureKind.RATE_LIMITED),
            (AccountLockedError(), FailureKind.LOCKED),
            (InvalidRequestError("bad"), FailureKind.INVALID),
            (WeakPasswordError(["short"]), FailureKind.INVALID),
            (DeliveryError("down"), FailureKind.TRANSIENT),
            (StorageError("down"), FailureKind.TRANSIENT),
        ],
    )
    def test_kind(self, error: AuthCoreError, kind: FailureKind) -> None:
        assert isinstance(error, AuthCoreError)
        assert error.kind is kind

    def test_expired_code_is_an_invalid_code(self) -> None:
        assert issubclass(ExpiredCodeError, InvalidCodeError)


class TestMessages:
    def test_method_already_enabled(self) -> None:
        err = MfaMethodAlreadyEnabledError("email")
        assert str(err) == "email is already enabled"
        assert err.method == "email"

    def test_account_locked_with_remaining_minutes(self) -> None:
        until = datetime(2024, 1, 1, tzinfo=timezone.utc)
        err = AccountLockedError(locked_until=until, remaining_minutes=30, failed_attempts=5)
        assert str(err) == "Account is locked. Try again in 30 minutes."
        assert err.locked_until == until
        assert err.failed_attempts == 5

    def test_account_locked_default(self) -> None:
        assert str(AccountLockedError()) == (
            "Account is temporarily locked. Please try again later."
        )

    def test_weak_password_keeps_errors(self) -> None:
        err = WeakPasswordError(["a", "b"])
        assert err.errors == ["a", "b"]

    def test_rate_limited_retry_after(self) -> None:
        assert RateLimitedError("wait", retry_after_seconds=60).retry_after_seconds == 60
