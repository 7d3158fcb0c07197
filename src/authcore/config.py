"""Configuration for the credential core.

All settings are frozen dataclasses passed explicitly to each service.
Nothing is read from the environment here; the hosting application builds an
:class:`AuthCoreConfig` however it likes and hands it over.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default clock: timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class FrozenClock:
    """Manually advanced clock for tests and simulations.

    Example:
        ```python
        clock = FrozenClock(datetime(2024, 1, 1, tzinfo=timezone.utc))
        config = AuthCoreConfig(tokens=TokenConfig(...), clock=clock)
        clock.advance(minutes=3)
        ```
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or utc_now()
        if self._now.tzinfo is None:
            self._now = self._now.replace(tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self._now

    def advance(self, **delta: float) -> datetime:
        """Move the clock forward by ``timedelta(**delta)``."""
        self._now += timedelta(**delta)
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value


@dataclass(frozen=True)
class OtpConfig:
    """One-time code settings.

    Attributes:
        code_length: Digits in email/SMS codes.
        expiry_minutes: Lifetime of email/SMS/TOTP records.
        enrollment_expiry_minutes: Lifetime of authenticator enrollment records.
        enrollment_placeholder: Code stored on enrollment records.
        totp_valid_window: Accepted TOTP drift, in 30-second steps either side.
        totp_issuer: Issuer shown in authenticator apps.
        retention_minutes: How long expired records are kept before the
            lazy sweep deletes them. Hourly rate limits count these records,
            so this must not be shorter than an hour.
    """

    code_length: int = 6
    expiry_minutes: int = 2
    enrollment_expiry_minutes: int = 10
    enrollment_placeholder: str = "000000"
    totp_valid_window: int = 2
    totp_issuer: str = "AuthCore"
    retention_minutes: int = 60


@dataclass(frozen=True)
class LockoutConfig:
    """Consecutive-failure lockout settings."""

    max_failed_attempts: int = 5
    lockout_minutes: int = 30


@dataclass(frozen=True)
class RateLimitConfig:
    """Per-purpose abuse caps.

    Attributes:
        password_reset_per_hour: Reset codes an account may request per hour.
        verification_attempts_per_hour: Verification codes allowed per hour
            before contact verification is refused.
        resend_cooldown_minutes: Minimum gap between two resends on a channel.
        resend_per_hour: Resends allowed per channel per hour.
    """

    password_reset_per_hour: int = 3
    verification_attempts_per_hour: int = 5
    resend_cooldown_minutes: int = 5
    resend_per_hour: int = 3


@dataclass(frozen=True)
class TokenConfig:
    """JWT signing material and lifetimes.

    Access and challenge tokens share ``access_secret``; refresh tokens are
    signed with ``refresh_secret`` so a leaked access key cannot mint them.
    """

    access_secret: str
    refresh_secret: str
    issuer: str = "authcore"
    audience: str = "authcore-users"
    challenge_audience: str = "authcore-challenge"
    access_ttl: timedelta = timedelta(hours=24)
    refresh_ttl: timedelta = timedelta(days=7)
    challenge_ttl: timedelta = timedelta(minutes=10)
    algorithm: str = "HS256"

    def __post_init__(self) -> None:
        if not self.access_secret or not self.refresh_secret:
            raise ValueError("TokenConfig requires non-empty access and refresh secrets")


@dataclass(frozen=True)
class AuthCoreConfig:
    """Top-level configuration handed to every authcore service."""

    tokens: TokenConfig
    otp: OtpConfig = field(default_factory=OtpConfig)
    lockout: LockoutConfig = field(default_factory=LockoutConfig)
    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)
    transport_timeout_seconds: float = 10.0
    clock: Clock = utc_now

    def now(self) -> datetime:
        return self.clock()


__all__: list[str] = [
    "Clock",
    "utc_now",
    "FrozenClock",
    "OtpConfig",
    "LockoutConfig",
    "RateLimitConfig",
    "TokenConfig",
    "AuthCoreConfig",
]
