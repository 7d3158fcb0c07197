"""Account and one-time code records."""

from __future__ import annotations

import enum
import math
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .exceptions import InvalidRequestError


class Channel(str, enum.Enum):
    """Delivery channel of a one-time code, also the set of MFA methods."""

    EMAIL = "email"
    SMS = "sms"
    AUTH_APP = "auth_app"

    @classmethod
    def parse(cls, value: str | Channel) -> Channel:
        """Parse a channel name, raising :class:`InvalidRequestError` if unknown."""
        if isinstance(value, Channel):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as e:
            raise InvalidRequestError(
                f"Invalid method {value!r}, expected one of email, sms, auth_app"
            ) from e


class Purpose(str, enum.Enum):
    """Tag stored on each one-time code describing what it proves."""

    EMAIL_VERIFICATION = "email verification"
    PHONE_VERIFICATION = "phone verification"
    PASSWORD_RESET = "password_reset"  # noqa: S105
    MFA_SETUP = "2fa_setup"
    MFA_ADDITIONAL_SETUP = "2fa_additional_setup"
    MFA_LOGIN = "2fa_login"
    EMAIL_UPDATE = "email update"
    PHONE_UPDATE = "phone update"
    VERIFICATION = "verification"

    @classmethod
    def parse(cls, value: str | Purpose) -> Purpose:
        if isinstance(value, Purpose):
            return value
        try:
            return cls(value)
        except ValueError as e:
            raise InvalidRequestError(f"Invalid code purpose: {value!r}") from e


def parse_methods(raw: str | None) -> list[Channel]:
    """Parse the comma-joined storage form of MFA methods.

    Unknown and duplicate entries are dropped; order is kept.
    """
    methods: list[Channel] = []
    for part in (raw or "").split(","):
        part = part.strip()
        if not part:
            continue
        try:
            method = Channel(part)
        except ValueError:
            continue
        if method not in methods:
            methods.append(method)
    return methods


def serialize_methods(methods: Iterable[Channel]) -> str:
    """Comma-join MFA methods for storage, in enrollment order."""
    return ",".join(m.value for m in methods)


def _as_utc(value: datetime | None) -> datetime | None:
    # Naive datetimes coming back from storage are treated as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Account:
    """Identity record owned by the credential core.

    ``mfa_methods`` is an ordered list; it is comma-joined only by storage
    adapters (see :func:`serialize_methods`).
    """

    email: str
    phone: str
    country_code: str
    password_hash: str | None = None
    id: str = field(default_factory=new_id)
    login_attempts: int = 0
    locked_until: datetime | None = None
    token_version: int = 1
    mfa_enabled: bool = False
    mfa_methods: list[Channel] = field(default_factory=list)
    mfa_secret: str | None = None
    mfa_last_totp_step: int | None = None
    is_email_verified: bool = False
    is_phone_verified: bool = False
    pending_email: str | None = None
    pending_phone: str | None = None
    pending_country_code: str | None = None
    last_login_at: datetime | None = None
    last_password_change: datetime | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        self.locked_until = _as_utc(self.locked_until)
        self.last_login_at = _as_utc(self.last_login_at)
        self.last_password_change = _as_utc(self.last_password_change)
        self.created_at = _as_utc(self.created_at) or self.created_at

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    @property
    def full_phone(self) -> str:
        """Phone in dialable ``+<country><number>`` form."""
        phone = self.phone
        if self.country_code and not phone.startswith(self.country_code):
            phone = f"{self.country_code}{phone}"
        return "+" + phone.lstrip("+")

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now

    def lock_remaining_minutes(self, now: datetime) -> int:
        """Whole minutes left on the lock, rounded up; 0 when unlocked."""
        if self.locked_until is None or self.locked_until <= now:
            return 0
        return math.ceil((self.locked_until - now).total_seconds() / 60)

    def is_verified(self, channel: Channel) -> bool:
        if channel is Channel.EMAIL:
            return self.is_email_verified
        if channel is Channel.SMS:
            return self.is_phone_verified
        return self.mfa_secret is not None


@dataclass
class OneTimeCode:
    """A single verification artifact.

    ``used`` only ever moves from False to True. A code is usable while
    ``now < expires_at``.
    """

    account_id: str
    code: str
    channel: Channel
    purpose: str
    expires_at: datetime
    secret: str | None = None
    used: bool = False
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        self.expires_at = _as_utc(self.expires_at) or self.expires_at
        self.created_at = _as_utc(self.created_at) or self.created_at

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


__all__: list[str] = [
    "Channel",
    "Purpose",
    "Account",
    "OneTimeCode",
    "parse_methods",
    "serialize_methods",
    "new_id",
]
