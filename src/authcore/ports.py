"""Core ports (protocols).

The credential core talks to storage, transports and the TOTP library only
through these protocols. All ports use @runtime_checkable for isinstance
checks.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .audit.events import AuthAuditEvent, AuthEventType
    from .models import Account, Channel, OneTimeCode


# ═══════════════════════════════════════════════════════════════
# ACCOUNT REPOSITORY PORT
# ═══════════════════════════════════════════════════════════════


@runtime_checkable
class IAccountRepository(Protocol):
    """Protocol for account persistence.

    Plain reads return detached :class:`Account` snapshots. Every method that
    changes counters, versions or MFA state is a single atomic
    read-modify-write on the account row; callers never read, mutate and
    ``save`` for those fields.
    """

    async def get(self, account_id: str) -> Account | None: ...

    async def get_by_email(self, email: str) -> Account | None:
        """Exact match on the stored (lower-cased) email."""
        ...

    async def get_by_phone(
        self, phone: str, country_code: str | None = None
    ) -> Account | None:
        """Literal match on the stored phone, optionally with its country code."""
        ...

    async def find_by_phone_key(self, key: str) -> Account | None:
        """Indexed equivalence lookup over :func:`authcore.phone.phone_match_keys`."""
        ...

    async def add(self, account: Account) -> None:
        """Insert a new account.

        Raises:
            IdentifierTakenError: Email or phone pair already registered.
        """
        ...

    async def record_failed_login(
        self, account_id: str, *, max_attempts: int, lock_until: datetime
    ) -> Account:
        """Increment ``login_attempts``; lock the account when it reaches ``max_attempts``.

        Returns:
            The account after the update.
        """
        ...

    async def reset_login_attempts(self, account_id: str, *, now: datetime) -> Account:
        """Set ``login_attempts`` to 0 and clear ``locked_until``.

        Nothing changes while the stored row is locked at ``now``, so a lock
        set by a concurrent failure survives a stale success.

        Returns:
            The account as stored after the call.
        """
        ...

    async def touch_last_login(self, account_id: str, at: datetime) -> None: ...

    async def update_password(
        self,
        account_id: str,
        password_hash: str,
        *,
        changed_at: datetime,
        clear_lockout: bool = False,
        bump_version: bool = True,
    ) -> int:
        """Replace the password hash and bump ``token_version`` in one write.

        ``bump_version=False`` is for transparent rehashing, which must not
        revoke sessions.

        Returns:
            The new token version.
        """
        ...

    async def increment_token_version(self, account_id: str) -> int:
        """Bump ``token_version`` and return the new value."""
        ...

    async def enable_mfa_method(
        self, account_id: str, method: Channel, *, secret: str | None = None
    ) -> list[Channel]:
        """Turn MFA on and append ``method`` if absent.

        ``secret`` replaces the stored authenticator secret when given.

        Returns:
            The method list after the update.
        """
        ...

    async def replace_mfa_methods(self, account_id: str, methods: list[Channel]) -> None:
        """Overwrite the method list; an empty list also turns MFA off."""
        ...

    async def clear_mfa(self, account_id: str) -> None:
        """Turn MFA off, drop the secret and every method."""
        ...

    async def claim_totp_step(self, account_id: str, step: int) -> bool:
        """Record ``step`` as the last accepted authenticator-app time step.

        Atomic. Returns False, storing nothing, when ``step`` is not later
        than the step already recorded.
        """
        ...

    async def mark_verified(self, account_id: str, channel: Channel) -> None: ...

    async def set_pending_contact(
        self,
        account_id: str,
        *,
        email: str | None = None,
        phone: str | None = None,
        country_code: str | None = None,
    ) -> None: ...

    async def apply_pending_contact(self, account_id: str, channel: Channel) -> Account:
        """Move the pending email or phone into place and mark it verified.

        Raises:
            IdentifierTakenError: The pending value was taken in the meantime.
        """
        ...


# ═══════════════════════════════════════════════════════════════
# ONE-TIME CODE REPOSITORY PORT
# ═══════════════════════════════════════════════════════════════


@runtime_checkable
class IOneTimeCodeRepository(Protocol):
    """Protocol for one-time code persistence."""

    async def add(self, record: OneTimeCode) -> None: ...

    async def latest_unused(
        self,
        account_id: str,
        channel: Channel,
        *,
        code: str | None = None,
        purpose: str | None = None,
    ) -> OneTimeCode | None:
        """Most recently created unused record matching the filters."""
        ...

    async def mark_used(self, code_id: str) -> bool:
        """Flip ``used`` from False to True.

        Returns:
            True only for the caller that performed the flip.
        """
        ...

    async def mark_all_used(
        self, account_id: str, *, purpose: str, channel: Channel | None = None
    ) -> int: ...

    async def count_since(
        self,
        account_id: str,
        channel: Channel,
        since: datetime,
        *,
        purpose: str | None = None,
    ) -> int: ...

    async def latest_since(
        self, account_id: str, channel: Channel, since: datetime
    ) -> OneTimeCode | None:
        """Most recent record (used or not) created at or after ``since``."""
        ...

    async def delete_expired(self, account_id: str, before: datetime) -> int:
        """Delete records that expired before ``before``; return how many."""
        ...


# ═══════════════════════════════════════════════════════════════
# TRANSPORT AND TOTP PORTS
# ═══════════════════════════════════════════════════════════════


@runtime_checkable
class IContactTransport(Protocol):
    """Protocol for outbound email or SMS delivery.

    The application implements this with its email service (SES, SendGrid,
    SMTP) or SMS gateway (Twilio, SNS). authcore bounds every call with a
    timeout.
    """

    async def send_code(self, destination: str, code: str, purpose: str) -> None:
        """Deliver ``code`` to ``destination``.

        Args:
            destination: Email address, or phone in ``+<country><number>`` form.
            code: The one-time code.
            purpose: Purpose tag, for choosing a message template.
        """
        ...


@dataclass(frozen=True)
class TotpSecret:
    """A freshly generated authenticator secret.

    Attributes:
        secret: Base32-encoded shared secret.
        provisioning_uri: ``otpauth://`` URI to render as a QR code.
    """

    secret: str
    provisioning_uri: str


@runtime_checkable
class ITotpProvider(Protocol):
    """Protocol for TOTP computation and QR rendering."""

    def new_secret(self, label: str) -> TotpSecret: ...

    def current_code(self, secret: str, *, for_time: datetime | None = None) -> str: ...

    def match_step(
        self,
        secret: str,
        code: str,
        tolerance_steps: int,
        *,
        for_time: datetime | None = None,
    ) -> int | None:
        """Return the matching time step counter, or None."""
        ...

    def verify(
        self,
        secret: str,
        code: str,
        tolerance_steps: int,
        *,
        for_time: datetime | None = None,
    ) -> bool: ...

    def render_provisioning_image(self, uri: str) -> str:
        """Render ``uri`` as a PNG data URL."""
        ...


# ═══════════════════════════════════════════════════════════════
# AUDIT STORE PORT
# ═══════════════════════════════════════════════════════════════


@runtime_checkable
class IAuthAuditStore(Protocol):
    """Protocol for persisting authentication audit events."""

    async def record(self, event: AuthAuditEvent) -> None: ...

    async def get_events(
        self,
        principal_id: str,
        *,
        event_types: list[AuthEventType] | None = None,
        limit: int = 100,
    ) -> list[AuthAuditEvent]: ...


__all__: list[str] = [
    "IAccountRepository",
    "IOneTimeCodeRepository",
    "IContactTransport",
    "TotpSecret",
    "ITotpProvider",
    "IAuthAuditStore",
]
