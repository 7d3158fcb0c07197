"""Account lifecycle flows built on the OTP manager.

Registration, contact verification, password reset, code resend and
contact updates. Flows that take a free-form identifier never reveal
whether an account exists: unknown identifiers get the same generic
answer as known ones.
"""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import timedelta
from typing import TYPE_CHECKING

from .audit import AuditRecorder, AuthEventType, account_event
from .exceptions import (
    AccountLockedError,
    AccountNotFoundError,
    AlreadyVerifiedError,
    ExpiredCodeError,
    IdentifierTakenError,
    InvalidCodeError,
    InvalidRequestError,
    RateLimitedError,
    VerificationRequiredError,
)
from .models import Account, Channel, Purpose
from .phone import format_for_display, is_phone_match, normalize_for_storage
from .resolver import IdentifierResolver

if TYPE_CHECKING:
    from .config import AuthCoreConfig
    from .credentials import CredentialService
    from .otp import IssuedCode, OtpManager
    from .ports import IAccountRepository, IAuthAuditStore

logger = logging.getLogger("authcore.accounts")

RESET_REQUESTED_MESSAGE = (
    "If an account with this identifier exists, you will receive a password reset code."
)
RESEND_MESSAGE = "If an account with this identifier exists, a new OTP has been sent."

_HOUR = timedelta(hours=1)


def _normalize_email(email: str) -> str:
    value = (email or "").strip().lower()
    local, sep, domain = value.partition("@")
    if not sep or not local or not domain or "@" in domain:
        raise InvalidRequestError("Invalid email format")
    return value


class AccountService:
    """Registration, verification, reset, resend and contact-update flows.

    Example:
        ```python
        service = AccountService(
            accounts=repo, otp=otp, credentials=credentials, config=config
        )

        account = await service.register("a@example.com", "5551234567", "+1", "Str0ng!pass")
        await service.verify_email("a@example.com", code_from_email)
        ```
    """

    def __init__(
        self,
        *,
        accounts: IAccountRepository,
        otp: OtpManager,
        credentials: CredentialService,
        config: AuthCoreConfig,
        resolver: IdentifierResolver | None = None,
        audit_store: IAuthAuditStore | None = None,
    ) -> None:
        self.accounts = accounts
        self.otp = otp
        self.credentials = credentials
        self.config = config
        self.resolver = resolver or IdentifierResolver(accounts)
        self.audit = AuditRecorder(audit_store)

    async def _require(self, account_id: str) -> Account:
        account = await self.accounts.get(account_id)
        if account is None:
            raise AccountNotFoundError()
        return account

    def _check_not_locked(self, account: Account) -> None:
        now = self.config.now()
        if account.is_locked(now):
            raise AccountLockedError(
                "Account is temporarily locked. Please try again later.",
                locked_until=account.locked_until,
                remaining_minutes=account.lock_remaining_minutes(now),
            )

    # ── registration ─────────────────────────────────────────────

    async def register(
        self, email: str, phone: str, country_code: str, password: str
    ) -> Account:
        """Create an account and send both contact verification codes.

        Code delivery failures are logged; the account is created regardless.

        Raises:
            InvalidRequestError: Malformed email or empty phone.
            WeakPasswordError: Password fails the policy.
            IdentifierTakenError: Email or phone already registered.
        """
        email = _normalize_email(email)
        phone, country_code = normalize_for_storage(phone or "", country_code or "")
        if not phone:
            raise InvalidRequestError("Phone number is required")
        self.credentials.policy.enforce(password)

        if await self.accounts.get_by_email(email) is not None:
            raise IdentifierTakenError("An account with this email address already exists")
        if await self.accounts.get_by_phone(phone, country_code) is not None:
            raise IdentifierTakenError("An account with this phone number already exists")

        account = Account(
            email=email,
            phone=phone,
            country_code=country_code,
            password_hash=self.credentials.hasher.hash(password),
            created_at=self.config.now(),
        )
        await self.accounts.add(account)
        logger.info("Registered account %s", account.id)

        results = await asyncio.gather(
            self.otp.issue(account, Channel.EMAIL, Purpose.EMAIL_VERIFICATION),
            self.otp.issue(account, Channel.SMS, Purpose.PHONE_VERIFICATION),
            return_exceptions=True,
        )
        for channel, result in zip((Channel.EMAIL, Channel.SMS), results):
            if isinstance(result, BaseException):
                logger.error(
                    "Failed to send %s verification code for account %s: %s",
                    channel.value,
                    account.id,
                    result,
                )

        await self.audit.record(
            account_event(AuthEventType.USER_CREATED, account.id, at=self.config.now())
        )
        return account

    # ── contact verification ─────────────────────────────────────

    async def _verify_contact(
        self, account: Account, channel: Channel, purpose: Purpose, code: str
    ) -> Account:
        since = self.config.now() - _HOUR
        recent = await self.otp.count_recent(account.id, channel, purpose, since)
        if recent > self.config.rate_limits.verification_attempts_per_hour:
            raise RateLimitedError(
                "Too many verification attempts. Please try again later.",
                retry_after_seconds=int(_HOUR.total_seconds()),
            )

        await self.otp.verify(account.id, code, channel, purpose=purpose)
        await self.accounts.mark_verified(account.id, channel)
        await self.otp.invalidate(account.id, purpose, channel)

        logger.info("Verified %s for account %s", channel.value, account.id)
        await self.audit.record(
            account_event(
                AuthEventType.CONTACT_VERIFIED,
                account.id,
                at=self.config.now(),
                metadata={"channel": channel.value},
            )
        )
        return await self._require(account.id)

    async def verify_email(self, email: str, code: str) -> Account:
        """Consume an email verification code.

        Raises:
            AccountNotFoundError: No account has this email.
            AlreadyVerifiedError: The email is verified already.
            RateLimitedError: Too many codes issued in the last hour.
            InvalidCodeError: Wrong, used or expired code.
        """
        account = await self.accounts.get_by_email((email or "").strip().lower())
        if account is None:
            raise AccountNotFoundError()
        if account.is_email_verified:
            raise AlreadyVerifiedError("Email is already verified")
        return await self._verify_contact(
            account, Channel.EMAIL, Purpose.EMAIL_VERIFICATION, code
        )

    async def verify_phone(self, phone: str, code: str) -> Account:
        """Consume a phone verification code; ``phone`` may be in any stored shape."""
        account = await self.resolver.resolve(phone)
        if account is None:
            raise AccountNotFoundError()
        if account.is_phone_verified:
            raise AlreadyVerifiedError("Phone number is already verified")
        return await self._verify_contact(
            account, Channel.SMS, Purpose.PHONE_VERIFICATION, code
        )

    # ── password reset ───────────────────────────────────────────

    async def request_password_reset(self, identifier: str, method: Channel | str) -> str:
        """Send a password reset code by email or SMS.

        Returns:
            A generic confirmation, identical for unknown identifiers.

        Raises:
            InvalidRequestError: ``method`` is not email or sms.
            AccountLockedError: The account is locked.
            VerificationRequiredError: The chosen channel is not verified.
            RateLimitedError: Hourly cap reached.
            DeliveryError: The transport failed.
        """
        channel = Channel.parse(method)
        if channel not in (Channel.EMAIL, Channel.SMS):
            raise InvalidRequestError("Method must be either email or sms")

        account = await self.resolver.resolve(identifier)
        if account is None:
            logger.warning("Password reset requested for an unknown identifier")
            return RESET_REQUESTED_MESSAGE

        self._check_not_locked(account)
        if channel is Channel.EMAIL and not account.is_email_verified:
            raise VerificationRequiredError(
                "Email is not verified. Please verify your email first.", channel=channel.value
            )
        if channel is Channel.SMS and not account.is_phone_verified:
            raise VerificationRequiredError(
                "Phone number is not verified. Please verify your phone first.",
                channel=channel.value,
            )

        since = self.config.now() - _HOUR
        recent = await self.otp.count_recent(account.id, channel, Purpose.PASSWORD_RESET, since)
        if recent >= self.config.rate_limits.password_reset_per_hour:
            raise RateLimitedError(
                "Too many password reset requests. Please try again later.",
                retry_after_seconds=int(_HOUR.total_seconds()),
            )

        await self.otp.issue(account, channel, Purpose.PASSWORD_RESET)
        logger.info("Password reset code sent to account %s via %s", account.id, channel.value)
        await self.audit.record(
            account_event(
                AuthEventType.PASSWORD_RESET_REQUESTED,
                account.id,
                at=self.config.now(),
                metadata={"channel": channel.value},
            )
        )
        return RESET_REQUESTED_MESSAGE

    async def reset_password(self, identifier: str, code: str, new_password: str) -> int:
        """Complete a reset: consume the code and set the new password.

        Also clears any lockout, bumps the token version and voids the
        account's other reset codes.

        Returns:
            The new token version.

        Raises:
            InvalidCodeError: Unknown identifier, or wrong or used code.
            ExpiredCodeError: The code has expired.
            AccountLockedError: The account is locked.
            WeakPasswordError: The password fails the policy.
            InvalidRequestError: The password equals the current one.
        """
        account = await self.resolver.resolve(identifier)
        if account is None:
            raise InvalidCodeError("Invalid or expired reset code")
        self._check_not_locked(account)

        self.credentials.policy.enforce(new_password)
        if self.credentials.hasher.verify(account.password_hash, new_password):
            raise InvalidRequestError(
                "New password must be different from your current password"
            )

        await self._consume_reset_code(account, code)
        version = await self.credentials.set_password(
            account.id, new_password, clear_lockout=True
        )
        await self.otp.invalidate(account.id, Purpose.PASSWORD_RESET)

        logger.info("Password reset completed for account %s", account.id)
        await self.audit.record(
            account_event(
                AuthEventType.PASSWORD_RESET_COMPLETED,
                account.id,
                at=self.config.now(),
                metadata={"token_version": version},
            )
        )
        return version

    async def _consume_reset_code(self, account: Account, code: str) -> None:
        # Reset codes may have gone out by either channel
        for channel in (Channel.EMAIL, Channel.SMS):
            try:
                await self.otp.verify(account.id, code, channel, purpose=Purpose.PASSWORD_RESET)
                return
            except ExpiredCodeError:
                raise
            except InvalidCodeError:
                continue
        logger.warning("Invalid password reset code for account %s", account.id)
        raise InvalidCodeError("Invalid or expired reset code")

    # ── resend ───────────────────────────────────────────────────

    async def resend_code(self, identifier: str, channel: Channel | str) -> str:
        """Resend a verification code to the identifier's own contact.

        The purpose follows the account's state: an unverified email gets an
        ``email verification`` code, an unverified phone a
        ``phone verification`` code, otherwise a generic ``verification``.

        Returns:
            A generic confirmation, identical for unknown identifiers.

        Raises:
            InvalidRequestError: Bad channel, or identifier not matching the
                account's contact for that channel.
            AccountLockedError: The account is locked.
            RateLimitedError: Inside the cooldown or over the hourly cap.
        """
        channel = Channel.parse(channel)
        if channel not in (Channel.EMAIL, Channel.SMS):
            raise InvalidRequestError("Type must be either email or sms")

        value = (identifier or "").strip()
        account = await self.resolver.resolve(value)
        if account is None:
            logger.warning("Code resend requested for an unknown identifier")
            return RESEND_MESSAGE
        self._check_not_locked(account)

        if channel is Channel.EMAIL and value.lower() != account.email:
            raise InvalidRequestError("Email address does not match our records")
        if channel is Channel.SMS and not is_phone_match(
            value, account.phone, account.country_code
        ):
            raise InvalidRequestError("Phone number does not match our records")

        await self._check_resend_limits(account, channel)

        if channel is Channel.EMAIL and not account.is_email_verified:
            purpose = Purpose.EMAIL_VERIFICATION
        elif channel is Channel.SMS and not account.is_phone_verified:
            purpose = Purpose.PHONE_VERIFICATION
        else:
            purpose = Purpose.VERIFICATION

        await self.otp.issue(account, channel, purpose)
        logger.info(
            "Resent %s code to account %s (purpose=%s)", channel.value, account.id, purpose.value
        )
        return RESEND_MESSAGE

    async def _check_resend_limits(self, account: Account, channel: Channel) -> None:
        now = self.config.now()
        limits = self.config.rate_limits
        cooldown = timedelta(minutes=limits.resend_cooldown_minutes)

        last = await self.otp.last_issued_since(account.id, channel, now - cooldown)
        if last is not None:
            remaining = (last.created_at + cooldown - now).total_seconds()
            minutes = max(1, math.ceil(remaining / 60))
            raise RateLimitedError(
                f"Please wait {minutes} minutes before requesting another OTP",
                retry_after_seconds=max(1, math.ceil(remaining)),
            )

        recent = await self.otp.count_recent(account.id, channel, None, now - _HOUR)
        if recent >= limits.resend_per_hour:
            raise RateLimitedError(
                "Maximum OTP requests exceeded. Please try again after an hour.",
                retry_after_seconds=int(_HOUR.total_seconds()),
            )

    # ── contact updates ──────────────────────────────────────────

    async def request_email_update(
        self, account_id: str, password: str, new_email: str
    ) -> IssuedCode:
        """Hold ``new_email`` as pending and send a code to it."""
        account = await self._require(account_id)
        self.credentials.verify_password(account, password)

        email = _normalize_email(new_email)
        if email == account.email:
            raise InvalidRequestError("New email must be different from current email")
        if await self.accounts.get_by_email(email) is not None:
            raise IdentifierTakenError("Email is already registered with another account")

        await self.accounts.set_pending_contact(account.id, email=email)
        issued = await self.otp.issue(
            account, Channel.EMAIL, Purpose.EMAIL_UPDATE, destination=email
        )
        logger.info("Email update requested for account %s", account.id)
        return issued

    async def confirm_email_update(self, account_id: str, new_email: str, code: str) -> Account:
        """Consume the update code and move the pending email into place."""
        account = await self._require(account_id)
        email = (new_email or "").strip().lower()
        if not account.pending_email or account.pending_email != email:
            raise InvalidRequestError("Invalid email update request")

        await self.otp.verify(account.id, code, Channel.EMAIL, purpose=Purpose.EMAIL_UPDATE)
        updated = await self.accounts.apply_pending_contact(account.id, Channel.EMAIL)
        await self.otp.invalidate(account.id, Purpose.EMAIL_UPDATE, Channel.EMAIL)

        logger.info("Email updated for account %s", account.id)
        await self.audit.record(
            account_event(
                AuthEventType.CONTACT_UPDATED,
                account.id,
                at=self.config.now(),
                metadata={"channel": Channel.EMAIL.value},
            )
        )
        return updated

    async def request_phone_update(
        self, account_id: str, password: str, new_phone: str, country_code: str
    ) -> IssuedCode:
        """Hold the new phone as pending and send a code to it by SMS."""
        account = await self._require(account_id)
        self.credentials.verify_password(account, password)

        phone, code = normalize_for_storage(new_phone or "", country_code or "")
        if not phone:
            raise InvalidRequestError("Phone number is required")
        if (phone, code) == (account.phone, account.country_code):
            raise InvalidRequestError(
                "New phone number must be different from current phone number"
            )
        if await self.accounts.get_by_phone(phone, code) is not None:
            raise IdentifierTakenError("Phone number is already registered with another account")

        await self.accounts.set_pending_contact(account.id, phone=phone, country_code=code)
        issued = await self.otp.issue(
            account,
            Channel.SMS,
            Purpose.PHONE_UPDATE,
            destination=format_for_display(phone, code),
        )
        logger.info("Phone update requested for account %s", account.id)
        return issued

    async def confirm_phone_update(self, account_id: str, new_phone: str, code: str) -> Account:
        """Consume the update code and move the pending phone into place."""
        account = await self._require(account_id)
        if not account.pending_phone or not is_phone_match(
            new_phone or "", account.pending_phone, account.pending_country_code or ""
        ):
            raise InvalidRequestError("Invalid phone update request")

        await self.otp.verify(account.id, code, Channel.SMS, purpose=Purpose.PHONE_UPDATE)
        updated = await self.accounts.apply_pending_contact(account.id, Channel.SMS)
        await self.otp.invalidate(account.id, Purpose.PHONE_UPDATE, Channel.SMS)

        logger.info("Phone number updated for account %s", account.id)
        await self.audit.record(
            account_event(
                AuthEventType.CONTACT_UPDATED,
                account.id,
                at=self.config.now(),
                metadata={"channel": Channel.SMS.value},
            )
        )
        return updated


__all__: list[str] = [
    "AccountService",
    "RESET_REQUESTED_MESSAGE",
    "RESEND_MESSAGE",
]
