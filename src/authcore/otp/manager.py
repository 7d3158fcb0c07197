"""One-time code lifecycle: issue, dispatch, verify, count and sweep.

Codes for email and SMS are random 6-digit numbers. Authenticator-app codes
are TOTP values derived from a per-record secret. Delivery is delegated to
the application through :class:`~authcore.ports.IContactTransport`; a record
is always persisted before delivery is attempted, so a failed send never
destroys an otherwise valid code.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from ..exceptions import (
    DeliveryError,
    ExpiredCodeError,
    InvalidCodeError,
    InvalidRequestError,
)
from ..models import Account, Channel, OneTimeCode, Purpose

if TYPE_CHECKING:
    from ..config import AuthCoreConfig
    from ..ports import IContactTransport, IOneTimeCodeRepository, ITotpProvider

logger = logging.getLogger("authcore.otp")


@dataclass(frozen=True)
class IssuedCode:
    """Result of issuing a code.

    ``secret`` and ``qr_code`` are only set for ``auth_app`` records. The
    code value itself is never returned; it only leaves through the
    transport.
    """

    success: bool
    code_id: str
    channel: Channel
    purpose: str
    expires_at: datetime
    secret: str | None = None
    qr_code: str | None = None


class OtpManager:
    """Issues and consumes single-use verification codes.

    Example:
        ```python
        otp = OtpManager(
            codes=SQLAlchemyOneTimeCodeRepository(session_factory),
            transports={Channel.EMAIL: MailTransport(), Channel.SMS: SmsTransport()},
            totp=PyOtpTotpProvider(issuer="MyApp"),
            config=config,
        )

        await otp.issue(account, Channel.EMAIL, Purpose.PASSWORD_RESET)
        record = await otp.verify(account.id, "123456", Channel.EMAIL,
                                  purpose=Purpose.PASSWORD_RESET)
        ```
    """

    def __init__(
        self,
        *,
        codes: IOneTimeCodeRepository,
        transports: Mapping[Channel, IContactTransport],
        totp: ITotpProvider,
        config: AuthCoreConfig,
    ) -> None:
        self.codes = codes
        self.transports = dict(transports)
        self.totp = totp
        self.config = config

    # ── issuance ─────────────────────────────────────────────────

    def _generate_code(self) -> str:
        length = self.config.otp.code_length
        return str(secrets.randbelow(10**length)).zfill(length)

    async def issue(
        self,
        account: Account,
        channel: Channel | str,
        purpose: Purpose | str = Purpose.VERIFICATION,
        *,
        destination: str | None = None,
    ) -> IssuedCode:
        """Create, persist and deliver a code.

        Args:
            account: Owner of the code.
            channel: ``email``, ``sms`` or ``auth_app``.
            purpose: Purpose tag stored on the record.
            destination: Overrides the account's address, e.g. for a pending
                email or phone.

        Raises:
            InvalidRequestError: Unknown channel or purpose.
            DeliveryError: The transport failed or timed out. The record is
                kept.
        """
        channel = Channel.parse(channel)
        purpose_tag = Purpose.parse(purpose).value
        now = self.config.now()

        await self.cleanup_expired(account.id)

        secret: str | None = None
        provisioning_uri: str | None = None
        if channel is Channel.AUTH_APP:
            created = self.totp.new_secret(account.email)
            secret = created.secret
            provisioning_uri = created.provisioning_uri
            code = self.totp.current_code(secret, for_time=now)
        else:
            code = self._generate_code()

        record = OneTimeCode(
            account_id=account.id,
            code=code,
            channel=channel,
            purpose=purpose_tag,
            secret=secret,
            expires_at=now + timedelta(minutes=self.config.otp.expiry_minutes),
            created_at=now,
        )
        await self.codes.add(record)

        qr_code: str | None = None
        if provisioning_uri is not None:
            qr_code = await self._render(provisioning_uri)
        else:
            address = destination or self._destination(account, channel)
            await self._dispatch(channel, address, code, purpose_tag)

        logger.info(
            "Issued %s code for account %s (purpose=%s)",
            channel.value,
            account.id,
            purpose_tag,
        )
        return IssuedCode(
            success=True,
            code_id=record.id,
            channel=channel,
            purpose=purpose_tag,
            expires_at=record.expires_at,
            secret=secret,
            qr_code=qr_code,
        )

    async def generate_secret_for_2fa(
        self, account: Account, purpose: Purpose | str = Purpose.MFA_SETUP
    ) -> IssuedCode:
        """Create a fresh authenticator secret and enrollment record.

        Always creates a new pair, regardless of current enrollment. Used for
        first-time setup, additional setup and for regenerating a lost QR code.
        """
        purpose_tag = Purpose.parse(purpose).value
        now = self.config.now()

        await self.cleanup_expired(account.id)

        created = self.totp.new_secret(account.email)
        record = OneTimeCode(
            account_id=account.id,
            code=self.config.otp.enrollment_placeholder,
            channel=Channel.AUTH_APP,
            purpose=purpose_tag,
            secret=created.secret,
            expires_at=now + timedelta(minutes=self.config.otp.enrollment_expiry_minutes),
            created_at=now,
        )
        await self.codes.add(record)
        qr_code = await self._render(created.provisioning_uri)

        logger.info("Generated authenticator secret for account %s", account.id)
        return IssuedCode(
            success=True,
            code_id=record.id,
            channel=Channel.AUTH_APP,
            purpose=purpose_tag,
            expires_at=record.expires_at,
            secret=created.secret,
            qr_code=qr_code,
        )

    def _destination(self, account: Account, channel: Channel) -> str:
        if channel is Channel.EMAIL:
            return account.email
        return account.full_phone

    async def _dispatch(self, channel: Channel, destination: str, code: str, purpose: str) -> None:
        transport = self.transports.get(channel)
        if transport is None:
            raise InvalidRequestError(f"No transport configured for {channel.value}")
        try:
            await asyncio.wait_for(
                transport.send_code(destination, code, purpose),
                timeout=self.config.transport_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.error("Timed out sending %s code (purpose=%s)", channel.value, purpose)
            raise DeliveryError(f"Timed out sending code via {channel.value}") from exc
        except Exception as exc:
            logger.error(
                "Failed to send %s code (purpose=%s): %s", channel.value, purpose, exc
            )
            raise DeliveryError(f"Failed to send code via {channel.value}") from exc

    async def _render(self, uri: str) -> str:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.totp.render_provisioning_image, uri),
                timeout=self.config.transport_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise DeliveryError("Timed out rendering the QR code") from exc
        except Exception as exc:
            logger.error("Failed to render provisioning QR code: %s", exc)
            raise DeliveryError("Failed to render the QR code") from exc

    # ── verification ─────────────────────────────────────────────

    async def verify(
        self,
        account_id: str,
        code: str,
        channel: Channel | str,
        *,
        purpose: Purpose | str | None = None,
    ) -> OneTimeCode:
        """Consume a code.

        For ``auth_app`` the most recent unused record is authoritative and
        the submitted value is checked as TOTP against its secret. For
        ``email``/``sms`` the most recent unused record with exactly this
        code is used. Either way the record is consumed through a
        conditional update, so concurrent callers cannot both succeed.

        Returns:
            The consumed record, with its purpose and secret.

        Raises:
            ExpiredCodeError: The matching record has expired; it is marked
                used as a side effect.
            InvalidCodeError: No match, wrong TOTP or already consumed.
        """
        channel = Channel.parse(channel)
        purpose_tag = Purpose.parse(purpose).value if purpose is not None else None
        submitted = (code or "").strip()
        now = self.config.now()

        if channel is Channel.AUTH_APP:
            record = await self.codes.latest_unused(account_id, channel, purpose=purpose_tag)
            if record is None or not record.secret:
                raise InvalidCodeError()
            await self._reject_if_expired(record, now)
            if not self.totp.verify(
                record.secret, submitted, self.config.otp.totp_valid_window, for_time=now
            ):
                raise InvalidCodeError()
        else:
            if not submitted:
                raise InvalidCodeError()
            record = await self.codes.latest_unused(
                account_id, channel, code=submitted, purpose=purpose_tag
            )
            if record is None:
                raise InvalidCodeError()
            await self._reject_if_expired(record, now)

        if not await self.codes.mark_used(record.id):
            logger.warning("Code %s was consumed concurrently", record.id)
            raise InvalidCodeError()

        record.used = True
        logger.info(
            "Consumed %s code for account %s (purpose=%s)",
            channel.value,
            account_id,
            record.purpose,
        )
        return record

    async def _reject_if_expired(self, record: OneTimeCode, now: datetime) -> None:
        if record.is_expired(now):
            await self.codes.mark_used(record.id)
            raise ExpiredCodeError()

    async def invalidate(
        self,
        account_id: str,
        purpose: Purpose | str,
        channel: Channel | str | None = None,
    ) -> int:
        """Mark every unused code with this purpose (and channel) as used."""
        return await self.codes.mark_all_used(
            account_id,
            purpose=Purpose.parse(purpose).value,
            channel=Channel.parse(channel) if channel is not None else None,
        )

    # ── rate-limit support ───────────────────────────────────────

    async def count_recent(
        self,
        account_id: str,
        channel: Channel | str,
        purpose: Purpose | str | None,
        since: datetime,
    ) -> int:
        """Codes created at or after ``since``; storage failures count as 0."""
        channel = Channel.parse(channel)
        purpose_tag = Purpose.parse(purpose).value if purpose is not None else None
        try:
            return await self.codes.count_since(account_id, channel, since, purpose=purpose_tag)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to count recent codes for account %s: %s", account_id, exc)
            return 0

    async def last_issued_since(
        self, account_id: str, channel: Channel | str, since: datetime
    ) -> OneTimeCode | None:
        return await self.codes.latest_since(account_id, Channel.parse(channel), since)

    async def cleanup_expired(self, account_id: str) -> int:
        """Best-effort sweep of this account's expired codes.

        Records stay for ``otp.retention_minutes`` past their expiry so the
        hourly caps still see them.
        """
        cutoff = self.config.now() - timedelta(minutes=self.config.otp.retention_minutes)
        try:
            removed = await self.codes.delete_expired(account_id, cutoff)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to clean up expired codes for %s: %s", account_id, exc)
            return 0
        if removed:
            logger.debug("Removed %d expired codes for account %s", removed, account_id)
        return removed


__all__: list[str] = ["IssuedCode", "OtpManager"]
