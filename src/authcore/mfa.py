"""Multi-factor enrollment, additive methods and the login-time challenge.

An account holds an ordered list of second-factor methods drawn from
``email``, ``sms`` and ``auth_app``. ``mfa_enabled`` is true exactly when
that list is non-empty; enrolling a method appends it, and only
:meth:`MfaService.disable` removes methods.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .audit import AuditRecorder, AuthEventType, account_event
from .exceptions import (
    AccountNotFoundError,
    InvalidCodeError,
    InvalidRequestError,
    MfaAlreadyEnabledError,
    MfaMethodAlreadyEnabledError,
    MfaMethodNotAllowedError,
    MfaNotEnabledError,
    VerificationRequiredError,
)
from .models import Account, Channel, Purpose

if TYPE_CHECKING:
    from .config import AuthCoreConfig
    from .credentials import CredentialService
    from .otp import IssuedCode, OtpManager
    from .ports import IAccountRepository, IAuthAuditStore
    from .tokens import TokenService

logger = logging.getLogger("authcore.mfa")


@dataclass(frozen=True)
class MfaChallenge:
    """Second-factor challenge handed to the client after a password check.

    Attributes:
        challenge_token: Short-lived token for the second step.
        methods: Methods the client may use, in enrollment order.
        expires_in: Token lifetime in seconds.
    """

    challenge_token: str
    methods: list[Channel] = field(default_factory=list)
    expires_in: int = 600


def fallback_methods(account: Account) -> list[Channel]:
    """Methods an account can still use when its stored list is empty.

    Derived in order from the verified email, the verified phone and the
    presence of an authenticator secret.
    """
    methods: list[Channel] = []
    if account.is_email_verified:
        methods.append(Channel.EMAIL)
    if account.is_phone_verified:
        methods.append(Channel.SMS)
    if account.mfa_secret:
        methods.append(Channel.AUTH_APP)
    return methods


class MfaService:
    """Manages second factors for an account.

    Example:
        ```python
        mfa = MfaService(
            accounts=repo, otp=otp, credentials=credentials, tokens=tokens, config=config
        )

        issued = await mfa.setup(account.id, "Secret-pass1", "auth_app")
        show_qr(issued.qr_code)
        await mfa.verify_setup(account.id, "auth_app", code_from_app)
        ```
    """

    def __init__(
        self,
        *,
        accounts: IAccountRepository,
        otp: OtpManager,
        credentials: CredentialService,
        tokens: TokenService,
        config: AuthCoreConfig,
        audit_store: IAuthAuditStore | None = None,
    ) -> None:
        self.accounts = accounts
        self.otp = otp
        self.credentials = credentials
        self.tokens = tokens
        self.config = config
        self.audit = AuditRecorder(audit_store)

    async def _require(self, account_id: str) -> Account:
        account = await self.accounts.get(account_id)
        if account is None:
            raise AccountNotFoundError()
        return account

    def _check_prerequisite(self, account: Account, method: Channel) -> None:
        if method is Channel.EMAIL and not account.is_email_verified:
            raise VerificationRequiredError(
                "Email must be verified before enabling email 2FA", channel=method.value
            )
        if method is Channel.SMS and not account.is_phone_verified:
            raise VerificationRequiredError(
                "Phone number must be verified before enabling SMS 2FA", channel=method.value
            )

    async def _send_enrollment_code(
        self, account: Account, method: Channel, purpose: Purpose
    ) -> IssuedCode:
        if method is Channel.AUTH_APP:
            return await self.otp.generate_secret_for_2fa(account, purpose)
        return await self.otp.issue(account, method, purpose)

    async def _consume(
        self, account: Account, method: Channel, code: str, purpose: Purpose
    ) -> str | None:
        """Consume an enrollment code; return the authenticator secret, if any."""
        try:
            record = await self.otp.verify(account.id, code, method, purpose=purpose)
        except InvalidCodeError as exc:
            await self.audit.record(
                account_event(
                    AuthEventType.MFA_FAILED,
                    account.id,
                    at=self.config.now(),
                    success=False,
                    error_code=type(exc).__name__,
                    metadata={"method": method.value, "purpose": purpose.value},
                )
            )
            raise
        await self.otp.invalidate(account.id, purpose, method)
        return record.secret if method is Channel.AUTH_APP else None

    # ── first-time setup ─────────────────────────────────────────

    async def setup(self, account_id: str, password: str, method: Channel | str) -> IssuedCode:
        """Start first-time MFA enrollment.

        Args:
            account_id: Account enrolling.
            password: Current password, re-confirmed.
            method: ``email``, ``sms`` or ``auth_app``.

        Returns:
            The issued code; for ``auth_app`` it carries the secret and QR image.

        Raises:
            InvalidCredentialsError: Wrong password.
            MfaAlreadyEnabledError: MFA is already on.
            InvalidRequestError: Unknown method.
            VerificationRequiredError: The method's contact is not verified.
        """
        account = await self._require(account_id)
        self.credentials.verify_password(account, password)
        if account.mfa_enabled:
            raise MfaAlreadyEnabledError()
        channel = Channel.parse(method)
        self._check_prerequisite(account, channel)

        issued = await self._send_enrollment_code(account, channel, Purpose.MFA_SETUP)
        logger.info("Started %s 2FA setup for account %s", channel.value, account.id)
        return issued

    async def verify_setup(
        self, account_id: str, method: Channel | str, code: str
    ) -> list[Channel]:
        """Confirm first-time enrollment and turn MFA on.

        Returns:
            The enabled methods.
        """
        account = await self._require(account_id)
        if account.mfa_enabled:
            raise MfaAlreadyEnabledError()
        channel = Channel.parse(method)

        secret = await self._consume(account, channel, code, Purpose.MFA_SETUP)
        methods = await self.accounts.enable_mfa_method(account.id, channel, secret=secret)

        logger.info("Enabled %s 2FA for account %s", channel.value, account.id)
        await self.audit.record(
            account_event(
                AuthEventType.MFA_ENABLED,
                account.id,
                at=self.config.now(),
                metadata={"method": channel.value},
            )
        )
        return methods

    # ── additional methods ───────────────────────────────────────

    def _check_can_add(self, account: Account, method: Channel) -> None:
        if not account.mfa_enabled:
            raise MfaNotEnabledError("2FA must be enabled first before adding additional methods")
        if method in account.mfa_methods:
            raise MfaMethodAlreadyEnabledError(method.value)

    async def add_method(
        self, account_id: str, password: str, method: Channel | str
    ) -> IssuedCode:
        """Start enrolling another method while MFA is enabled.

        Raises:
            InvalidCredentialsError: Wrong password.
            MfaNotEnabledError: MFA is not on yet.
            MfaMethodAlreadyEnabledError: ``method`` is already enrolled.
            VerificationRequiredError: The method's contact is not verified.
        """
        account = await self._require(account_id)
        self.credentials.verify_password(account, password)
        channel = Channel.parse(method)
        self._check_can_add(account, channel)
        self._check_prerequisite(account, channel)

        issued = await self._send_enrollment_code(
            account, channel, Purpose.MFA_ADDITIONAL_SETUP
        )
        logger.info("Started adding %s 2FA for account %s", channel.value, account.id)
        return issued

    async def verify_add_method(
        self, account_id: str, method: Channel | str, code: str
    ) -> list[Channel]:
        """Confirm an additional method; it is appended to the existing ones."""
        account = await self._require(account_id)
        channel = Channel.parse(method)
        self._check_can_add(account, channel)

        secret = await self._consume(account, channel, code, Purpose.MFA_ADDITIONAL_SETUP)
        methods = await self.accounts.enable_mfa_method(account.id, channel, secret=secret)

        logger.info("Added %s 2FA for account %s", channel.value, account.id)
        await self.audit.record(
            account_event(
                AuthEventType.MFA_METHOD_ADDED,
                account.id,
                at=self.config.now(),
                metadata={"method": channel.value, "methods": [m.value for m in methods]},
            )
        )
        return methods

    # ── disable / regenerate ─────────────────────────────────────

    async def disable(self, account_id: str, password: str) -> None:
        """Turn MFA off and forget every method and the secret.

        Raises:
            MfaNotEnabledError: MFA is not on.
            InvalidCredentialsError: Wrong password.
        """
        account = await self._require(account_id)
        if not account.mfa_enabled:
            raise MfaNotEnabledError("2FA is not enabled for this account")
        self.credentials.verify_password(account, password)

        await self.accounts.clear_mfa(account.id)
        logger.info("Disabled 2FA for account %s", account.id)
        await self.audit.record(
            account_event(AuthEventType.MFA_DISABLED, account.id, at=self.config.now())
        )

    async def regenerate_qr(self, account_id: str) -> IssuedCode:
        """Issue a fresh authenticator secret and QR code.

        The record's purpose follows the enrollment step the account is in,
        so the next ``verify_setup`` or ``verify_add_method`` accepts it.
        """
        account = await self._require(account_id)
        purpose = Purpose.MFA_ADDITIONAL_SETUP if account.mfa_enabled else Purpose.MFA_SETUP
        return await self.otp.generate_secret_for_2fa(account, purpose)

    # ── login challenge ──────────────────────────────────────────

    async def begin_login_challenge(self, account: Account) -> MfaChallenge | None:
        """Start the second login step, or return ``None`` when none is needed.

        An enabled account with an empty method list is repaired: the list is
        rebuilt from :func:`fallback_methods`, and if that is empty too, MFA
        is switched off for the account.
        """
        if not account.mfa_enabled:
            return None

        methods = list(account.mfa_methods)
        if not methods:
            methods = fallback_methods(account)
            await self.accounts.replace_mfa_methods(account.id, methods)
            account.mfa_methods = list(methods)
            if not methods:
                account.mfa_enabled = False
                logger.warning(
                    "Account %s had 2FA enabled with no usable method; 2FA disabled",
                    account.id,
                )
                await self.audit.record(
                    account_event(
                        AuthEventType.MFA_RESET,
                        account.id,
                        at=self.config.now(),
                        metadata={"reason": "no usable method"},
                    )
                )
                return None
            logger.warning(
                "Account %s had 2FA enabled with no methods; restored %s",
                account.id,
                ",".join(m.value for m in methods),
            )

        return MfaChallenge(
            challenge_token=self.tokens.issue_challenge(account),
            methods=methods,
            expires_in=int(self.config.tokens.challenge_ttl.total_seconds()),
        )

    async def _challenged_account(self, challenge_token: str, method: Channel) -> Account:
        account = await self._require(self.tokens.validate_challenge(challenge_token))
        if not account.mfa_enabled:
            raise MfaNotEnabledError("2FA is not enabled for this account")
        if method not in account.mfa_methods:
            raise MfaMethodNotAllowedError(f"{method.value} is not enabled for this account")
        return account

    async def send_login_code(self, challenge_token: str, method: Channel | str) -> IssuedCode:
        """Send a login code by email or SMS for a pending challenge."""
        channel = Channel.parse(method)
        account = await self._challenged_account(challenge_token, channel)
        if channel is Channel.AUTH_APP:
            raise InvalidRequestError("Authenticator codes are read from the app, not sent")
        return await self.otp.issue(account, channel, Purpose.MFA_LOGIN)

    async def verify_login_challenge(
        self, challenge_token: str, method: Channel | str, code: str
    ) -> Account:
        """Check the second factor of a pending login.

        Returns:
            The authenticated account.

        Raises:
            InvalidTokenError: Bad or expired challenge token.
            MfaMethodNotAllowedError: ``method`` is not enrolled.
            InvalidCodeError: Wrong, used or expired code.
        """
        channel = Channel.parse(method)
        account = await self._challenged_account(challenge_token, channel)
        now = self.config.now()

        if channel is Channel.AUTH_APP:
            secret = account.mfa_secret
            step = None
            if secret:
                step = self.otp.totp.match_step(
                    secret, (code or "").strip(), self.config.otp.totp_valid_window, for_time=now
                )
            # a step at or before the last accepted one is a replay
            if step is None or not await self.accounts.claim_totp_step(account.id, step):
                await self._record_login_failure(account, channel)
                raise InvalidCodeError()
        else:
            try:
                await self.otp.verify(account.id, code, channel, purpose=Purpose.MFA_LOGIN)
            except InvalidCodeError:
                await self._record_login_failure(account, channel)
                raise

        logger.info("Second factor %s accepted for account %s", channel.value, account.id)
        await self.audit.record(
            account_event(
                AuthEventType.MFA_VERIFIED,
                account.id,
                at=now,
                metadata={"method": channel.value},
            )
        )
        return account

    async def _record_login_failure(self, account: Account, method: Channel) -> None:
        logger.warning("Second factor %s rejected for account %s", method.value, account.id)
        await self.audit.record(
            account_event(
                AuthEventType.MFA_FAILED,
                account.id,
                at=self.config.now(),
                success=False,
                metadata={"method": method.value, "purpose": Purpose.MFA_LOGIN.value},
            )
        )


__all__: list[str] = ["MfaChallenge", "MfaService", "fallback_methods"]
