"""Login orchestration.

Identifier resolution, then the password and lockout check, then the
optional second factor, then token issuance.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .audit import (
    AuditRecorder,
    AuthEventType,
    account_event,
    login_failed_event,
    login_success_event,
)
from .exceptions import InvalidCredentialsError, InvalidRequestError

if TYPE_CHECKING:
    from .config import AuthCoreConfig
    from .credentials import CredentialService
    from .mfa import MfaChallenge, MfaService
    from .models import Account, Channel
    from .ports import IAccountRepository, IAuthAuditStore
    from .resolver import IdentifierResolver
    from .tokens import TokenPair, TokenService

logger = logging.getLogger("authcore.login")


@dataclass(frozen=True)
class LoginResult:
    """Outcome of a login step.

    Exactly one of ``tokens`` and ``challenge`` is set.
    """

    account: Account
    tokens: TokenPair | None = None
    challenge: MfaChallenge | None = None

    @property
    def mfa_required(self) -> bool:
        return self.challenge is not None


class LoginService:
    """Runs the password login and its second-factor completion.

    Example:
        ```python
        result = await login.login("+15551234567", "Str0ng!pass")
        if result.mfa_required:
            await mfa.send_login_code(result.challenge.challenge_token, "sms")
            result = await login.complete_mfa(token, "sms", code)
        ```
    """

    def __init__(
        self,
        *,
        accounts: IAccountRepository,
        resolver: IdentifierResolver,
        credentials: CredentialService,
        mfa: MfaService,
        tokens: TokenService,
        config: AuthCoreConfig,
        audit_store: IAuthAuditStore | None = None,
    ) -> None:
        self.accounts = accounts
        self.resolver = resolver
        self.credentials = credentials
        self.mfa = mfa
        self.tokens = tokens
        self.config = config
        self.audit = AuditRecorder(audit_store)

    async def login(self, identifier: str, password: str) -> LoginResult:
        """Authenticate by email or phone and password.

        An unknown identifier fails exactly like a wrong password.

        Raises:
            InvalidRequestError: Missing identifier or password.
            InvalidCredentialsError: Unknown identifier or wrong password.
            AccountLockedError: The account is locked.
            PasswordNotSetError: Social-only account.
            VerificationRequiredError: Email or phone not verified.
        """
        if not (identifier or "").strip() or not password:
            raise InvalidRequestError("Email/phone and password are required")

        account = await self.resolver.resolve(identifier)
        if account is None:
            logger.warning("Login attempt for an unknown identifier")
            self.credentials.verify_dummy(password)
            await self.audit.record(
                login_failed_event(
                    at=self.config.now(),
                    error_code="INVALID_CREDENTIALS",
                    error_message="unknown identifier",
                )
            )
            raise InvalidCredentialsError()

        account = await self.credentials.authenticate(account, password)

        challenge = await self.mfa.begin_login_challenge(account)
        if challenge is not None:
            logger.info("Second factor required for account %s", account.id)
            await self.audit.record(
                account_event(
                    AuthEventType.LOGIN_MFA_REQUIRED,
                    account.id,
                    at=self.config.now(),
                    metadata={"methods": [m.value for m in challenge.methods]},
                )
            )
            return LoginResult(account=account, challenge=challenge)

        return await self._complete(account, mfa_verified=False)

    async def complete_mfa(
        self, challenge_token: str, method: Channel | str, code: str
    ) -> LoginResult:
        """Finish a login with the second factor and issue tokens."""
        account = await self.mfa.verify_login_challenge(challenge_token, method, code)
        return await self._complete(account, mfa_verified=True)

    async def _complete(self, account: Account, *, mfa_verified: bool) -> LoginResult:
        now = self.config.now()
        await self.accounts.touch_last_login(account.id, now)
        account.last_login_at = now

        pair = await self.tokens.issue(account)
        logger.info("Login succeeded for account %s", account.id)
        await self.audit.record(
            login_success_event(account.id, at=now, metadata={"mfa_verified": mfa_verified})
        )
        return LoginResult(account=account, tokens=pair)

    async def refresh(self, refresh_token: str) -> TokenPair:
        return await self.tokens.refresh(refresh_token)

    async def logout_all(self, account_id: str) -> int:
        """Revoke every refresh token of the account; return the new version."""
        return await self.tokens.revoke_all(account_id)


__all__: list[str] = ["LoginResult", "LoginService"]
