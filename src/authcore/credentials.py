"""Password verification and the consecutive-failure lockout state machine.

An account is *unlocked* while ``locked_until`` is unset or in the past and
*locked* while it lies in the future. Failed attempts are counted by an
atomic repository update; the attempt that reaches
``lockout.max_failed_attempts`` also sets the lock.
"""

from __future__ import annotations

import logging
import secrets
from datetime import timedelta
from typing import TYPE_CHECKING, NoReturn

from .audit import AuditRecorder, AuthEventType, account_event, login_failed_event
from .exceptions import (
    AccountLockedError,
    AccountNotFoundError,
    InvalidCredentialsError,
    InvalidRequestError,
    PasswordNotSetError,
    VerificationRequiredError,
)
from .models import Account, Channel
from .passwords import PasswordHasher, PasswordPolicy

if TYPE_CHECKING:
    from .config import AuthCoreConfig
    from .ports import IAccountRepository, IAuthAuditStore

logger = logging.getLogger("authcore.credentials")


class CredentialService:
    """Checks passwords, tracks failures and changes passwords.

    Example:
        ```python
        credentials = CredentialService(accounts=repo, config=config)

        try:
            account = await credentials.authenticate(account, password)
        except AccountLockedError as exc:
            print(exc.remaining_minutes)
        ```
    """

    def __init__(
        self,
        *,
        accounts: IAccountRepository,
        config: AuthCoreConfig,
        hasher: PasswordHasher | None = None,
        policy: PasswordPolicy | None = None,
        audit_store: IAuthAuditStore | None = None,
    ) -> None:
        """Initialize the credential service.

        Args:
            accounts: Account repository providing the atomic counter updates.
            config: Lockout thresholds and clock.
            hasher: Password hasher (default bcrypt, 12 rounds).
            policy: Strength rules for new passwords.
            audit_store: Optional audit store for login and password events.
        """
        self.accounts = accounts
        self.config = config
        self.hasher = hasher or PasswordHasher()
        self.policy = policy or PasswordPolicy()
        self.audit = AuditRecorder(audit_store)
        # verified against when an identifier matches no account
        self._dummy_hash = self.hasher.hash(secrets.token_urlsafe(16))

    # ── login ────────────────────────────────────────────────────

    async def authenticate(self, account: Account, password: str) -> Account:
        """Check ``password`` and apply the lockout and verification gates.

        Args:
            account: The resolved account.
            password: Plaintext password as submitted.

        Returns:
            The account after a successful check, attempts reset.

        Raises:
            AccountLockedError: The account is locked, or this failure locked it.
            PasswordNotSetError: Social-only account without a password.
            InvalidCredentialsError: Wrong password.
            VerificationRequiredError: Email or phone not verified yet.
        """
        now = self.config.now()

        # Locked accounts are rejected before the password is looked at
        if account.is_locked(now):
            raise AccountLockedError(
                locked_until=account.locked_until,
                remaining_minutes=account.lock_remaining_minutes(now),
                failed_attempts=account.login_attempts,
            )

        password_hash = account.password_hash
        if not password_hash:
            raise PasswordNotSetError()

        if not self.hasher.verify(password_hash, password):
            await self._record_failure(account)

        stored = await self.accounts.reset_login_attempts(account.id, now=now)
        if stored.is_locked(now):
            # a concurrent failure locked the row after it was read
            logger.warning("Correct password for account %s arrived after its lock", account.id)
            raise AccountLockedError(
                locked_until=stored.locked_until,
                remaining_minutes=stored.lock_remaining_minutes(now),
                failed_attempts=stored.login_attempts,
            )
        account.login_attempts = 0
        account.locked_until = None

        if self.hasher.needs_rehash(password_hash):
            await self._rehash(account, password)

        if not account.is_email_verified:
            raise VerificationRequiredError(
                "Please verify your email address before logging in",
                channel=Channel.EMAIL.value,
            )
        if not account.is_phone_verified:
            raise VerificationRequiredError(
                "Please verify your phone number before logging in",
                channel=Channel.SMS.value,
            )
        return account

    async def _record_failure(self, account: Account) -> NoReturn:
        now = self.config.now()
        lockout = self.config.lockout
        updated = await self.accounts.record_failed_login(
            account.id,
            max_attempts=lockout.max_failed_attempts,
            lock_until=now + timedelta(minutes=lockout.lockout_minutes),
        )
        await self.audit.record(
            login_failed_event(
                at=now,
                principal_id=account.id,
                error_code="INVALID_CREDENTIALS",
                error_message=f"attempt {updated.login_attempts}",
            )
        )

        if updated.is_locked(now):
            logger.warning(
                "Account %s locked after %d failed attempts",
                account.id,
                updated.login_attempts,
            )
            await self.audit.record(
                account_event(
                    AuthEventType.USER_LOCKED,
                    account.id,
                    at=now,
                    success=False,
                    metadata={"failed_attempts": updated.login_attempts},
                )
            )
            raise AccountLockedError(
                locked_until=updated.locked_until,
                remaining_minutes=updated.lock_remaining_minutes(now),
                failed_attempts=updated.login_attempts,
            )

        logger.warning(
            "Failed login for account %s (attempt %d)", account.id, updated.login_attempts
        )
        raise InvalidCredentialsError()

    async def _rehash(self, account: Account, password: str) -> None:
        new_hash = self.hasher.hash(password)
        await self.accounts.update_password(
            account.id,
            new_hash,
            changed_at=account.last_password_change or self.config.now(),
            bump_version=False,
        )
        account.password_hash = new_hash
        logger.info("Rehashed password for account %s", account.id)

    def verify_dummy(self, password: str) -> None:
        """Spend one hash verification without an account.

        Called when an identifier matches no account, so a miss costs the
        same as a wrong password.
        """
        self.hasher.verify(self._dummy_hash, password)

    # ── re-confirmation ──────────────────────────────────────────

    def verify_password(self, account: Account, password: str) -> None:
        """Re-confirm the password for a sensitive action.

        Does not touch the lockout counters.

        Raises:
            PasswordNotSetError: The account has no password.
            InvalidCredentialsError: Wrong password.
        """
        if not account.has_password:
            raise PasswordNotSetError()
        if not self.hasher.verify(account.password_hash, password):
            raise InvalidCredentialsError("Invalid password")

    # ── password changes ─────────────────────────────────────────

    async def change_password(
        self, account_id: str, current_password: str, new_password: str
    ) -> int:
        """Self-service password change.

        Returns:
            The new token version; every earlier refresh token is revoked.

        Raises:
            AccountNotFoundError: Unknown account.
            InvalidCredentialsError: ``current_password`` is wrong.
            InvalidRequestError: The new password equals the current one.
            WeakPasswordError: The new password fails the policy.
        """
        account = await self._require(account_id)
        self.verify_password(account, current_password)
        if current_password == new_password:
            raise InvalidRequestError("New password must be different from the current password")
        self.policy.enforce(new_password)

        version = await self.set_password(account_id, new_password)
        logger.info("Password changed for account %s", account_id)
        await self.audit.record(
            account_event(AuthEventType.PASSWORD_CHANGED, account_id, at=self.config.now())
        )
        return version

    async def admin_change_password(
        self,
        admin_id: str,
        account_id: str,
        new_password: str,
        reason: str | None = None,
    ) -> int:
        """Administrative password change.

        Raises:
            InvalidRequestError: An admin targeting their own account.
            AccountNotFoundError: Unknown account.
            WeakPasswordError: The new password fails the policy.
        """
        if admin_id == account_id:
            raise InvalidRequestError(
                "Admins cannot change their own password through the admin endpoint"
            )
        await self._require(account_id)
        self.policy.enforce(new_password)

        version = await self.set_password(account_id, new_password)
        logger.warning(
            "Admin %s changed password for account %s (reason: %s)",
            admin_id,
            account_id,
            reason or "not given",
        )
        await self.audit.record(
            account_event(
                AuthEventType.PASSWORD_CHANGED,
                account_id,
                at=self.config.now(),
                metadata={"changed_by": admin_id, "reason": reason},
            )
        )
        return version

    async def set_password(
        self, account_id: str, new_password: str, *, clear_lockout: bool = False
    ) -> int:
        """Hash and store ``new_password`` and bump the token version atomically."""
        return await self.accounts.update_password(
            account_id,
            self.hasher.hash(new_password),
            changed_at=self.config.now(),
            clear_lockout=clear_lockout,
        )

    async def _require(self, account_id: str) -> Account:
        account = await self.accounts.get(account_id)
        if account is None:
            raise AccountNotFoundError()
        return account


__all__: list[str] = ["CredentialService"]
