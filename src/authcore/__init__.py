"""AuthCore: credential and second-factor core

Authentication state for an application's own accounts: password login with
consecutive-failure lockout, one-time codes by email, SMS and authenticator
app, additive multi-factor enrollment, and refresh tokens revoked by a
per-account token version.

Storage, mail/SMS delivery and TOTP are reached through ports, so the
same services run against the in-memory adapters in tests and the async
SQLAlchemy adapter in production.

Usage:
    ```python
    from authcore import (
        AuthCoreConfig,
        Channel,
        TokenConfig,
        build_services,
        InMemoryAccountRepository,
        InMemoryOneTimeCodeRepository,
    )

    config = AuthCoreConfig(tokens=TokenConfig(access_secret="...", refresh_secret="..."))
    services = build_services(
        accounts=InMemoryAccountRepository(),
        codes=InMemoryOneTimeCodeRepository(),
        transports={Channel.EMAIL: mailer, Channel.SMS: sms_gateway},
        config=config,
    )

    result = await services.login.login("+15551234567", "Str0ng!pass")
    if result.mfa_required:
        await services.mfa.send_login_code(result.challenge.challenge_token, "sms")
    ```

Submodules:
    - `accounts`: registration, verification, reset, resend, contact updates
    - `login`: password login, second-factor completion, refresh, logout
    - `mfa`: enrollment, additional methods and the login challenge
    - `credentials`: password checks, lockout and password changes
    - `tokens`: access, refresh and challenge JWTs
    - `otp`: one-time code lifecycle and TOTP provider
    - `phone`: phone parsing and matching helpers
    - `adapters`: in-memory and async SQLAlchemy storage
    - `audit`: audit events and the in-memory audit store
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

# Services
from .accounts import RESEND_MESSAGE, RESET_REQUESTED_MESSAGE, AccountService

# Adapters
from .adapters import InMemoryAccountRepository, InMemoryOneTimeCodeRepository

# Audit
from .audit import (
    AuditRecorder,
    AuthAuditEvent,
    AuthEventType,
    InMemoryAuthAuditStore,
)

# Configuration
from .config import (
    AuthCoreConfig,
    FrozenClock,
    LockoutConfig,
    OtpConfig,
    RateLimitConfig,
    TokenConfig,
    utc_now,
)
from .credentials import CredentialService

# Exceptions
from .exceptions import (
    AccountLockedError,
    AccountNotFoundError,
    AlreadyVerifiedError,
    AuthCoreError,
    ConflictError,
    DeliveryError,
    ExpiredCodeError,
    ExpiredTokenError,
    FailureKind,
    ForbiddenError,
    IdentifierTakenError,
    InvalidCodeError,
    InvalidCredentialsError,
    InvalidRequestError,
    InvalidTokenError,
    MfaAlreadyEnabledError,
    MfaMethodAlreadyEnabledError,
    MfaMethodNotAllowedError,
    MfaNotEnabledError,
    NotFoundError,
    PasswordNotSetError,
    RateLimitedError,
    RevokedTokenError,
    StorageError,
    TransientError,
    UnauthorizedError,
    VerificationRequiredError,
    WeakPasswordError,
)
from .login import LoginResult, LoginService
from .mfa import MfaChallenge, MfaService, fallback_methods

# Domain records
from .models import Account, Channel, OneTimeCode, Purpose

# One-time codes
from .otp import IssuedCode, OtpManager, PyOtpTotpProvider

# Password handling
from .passwords import PasswordHasher, PasswordPolicy

# Phone helpers
from .phone import (
    ParsedPhone,
    format_for_display,
    is_phone_match,
    normalize_for_storage,
    parse_phone_number,
    phone_match_keys,
    search_formats,
)

# Ports
from .ports import (
    IAccountRepository,
    IAuthAuditStore,
    IContactTransport,
    IOneTimeCodeRepository,
    ITotpProvider,
    TotpSecret,
)
from .resolver import IdentifierResolver
from .tokens import TokenPair, TokenService


@dataclass(frozen=True)
class AuthCoreServices:
    """The wired service graph returned by :func:`build_services`."""

    credentials: CredentialService
    tokens: TokenService
    otp: OtpManager
    mfa: MfaService
    accounts: AccountService
    login: LoginService
    resolver: IdentifierResolver


def build_services(
    *,
    accounts: IAccountRepository,
    codes: IOneTimeCodeRepository,
    transports: Mapping[Channel, IContactTransport],
    config: AuthCoreConfig,
    totp: ITotpProvider | None = None,
    hasher: PasswordHasher | None = None,
    policy: PasswordPolicy | None = None,
    audit_store: IAuthAuditStore | None = None,
) -> AuthCoreServices:
    """Wire every service over one set of repositories and transports."""
    resolver = IdentifierResolver(accounts)
    credentials = CredentialService(
        accounts=accounts,
        config=config,
        hasher=hasher,
        policy=policy,
        audit_store=audit_store,
    )
    tokens = TokenService(accounts=accounts, config=config, audit_store=audit_store)
    otp = OtpManager(
        codes=codes,
        transports=transports,
        totp=totp or PyOtpTotpProvider(issuer=config.otp.totp_issuer),
        config=config,
    )
    mfa = MfaService(
        accounts=accounts,
        otp=otp,
        credentials=credentials,
        tokens=tokens,
        config=config,
        audit_store=audit_store,
    )
    return AuthCoreServices(
        credentials=credentials,
        tokens=tokens,
        otp=otp,
        mfa=mfa,
        accounts=AccountService(
            accounts=accounts,
            otp=otp,
            credentials=credentials,
            config=config,
            resolver=resolver,
            audit_store=audit_store,
        ),
        login=LoginService(
            accounts=accounts,
            resolver=resolver,
            credentials=credentials,
            mfa=mfa,
            tokens=tokens,
            config=config,
            audit_store=audit_store,
        ),
        resolver=resolver,
    )


__all__: list[str] = [
    # Wiring
    "AuthCoreServices",
    "build_services",
    # Configuration
    "AuthCoreConfig",
    "TokenConfig",
    "OtpConfig",
    "LockoutConfig",
    "RateLimitConfig",
    "FrozenClock",
    "utc_now",
    # Domain records
    "Account",
    "OneTimeCode",
    "Channel",
    "Purpose",
    # Services
    "AccountService",
    "CredentialService",
    "IdentifierResolver",
    "LoginService",
    "LoginResult",
    "MfaService",
    "MfaChallenge",
    "fallback_methods",
    "TokenService",
    "TokenPair",
    "OtpManager",
    "IssuedCode",
    "PyOtpTotpProvider",
    "PasswordHasher",
    "PasswordPolicy",
    "RESET_REQUESTED_MESSAGE",
    "RESEND_MESSAGE",
    # Phone helpers
    "ParsedPhone",
    "parse_phone_number",
    "search_formats",
    "is_phone_match",
    "normalize_for_storage",
    "format_for_display",
    "phone_match_keys",
    # Ports
    "IAccountRepository",
    "IOneTimeCodeRepository",
    "IContactTransport",
    "ITotpProvider",
    "TotpSecret",
    "IAuthAuditStore",
    # Adapters
    "InMemoryAccountRepository",
    "InMemoryOneTimeCodeRepository",
    # Audit
    "AuditRecorder",
    "AuthAuditEvent",
    "AuthEventType",
    "InMemoryAuthAuditStore",
    # Exceptions
    "FailureKind",
    "AuthCoreError",
    "NotFoundError",
    "AccountNotFoundError",
    "UnauthorizedError",
    "InvalidCredentialsError",
    "InvalidCodeError",
    "ExpiredCodeError",
    "InvalidTokenError",
    "ExpiredTokenError",
    "RevokedTokenError",
    "ForbiddenError",
    "VerificationRequiredError",
    "PasswordNotSetError",
    "MfaNotEnabledError",
    "MfaMethodNotAllowedError",
    "ConflictError",
    "IdentifierTakenError",
    "AlreadyVerifiedError",
    "MfaAlreadyEnabledError",
    "MfaMethodAlreadyEnabledError",
    "RateLimitedError",
    "AccountLockedError",
    "InvalidRequestError",
    "WeakPasswordError",
    "TransientError",
    "DeliveryError",
    "StorageError",
]

__version__ = "0.1.0"
