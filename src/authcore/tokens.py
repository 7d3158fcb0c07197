"""Signed session tokens bound to the per-account token version.

Three HS256 JWTs are issued with joserfc:

- **access**: identity and verification claims, ``TokenConfig.access_ttl``;
- **refresh**: account id plus ``tokenVersion``, signed with its own secret;
- **challenge**: short-lived, separate audience, carries an account through
  the second login factor without resubmitting the password.

A refresh token is only accepted while its embedded ``tokenVersion`` equals
the account's stored version. Bumping the version revokes every refresh
token issued before the bump.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from joserfc import jwt
from joserfc.errors import ExpiredTokenError as JoseExpiredTokenError
from joserfc.errors import JoseError
from joserfc.jwk import OctKey

from .audit import AuditRecorder, AuthEventType, account_event
from .exceptions import (
    AccountNotFoundError,
    ExpiredTokenError,
    InvalidTokenError,
    RevokedTokenError,
)

if TYPE_CHECKING:
    from .config import AuthCoreConfig
    from .models import Account
    from .ports import IAccountRepository, IAuthAuditStore

logger = logging.getLogger("authcore.tokens")

ACCESS = "access"
REFRESH = "refresh"
CHALLENGE = "mfa_challenge"


@dataclass(frozen=True)
class TokenPair:
    """Access and refresh token issued together."""

    access_token: str
    refresh_token: str
    expires_at: datetime
    refresh_expires_at: datetime
    token_version: int
    expires_in: int
    token_type: str = "Bearer"  # noqa: S105


class TokenService:
    """Issues and validates access, refresh and challenge tokens.

    Example:
        ```python
        tokens = TokenService(accounts=repo, config=config)
        pair = await tokens.issue(account)

        claims = tokens.validate_access(pair.access_token)
        account = await tokens.validate_refresh(pair.refresh_token)
        ```
    """

    def __init__(
        self,
        *,
        accounts: IAccountRepository,
        config: AuthCoreConfig,
        audit_store: IAuthAuditStore | None = None,
    ) -> None:
        self.accounts = accounts
        self.config = config
        self.audit = AuditRecorder(audit_store)
        self._access_key = OctKey.import_key(config.tokens.access_secret)
        self._refresh_key = OctKey.import_key(config.tokens.refresh_secret)

    # ── encoding ─────────────────────────────────────────────────

    def _encode(
        self,
        claims: dict[str, Any],
        key: OctKey,
        *,
        audience: str,
        ttl: timedelta,
    ) -> tuple[str, datetime]:
        now = self.config.now()
        expires_at = now + ttl
        payload = {
            **claims,
            "iss": self.config.tokens.issuer,
            "aud": audience,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": uuid.uuid4().hex,
        }
        header = {"alg": self.config.tokens.algorithm, "typ": "JWT"}
        return jwt.encode(header, payload, key), expires_at

    def _decode(self, token: str, key: OctKey, *, audience: str, kind: str) -> dict[str, Any]:
        if not token:
            raise InvalidTokenError("Token is required")
        try:
            decoded = jwt.decode(token, key, algorithms=[self.config.tokens.algorithm])
            registry = jwt.JWTClaimsRegistry(
                iss={"essential": True, "value": self.config.tokens.issuer},
                aud={"essential": True, "value": audience},
                exp={"essential": True},
                sub={"essential": True},
            )
            registry.validate(decoded.claims)
        except JoseExpiredTokenError as e:
            raise ExpiredTokenError("Token has expired") from e
        except (JoseError, ValueError, TypeError, KeyError) as e:
            raise InvalidTokenError(f"Invalid token: {e}") from e

        claims = dict(decoded.claims)
        # exp is checked against the configured clock as well as wall time
        if int(claims["exp"]) <= int(self.config.now().timestamp()):
            raise ExpiredTokenError("Token has expired")
        if claims.get("type") != kind:
            raise InvalidTokenError(f"Expected a {kind} token")
        return claims

    # ── issuing ──────────────────────────────────────────────────

    async def issue(self, account: Account) -> TokenPair:
        """Issue an access/refresh pair under the account's current version."""
        tokens = self.config.tokens
        access_token, access_expires = self._encode(
            {
                "type": ACCESS,
                "sub": account.id,
                "userId": account.id,
                "email": account.email,
                "phone": account.phone,
                "isEmailVerified": account.is_email_verified,
                "isPhoneVerified": account.is_phone_verified,
            },
            self._access_key,
            audience=tokens.audience,
            ttl=tokens.access_ttl,
        )
        refresh_token, refresh_expires = self._encode(
            {
                "type": REFRESH,
                "sub": account.id,
                "userId": account.id,
                "tokenVersion": account.token_version,
            },
            self._refresh_key,
            audience=tokens.audience,
            ttl=tokens.refresh_ttl,
        )
        logger.debug(
            "Issued tokens for account %s (version %d)", account.id, account.token_version
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=access_expires,
            refresh_expires_at=refresh_expires,
            token_version=account.token_version,
            expires_in=int(tokens.access_ttl.total_seconds()),
        )

    def issue_challenge(self, account: Account) -> str:
        """Issue a second-factor challenge token for ``account``."""
        token, _ = self._encode(
            {"type": CHALLENGE, "sub": account.id, "userId": account.id},
            self._access_key,
            audience=self.config.tokens.challenge_audience,
            ttl=self.config.tokens.challenge_ttl,
        )
        return token

    # ── validation ───────────────────────────────────────────────

    def validate_access(self, token: str) -> dict[str, Any]:
        """Verify an access token and return its claims.

        Raises:
            ExpiredTokenError: Past ``exp``.
            InvalidTokenError: Bad signature, issuer, audience or token type.
        """
        return self._decode(
            token, self._access_key, audience=self.config.tokens.audience, kind=ACCESS
        )

    def validate_challenge(self, token: str) -> str:
        """Verify a challenge token and return the account id it carries."""
        claims = self._decode(
            token,
            self._access_key,
            audience=self.config.tokens.challenge_audience,
            kind=CHALLENGE,
        )
        return str(claims["sub"])

    async def validate_refresh(self, token: str) -> Account:
        """Verify a refresh token against the account's current version.

        Returns:
            The account the token belongs to.

        Raises:
            ExpiredTokenError: Past ``exp``.
            InvalidTokenError: Bad signature, claims, or unknown account.
            RevokedTokenError: The embedded version is stale.
        """
        claims = self._decode(
            token, self._refresh_key, audience=self.config.tokens.audience, kind=REFRESH
        )
        account = await self.accounts.get(str(claims["sub"]))
        if account is None:
            raise InvalidTokenError("Invalid refresh token")

        version = claims.get("tokenVersion")
        if not isinstance(version, int) or version != account.token_version:
            logger.warning(
                "Rejected refresh token for account %s (version %s, current %d)",
                account.id,
                version,
                account.token_version,
            )
            raise RevokedTokenError()
        return account

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Rotate a refresh token into a new pair under the same version."""
        account = await self.validate_refresh(refresh_token)
        pair = await self.issue(account)
        await self.audit.record(
            account_event(AuthEventType.TOKEN_REFRESHED, account.id, at=self.config.now())
        )
        return pair

    async def revoke_all(self, account_id: str) -> int:
        """Bump the token version, revoking every outstanding refresh token.

        Returns:
            The new token version.
        """
        if await self.accounts.get(account_id) is None:
            raise AccountNotFoundError()
        version = await self.accounts.increment_token_version(account_id)
        logger.info("Revoked all sessions for account %s (now version %d)", account_id, version)
        await self.audit.record(
            account_event(
                AuthEventType.TOKENS_REVOKED,
                account_id,
                at=self.config.now(),
                metadata={"token_version": version},
            )
        )
        return version


__all__: list[str] = ["TokenPair", "TokenService"]
