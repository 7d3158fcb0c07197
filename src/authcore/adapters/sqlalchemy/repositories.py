"""Async SQLAlchemy repositories.

Every counter, version and MFA change is one ``UPDATE`` with SQL-side
arithmetic or a conditional ``WHERE``, re-read inside the same transaction.
The repositories own their sessions: each call opens one from the factory,
commits and closes it.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import case, delete, func, literal, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ...exceptions import AccountNotFoundError, IdentifierTakenError, StorageError
from ...models import (
    Account,
    Channel,
    OneTimeCode,
    parse_methods,
    serialize_methods,
)
from ...phone import phone_match_keys
from ...ports import IAccountRepository, IOneTimeCodeRepository
from .models import AccountModel, AccountPhoneKeyModel, OneTimeCodeModel

AsyncSessionFactory = Callable[[], AsyncSession]

logger = logging.getLogger("authcore.persistence")

_MAX_CAS_RETRIES = 5


def _utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _rowcount(result: Any) -> int:
    # CursorResult.rowcount; Result type stubs may not expose it
    return int(getattr(result, "rowcount", 0) or 0)


class _SessionScope:
    def __init__(self, session_factory: AsyncSessionFactory) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except IntegrityError:
                await session.rollback()
                raise
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.exception("Storage operation failed")
                raise StorageError(f"Storage operation failed: {exc}") from exc
            except BaseException:
                await session.rollback()
                raise


# ═══════════════════════════════════════════════════════════════
# ACCOUNTS
# ═══════════════════════════════════════════════════════════════


def _to_account(row: AccountModel) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        phone=row.phone,
        country_code=row.country_code or "",
        password_hash=row.password_hash,
        login_attempts=row.login_attempts or 0,
        locked_until=row.locked_until,
        token_version=row.token_version,
        mfa_enabled=bool(row.mfa_enabled),
        mfa_methods=parse_methods(row.mfa_methods),
        mfa_secret=row.mfa_secret,
        mfa_last_totp_step=row.mfa_last_totp_step,
        is_email_verified=bool(row.is_email_verified),
        is_phone_verified=bool(row.is_phone_verified),
        pending_email=row.pending_email,
        pending_phone=row.pending_phone,
        pending_country_code=row.pending_country_code,
        last_login_at=row.last_login_at,
        last_password_change=row.last_password_change,
        created_at=row.created_at,
    )


class SQLAlchemyAccountRepository(_SessionScope, IAccountRepository):
    """Account repository on an async SQLAlchemy engine.

    Example:
        ```python
        engine = create_async_engine("postgresql+asyncpg://...")
        factory = async_sessionmaker(engine, expire_on_commit=False)
        accounts = SQLAlchemyAccountRepository(factory)
        ```
    """

    # ── reads ────────────────────────────────────────────────────

    async def _fetch(self, session: AsyncSession, account_id: str) -> AccountModel:
        stmt = (
            select(AccountModel)
            .where(AccountModel.id == account_id)
            .execution_options(populate_existing=True)
        )
        row = (await session.execute(stmt)).scalar_one_or_none()
        if row is None:
            raise AccountNotFoundError()
        return row

    async def _first(self, stmt: Any) -> Account | None:
        async with self._session() as session:
            row = (await session.execute(stmt.limit(1))).scalars().first()
            return _to_account(row) if row else None

    async def get(self, account_id: str) -> Account | None:
        return await self._first(select(AccountModel).where(AccountModel.id == account_id))

    async def get_by_email(self, email: str) -> Account | None:
        return await self._first(select(AccountModel).where(AccountModel.email == email))

    async def get_by_phone(
        self, phone: str, country_code: str | None = None
    ) -> Account | None:
        stmt = select(AccountModel).where(AccountModel.phone == phone)
        if country_code is not None:
            stmt = stmt.where(AccountModel.country_code == country_code)
        return await self._first(stmt.order_by(AccountModel.created_at))

    async def find_by_phone_key(self, key: str) -> Account | None:
        stmt = (
            select(AccountModel)
            .join(AccountPhoneKeyModel, AccountPhoneKeyModel.account_id == AccountModel.id)
            .where(AccountPhoneKeyModel.key == key.strip())
            .order_by(AccountModel.created_at, AccountModel.id)
        )
        return await self._first(stmt)

    # ── writes ───────────────────────────────────────────────────

    def _phone_key_rows(
        self, account_id: str, phone: str, country_code: str
    ) -> list[AccountPhoneKeyModel]:
        return [
            AccountPhoneKeyModel(key=key, account_id=account_id)
            for key in sorted(phone_match_keys(phone, country_code))
        ]

    async def add(self, account: Account) -> None:
        try:
            async with self._session() as session:
                taken = await session.execute(
                    select(AccountModel.email, AccountModel.phone, AccountModel.country_code)
                    .where(
                        (AccountModel.email == account.email)
                        | (
                            (AccountModel.phone == account.phone)
                            & (AccountModel.country_code == account.country_code)
                        )
                    )
                    .limit(1)
                )
                existing = taken.first()
                if existing is not None:
                    if existing.email == account.email:
                        raise IdentifierTakenError("Email is already registered")
                    raise IdentifierTakenError("Phone number is already registered")

                session.add(
                    AccountModel(
                        id=account.id,
                        email=account.email,
                        phone=account.phone,
                        country_code=account.country_code,
                        password_hash=account.password_hash,
                        login_attempts=account.login_attempts,
                        locked_until=_utc(account.locked_until),
                        token_version=account.token_version,
                        mfa_enabled=account.mfa_enabled,
                        mfa_methods=serialize_methods(account.mfa_methods),
                        mfa_secret=account.mfa_secret,
                        mfa_last_totp_step=account.mfa_last_totp_step,
                        is_email_verified=account.is_email_verified,
                        is_phone_verified=account.is_phone_verified,
                        pending_email=account.pending_email,
                        pending_phone=account.pending_phone,
                        pending_country_code=account.pending_country_code,
                        last_login_at=_utc(account.last_login_at),
                        last_password_change=_utc(account.last_password_change),
                        created_at=_utc(account.created_at),
                    )
                )
                await session.flush()
                session.add_all(
                    self._phone_key_rows(account.id, account.phone, account.country_code)
                )
        except IntegrityError as exc:
            raise IdentifierTakenError("Email or phone number is already registered") from exc
        logger.debug("Inserted account %s", account.id)

    async def _update(self, session: AsyncSession, account_id: str, **values: Any) -> None:
        stmt = (
            update(AccountModel)
            .where(AccountModel.id == account_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if _rowcount(await session.execute(stmt)) == 0:
            raise AccountNotFoundError()

    async def record_failed_login(
        self, account_id: str, *, max_attempts: int, lock_until: datetime
    ) -> Account:
        async with self._session() as session:
            await self._update(
                session,
                account_id,
                login_attempts=AccountModel.login_attempts + 1,
                locked_until=case(
                    (
                        AccountModel.login_attempts + 1 >= max_attempts,
                        literal(_utc(lock_until), AccountModel.locked_until.type),
                    ),
                    else_=AccountModel.locked_until,
                ),
            )
            return _to_account(await self._fetch(session, account_id))

    async def reset_login_attempts(self, account_id: str, *, now: datetime) -> Account:
        stmt = (
            update(AccountModel)
            .where(
                AccountModel.id == account_id,
                AccountModel.locked_until.is_(None) | (AccountModel.locked_until <= _utc(now)),
            )
            .values(login_attempts=0, locked_until=None)
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            # zero rows means missing or still locked; the re-read tells which
            await session.execute(stmt)
            return _to_account(await self._fetch(session, account_id))

    async def touch_last_login(self, account_id: str, at: datetime) -> None:
        async with self._session() as session:
            await self._update(session, account_id, last_login_at=_utc(at))

    async def update_password(
        self,
        account_id: str,
        password_hash: str,
        *,
        changed_at: datetime,
        clear_lockout: bool = False,
        bump_version: bool = True,
    ) -> int:
        values: dict[str, Any] = {
            "password_hash": password_hash,
            "last_password_change": _utc(changed_at),
        }
        if bump_version:
            values["token_version"] = AccountModel.token_version + 1
        if clear_lockout:
            values.update(login_attempts=0, locked_until=None)
        async with self._session() as session:
            await self._update(session, account_id, **values)
            return (await self._fetch(session, account_id)).token_version

    async def increment_token_version(self, account_id: str) -> int:
        async with self._session() as session:
            await self._update(
                session, account_id, token_version=AccountModel.token_version + 1
            )
            return (await self._fetch(session, account_id)).token_version

    async def enable_mfa_method(
        self, account_id: str, method: Channel, *, secret: str | None = None
    ) -> list[Channel]:
        # Compare-and-swap on the serialized list so concurrent enrollments
        # never drop each other's method
        for _ in range(_MAX_CAS_RETRIES):
            async with self._session() as session:
                row = await self._fetch(session, account_id)
                current = row.mfa_methods or ""
                methods = parse_methods(current)
                if method not in methods:
                    methods.append(method)
                values: dict[str, Any] = {
                    "mfa_enabled": True,
                    "mfa_methods": serialize_methods(methods),
                }
                if secret is not None:
                    values["mfa_secret"] = secret
                stmt = (
                    update(AccountModel)
                    .where(AccountModel.id == account_id, AccountModel.mfa_methods == current)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if _rowcount(await session.execute(stmt)) == 1:
                    return methods
            logger.debug("Retrying MFA method update for account %s", account_id)
        raise StorageError("MFA methods changed concurrently, giving up")

    async def replace_mfa_methods(self, account_id: str, methods: list[Channel]) -> None:
        values: dict[str, Any] = {"mfa_methods": serialize_methods(methods)}
        if not methods:
            values["mfa_enabled"] = False
        async with self._session() as session:
            await self._update(session, account_id, **values)

    async def clear_mfa(self, account_id: str) -> None:
        async with self._session() as session:
            await self._update(
                session, account_id, mfa_enabled=False, mfa_secret=None, mfa_methods=""
            )

    async def claim_totp_step(self, account_id: str, step: int) -> bool:
        stmt = (
            update(AccountModel)
            .where(
                AccountModel.id == account_id,
                AccountModel.mfa_last_totp_step.is_(None)
                | (AccountModel.mfa_last_totp_step < step),
            )
            .values(mfa_last_totp_step=step)
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            return _rowcount(await session.execute(stmt)) == 1

    async def mark_verified(self, account_id: str, channel: Channel) -> None:
        if channel is Channel.EMAIL:
            values = {"is_email_verified": True}
        elif channel is Channel.SMS:
            values = {"is_phone_verified": True}
        else:
            return
        async with self._session() as session:
            await self._update(session, account_id, **values)

    async def set_pending_contact(
        self,
        account_id: str,
        *,
        email: str | None = None,
        phone: str | None = None,
        country_code: str | None = None,
    ) -> None:
        values: dict[str, Any] = {}
        if email is not None:
            values["pending_email"] = email
        if phone is not None:
            values.update(pending_phone=phone, pending_country_code=country_code)
        if not values:
            return
        async with self._session() as session:
            await self._update(session, account_id, **values)

    async def apply_pending_contact(self, account_id: str, channel: Channel) -> Account:
        try:
            async with self._session() as session:
                row = await self._fetch(session, account_id)
                if channel is Channel.EMAIL and row.pending_email:
                    await self._update(
                        session,
                        account_id,
                        email=row.pending_email,
                        pending_email=None,
                        is_email_verified=True,
                    )
                elif channel is Channel.SMS and row.pending_phone:
                    phone = row.pending_phone
                    country_code = row.pending_country_code or ""
                    await self._update(
                        session,
                        account_id,
                        phone=phone,
                        country_code=country_code,
                        pending_phone=None,
                        pending_country_code=None,
                        is_phone_verified=True,
                    )
                    await session.execute(
                        delete(AccountPhoneKeyModel).where(
                            AccountPhoneKeyModel.account_id == account_id
                        )
                    )
                    session.add_all(self._phone_key_rows(account_id, phone, country_code))
                    await session.flush()
                return _to_account(await self._fetch(session, account_id))
        except IntegrityError as exc:
            raise IdentifierTakenError(
                f"{'Email' if channel is Channel.EMAIL else 'Phone number'} "
                "is already registered with another account"
            ) from exc


# ═══════════════════════════════════════════════════════════════
# ONE-TIME CODES
# ═══════════════════════════════════════════════════════════════


def _to_code(row: OneTimeCodeModel) -> OneTimeCode:
    return OneTimeCode(
        id=row.id,
        account_id=row.account_id,
        code=row.code,
        channel=Channel(row.channel),
        purpose=row.purpose,
        secret=row.secret,
        used=bool(row.used),
        expires_at=row.expires_at,
        created_at=row.created_at,
    )


class SQLAlchemyOneTimeCodeRepository(_SessionScope, IOneTimeCodeRepository):
    """One-time code repository on an async SQLAlchemy engine."""

    async def add(self, record: OneTimeCode) -> None:
        async with self._session() as session:
            session.add(
                OneTimeCodeModel(
                    id=record.id,
                    account_id=record.account_id,
                    code=record.code,
                    channel=record.channel.value,
                    purpose=record.purpose,
                    secret=record.secret,
                    used=record.used,
                    expires_at=_utc(record.expires_at),
                    created_at=_utc(record.created_at),
                )
            )

    async def latest_unused(
        self,
        account_id: str,
        channel: Channel,
        *,
        code: str | None = None,
        purpose: str | None = None,
    ) -> OneTimeCode | None:
        stmt = select(OneTimeCodeModel).where(
            OneTimeCodeModel.account_id == account_id,
            OneTimeCodeModel.channel == channel.value,
            OneTimeCodeModel.used.is_(False),
        )
        if code is not None:
            stmt = stmt.where(OneTimeCodeModel.code == code)
        if purpose is not None:
            stmt = stmt.where(OneTimeCodeModel.purpose == purpose)
        stmt = stmt.order_by(OneTimeCodeModel.created_at.desc()).limit(1)
        async with self._session() as session:
            row = (await session.execute(stmt)).scalars().first()
            return _to_code(row) if row else None

    async def mark_used(self, code_id: str) -> bool:
        stmt = (
            update(OneTimeCodeModel)
            .where(OneTimeCodeModel.id == code_id, OneTimeCodeModel.used.is_(False))
            .values(used=True)
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            return _rowcount(await session.execute(stmt)) == 1

    async def mark_all_used(
        self, account_id: str, *, purpose: str, channel: Channel | None = None
    ) -> int:
        stmt = update(OneTimeCodeModel).where(
            OneTimeCodeModel.account_id == account_id,
            OneTimeCodeModel.purpose == purpose,
            OneTimeCodeModel.used.is_(False),
        )
        if channel is not None:
            stmt = stmt.where(OneTimeCodeModel.channel == channel.value)
        stmt = stmt.values(used=True).execution_options(synchronize_session=False)
        async with self._session() as session:
            return _rowcount(await session.execute(stmt))

    async def count_since(
        self,
        account_id: str,
        channel: Channel,
        since: datetime,
        *,
        purpose: str | None = None,
    ) -> int:
        stmt = select(func.count()).select_from(OneTimeCodeModel).where(
            OneTimeCodeModel.account_id == account_id,
            OneTimeCodeModel.channel == channel.value,
            OneTimeCodeModel.created_at >= _utc(since),
        )
        if purpose is not None:
            stmt = stmt.where(OneTimeCodeModel.purpose == purpose)
        async with self._session() as session:
            return int((await session.execute(stmt)).scalar_one())

    async def latest_since(
        self, account_id: str, channel: Channel, since: datetime
    ) -> OneTimeCode | None:
        stmt = (
            select(OneTimeCodeModel)
            .where(
                OneTimeCodeModel.account_id == account_id,
                OneTimeCodeModel.channel == channel.value,
                OneTimeCodeModel.created_at >= _utc(since),
            )
            .order_by(OneTimeCodeModel.created_at.desc())
            .limit(1)
        )
        async with self._session() as session:
            row = (await session.execute(stmt)).scalars().first()
            return _to_code(row) if row else None

    async def delete_expired(self, account_id: str, before: datetime) -> int:
        stmt = delete(OneTimeCodeModel).where(
            OneTimeCodeModel.account_id == account_id,
            OneTimeCodeModel.expires_at < _utc(before),
        )
        async with self._session() as session:
            return _rowcount(await session.execute(stmt))


__all__: list[str] = [
    "AsyncSessionFactory",
    "SQLAlchemyAccountRepository",
    "SQLAlchemyOneTimeCodeRepository",
]
