"""SQLAlchemy table models for accounts and one-time codes."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Declarative base for the authcore tables."""


class AccountModel(Base):
    """Account row. ``mfa_methods`` holds the comma-joined method list."""

    __tablename__ = "authcore_accounts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    email: Mapped[str] = mapped_column(String(320), unique=True, index=True)
    phone: Mapped[str] = mapped_column(String(32))
    country_code: Mapped[str] = mapped_column(String(8), default="")
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    login_attempts: Mapped[int] = mapped_column(Integer, default=0)
    locked_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    token_version: Mapped[int] = mapped_column(Integer, default=1)
    mfa_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    mfa_methods: Mapped[str] = mapped_column(String(64), default="")
    mfa_secret: Mapped[str | None] = mapped_column(String(64), nullable=True)
    mfa_last_totp_step: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_email_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    is_phone_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    pending_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    pending_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    pending_country_code: Mapped[str | None] = mapped_column(String(8), nullable=True)
    last_login_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_password_change: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("phone", "country_code", name="uq_authcore_accounts_phone"),
    )


class AccountPhoneKeyModel(Base):
    """Normalized phone keys, one row per key an account answers to."""

    __tablename__ = "authcore_account_phone_keys"

    key: Mapped[str] = mapped_column(String(40), primary_key=True)
    account_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("authcore_accounts.id", ondelete="CASCADE"),
        primary_key=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class OneTimeCodeModel(Base):
    """One-time code row."""

    __tablename__ = "authcore_one_time_codes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    account_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("authcore_accounts.id", ondelete="CASCADE")
    )
    code: Mapped[str] = mapped_column(String(16))
    channel: Mapped[str] = mapped_column(String(16))
    purpose: Mapped[str] = mapped_column(String(32))
    secret: Mapped[str | None] = mapped_column(String(64), nullable=True)
    used: Mapped[bool] = mapped_column(Boolean, default=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_authcore_codes_lookup", "account_id", "channel", "used", "created_at"),
    )


__all__: list[str] = [
    "Base",
    "AccountModel",
    "AccountPhoneKeyModel",
    "OneTimeCodeModel",
]
