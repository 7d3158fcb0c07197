"""Async SQLAlchemy persistence adapter."""

from __future__ import annotations

from .models import AccountModel, AccountPhoneKeyModel, Base, OneTimeCodeModel
from .repositories import (
    AsyncSessionFactory,
    SQLAlchemyAccountRepository,
    SQLAlchemyOneTimeCodeRepository,
)

__all__: list[str] = [
    "Base",
    "AccountModel",
    "AccountPhoneKeyModel",
    "OneTimeCodeModel",
    "AsyncSessionFactory",
    "SQLAlchemyAccountRepository",
    "SQLAlchemyOneTimeCodeRepository",
]
