"""Storage adapters: in-memory and async SQLAlchemy."""

from __future__ import annotations

from .memory import InMemoryAccountRepository, InMemoryOneTimeCodeRepository

__all__: list[str] = [
    "InMemoryAccountRepository",
    "InMemoryOneTimeCodeRepository",
]
