"""Resolve a free-form login identifier to an account."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .phone import looks_like_phone, parse_phone_number

if TYPE_CHECKING:
    from .models import Account
    from .ports import IAccountRepository

logger = logging.getLogger("authcore.resolver")


class IdentifierResolver:
    """Maps an email address or phone number, in any common shape, to an account.

    Lookup order, first hit wins:

    1. exact email (lower-cased, trimmed);
    2. the identifier as a literal stored phone;
    3. ``+<country><number>`` split into the stored pair;
    4. the identifier without its leading ``+``;
    5. phone equivalence through the repository's phone-key index.

    Steps 2-5 only run for ``+``-prefixed or all-digit identifiers.
    """

    def __init__(self, accounts: IAccountRepository) -> None:
        self.accounts = accounts

    async def resolve(self, identifier: str | None) -> Account | None:
        """Return the matching account, or ``None``. Never raises."""
        value = (identifier or "").strip()
        if not value:
            return None
        try:
            return await self._resolve(value)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Identifier lookup failed: %s", exc, exc_info=exc)
            return None

    async def _resolve(self, value: str) -> Account | None:
        account = await self.accounts.get_by_email(value.lower())
        if account is not None or not looks_like_phone(value):
            return account

        account = await self.accounts.get_by_phone(value)
        if account is not None:
            return account

        parsed = parse_phone_number(value)
        if parsed.country_code and parsed.phone_number:
            account = await self.accounts.get_by_phone(
                parsed.phone_number, parsed.country_code
            )
            if account is not None:
                return account

        if value.startswith("+"):
            account = await self.accounts.get_by_phone(value[1:])
            if account is not None:
                return account

        account = await self.accounts.find_by_phone_key(value)
        if account is None:
            logger.debug("No account matches the given phone identifier")
        return account


__all__: list[str] = ["IdentifierResolver"]
