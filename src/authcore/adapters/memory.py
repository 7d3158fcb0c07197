"""In-memory repositories for tests and local development.

Each repository guards its state with one ``asyncio.Lock`` so the atomic
operations of the ports are atomic here too. Reads hand out deep copies,
never the stored objects.
"""

from __future__ import annotations

import asyncio
import copy
import secrets
from collections import defaultdict
from datetime import datetime

from ..exceptions import AccountNotFoundError, IdentifierTakenError
from ..models import Account, Channel, OneTimeCode
from ..phone import phone_match_keys
from ..ports import IAccountRepository, IOneTimeCodeRepository


class InMemoryAccountRepository(IAccountRepository):
    """Dict-backed account store with a normalized phone-key index."""

    def __init__(self) -> None:
        self._accounts: dict[str, Account] = {}
        self._phone_index: dict[str, list[str]] = defaultdict(list)
        self._lock = asyncio.Lock()

    # ── reads ────────────────────────────────────────────────────

    async def get(self, account_id: str) -> Account | None:
        account = self._accounts.get(account_id)
        return copy.deepcopy(account) if account else None

    async def get_by_email(self, email: str) -> Account | None:
        for account in self._accounts.values():
            if account.email == email:
                return copy.deepcopy(account)
        return None

    async def get_by_phone(
        self, phone: str, country_code: str | None = None
    ) -> Account | None:
        for account in self._accounts.values():
            if account.phone != phone:
                continue
            if country_code is not None and account.country_code != country_code:
                continue
            return copy.deepcopy(account)
        return None

    async def find_by_phone_key(self, key: str) -> Account | None:
        ids = self._phone_index.get(key.strip())
        if not ids:
            return None
        return copy.deepcopy(self._accounts[ids[0]])

    # ── writes ───────────────────────────────────────────────────

    async def add(self, account: Account) -> None:
        async with self._lock:
            for existing in self._accounts.values():
                if existing.email == account.email:
                    raise IdentifierTakenError("Email is already registered")
                if (existing.phone, existing.country_code) == (
                    account.phone,
                    account.country_code,
                ):
                    raise IdentifierTakenError("Phone number is already registered")
            self._accounts[account.id] = copy.deepcopy(account)
            self._index_phone(account)

    def _index_phone(self, account: Account) -> None:
        for key in phone_match_keys(account.phone, account.country_code):
            if account.id not in self._phone_index[key]:
                self._phone_index[key].append(account.id)

    def _unindex_phone(self, account: Account) -> None:
        for key in phone_match_keys(account.phone, account.country_code):
            ids = self._phone_index.get(key)
            if ids and account.id in ids:
                ids.remove(account.id)
                if not ids:
                    del self._phone_index[key]

    def _require(self, account_id: str) -> Account:
        account = self._accounts.get(account_id)
        if account is None:
            raise AccountNotFoundError()
        return account

    async def record_failed_login(
        self, account_id: str, *, max_attempts: int, lock_until: datetime
    ) -> Account:
        async with self._lock:
            account = self._require(account_id)
            account.login_attempts += 1
            if account.login_attempts >= max_attempts:
                account.locked_until = lock_until
            return copy.deepcopy(account)

    async def reset_login_attempts(self, account_id: str, *, now: datetime) -> Account:
        async with self._lock:
            account = self._require(account_id)
            if not account.is_locked(now):
                account.login_attempts = 0
                account.locked_until = None
            return copy.deepcopy(account)

    async def touch_last_login(self, account_id: str, at: datetime) -> None:
        async with self._lock:
            self._require(account_id).last_login_at = at

    async def update_password(
        self,
        account_id: str,
        password_hash: str,
        *,
        changed_at: datetime,
        clear_lockout: bool = False,
        bump_version: bool = True,
    ) -> int:
        async with self._lock:
            account = self._require(account_id)
            account.password_hash = password_hash
            account.last_password_change = changed_at
            if bump_version:
                account.token_version += 1
            if clear_lockout:
                account.login_attempts = 0
                account.locked_until = None
            return account.token_version

    async def increment_token_version(self, account_id: str) -> int:
        async with self._lock:
            account = self._require(account_id)
            account.token_version += 1
            return account.token_version

    async def enable_mfa_method(
        self, account_id: str, method: Channel, *, secret: str | None = None
    ) -> list[Channel]:
        async with self._lock:
            account = self._require(account_id)
            if method not in account.mfa_methods:
                account.mfa_methods.append(method)
            account.mfa_enabled = True
            if secret is not None:
                account.mfa_secret = secret
            return list(account.mfa_methods)

    async def replace_mfa_methods(self, account_id: str, methods: list[Channel]) -> None:
        async with self._lock:
            account = self._require(account_id)
            account.mfa_methods = list(methods)
            if not methods:
                account.mfa_enabled = False

    async def clear_mfa(self, account_id: str) -> None:
        async with self._lock:
            account = self._require(account_id)
            account.mfa_enabled = False
            account.mfa_secret = None
            account.mfa_methods = []

    async def claim_totp_step(self, account_id: str, step: int) -> bool:
        async with self._lock:
            account = self._require(account_id)
            last = account.mfa_last_totp_step
            if last is not None and step <= last:
                return False
            account.mfa_last_totp_step = step
            return True

    async def mark_verified(self, account_id: str, channel: Channel) -> None:
        async with self._lock:
            account = self._require(account_id)
            if channel is Channel.EMAIL:
                account.is_email_verified = True
            elif channel is Channel.SMS:
                account.is_phone_verified = True

    async def set_pending_contact(
        self,
        account_id: str,
        *,
        email: str | None = None,
        phone: str | None = None,
        country_code: str | None = None,
    ) -> None:
        async with self._lock:
            account = self._require(account_id)
            if email is not None:
                account.pending_email = email
            if phone is not None:
                account.pending_phone = phone
                account.pending_country_code = country_code

    async def apply_pending_contact(self, account_id: str, channel: Channel) -> Account:
        async with self._lock:
            account = self._require(account_id)
            others = [a for a in self._accounts.values() if a.id != account_id]
            if channel is Channel.EMAIL and account.pending_email:
                if any(a.email == account.pending_email for a in others):
                    raise IdentifierTakenError("Email is already registered with another account")
                account.email = account.pending_email
                account.pending_email = None
                account.is_email_verified = True
            elif channel is Channel.SMS and account.pending_phone:
                pair = (account.pending_phone, account.pending_country_code or "")
                if any((a.phone, a.country_code) == pair for a in others):
                    raise IdentifierTakenError(
                        "Phone number is already registered with another account"
                    )
                self._unindex_phone(account)
                account.phone, account.country_code = pair
                account.pending_phone = None
                account.pending_country_code = None
                account.is_phone_verified = True
                self._index_phone(account)
            return copy.deepcopy(account)

    # ── Test helpers ─────────────────────────────────────────────

    def put(self, account: Account) -> None:
        """Store ``account`` as-is, bypassing uniqueness checks."""
        self._accounts[account.id] = copy.deepcopy(account)
        self._index_phone(account)

    def all(self) -> list[Account]:
        return [copy.deepcopy(a) for a in self._accounts.values()]


class InMemoryOneTimeCodeRepository(IOneTimeCodeRepository):
    """List-backed one-time code store.

    ⚠️ WARNING: Codes are stored in plain text in memory.
    Do NOT use in production!
    """

    def __init__(self) -> None:
        self._records: dict[str, OneTimeCode] = {}
        self._lock = asyncio.Lock()

    async def add(self, record: OneTimeCode) -> None:
        async with self._lock:
            self._records[record.id] = copy.deepcopy(record)

    def _newest_first(self, account_id: str) -> list[OneTimeCode]:
        owned = [r for r in self._records.values() if r.account_id == account_id]
        # Insertion order breaks created_at ties, newest last in the dict
        indexed = list(enumerate(owned))
        indexed.sort(key=lambda pair: (pair[1].created_at, pair[0]), reverse=True)
        return [record for _, record in indexed]

    async def latest_unused(
        self,
        account_id: str,
        channel: Channel,
        *,
        code: str | None = None,
        purpose: str | None = None,
    ) -> OneTimeCode | None:
        for record in self._newest_first(account_id):
            if record.used or record.channel is not channel:
                continue
            if purpose is not None and record.purpose != purpose:
                continue
            if code is not None and not secrets.compare_digest(record.code, code):
                continue
            return copy.deepcopy(record)
        return None

    async def mark_used(self, code_id: str) -> bool:
        async with self._lock:
            record = self._records.get(code_id)
            if record is None or record.used:
                return False
            record.used = True
            return True

    async def mark_all_used(
        self, account_id: str, *, purpose: str, channel: Channel | None = None
    ) -> int:
        async with self._lock:
            count = 0
            for record in self._records.values():
                if record.account_id != account_id or record.used:
                    continue
                if record.purpose != purpose:
                    continue
                if channel is not None and record.channel is not channel:
                    continue
                record.used = True
                count += 1
            return count

    async def count_since(
        self,
        account_id: str,
        channel: Channel,
        since: datetime,
        *,
        purpose: str | None = None,
    ) -> int:
        return sum(
            1
            for r in self._records.values()
            if r.account_id == account_id
            and r.channel is channel
            and r.created_at >= since
            and (purpose is None or r.purpose == purpose)
        )

    async def latest_since(
        self, account_id: str, channel: Channel, since: datetime
    ) -> OneTimeCode | None:
        for record in self._newest_first(account_id):
            if record.channel is channel and record.created_at >= since:
                return copy.deepcopy(record)
        return None

    async def delete_expired(self, account_id: str, before: datetime) -> int:
        async with self._lock:
            stale = [
                code_id
                for code_id, r in self._records.items()
                if r.account_id == account_id and r.expires_at < before
            ]
            for code_id in stale:
                del self._records[code_id]
            return len(stale)

    # ── Test helpers ─────────────────────────────────────────────

    def all(self) -> list[OneTimeCode]:
        return [copy.deepcopy(r) for r in self._records.values()]

    def get(self, code_id: str) -> OneTimeCode | None:
        record = self._records.get(code_id)
        return copy.deepcopy(record) if record else None
