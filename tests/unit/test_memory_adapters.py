"""Tests for the in-memory repositories."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from authcore import (
    Account,
    AccountNotFoundError,
    Channel,
    IdentifierTakenError,
    InMemoryAccountRepository,
    InMemoryOneTimeCodeRepository,
    OneTimeCode,
)
from authcore.ports import IAccountRepository, IOneTimeCodeRepository

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _account(**kwargs: object) -> Account:
    fields: dict[str, object] = {
        "email": "alice@example.com",
        "phone": "1234567890",
        "country_code": "+1",
    }
    fields.update(kwargs)
    return Account(**fields)  # type: ignore[arg-type]


def _code(account_id: str, code: str = "111111", **kwargs: object) -> OneTimeCode:
    fields: dict[str, object] = {
        "account_id": account_id,
        "code": code,
        "channel": Channel.EMAIL,
        "purpose": "verification",
        "expires_at": NOW + timedelta(minutes=2),
        "created_at": NOW,
    }
    fields.update(kwargs)
    return OneTimeCode(**fields)  # type: ignore[arg-type]


class TestInMemoryAccountRepository:
    @pytest.fixture
    def repo(self) -> InMemoryAccountRepository:
        return InMemoryAccountRepository()

    @pytest.mark.asyncio
    async def test_implements_port(self, repo: InMemoryAccountRepository) -> None:
        assert isinstance(repo, IAccountRepository)

    @pytest.mark.asyncio
    async def test_reads_are_detached_copies(self, repo: InMemoryAccountRepository) -> None:
        account = _account()
        await repo.add(account)
        loaded = await repo.get(account.id)
        assert loaded is not None
        loaded.login_attempts = 99
        again = await repo.get(account.id)
        assert again is not None
        assert again.login_attempts == 0

    @pytest.mark.asyncio
    async def test_add_rejects_duplicates(self, repo: InMemoryAccountRepository) -> None:
        await repo.add(_account())
        with pytest.raises(IdentifierTakenError, match="Email"):
            await repo.add(_account(phone="999"))
        with pytest.raises(IdentifierTakenError, match="Phone"):
            await repo.add(_account(email="bob@example.com"))

    @pytest.mark.asyncio
    async def test_phone_lookups(self, repo: InMemoryAccountRepository) -> None:
        account = _account()
        await repo.add(account)

        found = await repo.get_by_phone("1234567890", "+1")
        assert found is not None
        assert found.id == account.id
        assert await repo.get_by_phone("1234567890", "+44") is None
        for key in ("+11234567890", "11234567890", "1234567890"):
            found = await repo.find_by_phone_key(key)
            assert found is not None
            assert found.id == account.id
        assert await repo.find_by_phone_key("+441234567890") is None

    @pytest.mark.asyncio
    async def test_record_failed_login_locks_at_threshold(
        self, repo: InMemoryAccountRepository
    ) -> None:
        account = _account()
        await repo.add(account)
        lock_until = NOW + timedelta(minutes=30)

        for attempt in range(1, 5):
            updated = await repo.record_failed_login(
                account.id, max_attempts=5, lock_until=lock_until
            )
            assert updated.login_attempts == attempt
            assert updated.locked_until is None

        updated = await repo.record_failed_login(account.id, max_attempts=5, lock_until=lock_until)
        assert updated.login_attempts == 5
        assert updated.locked_until == lock_until

        still_locked = await repo.reset_login_attempts(account.id, now=NOW)
        assert (still_locked.login_attempts, still_locked.locked_until) == (5, lock_until)

        reset = await repo.reset_login_attempts(account.id, now=lock_until)
        assert (reset.login_attempts, reset.locked_until) == (0, None)
        stored = await repo.get(account.id)
        assert stored is not None
        assert (stored.login_attempts, stored.locked_until) == (0, None)

    @pytest.mark.asyncio
    async def test_concurrent_failures_are_all_counted(
        self, repo: InMemoryAccountRepository
    ) -> None:
        account = _account()
        await repo.add(account)
        await asyncio.gather(
            *(
                repo.record_failed_login(account.id, max_attempts=50, lock_until=NOW)
                for _ in range(20)
            )
        )
        loaded = await repo.get(account.id)
        assert loaded is not None
        assert loaded.login_attempts == 20

    @pytest.mark.asyncio
    async def test_update_password_bumps_version(self, repo: InMemoryAccountRepository) -> None:
        account = _account(login_attempts=3, locked_until=NOW)
        await repo.add(account)

        assert await repo.update_password(account.id, "h1", changed_at=NOW) == 2
        assert (
            await repo.update_password(account.id, "h2", changed_at=NOW, bump_version=False) == 2
        )
        assert (
            await repo.update_password(account.id, "h3", changed_at=NOW, clear_lockout=True) == 3
        )
        loaded = await repo.get(account.id)
        assert loaded is not None
        assert loaded.password_hash == "h3"
        assert (loaded.login_attempts, loaded.locked_until) == (0, None)
        assert await repo.increment_token_version(account.id) == 4

    @pytest.mark.asyncio
    async def test_mfa_methods_are_additive(self, repo: InMemoryAccountRepository) -> None:
        account = _account()
        await repo.add(account)

        await repo.enable_mfa_method(account.id, Channel.EMAIL)
        methods = await repo.enable_mfa_method(account.id, Channel.AUTH_APP, secret="S3CRET")
        assert methods == [Channel.EMAIL, Channel.AUTH_APP]
        assert await repo.enable_mfa_method(account.id, Channel.EMAIL) == methods

        loaded = await repo.get(account.id)
        assert loaded is not None
        assert loaded.mfa_enabled
        assert loaded.mfa_secret == "S3CRET"

        await repo.clear_mfa(account.id)
        cleared = await repo.get(account.id)
        assert cleared is not None
        assert (cleared.mfa_enabled, cleared.mfa_methods, cleared.mfa_secret) == (
            False,
            [],
            None,
        )

    @pytest.mark.asyncio
    async def test_claim_totp_step_only_moves_forward(
        self, repo: InMemoryAccountRepository
    ) -> None:
        account = _account()
        await repo.add(account)

        assert await repo.claim_totp_step(account.id, 100)
        assert not await repo.claim_totp_step(account.id, 100)
        assert not await repo.claim_totp_step(account.id, 99)
        assert await repo.claim_totp_step(account.id, 101)

        loaded = await repo.get(account.id)
        assert loaded is not None
        assert loaded.mfa_last_totp_step == 101

    @pytest.mark.asyncio
    async def test_concurrent_claims_of_one_step_admit_one(
        self, repo: InMemoryAccountRepository
    ) -> None:
        account = _account()
        await repo.add(account)
        results = await asyncio.gather(
            *(repo.claim_totp_step(account.id, 7) for _ in range(5))
        )
        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_concurrent_enrollments_keep_both_methods(
        self, repo: InMemoryAccountRepository
    ) -> None:
        account = _account()
        await repo.add(account)
        await asyncio.gather(
            repo.enable_mfa_method(account.id, Channel.EMAIL),
            repo.enable_mfa_method(account.id, Channel.SMS),
        )
        loaded = await repo.get(account.id)
        assert loaded is not None
        assert set(loaded.mfa_methods) == {Channel.EMAIL, Channel.SMS}

    @pytest.mark.asyncio
    async def test_apply_pending_phone_reindexes(self, repo: InMemoryAccountRepository) -> None:
        account = _account()
        await repo.add(account)
        await repo.set_pending_contact(account.id, phone="5551234", country_code="+44")

        updated = await repo.apply_pending_contact(account.id, Channel.SMS)
        assert (updated.phone, updated.country_code) == ("5551234", "+44")
        assert updated.pending_phone is None
        assert updated.is_phone_verified
        assert await repo.find_by_phone_key("+11234567890") is None
        found = await repo.find_by_phone_key("+445551234")
        assert found is not None
        assert found.id == account.id

    @pytest.mark.asyncio
    async def test_apply_pending_email_conflict(self, repo: InMemoryAccountRepository) -> None:
        account = _account()
        await repo.add(account)
        await repo.add(_account(email="bob@example.com", phone="999"))
        await repo.set_pending_contact(account.id, email="bob@example.com")

        with pytest.raises(IdentifierTakenError):
            await repo.apply_pending_contact(account.id, Channel.EMAIL)

    @pytest.mark.asyncio
    async def test_unknown_account(self, repo: InMemoryAccountRepository) -> None:
        with pytest.raises(AccountNotFoundError):
            await repo.increment_token_version("missing")


class TestInMemoryOneTimeCodeRepository:
    @pytest.fixture
    def repo(self) -> InMemoryOneTimeCodeRepository:
        return InMemoryOneTimeCodeRepository()

    @pytest.mark.asyncio
    async def test_implements_port(self, repo: InMemoryOneTimeCodeRepository) -> None:
        assert isinstance(repo, IOneTimeCodeRepository)

    @pytest.mark.asyncio
    async def test_latest_unused_prefers_newest(
        self, repo: InMemoryOneTimeCodeRepository
    ) -> None:
        older = _code("acc", "111111")
        newer = _code("acc", "111111", created_at=NOW + timedelta(seconds=5))
        await repo.add(older)
        await repo.add(newer)

        found = await repo.latest_unused("acc", Channel.EMAIL, code="111111")
        assert found is not None
        assert found.id == newer.id
        assert await repo.latest_unused("acc", Channel.SMS) is None
        assert await repo.latest_unused("acc", Channel.EMAIL, code="222222") is None

    @pytest.mark.asyncio
    async def test_insertion_order_breaks_ties(
        self, repo: InMemoryOneTimeCodeRepository
    ) -> None:
        first = _code("acc", "111111")
        second = _code("acc", "222222")
        await repo.add(first)
        await repo.add(second)

        found = await repo.latest_unused("acc", Channel.EMAIL)
        assert found is not None
        assert found.id == second.id

    @pytest.mark.asyncio
    async def test_mark_used_only_once(self, repo: InMemoryOneTimeCodeRepository) -> None:
        record = _code("acc")
        await repo.add(record)

        results = await asyncio.gather(*(repo.mark_used(record.id) for _ in range(5)))
        assert results.count(True) == 1
        assert await repo.mark_used("missing") is False

    @pytest.mark.asyncio
    async def test_mark_all_used_filters(self, repo: InMemoryOneTimeCodeRepository) -> None:
        await repo.add(_code("acc", purpose="password_reset"))
        await repo.add(_code("acc", purpose="password_reset", channel=Channel.SMS))
        await repo.add(_code("acc", purpose="verification"))

        assert await repo.mark_all_used("acc", purpose="password_reset", channel=Channel.SMS) == 1
        assert await repo.mark_all_used("acc", purpose="password_reset") == 1
        assert await repo.latest_unused("acc", Channel.EMAIL, purpose="verification") is not None

    @pytest.mark.asyncio
    async def test_counting_and_latest_since(self, repo: InMemoryOneTimeCodeRepository) -> None:
        await repo.add(_code("acc", created_at=NOW - timedelta(minutes=90)))
        recent = _code("acc", created_at=NOW - timedelta(minutes=10), used=True)
        await repo.add(recent)
        await repo.add(_code("acc", purpose="password_reset"))

        since = NOW - timedelta(hours=1)
        assert await repo.count_since("acc", Channel.EMAIL, since) == 2
        assert await repo.count_since("acc", Channel.EMAIL, since, purpose="verification") == 1

        latest = await repo.latest_since("acc", Channel.EMAIL, NOW - timedelta(minutes=15))
        assert latest is not None
        assert latest.purpose == "password_reset"

    @pytest.mark.asyncio
    async def test_delete_expired(self, repo: InMemoryOneTimeCodeRepository) -> None:
        stale = _code("acc", expires_at=NOW - timedelta(hours=2))
        fresh = _code("acc")
        other = _code("other", expires_at=NOW - timedelta(hours=2))
        for record in (stale, fresh, other):
            await repo.add(record)

        assert await repo.delete_expired("acc", NOW - timedelta(hours=1)) == 1
        assert repo.get(stale.id) is None
        assert repo.get(fresh.id) is not None
        assert repo.get(other.id) is not None
