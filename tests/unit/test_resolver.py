"""Tests for login identifier resolution."""

from __future__ import annotations

import pytest

from authcore import IdentifierResolver, InMemoryAccountRepository


@pytest.fixture
def resolver(account_repo: InMemoryAccountRepository) -> IdentifierResolver:
    return IdentifierResolver(account_repo)


class TestIdentifierResolver:
    @pytest.mark.asyncio
    async def test_email_is_case_insensitive(self, resolver, make_account) -> None:
        account = make_account()
        found = await resolver.resolve("  Alice@Example.COM ")
        assert found is not None
        assert found.id == account.id

    @pytest.mark.asyncio
    @pytest.mark.parametrize("identifier", ["+11234567890", "11234567890", "1234567890"])
    async def test_phone_shapes_resolve_to_the_stored_pair(
        self, resolver, make_account, identifier: str
    ) -> None:
        account = make_account(phone="1234567890", country_code="+1")
        found = await resolver.resolve(identifier)
        assert found is not None
        assert found.id == account.id

    @pytest.mark.asyncio
    async def test_parsed_pair_is_tried(self, resolver, make_account) -> None:
        account = make_account(phone="4567890", country_code="+1123")
        found = await resolver.resolve("+11234567890")
        assert found is not None
        assert found.id == account.id

    @pytest.mark.asyncio
    async def test_literal_stored_phone_with_plus(self, resolver, make_account) -> None:
        account = make_account(phone="+15550001111", country_code="")
        found = await resolver.resolve("+15550001111")
        assert found is not None
        assert found.id == account.id

    @pytest.mark.asyncio
    @pytest.mark.parametrize("identifier", ["", "   ", None, "bob@example.com", "+449999"])
    async def test_unknown_identifiers(self, resolver, make_account, identifier) -> None:
        make_account()
        assert await resolver.resolve(identifier) is None

    @pytest.mark.asyncio
    async def test_non_phone_text_skips_phone_lookups(self, resolver, make_account) -> None:
        make_account(phone="alice", country_code="")
        assert await resolver.resolve("alice") is None

    @pytest.mark.asyncio
    async def test_storage_failure_resolves_to_none(
        self, resolver, account_repo, make_account, monkeypatch
    ) -> None:
        make_account()

        async def broken(*args: object, **kwargs: object) -> None:
            raise RuntimeError("db down")

        monkeypatch.setattr(account_repo, "get_by_email", broken)
        assert await resolver.resolve("alice@example.com") is None
