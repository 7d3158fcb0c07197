"""Tests for account and one-time code records."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from authcore import Account, Channel, InvalidRequestError, OneTimeCode, Purpose
from authcore.models import parse_methods, serialize_methods

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class TestChannel:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("email", Channel.EMAIL), (" SMS ", Channel.SMS), ("auth_app", Channel.AUTH_APP)],
    )
    def test_parse(self, raw: str, expected: Channel) -> None:
        assert Channel.parse(raw) is expected

    def test_parse_passes_members_through(self) -> None:
        assert Channel.parse(Channel.SMS) is Channel.SMS

    def test_parse_rejects_unknown(self) -> None:
        with pytest.raises(InvalidRequestError, match="Invalid method"):
            Channel.parse("carrier_pigeon")


class TestPurpose:
    def test_wire_values(self) -> None:
        assert Purpose.EMAIL_VERIFICATION.value == "email verification"
        assert Purpose.PASSWORD_RESET.value == "password_reset"
        assert Purpose.MFA_SETUP.value == "2fa_setup"
        assert Purpose.MFA_ADDITIONAL_SETUP.value == "2fa_additional_setup"

    def test_parse_rejects_unknown(self) -> None:
        with pytest.raises(InvalidRequestError):
            Purpose.parse("nonsense")


class TestMethodSerialization:
    def test_parse_keeps_order_and_drops_noise(self) -> None:
        assert parse_methods("sms, email,,bogus,sms") == [Channel.SMS, Channel.EMAIL]

    def test_parse_empty(self) -> None:
        assert parse_methods(None) == []
        assert parse_methods("") == []

    def test_serialize(self) -> None:
        assert serialize_methods([Channel.EMAIL, Channel.AUTH_APP]) == "email,auth_app"


class TestAccount:
    def _account(self, **kwargs: object) -> Account:
        return Account(email="a@example.com", phone="1234567890", country_code="+1", **kwargs)

    def test_defaults(self) -> None:
        account = self._account()
        assert account.token_version == 1
        assert account.login_attempts == 0
        assert account.mfa_methods == []
        assert not account.has_password

    def test_full_phone(self) -> None:
        assert self._account().full_phone == "+11234567890"

    def test_lock_state(self) -> None:
        account = self._account(locked_until=NOW + timedelta(minutes=29, seconds=1))
        assert account.is_locked(NOW)
        assert account.lock_remaining_minutes(NOW) == 30
        assert not account.is_locked(NOW + timedelta(minutes=30))
        assert account.lock_remaining_minutes(NOW + timedelta(minutes=30)) == 0

    def test_naive_datetimes_become_utc(self) -> None:
        account = self._account(locked_until=datetime(2024, 5, 1, 12, 30))
        assert account.locked_until == datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)


class TestOneTimeCode:
    def test_expiry_boundary(self) -> None:
        record = OneTimeCode(
            account_id="acc",
            code="123456",
            channel=Channel.EMAIL,
            purpose="verification",
            expires_at=NOW,
        )
        assert not record.is_expired(NOW - timedelta(seconds=1))
        assert record.is_expired(NOW)
        assert not record.used
