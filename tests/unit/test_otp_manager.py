"""Tests for the one-time code lifecycle."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest

from authcore import (
    AuthCoreServices,
    Channel,
    DeliveryError,
    ExpiredCodeError,
    InvalidCodeError,
    InvalidRequestError,
    OtpManager,
    Purpose,
)


@pytest.fixture
def otp(services: AuthCoreServices) -> OtpManager:
    return services.otp


class TestIssue:
    @pytest.mark.asyncio
    async def test_email_code_is_persisted_then_sent(
        self, otp, make_account, code_repo, email_transport
    ) -> None:
        account = make_account()
        issued = await otp.issue(account, Channel.EMAIL, Purpose.PASSWORD_RESET)

        assert issued.success
        assert issued.channel is Channel.EMAIL
        assert issued.purpose == "password_reset"
        assert issued.secret is None

        destination, code, purpose = email_transport.sent[-1]
        assert destination == "alice@example.com"
        assert purpose == "password_reset"
        assert len(code) == 6
        assert code.isdigit()

        record = code_repo.get(issued.code_id)
        assert record.code == code
        assert not record.used
        assert record.expires_at - record.created_at == timedelta(minutes=2)

    @pytest.mark.asyncio
    async def test_sms_goes_to_full_phone(self, otp, make_account, sms_transport) -> None:
        await otp.issue(make_account(), "sms", "phone verification")
        assert sms_transport.sent[-1][0] == "+11234567890"

    @pytest.mark.asyncio
    async def test_destination_override(self, otp, make_account, email_transport) -> None:
        await otp.issue(
            make_account(), Channel.EMAIL, Purpose.EMAIL_UPDATE, destination="new@example.com"
        )
        assert email_transport.sent[-1][0] == "new@example.com"

    @pytest.mark.asyncio
    async def test_auth_app_returns_secret_and_qr(
        self, otp, make_account, code_repo, email_transport, sms_transport
    ) -> None:
        issued = await otp.issue(make_account(), Channel.AUTH_APP, Purpose.MFA_SETUP)

        assert issued.secret
        assert issued.qr_code.startswith("data:image/png;base64,")
        assert code_repo.get(issued.code_id).secret == issued.secret
        assert email_transport.sent == []
        assert sms_transport.sent == []

    @pytest.mark.asyncio
    async def test_transport_failure_keeps_record(
        self, otp, make_account, code_repo, email_transport
    ) -> None:
        email_transport.fail = True
        with pytest.raises(DeliveryError):
            await otp.issue(make_account(), Channel.EMAIL)
        assert len(code_repo.all()) == 1

    @pytest.mark.asyncio
    async def test_transport_timeout(self, make_account, code_repo, totp, config) -> None:
        class SlowTransport:
            async def send_code(self, destination: str, code: str, purpose: str) -> None:
                await asyncio.sleep(1)

        otp = OtpManager(
            codes=code_repo,
            transports={Channel.EMAIL: SlowTransport()},
            totp=totp,
            config=replace(config, transport_timeout_seconds=0.01),
        )
        with pytest.raises(DeliveryError, match="Timed out"):
            await otp.issue(make_account(), Channel.EMAIL)
        assert len(code_repo.all()) == 1

    @pytest.mark.asyncio
    async def test_missing_transport(self, make_account, code_repo, totp, config) -> None:
        otp = OtpManager(codes=code_repo, transports={}, totp=totp, config=config)
        with pytest.raises(InvalidRequestError, match="No transport configured for sms"):
            await otp.issue(make_account(), Channel.SMS)

    @pytest.mark.asyncio
    async def test_unknown_channel(self, otp, make_account) -> None:
        with pytest.raises(InvalidRequestError):
            await otp.issue(make_account(), "fax")


class TestVerify:
    @pytest.mark.asyncio
    async def test_code_is_consumed_once(self, otp, make_account, email_transport) -> None:
        account = make_account()
        await otp.issue(account, Channel.EMAIL, Purpose.PASSWORD_RESET)
        code = email_transport.last_code()

        record = await otp.verify(account.id, code, Channel.EMAIL, purpose=Purpose.PASSWORD_RESET)
        assert record.used
        assert record.purpose == "password_reset"

        with pytest.raises(InvalidCodeError):
            await otp.verify(account.id, code, Channel.EMAIL, purpose=Purpose.PASSWORD_RESET)

    @pytest.mark.asyncio
    async def test_concurrent_verification_has_one_winner(
        self, otp, make_account, email_transport
    ) -> None:
        account = make_account()
        await otp.issue(account, Channel.EMAIL)
        code = email_transport.last_code()

        results = await asyncio.gather(
            *(otp.verify(account.id, code, Channel.EMAIL) for _ in range(5)),
            return_exceptions=True,
        )
        assert sum(1 for r in results if not isinstance(r, Exception)) == 1
        assert all(isinstance(r, InvalidCodeError) for r in results if isinstance(r, Exception))

    @pytest.mark.asyncio
    async def test_wrong_code_purpose_or_channel(
        self, otp, make_account, email_transport
    ) -> None:
        account = make_account()
        await otp.issue(account, Channel.EMAIL, Purpose.EMAIL_VERIFICATION)
        code = email_transport.last_code()

        with pytest.raises(InvalidCodeError):
            await otp.verify(account.id, "", Channel.EMAIL)
        with pytest.raises(InvalidCodeError):
            await otp.verify(account.id, code, Channel.SMS)
        with pytest.raises(InvalidCodeError):
            await otp.verify(account.id, code, Channel.EMAIL, purpose=Purpose.PASSWORD_RESET)

        # still usable after the failed attempts
        await otp.verify(account.id, code, Channel.EMAIL, purpose=Purpose.EMAIL_VERIFICATION)

    @pytest.mark.asyncio
    async def test_expired_code_is_marked_used(
        self, otp, make_account, email_transport, code_repo, clock
    ) -> None:
        account = make_account()
        issued = await otp.issue(account, Channel.EMAIL, Purpose.PASSWORD_RESET)
        code = email_transport.last_code()

        clock.advance(minutes=3)
        with pytest.raises(ExpiredCodeError):
            await otp.verify(account.id, code, Channel.EMAIL, purpose=Purpose.PASSWORD_RESET)
        assert code_repo.get(issued.code_id).used

        with pytest.raises(InvalidCodeError) as exc_info:
            await otp.verify(account.id, code, Channel.EMAIL, purpose=Purpose.PASSWORD_RESET)
        assert not isinstance(exc_info.value, ExpiredCodeError)

    @pytest.mark.asyncio
    async def test_auth_app_checks_totp_of_latest_record(
        self, otp, make_account, totp, clock
    ) -> None:
        account = make_account()
        issued = await otp.generate_secret_for_2fa(account)
        assert issued.purpose == "2fa_setup"

        with pytest.raises(InvalidCodeError):
            await otp.verify(account.id, "000000", Channel.AUTH_APP, purpose=Purpose.MFA_SETUP)

        code = totp.current_code(issued.secret, for_time=clock())
        record = await otp.verify(account.id, code, Channel.AUTH_APP, purpose=Purpose.MFA_SETUP)
        assert record.secret == issued.secret

    @pytest.mark.asyncio
    async def test_enrollment_record_lifetime(self, otp, make_account, code_repo) -> None:
        issued = await otp.generate_secret_for_2fa(make_account())
        record = code_repo.get(issued.code_id)
        assert record.code == "000000"
        assert record.expires_at - record.created_at == timedelta(minutes=10)

    @pytest.mark.asyncio
    async def test_invalidate(self, otp, make_account, email_transport) -> None:
        account = make_account()
        await otp.issue(account, Channel.EMAIL, Purpose.PASSWORD_RESET)
        code = email_transport.last_code()

        assert await otp.invalidate(account.id, Purpose.PASSWORD_RESET) == 1
        with pytest.raises(InvalidCodeError):
            await otp.verify(account.id, code, Channel.EMAIL, purpose=Purpose.PASSWORD_RESET)


class TestHousekeeping:
    @pytest.mark.asyncio
    async def test_count_recent(self, otp, make_account, clock) -> None:
        account = make_account()
        await otp.issue(account, Channel.EMAIL, Purpose.PASSWORD_RESET)
        clock.advance(minutes=61)
        await otp.issue(account, Channel.EMAIL, Purpose.PASSWORD_RESET)
        await otp.issue(account, Channel.EMAIL, Purpose.VERIFICATION)

        since = clock() - timedelta(hours=1)
        resets = await otp.count_recent(account.id, Channel.EMAIL, Purpose.PASSWORD_RESET, since)
        assert resets == 1
        assert await otp.count_recent(account.id, Channel.EMAIL, None, since) == 2

    @pytest.mark.asyncio
    async def test_count_recent_storage_failure_counts_zero(
        self, otp, make_account, code_repo, monkeypatch
    ) -> None:
        async def broken(*args: object, **kwargs: object) -> int:
            raise RuntimeError("db down")

        monkeypatch.setattr(code_repo, "count_since", broken)
        account = make_account()
        assert await otp.count_recent(account.id, Channel.EMAIL, None, account.created_at) == 0

    @pytest.mark.asyncio
    async def test_expired_records_are_kept_for_the_retention_window(
        self, otp, make_account, code_repo, clock
    ) -> None:
        account = make_account()
        first = await otp.issue(account, Channel.EMAIL)

        clock.advance(minutes=30)
        await otp.issue(account, Channel.EMAIL)
        assert code_repo.get(first.code_id) is not None

        clock.advance(minutes=40)
        await otp.issue(account, Channel.EMAIL)
        assert code_repo.get(first.code_id) is None
        assert len(code_repo.all()) == 2

    @pytest.mark.asyncio
    async def test_cleanup_failure_does_not_block_issue(
        self, otp, make_account, code_repo, monkeypatch
    ) -> None:
        async def broken(*args: object, **kwargs: object) -> int:
            raise RuntimeError("db down")

        monkeypatch.setattr(code_repo, "delete_expired", broken)
        issued = await otp.issue(make_account(), Channel.EMAIL)
        assert issued.success


class TestTotpSteps:
    def test_match_step_reports_the_counter_of_the_code(self, totp, clock) -> None:
        secret = totp.new_secret("alice@example.com").secret
        now = clock()
        step = int(now.timestamp()) // totp.interval
        earlier = totp.current_code(secret, for_time=now - timedelta(seconds=60))

        assert totp.match_step(secret, earlier, 2, for_time=now) == step - 2
        assert totp.verify(secret, earlier, 2, for_time=now)

    def test_match_step_rejects_malformed_codes(self, totp, clock) -> None:
        secret = totp.new_secret("alice@example.com").secret
        assert totp.match_step(secret, "12ab56", 2, for_time=clock()) is None
        assert totp.match_step(secret, "1234567", 2, for_time=clock()) is None
