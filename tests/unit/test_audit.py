"""Tests for audit events, the in-memory store and the recorder."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from authcore.audit import (
    AuditRecorder,
    AuthAuditEvent,
    AuthEventType,
    InMemoryAuthAuditStore,
    account_event,
    login_failed_event,
    login_success_event,
)
from authcore.ports import IAuthAuditStore

AT = datetime(2024, 1, 1, tzinfo=timezone.utc)


class TestEvents:
    def test_failed_event_gets_default_error_code(self) -> None:
        event = AuthAuditEvent(event_type=AuthEventType.MFA_FAILED, success=False)
        assert event.error_code == "UNKNOWN_ERROR"

    def test_login_failed_event(self) -> None:
        event = login_failed_event(at=AT, error_code="INVALID_CREDENTIALS")
        assert event.event_type is AuthEventType.LOGIN_FAILED
        assert event.principal_id is None
        assert not event.success

    def test_to_dict(self) -> None:
        event = login_success_event("acc-1", at=AT, metadata={"mfa_verified": True})
        assert event.to_dict() == {
            "event_type": "auth.login.success",
            "principal_id": "acc-1",
            "timestamp": AT.isoformat(),
            "success": True,
            "error_code": None,
            "error_message": None,
            "metadata": {"mfa_verified": True},
        }


class TestInMemoryAuthAuditStore:
    @pytest.mark.asyncio
    async def test_events_most_recent_first(self) -> None:
        store = InMemoryAuthAuditStore()
        assert isinstance(store, IAuthAuditStore)
        await store.record(account_event(AuthEventType.USER_CREATED, "acc-1", at=AT))
        await store.record(account_event(AuthEventType.MFA_ENABLED, "acc-1", at=AT))
        await store.record(account_event(AuthEventType.USER_CREATED, "acc-2", at=AT))

        events = await store.get_events("acc-1")
        assert [e.event_type for e in events] == [
            AuthEventType.MFA_ENABLED,
            AuthEventType.USER_CREATED,
        ]

        filtered = await store.get_events("acc-1", event_types=[AuthEventType.USER_CREATED])
        assert len(filtered) == 1
        assert store.count() == 3

        store.clear()
        assert store.count() == 0


class _BrokenStore:
    async def record(self, event: AuthAuditEvent) -> None:
        raise RuntimeError("audit database down")


class TestAuditRecorder:
    @pytest.mark.asyncio
    async def test_missing_store_is_a_noop(self) -> None:
        await AuditRecorder(None).record(account_event(AuthEventType.USER_LOCKED, "a", at=AT))

    @pytest.mark.asyncio
    async def test_store_failure_is_swallowed_and_logged(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        recorder = AuditRecorder(_BrokenStore())  # type: ignore[arg-type]
        await recorder.record(account_event(AuthEventType.USER_LOCKED, "a", at=AT))
        assert "Failed to record audit event auth.user.locked" in caplog.text
