"""Test configuration and fixtures."""

from __future__ import annotations

from typing import Any

import pytest

from authcore import (
    Account,
    AuthCoreConfig,
    AuthCoreServices,
    Channel,
    FrozenClock,
    InMemoryAccountRepository,
    InMemoryAuthAuditStore,
    InMemoryOneTimeCodeRepository,
    PasswordHasher,
    PyOtpTotpProvider,
    TokenConfig,
    build_services,
)

PASSWORD = "Str0ng!pass"
OTHER_PASSWORD = "N3w-Passw0rd!"

ACCESS_SECRET = "access-secret-for-tests-0123456789abcdef0123456789abcdef"
REFRESH_SECRET = "refresh-secret-for-tests-0123456789abcdef0123456789abcdef"


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests that run against a SQL engine (aiosqlite)",
    )


class RecordingTransport:
    """Transport double that keeps every delivered code."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []
        self.fail = False

    async def send_code(self, destination: str, code: str, purpose: str) -> None:
        if self.fail:
            raise ConnectionError("gateway unavailable")
        self.sent.append((destination, code, purpose))

    def last_code(self, destination: str | None = None) -> str:
        for sent_to, code, _ in reversed(self.sent):
            if destination is None or sent_to == destination:
                return code
        raise AssertionError(f"no code sent to {destination!r}")


class StubTotpProvider(PyOtpTotpProvider):
    """Real TOTP maths with a cheap placeholder instead of a PNG."""

    def render_provisioning_image(self, uri: str) -> str:
        return f"data:image/png;base64,{uri}"


@pytest.fixture
def clock() -> FrozenClock:
    """Clock frozen at the current wall time.

    JWT libraries check ``exp`` against wall time too, so tests start near now
    and only move forward.
    """
    return FrozenClock()


@pytest.fixture
def config(clock: FrozenClock) -> AuthCoreConfig:
    return AuthCoreConfig(
        tokens=TokenConfig(access_secret=ACCESS_SECRET, refresh_secret=REFRESH_SECRET),
        clock=clock,
    )


@pytest.fixture
def hasher() -> PasswordHasher:
    return PasswordHasher(rounds=4)


@pytest.fixture
def account_repo() -> InMemoryAccountRepository:
    return InMemoryAccountRepository()


@pytest.fixture
def code_repo() -> InMemoryOneTimeCodeRepository:
    return InMemoryOneTimeCodeRepository()


@pytest.fixture
def email_transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def sms_transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def totp() -> StubTotpProvider:
    return StubTotpProvider(issuer="AuthCore Tests")


@pytest.fixture
def audit_store() -> InMemoryAuthAuditStore:
    return InMemoryAuthAuditStore()


@pytest.fixture
def services(
    account_repo: InMemoryAccountRepository,
    code_repo: InMemoryOneTimeCodeRepository,
    email_transport: RecordingTransport,
    sms_transport: RecordingTransport,
    totp: StubTotpProvider,
    hasher: PasswordHasher,
    audit_store: InMemoryAuthAuditStore,
    config: AuthCoreConfig,
) -> AuthCoreServices:
    return build_services(
        accounts=account_repo,
        codes=code_repo,
        transports={Channel.EMAIL: email_transport, Channel.SMS: sms_transport},
        config=config,
        totp=totp,
        hasher=hasher,
        audit_store=audit_store,
    )


@pytest.fixture
def make_account(
    account_repo: InMemoryAccountRepository, hasher: PasswordHasher, clock: FrozenClock
):
    """Store a verified account with ``PASSWORD``; keyword overrides win."""

    def _make(**overrides: Any) -> Account:
        fields: dict[str, Any] = {
            "email": "alice@example.com",
            "phone": "1234567890",
            "country_code": "+1",
            "password_hash": hasher.hash(PASSWORD),
            "is_email_verified": True,
            "is_phone_verified": True,
            "created_at": clock(),
        }
        fields.update(overrides)
        account = Account(**fields)
        account_repo.put(account)
        return account

    return _make
