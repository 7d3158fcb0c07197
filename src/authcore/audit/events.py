"""Audit events for credential-core operations.

Services record these through an optional :class:`~authcore.ports.IAuthAuditStore`.
Events never carry codes, secrets or password material.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class AuthEventType(Enum):
    """Types of credential-core audit events.

    Event naming follows the pattern: `auth.<resource>.<action>`
    """

    # Login events
    LOGIN_SUCCESS = "auth.login.success"
    LOGIN_FAILED = "auth.login.failed"
    LOGIN_MFA_REQUIRED = "auth.login.mfa_required"

    # Token events
    TOKEN_REFRESHED = "auth.token.refreshed"  # noqa: S105
    TOKENS_REVOKED = "auth.token.revoked_all"  # noqa: S105

    # MFA events
    MFA_ENABLED = "auth.mfa.enabled"
    MFA_METHOD_ADDED = "auth.mfa.method_added"
    MFA_DISABLED = "auth.mfa.disabled"
    MFA_VERIFIED = "auth.mfa.verified"
    MFA_FAILED = "auth.mfa.failed"
    MFA_RESET = "auth.mfa.reset"

    # Password events
    PASSWORD_CHANGED = "auth.password.changed"  # noqa: S105
    PASSWORD_RESET_REQUESTED = "auth.password.reset_requested"  # noqa: S105
    PASSWORD_RESET_COMPLETED = "auth.password.reset_completed"  # noqa: S105

    # Account events
    USER_CREATED = "auth.user.created"
    USER_LOCKED = "auth.user.locked"
    CONTACT_VERIFIED = "auth.user.contact_verified"
    CONTACT_UPDATED = "auth.user.contact_updated"


@dataclass(frozen=True)
class AuthAuditEvent:
    """Credential-core audit event.

    Attributes:
        event_type: The type of event.
        principal_id: Account id the event concerns, if known.
        timestamp: When the event occurred (UTC).
        success: Whether the operation succeeded.
        error_code: Error code if the operation failed.
        error_message: Human-readable failure message.
        metadata: Additional event-specific data.
    """

    event_type: AuthEventType
    principal_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    success: bool = True
    error_code: str | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate event data."""
        if not self.success and not self.error_code:
            object.__setattr__(self, "error_code", "UNKNOWN_ERROR")

    def to_dict(self) -> dict[str, Any]:
        """Convert event to a JSON-serializable dictionary."""
        return {
            "event_type": self.event_type.value,
            "principal_id": self.principal_id,
            "timestamp": self.timestamp.isoformat(),
            "success": self.success,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "metadata": self.metadata,
        }


# ═══════════════════════════════════════════════════════════════
# EVENT FACTORY FUNCTIONS
# ═══════════════════════════════════════════════════════════════


def login_success_event(
    principal_id: str, *, at: datetime, metadata: dict[str, Any] | None = None
) -> AuthAuditEvent:
    return AuthAuditEvent(
        event_type=AuthEventType.LOGIN_SUCCESS,
        principal_id=principal_id,
        timestamp=at,
        metadata=metadata or {},
    )


def login_failed_event(
    *,
    at: datetime,
    principal_id: str | None = None,
    error_code: str = "AUTHENTICATION_FAILED",
    error_message: str | None = None,
) -> AuthAuditEvent:
    """Create a failed login event.

    ``principal_id`` stays None for unknown identifiers.
    """
    return AuthAuditEvent(
        event_type=AuthEventType.LOGIN_FAILED,
        principal_id=principal_id,
        timestamp=at,
        success=False,
        error_code=error_code,
        error_message=error_message,
    )


def account_event(
    event_type: AuthEventType,
    principal_id: str,
    *,
    at: datetime,
    success: bool = True,
    error_code: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> AuthAuditEvent:
    """Create any other account-scoped event."""
    return AuthAuditEvent(
        event_type=event_type,
        principal_id=principal_id,
        timestamp=at,
        success=success,
        error_code=error_code,
        metadata=metadata or {},
    )


__all__: list[str] = [
    "AuthEventType",
    "AuthAuditEvent",
    "login_success_event",
    "login_failed_event",
    "account_event",
]
