"""Audit module for credential-core events.

This module provides audit event types and an in-memory store for tracking
logins, lockouts, MFA changes and password changes.
"""

from __future__ import annotations

from .events import (
    AuthAuditEvent,
    AuthEventType,
    account_event,
    login_failed_event,
    login_success_event,
)
from .memory import InMemoryAuthAuditStore
from .recorder import AuditRecorder

__all__: list[str] = [
    # Event types and classes
    "AuthEventType",
    "AuthAuditEvent",
    # Event factory functions
    "login_success_event",
    "login_failed_event",
    "account_event",
    # Store implementations
    "InMemoryAuthAuditStore",
    "AuditRecorder",
]
