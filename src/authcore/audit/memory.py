"""In-memory audit store for testing and development."""

from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING

from ..ports import IAuthAuditStore

if TYPE_CHECKING:
    from .events import AuthAuditEvent, AuthEventType


class InMemoryAuthAuditStore(IAuthAuditStore):
    """In-memory implementation of IAuthAuditStore.

    Note:
        Events are stored in memory and will be lost on restart.
        Not suitable for production use.
    """

    def __init__(self) -> None:
        self._events: list[AuthAuditEvent] = []
        self._by_principal: dict[str, list[int]] = defaultdict(list)

    async def record(self, event: AuthAuditEvent) -> None:
        index = len(self._events)
        self._events.append(event)
        if event.principal_id:
            self._by_principal[event.principal_id].append(index)

    async def get_events(
        self,
        principal_id: str,
        *,
        event_types: list[AuthEventType] | None = None,
        limit: int = 100,
    ) -> list[AuthAuditEvent]:
        """Get audit events for a principal, most recent first."""
        results: list[AuthAuditEvent] = []
        for idx in reversed(self._by_principal.get(principal_id, [])):
            event = self._events[idx]
            if event_types and event.event_type not in event_types:
                continue
            results.append(event)
            if len(results) >= limit:
                break
        return results

    def events(self) -> list[AuthAuditEvent]:
        """All recorded events in insertion order."""
        return list(self._events)

    def clear(self) -> None:
        """Clear all stored events.

        Useful for test cleanup.
        """
        self._events.clear()
        self._by_principal.clear()

    def count(self) -> int:
        return len(self._events)
