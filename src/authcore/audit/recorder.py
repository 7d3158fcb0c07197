"""Best-effort audit recording shared by the services."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..ports import IAuthAuditStore
    from .events import AuthAuditEvent

_logger = logging.getLogger("authcore.audit")


class AuditRecorder:
    """Wraps an optional audit store.

    A missing store makes :meth:`record` a no-op. A failing store is logged
    and never breaks the authentication flow that emitted the event.
    """

    def __init__(self, store: IAuthAuditStore | None = None) -> None:
        self.store = store

    async def record(self, event: AuthAuditEvent) -> None:
        if self.store is None:
            return
        try:
            await self.store.record(event)
        except Exception as exc:  # noqa: BLE001
            _logger.warning(
                "Failed to record audit event %s: %s",
                event.event_type.value,
                exc,
                exc_info=exc,
            )
