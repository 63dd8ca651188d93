from __future__ import annotations
import logging
import math
from dataclasses import dataclass
from typing import Any, Optional

from ..core.timeutil import now_utc
from ..domain.interfaces import Repository
from ..domain.models import SYSTEM_ACTUATOR, AuditEntry, TriggeredBy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HistoryPage:
    entries: list[AuditEntry]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


class AuditLog:
    """Append-only history sink. Retention and pruning belong to whoever owns storage."""

    def __init__(self, repo: Repository) -> None:
        self._repo = repo

    async def record(self, entry: AuditEntry) -> None:
        await self._repo.insert_audit(entry)
        logger.info(
            "audit device=%s actuator=%s action=%s %r -> %r by=%s",
            entry.device_id, entry.actuator, entry.action,
            entry.previous_value, entry.new_value, entry.triggered_by.value,
        )

    async def record_system(
        self,
        device_id: str,
        action: str,
        previous_value: Any,
        new_value: Any,
        triggered_by: TriggeredBy,
        reason: str,
        actor_id: Optional[str] = None,
    ) -> None:
        await self.record(
            AuditEntry(
                device_id=device_id,
                actuator=SYSTEM_ACTUATOR,
                action=action,
                previous_value=previous_value,
                new_value=new_value,
                triggered_by=triggered_by,
                reason=reason,
                timestamp=now_utc(),
                actor_id=actor_id,
            )
        )

    async def history(
        self,
        device_id: str,
        actuator: Optional[str] = None,
        triggered_by: Optional[TriggeredBy] = None,
        limit: int = 50,
        page: int = 1,
    ) -> HistoryPage:
        limit = max(1, limit)
        page = max(1, page)
        entries, total = await self._repo.query_audit(
            device_id,
            actuator=actuator,
            triggered_by=triggered_by,
            limit=limit,
            offset=(page - 1) * limit,
        )
        return HistoryPage(entries=entries, page=page, limit=limit, total=total)
