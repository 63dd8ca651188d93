from __future__ import annotations
import asyncio
import logging
from collections import deque
from typing import Optional

import httpx

from ..domain.models import FleetEvent

logger = logging.getLogger(__name__)


class EventBus:
    """
    Fans fleet events out to in-process subscribers, keeps a bounded buffer of
    recent events, and optionally forwards each one to a webhook.

    Delivery problems are logged and never propagate to the publisher: a slow
    dashboard must not stall a liveness sweep.
    """

    def __init__(
        self,
        buffer_size: int = 500,
        webhook_url: Optional[str] = None,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._recent: deque[FleetEvent] = deque(maxlen=buffer_size)
        self._subscribers: list[asyncio.Queue[FleetEvent]] = []
        self._webhook_url = webhook_url
        self._timeout = timeout
        self._transport = transport

    def subscribe(self, maxsize: int = 100) -> asyncio.Queue[FleetEvent]:
        q: asyncio.Queue[FleetEvent] = asyncio.Queue(maxsize=maxsize)
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue[FleetEvent]) -> None:
        if q in self._subscribers:
            self._subscribers.remove(q)

    def recent(self, device_id: Optional[str] = None, limit: int = 100) -> list[FleetEvent]:
        events = [e for e in self._recent if device_id is None or e.device_id == device_id]
        return events[-limit:] if limit > 0 else []

    async def publish(self, event: FleetEvent) -> None:
        self._recent.append(event)
        log = logger.warning if event.severity.value in ("high", "critical") else logger.info
        log("event %s device=%s severity=%s: %s", event.type, event.device_id, event.severity.value, event.message)

        for q in list(self._subscribers):
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Dropping %s for a slow subscriber", event.type)

        if self._webhook_url:
            await self._forward(event)

    async def _forward(self, event: FleetEvent) -> None:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(self._webhook_url, json=event.as_dict())
                resp.raise_for_status()
        except httpx.HTTPError:
            logger.warning(
                "Webhook delivery of %s for %s failed",
                event.type,
                event.device_id,
                exc_info=True,
            )
