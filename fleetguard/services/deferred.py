from __future__ import annotations
import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from ..core.timeutil import now_utc
from ..domain.models import ActuatorKind

logger = logging.getLogger(__name__)

Effect = Callable[[], Awaitable[None]]


@dataclass
class Ticket:
    id: int
    device_id: str
    kind: ActuatorKind
    due_at: datetime
    description: str
    task: Optional[asyncio.Task] = field(default=None, repr=False)


class DeferredEffects:
    """
    Cancellable one-shot effects keyed by (device, actuator), e.g. auto-off after
    a run duration or manual-override expiry. At most one ticket per key: a new
    schedule or an explicit cancel drops the previous ticket before it can fire.
    """

    def __init__(self) -> None:
        self._tickets: dict[tuple[str, ActuatorKind], Ticket] = {}
        self._ids = itertools.count(1)

    def schedule(
        self,
        device_id: str,
        kind: ActuatorKind,
        delay_s: float,
        effect: Effect,
        description: str = "",
    ) -> Ticket:
        key = (device_id, kind)
        self.cancel(device_id, kind)
        ticket = Ticket(
            id=next(self._ids),
            device_id=device_id,
            kind=kind,
            due_at=now_utc() + timedelta(seconds=delay_s),
            description=description,
        )
        ticket.task = asyncio.create_task(
            self._run(key, ticket, delay_s, effect), name=f"deferred:{device_id}:{kind.value}"
        )
        self._tickets[key] = ticket
        logger.info("Scheduled %s for %s/%s in %.0fs", description or "effect", device_id, kind.value, delay_s)
        return ticket

    def cancel(self, device_id: str, kind: ActuatorKind) -> bool:
        ticket = self._tickets.pop((device_id, kind), None)
        if ticket is None:
            return False
        if ticket.task is not None:
            ticket.task.cancel()
        logger.info("Cancelled %s for %s/%s", ticket.description or "effect", device_id, kind.value)
        return True

    def get(self, device_id: str, kind: ActuatorKind) -> Optional[Ticket]:
        return self._tickets.get((device_id, kind))

    def pending(self, device_id: Optional[str] = None) -> list[Ticket]:
        return [t for t in self._tickets.values() if device_id is None or t.device_id == device_id]

    async def shutdown(self) -> None:
        tickets = list(self._tickets.values())
        self._tickets.clear()
        for t in tickets:
            if t.task is not None:
                t.task.cancel()
        for t in tickets:
            if t.task is not None:
                try:
                    await t.task
                except asyncio.CancelledError:
                    pass

    async def _run(self, key: tuple[str, ActuatorKind], ticket: Ticket, delay_s: float, effect: Effect) -> None:
        await asyncio.sleep(delay_s)
        # Detach before applying, so the effect's own state change does not cancel it
        if self._tickets.get(key) is not ticket:
            return
        del self._tickets[key]
        try:
            await effect()
        except Exception as e:
            logger.exception("Deferred %s for %s/%s failed: %s", ticket.description, key[0], key[1].value, e)
