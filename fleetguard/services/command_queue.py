from __future__ import annotations
import logging
import uuid
from typing import Optional

from ..core.errors import CommandNotDelivered, CommandNotFound, DeliveryFailure
from ..core.timeutil import now_utc
from ..domain.interfaces import Repository
from ..domain.models import (
    Command,
    CommandPayload,
    CommandPriority,
    CommandStatus,
    TriggeredBy,
)
from .audit import AuditLog
from .locks import KeyedLocks

logger = logging.getLogger(__name__)


class CommandQueue:
    """
    Per-device command queue for poll-based delivery.

    Lifecycle: pending -> sent -> acknowledged | failed. A sent command only
    returns to pending through a failed acknowledgment that still has retry
    budget left. Acknowledged and failed are terminal.
    """

    def __init__(self, repo: Repository, audit: AuditLog, max_retries: int = 3) -> None:
        self._repo = repo
        self._audit = audit
        self._max_retries = max_retries
        self._locks = KeyedLocks()

    async def enqueue(
        self,
        device_id: str,
        payload: CommandPayload,
        priority: CommandPriority = CommandPriority.MEDIUM,
        max_retries: Optional[int] = None,
    ) -> Command:
        cmd = Command(
            id=uuid.uuid4().hex,
            device_id=device_id,
            payload=payload,
            priority=priority,
            created_at=now_utc(),
            max_retries=self._max_retries if max_retries is None else max_retries,
        )
        async with self._locks(device_id):
            cmd = await self._repo.insert_command(cmd)
        logger.info(
            "Enqueued %s for %s (priority=%s seq=%d id=%s)",
            payload.device_command, device_id, priority.label, cmd.seq, cmd.id,
        )
        return cmd

    async def pending_for(self, device_id: str) -> list[Command]:
        """
        Delivery point of the poll protocol: returns pending commands, highest
        priority first then oldest first, and marks them sent. Two concurrent
        polls never receive the same command.
        """
        async with self._locks(device_id):
            pending = await self._repo.list_commands(device_id, [CommandStatus.PENDING])
            pending.sort(key=lambda c: (-int(c.priority), c.seq))
            sent_at = now_utc()
            for cmd in pending:
                cmd.status = CommandStatus.SENT
                cmd.sent_at = sent_at
                await self._repo.update_command(cmd)
        if pending:
            logger.info("Delivered %d command(s) to %s", len(pending), device_id)
        return pending

    async def acknowledge(
        self,
        device_id: str,
        command_id: str,
        success: bool,
        error: Optional[str] = None,
    ) -> Command:
        async with self._locks(device_id):
            cmd = await self._repo.get_command(device_id, command_id)
            if cmd is None:
                raise CommandNotFound(device_id, command_id)
            if cmd.status != CommandStatus.SENT:
                raise CommandNotDelivered(device_id, command_id, cmd.status.value)

            now = now_utc()
            cmd.error = error
            failure: Optional[DeliveryFailure] = None
            if success:
                cmd.status = CommandStatus.ACKNOWLEDGED
                cmd.acknowledged_at = now
            else:
                cmd.retry_count += 1
                if cmd.retry_count <= cmd.max_retries:
                    cmd.status = CommandStatus.PENDING
                    cmd.sent_at = None
                    logger.warning(
                        "Command %s on %s failed (%s), retry %d/%d",
                        command_id, device_id, error, cmd.retry_count, cmd.max_retries,
                    )
                else:
                    cmd.status = CommandStatus.FAILED
                    cmd.acknowledged_at = now
                    failure = DeliveryFailure(device_id, command_id, cmd.max_retries, error)
            await self._repo.update_command(cmd)

        if failure is not None:
            logger.error("%s", failure.message)
            await self._audit.record_system(
                device_id,
                "command_failed",
                CommandStatus.SENT.value,
                CommandStatus.FAILED.value,
                TriggeredBy.ALERT,
                f"{cmd.payload.device_command}: {failure.message}",
            )
        return cmd

    async def pending_count(self, device_id: str) -> int:
        return len(await self._repo.list_commands(device_id, [CommandStatus.PENDING]))

    async def list_commands(
        self, device_id: str, status: Optional[CommandStatus] = None
    ) -> list[Command]:
        return await self._repo.list_commands(device_id, [status] if status else None)
