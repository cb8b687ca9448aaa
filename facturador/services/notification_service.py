"""
notification_service.py — Fire-and-forget delivery of committed documents.

dispatch() schedules the send as a task and returns immediately. Failures
never propagate to the caller: they are logged and emitted on
`delivery_failed(document, channel, address, error)`.
"""

import asyncio
import logging

from facturador.schemas.models import CommittedDocument, NotificationChannel
from facturador.services.ports import NotificationSender
from facturador.utils.signals import Signal

logger = logging.getLogger(__name__)


class NotificationGateway:
    def __init__(self, senders: dict[NotificationChannel, NotificationSender]):
        self.senders = dict(senders)
        self.delivery_failed = Signal("delivery_failed")
        self._pending: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def dispatch(self, document: CommittedDocument, channel: NotificationChannel, address: str) -> asyncio.Task:
        """Schedule a delivery. Must be called from a running event loop."""
        task = asyncio.create_task(
            self._deliver(document, NotificationChannel(channel), address),
            name=f"notify-{channel}-{document.formatted_number}",
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _deliver(self, document: CommittedDocument, channel: NotificationChannel, address: str) -> bool:
        sender = self.senders.get(channel)
        if sender is None:
            self._failed(document, channel, address, f"Canal {channel.value} no configurado")
            return False
        try:
            await sender.send(document, address)
            return True
        except Exception as e:
            self._failed(document, channel, address, str(e))
            return False

    def _failed(self, document: CommittedDocument, channel: NotificationChannel, address: str, error: str) -> None:
        logger.error(f"Delivery failed: {document.formatted_number} via {channel.value} to {address}: {error}")
        self.delivery_failed.emit(document, channel, address, error)

    async def drain(self) -> None:
        """Wait for every pending delivery."""
        if self._pending:
            await asyncio.gather(*list(self._pending))
