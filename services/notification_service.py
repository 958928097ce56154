import os
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

from services.diagnostics import Diagnostics, diagnostics as default_diagnostics

logger = logging.getLogger(__name__)

NOTIFICATION_TYPES = frozenset({
    "created",
    "payment_initiated",
    "deposit_paid",
    "confirmed",
    "fully_paid",
    "completed",
    "reopened",
    "cancelled",
    "receipt",
})


class NotificationSender(Protocol):
    async def send(self, booking: Dict[str, Any], event_type: str) -> None:
        ...


class LoggingNotificationSender:
    """Default sender: writes the notification to the log instead of emailing it"""

    async def send(self, booking: Dict[str, Any], event_type: str) -> None:
        logger.info(
            "Notification %s for booking %s -> %s",
            event_type,
            booking.get("bookingId"),
            booking.get("customerEmail"),
        )


@dataclass
class NotificationTask:
    booking: Dict[str, Any]
    event_type: str
    attempts: int = 0
    queued_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class NotificationDispatcher:
    """
    Outbound notification queue.

    notify() only enqueues, so request handlers never wait on delivery and a
    failed delivery cannot undo a booking update that already happened.
    A background worker drains the queue and retries failed deliveries up to
    max_attempts times, waiting retry_delay * attempts seconds before each
    retry.
    """

    def __init__(
        self,
        sender: Optional[NotificationSender] = None,
        max_attempts: Optional[int] = None,
        max_queue_size: int = 1000,
        diagnostics: Optional[Diagnostics] = None,
        retry_delay: Optional[float] = None,
    ):
        self.sender = sender or LoggingNotificationSender()
        if max_attempts is None:
            max_attempts = int(os.getenv("NOTIFICATION_MAX_ATTEMPTS", "3"))
        self.max_attempts = max(1, max_attempts)
        if retry_delay is None:
            retry_delay = float(os.getenv("NOTIFICATION_RETRY_DELAY", "0.5"))
        self.retry_delay = max(0.0, retry_delay)
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self.diagnostics = diagnostics or default_diagnostics
        self._worker: Optional[asyncio.Task] = None

    def notify(self, booking: Dict[str, Any], event_type: str) -> bool:
        """Queue a notification; returns False if it could not be queued"""
        task = NotificationTask(booking=dict(booking), event_type=event_type)
        try:
            self.queue.put_nowait(task)
            return True
        except asyncio.QueueFull:
            logger.error(
                "Notification queue full, dropping %s for booking %s",
                event_type,
                booking.get("bookingId"),
            )
            self._record(task, "dropped", "queue full")
            return False

    async def deliver(self, task: NotificationTask) -> bool:
        task.attempts += 1
        try:
            await self.sender.send(task.booking, task.event_type)
        except Exception as e:
            logger.warning(
                "Notification %s for booking %s failed (attempt %d/%d): %s",
                task.event_type,
                task.booking.get("bookingId"),
                task.attempts,
                self.max_attempts,
                e,
                exc_info=True,
            )
            if task.attempts < self.max_attempts:
                self._record(task, "retrying", str(e))
                # linear backoff before the task goes back on the queue
                await asyncio.sleep(self.retry_delay * task.attempts)
                try:
                    self.queue.put_nowait(task)
                except asyncio.QueueFull:
                    self._record(task, "dropped", "queue full on retry")
            else:
                self._record(task, "failed", str(e))
            return False

        self._record(task, "sent")
        return True

    async def drain(self):
        """Deliver everything currently queued, including retries"""
        while not self.queue.empty():
            task = self.queue.get_nowait()
            try:
                await self.deliver(task)
            finally:
                self.queue.task_done()

    async def _run(self):
        while True:
            task = await self.queue.get()
            try:
                await self.deliver(task)
            finally:
                self.queue.task_done()

    def start(self):
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run())
            logger.info("Notification dispatcher started")

    async def stop(self):
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        await self.drain()
        logger.info("Notification dispatcher stopped")

    def _record(self, task: NotificationTask, outcome: str, error: Optional[str] = None):
        entry = {
            "bookingId": task.booking.get("bookingId"),
            "type": task.event_type,
            "outcome": outcome,
            "attempts": task.attempts,
        }
        if error:
            entry["error"] = error
        self.diagnostics.record("notifications", **entry)
