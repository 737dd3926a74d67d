"""Background mail dispatcher: request handlers enqueue, one worker task delivers.

``enqueue`` never blocks and never raises, so a slow or broken mail provider
can not delay or fail an HTTP response. Failed deliveries are logged and
counted; there is no retry.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from helpdesk.config import settings
from helpdesk.observability.metrics import metrics
from helpdesk.services import mailer

logger = logging.getLogger("helpdesk.mail_dispatcher")

SendFunc = Callable[..., Awaitable[None]]


@dataclass(frozen=True)
class MailMessage:
    kind: str
    recipient: str
    variables: dict = field(default_factory=dict)
    lang: str = "en"


class MailDispatcher:
    """Asyncio queue drained by a single background task inside the app's event loop."""

    def __init__(self, maxsize: int = 1000, send: Optional[SendFunc] = None) -> None:
        self._maxsize = maxsize
        self._send = send or mailer.send
        self._queue: Optional[asyncio.Queue[MailMessage]] = None
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    def _ensure_queue(self) -> asyncio.Queue[MailMessage]:
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self._maxsize)
        return self._queue

    async def start(self) -> None:
        """Start the delivery worker."""
        if self._running:
            return
        self._ensure_queue()
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Mail dispatcher started (queue size=%s)", self._maxsize)

    async def stop(self) -> None:
        """Deliver what is already queued, then stop the worker."""
        if not self._running:
            return
        await self.drain()
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Mail dispatcher stopped")

    def enqueue(self, kind: str, recipient: Optional[str], variables: dict, lang: str = "en") -> bool:
        """Queue a message for delivery; returns False when it was dropped."""
        if not recipient:
            return False
        queue = self._ensure_queue()
        try:
            queue.put_nowait(MailMessage(kind=kind, recipient=recipient, variables=variables, lang=lang))
        except asyncio.QueueFull:
            metrics.observe_email("dropped", kind)
            logger.error("mail queue full, dropping %s email to %s", kind, recipient, extra={"mail_kind": kind})
            return False
        metrics.observe_email("queued", kind)
        return True

    async def drain(self) -> None:
        """Deliver every queued message in the current task."""
        queue = self._ensure_queue()
        while not queue.empty():
            message = queue.get_nowait()
            try:
                await self._deliver(message)
            finally:
                queue.task_done()

    async def _run_loop(self) -> None:
        queue = self._ensure_queue()
        while self._running:
            try:
                message = await queue.get()
            except asyncio.CancelledError:
                break
            try:
                await self._deliver(message)
            finally:
                queue.task_done()

    async def _deliver(self, message: MailMessage) -> None:
        try:
            await self._send(message.kind, message.recipient, message.variables, message.lang)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            metrics.observe_email("failed", message.kind)
            logger.error(
                "failed to send %s email to %s: %s",
                message.kind,
                message.recipient,
                exc,
                extra={"mail_kind": message.kind},
            )
            return
        metrics.observe_email("sent", message.kind)


dispatcher = MailDispatcher(maxsize=settings.mail_queue_size)
