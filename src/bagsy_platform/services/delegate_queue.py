"""Work queue for automated negotiation delegate runs.

Offers are answered outside the request that created them: the request
enqueues ``(booking_id, offer_id)`` and a single worker task started in the
app lifespan drains the queue, each run in its own session.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from bagsy_platform.services.negotiation_engine import NegotiationEngine
from bagsy_platform.services.notification_service import NotificationService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DelegateTask:
    booking_id: str
    offer_id: str


class DelegateTaskQueue:
    """``asyncio.Queue`` of delegate runs plus the worker that drains it."""

    def __init__(
        self,
        session_factory: Callable,
        delay_seconds: float = 0.0,
        agent=None,
        send_email: bool = True,
    ):
        self.session_factory = session_factory
        self.delay_seconds = delay_seconds
        self.agent = agent
        self.send_email = send_email
        self.queue: asyncio.Queue[DelegateTask] = asyncio.Queue()
        self._worker_task: Optional[asyncio.Task] = None

    def enqueue(self, booking_id: str, offer_id: str) -> None:
        self.queue.put_nowait(DelegateTask(booking_id, offer_id))
        logger.debug("Delegate run queued for offer %s on booking %s", offer_id, booking_id)

    def start(self) -> None:
        if self._worker_task is None or self._worker_task.done():
            self._worker_task = asyncio.create_task(self._worker())

    async def stop(self) -> None:
        if self._worker_task is None:
            return
        self._worker_task.cancel()
        try:
            await self._worker_task
        except asyncio.CancelledError:
            pass
        self._worker_task = None

    async def _worker(self) -> None:
        while True:
            task = await self.queue.get()
            try:
                if self.delay_seconds:
                    # Give the human a moment before the delegate replies
                    await asyncio.sleep(self.delay_seconds)
                await self.process(task)
            except Exception as e:
                logger.error("Delegate run for offer %s failed: %s", task.offer_id, e)
            finally:
                self.queue.task_done()

    async def process(self, task: DelegateTask):
        """Run the delegate for one task in a fresh session."""
        async with self.session_factory() as db:
            engine = NegotiationEngine(
                db,
                notifier=NotificationService(db, send_email=self.send_email),
                dispatcher=self,
                agent=self.agent,
            )
            return await engine.run_delegate(task.booking_id, task.offer_id)

    async def drain(self, max_runs: int = 50) -> int:
        """Process queued tasks inline until the queue is empty. Returns the run count."""
        runs = 0
        while not self.queue.empty() and runs < max_runs:
            task = self.queue.get_nowait()
            try:
                await self.process(task)
            finally:
                self.queue.task_done()
            runs += 1
        return runs
