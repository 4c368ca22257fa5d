"""Background processing of accepted notifications."""

import asyncio
import logging
from typing import Optional, List

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .services import ReconciliationService

logger = logging.getLogger(__name__)


class NotificationWorkerPool:
    """A fixed number of asyncio workers draining a queue of notification ids.

    Each job runs in its own session, so one notification's failure never
    affects another's unit of work.

    Example:
        pool = NotificationWorkerPool(session_factory, max_workers=4)
        await pool.start()
        await pool.submit(notification_id)
        ...
        await pool.shutdown()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_workers: int = 4,
        queue_size: int = 0,
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.session_factory = session_factory
        self.max_workers = max_workers
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._workers: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    async def start(self, recover_pending: bool = True) -> None:
        """Start the workers.

        Args:
            recover_pending: Queue notifications left PENDING by a previous run.
        """
        if self.running:
            return
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"notification-worker-{index}")
            for index in range(self.max_workers)
        ]
        logger.info(f"Started {self.max_workers} notification workers")

        if recover_pending:
            async with self.session_factory() as session:
                pending = await ReconciliationService(session).pending_notification_ids()
            for notification_id in pending:
                await self.submit(notification_id)
            if pending:
                logger.info(f"Re-queued {len(pending)} pending notifications")

    async def submit(self, notification_id: str) -> None:
        await self._queue.put(notification_id)

    async def join(self) -> None:
        """Wait until every submitted notification has been processed."""
        await self._queue.join()

    async def shutdown(self, drain: bool = True, timeout: Optional[float] = 30.0) -> None:
        """Stop the workers.

        Args:
            drain: Finish queued work before stopping.
            timeout: Seconds to wait for the queue to drain.
        """
        if drain and self.running:
            try:
                await asyncio.wait_for(self.join(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"{self._queue.qsize()} notifications still queued at shutdown")

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Notification workers stopped")

    async def _worker(self, index: int) -> None:
        while True:
            notification_id = await self._queue.get()
            try:
                async with self.session_factory() as session:
                    service = ReconciliationService(session, dispatcher=self)
                    await service.process_notification(notification_id)
            except Exception as e:
                logger.error(f"Worker {index} failed on notification {notification_id}: {e}", exc_info=True)
            finally:
                self._queue.task_done()
