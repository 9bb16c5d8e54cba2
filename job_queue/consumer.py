"""
Notification consumer: turns queued "notification created" jobs into todos.

    dispatcher ──publish──▶ notifications:created ──▶ NotificationConsumer ──▶ TodoAutomation
                                  ▲                          │ handler raised
                                  └── promote ── notifications:delayed ◀──┘
                                                 (after max_attempts → notifications:dlq)

Run it inside the API process (``start_background``) or let a cron call
``drain`` through the notification queue job. Several processes may share a
consumer group; Todo Automation dedupes redelivered notifications.
"""
from __future__ import annotations

import asyncio
import structlog

from job_queue.message_queue import MessageQueue, QueueJob, Queues, get_message_queue
from models.schemas import Notification

logger = structlog.get_logger()


class NotificationConsumer:

    def __init__(
        self,
        automation,  # todos.automation.TodoAutomation
        queue: MessageQueue = None,
        consumer_group: str = "todo-automation",
        consumer_name: str = "",
        promote_interval: float = 5.0,
    ):
        self.automation = automation
        self.queue = queue or get_message_queue()
        self.consumer_group = consumer_group
        self.consumer_name = consumer_name
        self.promote_interval = promote_interval
        self._tasks: list[asyncio.Task] = []

    async def drain(self, max_jobs: int = 100) -> int:
        """Promote due retries, then handle what is queued right now."""
        await self.queue.promote_delayed()
        return await self.queue.consume_available(
            Queues.CREATED, self.handle,
            consumer_group=self.consumer_group, max_jobs=max_jobs,
        )

    async def start_background(self) -> None:
        """Consume continuously and promote retries on an interval until stop()."""
        self._tasks = [
            asyncio.create_task(self.queue.consume(
                Queues.CREATED, self.handle,
                consumer_group=self.consumer_group, consumer_name=self.consumer_name,
            )),
            asyncio.create_task(self._promote_forever()),
        ]
        logger.info("notification_consumer_started", group=self.consumer_group)

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("notification_consumer_stopped")

    async def handle(self, job: QueueJob) -> None:
        """
        Generate the todo for one job. Bad payloads are dropped since no
        retry can fix them; anything else raises so the queue retries it.
        """
        try:
            notification = Notification.model_validate(job.payload)
        except ValueError as e:
            logger.error("job_payload_invalid", job_id=job.job_id, error=str(e))
            return
        todo = await self.automation.process_notification(notification)
        logger.info("job_handled",
                    job_id=job.job_id,
                    notification_id=notification.id,
                    attempt=job.attempt,
                    todo_id=todo.id if todo else None)

    async def _promote_forever(self) -> None:
        while True:
            try:
                await self.queue.promote_delayed()
            except Exception as e:
                logger.error("delayed_promotion_failed", error=str(e))
            await asyncio.sleep(self.promote_interval)
