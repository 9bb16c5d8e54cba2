"""
Notification Dispatcher: persists per-user notifications and fans them out.

create() never raises. A notification is a side effect of some business
action (a review completed, a follow-up escalated); if storing or fanning
it out fails, the failure is logged and the caller gets None.

Fan-out on every created notification:
  1. email outbox row (NotificationEmailService, preference-gated)
  2. Todo Automation, either
       delivery=sync   → registered listeners awaited in-process
       delivery=queue  → job published to notifications:created (at-least-once)
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from config.settings import NotificationConfig, get_settings
from database.store_base import BaseStore
from job_queue.message_queue import MessageQueue, QueueJob, Queues
from models.schemas import Notification, NotificationCreate, NotificationList, utcnow
from notifications.email import NotificationEmailService

logger = structlog.get_logger()

Listener = Callable[[Notification], Awaitable[Any]]


class NotificationDispatcher:

    def __init__(
        self,
        store: BaseStore,
        emails: NotificationEmailService = None,
        config: NotificationConfig = None,
        queue: MessageQueue = None,
        queue_max_attempts: int = None,
    ):
        self.store = store
        self.emails = emails
        self.config = config or get_settings().notifications
        self.queue = queue
        self.queue_max_attempts = queue_max_attempts or get_settings().queue.max_attempts
        self._listeners: list[Listener] = []

    def add_listener(self, listener: Listener):
        """Register an async callable invoked with each created notification (sync delivery)."""
        self._listeners.append(listener)

    # ── Create ────────────────────────────────────────────────

    async def create(
        self, data: NotificationCreate | dict[str, Any], now: datetime = None,
    ) -> Optional[Notification]:
        now = now or utcnow()
        try:
            request = NotificationCreate.model_validate(data)
        except ValueError as e:
            logger.error("notification_invalid", error=str(e))
            return None

        if not self.config.enabled:
            logger.debug("notifications_disabled", user_id=request.user_id, type=request.type.value)
            return None

        try:
            recent = await self.store.count_notifications_since(
                request.user_id, now - timedelta(hours=24),
            )
            if recent >= self.config.max_per_user_per_day:
                logger.warning("notification_daily_cap_reached",
                               user_id=request.user_id,
                               type=request.type.value,
                               count=recent)
                return None

            notification = await self.store.create_notification(Notification(
                **request.model_dump(), created_at=now,
            ))
        except Exception as e:
            logger.error("notification_create_failed",
                         user_id=request.user_id,
                         type=request.type.value,
                         error=str(e))
            return None

        logger.info("notification_created",
                    notification_id=notification.id,
                    user_id=notification.user_id,
                    type=notification.type.value)

        await self._queue_email(notification)
        await self._fan_out(notification)
        return notification

    async def _queue_email(self, notification: Notification):
        if self.emails is None:
            return
        try:
            await self.emails.queue_for_notification(notification)
        except Exception as e:
            logger.error("notification_email_queue_failed",
                         notification_id=notification.id,
                         error=str(e))

    async def _fan_out(self, notification: Notification):
        if self.config.delivery == "queue" and self.queue is not None:
            try:
                await self.queue.publish(Queues.CREATED, QueueJob(
                    notification_id=notification.id,
                    user_id=notification.user_id,
                    payload=notification.model_dump(mode="json"),
                    max_attempts=self.queue_max_attempts,
                ))
            except Exception as e:
                logger.error("notification_publish_failed",
                             notification_id=notification.id,
                             error=str(e))
            return

        for listener in self._listeners:
            try:
                await listener(notification)
            except Exception as e:
                logger.error("notification_listener_failed",
                             notification_id=notification.id,
                             listener=getattr(listener, "__qualname__", repr(listener)),
                             error=str(e))

    # ── Read state ────────────────────────────────────────────

    async def get_by_user(
        self, user_id: str, limit: int = None, unread_only: bool = False,
    ) -> NotificationList:
        limit = min(limit or self.config.max_to_fetch, self.config.max_to_fetch)
        notifications = await self.store.list_notifications(
            user_id, limit=limit, unread_only=unread_only,
        )
        unread = await self.store.count_unread(user_id)
        return NotificationList(notifications=notifications, unread_count=unread)

    async def mark_as_read(self, notification_id: str, user_id: str) -> bool:
        """
        Always True. Someone else's (or a missing) notification is a silent
        no-op so the response never reveals whether the id exists.
        """
        changed = await self.store.mark_notification_read(notification_id, user_id)
        if not changed:
            logger.debug("notification_mark_read_noop",
                         notification_id=notification_id,
                         user_id=user_id)
        return True

    async def mark_all_as_read(self, user_id: str) -> int:
        count = await self.store.mark_all_notifications_read(
            user_id, limit=self.config.mark_all_limit,
        )
        logger.info("notifications_marked_read", user_id=user_id, count=count)
        return count
