"""
Todo Automation: turns newly created notifications into todos.

Delivery from the dispatcher is at-least-once (sync listener, queue
consumer, or the notification-created webhook), so the same notification
can arrive several times. At most one todo exists per (notification, owner):
a lookup short-circuits the common repeat, and the store's uniqueness
constraint settles concurrent repeats.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from models.schemas import Notification, Todo
from todos.rules import TodoRule, get_rule
from todos.service import TodoService

logger = structlog.get_logger()


class TodoAutomation:

    def __init__(self, todos: TodoService):
        self.todos = todos
        self.store = todos.store

    async def __call__(self, notification: Notification):
        # lets the instance be registered directly as a dispatcher listener
        return await self.process_notification(notification)

    async def process_notification(self, notification: Notification | dict[str, Any]) -> Optional[Todo]:
        """
        Returns the notification's todo (new or previously created), or None
        when its type has no generation rule.
        """
        notification = Notification.model_validate(notification)
        rule = get_rule(notification.type)
        if rule is None:
            logger.debug("todo_rule_missing",
                         notification_id=notification.id,
                         type=notification.type.value)
            return None

        existing = await self.store.find_todo_by_notification(notification.id, notification.user_id)
        if existing is not None:
            logger.info("todo_already_generated",
                        notification_id=notification.id,
                        todo_id=existing.id)
            return existing

        todo = self.build_todo(notification, rule)
        created = await self.todos.create(todo)
        if created is None:
            # lost a race with a concurrent delivery of the same notification
            return await self.store.find_todo_by_notification(notification.id, notification.user_id)

        logger.info("todo_auto_generated",
                    notification_id=notification.id,
                    todo_id=created.id,
                    type=notification.type.value)
        return created

    async def process_bulk(self, notifications: list[Notification | dict[str, Any]]) -> dict[str, int]:
        counts = {"processed": 0, "ignored": 0, "failed": 0}
        for notification in notifications:
            try:
                todo = await self.process_notification(notification)
            except Exception as e:
                counts["failed"] += 1
                logger.error("todo_generation_failed", error=str(e))
                continue
            counts["processed" if todo is not None else "ignored"] += 1
        logger.info("todo_bulk_processed", **counts)
        return counts

    # ── Building ──────────────────────────────────────────────

    def build_todo(self, notification: Notification, rule: TodoRule) -> Todo:
        data = {
            **notification.metadata,
            "title": notification.title,
            "message": notification.message,
            "related_id": notification.related_id,
        }
        return Todo(
            user_id=notification.user_id,
            notification_id=notification.id,
            title=rule.title(data),
            description=rule.description(data),
            category=rule.category,
            priority=rule.priority(data),
            due_date=self.due_date(notification, rule, data),
            action_type=rule.action_type,
            action_data=rule.action_data(data),
            client_name=data.get("client_name"),
            related_id=notification.related_id,
            auto_generated=True,
        )

    @staticmethod
    def due_date(notification: Notification, rule: TodoRule, data: dict[str, Any]) -> datetime:
        """
        Metadata ``due_date`` (ISO string) or ``due_in_hours`` wins over the
        rule's default offset. Offsets count from the notification's creation
        so redeliveries compute the same date.
        """
        base = notification.created_at
        hint = data.get("due_date")
        if hint:
            try:
                due = hint if isinstance(hint, datetime) else datetime.fromisoformat(str(hint))
                return due if due.tzinfo else due.replace(tzinfo=timezone.utc)
            except ValueError:
                logger.warning("todo_due_hint_invalid", notification_id=notification.id, due_date=hint)
        hours = data.get("due_in_hours")
        if hours is not None:
            try:
                return base + timedelta(hours=float(hours))
            except (TypeError, ValueError):
                logger.warning("todo_due_hint_invalid", notification_id=notification.id, due_in_hours=hours)
        return base + rule.due_in(data)
