"""
InMemoryStore: Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Full interface compatibility with SqlStore
  - Conditional updates evaluated atomically (single event loop, no awaits
    between the check and the write)
  - All data lost on process restart

Returned records are copies; mutating them never changes stored state.

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from enum import Enum
from typing import Any, Optional, TypeVar

from pydantic import BaseModel

from database.store_base import BaseStore, Where
from models.schemas import (
    EmailQueueItem, EmailStatus, FollowUp, FollowUpHistory, FollowUpStatus,
    Notification, Todo, TodoStatus, utcnow,
)

logger = structlog.get_logger()

M = TypeVar("M", bound=BaseModel)

_OPEN_TODO = (TodoStatus.PENDING.value, TodoStatus.IN_PROGRESS.value)


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _matches(record: BaseModel, where: Where) -> bool:
    for field_name, expected in (where or {}).items():
        actual = _plain(getattr(record, field_name))
        if isinstance(expected, (list, tuple, set, frozenset)):
            if actual not in {_plain(e) for e in expected}:
                return False
        elif actual != _plain(expected):
            return False
    return True


def _apply(record: M, values: dict[str, Any]) -> M:
    # re-validate so enum/datetime fields keep their types
    return type(record).model_validate({**record.model_dump(), **values})


class InMemoryStore(BaseStore):
    """
    Full-featured in-memory store with the same interface as SqlStore.
    """

    def __init__(self):
        self._followups: dict[str, FollowUp] = {}
        self._history: dict[str, FollowUpHistory] = {}          # idempotency_key → entry
        self._notifications: dict[str, Notification] = {}
        self._emails: dict[str, EmailQueueItem] = {}
        self._todos: dict[str, Todo] = {}

        # Indexes
        self._email_by_notification: dict[str, str] = {}        # notification_id → email id
        self._todo_by_notification: dict[str, str] = {}         # "notif_id:user_id" → todo id
        logger.info("inmemory_store_initialized")

    # ── Follow-ups ────────────────────────────────────────

    async def create_followup(self, followup: FollowUp) -> FollowUp:
        self._followups[followup.id] = followup.model_copy(deep=True)
        return followup.model_copy(deep=True)

    async def get_followup(self, followup_id: str) -> Optional[FollowUp]:
        fu = self._followups.get(followup_id)
        return fu.model_copy(deep=True) if fu else None

    async def update_followup(
        self, followup_id: str, values: dict[str, Any], where: Where = None,
    ) -> Optional[FollowUp]:
        fu = self._followups.get(followup_id)
        if fu is None or not _matches(fu, where):
            return None
        updated = _apply(fu, {**values, "updated_at": utcnow()})
        self._followups[followup_id] = updated
        return updated.model_copy(deep=True)

    async def list_followups(
        self, user_id: str, status: str = None, sequence: int = None,
        client_name: str = None, limit: int = 50, offset: int = 0,
    ) -> tuple[list[FollowUp], int]:
        rows = [
            f for f in self._followups.values()
            if f.user_id == user_id
            and (status is None or f.status == _plain(status))
            and (sequence is None or f.sequence == sequence)
            and (client_name is None or client_name.lower() in f.client_name.lower())
        ]
        rows.sort(key=lambda f: (f.status != FollowUpStatus.PENDING, f.due_date))
        page = rows[offset:offset + limit] if limit is not None else rows[offset:]
        return [f.model_copy(deep=True) for f in page], len(rows)

    async def find_overdue_followups(self, now: datetime, limit: int = 500) -> list[FollowUp]:
        rows = [
            f for f in self._followups.values()
            if f.status == FollowUpStatus.PENDING and f.due_date < now and not f.escalated
        ]
        rows.sort(key=lambda f: f.due_date)
        return [f.model_copy(deep=True) for f in rows[:limit]]

    async def find_due_followups(self, until: datetime, limit: int = 500) -> list[FollowUp]:
        rows = [
            f for f in self._followups.values()
            if f.status == FollowUpStatus.PENDING and f.due_date <= until
        ]
        rows.sort(key=lambda f: f.due_date)
        return [f.model_copy(deep=True) for f in rows[:limit]]

    async def find_escalated_since(self, since: datetime) -> list[FollowUp]:
        rows = [
            f for f in self._followups.values()
            if f.escalated and f.escalation_date is not None and f.escalation_date >= since
        ]
        rows.sort(key=lambda f: f.escalation_date)
        return [f.model_copy(deep=True) for f in rows]

    # ── Follow-up history ─────────────────────────────────

    async def add_history(self, entry: FollowUpHistory) -> bool:
        if entry.idempotency_key in self._history:
            return False
        self._history[entry.idempotency_key] = entry.model_copy(deep=True)
        return True

    async def has_history(self, idempotency_key: str) -> bool:
        return idempotency_key in self._history

    async def remove_history(self, idempotency_key: str) -> bool:
        return self._history.pop(idempotency_key, None) is not None

    async def list_history(self, followup_id: str) -> list[FollowUpHistory]:
        rows = [h for h in self._history.values() if h.followup_id == followup_id]
        rows.sort(key=lambda h: h.created_at)
        return [h.model_copy(deep=True) for h in rows]

    # ── Notifications ─────────────────────────────────────

    async def create_notification(self, notification: Notification) -> Notification:
        self._notifications[notification.id] = notification.model_copy(deep=True)
        return notification.model_copy(deep=True)

    async def get_notification(self, notification_id: str) -> Optional[Notification]:
        n = self._notifications.get(notification_id)
        return n.model_copy(deep=True) if n else None

    async def list_notifications(
        self, user_id: str, limit: int = 50, unread_only: bool = False,
    ) -> list[Notification]:
        rows = [
            n for n in self._notifications.values()
            if n.user_id == user_id and (not unread_only or not n.read)
        ]
        rows.sort(key=lambda n: n.created_at, reverse=True)
        return [n.model_copy(deep=True) for n in rows[:limit]]

    async def count_unread(self, user_id: str) -> int:
        return sum(1 for n in self._notifications.values() if n.user_id == user_id and not n.read)

    async def count_notifications_since(self, user_id: str, since: datetime) -> int:
        return sum(
            1 for n in self._notifications.values()
            if n.user_id == user_id and n.created_at >= since
        )

    async def mark_notification_read(self, notification_id: str, user_id: str) -> bool:
        n = self._notifications.get(notification_id)
        if n is None or not _matches(n, {"user_id": user_id, "read": False}):
            return False
        self._notifications[notification_id] = _apply(n, {"read": True})
        return True

    async def mark_all_notifications_read(self, user_id: str, limit: int) -> int:
        unread = [n for n in self._notifications.values() if n.user_id == user_id and not n.read]
        unread.sort(key=lambda n: n.created_at)
        for n in unread[:limit]:
            self._notifications[n.id] = _apply(n, {"read": True})
        return len(unread[:limit])

    # ── Email queue ───────────────────────────────────────

    async def enqueue_email(self, item: EmailQueueItem) -> Optional[EmailQueueItem]:
        if item.notification_id and item.notification_id in self._email_by_notification:
            return None
        self._emails[item.id] = item.model_copy(deep=True)
        if item.notification_id:
            self._email_by_notification[item.notification_id] = item.id
        return item.model_copy(deep=True)

    async def get_email(self, email_id: str) -> Optional[EmailQueueItem]:
        e = self._emails.get(email_id)
        return e.model_copy(deep=True) if e else None

    async def list_emails(
        self, notification_id: str = None, status: str = None, limit: int = 100,
    ) -> list[EmailQueueItem]:
        rows = [
            e for e in self._emails.values()
            if (notification_id is None or e.notification_id == notification_id)
            and (status is None or e.status == _plain(status))
        ]
        rows.sort(key=lambda e: e.created_at)
        return [e.model_copy(deep=True) for e in rows[:limit]]

    async def fetch_due_emails(self, now: datetime, limit: int) -> list[EmailQueueItem]:
        rows = [
            e for e in self._emails.values()
            if e.status == EmailStatus.PENDING and e.scheduled_for <= now
        ]
        rows.sort(key=lambda e: (e.scheduled_for, e.created_at))
        return [e.model_copy(deep=True) for e in rows[:limit]]

    async def update_email(
        self, email_id: str, values: dict[str, Any], where: Where = None,
    ) -> Optional[EmailQueueItem]:
        e = self._emails.get(email_id)
        if e is None or not _matches(e, where):
            return None
        updated = _apply(e, values)
        self._emails[email_id] = updated
        return updated.model_copy(deep=True)

    async def email_status_counts(self, user_id: str = None) -> dict[str, int]:
        counts: dict[str, int] = {}
        for e in self._emails.values():
            if user_id is not None and e.user_id != user_id:
                continue
            key = _plain(e.status)
            counts[key] = counts.get(key, 0) + 1
        return counts

    async def oldest_pending_email(self) -> Optional[datetime]:
        pending = [e.scheduled_for for e in self._emails.values() if e.status == EmailStatus.PENDING]
        return min(pending) if pending else None

    # ── Todos ─────────────────────────────────────────────

    async def create_todo(self, todo: Todo) -> Optional[Todo]:
        if todo.notification_id:
            key = f"{todo.notification_id}:{todo.user_id}"
            if key in self._todo_by_notification:
                return None
            self._todo_by_notification[key] = todo.id
        self._todos[todo.id] = todo.model_copy(deep=True)
        return todo.model_copy(deep=True)

    async def get_todo(self, todo_id: str) -> Optional[Todo]:
        t = self._todos.get(todo_id)
        return t.model_copy(deep=True) if t else None

    async def find_todo_by_notification(self, notification_id: str, user_id: str) -> Optional[Todo]:
        tid = self._todo_by_notification.get(f"{notification_id}:{user_id}")
        return await self.get_todo(tid) if tid else None

    async def list_todos(
        self, user_id: str, status: str | list[str] = None, category: str = None,
        due_before: datetime = None, limit: int = 50, offset: int = 0,
    ) -> tuple[list[Todo], int]:
        rows = [
            t for t in self._todos.values()
            if t.user_id == user_id
            and (status is None or _matches(t, {"status": status}))
            and (category is None or t.category == _plain(category))
            and (due_before is None or (t.due_date is not None and t.due_date < due_before))
        ]
        rows.sort(key=lambda t: -t.created_at.timestamp())
        rows.sort(key=lambda t: (t.due_date is None, t.due_date.timestamp() if t.due_date else 0))
        page = rows[offset:offset + limit] if limit is not None else rows[offset:]
        return [t.model_copy(deep=True) for t in page], len(rows)

    async def update_todo(
        self, todo_id: str, values: dict[str, Any], where: Where = None,
    ) -> Optional[Todo]:
        t = self._todos.get(todo_id)
        if t is None or not _matches(t, where):
            return None
        updated = _apply(t, {**values, "updated_at": utcnow()})
        self._todos[todo_id] = updated
        return updated.model_copy(deep=True)

    async def find_expirable_todos(self, cutoff: datetime, limit: int = 500) -> list[Todo]:
        rows = [
            t for t in self._todos.values()
            if _plain(t.status) in _OPEN_TODO and t.due_date is not None and t.due_date < cutoff
        ]
        rows.sort(key=lambda t: t.due_date)
        return [t.model_copy(deep=True) for t in rows[:limit]]

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "followups": len(self._followups),
            "history": len(self._history),
            "notifications": len(self._notifications),
            "emails": len(self._emails),
            "todos": len(self._todos),
        }
