"""
Abstract Store: Interface for all storage backends.

Implementations:
  - SqlStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryStore (dict-based, single-process, no persistence)
  - FileStore     (JSON files on disk, single-process, durable)

State transitions go through the conditional ``update_*`` methods. The
``where`` mapping names the pre-state the caller read; a list/tuple/set
value means "any of". When the row no longer matches (another writer got
there first) nothing is written and ``None`` is returned.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from models.schemas import (
    EmailQueueItem, FollowUp, FollowUpHistory, Notification, Todo,
)

Where = Optional[dict[str, Any]]


class BaseStore(ABC):
    """Interface that all store backends must implement."""

    # ── Follow-ups ────────────────────────────────────────────

    @abstractmethod
    async def create_followup(self, followup: FollowUp) -> FollowUp:
        ...

    @abstractmethod
    async def get_followup(self, followup_id: str) -> Optional[FollowUp]:
        ...

    @abstractmethod
    async def update_followup(
        self, followup_id: str, values: dict[str, Any], where: Where = None,
    ) -> Optional[FollowUp]:
        ...

    @abstractmethod
    async def list_followups(
        self, user_id: str, status: str = None, sequence: int = None,
        client_name: str = None, limit: int = 50, offset: int = 0,
    ) -> tuple[list[FollowUp], int]:
        """Pending first, then by due date ascending. Returns (page, total)."""
        ...

    @abstractmethod
    async def find_overdue_followups(self, now: datetime, limit: int = 500) -> list[FollowUp]:
        """status=pending AND due_date < now AND escalated=false, oldest due first."""
        ...

    @abstractmethod
    async def find_due_followups(self, until: datetime, limit: int = 500) -> list[FollowUp]:
        """status=pending AND due_date <= until."""
        ...

    @abstractmethod
    async def find_escalated_since(self, since: datetime) -> list[FollowUp]:
        ...

    # ── Follow-up history ─────────────────────────────────────

    @abstractmethod
    async def add_history(self, entry: FollowUpHistory) -> bool:
        """Append a history row. False when the idempotency key already exists."""
        ...

    @abstractmethod
    async def has_history(self, idempotency_key: str) -> bool:
        ...

    @abstractmethod
    async def remove_history(self, idempotency_key: str) -> bool:
        """Release a history claim. False when no row had that key."""
        ...

    @abstractmethod
    async def list_history(self, followup_id: str) -> list[FollowUpHistory]:
        ...

    # ── Notifications ─────────────────────────────────────────

    @abstractmethod
    async def create_notification(self, notification: Notification) -> Notification:
        ...

    @abstractmethod
    async def get_notification(self, notification_id: str) -> Optional[Notification]:
        ...

    @abstractmethod
    async def list_notifications(
        self, user_id: str, limit: int = 50, unread_only: bool = False,
    ) -> list[Notification]:
        """Newest first."""
        ...

    @abstractmethod
    async def count_unread(self, user_id: str) -> int:
        ...

    @abstractmethod
    async def count_notifications_since(self, user_id: str, since: datetime) -> int:
        ...

    @abstractmethod
    async def mark_notification_read(self, notification_id: str, user_id: str) -> bool:
        """Flip read only when the row belongs to user_id. True if a row changed."""
        ...

    @abstractmethod
    async def mark_all_notifications_read(self, user_id: str, limit: int) -> int:
        ...

    # ── Email queue ───────────────────────────────────────────

    @abstractmethod
    async def enqueue_email(self, item: EmailQueueItem) -> Optional[EmailQueueItem]:
        """Insert a queue row. None when the notification already has one."""
        ...

    @abstractmethod
    async def get_email(self, email_id: str) -> Optional[EmailQueueItem]:
        ...

    @abstractmethod
    async def list_emails(
        self, notification_id: str = None, status: str = None, limit: int = 100,
    ) -> list[EmailQueueItem]:
        ...

    @abstractmethod
    async def fetch_due_emails(self, now: datetime, limit: int) -> list[EmailQueueItem]:
        """status=pending AND scheduled_for <= now, FIFO by scheduled_for."""
        ...

    @abstractmethod
    async def update_email(
        self, email_id: str, values: dict[str, Any], where: Where = None,
    ) -> Optional[EmailQueueItem]:
        ...

    @abstractmethod
    async def email_status_counts(self, user_id: str = None) -> dict[str, int]:
        ...

    @abstractmethod
    async def oldest_pending_email(self) -> Optional[datetime]:
        ...

    # ── Todos ─────────────────────────────────────────────────

    @abstractmethod
    async def create_todo(self, todo: Todo) -> Optional[Todo]:
        """Insert. None when (notification_id, user_id) already has a todo."""
        ...

    @abstractmethod
    async def get_todo(self, todo_id: str) -> Optional[Todo]:
        ...

    @abstractmethod
    async def find_todo_by_notification(self, notification_id: str, user_id: str) -> Optional[Todo]:
        ...

    @abstractmethod
    async def list_todos(
        self, user_id: str, status: str | list[str] = None, category: str = None,
        due_before: datetime = None, limit: int = 50, offset: int = 0,
    ) -> tuple[list[Todo], int]:
        """Open todos by due date (nulls last), then newest. Returns (page, total)."""
        ...

    @abstractmethod
    async def update_todo(
        self, todo_id: str, values: dict[str, Any], where: Where = None,
    ) -> Optional[Todo]:
        ...

    @abstractmethod
    async def find_expirable_todos(self, cutoff: datetime, limit: int = 500) -> list[Todo]:
        """status in (pending, in_progress) AND due_date < cutoff."""
        ...
