"""
SqlStore: Portable SQL queries for PostgreSQL, MySQL, SQLite.

Every state transition is a single ``UPDATE ... WHERE id = :id AND <pre-state>``
statement. A writer that lost a race sees rowcount == 0 and gets ``None``
back instead of overwriting the winner.

Duplicate inserts guarded by unique constraints (history idempotency key,
queue row per notification, todo per notification+owner) surface as
IntegrityError from the session scope and are reported as "already there".
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel
from sqlalchemy import select, update, delete, and_, case, func
from sqlalchemy.exc import IntegrityError

from database.models import (
    Base, FollowUpRow, FollowUpHistoryRow, NotificationRow, EmailQueueRow, TodoRow,
)
from database.session import get_session
from database.store_base import BaseStore, Where
from models.schemas import (
    EmailQueueItem, FollowUp, FollowUpHistory, Notification, Todo,
)

logger = structlog.get_logger()

_OPEN_TODO = ("pending", "in_progress")

# model field → column attribute where they differ
_FIELD_TO_ATTR = {"metadata": "metadata_"}
_ATTR_TO_FIELD = {v: k for k, v in _FIELD_TO_ATTR.items()}


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _aware(value: Any) -> Any:
    # SQLite hands back naive datetimes; everything stored is UTC
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_columns(values: dict[str, Any]) -> dict[str, Any]:
    return {_FIELD_TO_ATTR.get(k, k): _plain(v) for k, v in values.items()}


def _conditions(row_cls: type[Base], where: Where) -> list:
    clauses = []
    for field_name, expected in (where or {}).items():
        column = getattr(row_cls, _FIELD_TO_ATTR.get(field_name, field_name))
        if isinstance(expected, (list, tuple, set, frozenset)):
            clauses.append(column.in_([_plain(e) for e in expected]))
        elif expected is None:
            clauses.append(column.is_(None))
        else:
            clauses.append(column == _plain(expected))
    return clauses


def _to_row(row_cls: type[Base], model: BaseModel) -> Base:
    return row_cls(**_to_columns(model.model_dump()))


def _to_model(model_cls: type[BaseModel], row: Base) -> BaseModel:
    data = {
        _ATTR_TO_FIELD.get(attr.key, attr.key): _aware(getattr(row, attr.key))
        for attr in row.__mapper__.column_attrs
    }
    return model_cls.model_validate(data)


class SqlStore(BaseStore):
    """
    Persistent store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    # ── Generic helpers ────────────────────────────────────

    async def _insert(self, row_cls, model_cls, model: BaseModel) -> Optional[BaseModel]:
        try:
            async with get_session() as db:
                row = _to_row(row_cls, model)
                db.add(row)
                await db.flush()
                return _to_model(model_cls, row)
        except IntegrityError:
            logger.debug("sql_insert_duplicate", table=row_cls.__tablename__, id=model.id)
            return None

    async def _get(self, row_cls, model_cls, row_id: str) -> Optional[BaseModel]:
        async with get_session() as db:
            row = await db.get(row_cls, row_id)
            return _to_model(model_cls, row) if row else None

    async def _update_if(
        self, row_cls, model_cls, row_id: str, values: dict[str, Any], where: Where,
    ) -> Optional[BaseModel]:
        async with get_session() as db:
            stmt = (
                update(row_cls)
                .where(row_cls.id == row_id, *_conditions(row_cls, where))
                .values(**_to_columns(values))
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            if result.rowcount == 0:
                return None
            row = await db.get(row_cls, row_id, populate_existing=True)
            return _to_model(model_cls, row)

    async def _page(self, row_cls, model_cls, clauses, order_by, limit, offset):
        async with get_session() as db:
            total = await db.scalar(
                select(func.count()).select_from(row_cls).where(*clauses)
            )
            stmt = select(row_cls).where(*clauses).order_by(*order_by).offset(offset)
            if limit is not None:
                stmt = stmt.limit(limit)
            result = await db.execute(stmt)
            return [_to_model(model_cls, r) for r in result.scalars().all()], int(total or 0)

    async def _select(self, row_cls, model_cls, clauses, order_by, limit=None):
        async with get_session() as db:
            stmt = select(row_cls).where(*clauses).order_by(*order_by)
            if limit is not None:
                stmt = stmt.limit(limit)
            result = await db.execute(stmt)
            return [_to_model(model_cls, r) for r in result.scalars().all()]

    # ── Follow-up operations ───────────────────────────────

    async def create_followup(self, followup: FollowUp) -> FollowUp:
        async with get_session() as db:
            row = _to_row(FollowUpRow, followup)
            db.add(row)
            await db.flush()
            return _to_model(FollowUp, row)

    async def get_followup(self, followup_id: str) -> Optional[FollowUp]:
        return await self._get(FollowUpRow, FollowUp, followup_id)

    async def update_followup(
        self, followup_id: str, values: dict[str, Any], where: Where = None,
    ) -> Optional[FollowUp]:
        values = {**values, "updated_at": datetime.now(timezone.utc)}
        return await self._update_if(FollowUpRow, FollowUp, followup_id, values, where)

    async def list_followups(
        self, user_id: str, status: str = None, sequence: int = None,
        client_name: str = None, limit: int = 50, offset: int = 0,
    ) -> tuple[list[FollowUp], int]:
        clauses = [FollowUpRow.user_id == user_id]
        if status is not None:
            clauses.append(FollowUpRow.status == _plain(status))
        if sequence is not None:
            clauses.append(FollowUpRow.sequence == sequence)
        if client_name:
            clauses.append(func.lower(FollowUpRow.client_name).contains(client_name.lower()))
        pending_first = case((FollowUpRow.status == "pending", 0), else_=1)
        return await self._page(
            FollowUpRow, FollowUp, clauses,
            [pending_first, FollowUpRow.due_date], limit, offset,
        )

    async def find_overdue_followups(self, now: datetime, limit: int = 500) -> list[FollowUp]:
        clauses = [
            FollowUpRow.status == "pending",
            FollowUpRow.due_date < now,
            FollowUpRow.escalated.is_(False),
        ]
        return await self._select(FollowUpRow, FollowUp, clauses, [FollowUpRow.due_date], limit)

    async def find_due_followups(self, until: datetime, limit: int = 500) -> list[FollowUp]:
        clauses = [FollowUpRow.status == "pending", FollowUpRow.due_date <= until]
        return await self._select(FollowUpRow, FollowUp, clauses, [FollowUpRow.due_date], limit)

    async def find_escalated_since(self, since: datetime) -> list[FollowUp]:
        clauses = [FollowUpRow.escalated.is_(True), FollowUpRow.escalation_date >= since]
        return await self._select(
            FollowUpRow, FollowUp, clauses, [FollowUpRow.escalation_date],
        )

    # ── Follow-up history ──────────────────────────────────

    async def add_history(self, entry: FollowUpHistory) -> bool:
        return await self._insert(FollowUpHistoryRow, FollowUpHistory, entry) is not None

    async def has_history(self, idempotency_key: str) -> bool:
        async with get_session() as db:
            found = await db.scalar(
                select(FollowUpHistoryRow.id)
                .where(FollowUpHistoryRow.idempotency_key == idempotency_key)
                .limit(1)
            )
            return found is not None

    async def remove_history(self, idempotency_key: str) -> bool:
        async with get_session() as db:
            result = await db.execute(
                delete(FollowUpHistoryRow)
                .where(FollowUpHistoryRow.idempotency_key == idempotency_key)
            )
            return result.rowcount > 0

    async def list_history(self, followup_id: str) -> list[FollowUpHistory]:
        return await self._select(
            FollowUpHistoryRow, FollowUpHistory,
            [FollowUpHistoryRow.followup_id == followup_id],
            [FollowUpHistoryRow.created_at],
        )

    # ── Notification operations ────────────────────────────

    async def create_notification(self, notification: Notification) -> Notification:
        async with get_session() as db:
            row = _to_row(NotificationRow, notification)
            db.add(row)
            await db.flush()
            return _to_model(Notification, row)

    async def get_notification(self, notification_id: str) -> Optional[Notification]:
        return await self._get(NotificationRow, Notification, notification_id)

    async def list_notifications(
        self, user_id: str, limit: int = 50, unread_only: bool = False,
    ) -> list[Notification]:
        clauses = [NotificationRow.user_id == user_id]
        if unread_only:
            clauses.append(NotificationRow.read.is_(False))
        return await self._select(
            NotificationRow, Notification, clauses,
            [NotificationRow.created_at.desc()], limit,
        )

    async def count_unread(self, user_id: str) -> int:
        async with get_session() as db:
            count = await db.scalar(
                select(func.count()).select_from(NotificationRow).where(and_(
                    NotificationRow.user_id == user_id,
                    NotificationRow.read.is_(False),
                ))
            )
            return int(count or 0)

    async def count_notifications_since(self, user_id: str, since: datetime) -> int:
        async with get_session() as db:
            count = await db.scalar(
                select(func.count()).select_from(NotificationRow).where(and_(
                    NotificationRow.user_id == user_id,
                    NotificationRow.created_at >= since,
                ))
            )
            return int(count or 0)

    async def mark_notification_read(self, notification_id: str, user_id: str) -> bool:
        async with get_session() as db:
            result = await db.execute(
                update(NotificationRow)
                .where(and_(
                    NotificationRow.id == notification_id,
                    NotificationRow.user_id == user_id,
                    NotificationRow.read.is_(False),
                ))
                .values(read=True)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    async def mark_all_notifications_read(self, user_id: str, limit: int) -> int:
        async with get_session() as db:
            ids = (await db.execute(
                select(NotificationRow.id)
                .where(and_(
                    NotificationRow.user_id == user_id,
                    NotificationRow.read.is_(False),
                ))
                .order_by(NotificationRow.created_at)
                .limit(limit)
            )).scalars().all()
            if not ids:
                return 0
            result = await db.execute(
                update(NotificationRow)
                .where(and_(NotificationRow.id.in_(ids), NotificationRow.read.is_(False)))
                .values(read=True)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

    # ── Email queue operations ─────────────────────────────

    async def enqueue_email(self, item: EmailQueueItem) -> Optional[EmailQueueItem]:
        return await self._insert(EmailQueueRow, EmailQueueItem, item)

    async def get_email(self, email_id: str) -> Optional[EmailQueueItem]:
        return await self._get(EmailQueueRow, EmailQueueItem, email_id)

    async def list_emails(
        self, notification_id: str = None, status: str = None, limit: int = 100,
    ) -> list[EmailQueueItem]:
        clauses = []
        if notification_id is not None:
            clauses.append(EmailQueueRow.notification_id == notification_id)
        if status is not None:
            clauses.append(EmailQueueRow.status == _plain(status))
        return await self._select(
            EmailQueueRow, EmailQueueItem, clauses, [EmailQueueRow.created_at], limit,
        )

    async def fetch_due_emails(self, now: datetime, limit: int) -> list[EmailQueueItem]:
        clauses = [EmailQueueRow.status == "pending", EmailQueueRow.scheduled_for <= now]
        return await self._select(
            EmailQueueRow, EmailQueueItem, clauses,
            [EmailQueueRow.scheduled_for, EmailQueueRow.created_at], limit,
        )

    async def update_email(
        self, email_id: str, values: dict[str, Any], where: Where = None,
    ) -> Optional[EmailQueueItem]:
        return await self._update_if(EmailQueueRow, EmailQueueItem, email_id, values, where)

    async def email_status_counts(self, user_id: str = None) -> dict[str, int]:
        async with get_session() as db:
            stmt = select(EmailQueueRow.status, func.count()).group_by(EmailQueueRow.status)
            if user_id is not None:
                stmt = stmt.where(EmailQueueRow.user_id == user_id)
            result = await db.execute(stmt)
            return {status: int(count) for status, count in result.all()}

    async def oldest_pending_email(self) -> Optional[datetime]:
        async with get_session() as db:
            oldest = await db.scalar(
                select(func.min(EmailQueueRow.scheduled_for))
                .where(EmailQueueRow.status == "pending")
            )
            return _aware(oldest)

    # ── Todo operations ────────────────────────────────────

    async def create_todo(self, todo: Todo) -> Optional[Todo]:
        return await self._insert(TodoRow, Todo, todo)

    async def get_todo(self, todo_id: str) -> Optional[Todo]:
        return await self._get(TodoRow, Todo, todo_id)

    async def find_todo_by_notification(self, notification_id: str, user_id: str) -> Optional[Todo]:
        rows = await self._select(
            TodoRow, Todo,
            [TodoRow.notification_id == notification_id, TodoRow.user_id == user_id],
            [TodoRow.created_at], 1,
        )
        return rows[0] if rows else None

    async def list_todos(
        self, user_id: str, status: str | list[str] = None, category: str = None,
        due_before: datetime = None, limit: int = 50, offset: int = 0,
    ) -> tuple[list[Todo], int]:
        clauses = [TodoRow.user_id == user_id]
        if status is not None:
            clauses.extend(_conditions(TodoRow, {"status": status}))
        if category is not None:
            clauses.append(TodoRow.category == _plain(category))
        if due_before is not None:
            clauses.append(TodoRow.due_date < due_before)
        order_by = [TodoRow.due_date.is_(None), TodoRow.due_date, TodoRow.created_at.desc()]
        return await self._page(TodoRow, Todo, clauses, order_by, limit, offset)

    async def update_todo(
        self, todo_id: str, values: dict[str, Any], where: Where = None,
    ) -> Optional[Todo]:
        values = {**values, "updated_at": datetime.now(timezone.utc)}
        return await self._update_if(TodoRow, Todo, todo_id, values, where)

    async def find_expirable_todos(self, cutoff: datetime, limit: int = 500) -> list[Todo]:
        clauses = [
            TodoRow.status.in_(_OPEN_TODO),
            TodoRow.due_date.is_not(None),
            TodoRow.due_date < cutoff,
        ]
        return await self._select(TodoRow, Todo, clauses, [TodoRow.due_date], limit)
