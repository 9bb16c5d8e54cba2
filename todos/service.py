"""
TodoService: owner-scoped todo reads and status transitions.

Status rules:
  pending ↔ in_progress
  pending | in_progress → completed | dismissed | expired   (terminal)

completed_at is set exactly when status is completed, dismissed_at exactly
when status is dismissed. Every transition is a conditional update on the
status that was read, so a concurrent writer makes ours fail rather than
overwrite it.

Expiry is lazy: reads expire open todos whose due date is more than
``expire_after_days`` in the past before returning them. expire_overdue()
does the same as a sweep.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from typing import Any, Optional

from config.settings import TodoConfig, get_settings
from database.store_base import BaseStore
from models.errors import ConcurrencyConflict, InvalidTransition, NotFoundError, ValidationError
from models.schemas import Todo, TodoStats, TodoStatus, utcnow

logger = structlog.get_logger()

OPEN_STATES = (TodoStatus.PENDING, TodoStatus.IN_PROGRESS)

_ALLOWED: dict[TodoStatus, frozenset[TodoStatus]] = {
    TodoStatus.PENDING: frozenset({
        TodoStatus.IN_PROGRESS, TodoStatus.COMPLETED, TodoStatus.DISMISSED, TodoStatus.EXPIRED,
    }),
    TodoStatus.IN_PROGRESS: frozenset({
        TodoStatus.PENDING, TodoStatus.COMPLETED, TodoStatus.DISMISSED, TodoStatus.EXPIRED,
    }),
}

BULK_STATES = frozenset({TodoStatus.COMPLETED, TodoStatus.DISMISSED})


def can_transition(current: TodoStatus, target: TodoStatus) -> bool:
    return target in _ALLOWED.get(current, frozenset())


def status_values(target: TodoStatus, now: datetime) -> dict[str, Any]:
    """Column values for moving to ``target``, keeping the timestamp invariants."""
    return {
        "status": target.value,
        "completed_at": now if target == TodoStatus.COMPLETED else None,
        "dismissed_at": now if target == TodoStatus.DISMISSED else None,
    }


class TodoService:

    def __init__(self, store: BaseStore, config: TodoConfig = None):
        self.store = store
        self.config = config or get_settings().todos

    def _expiry_cutoff(self, now: datetime) -> datetime:
        return now - timedelta(days=self.config.expire_after_days)

    # ── Create ────────────────────────────────────────────────

    async def create(self, todo: Todo | dict[str, Any]) -> Optional[Todo]:
        """Insert a todo. None when its notification already produced one for this owner."""
        todo = Todo.model_validate(todo)
        if not todo.title.strip():
            raise ValidationError("todo title is required")
        created = await self.store.create_todo(todo)
        if created is None:
            logger.info("todo_duplicate_skipped",
                        notification_id=todo.notification_id,
                        user_id=todo.user_id)
            return None
        logger.info("todo_created",
                    todo_id=created.id,
                    user_id=created.user_id,
                    category=created.category.value,
                    priority=created.priority.value)
        return created

    # ── Reads ─────────────────────────────────────────────────

    async def get(self, todo_id: str, user_id: str, now: datetime = None) -> Todo:
        todo = await self.store.get_todo(todo_id)
        if todo is None or todo.user_id != user_id:
            raise NotFoundError("todo", todo_id)
        return await self._expire_if_due(todo, now or utcnow())

    async def get_by_user(
        self,
        user_id: str,
        status: TodoStatus | str = None,
        category: str = None,
        overdue_only: bool = False,
        limit: int = 50,
        offset: int = 0,
        now: datetime = None,
    ) -> tuple[list[Todo], int]:
        now = now or utcnow()
        statuses: Any = TodoStatus(status).value if status else None
        if overdue_only:
            statuses = [s.value for s in OPEN_STATES]
        rows, total = await self.store.list_todos(
            user_id,
            status=statuses,
            category=category,
            due_before=now if overdue_only else None,
            limit=limit,
            offset=offset,
        )
        return [await self._expire_if_due(t, now) for t in rows], total

    async def get_stats(self, user_id: str, now: datetime = None) -> TodoStats:
        now = now or utcnow()
        rows, _ = await self.store.list_todos(user_id, limit=None)
        stats = TodoStats(total=len(rows))
        soon = now + timedelta(hours=24)
        for todo in rows:
            todo = await self._expire_if_due(todo, now)
            setattr(stats, todo.status.value, getattr(stats, todo.status.value) + 1)
            if todo.status in OPEN_STATES and todo.due_date is not None:
                if todo.due_date < now:
                    stats.overdue += 1
                elif todo.due_date < soon:
                    stats.due_soon += 1
        return stats

    # ── Transitions ───────────────────────────────────────────

    async def update_status(
        self, todo_id: str, user_id: str, new_status: TodoStatus | str, now: datetime = None,
    ) -> Todo:
        now = now or utcnow()
        try:
            target = TodoStatus(new_status)
        except ValueError:
            raise ValidationError(f"unknown todo status '{new_status}'")

        todo = await self.get(todo_id, user_id, now=now)
        if todo.status == target:
            return todo
        if not can_transition(todo.status, target):
            raise InvalidTransition("todo", todo.status.value, target.value)

        updated = await self.store.update_todo(
            todo_id, status_values(target, now), where={"status": todo.status.value},
        )
        if updated is None:
            raise ConcurrencyConflict("todo", todo_id)
        logger.info("todo_status_updated",
                    todo_id=todo_id,
                    user_id=user_id,
                    previous=todo.status.value,
                    status=target.value)
        return updated

    async def bulk_update_status(
        self, todo_ids: list[str], user_id: str, new_status: TodoStatus | str, now: datetime = None,
    ) -> int:
        """Complete or dismiss several todos. Ids that are missing, foreign or closed are skipped."""
        try:
            target = TodoStatus(new_status)
        except ValueError:
            raise ValidationError(f"unknown todo status '{new_status}'")
        if target not in BULK_STATES:
            raise ValidationError("bulk updates only support completed or dismissed")

        now = now or utcnow()
        updated = 0
        for todo_id in dict.fromkeys(todo_ids):
            try:
                before = await self.get(todo_id, user_id, now=now)
                if before.status == target:
                    continue
                await self.update_status(todo_id, user_id, target, now=now)
                updated += 1
            except (NotFoundError, ValidationError, ConcurrencyConflict) as e:
                logger.debug("todo_bulk_update_skipped", todo_id=todo_id, reason=str(e))
        logger.info("todos_bulk_updated",
                    user_id=user_id,
                    status=target.value,
                    requested=len(todo_ids),
                    updated=updated)
        return updated

    # ── Expiry ────────────────────────────────────────────────

    async def expire_overdue(self, now: datetime = None, limit: int = 500) -> int:
        now = now or utcnow()
        expired = 0
        for todo in await self.store.find_expirable_todos(self._expiry_cutoff(now), limit=limit):
            if (await self._expire_if_due(todo, now)).status == TodoStatus.EXPIRED:
                expired += 1
        if expired:
            logger.info("todos_expired", count=expired)
        return expired

    async def _expire_if_due(self, todo: Todo, now: datetime) -> Todo:
        if (
            todo.status not in OPEN_STATES
            or todo.due_date is None
            or todo.due_date >= self._expiry_cutoff(now)
        ):
            return todo
        updated = await self.store.update_todo(
            todo.id, status_values(TodoStatus.EXPIRED, now), where={"status": todo.status.value},
        )
        if updated is None:
            # someone else moved it first; report what is stored now
            return await self.store.get_todo(todo.id) or todo
        logger.info("todo_expired", todo_id=todo.id, due_date=todo.due_date.isoformat())
        return updated
