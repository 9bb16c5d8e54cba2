"""
Tests for Todo generation rules, TodoService and TodoAutomation.

Covers:
  - per-type rules (title, category, priority, due offset, action payload)
  - at-most-one todo per notification under repeated delivery
  - status transitions, completed_at / dismissed_at invariants
  - bulk updates, stats, lazy and swept expiry
"""
import asyncio
from datetime import timedelta

import pytest

from models.errors import ConcurrencyConflict, InvalidTransition, NotFoundError, ValidationError
from models.schemas import (
    Notification, NotificationType, Todo, TodoCategory, TodoPriority, TodoStatus,
)
from todos.rules import TODO_RULES, get_rule
from todos.service import can_transition


def _notification(now, type=NotificationType.REVIEW_REQUESTED, user_id="u1", **metadata):
    return Notification(
        id=metadata.pop("id", "n-1"),
        user_id=user_id,
        type=type,
        title=metadata.pop("title", "Something happened"),
        message=metadata.pop("message", "Details"),
        related_id="app-42",
        metadata=metadata,
        created_at=now,
    )


def _todo(now, **overrides):
    data = dict(user_id="u1", title="Call Acme", due_date=now + timedelta(hours=4))
    data.update(overrides)
    return Todo(**data)


class TestRules:
    def test_every_rule_has_an_action(self):
        for rule in TODO_RULES.values():
            assert rule.action_type

    def test_types_without_rules(self):
        assert get_rule(NotificationType.SYSTEM) is None
        assert get_rule(NotificationType.ESCALATION_DIGEST) is None
        assert get_rule("not_a_type") is None

    def test_review_requested_urgency(self, now):
        rule = get_rule("review_requested")
        normal = {"application_title": "I-485"}
        urgent = {"application_title": "I-485", "urgency": "high"}
        assert rule.title(normal) == "Review I-485"
        assert rule.priority(normal) == TodoPriority.HIGH
        assert rule.due_in(normal) == timedelta(hours=24)
        assert rule.priority(urgent) == TodoPriority.URGENT
        assert rule.due_in(urgent) == timedelta(hours=4)
        assert "high priority" in rule.description(urgent)

    def test_rejected_title_strips_pdf(self):
        rule = get_rule(NotificationType.APPLICATION_REJECTED)
        title = rule.title({"filename": "g-28.pdf", "message": "Wrong date"})
        assert title == "Edit g-28 - Reason: Wrong date"

    def test_review_completed_due_depends_on_outcome(self):
        rule = get_rule(NotificationType.REVIEW_COMPLETED)
        assert rule.due_in({"status": "approved"}) == timedelta(hours=2)
        assert rule.due_in({"status": "rejected"}) == timedelta(hours=4)

    def test_action_data_skips_missing_keys(self):
        rule = get_rule(NotificationType.DOCUMENT_GENERATED)
        data = rule.action_data({"related_id": "a1", "client_name": "Acme", "other": 1})
        assert data == {"related_id": "a1", "client_name": "Acme"}


class TestAutomation:
    @pytest.mark.asyncio
    async def test_generates_todo_from_rule(self, services, now):
        todo = await services.automation.process_notification(_notification(
            now, application_title="H-1B petition", submitter_name="Vik", client_name="Acme",
        ))
        assert todo.title == "Review H-1B petition"
        assert todo.category == TodoCategory.REVIEW
        assert todo.priority == TodoPriority.HIGH
        assert todo.due_date == now + timedelta(hours=24)
        assert todo.action_type == "review_document"
        assert todo.action_data["submitter_name"] == "Vik"
        assert todo.client_name == "Acme"
        assert todo.related_id == "app-42"
        assert todo.notification_id == "n-1"
        assert todo.auto_generated is True

    @pytest.mark.asyncio
    async def test_same_notification_twice_gives_one_todo(self, services, now):
        n = _notification(now)
        first = await services.automation.process_notification(n)
        second = await services.automation.process_notification(n.model_dump(mode="json"))
        assert first.id == second.id
        _, total = await services.todos.get_by_user("u1", now=now)
        assert total == 1

    @pytest.mark.asyncio
    async def test_concurrent_deliveries_give_one_todo(self, services, now):
        n = _notification(now)
        results = await asyncio.gather(*[services.automation.process_notification(n) for _ in range(5)])
        assert len({t.id for t in results}) == 1
        _, total = await services.todos.get_by_user("u1", now=now)
        assert total == 1

    @pytest.mark.asyncio
    async def test_type_without_rule_is_ignored(self, services, now):
        assert await services.automation.process_notification(
            _notification(now, type=NotificationType.SYSTEM)
        ) is None

    @pytest.mark.asyncio
    async def test_due_hints_override_rule(self, services, now):
        explicit = await services.automation.process_notification(_notification(
            now, id="n-a", due_date="2026-03-12T17:00:00",
        ))
        assert explicit.due_date.isoformat() == "2026-03-12T17:00:00+00:00"

        hours = await services.automation.process_notification(_notification(
            now, id="n-b", due_in_hours=1.5,
        ))
        assert hours.due_date == now + timedelta(hours=1.5)

        bad = await services.automation.process_notification(_notification(
            now, id="n-c", due_date="next tuesday",
        ))
        assert bad.due_date == now + timedelta(hours=24)

    @pytest.mark.asyncio
    async def test_process_bulk(self, services, now):
        counts = await services.automation.process_bulk([
            _notification(now, id="n-1"),
            _notification(now, id="n-2", type=NotificationType.CLIENT_NO_RESPONSE, client_name="Acme"),
            _notification(now, id="n-3", type=NotificationType.SYSTEM),
            {"id": "broken", "type": "review_requested"},
        ])
        assert counts == {"processed": 2, "ignored": 1, "failed": 1}


class TestTransitions:
    def test_transition_table(self):
        assert can_transition(TodoStatus.PENDING, TodoStatus.IN_PROGRESS)
        assert can_transition(TodoStatus.IN_PROGRESS, TodoStatus.PENDING)
        assert can_transition(TodoStatus.IN_PROGRESS, TodoStatus.COMPLETED)
        assert not can_transition(TodoStatus.COMPLETED, TodoStatus.PENDING)
        assert not can_transition(TodoStatus.DISMISSED, TodoStatus.COMPLETED)
        assert not can_transition(TodoStatus.EXPIRED, TodoStatus.IN_PROGRESS)

    @pytest.mark.asyncio
    async def test_complete_sets_completed_at(self, services, now):
        todo = await services.todos.create(_todo(now))
        done = await services.todos.update_status(todo.id, "u1", "completed", now=now)
        assert done.status == TodoStatus.COMPLETED
        assert done.completed_at == now
        assert done.dismissed_at is None

    @pytest.mark.asyncio
    async def test_dismiss_sets_dismissed_at(self, services, now):
        todo = await services.todos.create(_todo(now))
        gone = await services.todos.update_status(todo.id, "u1", TodoStatus.DISMISSED, now=now)
        assert gone.dismissed_at == now
        assert gone.completed_at is None

    @pytest.mark.asyncio
    async def test_reopen_clears_timestamps(self, services, now):
        todo = await services.todos.create(_todo(now))
        started = await services.todos.update_status(todo.id, "u1", "in_progress", now=now)
        back = await services.todos.update_status(started.id, "u1", "pending", now=now)
        assert back.status == TodoStatus.PENDING
        assert back.completed_at is None and back.dismissed_at is None

    @pytest.mark.asyncio
    async def test_same_status_is_noop(self, services, now):
        todo = await services.todos.create(_todo(now))
        same = await services.todos.update_status(todo.id, "u1", "pending", now=now)
        assert same.status == TodoStatus.PENDING
        assert same.updated_at == todo.updated_at

    @pytest.mark.asyncio
    async def test_terminal_is_final(self, services, now):
        todo = await services.todos.create(_todo(now))
        await services.todos.update_status(todo.id, "u1", "completed", now=now)
        with pytest.raises(InvalidTransition):
            await services.todos.update_status(todo.id, "u1", "pending", now=now)

    @pytest.mark.asyncio
    async def test_unknown_status(self, services, now):
        todo = await services.todos.create(_todo(now))
        with pytest.raises(ValidationError):
            await services.todos.update_status(todo.id, "u1", "archived", now=now)

    @pytest.mark.asyncio
    async def test_foreign_todo_not_found(self, services, now):
        todo = await services.todos.create(_todo(now))
        with pytest.raises(NotFoundError):
            await services.todos.update_status(todo.id, "u2", "completed", now=now)
        assert (await services.store.get_todo(todo.id)).status == TodoStatus.PENDING

    @pytest.mark.asyncio
    async def test_concurrent_change_is_conflict(self, services, now):
        todo = await services.todos.create(_todo(now))
        real_get = services.store.get_todo

        async def stale_get(todo_id):
            snapshot = await real_get(todo_id)
            # another writer moves the row after we read it
            await services.store.update_todo(todo_id, {"status": "in_progress"})
            return snapshot

        services.store.get_todo = stale_get
        with pytest.raises(ConcurrencyConflict):
            await services.todos.update_status(todo.id, "u1", "completed", now=now)

    @pytest.mark.asyncio
    async def test_empty_title_rejected(self, services, now):
        with pytest.raises(ValidationError):
            await services.todos.create(_todo(now, title="   "))


class TestBulkAndStats:
    @pytest.mark.asyncio
    async def test_bulk_skips_foreign_missing_and_closed(self, services, now):
        mine = await services.todos.create(_todo(now))
        also_mine = await services.todos.create(_todo(now, title="Send I-797"))
        closed = await services.todos.create(_todo(now, title="Old"))
        await services.todos.update_status(closed.id, "u1", "dismissed", now=now)
        theirs = await services.todos.create(_todo(now, user_id="u2"))

        updated = await services.todos.bulk_update_status(
            [mine.id, also_mine.id, mine.id, closed.id, theirs.id, "missing"], "u1", "completed", now=now,
        )
        assert updated == 2
        assert (await services.store.get_todo(theirs.id)).status == TodoStatus.PENDING
        assert (await services.store.get_todo(closed.id)).status == TodoStatus.DISMISSED

    @pytest.mark.asyncio
    async def test_bulk_only_terminal_targets(self, services):
        with pytest.raises(ValidationError):
            await services.todos.bulk_update_status(["x"], "u1", "in_progress")

    @pytest.mark.asyncio
    async def test_stats(self, services, now):
        await services.todos.create(_todo(now, due_date=now - timedelta(hours=1)))      # overdue
        await services.todos.create(_todo(now, due_date=now + timedelta(hours=5)))      # due soon
        await services.todos.create(_todo(now, due_date=now + timedelta(days=3)))
        done = await services.todos.create(_todo(now))
        await services.todos.update_status(done.id, "u1", "completed", now=now)
        await services.todos.create(_todo(now, due_date=now - timedelta(days=10)))      # expires

        stats = await services.todos.get_stats("u1", now=now)
        assert stats.total == 5
        assert stats.pending == 3
        assert stats.completed == 1
        assert stats.expired == 1
        assert stats.overdue == 1
        assert stats.due_soon == 1

    @pytest.mark.asyncio
    async def test_filters_and_overdue_only(self, services, now):
        late = await services.todos.create(_todo(now, due_date=now - timedelta(hours=2)))
        await services.todos.create(_todo(now, due_date=now + timedelta(hours=2)))
        review = await services.todos.create(_todo(now, category=TodoCategory.REVIEW))
        await services.todos.update_status(review.id, "u1", "in_progress", now=now)

        rows, total = await services.todos.get_by_user("u1", overdue_only=True, now=now)
        assert total == 1 and rows[0].id == late.id

        rows, _ = await services.todos.get_by_user("u1", category="review", now=now)
        assert [t.id for t in rows] == [review.id]

        rows, _ = await services.todos.get_by_user("u1", status="in_progress", now=now)
        assert [t.id for t in rows] == [review.id]

    @pytest.mark.asyncio
    async def test_ordered_by_due_date_nulls_last(self, services, now):
        undated = await services.todos.create(_todo(now, due_date=None))
        later = await services.todos.create(_todo(now, due_date=now + timedelta(hours=8)))
        sooner = await services.todos.create(_todo(now, due_date=now + timedelta(hours=1)))
        rows, _ = await services.todos.get_by_user("u1", now=now)
        assert [t.id for t in rows] == [sooner.id, later.id, undated.id]


class TestExpiry:
    @pytest.mark.asyncio
    async def test_lazy_expiry_on_read(self, services, now):
        stale = await services.todos.create(_todo(now, due_date=now - timedelta(days=8)))
        fresh_overdue = await services.todos.create(_todo(now, due_date=now - timedelta(days=2)))

        assert (await services.todos.get(stale.id, "u1", now=now)).status == TodoStatus.EXPIRED
        assert (await services.todos.get(fresh_overdue.id, "u1", now=now)).status == TodoStatus.PENDING

    @pytest.mark.asyncio
    async def test_sweep(self, services, now):
        for days in (8, 9, 30):
            await services.todos.create(_todo(now, due_date=now - timedelta(days=days)))
        finished = await services.todos.create(_todo(now, due_date=now - timedelta(days=30)))
        await services.todos.update_status(finished.id, "u1", "completed", now=now - timedelta(days=29))

        assert await services.todos.expire_overdue(now=now) == 3
        assert await services.todos.expire_overdue(now=now) == 0
        assert (await services.store.get_todo(finished.id)).status == TodoStatus.COMPLETED
