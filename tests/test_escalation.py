"""
Tests for EscalationScheduler: the overdue follow-up sweep.

Covers:
  - owner + manager escalation notifications, manager digest
  - idempotence (second and concurrent sweeps escalate nothing new)
  - manager resolution: row → directory → default manager → skipped
  - per-row failures are collected, not raised
"""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from config.settings import DirectoryConfig
from directory.connector import StaticUserDirectory
from models.schemas import FollowUpStatus, NotificationType
from scheduler.escalation import EscalationScheduler


class TestEscalationSweep:
    @pytest.mark.asyncio
    async def test_overdue_followup_scenario(self, services, make_followup, now):
        fu = await make_followup(days_ago=8)

        result = await services.escalation.escalate_overdue_followups(now=now)
        assert result.escalated == 1
        assert result.managers_notified == 1
        assert result.digests_sent == 1
        assert result.errors == []

        stored = await services.store.get_followup(fu.id)
        assert stored.status == FollowUpStatus.PENDING
        assert stored.escalated is True
        assert stored.escalation_date == now
        assert stored.manager_id == "m1"

        owner = (await services.dispatcher.get_by_user("u1")).notifications
        assert [n.type for n in owner] == [NotificationType.ESCALATION]
        assert owner[0].related_id == fu.id

        manager = (await services.dispatcher.get_by_user("m1")).notifications
        types = sorted(n.type.value for n in manager)
        assert types == ["escalation", "escalation_digest"]
        escalation = next(n for n in manager if n.type == NotificationType.ESCALATION)
        assert escalation.metadata["owner_id"] == "u1"
        assert escalation.metadata["client_name"] == "Acme Corp"

    @pytest.mark.asyncio
    async def test_second_sweep_escalates_nothing(self, services, make_followup, now):
        await make_followup(days_ago=8)
        await services.escalation.escalate_overdue_followups(now=now)

        again = await services.escalation.escalate_overdue_followups(now=now + timedelta(minutes=5))
        assert again.escalated == 0
        assert again.digests_sent == 0
        manager = (await services.dispatcher.get_by_user("m1")).notifications
        assert len(manager) == 2

    @pytest.mark.asyncio
    async def test_concurrent_sweeps_escalate_once(self, services, make_followup, now):
        await make_followup(days_ago=8)
        results = await asyncio.gather(
            services.escalation.escalate_overdue_followups(now=now),
            services.escalation.escalate_overdue_followups(now=now),
        )
        assert sum(r.escalated for r in results) == 1
        owner = (await services.dispatcher.get_by_user("u1")).notifications
        assert len(owner) == 1

    @pytest.mark.asyncio
    async def test_escalated_rows_have_escalation_date(self, services, make_followup, now):
        for days in (8, 9, 10, 2):
            await make_followup(days_ago=days)
        await services.escalation.escalate_overdue_followups(now=now)

        rows, _ = await services.followups.get_by_user("u1")
        assert sum(1 for f in rows if f.escalated) == 3
        for f in rows:
            if f.escalated:
                assert f.escalation_date is not None
                assert f.escalation_date <= now

    @pytest.mark.asyncio
    async def test_not_yet_due_and_closed_are_ignored(self, services, make_followup, now):
        await make_followup(days_ago=2)
        closed = await make_followup(days_ago=9)
        await services.followups.complete(closed.id, "u1", now=now)

        result = await services.escalation.escalate_overdue_followups(now=now)
        assert result.escalated == 0
        assert result.skipped == 0

    @pytest.mark.asyncio
    async def test_digest_groups_followups_per_manager(self, services, make_followup, now):
        await make_followup(days_ago=8, client_name="Acme Corp")
        await make_followup(days_ago=9, client_name="Globex")

        result = await services.escalation.escalate_overdue_followups(now=now)
        assert result.escalated == 2
        assert result.digests_sent == 1

        manager = (await services.dispatcher.get_by_user("m1")).notifications
        digest = next(n for n in manager if n.type == NotificationType.ESCALATION_DIGEST)
        assert digest.metadata["count"] == 2
        assert len(digest.metadata["followup_ids"]) == 2
        assert "Acme Corp, Globex" in digest.message


class TestManagerResolution:
    @pytest.mark.asyncio
    async def test_no_manager_is_skipped(self, services, make_followup, now):
        fu = await make_followup(user_id="u2", days_ago=8)

        result = await services.escalation.escalate_overdue_followups(now=now)
        assert result.escalated == 0
        assert result.skipped == 1
        assert (await services.store.get_followup(fu.id)).escalated is False

    @pytest.mark.asyncio
    async def test_row_manager_wins_over_directory(self, services, make_followup, now):
        fu = await make_followup(days_ago=8, manager_id="m2")
        await services.escalation.escalate_overdue_followups(now=now)
        assert (await services.store.get_followup(fu.id)).manager_id == "m2"
        assert (await services.dispatcher.get_by_user("m2")).unread_count == 2

    @pytest.mark.asyncio
    async def test_owner_as_own_manager_falls_back(self, services, make_followup, now):
        fu = await make_followup(days_ago=8, manager_id="u1")
        assert await services.escalation.resolve_manager(fu) == "m1"

    @pytest.mark.asyncio
    async def test_default_manager(self, services, settings, make_followup, now):
        directory = StaticUserDirectory(DirectoryConfig(
            users=settings.directory.users, default_manager_id="m2",
        ))
        scheduler = EscalationScheduler(
            services.followups, services.dispatcher, directory, settings.followups,
        )
        fu = await make_followup(user_id="u2", days_ago=8)

        result = await scheduler.escalate_overdue_followups(now=now)
        assert result.escalated == 1
        assert (await services.store.get_followup(fu.id)).manager_id == "m2"


class TestFailures:
    @pytest.mark.asyncio
    async def test_row_errors_are_collected(self, services, make_followup, now):
        await make_followup(days_ago=8)
        await make_followup(days_ago=9)
        services.escalation.resolve_manager = AsyncMock(side_effect=RuntimeError("directory down"))

        result = await services.escalation.escalate_overdue_followups(now=now)
        assert result.escalated == 0
        assert len(result.errors) == 2
        assert "directory down" in result.errors[0]

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_undo_escalation(self, services, make_followup, now):
        fu = await make_followup(days_ago=8)
        services.store.create_notification = AsyncMock(side_effect=RuntimeError("db gone"))

        result = await services.escalation.escalate_overdue_followups(now=now)
        assert result.escalated == 1
        assert result.digests_sent == 0
        assert result.errors == []
        assert (await services.store.get_followup(fu.id)).escalated is True


class TestEscalationSideEffects:
    @pytest.mark.asyncio
    async def test_escalation_creates_todos_and_emails(self, services, make_followup, now):
        await make_followup(days_ago=8)
        await services.escalation.escalate_overdue_followups(now=now)

        owner_todos, _ = await services.todos.get_by_user("u1", now=now)
        assert len(owner_todos) == 1
        assert owner_todos[0].action_type == "resolve_escalation"
        assert owner_todos[0].priority.value == "urgent"

        manager_todos, _ = await services.todos.get_by_user("m1", now=now)
        # the digest has no todo rule
        assert len(manager_todos) == 1

        recipients = sorted(e.to_email for e in await services.store.list_emails())
        assert recipients == ["mgr@example.com", "mgr@example.com", "uma@example.com"]

    @pytest.mark.asyncio
    async def test_long_overdue_escalation_todo_due_in_a_day(self, services, make_followup, now):
        fu = await make_followup(days_ago=30)
        await services.escalation.escalate_overdue_followups(now=now)

        for user_id in ("u1", "m1"):
            todos, _ = await services.todos.get_by_user(user_id, now=now)
            assert len(todos) == 1
            assert todos[0].status.value == "pending"
            assert todos[0].due_date == now + timedelta(hours=24)

        escalation = (await services.dispatcher.get_by_user("u1")).notifications[0]
        assert escalation.metadata["followup_due_date"] == fu.due_date.isoformat()
        assert "due_date" not in escalation.metadata

    @pytest.mark.asyncio
    async def test_escalation_email_respects_preferences(self, services, make_followup, now):
        await make_followup(user_id="quiet", days_ago=8)
        result = await services.escalation.escalate_overdue_followups(now=now)
        assert result.escalated == 1

        recipients = [e.to_email for e in await services.store.list_emails()]
        assert "quiet@example.com" not in recipients
        assert "mgr@example.com" in recipients
