"""
Tests for the externally triggered jobs (scheduler.jobs).
"""
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from models.schemas import EmailQueueItem, Todo


class TestJobs:
    def test_registry(self, services):
        assert sorted(services.jobs) == [
            "drain_notification_queue",
            "escalate_follow_ups",
            "expire_todos",
            "process_email_queue",
            "send_follow_up_reminders",
        ]

    @pytest.mark.asyncio
    async def test_escalation_job(self, services, make_followup, now):
        await make_followup(days_ago=8)
        result = await services.jobs["escalate_follow_ups"].trigger(now)
        assert result.ok is True
        assert result.counts["escalated"] == 1
        assert result.counts["digests_sent"] == 1
        assert result.started_at == now
        assert result.finished_at is not None

    @pytest.mark.asyncio
    async def test_reminder_job_respects_preferences(self, services, make_followup, now):
        await make_followup(user_id="u1", days_ago=8)
        await make_followup(user_id="quiet", days_ago=8)
        await make_followup(user_id="u1", days_ago=1)

        result = await services.jobs["send_follow_up_reminders"].trigger(now)
        assert result.counts == {"candidates": 2, "sent": 1, "skipped": 1}
        emails = await services.store.list_emails()
        assert [e.to_email for e in emails] == ["uma@example.com"]

        again = await services.jobs["send_follow_up_reminders"].trigger(now + timedelta(hours=2))
        assert again.counts["sent"] == 0

    @pytest.mark.asyncio
    async def test_email_queue_job(self, services, transport, now):
        await services.store.enqueue_email(EmailQueueItem(
            to_email="a@example.com", subject="s", html_body="<p>b</p>", scheduled_for=now,
        ))
        result = await services.jobs["process_email_queue"].trigger(now)
        assert result.counts == {"attempted": 1, "sent": 1, "failed": 0, "dead": 0}
        assert len(transport.sent) == 1

    @pytest.mark.asyncio
    async def test_todo_expiry_job(self, services, now):
        await services.store.create_todo(Todo(user_id="u1", title="old", due_date=now - timedelta(days=10)))
        await services.store.create_todo(Todo(user_id="u1", title="fresh", due_date=now - timedelta(days=1)))
        result = await services.jobs["expire_todos"].trigger(now)
        assert result.counts == {"expired": 1}

    @pytest.mark.asyncio
    async def test_notification_queue_job_empty(self, services, now):
        result = await services.jobs["drain_notification_queue"].trigger(now)
        assert result.ok is True
        assert result.counts == {"handled": 0}

    @pytest.mark.asyncio
    async def test_failure_is_reported_not_raised(self, services, now):
        services.todos.expire_overdue = AsyncMock(side_effect=RuntimeError("db down"))
        result = await services.jobs["expire_todos"].trigger(now)
        assert result.ok is False
        assert result.errors == ["db down"]

    @pytest.mark.asyncio
    async def test_row_errors_mark_result_failed(self, services, make_followup, now):
        await make_followup(days_ago=8)
        services.escalation.resolve_manager = AsyncMock(side_effect=RuntimeError("directory down"))
        result = await services.jobs["escalate_follow_ups"].trigger(now)
        assert result.ok is False
        assert len(result.errors) == 1
