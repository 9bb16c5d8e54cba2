"""
Tests for NotificationDispatcher and NotificationEmailService.

Covers:
  - create(): persistence, silent no-ops (invalid, disabled, daily cap, store failure)
  - fan-out: email outbox row, sync listeners, queue delivery
  - read state: fetch limit, unread count, ownership-isolated mark-as-read
  - email eligibility, template rendering, dedupe, cancellation
"""
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from config.settings import EmailConfig, NotificationConfig
from job_queue.message_queue import Queues
from models.schemas import (
    EmailPreferences, EmailStatus, Notification, NotificationCreate, NotificationType, UserProfile,
)
from notifications.dispatcher import NotificationDispatcher
from notifications.email import NotificationEmailService, render_text


def _review(user_id="u1", **overrides):
    data = dict(
        user_id=user_id,
        type=NotificationType.REVIEW_REQUESTED,
        title="Review requested",
        message="Please review the H-1B packet",
        related_id="app-1",
        metadata={"application_title": "H-1B packet", "submitter_name": "Vik"},
    )
    data.update(overrides)
    return NotificationCreate(**data)


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_persists_and_fans_out(self, services, now):
        n = await services.dispatcher.create(_review(), now=now)
        assert n is not None
        assert n.read is False
        assert n.created_at == now
        assert await services.store.get_notification(n.id) is not None

        emails = await services.store.list_emails(notification_id=n.id)
        assert len(emails) == 1
        assert emails[0].to_email == "uma@example.com"
        assert emails[0].subject == "Review requested: Review requested"

        todo = await services.store.find_todo_by_notification(n.id, "u1")
        assert todo is not None
        assert todo.title == "Review H-1B packet"

    @pytest.mark.asyncio
    async def test_accepts_plain_dict(self, services, now):
        n = await services.dispatcher.create({
            "user_id": "u2", "type": "system", "title": "Maintenance", "message": "Tonight",
        }, now=now)
        assert n.type == NotificationType.SYSTEM

    @pytest.mark.asyncio
    async def test_invalid_payload_returns_none(self, services, now):
        assert await services.dispatcher.create({"user_id": "u1", "type": "bogus"}, now=now) is None
        assert await services.dispatcher.create({"user_id": "u1"}, now=now) is None

    @pytest.mark.asyncio
    async def test_disabled_is_silent_noop(self, store, services, now):
        dispatcher = NotificationDispatcher(
            store, services.emails, NotificationConfig(enabled=False), queue_max_attempts=3,
        )
        assert await dispatcher.create(_review(), now=now) is None
        assert (await dispatcher.get_by_user("u1")).notifications == []

    @pytest.mark.asyncio
    async def test_daily_cap(self, store, services, now):
        dispatcher = NotificationDispatcher(
            store, services.emails, NotificationConfig(max_per_user_per_day=2), queue_max_attempts=3,
        )
        assert await dispatcher.create(_review(), now=now)
        assert await dispatcher.create(_review(), now=now)
        assert await dispatcher.create(_review(), now=now) is None
        # other users are unaffected
        assert await dispatcher.create(_review(user_id="u2"), now=now)
        # the window rolls forward after 24h
        assert await dispatcher.create(_review(), now=now + timedelta(hours=25))

    @pytest.mark.asyncio
    async def test_store_failure_returns_none(self, services, now):
        services.store.create_notification = AsyncMock(side_effect=RuntimeError("db down"))
        assert await services.dispatcher.create(_review(), now=now) is None

    @pytest.mark.asyncio
    async def test_listener_failure_does_not_block(self, services, now):
        calls = []

        async def broken(notification):
            raise RuntimeError("listener exploded")

        async def recording(notification):
            calls.append(notification.id)

        services.dispatcher.add_listener(broken)
        services.dispatcher.add_listener(recording)
        n = await services.dispatcher.create(_review(), now=now)
        assert n is not None
        assert calls == [n.id]

    @pytest.mark.asyncio
    async def test_email_failure_does_not_block(self, services, now):
        services.emails.queue_for_notification = AsyncMock(side_effect=RuntimeError("smtp config"))
        n = await services.dispatcher.create(_review(), now=now)
        assert n is not None
        assert await services.store.find_todo_by_notification(n.id, "u1") is not None


class TestQueueDelivery:
    @pytest.mark.asyncio
    async def test_queue_mode_publishes_instead_of_listeners(self, store, services, queue, now):
        dispatcher = NotificationDispatcher(
            store, services.emails, NotificationConfig(delivery="queue"), queue, queue_max_attempts=4,
        )
        listener = AsyncMock()
        dispatcher.add_listener(listener)

        n = await dispatcher.create(_review(), now=now)
        listener.assert_not_awaited()
        assert await queue.queue_length(Queues.CREATED) == 1

        [job] = await queue.peek(Queues.CREATED)
        assert job.notification_id == n.id
        assert job.max_attempts == 4
        assert Notification.model_validate(job.payload).id == n.id

    @pytest.mark.asyncio
    async def test_publish_failure_is_logged_only(self, store, services, queue, now):
        dispatcher = NotificationDispatcher(
            store, services.emails, NotificationConfig(delivery="queue"), queue, queue_max_attempts=3,
        )
        queue.publish = AsyncMock(side_effect=ConnectionError("redis down"))
        assert await dispatcher.create(_review(), now=now) is not None


class TestReadState:
    @pytest.mark.asyncio
    async def test_get_by_user_newest_first_with_unread_count(self, services, now):
        first = await services.dispatcher.create(_review(), now=now)
        second = await services.dispatcher.create(_review(), now=now + timedelta(minutes=1))
        await services.dispatcher.create(_review(user_id="u2"), now=now)

        result = await services.dispatcher.get_by_user("u1")
        assert [n.id for n in result.notifications] == [second.id, first.id]
        assert result.unread_count == 2

    @pytest.mark.asyncio
    async def test_fetch_limit_is_capped(self, store, services, now):
        dispatcher = NotificationDispatcher(
            store, None, NotificationConfig(max_to_fetch=3), queue_max_attempts=3,
        )
        for i in range(5):
            await dispatcher.create(_review(), now=now + timedelta(seconds=i))
        assert len((await dispatcher.get_by_user("u1", limit=100)).notifications) == 3
        assert len((await dispatcher.get_by_user("u1", limit=2)).notifications) == 2
        assert (await dispatcher.get_by_user("u1")).unread_count == 5

    @pytest.mark.asyncio
    async def test_mark_as_read_by_owner(self, services, now):
        n = await services.dispatcher.create(_review(), now=now)
        assert await services.dispatcher.mark_as_read(n.id, "u1") is True
        assert (await services.store.get_notification(n.id)).read is True
        result = await services.dispatcher.get_by_user("u1", unread_only=True)
        assert result.notifications == []

    @pytest.mark.asyncio
    async def test_mark_as_read_by_other_user_changes_nothing(self, services, now):
        n = await services.dispatcher.create(_review(user_id="u1"), now=now)
        assert await services.dispatcher.mark_as_read(n.id, "u2") is True
        assert (await services.store.get_notification(n.id)).read is False

    @pytest.mark.asyncio
    async def test_mark_missing_is_still_success(self, services):
        assert await services.dispatcher.mark_as_read("does-not-exist", "u1") is True

    @pytest.mark.asyncio
    async def test_mark_all_as_read_is_bounded(self, store, services, now):
        dispatcher = NotificationDispatcher(
            store, None, NotificationConfig(mark_all_limit=2), queue_max_attempts=3,
        )
        for i in range(3):
            await dispatcher.create(_review(), now=now + timedelta(seconds=i))
        await dispatcher.create(_review(user_id="u2"), now=now)

        assert await dispatcher.mark_all_as_read("u1") == 2
        assert await dispatcher.mark_all_as_read("u1") == 1
        assert await dispatcher.mark_all_as_read("u1") == 0
        assert (await dispatcher.get_by_user("u2")).unread_count == 1


class TestEmailEligibility:
    @pytest.mark.asyncio
    async def test_should_send_reasons(self, services, directory):
        directory.add_user(UserProfile(
            id="off", email="off@example.com", preferences=EmailPreferences(email_enabled=False),
        ))
        emails = services.emails
        assert await emails.should_send("u1", NotificationType.REVIEW_REQUESTED) == (
            True, await directory.get_user("u1"), "",
        )
        assert (await emails.should_send("ghost", "system"))[2] == "user not found"
        assert (await emails.should_send("noemail", "system"))[2] == "no email address"
        assert (await emails.should_send("off", "system"))[2] == "email notifications disabled"
        ok, _, reason = await emails.should_send("quiet", NotificationType.FOLLOW_UP_REMINDER)
        assert ok is False
        assert reason == "follow_up_reminder emails disabled"
        # types without a specific flag only need email_enabled
        assert (await emails.should_send("quiet", NotificationType.DOCUMENT_GENERATED))[0] is True

    @pytest.mark.asyncio
    async def test_ineligible_recipient_gets_no_row(self, services, now):
        n = await services.dispatcher.create(_review(user_id="noemail"), now=now)
        assert n is not None
        assert await services.store.list_emails(notification_id=n.id) == []

    @pytest.mark.asyncio
    async def test_one_row_per_notification(self, services, now):
        n = await services.dispatcher.create(_review(), now=now)
        assert await services.emails.queue_for_notification(n) is None
        assert len(await services.store.list_emails(notification_id=n.id)) == 1

    @pytest.mark.asyncio
    async def test_cancel_pending(self, services, now):
        n = await services.dispatcher.create(_review(), now=now)
        assert await services.emails.cancel_pending(n.id) == 1
        [row] = await services.store.list_emails(notification_id=n.id)
        assert row.status == EmailStatus.FAILED
        assert row.last_error == "cancelled"
        assert await services.emails.cancel_pending(n.id) == 0


class TestRendering:
    def test_variables_and_if_blocks(self):
        tpl = "Hi {{name}}{{#if late}} (late){{/if}}{{#if early}} (early){{/if}}"
        assert render_text(tpl, {"name": "Ann", "late": True}) == "Hi Ann (late)"

    def test_unknown_variable_renders_empty(self):
        assert render_text("[{{missing}}]", {}) == "[]"

    def test_values_are_escaped(self):
        assert render_text("{{v}}", {"v": "<b>x</b>"}) == "&lt;b&gt;x&lt;/b&gt;"
        assert render_text("{{v}}", {"v": "<b>x</b>"}, escape=False) == "<b>x</b>"

    def test_render_wraps_layout(self, store, directory):
        emails = NotificationEmailService(store, directory, EmailConfig(portal_url="https://portal.test"))
        subject, body = emails.render("application_rejected", {
            "title": "I-130", "message": "Missing signature", "feedback": "Sign page 3",
            "user_name": "Uma",
        })
        assert subject == "Application needs changes: I-130"
        assert "Hi Uma," in body
        assert "Feedback: Sign page 3" in body
        assert 'href="https://portal.test"' in body
        assert "{{" not in body

    def test_unknown_template_falls_back_to_system(self, store, directory):
        emails = NotificationEmailService(store, directory, EmailConfig())
        subject, _ = emails.render("no_such_template", {"title": "Hello"})
        assert subject == "Hello"
