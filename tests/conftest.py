"""Shared test fixtures for FollowDesk."""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from channels.base import MailTransport
from config.settings import (
    DirectoryConfig, EmailConfig, FollowUpConfig, NotificationConfig,
    QueueConfig, Settings, TodoConfig,
)
from database.store_memory import InMemoryStore
from directory.connector import StaticUserDirectory
from job_queue.message_queue import InMemoryMessageQueue
from models.schemas import EmailPreferences, UserProfile


NOW = datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc)


class RecordingTransport(MailTransport):
    """Mail transport double: records sends, or raises ``fail_with`` when set."""

    name = "recording"

    def __init__(self):
        super().__init__(failure_threshold=1000)
        self.sent: list[dict[str, Any]] = []
        self.fail_with: Exception = None
        self.delay: float = 0.0

    async def _do_send(self, to, subject, html, attachments=None) -> str:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append({"to": to, "subject": subject, "html": html})
        return f"<msg-{len(self.sent)}@test>"


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def settings() -> Settings:
    return Settings(
        cron_secret="test-secret",
        followups=FollowUpConfig(),
        notifications=NotificationConfig(),
        email=EmailConfig(send_timeout_seconds=1.0),
        todos=TodoConfig(),
        queue=QueueConfig(),
        directory=DirectoryConfig(
            default_manager_id="",
            users={
                "u1": {"email": "uma@example.com", "full_name": "Uma Rao", "manager_id": "m1"},
                "u2": {"email": "vik@example.com", "full_name": "Vik Shah"},
                "m1": {"email": "mgr@example.com", "full_name": "Mira Iyer", "is_manager": True},
                "m2": {"email": "mgr2@example.com", "full_name": "Dev Nair", "is_manager": True},
                "noemail": {"email": "", "full_name": "No Mail"},
            },
        ),
    )


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def directory(settings) -> StaticUserDirectory:
    d = StaticUserDirectory(settings.directory)
    d.add_user(UserProfile(
        id="quiet",
        email="quiet@example.com",
        full_name="Quiet User",
        manager_id="m1",
        preferences=EmailPreferences(email_follow_up_reminders=False, email_escalations=False),
    ))
    return d


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def queue() -> InMemoryMessageQueue:
    return InMemoryMessageQueue(retry_backoff_base=60)


@pytest.fixture
def services(settings, store, directory, transport, queue):
    from api.services import build_services
    return build_services(settings, store=store, directory=directory, transport=transport, queue=queue)


@pytest.fixture
def make_followup(services, now):
    """Create a follow-up for u1 sent ``days_ago`` days before now."""
    async def _make(user_id: str = "u1", days_ago: int = 8, **kwargs):
        return await services.followups.create(
            user_id=user_id,
            email_subject=kwargs.pop("email_subject", "Visa application documents"),
            client_name=kwargs.pop("client_name", "Acme Corp"),
            client_email=kwargs.pop("client_email", "ops@acme.test"),
            sent_date=now - timedelta(days=days_ago),
            now=now - timedelta(days=days_ago),
            **kwargs,
        )
    return _make
