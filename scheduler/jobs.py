"""
Externally triggered jobs.

Nothing here owns a timer. A cron endpoint, scripts/run_jobs.py, or a test
calls ``trigger(now)`` and gets a JobResult back; the job is a bounded batch
over current store state and the given clock.

    EscalationJob        overdue follow-ups → managers
    ReminderJob          due follow-ups → reminder emails (once per day each)
    EmailQueueJob        outbox → mail transport
    TodoExpiryJob        stale open todos → expired
    NotificationQueueJob queued notification events → Todo Automation
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Optional

from directory.connector import UserDirectory
from email_queue.processor import EmailQueueProcessor
from followups.service import FollowUpService
from job_queue.consumer import NotificationConsumer
from models.schemas import JobResult, utcnow
from scheduler.escalation import EscalationScheduler
from todos.service import TodoService

logger = structlog.get_logger()


class Job:
    name = "job"

    async def trigger(self, now: datetime = None) -> JobResult:
        now = now or utcnow()
        result = JobResult(job=self.name, started_at=now)
        try:
            await self.run(now, result)
        except Exception as e:
            result.ok = False
            result.errors.append(str(e))
            logger.error("job_failed", job=self.name, error=str(e))
        result.finished_at = utcnow()
        if result.errors:
            result.ok = False
        logger.info("job_finished", job=self.name, ok=result.ok, **result.counts)
        return result

    async def run(self, now: datetime, result: JobResult):
        raise NotImplementedError


class EscalationJob(Job):
    name = "escalate_follow_ups"

    def __init__(self, scheduler: EscalationScheduler):
        self.scheduler = scheduler

    async def run(self, now, result):
        outcome = await self.scheduler.escalate_overdue_followups(now=now)
        result.counts = {
            "escalated": outcome.escalated,
            "managers_notified": outcome.managers_notified,
            "digests_sent": outcome.digests_sent,
            "skipped": outcome.skipped,
        }
        result.errors.extend(outcome.errors)


class ReminderJob(Job):
    """Queue today's reminder for each due follow-up whose owner wants them."""

    name = "send_follow_up_reminders"

    def __init__(self, followups: FollowUpService, directory: UserDirectory):
        self.followups = followups
        self.directory = directory

    async def run(self, now, result):
        counts = {"candidates": 0, "sent": 0, "skipped": 0}
        for followup in await self.followups.get_needing_reminders(now=now):
            counts["candidates"] += 1
            try:
                user = await self.directory.get_user(followup.user_id)
                prefs = user.preferences if user else None
                if prefs is None or not prefs.email_enabled or not prefs.email_follow_up_reminders:
                    counts["skipped"] += 1
                    continue
                if await self.followups.send_reminder_email(followup, now=now):
                    counts["sent"] += 1
                else:
                    counts["skipped"] += 1
            except Exception as e:
                result.errors.append(f"{followup.id}: {e}")
                logger.error("reminder_failed", followup_id=followup.id, error=str(e))
        result.counts = counts


class EmailQueueJob(Job):
    name = "process_email_queue"

    def __init__(self, processor: EmailQueueProcessor, limit: Optional[int] = None):
        self.processor = processor
        self.limit = limit

    async def run(self, now, result):
        outcome = await self.processor.process_queue(limit=self.limit, now=now)
        result.counts = {
            "attempted": outcome.attempted,
            "sent": outcome.sent,
            "failed": outcome.failed,
            "dead": outcome.dead,
        }
        result.errors.extend(outcome.errors)


class TodoExpiryJob(Job):
    name = "expire_todos"

    def __init__(self, todos: TodoService):
        self.todos = todos

    async def run(self, now, result):
        result.counts = {"expired": await self.todos.expire_overdue(now=now)}


class NotificationQueueJob(Job):
    name = "drain_notification_queue"

    def __init__(self, consumer: NotificationConsumer, max_jobs: int = 100):
        self.consumer = consumer
        self.max_jobs = max_jobs

    async def run(self, now, result):
        result.counts = {"handled": await self.consumer.drain(max_jobs=self.max_jobs)}
