"""
Service wiring: builds the object graph shared by the API and the job CLI.

    store ─┬─ NotificationEmailService ─┬─ NotificationDispatcher ──▶ TodoAutomation
           │                            │      (listener or queue)
           ├─ FollowUpService ──────────┴─ EscalationScheduler
           ├─ TodoService
           └─ EmailQueueProcessor ── MailTransport

Any collaborator can be passed in (tests hand over an in-memory store,
a recording transport and a static directory); the rest come from settings.
"""
from __future__ import annotations

import structlog
from dataclasses import asdict, dataclass, field

from channels.base import MailTransport
from channels.email_adapter import create_transport
from config.settings import Settings, get_settings
from database.store_base import BaseStore
from database.store_factory import create_store
from directory.connector import UserDirectory, create_user_directory
from email_queue.processor import EmailQueueProcessor
from followups.service import FollowUpService
from job_queue.consumer import NotificationConsumer
from job_queue.message_queue import MessageQueue, create_message_queue
from notifications.dispatcher import NotificationDispatcher
from notifications.email import NotificationEmailService
from scheduler.escalation import EscalationScheduler
from scheduler.jobs import (
    EmailQueueJob, EscalationJob, Job, NotificationQueueJob, ReminderJob, TodoExpiryJob,
)
from todos.automation import TodoAutomation
from todos.service import TodoService

logger = structlog.get_logger()


@dataclass
class Services:
    settings: Settings
    store: BaseStore
    directory: UserDirectory
    transport: MailTransport
    queue: MessageQueue
    emails: NotificationEmailService
    dispatcher: NotificationDispatcher
    followups: FollowUpService
    todos: TodoService
    automation: TodoAutomation
    consumer: NotificationConsumer
    processor: EmailQueueProcessor
    escalation: EscalationScheduler
    jobs: dict[str, Job] = field(default_factory=dict)

    async def start(self):
        if self.settings.database.store_backend == "sql":
            from database.session import init_db
            await init_db(self.settings.database.url)
        await self.queue.connect()
        logger.info("services_started",
                    store=type(self.store).__name__,
                    transport=self.transport.name,
                    delivery=self.settings.notifications.delivery)

    async def close(self):
        await self.queue.close()
        await self.transport.shutdown()
        close_directory = getattr(self.directory, "close", None)
        if close_directory is not None:
            await close_directory()
        if self.settings.database.store_backend == "sql":
            from database.session import close_db
            await close_db()
        logger.info("services_stopped")


def build_services(
    settings: Settings = None,
    store: BaseStore = None,
    directory: UserDirectory = None,
    transport: MailTransport = None,
    queue: MessageQueue = None,
) -> Services:
    settings = settings or get_settings()
    store = store or create_store(asdict(settings.database))
    directory = directory or create_user_directory(settings.directory)
    transport = transport or create_transport(settings.email)
    queue = queue or create_message_queue({
        "backend": settings.queue.backend,
        "redis_url": settings.queue.redis_url,
        "retry_backoff_base": settings.queue.retry_backoff_base,
    })

    emails = NotificationEmailService(store, directory, settings.email)
    dispatcher = NotificationDispatcher(
        store, emails, settings.notifications, queue,
        queue_max_attempts=settings.queue.max_attempts,
    )
    todos = TodoService(store, settings.todos)
    automation = TodoAutomation(todos)
    if settings.notifications.delivery != "queue":
        dispatcher.add_listener(automation)
    consumer = NotificationConsumer(automation, queue, consumer_group=settings.queue.consumer_group)

    followups = FollowUpService(store, emails, directory, settings.followups)
    processor = EmailQueueProcessor(store, transport, settings.email)
    escalation = EscalationScheduler(followups, dispatcher, directory, settings.followups)

    services = Services(
        settings=settings,
        store=store,
        directory=directory,
        transport=transport,
        queue=queue,
        emails=emails,
        dispatcher=dispatcher,
        followups=followups,
        todos=todos,
        automation=automation,
        consumer=consumer,
        processor=processor,
        escalation=escalation,
    )
    for job in (
        EscalationJob(escalation),
        ReminderJob(followups, directory),
        EmailQueueJob(processor),
        TodoExpiryJob(todos),
        NotificationQueueJob(consumer),
    ):
        services.jobs[job.name] = job
    return services
