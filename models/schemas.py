"""
Core data models for the FollowDesk system.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class FollowUpStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    NO_RESPONSE = "no_response"
    SNOOZED = "snoozed"


class CompletionReason(str, Enum):
    CLIENT_RESPONDED = "client_responded"
    SIGNED = "signed"
    PAID = "paid"
    CANCELLED = "cancelled"
    OTHER = "other"


class HistoryAction(str, Enum):
    CREATED = "created"
    COMPLETED = "completed"
    MARKED_NO_RESPONSE = "marked_no_response"
    SNOOZED = "snoozed"
    RESENT = "resent"
    ESCALATED = "escalated"
    REMINDER_SENT = "reminder_sent"


class NotificationType(str, Enum):
    FOLLOW_UP_REMINDER = "follow_up_reminder"
    REVIEW_REQUESTED = "review_requested"
    REVIEW_COMPLETED = "review_completed"
    APPLICATION_APPROVED = "application_approved"
    APPLICATION_REJECTED = "application_rejected"
    ESCALATION = "escalation"
    ESCALATION_DIGEST = "escalation_digest"
    DOCUMENT_GENERATED = "document_generated"
    CLIENT_NO_RESPONSE = "client_no_response"
    SYSTEM = "system"


class EmailStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class TodoStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DISMISSED = "dismissed"
    EXPIRED = "expired"


class TodoPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class TodoCategory(str, Enum):
    REVIEW = "review"
    FOLLOW_UP = "follow_up"
    REMINDER = "reminder"
    ACTION = "action"


# ──────────────────────────────────────────────────────────────
#  FollowUp: an outstanding obligation tied to a client email
# ──────────────────────────────────────────────────────────────

class FollowUp(BaseModel):
    """
    One tracked obligation to hear back from a client by a due date.

    Successive follow-ups for the same outbound email share a thread_id;
    their sequence numbers strictly increase (1 → 2 → 3).
    """
    id: str = Field(default_factory=_new_id)
    user_id: str
    thread_id: str = ""                       # defaults to id of the first follow-up
    client_name: str
    client_email: Optional[str] = None
    email_subject: str
    document_type: Optional[str] = None
    original_email_id: Optional[str] = None
    sequence: int = 1                         # 1..max_sequence
    sent_date: datetime = Field(default_factory=utcnow)
    due_date: datetime
    status: FollowUpStatus = FollowUpStatus.PENDING
    escalated: bool = False
    escalation_date: Optional[datetime] = None
    manager_id: Optional[str] = None
    completion_reason: Optional[CompletionReason] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in (FollowUpStatus.COMPLETED, FollowUpStatus.NO_RESPONSE)

    def is_overdue(self, now: datetime) -> bool:
        return self.status == FollowUpStatus.PENDING and self.due_date < now


class FollowUpHistory(BaseModel):
    """Append-only log row. idempotency_key is unique across the log."""
    id: str = Field(default_factory=_new_id)
    followup_id: str
    user_id: str
    action: HistoryAction
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    notes: str = ""
    idempotency_key: str
    created_at: datetime = Field(default_factory=utcnow)

    @staticmethod
    def make_key(
        followup_id: str, action: HistoryAction | str, when: datetime, discriminator: str = "",
    ) -> str:
        action_value = action.value if isinstance(action, HistoryAction) else action
        key = f"{followup_id}:{when.date().isoformat()}:{action_value}"
        # repeatable actions (snooze) need a discriminator to stay unique within a day
        return f"{key}:{discriminator}" if discriminator else key


class FollowUpStats(BaseModel):
    total_pending: int = 0
    total_completed: int = 0
    total_no_response: int = 0
    overdue_count: int = 0
    due_today_count: int = 0


# ──────────────────────────────────────────────────────────────
#  Notification: persisted, addressed message about an event
# ──────────────────────────────────────────────────────────────

class NotificationCreate(BaseModel):
    """Input to NotificationDispatcher.create()."""
    user_id: str
    type: NotificationType
    title: str
    message: str
    related_id: Optional[str] = None          # application / follow-up id
    metadata: dict[str, Any] = {}             # template vars, due hints, urgency


class Notification(BaseModel):
    id: str = Field(default_factory=_new_id)
    user_id: str
    type: NotificationType
    title: str
    message: str
    related_id: Optional[str] = None
    metadata: dict[str, Any] = {}
    read: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class NotificationList(BaseModel):
    notifications: list[Notification] = []
    unread_count: int = 0


# ──────────────────────────────────────────────────────────────
#  EmailQueueItem: outbox row drained by the queue processor
# ──────────────────────────────────────────────────────────────

class EmailQueueItem(BaseModel):
    id: str = Field(default_factory=_new_id)
    notification_id: Optional[str] = None     # None for system mail
    user_id: Optional[str] = None
    to_email: str
    subject: str
    html_body: str
    status: EmailStatus = EmailStatus.PENDING
    scheduled_for: datetime = Field(default_factory=utcnow)
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    sent_at: Optional[datetime] = None


class EmailStats(BaseModel):
    pending: int = 0
    sent: int = 0
    failed: int = 0
    total: int = 0
    oldest_pending_at: Optional[datetime] = None


# ──────────────────────────────────────────────────────────────
#  Todo: actionable item derived from a notification
# ──────────────────────────────────────────────────────────────

class Todo(BaseModel):
    id: str = Field(default_factory=_new_id)
    user_id: str
    notification_id: Optional[str] = None
    title: str
    description: str = ""
    category: TodoCategory = TodoCategory.ACTION
    priority: TodoPriority = TodoPriority.MEDIUM
    status: TodoStatus = TodoStatus.PENDING
    due_date: Optional[datetime] = None
    action_type: Optional[str] = None
    action_data: dict[str, Any] = {}
    client_name: Optional[str] = None
    related_id: Optional[str] = None
    auto_generated: bool = False
    completed_at: Optional[datetime] = None
    dismissed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class TodoStats(BaseModel):
    total: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    dismissed: int = 0
    expired: int = 0
    overdue: int = 0
    due_soon: int = 0                         # due within the next 24h


# ──────────────────────────────────────────────────────────────
#  Directory: users and their email preferences
# ──────────────────────────────────────────────────────────────

class EmailPreferences(BaseModel):
    email_enabled: bool = True
    email_follow_up_reminders: bool = True
    email_review_requests: bool = True
    email_review_completed: bool = True
    email_application_updates: bool = True
    email_escalations: bool = True
    email_system: bool = True


class UserProfile(BaseModel):
    id: str
    email: str = ""
    full_name: str = ""
    is_manager: bool = False
    manager_id: Optional[str] = None
    preferences: EmailPreferences = Field(default_factory=EmailPreferences)


# ──────────────────────────────────────────────────────────────
#  Job results: returned by externally triggered sweeps
# ──────────────────────────────────────────────────────────────

class EscalationResult(BaseModel):
    escalated: int = 0
    managers_notified: int = 0
    digests_sent: int = 0
    skipped: int = 0
    errors: list[str] = []


class QueueRunResult(BaseModel):
    attempted: int = 0
    sent: int = 0
    failed: int = 0                           # failed attempts, retried or terminal
    dead: int = 0                             # reached the retry ceiling this run
    errors: list[str] = []


class JobResult(BaseModel):
    """Uniform envelope for scheduler.jobs triggers."""
    job: str
    ok: bool = True
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    counts: dict[str, int] = {}
    errors: list[str] = []
