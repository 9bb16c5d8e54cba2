"""
Todo generation rules: which notifications become work items, and how.

Each rule reads the notification's data (its metadata merged with title,
message and related_id) and produces the todo's title, description,
priority, due offset and action payload. Notification types without a
rule produce no todo.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Optional

from models.schemas import NotificationType, TodoCategory, TodoPriority

Data = dict[str, Any]


@dataclass
class TodoRule:
    title: Callable[[Data], str]
    category: TodoCategory
    priority: Callable[[Data], TodoPriority]
    due_in: Callable[[Data], timedelta]
    action_type: str
    description: Callable[[Data], str] = lambda data: ""
    action_keys: tuple[str, ...] = field(default_factory=tuple)

    def action_data(self, data: Data) -> Data:
        return {k: data[k] for k in self.action_keys if data.get(k) is not None}


def _subject(data: Data, fallback: str) -> str:
    return data.get("application_title") or data.get("filename") or fallback


def _client(data: Data) -> str:
    return data.get("client_name") or "client"


def _hours(n: float) -> Callable[[Data], timedelta]:
    return lambda data: timedelta(hours=n)


def _fixed(priority: TodoPriority) -> Callable[[Data], TodoPriority]:
    return lambda data: priority


TODO_RULES: dict[NotificationType, TodoRule] = {
    NotificationType.REVIEW_REQUESTED: TodoRule(
        title=lambda d: f"Review {_subject(d, 'application')}",
        description=lambda d: (
            f"Review submitted by {d.get('submitter_name') or 'a colleague'} requires your attention."
            + (" This is marked as high priority." if d.get("urgency") == "high" else "")
        ),
        category=TodoCategory.REVIEW,
        priority=lambda d: TodoPriority.URGENT if d.get("urgency") == "high" else TodoPriority.HIGH,
        due_in=lambda d: timedelta(hours=4 if d.get("urgency") == "high" else 24),
        action_type="review_document",
        action_keys=("related_id", "application_title", "submitter_name", "urgency", "filename"),
    ),
    NotificationType.APPLICATION_APPROVED: TodoRule(
        title=lambda d: f"Send {_subject(d, 'approved document')} to {_client(d)}",
        description=lambda d: (
            f"Approved by {d.get('reviewer_name') or 'the reviewer'}. "
            "Send the approved document to the client promptly."
        ),
        category=TodoCategory.ACTION,
        priority=_fixed(TodoPriority.HIGH),
        due_in=_hours(4),
        action_type="send_approved_document",
        action_keys=("related_id", "application_title", "client_name", "reviewer_name", "document_type"),
    ),
    NotificationType.APPLICATION_REJECTED: TodoRule(
        title=lambda d: (
            f"Edit {_subject(d, 'form').removesuffix('.pdf')} - "
            f"Reason: {d.get('message') or 'No specific reason provided'}"
        ),
        description=lambda d: (
            f"Rejected by {d.get('reviewer_name') or 'the reviewer'}. "
            "Address the feedback and resubmit."
        ),
        category=TodoCategory.ACTION,
        priority=_fixed(TodoPriority.HIGH),
        due_in=_hours(24),
        action_type="edit_rejected_document",
        action_keys=("related_id", "application_title", "client_name", "reviewer_name", "message"),
    ),
    NotificationType.REVIEW_COMPLETED: TodoRule(
        title=lambda d: f"Follow up on {_subject(d, 'application')} review result",
        description=lambda d: (
            f"Application has been {'approved' if d.get('status') == 'approved' else 'rejected'}. "
            "Send the result to the client and follow up if needed."
        ),
        category=TodoCategory.FOLLOW_UP,
        priority=_fixed(TodoPriority.MEDIUM),
        # rejections take longer to explain
        due_in=lambda d: timedelta(hours=2 if d.get("status") == "approved" else 4),
        action_type="send_review_result",
        action_keys=("related_id", "application_title", "client_name", "status", "reviewer_name"),
    ),
    NotificationType.DOCUMENT_GENERATED: TodoRule(
        title=lambda d: f"Send {d.get('document_type') or _subject(d, 'document')} to {_client(d)}",
        description=lambda d: "Document has been generated and is ready to be sent to the client.",
        category=TodoCategory.ACTION,
        priority=_fixed(TodoPriority.HIGH),
        due_in=_hours(4),
        action_type="send_document",
        action_keys=("related_id", "client_name", "document_type", "filename"),
    ),
    NotificationType.CLIENT_NO_RESPONSE: TodoRule(
        title=lambda d: (
            f"URGENT: Contact {_client(d)} - No response for {d.get('days_ago') or 7}+ days"
        ),
        description=lambda d: (
            f"Client hasn't responded to {d.get('document_type') or 'the document'} "
            f"sent {d.get('days_ago') or 7} days ago."
        ),
        category=TodoCategory.REMINDER,
        priority=_fixed(TodoPriority.URGENT),
        due_in=_hours(2),
        action_type="urgent_follow_up",
        action_keys=("related_id", "client_name", "document_type", "days_ago"),
    ),
    NotificationType.FOLLOW_UP_REMINDER: TodoRule(
        title=lambda d: f"Follow up with {_client(d)}",
        description=lambda d: d.get("message") or "",
        category=TodoCategory.FOLLOW_UP,
        priority=_fixed(TodoPriority.MEDIUM),
        due_in=_hours(24),
        action_type="contact_client",
        action_keys=("related_id", "client_name", "email_subject", "sequence"),
    ),
    NotificationType.ESCALATION: TodoRule(
        title=lambda d: f"Resolve escalated follow-up with {_client(d)}",
        description=lambda d: d.get("message") or "",
        category=TodoCategory.FOLLOW_UP,
        priority=_fixed(TodoPriority.URGENT),
        due_in=_hours(24),
        action_type="resolve_escalation",
        action_keys=("related_id", "client_name", "email_subject", "owner_id", "manager_id"),
    ),
}


def get_rule(notification_type: NotificationType | str) -> Optional[TodoRule]:
    try:
        return TODO_RULES.get(NotificationType(notification_type))
    except ValueError:
        return None
