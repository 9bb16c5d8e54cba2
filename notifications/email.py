"""
Notification Email: turns notifications into durable outbox rows.

Nothing here talks to a mail server. Each eligible notification becomes
one EmailQueueItem (deduplicated by notification id); the queue processor
delivers it later with retry/backoff.

Eligibility:
  - recipient has an email address in the directory
  - preferences.email_enabled and the per-type flag allow it

Templates use ``{{var}}`` substitution and ``{{#if var}}...{{/if}}`` blocks.
Substituted values are HTML-escaped.
"""
from __future__ import annotations

import html
import re
import structlog
from datetime import datetime
from typing import Any, Optional

from config.settings import EmailConfig, get_settings
from database.store_base import BaseStore
from directory.connector import UserDirectory
from models.schemas import (
    EmailQueueItem, EmailStatus, Notification, NotificationType, UserProfile, utcnow,
)

logger = structlog.get_logger()

_VAR = re.compile(r"\{\{\s*(\w+)\s*\}\}")
_IF_BLOCK = re.compile(r"\{\{#if\s+(\w+)\s*\}\}(.*?)\{\{/if\}\}", re.DOTALL)

# notification type → EmailPreferences flag (types not listed only need email_enabled)
_PREFERENCE_FLAGS = {
    NotificationType.FOLLOW_UP_REMINDER: "email_follow_up_reminders",
    NotificationType.CLIENT_NO_RESPONSE: "email_follow_up_reminders",
    NotificationType.REVIEW_REQUESTED: "email_review_requests",
    NotificationType.REVIEW_COMPLETED: "email_review_completed",
    NotificationType.APPLICATION_APPROVED: "email_application_updates",
    NotificationType.APPLICATION_REJECTED: "email_application_updates",
    NotificationType.ESCALATION: "email_escalations",
    NotificationType.ESCALATION_DIGEST: "email_escalations",
    NotificationType.SYSTEM: "email_system",
}

_LAYOUT = """<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <h2 style="color: #1f2937;">{{heading}}</h2>
  <p>Hi {{user_name}},</p>
  {{body}}
  <p><a href="{{link}}" style="color: #2563eb;">Open FollowDesk</a></p>
  <p style="color: #6b7280; font-size: 12px;">You are receiving this because email notifications are enabled for your account.</p>
</div>"""

# template name → (subject, body fragment)
TEMPLATES: dict[str, tuple[str, str]] = {
    "follow_up_reminder": (
        "Follow-up #{{sequence}} due: {{client_name}}",
        "<p>Your follow-up #{{sequence}} with <strong>{{client_name}}</strong> about "
        "\"{{email_subject}}\" is due on {{due_date}}.</p>"
        "{{#if overdue}}<p style=\"color: #b91c1c;\">This follow-up is overdue.</p>{{/if}}",
    ),
    "review_requested": (
        "Review requested: {{title}}",
        "<p>{{message}}</p>{{#if client_name}}<p>Client: {{client_name}}</p>{{/if}}",
    ),
    "review_completed": (
        "Review completed: {{title}}",
        "<p>{{message}}</p>",
    ),
    "application_approved": (
        "Application approved: {{title}}",
        "<p>{{message}}</p>",
    ),
    "application_rejected": (
        "Application needs changes: {{title}}",
        "<p>{{message}}</p>{{#if feedback}}<p>Feedback: {{feedback}}</p>{{/if}}",
    ),
    "escalation": (
        "Escalated follow-up: {{title}}",
        "<p>{{message}}</p>",
    ),
    "escalation_digest": (
        "{{count}} follow-ups escalated to you",
        "<p>{{message}}</p>",
    ),
    "document_generated": (
        "Document ready: {{title}}",
        "<p>{{message}}</p>",
    ),
    "client_no_response": (
        "No response from client: {{title}}",
        "<p>{{message}}</p>",
    ),
    "system": (
        "{{title}}",
        "<p>{{message}}</p>",
    ),
}


def render_text(template: str, variables: dict[str, Any], escape: bool = True) -> str:
    """Apply {{#if}} blocks, then {{var}} substitution. Unknown vars render empty."""
    def if_block(match):
        return match.group(2) if variables.get(match.group(1)) else ""

    def var(match):
        value = variables.get(match.group(1))
        if value is None:
            return ""
        text = str(value)
        return html.escape(text) if escape else text

    return _VAR.sub(var, _IF_BLOCK.sub(if_block, template))


class NotificationEmailService:
    """Writes outbox rows for notifications and direct (system) mail."""

    def __init__(self, store: BaseStore, directory: UserDirectory, config: EmailConfig = None):
        self.store = store
        self.directory = directory
        self.config = config or get_settings().email

    # ── Eligibility ───────────────────────────────────────────

    async def should_send(
        self, user_id: str, notification_type: NotificationType | str,
    ) -> tuple[bool, Optional[UserProfile], str]:
        """Returns (should_send, user, reason_if_not)."""
        user = await self.directory.get_user(user_id)
        if user is None:
            return False, None, "user not found"
        if not user.email:
            return False, user, "no email address"
        prefs = user.preferences
        if not prefs.email_enabled:
            return False, user, "email notifications disabled"
        flag = _PREFERENCE_FLAGS.get(NotificationType(notification_type))
        if flag and not getattr(prefs, flag):
            return False, user, f"{NotificationType(notification_type).value} emails disabled"
        return True, user, ""

    # ── Rendering ─────────────────────────────────────────────

    def render(self, template_name: str, variables: dict[str, Any]) -> tuple[str, str]:
        """Returns (subject, html) for a known template."""
        subject_tpl, body_tpl = TEMPLATES.get(template_name, TEMPLATES["system"])
        variables = {"link": self.config.portal_url, **variables}
        subject = render_text(subject_tpl, variables, escape=False)
        body = render_text(body_tpl, variables)
        head, tail = _LAYOUT.split("{{body}}")
        layout_vars = {**variables, "heading": subject}
        return subject, render_text(head, layout_vars) + body + render_text(tail, layout_vars)

    # ── Queueing ──────────────────────────────────────────────

    async def queue_for_notification(self, notification: Notification) -> Optional[EmailQueueItem]:
        """
        Queue one email for a notification. Returns None when the recipient
        is not eligible or the notification already has a queue row.
        """
        ok, user, reason = await self.should_send(notification.user_id, notification.type)
        if not ok:
            logger.debug("notification_email_skipped",
                         notification_id=notification.id,
                         user_id=notification.user_id,
                         reason=reason)
            return None

        variables = {
            **notification.metadata,
            "title": notification.title,
            "message": notification.message,
            "user_name": user.full_name or "there",
        }
        if notification.related_id:
            variables.setdefault("link", f"{self.config.portal_url}/notifications/{notification.id}")
        return await self.queue_direct(
            to_email=user.email,
            template=notification.type.value,
            variables=variables,
            user_id=notification.user_id,
            notification_id=notification.id,
        )

    async def queue_direct(
        self,
        to_email: str,
        template: str,
        variables: dict[str, Any],
        user_id: str = None,
        notification_id: str = None,
        scheduled_for: datetime = None,
    ) -> Optional[EmailQueueItem]:
        subject, body = self.render(template, variables)
        item = EmailQueueItem(
            notification_id=notification_id,
            user_id=user_id,
            to_email=to_email,
            subject=subject,
            html_body=body,
            scheduled_for=scheduled_for or utcnow(),
        )
        queued = await self.store.enqueue_email(item)
        if queued is None:
            logger.info("email_already_queued", notification_id=notification_id)
            return None
        logger.info("email_queued",
                    email_id=queued.id,
                    notification_id=notification_id,
                    template=template,
                    to=to_email)
        return queued

    async def cancel_pending(self, notification_id: str) -> int:
        """Fail any still-pending rows for a notification so they are never sent."""
        cancelled = 0
        for item in await self.store.list_emails(
            notification_id=notification_id, status=EmailStatus.PENDING,
        ):
            updated = await self.store.update_email(
                item.id,
                {"status": EmailStatus.FAILED.value, "last_error": "cancelled"},
                where={"status": EmailStatus.PENDING.value},
            )
            if updated is not None:
                cancelled += 1
        if cancelled:
            logger.info("pending_emails_cancelled", notification_id=notification_id, count=cancelled)
        return cancelled
