"""
FollowUpService: create, progress, and query follow-ups.

Every mutation reads the current row, asks the state machine for the
transition, and writes it with a single conditional update. If the row
changed underneath us the write matches nothing and ConcurrencyConflict
is raised; nothing partial is persisted.

Ownership: a follow-up that exists but belongs to someone else is reported
exactly like a missing one (NotFoundError).
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from typing import Optional

from config.settings import FollowUpConfig, get_settings
from database.store_base import BaseStore
from directory.connector import UserDirectory
from followups.state_machine import FollowUpEvent, FollowUpStateMachine, TransitionResult
from models.errors import ConcurrencyConflict, InvalidTransition, NotFoundError, ValidationError
from models.schemas import (
    CompletionReason, FollowUp, FollowUpHistory, FollowUpStats, FollowUpStatus,
    HistoryAction, utcnow,
)
from notifications.email import NotificationEmailService

logger = structlog.get_logger()


class FollowUpService:

    def __init__(
        self,
        store: BaseStore,
        emails: NotificationEmailService = None,
        directory: UserDirectory = None,
        config: FollowUpConfig = None,
    ):
        self.store = store
        self.emails = emails
        self.directory = directory
        self.config = config or get_settings().followups
        self.machine = FollowUpStateMachine(self.config)

    # ── Creation ──────────────────────────────────────────────

    async def create(
        self,
        user_id: str,
        email_subject: str,
        client_name: str,
        client_email: str = None,
        document_type: str = None,
        original_email_id: str = None,
        sent_date: datetime = None,
        manager_id: str = None,
        sequence: int = 1,
        thread_id: str = "",
        now: datetime = None,
    ) -> FollowUp:
        now = now or utcnow()
        if not user_id or not email_subject or not client_name:
            raise ValidationError("user_id, email_subject and client_name are required")
        sent = sent_date or now
        followup = FollowUp(
            user_id=user_id,
            client_name=client_name,
            client_email=client_email,
            email_subject=email_subject,
            document_type=document_type,
            original_email_id=original_email_id,
            sequence=sequence,
            sent_date=sent,
            due_date=self.machine.due_date_for(sequence, sent),
            manager_id=manager_id,
            created_at=now,
            updated_at=now,
        )
        followup.thread_id = thread_id or followup.id
        created = await self.store.create_followup(followup)
        await self._record(created, HistoryAction.CREATED, now,
                           new_status=created.status.value,
                           notes=f"Follow-up #{created.sequence} due {created.due_date.date()}")
        logger.info("followup_created",
                    followup_id=created.id,
                    user_id=user_id,
                    sequence=created.sequence,
                    due_date=created.due_date.isoformat())
        return created

    # ── Reads ─────────────────────────────────────────────────

    async def get(self, followup_id: str, user_id: str) -> FollowUp:
        followup = await self.store.get_followup(followup_id)
        if followup is None or followup.user_id != user_id:
            raise NotFoundError("follow-up", followup_id)
        return followup

    async def get_by_user(
        self, user_id: str, status: str = None, sequence: int = None,
        client_name: str = None, limit: int = 50, offset: int = 0,
    ) -> tuple[list[FollowUp], int]:
        return await self.store.list_followups(
            user_id, status=status, sequence=sequence,
            client_name=client_name, limit=limit, offset=offset,
        )

    async def get_stats(self, user_id: str, now: datetime = None) -> FollowUpStats:
        now = now or utcnow()
        rows, _ = await self.store.list_followups(user_id, limit=None)
        stats = FollowUpStats()
        for f in rows:
            if f.status == FollowUpStatus.PENDING:
                stats.total_pending += 1
                if f.is_overdue(now):
                    stats.overdue_count += 1
                if f.due_date.date() == now.date():
                    stats.due_today_count += 1
            elif f.status == FollowUpStatus.COMPLETED:
                stats.total_completed += 1
            elif f.status == FollowUpStatus.NO_RESPONSE:
                stats.total_no_response += 1
        return stats

    async def get_needing_reminders(self, now: datetime = None, limit: int = 500) -> list[FollowUp]:
        """Pending follow-ups due today or earlier (plus the configured lookahead)."""
        now = now or utcnow()
        end_of_day = datetime.combine(now.date(), datetime.max.time(), tzinfo=now.tzinfo)
        until = end_of_day + timedelta(days=self.config.reminder_lookahead_days)
        return await self.store.find_due_followups(until, limit=limit)

    async def history(self, followup_id: str, user_id: str) -> list[FollowUpHistory]:
        await self.get(followup_id, user_id)
        return await self.store.list_history(followup_id)

    # ── Transitions ───────────────────────────────────────────

    async def complete(
        self, followup_id: str, user_id: str,
        reason: CompletionReason | str = CompletionReason.CLIENT_RESPONDED,
        now: datetime = None,
    ) -> FollowUp:
        now = now or utcnow()
        current = await self.get(followup_id, user_id)
        result = self.machine.transition(current, FollowUpEvent.COMPLETE, now, reason=reason)
        updated = await self._persist(result)
        await self._record(updated, HistoryAction.COMPLETED, now,
                           previous_status=result.from_status.value,
                           new_status=updated.status.value,
                           notes=f"Reason: {updated.completion_reason.value}")
        logger.info("followup_completed", followup_id=followup_id, reason=updated.completion_reason.value)
        return updated

    async def mark_no_response(self, followup_id: str, user_id: str, now: datetime = None) -> FollowUp:
        now = now or utcnow()
        current = await self.get(followup_id, user_id)
        result = self.machine.transition(current, FollowUpEvent.MARK_NO_RESPONSE, now)
        updated = await self._persist(result)
        await self._record(updated, HistoryAction.MARKED_NO_RESPONSE, now,
                           previous_status=result.from_status.value,
                           new_status=updated.status.value)
        logger.info("followup_marked_no_response", followup_id=followup_id)
        return updated

    async def snooze(
        self, followup_id: str, user_id: str,
        new_due_date: datetime = None, now: datetime = None,
    ) -> FollowUp:
        now = now or utcnow()
        current = await self.get(followup_id, user_id)
        result = self.machine.transition(
            current, FollowUpEvent.SNOOZE, now, new_due_date=new_due_date,
        )
        updated = await self._persist(result)
        await self._record(updated, HistoryAction.SNOOZED, now,
                           previous_status=result.from_status.value,
                           new_status=updated.status.value,
                           notes=f"Snoozed to follow-up #{updated.sequence}, due {updated.due_date.date()}",
                           discriminator=str(updated.sequence))
        logger.info("followup_snoozed",
                    followup_id=followup_id,
                    sequence=updated.sequence,
                    due_date=updated.due_date.isoformat())
        return updated

    async def resend(self, followup_id: str, user_id: str, now: datetime = None) -> FollowUp:
        """
        Close the current follow-up (reason "other") and open the next one in
        the same thread with the following sequence number. If the successor
        cannot be stored the original is reopened and the error re-raised.
        """
        now = now or utcnow()
        current = await self.get(followup_id, user_id)
        if self.machine.is_final_sequence(current):
            raise InvalidTransition(
                "follow-up", current.status.value, "resend",
                f"sequence {current.sequence} is final; mark it as no response instead",
            )
        closed = await self.complete(followup_id, user_id, CompletionReason.OTHER, now=now)
        try:
            successor = await self.create(
                user_id=user_id,
                email_subject=current.email_subject,
                client_name=current.client_name,
                client_email=current.client_email,
                document_type=current.document_type,
                original_email_id=current.original_email_id,
                sent_date=now,
                manager_id=current.manager_id,
                sequence=current.sequence + 1,
                thread_id=current.thread_id or current.id,
                now=now,
            )
        except Exception:
            await self.store.update_followup(
                followup_id,
                {"status": current.status.value, "completion_reason": None, "completed_at": None},
                where={"status": closed.status.value},
            )
            logger.error("followup_resend_rolled_back", followup_id=followup_id)
            raise
        await self._record(successor, HistoryAction.RESENT, now,
                           notes=f"Resent from follow-up {followup_id}")
        return successor

    async def escalate(
        self, followup: FollowUp, manager_id: str, now: datetime = None,
    ) -> Optional[FollowUp]:
        """
        Escalate an overdue follow-up to manager_id. Returns the updated row,
        or None when it is not eligible or another sweep escalated it first.
        """
        now = now or utcnow()
        result = self.machine.evaluate(followup, FollowUpEvent.ESCALATE, now, manager_id=manager_id)
        if not result:
            logger.debug("followup_not_escalated", followup_id=followup.id, reason=result.reason)
            return None
        updated = await self.store.update_followup(followup.id, result.values, where=result.where)
        if updated is None:
            logger.info("followup_escalation_lost_race", followup_id=followup.id)
            return None
        await self._record(updated, HistoryAction.ESCALATED, now,
                           previous_status=result.from_status.value,
                           new_status=updated.status.value,
                           notes=f"Escalated to manager {manager_id}")
        logger.info("followup_escalated", followup_id=followup.id, manager_id=manager_id)
        return updated

    # ── Reminder email ────────────────────────────────────────

    async def send_reminder_email(self, followup: FollowUp, now: datetime = None) -> bool:
        """
        Queue a reminder for the follow-up owner, at most once per calendar day.

        The day's ``reminder_sent`` history key is claimed before the email is
        queued, so concurrent callers cannot both send. The claim is released
        when queueing fails, leaving the day open for a retry. Returns False
        when nothing was queued (already reminded today, closed, no address,
        queue failure).
        """
        now = now or utcnow()
        if self.emails is None or self.directory is None:
            logger.warning("reminder_email_unavailable", followup_id=followup.id)
            return False
        if followup.status != FollowUpStatus.PENDING:
            return False

        key = FollowUpHistory.make_key(followup.id, HistoryAction.REMINDER_SENT, now)
        if await self.store.has_history(key):
            logger.debug("reminder_already_sent_today", followup_id=followup.id)
            return False

        user = await self.directory.get_user(followup.user_id)
        if user is None or not user.email:
            logger.warning("reminder_no_recipient", followup_id=followup.id, user_id=followup.user_id)
            return False

        claimed = await self.store.add_history(FollowUpHistory(
            followup_id=followup.id,
            user_id=followup.user_id,
            action=HistoryAction.REMINDER_SENT,
            notes=f"Reminder for follow-up #{followup.sequence}",
            idempotency_key=key,
            created_at=now,
        ))
        if not claimed:
            return False

        try:
            queued = await self.emails.queue_direct(
                to_email=user.email,
                template="follow_up_reminder",
                variables={
                    "user_name": user.full_name or "there",
                    "client_name": followup.client_name,
                    "email_subject": followup.email_subject,
                    "sequence": followup.sequence,
                    "due_date": followup.due_date.date().isoformat(),
                    "overdue": followup.is_overdue(now),
                },
                user_id=followup.user_id,
                scheduled_for=now,
            )
        except Exception as e:
            logger.error("reminder_email_queue_failed", followup_id=followup.id, error=str(e))
            queued = None
        if queued is None:
            await self.store.remove_history(key)
            return False
        return True

    # ── Helpers ───────────────────────────────────────────────

    async def _persist(self, result: TransitionResult) -> FollowUp:
        updated = await self.store.update_followup(result.followup.id, result.values, where=result.where)
        if updated is None:
            raise ConcurrencyConflict("follow-up", result.followup.id)
        logger.debug("followup_transition", followup_id=updated.id, transition=repr(result))
        return updated

    async def _record(
        self, followup: FollowUp, action: HistoryAction, now: datetime,
        previous_status: str = None, new_status: str = None, notes: str = "",
        discriminator: str = "",
    ) -> bool:
        added = await self.store.add_history(FollowUpHistory(
            followup_id=followup.id,
            user_id=followup.user_id,
            action=action,
            previous_status=previous_status,
            new_status=new_status,
            notes=notes,
            idempotency_key=FollowUpHistory.make_key(followup.id, action, now, discriminator),
            created_at=now,
        ))
        if not added:
            logger.debug("followup_history_duplicate", followup_id=followup.id, action=action.value)
        return added
