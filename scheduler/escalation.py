"""
Escalation Scheduler: daily sweep that hands overdue follow-ups to managers.

Flow:
    find pending, overdue, not-yet-escalated follow-ups
    → resolve a manager (row's manager_id → directory → default manager)
    → conditional escalate (escalated=false guard)
    → escalation notification to the owner and to the manager
    → one digest per manager covering everything escalated to them
      within the digest window

Safe to run repeatedly or concurrently: the escalate write is conditioned on
escalated=false, so a row is escalated (and notified) once. A second run
finds nothing new and sends no digests.
"""
from __future__ import annotations

import structlog
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Optional

from config.settings import FollowUpConfig, get_settings
from directory.connector import UserDirectory
from followups.service import FollowUpService
from models.schemas import EscalationResult, FollowUp, NotificationCreate, NotificationType, utcnow
from notifications.dispatcher import NotificationDispatcher

logger = structlog.get_logger()


class EscalationScheduler:

    def __init__(
        self,
        followups: FollowUpService,
        dispatcher: NotificationDispatcher,
        directory: UserDirectory,
        config: FollowUpConfig = None,
    ):
        self.followups = followups
        self.dispatcher = dispatcher
        self.directory = directory
        self.store = followups.store
        self.config = config or get_settings().followups

    async def escalate_overdue_followups(self, now: datetime = None, limit: int = 500) -> EscalationResult:
        now = now or utcnow()
        result = EscalationResult()
        managers: set[str] = set()

        overdue = await self.store.find_overdue_followups(now, limit=limit)
        logger.info("escalation_sweep_started", candidates=len(overdue))

        for followup in overdue:
            try:
                manager_id = await self.resolve_manager(followup)
                if manager_id is None:
                    result.skipped += 1
                    logger.warning("escalation_no_manager",
                                   followup_id=followup.id,
                                   user_id=followup.user_id)
                    continue

                escalated = await self.followups.escalate(followup, manager_id, now=now)
                if escalated is None:
                    result.skipped += 1
                    continue

                result.escalated += 1
                managers.add(manager_id)
                await self._notify(escalated, now)
            except Exception as e:
                result.errors.append(f"{followup.id}: {e}")
                logger.error("escalation_failed", followup_id=followup.id, error=str(e))

        result.managers_notified = len(managers)
        for manager_id in sorted(managers):
            try:
                if await self._send_digest(manager_id, now):
                    result.digests_sent += 1
            except Exception as e:
                result.errors.append(f"digest {manager_id}: {e}")
                logger.error("escalation_digest_failed", manager_id=manager_id, error=str(e))

        logger.info("escalation_sweep_finished",
                    escalated=result.escalated,
                    managers_notified=result.managers_notified,
                    digests_sent=result.digests_sent,
                    skipped=result.skipped,
                    errors=len(result.errors))
        return result

    async def resolve_manager(self, followup: FollowUp) -> Optional[str]:
        if followup.manager_id and followup.manager_id != followup.user_id:
            return followup.manager_id
        return await self.directory.resolve_manager(followup.user_id)

    # ── Notifications ─────────────────────────────────────────

    async def _notify(self, followup: FollowUp, now: datetime):
        metadata = {
            "client_name": followup.client_name,
            "email_subject": followup.email_subject,
            "sequence": followup.sequence,
            "followup_due_date": followup.due_date.isoformat(),
            "owner_id": followup.user_id,
            "manager_id": followup.manager_id,
        }
        owner = await self.directory.get_user(followup.user_id)
        owner_name = (owner.full_name if owner else "") or followup.user_id

        await self.dispatcher.create(NotificationCreate(
            user_id=followup.user_id,
            type=NotificationType.ESCALATION,
            title=f"Follow-up with {followup.client_name} escalated",
            message=(
                f"Follow-up #{followup.sequence} about \"{followup.email_subject}\" was due "
                f"{followup.due_date.date()} and has been escalated to your manager."
            ),
            related_id=followup.id,
            metadata=metadata,
        ), now=now)

        await self.dispatcher.create(NotificationCreate(
            user_id=followup.manager_id,
            type=NotificationType.ESCALATION,
            title=f"Escalated: {owner_name} / {followup.client_name}",
            message=(
                f"{owner_name}'s follow-up #{followup.sequence} with {followup.client_name} "
                f"about \"{followup.email_subject}\" is overdue since {followup.due_date.date()}."
            ),
            related_id=followup.id,
            metadata=metadata,
        ), now=now)

    async def _send_digest(self, manager_id: str, now: datetime) -> bool:
        since = now - timedelta(minutes=self.config.digest_window_minutes)
        rows = [f for f in await self.store.find_escalated_since(since) if f.manager_id == manager_id]
        if not rows:
            return False

        by_owner: dict[str, list[FollowUp]] = defaultdict(list)
        for f in rows:
            by_owner[f.user_id].append(f)
        lines = [
            f"{owner}: " + ", ".join(sorted({f.client_name for f in items}))
            for owner, items in sorted(by_owner.items())
        ]
        created = await self.dispatcher.create(NotificationCreate(
            user_id=manager_id,
            type=NotificationType.ESCALATION_DIGEST,
            title=f"{len(rows)} follow-ups escalated to you",
            message="Overdue follow-ups escalated in the last "
                    f"{self.config.digest_window_minutes} minutes. " + "; ".join(lines),
            metadata={
                "count": len(rows),
                "followup_ids": [f.id for f in rows],
                "window_minutes": self.config.digest_window_minutes,
            },
        ), now=now)
        return created is not None
