"""
Follow-Up State Machine: Lifecycle rules for a tracked client obligation.

This layer is pure: it reads a FollowUp snapshot plus "now" and returns a
TransitionResult describing the column values to write and the pre-state
(``where``) the write must be conditioned on. Persisting is the caller's
job; a write that matches zero rows means another writer won.

States:
  pending   → completed | no_response (terminal)
  pending   → pending   (snooze: new due date, next sequence, escalation cleared)
  pending   → pending   (escalate: overdue and not yet escalated)
  snoozed   → completed | no_response

Usage:
    sm = FollowUpStateMachine(settings.followups)
    result = sm.transition(followup, FollowUpEvent.COMPLETE, now, reason="paid")
    updated = await store.update_followup(followup.id, result.values, where=result.where)
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from config.settings import FollowUpConfig
from models.errors import InvalidTransition, ValidationError
from models.schemas import CompletionReason, FollowUp, FollowUpStatus

logger = structlog.get_logger()


class FollowUpEvent(str, Enum):
    COMPLETE = "complete"
    MARK_NO_RESPONSE = "mark_no_response"
    SNOOZE = "snooze"
    ESCALATE = "escalate"


# event → (allowed source states, destination state)
_TRANSITIONS: dict[FollowUpEvent, tuple[frozenset[FollowUpStatus], FollowUpStatus]] = {
    FollowUpEvent.COMPLETE: (
        frozenset({FollowUpStatus.PENDING, FollowUpStatus.SNOOZED}), FollowUpStatus.COMPLETED,
    ),
    FollowUpEvent.MARK_NO_RESPONSE: (
        frozenset({FollowUpStatus.PENDING, FollowUpStatus.SNOOZED}), FollowUpStatus.NO_RESPONSE,
    ),
    FollowUpEvent.SNOOZE: (frozenset({FollowUpStatus.PENDING}), FollowUpStatus.PENDING),
    FollowUpEvent.ESCALATE: (frozenset({FollowUpStatus.PENDING}), FollowUpStatus.PENDING),
}


# ──────────────────────────────────────────────────────────────
#  Transition Result
# ──────────────────────────────────────────────────────────────

class TransitionResult:
    """Outcome of evaluating an event against a follow-up snapshot."""

    def __init__(
        self,
        allowed: bool,
        followup: FollowUp,
        event: FollowUpEvent,
        to_status: FollowUpStatus = None,
        values: dict[str, Any] = None,
        where: dict[str, Any] = None,
        reason: str = "",
    ):
        self.allowed = allowed
        self.followup = followup
        self.event = event
        self.from_status = followup.status
        self.to_status = to_status or followup.status
        self.values = values or {}
        self.where = where or {}
        self.reason = reason

    def __bool__(self):
        return self.allowed

    def __repr__(self):
        if self.allowed:
            return (f"<Transition {self.event.value}: "
                    f"{self.from_status.value} → {self.to_status.value}>")
        return f"<NoTransition {self.event.value}: {self.reason}>"

    def raise_if_denied(self) -> "TransitionResult":
        if not self.allowed:
            raise InvalidTransition(
                "follow-up", self.from_status.value, self.event.value, self.reason,
            )
        return self


# ──────────────────────────────────────────────────────────────
#  Follow-Up State Machine
# ──────────────────────────────────────────────────────────────

class FollowUpStateMachine:
    """
    Transition table plus the guards and due-date arithmetic for follow-ups.
    """

    def __init__(self, config: FollowUpConfig = None):
        self.config = config or FollowUpConfig()
        errors = self._validate_config(self.config)
        if errors:
            raise ValueError(f"Invalid follow-up config: {'; '.join(errors)}")

    @staticmethod
    def _validate_config(cfg: FollowUpConfig) -> list[str]:
        errors = []
        if cfg.max_sequence < 1:
            errors.append("max_sequence must be >= 1")
        for seq in range(1, cfg.max_sequence + 1):
            if seq not in cfg.due_days:
                errors.append(f"due_days missing sequence {seq}")
        if cfg.snooze_days <= 0:
            errors.append("snooze_days must be positive")
        return errors

    # ── Due dates ─────────────────────────────────────────────

    def due_date_for(self, sequence: int, sent_date: datetime) -> datetime:
        """1st → +7d, 2nd → +14d, 3rd → +21d by default."""
        if sequence < 1 or sequence > self.config.max_sequence:
            raise ValidationError(
                f"sequence must be between 1 and {self.config.max_sequence}, got {sequence}"
            )
        return sent_date + timedelta(days=self.config.due_days[sequence])

    def next_sequence(self, sequence: int) -> int:
        return min(sequence + 1, self.config.max_sequence)

    def is_final_sequence(self, followup: FollowUp) -> bool:
        return followup.sequence >= self.config.max_sequence

    # ── Evaluation ────────────────────────────────────────────

    def evaluate(
        self,
        followup: FollowUp,
        event: FollowUpEvent,
        now: datetime,
        reason: Optional[CompletionReason | str] = None,
        new_due_date: Optional[datetime] = None,
        manager_id: Optional[str] = None,
    ) -> TransitionResult:
        """
        Check an event against the follow-up's current state and guards.
        Never raises for state problems; see transition() for that.
        """
        sources, destination = _TRANSITIONS[event]

        if followup.is_terminal:
            return TransitionResult(False, followup, event, reason="follow-up is closed")
        if followup.status not in sources:
            return TransitionResult(
                False, followup, event,
                reason=f"not allowed from '{followup.status.value}'",
            )

        where: dict[str, Any] = {"status": followup.status.value}

        if event == FollowUpEvent.COMPLETE:
            try:
                completion = CompletionReason(reason or CompletionReason.OTHER)
            except ValueError:
                raise ValidationError(f"unknown completion reason '{reason}'")
            values = {
                "status": destination.value,
                "completion_reason": completion.value,
                "completed_at": now,
            }

        elif event == FollowUpEvent.MARK_NO_RESPONSE:
            if not self.is_final_sequence(followup):
                return TransitionResult(
                    False, followup, event,
                    reason=f"sequence {followup.sequence} of {self.config.max_sequence} not reached",
                )
            values = {"status": destination.value, "completed_at": now}

        elif event == FollowUpEvent.SNOOZE:
            due = new_due_date or (now + timedelta(days=self.config.snooze_days))
            if due <= now:
                raise ValidationError("snooze due date must be in the future")
            values = {
                "status": destination.value,
                "due_date": due,
                "sequence": self.next_sequence(followup.sequence),
                "escalated": False,
                "escalation_date": None,
            }
            # two concurrent snoozes must not both bump the sequence
            where["sequence"] = followup.sequence

        else:  # ESCALATE
            if followup.escalated:
                return TransitionResult(False, followup, event, reason="already escalated")
            if not followup.due_date < now:
                return TransitionResult(False, followup, event, reason="not overdue")
            if not manager_id:
                return TransitionResult(False, followup, event, reason="no manager resolved")
            values = {
                "escalated": True,
                "escalation_date": now,
                "manager_id": manager_id,
            }
            where["escalated"] = False

        return TransitionResult(
            True, followup, event, to_status=destination, values=values, where=where,
        )

    def transition(self, followup: FollowUp, event: FollowUpEvent, now: datetime, **kwargs) -> TransitionResult:
        """Like evaluate(), but raises InvalidTransition when the event is not allowed."""
        result = self.evaluate(followup, event, now, **kwargs)
        if not result:
            logger.debug("followup_transition_denied",
                         followup_id=followup.id,
                         followup_event=event.value,
                         status=followup.status.value,
                         reason=result.reason)
        return result.raise_if_denied()
