"""
Exception hierarchy shared by services, jobs, and the API layer.

  FollowDeskError
    ├── ValidationError        bad input or an illegal state transition
    │     └── InvalidTransition
    ├── NotFoundError          absent OR not owned by the caller (never distinguished)
    └── ConcurrencyConflict    a conditional update matched zero rows
"""
from __future__ import annotations


class FollowDeskError(Exception):
    """Base error for the follow-up and notification pipeline."""


class ValidationError(FollowDeskError):
    pass


class InvalidTransition(ValidationError):
    def __init__(self, entity: str, current: str, event: str, reason: str = ""):
        self.entity = entity
        self.current = current
        self.event = event
        detail = f"cannot {event} {entity} in state '{current}'"
        if reason:
            detail = f"{detail}: {reason}"
        super().__init__(detail)


class NotFoundError(FollowDeskError):
    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found or access denied: {entity_id}")


class ConcurrencyConflict(FollowDeskError):
    """Another writer changed the row first; the caller's update affected nothing."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} was modified concurrently")
