"""
SQLAlchemy ORM models: Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB; on PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - No PostgreSQL partial indexes or GIN indexes.
  - String primary keys (uuid hex), no database-specific sequences.
  - Uniqueness that carries correctness (history idempotency keys, one
    queue row per notification, one todo per notification+owner) is a
    database constraint, not an application check.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, Boolean, DateTime, Text, Index, JSON, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Follow-ups
# ──────────────────────────────────────────────────────────────

class FollowUpRow(Base):
    __tablename__ = "followups"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    thread_id: Mapped[str] = mapped_column(String(64), default="")

    client_name: Mapped[str] = mapped_column(String(256), nullable=False)
    client_email: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    email_subject: Mapped[str] = mapped_column(Text, nullable=False)
    document_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    original_email_id: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)

    sequence: Mapped[int] = mapped_column(Integer, default=1)
    sent_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(32), default="pending")

    escalated: Mapped[bool] = mapped_column(Boolean, default=False)
    escalation_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    manager_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    completion_reason: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_followups_user_status", "user_id", "status"),
        Index("ix_followups_sweep", "status", "escalated", "due_date"),
        Index("ix_followups_thread", "thread_id"),
    )


class FollowUpHistoryRow(Base):
    __tablename__ = "followup_history"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    followup_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    previous_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    new_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    notes: Mapped[str] = mapped_column(Text, default="")
    idempotency_key: Mapped[str] = mapped_column(String(160), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uq_followup_history_key"),
        Index("ix_followup_history_followup", "followup_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Notifications
# ──────────────────────────────────────────────────────────────

class NotificationRow(Base):
    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[str] = mapped_column(String(48), nullable=False)
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    related_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    metadata_: Mapped[Any] = mapped_column("metadata", JSON, default=dict)
    read: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_notifications_user_created", "user_id", "created_at"),
        Index("ix_notifications_user_read", "user_id", "read"),
    )


# ──────────────────────────────────────────────────────────────
#  Email queue
# ──────────────────────────────────────────────────────────────

class EmailQueueRow(Base):
    __tablename__ = "email_queue"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    notification_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    to_email: Mapped[str] = mapped_column(String(256), nullable=False)
    subject: Mapped[str] = mapped_column(String(512), nullable=False)
    html_body: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[str] = mapped_column(String(16), default="pending")
    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        # NULLs are distinct, so system mail without a notification is unaffected
        UniqueConstraint("notification_id", name="uq_email_queue_notification"),
        Index("ix_email_queue_status_scheduled", "status", "scheduled_for"),
    )


# ──────────────────────────────────────────────────────────────
#  Todos
# ──────────────────────────────────────────────────────────────

class TodoRow(Base):
    __tablename__ = "todos"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    notification_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    title: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    category: Mapped[str] = mapped_column(String(32), default="action")
    priority: Mapped[str] = mapped_column(String(16), default="medium")
    status: Mapped[str] = mapped_column(String(16), default="pending")
    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    action_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    action_data: Mapped[Any] = mapped_column(JSON, default=dict)
    client_name: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    related_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    auto_generated: Mapped[bool] = mapped_column(Boolean, default=False)

    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    dismissed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("notification_id", "user_id", name="uq_todos_notification_owner"),
        Index("ix_todos_user_status", "user_id", "status"),
        Index("ix_todos_status_due", "status", "due_date"),
    )
