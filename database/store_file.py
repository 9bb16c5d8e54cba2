"""
FileStore: JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    followups.json
    followup_history.json
    notifications.json
    email_queue.json
    todos.json

Features:
  - Survives process restarts (unlike InMemoryStore)
  - No external dependencies (no database server, no Redis)
  - Every mutation rewrites the changed collection via tmp-file + rename
  - Single-process only (no concurrent write safety)

Best for: small deployments, demos, edge devices, air-gapped environments.
"""
from __future__ import annotations

import json
import structlog
from pathlib import Path
from typing import Any, Optional

from database.store_memory import InMemoryStore
from database.store_base import Where
from models.schemas import (
    EmailQueueItem, FollowUp, FollowUpHistory, Notification, Todo,
)

logger = structlog.get_logger()

# collection name → (attribute, model, key field)
_COLLECTIONS = {
    "followups": ("_followups", FollowUp, "id"),
    "followup_history": ("_history", FollowUpHistory, "idempotency_key"),
    "notifications": ("_notifications", Notification, "id"),
    "email_queue": ("_emails", EmailQueueItem, "id"),
    "todos": ("_todos", Todo, "id"),
}


class FileStore(InMemoryStore):
    """
    Extends InMemoryStore with JSON file persistence.

    On init: loads all data from JSON files into memory.
    On every write: flushes the changed collection to disk.
    """

    def __init__(self, data_dir: str = "./data"):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._load_all()
        logger.info("file_store_initialized", data_dir=str(self._data_dir))

    # ── Load / Save ───────────────────────────────────────

    def _file_path(self, collection: str) -> Path:
        return self._data_dir / f"{collection}.json"

    def _load_all(self):
        """Load all collections from disk and rebuild indexes."""
        for collection, (attr, model, key) in _COLLECTIONS.items():
            path = self._file_path(collection)
            if not path.exists():
                continue
            try:
                with open(path, "r") as f:
                    raw = json.load(f)
            except json.JSONDecodeError as e:
                logger.warning("file_store_load_error",
                               collection=collection, error=str(e))
                continue
            records = {}
            for item in raw.values() if isinstance(raw, dict) else []:
                record = model.model_validate(item)
                records[getattr(record, key)] = record
            setattr(self, attr, records)
            logger.debug("file_store_loaded", collection=collection, records=len(records))

        self._email_by_notification = {
            e.notification_id: e.id for e in self._emails.values() if e.notification_id
        }
        self._todo_by_notification = {
            f"{t.notification_id}:{t.user_id}": t.id
            for t in self._todos.values() if t.notification_id
        }

    def _flush_collection(self, collection: str):
        """Write a single collection to disk."""
        attr, _, _ = _COLLECTIONS[collection]
        data = {k: v.model_dump(mode="json") for k, v in getattr(self, attr).items()}
        path = self._file_path(collection)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2, default=str)
        tmp_path.rename(path)  # atomic on POSIX

    def flush_all(self):
        """Force flush all collections to disk."""
        for c in _COLLECTIONS:
            self._flush_collection(c)
        logger.info("file_store_flushed_all")

    # ── Override write methods to trigger persistence ──────

    async def create_followup(self, followup: FollowUp) -> FollowUp:
        result = await super().create_followup(followup)
        self._flush_collection("followups")
        return result

    async def update_followup(
        self, followup_id: str, values: dict[str, Any], where: Where = None,
    ) -> Optional[FollowUp]:
        result = await super().update_followup(followup_id, values, where)
        if result is not None:
            self._flush_collection("followups")
        return result

    async def add_history(self, entry: FollowUpHistory) -> bool:
        added = await super().add_history(entry)
        if added:
            self._flush_collection("followup_history")
        return added

    async def remove_history(self, idempotency_key: str) -> bool:
        removed = await super().remove_history(idempotency_key)
        if removed:
            self._flush_collection("followup_history")
        return removed

    async def create_notification(self, notification: Notification) -> Notification:
        result = await super().create_notification(notification)
        self._flush_collection("notifications")
        return result

    async def mark_notification_read(self, notification_id: str, user_id: str) -> bool:
        changed = await super().mark_notification_read(notification_id, user_id)
        if changed:
            self._flush_collection("notifications")
        return changed

    async def mark_all_notifications_read(self, user_id: str, limit: int) -> int:
        count = await super().mark_all_notifications_read(user_id, limit)
        if count:
            self._flush_collection("notifications")
        return count

    async def enqueue_email(self, item: EmailQueueItem) -> Optional[EmailQueueItem]:
        result = await super().enqueue_email(item)
        if result is not None:
            self._flush_collection("email_queue")
        return result

    async def update_email(
        self, email_id: str, values: dict[str, Any], where: Where = None,
    ) -> Optional[EmailQueueItem]:
        result = await super().update_email(email_id, values, where)
        if result is not None:
            self._flush_collection("email_queue")
        return result

    async def create_todo(self, todo: Todo) -> Optional[Todo]:
        result = await super().create_todo(todo)
        if result is not None:
            self._flush_collection("todos")
        return result

    async def update_todo(
        self, todo_id: str, values: dict[str, Any], where: Where = None,
    ) -> Optional[Todo]:
        result = await super().update_todo(todo_id, values, where)
        if result is not None:
            self._flush_collection("todos")
        return result
