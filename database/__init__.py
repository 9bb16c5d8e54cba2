"""
Persistence for follow-ups, history, notifications, the email outbox and todos.

Every backend implements BaseStore, including its conditional updates
(``where=``) that return None when the row no longer matches:
  SqlStore       PostgreSQL, MySQL or SQLite through SQLAlchemy async
  InMemoryStore  dicts, for development and tests
  FileStore      InMemoryStore plus JSON files, for single-process installs
"""
from database.models import (
    Base, FollowUpRow, FollowUpHistoryRow, NotificationRow,
    EmailQueueRow, TodoRow,
)
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import BaseStore
from database.store import SqlStore
from database.store_memory import InMemoryStore
from database.store_file import FileStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    "Base", "FollowUpRow", "FollowUpHistoryRow", "NotificationRow",
    "EmailQueueRow", "TodoRow",
    "get_engine", "get_session", "init_db", "close_db",
    "BaseStore",
    "SqlStore", "InMemoryStore", "FileStore",
    "create_store", "get_store", "reset_store",
]
