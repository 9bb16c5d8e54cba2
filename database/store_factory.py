"""
Store selection from ``settings.database``:

    database:
      url: "sqlite:///./followdesk.db"   # used by the sql backend
      store_backend: "memory"            # sql | memory | file
      store_file_dir: "./data"           # file backend only

The first ``create_store`` call fixes the process-wide store; later calls
return it regardless of their config until ``reset_store``.
"""
from __future__ import annotations

import structlog
from typing import Callable, Optional

from database.store_base import BaseStore

logger = structlog.get_logger()

_instance: Optional[BaseStore] = None


def _sql(config: dict) -> BaseStore:
    from database.store import SqlStore
    return SqlStore()


def _file(config: dict) -> BaseStore:
    from database.store_file import FileStore
    return FileStore(data_dir=config.get("store_file_dir", "./data"))


def _memory(config: dict) -> BaseStore:
    from database.store_memory import InMemoryStore
    return InMemoryStore()


_BACKENDS: dict[str, Callable[[dict], BaseStore]] = {
    "sql": _sql,
    "file": _file,
    "memory": _memory,
}


def create_store(config: dict = None) -> BaseStore:
    global _instance
    if _instance is None:
        config = config or {}
        backend = config.get("store_backend", "memory")
        if backend not in _BACKENDS:
            logger.warning("unknown_store_backend", backend=backend, fallback="memory")
            backend = "memory"
        _instance = _BACKENDS[backend](config)
        logger.info("store_created", backend=backend)
    return _instance


def get_store() -> BaseStore:
    return _instance or create_store()


def reset_store() -> None:
    global _instance
    _instance = None
