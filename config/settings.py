"""
Configuration loader for the FollowDesk system.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./followdesk.db"             # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory" | "file"
    store_file_dir: str = "./data"                     # directory for file backend
    pool_size: int = 10                                # ignored for SQLite
    max_overflow: int = 20


@dataclass
class FollowUpConfig:
    due_days: dict[int, int] = field(default_factory=lambda: {1: 7, 2: 14, 3: 21})
    max_sequence: int = 3
    snooze_days: int = 7
    digest_window_minutes: int = 60     # escalations grouped into one manager digest
    reminder_lookahead_days: int = 0    # 0 = remind on/after the due day only


@dataclass
class NotificationConfig:
    enabled: bool = True
    max_to_fetch: int = 50
    max_per_user_per_day: int = 200
    mark_all_limit: int = 500
    delivery: str = "sync"              # "sync" | "queue"


@dataclass
class SmtpConfig:
    host: str = "localhost"
    port: int = 587
    username: str = ""
    password: str = ""
    use_tls: bool = True


@dataclass
class EmailConfig:
    batch_size: int = 10
    max_attempts: int = 5
    backoff_base_seconds: int = 300
    send_timeout_seconds: float = 30.0
    from_email: str = "notifications@followdesk.local"
    from_name: str = "FollowDesk"
    portal_url: str = "http://localhost:3000"
    transport: str = "log"              # "log" | "smtp"
    smtp: SmtpConfig = field(default_factory=SmtpConfig)


@dataclass
class TodoConfig:
    expire_after_days: int = 7          # grace after due date before a todo expires


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    consumer_group: str = "todo-automation"
    max_attempts: int = 3
    retry_backoff_base: int = 60        # base seconds for exponential retry backoff


@dataclass
class DirectoryConfig:
    type: str = "static"                # "static" | "rest"
    users: dict[str, dict[str, Any]] = field(default_factory=dict)
    default_manager_id: str = ""
    base_url: str = ""
    token: str = ""
    endpoints: dict[str, str] = field(default_factory=dict)


@dataclass
class Settings:
    app_name: str = "FollowDesk"
    debug: bool = False
    timezone: str = "UTC"
    cron_secret: str = ""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    followups: FollowUpConfig = field(default_factory=FollowUpConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    email: EmailConfig = field(default_factory=EmailConfig)
    todos: TodoConfig = field(default_factory=TodoConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    directory: DirectoryConfig = field(default_factory=DirectoryConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _as_bool(value: Any) -> bool:
    # env-substituted values arrive as strings
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "FOLLOWDESK_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = _as_bool(raw.get("debug", settings.debug))
        settings.timezone = raw.get("timezone", settings.timezone)
        settings.cron_secret = raw.get("cron_secret", settings.cron_secret)

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
                store_file_dir=db.get("store_file_dir", settings.database.store_file_dir),
                pool_size=int(db.get("pool_size", settings.database.pool_size)),
                max_overflow=int(db.get("max_overflow", settings.database.max_overflow)),
            )

        if "followups" in raw:
            fu = raw["followups"]
            defaults = FollowUpConfig()
            due_days = fu.get("due_days")
            settings.followups = FollowUpConfig(
                due_days=(
                    {int(k): int(v) for k, v in due_days.items()}
                    if due_days else defaults.due_days
                ),
                max_sequence=int(fu.get("max_sequence", defaults.max_sequence)),
                snooze_days=int(fu.get("snooze_days", defaults.snooze_days)),
                digest_window_minutes=int(
                    fu.get("digest_window_minutes", defaults.digest_window_minutes)
                ),
                reminder_lookahead_days=int(
                    fu.get("reminder_lookahead_days", defaults.reminder_lookahead_days)
                ),
            )

        if "notifications" in raw:
            n = raw["notifications"]
            settings.notifications = NotificationConfig(
                enabled=_as_bool(n.get("enabled", True)),
                max_to_fetch=int(n.get("max_to_fetch", 50)),
                max_per_user_per_day=int(n.get("max_per_user_per_day", 200)),
                mark_all_limit=int(n.get("mark_all_limit", 500)),
                delivery=n.get("delivery", "sync"),
            )

        if "email" in raw:
            em = raw["email"]
            smtp = em.get("smtp", {})
            settings.email = EmailConfig(
                batch_size=int(em.get("batch_size", 10)),
                max_attempts=int(em.get("max_attempts", 5)),
                backoff_base_seconds=int(em.get("backoff_base_seconds", 300)),
                send_timeout_seconds=float(em.get("send_timeout_seconds", 30.0)),
                from_email=em.get("from_email", settings.email.from_email),
                from_name=em.get("from_name", settings.email.from_name),
                portal_url=em.get("portal_url", settings.email.portal_url),
                transport=em.get("transport", "log"),
                smtp=SmtpConfig(
                    host=smtp.get("host", "localhost"),
                    port=int(smtp.get("port", 587)),
                    username=smtp.get("username", ""),
                    password=smtp.get("password", ""),
                    use_tls=_as_bool(smtp.get("use_tls", True)),
                ),
            )

        if "todos" in raw:
            settings.todos = TodoConfig(
                expire_after_days=int(raw["todos"].get("expire_after_days", 7)),
            )

        if "queue" in raw:
            q = raw["queue"]
            settings.queue = QueueConfig(
                backend=q.get("backend", "memory"),
                redis_url=q.get("redis_url", "redis://localhost:6379"),
                consumer_group=q.get("consumer_group", "todo-automation"),
                max_attempts=int(q.get("max_attempts", 3)),
                retry_backoff_base=int(q.get("retry_backoff_base", 60)),
            )

        if "directory" in raw:
            d = raw["directory"]
            settings.directory = DirectoryConfig(
                type=d.get("type", "static"),
                users=d.get("users", {}) or {},
                default_manager_id=d.get("default_manager_id", ""),
                base_url=d.get("base_url", ""),
                token=d.get("token", ""),
                endpoints=d.get("endpoints", {}) or {},
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop cached settings (for testing)."""
    global _settings
    _settings = None
