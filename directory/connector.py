"""
User Directory: Adapter for the system that owns users and org structure.

The pipeline never authenticates anyone; it only needs to look users up
(address, email preferences, manager flag) and resolve who a user's
manager is. Configured via settings.yaml:

    directory:
      type: static          # static | rest
      default_manager_id: "m1"
      users:
        u1: {email: a@x.com, full_name: Ann, manager_id: m1}
        m1: {email: m@x.com, full_name: Max, is_manager: true}
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Optional

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential

from config.settings import DirectoryConfig, get_settings
from models.schemas import EmailPreferences, UserProfile

logger = structlog.get_logger()


class UserDirectory(abc.ABC):
    """Abstract base for all user directories."""

    def __init__(self, default_manager_id: str = ""):
        self.default_manager_id = default_manager_id or None

    @abc.abstractmethod
    async def get_user(self, user_id: str) -> Optional[UserProfile]:
        """Fetch a single user by ID."""
        ...

    @abc.abstractmethod
    async def _lookup_manager(self, user_id: str) -> Optional[str]:
        ...

    async def resolve_manager(self, user_id: str) -> Optional[str]:
        """
        Return the manager responsible for user_id, falling back to the
        configured default manager. A user is never their own manager.
        """
        manager_id = await self._lookup_manager(user_id)
        if manager_id and manager_id != user_id:
            return manager_id
        if self.default_manager_id and self.default_manager_id != user_id:
            return self.default_manager_id
        return None

    async def is_manager(self, user_id: str) -> bool:
        user = await self.get_user(user_id)
        return bool(user and user.is_manager)

    def normalize_user(self, user_id: str, raw: dict[str, Any]) -> UserProfile:
        """
        Convert raw directory data to a UserProfile.
        Accepts a few common field spellings.
        """
        prefs = raw.get("preferences") or raw.get("notification_preferences") or {}
        return UserProfile(
            id=str(raw.get("id", user_id)),
            email=raw.get("email", raw.get("email_address", "")) or "",
            full_name=raw.get("full_name", raw.get("name", "")) or "",
            is_manager=bool(raw.get("is_manager", raw.get("role") == "manager")),
            manager_id=(str(raw["manager_id"]) if raw.get("manager_id") else None),
            preferences=EmailPreferences(**prefs),
        )


class StaticUserDirectory(UserDirectory):
    """Users defined inline in settings (development, tests, small teams)."""

    def __init__(self, config: DirectoryConfig = None):
        config = config or get_settings().directory
        super().__init__(config.default_manager_id)
        self._users = {
            str(uid): self.normalize_user(str(uid), raw or {})
            for uid, raw in config.users.items()
        }

    def add_user(self, user: UserProfile) -> None:
        self._users[user.id] = user

    async def get_user(self, user_id: str) -> Optional[UserProfile]:
        return self._users.get(user_id)

    async def _lookup_manager(self, user_id: str) -> Optional[str]:
        user = self._users.get(user_id)
        return user.manager_id if user else None


class RESTUserDirectory(UserDirectory):
    """
    REST directory. Endpoints may be overridden in settings:
      get_user:    /users/{user_id}
      get_manager: /users/{user_id}/manager
    """

    _DEFAULT_ENDPOINTS = {
        "get_user": "/users/{user_id}",
        "get_manager": "/users/{user_id}/manager",
    }

    def __init__(self, config: DirectoryConfig = None):
        self.config = config or get_settings().directory
        super().__init__(self.config.default_manager_id)
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.token:
                headers["Authorization"] = f"Bearer {self.config.token}"
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=30.0,
            )
        return self.client

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, max=10))
    async def _request(self, method: str, endpoint: str, **kwargs) -> dict[str, Any]:
        client = await self._get_client()
        url = self.config.endpoints.get(endpoint, self._DEFAULT_ENDPOINTS.get(endpoint, endpoint))
        # Replace path parameters
        for k, v in kwargs.pop("path_params", {}).items():
            url = url.replace(f"{{{k}}}", str(v))

        response = await client.request(method, url, **kwargs)
        response.raise_for_status()
        return response.json()

    async def get_user(self, user_id: str) -> Optional[UserProfile]:
        try:
            raw = await self._request("GET", "get_user", path_params={"user_id": user_id})
        except Exception as e:
            logger.error("directory_fetch_user_failed", user_id=user_id, error=str(e))
            return None
        return self.normalize_user(user_id, raw.get("data", raw))

    async def _lookup_manager(self, user_id: str) -> Optional[str]:
        try:
            raw = await self._request("GET", "get_manager", path_params={"user_id": user_id})
        except Exception as e:
            logger.error("directory_resolve_manager_failed", user_id=user_id, error=str(e))
            return None
        manager_id = raw.get("manager_id") or raw.get("id")
        return str(manager_id) if manager_id else None

    async def close(self):
        if self.client:
            await self.client.aclose()


def create_user_directory(config: DirectoryConfig = None) -> UserDirectory:
    """Factory function to create the appropriate user directory."""
    config = config or get_settings().directory
    if config.type == "rest" and config.base_url:
        return RESTUserDirectory(config)
    if config.type == "rest":
        logger.warning("using_static_directory", reason="rest directory without base_url")
    return StaticUserDirectory(config)
