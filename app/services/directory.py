# app/services/directory.py
import logging
from typing import Any, Dict, Optional

import httpx

from app.core.config import settings

logger = logging.getLogger(__name__)


class InMemoryUserDirectory:
    def __init__(self, users: Optional[Dict[str, Dict[str, Any]]] = None):
        self.users = dict(users or {})

    def add_user(self, user_id: str, **profile: Any) -> None:
        self.users[user_id] = profile

    async def get_user_by_id(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self.users.get(user_id)


class HttpUserDirectory:
    """Profile lookups against the user service: GET {base}/users/{id}."""

    def __init__(self, base_url: str, timeout: float = 10):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def get_user_by_id(self, user_id: str) -> Optional[Dict[str, Any]]:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            r = await client.get(f"{self.base_url}/users/{user_id}")
        if r.status_code == 404:
            return None
        r.raise_for_status()
        data = r.json()
        return {k: data.get(k) for k in ("name", "email", "contact") if k in data}


_user_directory = None


def get_user_directory():
    global _user_directory
    if _user_directory is None:
        if settings.PROFILE_SERVICE_URL:
            _user_directory = HttpUserDirectory(settings.PROFILE_SERVICE_URL)
        else:
            logger.info("PROFILE_SERVICE_URL not set; using in-memory user directory")
            _user_directory = InMemoryUserDirectory()
    return _user_directory
