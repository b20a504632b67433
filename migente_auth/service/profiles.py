from __future__ import annotations

import threading
from typing import Any, Dict, Optional, Protocol

from migente_auth.logging import get_logger

logger = get_logger(__name__)

USER_ROLES = ("employer", "contractor")


class ProfileDirectory(Protocol):
    """Boundary to the marketplace profile records owned by another service."""

    def create_profile(self, user_id: str, email: str, fields: Dict[str, Any]) -> None: ...

    def role_for(self, user_id: str) -> Optional[str]: ...

    def delete_profile(self, user_id: str) -> None: ...


class InMemoryProfileDirectory:
    """Profile directory used in tests and single-node deployments."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.profiles: Dict[str, Dict[str, Any]] = {}

    def create_profile(self, user_id: str, email: str, fields: Dict[str, Any]) -> None:
        with self._lock:
            self.profiles[user_id] = {"email": email, **fields}
        logger.info("profile_created", user_id=user_id, role=fields.get("role"))

    def role_for(self, user_id: str) -> Optional[str]:
        with self._lock:
            profile = self.profiles.get(user_id)
        return profile.get("role") if profile else None

    def delete_profile(self, user_id: str) -> None:
        with self._lock:
            self.profiles.pop(user_id, None)
