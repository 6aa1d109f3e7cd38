# src/clinic_backend/session_data.py

import secrets
import time
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, PrivateAttr

# Session keys used by the login flow
OAUTH_STATE_KEY = "oauth_state"
OAUTH_REDIRECT_KEY = "oauth_redirect"
USER_KEY = "user"


def new_session_id() -> str:
    return secrets.token_urlsafe(32)


class SessionData(BaseModel):
    """
    Represents the data stored server-side for a user session.
    Only the session ID is stored in the browser cookie.
    """
    session_id: str
    attributes: Dict[str, Any] = Field(default_factory=dict)
    created_at: float
    last_accessed_at: float
    max_inactive_interval: int

    _is_new: bool = PrivateAttr(default=False)
    _modified: bool = PrivateAttr(default=False)
    _invalidated: bool = PrivateAttr(default=False)

    @classmethod
    def create(cls, max_inactive_interval: int, now: Optional[float] = None) -> "SessionData":
        now = time.time() if now is None else now
        session = cls(
            session_id=new_session_id(),
            created_at=now,
            last_accessed_at=now,
            max_inactive_interval=max_inactive_interval,
        )
        session._is_new = True
        return session

    @property
    def is_new(self) -> bool:
        return self._is_new

    @property
    def modified(self) -> bool:
        return self._modified

    @property
    def invalidated(self) -> bool:
        return self._invalidated

    def snapshot(self) -> "SessionData":
        """Detached copy with fresh tracking flags, as a store hands it out."""
        return type(self).model_validate(self.model_dump())

    def get(self, key: str, default: Any = None) -> Any:
        return self.attributes.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.attributes[key] = value
        self._modified = True

    def pop(self, key: str, default: Any = None) -> Any:
        if key not in self.attributes:
            return default
        self._modified = True
        return self.attributes.pop(key)

    def set_max_inactive_interval(self, seconds: int) -> None:
        self.max_inactive_interval = seconds
        self._modified = True

    def invalidate(self) -> None:
        self.attributes.clear()
        self._invalidated = True

    def touch(self, now: Optional[float] = None) -> None:
        self.last_accessed_at = time.time() if now is None else now

    def expires_at(self) -> float:
        return self.last_accessed_at + self.max_inactive_interval

    def is_expired(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now >= self.expires_at()


class AuthenticatedUser(BaseModel):
    """Identity derived from a verified identity token.

    ``id`` is the provider subject, ``name`` and ``picture`` are the display
    name and avatar URL (empty when the provider omits them).
    """
    id: str
    email: str
    name: str = ""
    picture: str = ""
