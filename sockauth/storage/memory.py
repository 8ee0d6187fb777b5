from __future__ import annotations

import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sockauth.logging import get_logger
from sockauth.service.events import EventEmitter
from sockauth.service.errors import ConstraintViolation
from sockauth.storage.models import TokenRecord, User

# Fields that a patch or update may never overwrite.
_IMMUTABLE_USER_FIELDS = frozenset({"id", "created_at"})


class MemoryUserService(EventEmitter):
    """In-memory user records that publish change events.

    Every mutation emits ``created``, ``updated``, ``patched`` or ``removed``
    with the record as a plain dict, which is what connection watchers
    subscribe to.
    """

    id_field = "id"

    def __init__(self, path: str = "users") -> None:
        super().__init__()
        self.path = path
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self._data_lock = threading.RLock()

    def create_user(
        self,
        username: str,
        *,
        email: Optional[str] = None,
        role: str = "user",
        is_active: bool = True,
        meta: Optional[Dict] = None,
    ) -> User:
        with self._data_lock:
            if any(existing.username == username for existing in self.users.values()):
                raise ConstraintViolation("username already exists", detail={"field": "username"})
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                role=role,
                is_active=is_active,
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            record = user.to_dict()
        self.emit("created", record)
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.username == username), None)

    def update_user(self, user_id: str, data: Dict[str, Any]) -> Optional[User]:
        """Replace every mutable field of a user with ``data``."""
        with self._data_lock:
            current = self.users.get(user_id)
            if not current:
                return None
            username = data.get("username", current.username)
            self._ensure_unique_username(username, user_id)
            user = User(
                id=current.id,
                username=username,
                email=data.get("email"),
                role=data.get("role", "user"),
                created_at=current.created_at,
                is_active=data.get("is_active", True),
                meta=dict(data.get("meta") or {}),
            )
            self.users[user_id] = user
            record = user.to_dict()
        self.emit("updated", record)
        return user

    def patch_user(self, user_id: str, data: Dict[str, Any]) -> Optional[User]:
        """Apply a partial change to a user."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if "username" in data:
                self._ensure_unique_username(data["username"], user_id)
            for key, value in data.items():
                if key in _IMMUTABLE_USER_FIELDS or not hasattr(user, key):
                    continue
                setattr(user, key, value)
            user.updated_at = datetime.now(timezone.utc)
            record = user.to_dict()
        self.emit("patched", record)
        return user

    def remove_user(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.pop(user_id, None)
            if user is None:
                return False
            self.credentials.pop(user_id, None)
            record = user.to_dict()
        self.emit("removed", record)
        return True

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", detail={"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def _ensure_unique_username(self, username: str, user_id: str) -> None:
        for existing in self.users.values():
            if existing.username == username and existing.id != user_id:
                raise ConstraintViolation("username already exists", detail={"field": "username"})


class MemoryTokenStore:
    """Active-token registry and denylist kept in process memory."""

    def __init__(self) -> None:
        self.tokens: Dict[str, TokenRecord] = {}
        self.denylist: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _purge_expired(self, now: datetime) -> None:
        for jti, record in list(self.tokens.items()):
            if record.expires_at <= now:
                self.tokens.pop(jti, None)
        for jti, until in list(self.denylist.items()):
            if until <= now:
                self.denylist.pop(jti, None)

    async def add_token(self, jti: str, subject: str, expires_at: datetime) -> None:
        with self._lock:
            self._purge_expired(self._now())
            self.tokens[jti] = TokenRecord(jti=jti, subject=subject, expires_at=expires_at)

    async def is_active(self, jti: str) -> bool:
        now = self._now()
        with self._lock:
            record = self.tokens.get(jti)
            if record is None or record.expires_at <= now:
                return False
            until = self.denylist.get(jti)
            return until is None or until <= now

    async def revoke_token(self, jti: str, ttl_seconds: int) -> bool:
        """Denylist ``jti``; returns False when it was not an active token."""
        now = self._now()
        with self._lock:
            record = self.tokens.pop(jti, None)
            if ttl_seconds > 0:
                self.denylist[jti] = now + timedelta(seconds=ttl_seconds)
            if record is None:
                return False
            record.revoked_at = now
            return True

    async def is_denylisted(self, jti: str) -> bool:
        with self._lock:
            until = self.denylist.get(jti)
            return until is not None and until > self._now()

    async def active_count(self) -> int:
        with self._lock:
            self._purge_expired(self._now())
            return len(self.tokens)

    async def close(self) -> None:
        return None
