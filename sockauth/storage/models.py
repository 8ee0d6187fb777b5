from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    username: str
    email: Optional[str] = None
    role: str = "user"
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    is_active: bool = True
    meta: Dict | None = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        data["updated_at"] = self.updated_at.isoformat()
        return data


@dataclass
class TokenRecord:
    jti: str
    subject: str
    expires_at: datetime
    issued_at: datetime = field(default_factory=_utcnow)
    revoked_at: Optional[datetime] = None
