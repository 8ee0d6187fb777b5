from __future__ import annotations

import asyncio
import copy
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from sockauth.logging import get_logger

logger = get_logger(__name__)


@dataclass
class RequestContext:
    """Per-request scratch state, rebuilt for every inbound authenticate."""

    query: Dict[str, Any] = field(default_factory=dict)
    params: Dict[str, Any] = field(default_factory=dict)
    body: Dict[str, Any] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)
    session: Dict[str, Any] = field(default_factory=dict)
    cookies: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "RequestContext":
        return cls(body={k: v for k, v in payload.items() if k != "strategy"})


@dataclass
class Connection:
    """Authentication state of one socket."""

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    provider: str = "websocket"
    data: Dict[str, Any] = field(default_factory=dict)
    access_token: Optional[str] = None
    token_metadata: Dict[str, Any] = field(default_factory=dict)
    authenticated: bool = False
    headers: Dict[str, str] = field(default_factory=dict)
    request: RequestContext = field(default_factory=RequestContext)
    strategy: Optional[str] = None

    def entity(self, name: str) -> Optional[Dict[str, Any]]:
        value = self.data.get(name)
        return value if isinstance(value, dict) else None

    def set_entity(self, name: str, record: Dict[str, Any]) -> None:
        self.data[name] = record

    def apply_login(
        self,
        *,
        strategy: str,
        data: Dict[str, Any],
        access_token: str,
        token_metadata: Dict[str, Any],
        header: str,
    ) -> None:
        self.strategy = strategy
        self.data = dict(data)
        self.access_token = access_token
        self.token_metadata = dict(token_metadata)
        self.headers = {header: access_token}
        self.authenticated = True

    def clear_auth(self) -> None:
        self.access_token = None
        self.authenticated = False
        self.headers = {}
        self.data = {}
        self.token_metadata = {}
        self.strategy = None
        self.request.body = {}

    def snapshot(self) -> Dict[str, Any]:
        """Copy of the connection state attached to login/logout notifications."""
        return {
            "id": self.id,
            "provider": self.provider,
            "authenticated": self.authenticated,
            "strategy": self.strategy,
            "data": copy.deepcopy(self.data),
            "token_metadata": dict(self.token_metadata),
        }


class ExpiryTimer:
    """At most one pending expiry callback per connection."""

    def __init__(self) -> None:
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def arm(self, delay: float, action: Callable[[], Any]) -> None:
        if self.cancel():
            logger.debug("expiry_timer_cleared")
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(max(0.0, delay), self._fire, action)

    def cancel(self) -> bool:
        handle, self._handle = self._handle, None
        if handle is None:
            return False
        handle.cancel()
        return True

    def _fire(self, action: Callable[[], Any]) -> None:
        self._handle = None
        action()
