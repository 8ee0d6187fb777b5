from __future__ import annotations

from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SocketMessage(BaseModel):
    """Inbound socket frame: an event name, its payload and an optional ack id."""

    event: str = Field(..., min_length=1, max_length=64)
    data: Optional[Any] = None
    ack: Optional[Union[int, str]] = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("event")
    @classmethod
    def _strip_event(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("event must not be blank")
        return value


class SocketError(BaseModel):
    """Normalized error delivered to socket clients."""

    type: str
    message: str
    code: Optional[int] = None
    data: Optional[Any] = None


class SocketAck(BaseModel):
    """Reply to a frame that carried an ``ack`` id."""

    event: Literal["ack"] = "ack"
    ack: Optional[Union[int, str]] = None
    error: Optional[SocketError] = None
    data: Optional[Any] = None


class SocketNotice(BaseModel):
    """Server-initiated frame, e.g. a logout caused by token expiry."""

    event: str
    data: Optional[Any] = None
