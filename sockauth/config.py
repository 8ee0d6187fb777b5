from __future__ import annotations

import json
import os
import re
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from sockauth.logging import get_logger

logger = get_logger(__name__)

_DURATION_RE = re.compile(
    r"^(?P<value>-?(?:\d+)?\.?\d+)\s*"
    r"(?P<unit>milliseconds?|msecs?|ms|seconds?|secs?|s|minutes?|mins?|m|"
    r"hours?|hrs?|h|days?|d|weeks?|w|years?|yrs?|y)?$",
    re.IGNORECASE,
)

_UNIT_MS = {
    "ms": 1,
    "s": 1000,
    "m": 60 * 1000,
    "h": 60 * 60 * 1000,
    "d": 24 * 60 * 60 * 1000,
    "w": 7 * 24 * 60 * 60 * 1000,
    "y": 365.25 * 24 * 60 * 60 * 1000,
}


def parse_duration(value: str | int | float) -> float:
    """Convert a duration such as ``"1d"``, ``"30m"`` or ``"500ms"`` to milliseconds.

    Bare numbers (and numeric strings without a unit) are milliseconds.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    match = _DURATION_RE.match(str(value).strip())
    if not match:
        raise ValueError(f"invalid duration: {value!r}")
    amount = float(match.group("value"))
    unit = (match.group("unit") or "ms").lower()
    if unit.startswith("ms") or unit.startswith("milli") or unit.startswith("msec"):
        key = "ms"
    else:
        key = unit[0]
    return amount * _UNIT_MS[key]


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for socket authentication."""

    auth_path: str = env_field("/authentication", "AUTH_PATH")
    auth_header: str = env_field(
        "Authorization",
        "AUTH_HEADER",
        description="Header name the access token is stored under on the connection",
    )
    token_ttl: str = env_field(
        "1d",
        "TOKEN_TTL",
        description="Access token lifetime; also the delay before a socket is logged out",
    )
    failure_message: str | None = env_field(
        None,
        "AUTH_FAILURE_MESSAGE",
        description="Overrides the challenge message on rejected credentials",
    )
    strategy_options: dict[str, dict[str, Any]] = env_field(
        {},
        "STRATEGY_OPTIONS",
        description="Per-strategy options as a JSON object keyed by strategy name",
    )
    enabled_strategies: list[str] = env_field(["local", "jwt"], "ENABLED_STRATEGIES")
    users_service_path: str = env_field("users", "USERS_SERVICE_PATH")
    socket_path: str = env_field("/socket", "SOCKET_PATH")
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("sockauth", "JWT_ISSUER")
    jwt_audience: str = env_field("sockauth-clients", "JWT_AUDIENCE")
    redis_url: str | None = env_field(None, "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Use in-memory stores and skip Redis connectivity checks",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def token_ttl_ms(self) -> float:
        return parse_duration(self.token_ttl)

    @property
    def token_ttl_seconds(self) -> float:
        return self.token_ttl_ms / 1000.0

    def options_for(self, strategy: str) -> dict[str, Any]:
        return dict(self.strategy_options.get(strategy) or {})

    @field_validator("token_ttl", mode="before")
    @classmethod
    def _validate_token_ttl(cls, value: Any) -> str:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            value = str(value)
        if parse_duration(value) <= 0:
            raise ValueError("token_ttl must be a positive duration")
        return value

    @field_validator("auth_header")
    @classmethod
    def _validate_auth_header(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("auth_header must not be empty")
        return value

    @field_validator("strategy_options", mode="before")
    @classmethod
    def _parse_strategy_options(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = json.loads(value) if value.strip() else {}
        return value

    @field_validator("enabled_strategies", mode="before")
    @classmethod
    def _parse_enabled_strategies(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET not set; tokens will not survive a restart",
        )
        return secrets.token_urlsafe(64)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
