from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from sockauth.config import Settings, get_settings, reset_settings_cache
from sockauth.logging import get_logger
from sockauth.service.events import EventBus
from sockauth.service.handler import SessionHandler
from sockauth.service.session import Connection
from sockauth.service.strategies import JWTStrategy, LocalStrategy, StrategyRegistry
from sockauth.service.tokens import JWTTokenService, TokenStore
from sockauth.storage.memory import MemoryTokenStore, MemoryUserService
from sockauth.storage.redis_cache import RedisTokenStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except Exception:
        return "***url_parse_error***"


class Runtime:
    """Holds the process-wide collaborators shared by every socket."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            test_mode=self.settings.test_mode,
            strategies=self.settings.enabled_strategies,
        )
        self.token_store = self._build_token_store()
        self.users = MemoryUserService(path=self.settings.users_service_path)
        self.tokens = JWTTokenService(self.token_store, self.settings)
        self.bus = EventBus()
        self.registry = StrategyRegistry({self.users.path: self.users})
        self._register_strategies()
        logger.info("runtime_init_complete", strategies=list(self.registry.names()))

    def _build_token_store(self) -> TokenStore:
        redis_error: Exception | None = None
        if self.settings.redis_url and not self.settings.test_mode:
            try:
                store = RedisTokenStore(self.settings.redis_url)
                store.verify_connection()
                return store
            except Exception as exc:
                redis_error = exc

        if self.settings.redis_url and not (
            self.settings.test_mode or self.settings.allow_redis_fallback_dev
        ):
            raise RuntimeError(
                "Redis is unreachable for the token store; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for the in-memory store."
            ) from redis_error

        if self.settings.redis_url:
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "test_mode",
                message="Running with the in-memory token store; revocations are per-process only.",
            )
        return MemoryTokenStore()

    def _register_strategies(self) -> None:
        available = {
            "local": lambda: LocalStrategy(self.users),
            "jwt": lambda: JWTStrategy(self.tokens, self.users),
        }
        for name in self.settings.enabled_strategies:
            factory = available.get(name)
            if factory is None:
                logger.warning("unknown_strategy_skipped", strategy=name)
                continue
            options = self.settings.options_for(name)
            self.registry.register(
                factory(),
                service=options.get("service", self.users.path),
                entity=options.get("entity", "user"),
                options=options,
            )

    def new_session_handler(self, provider: str = "websocket") -> SessionHandler:
        return SessionHandler(
            registry=self.registry,
            tokens=self.tokens,
            bus=self.bus,
            settings=self.settings,
            connection=Connection(provider=provider),
        )

    async def close(self) -> None:
        await self.token_store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> None:
    """Drop the runtime singleton and cached settings for isolated test runs."""
    global runtime
    with _runtime_lock:
        runtime = None
        reset_settings_cache()
