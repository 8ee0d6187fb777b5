from __future__ import annotations

import asyncio
from typing import Any, Callable, Coroutine, Dict, Optional

from sockauth.config import Settings
from sockauth.logging import get_logger
from sockauth.service.callbacks import SocketCallback, handle_socket_callback
from sockauth.service.errors import (
    CollaboratorError,
    ConfigurationError,
    NotAuthenticated,
    ServiceError,
    ValidationError,
)
from sockauth.service.events import EventBus, LoginContext
from sockauth.service.session import Connection, ExpiryTimer, RequestContext
from sockauth.service.strategies import Fail, StrategyRegistry, StrategyResult, Success
from sockauth.service.tokens import Token, TokenService
from sockauth.service.watcher import EntityWatcher

logger = get_logger(__name__)

UNSUPPORTED_OUTCOME_MESSAGE = (
    "Authentication could not complete. You might be using an unsupported "
    "socket authentication strategy."
)


class SessionHandler:
    """Authentication state machine for a single socket connection.

    ``authenticate``, ``logout`` and the background logouts triggered by token
    expiry or entity removal are serialized by one lock, so their side effects
    never interleave on the same connection.
    """

    def __init__(
        self,
        *,
        registry: StrategyRegistry,
        tokens: TokenService,
        bus: EventBus,
        settings: Settings,
        connection: Optional[Connection] = None,
    ) -> None:
        self.connection = connection or Connection()
        self.registry = registry
        self.tokens = tokens
        self.bus = bus
        self.settings = settings
        self.timer = ExpiryTimer()
        self.watcher = EntityWatcher(self.connection, self._on_entity_removed)
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()

    @property
    def authenticated(self) -> bool:
        return self.connection.authenticated

    async def handle_event(
        self, event: str, data: Any = None, callback: Optional[SocketCallback] = None
    ) -> None:
        """Route one inbound socket event; failures are reported through ``callback``."""
        try:
            if event == "authenticate":
                await self.authenticate(data, callback)
            elif event == "logout":
                await self.logout(callback)
            else:
                await handle_socket_callback(self._reject_event(event), callback)
        except ServiceError as exc:
            logger.debug(
                "socket_event_failed",
                connection_id=self.connection.id,
                socket_event=event,
                error_type=exc.error_type,
            )

    async def authenticate(
        self, payload: Any, callback: Optional[SocketCallback] = None
    ) -> Dict[str, Any]:
        return await handle_socket_callback(self._authenticate(payload), callback)

    async def logout(self, callback: Optional[SocketCallback] = None) -> Optional[Dict[str, Any]]:
        return await handle_socket_callback(self._logout(), callback)

    async def disconnect(self) -> None:
        """Log out (if authenticated) and release everything the connection holds."""
        try:
            await self.logout()
        except ServiceError as exc:
            logger.warning(
                "disconnect_logout_failed",
                connection_id=self.connection.id,
                error_type=exc.error_type,
                error=exc.message,
            )
        finally:
            await self.close()

    async def close(self) -> None:
        """Stop the timer and watcher, then cancel and await background logouts."""
        self.timer.cancel()
        self.watcher.unbind()
        tasks = [task for task in self._tasks if task is not asyncio.current_task()]
        if not tasks:
            return
        for task in tasks:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        cancelled = sum(isinstance(result, asyncio.CancelledError) for result in results)
        logger.info(
            "background_logouts_cancelled",
            connection_id=self.connection.id,
            pending=len(tasks),
            cancelled=cancelled,
            authenticated=self.connection.authenticated,
        )

    async def _reject_event(self, event: str) -> None:
        raise ValidationError(f"Unknown socket event '{event}'.", detail={"event": event})

    async def _authenticate(self, payload: Any) -> Dict[str, Any]:
        async with self._lock:
            if not isinstance(payload, dict):
                self.connection.request = RequestContext()
                raise ValidationError("Authentication payload must be an object.")
            strategy = payload.get("strategy")
            # Reset per-request scratch before anything can fail
            self.connection.request = RequestContext.from_payload(payload)

            if not strategy:
                raise ValidationError("An authentication 'strategy' must be provided.")
            if not isinstance(strategy, str) or not self.registry.is_registered(strategy):
                raise ConfigurationError(
                    f"Your '{strategy}' authentication strategy is not registered.",
                    detail={"strategy": strategy},
                )

            result = await self.registry.validate(strategy, self.connection.request)
            data = self._accept(result)
            binding = self.registry.lookup_binding(strategy)
            token = await self._issue(strategy, data)

            previous = self.connection.access_token
            self.connection.apply_login(
                strategy=strategy,
                data=data,
                access_token=token.access_token,
                token_metadata=token.metadata,
                header=self.settings.auth_header,
            )
            if previous and previous != token.access_token:
                await self._supersede(previous)
            self._arm_expiry(token.access_token)
            self.watcher.bind(binding)

            result_token = token.as_dict()
            logger.info(
                "socket_authenticated",
                connection_id=self.connection.id,
                strategy=strategy,
                reauthenticated=bool(previous),
            )
            self.bus.emit_login(result_token, self._context())
            return result_token

    def _accept(self, result: StrategyResult) -> Dict[str, Any]:
        if isinstance(result, Success):
            return dict(result.data or {})
        if isinstance(result, Fail):
            challenge = result.challenge
            message = self.settings.failure_message or (challenge.message if challenge else None)
            raise NotAuthenticated(
                message or "Invalid login",
                detail=dict(challenge.data) if challenge and challenge.data else None,
            )
        raise NotAuthenticated(UNSUPPORTED_OUTCOME_MESSAGE)

    async def _issue(self, strategy: str, data: Dict[str, Any]) -> Token:
        params = {"authenticated": True, "strategy": strategy, **data}
        try:
            return await self.tokens.issue(data, params)
        except ServiceError:
            raise
        except Exception as exc:
            logger.error(
                "token_issue_failed",
                connection_id=self.connection.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise CollaboratorError("Unable to issue an access token.") from exc

    async def _supersede(self, access_token: str) -> None:
        try:
            await self.tokens.invalidate(access_token, {"authenticated": True})
        except Exception as exc:
            # The new session stands; the old token is no longer held by this connection.
            logger.warning(
                "superseded_token_revoke_failed",
                connection_id=self.connection.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def _arm_expiry(self, access_token: str) -> None:
        self.timer.arm(
            self.settings.token_ttl_seconds,
            lambda: self._spawn(lambda: self._expire(access_token), "token_expired"),
        )

    async def _expire(self, access_token: str) -> None:
        logger.info("token_expired_logging_out", connection_id=self.connection.id)
        await self._logout(expected_token=access_token)

    def _on_entity_removed(self, record: Dict[str, Any]) -> None:
        access_token = self.connection.access_token
        if access_token:
            self._spawn(lambda: self._logout(expected_token=access_token), "entity_removed")

    async def _logout(self, expected_token: Optional[str] = None) -> Optional[Dict[str, Any]]:
        async with self._lock:
            access_token = self.connection.access_token
            if not access_token:
                return None
            if expected_token is not None and access_token != expected_token:
                # The connection re-authenticated after this logout was scheduled
                return None

            logger.debug("logging_out_socket", connection_id=self.connection.id)
            context = self._context()
            self.connection.clear_auth()
            self.timer.cancel()
            self.watcher.unbind()

            try:
                token = await self.tokens.invalidate(access_token, {"authenticated": True})
            except ServiceError:
                raise
            except Exception as exc:
                logger.error(
                    "token_invalidate_failed",
                    connection_id=self.connection.id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise CollaboratorError("Unable to invalidate the access token.") from exc

            result_token = token.as_dict()
            logger.info("socket_logged_out", connection_id=self.connection.id)
            self.bus.emit_logout(result_token, context)
            return result_token

    def _spawn(self, factory: Callable[[], Coroutine[Any, Any, Any]], reason: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error(
                "background_logout_dropped",
                connection_id=self.connection.id,
                reason=reason,
            )
            return
        task = loop.create_task(factory())
        self._tasks.add(task)

        def _done(finished: asyncio.Task) -> None:
            self._tasks.discard(finished)
            if finished.cancelled():
                logger.warning(
                    "background_logout_cancelled",
                    connection_id=self.connection.id,
                    reason=reason,
                )
                return
            exc = finished.exception()
            if exc is not None:
                logger.error(
                    "background_logout_failed",
                    connection_id=self.connection.id,
                    reason=reason,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

        task.add_done_callback(_done)

    def _context(self) -> LoginContext:
        return LoginContext(
            provider=self.connection.provider,
            connection_ref=self.connection.id,
            connection_state=self.connection.snapshot(),
        )
