from __future__ import annotations

import asyncio
import inspect
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

from sockauth.logging import get_logger

logger = get_logger(__name__)

Listener = Callable[..., Any]

# Events a watched entity service publishes for individual records.
ENTITY_EVENTS = ("updated", "patched", "removed")


class EventEmitter:
    """Named-event listener registry with fire-and-forget delivery.

    Listeners may be plain callables or coroutine functions. A failing
    listener is logged and never affects the emitter or other listeners.
    """

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = {}
        self._listener_lock = threading.Lock()
        self._pending: set[asyncio.Task] = set()

    def on(self, event: str, listener: Listener) -> None:
        with self._listener_lock:
            self._listeners.setdefault(event, []).append(listener)

    def remove_listener(self, event: str, listener: Listener) -> bool:
        with self._listener_lock:
            listeners = self._listeners.get(event)
            if not listeners or listener not in listeners:
                return False
            listeners.remove(listener)
            if not listeners:
                self._listeners.pop(event, None)
            return True

    def listener_count(self, event: str) -> int:
        with self._listener_lock:
            return len(self._listeners.get(event, ()))

    def emit(self, event: str, *args: Any) -> None:
        with self._listener_lock:
            listeners = list(self._listeners.get(event, ()))
        for listener in listeners:
            try:
                outcome = listener(*args)
            except Exception as exc:
                logger.error(
                    "event_listener_failed",
                    event_name=event,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                continue
            if inspect.isawaitable(outcome):
                self._schedule(event, outcome)

    def _schedule(self, event: str, awaitable: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("event_listener_dropped", event_name=event, reason="no_running_loop")
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        task = loop.create_task(awaitable)
        self._pending.add(task)

        def _done(finished: asyncio.Task) -> None:
            self._pending.discard(finished)
            if finished.cancelled():
                return
            exc = finished.exception()
            if exc is not None:
                logger.error(
                    "event_listener_failed",
                    event_name=event,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

        task.add_done_callback(_done)


@dataclass
class LoginContext:
    """Context attached to process-wide ``login``/``logout`` notifications."""

    provider: str
    connection_ref: str
    connection_state: Dict[str, Any] = field(default_factory=dict)


class EventBus(EventEmitter):
    """Process-wide authentication notifications, injected into each handler."""

    def emit_login(self, token: Dict[str, Any], context: LoginContext) -> None:
        logger.info("auth_login", provider=context.provider, connection_ref=context.connection_ref)
        self.emit("login", token, context)

    def emit_logout(self, token: Dict[str, Any], context: LoginContext) -> None:
        logger.info("auth_logout", provider=context.provider, connection_ref=context.connection_ref)
        self.emit("logout", token, context)
