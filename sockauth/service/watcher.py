from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, Optional

from sockauth.logging import get_logger
from sockauth.service.events import ENTITY_EVENTS
from sockauth.service.session import Connection
from sockauth.service.strategies import WatcherBinding

logger = get_logger(__name__)


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class EntityWatcher:
    """Keeps a connection's cached entity in step with its backing service.

    ``updated`` replaces the cached entity, ``patched`` merges into it and
    ``removed`` hands the record to ``on_removed`` (the handler logs the
    connection out). Only one binding is live at a time.

    Services may publish from any thread. Events raised off the loop the
    watcher was bound on are handed to that loop, so the connection is only
    ever touched from its own loop.
    """

    def __init__(
        self,
        connection: Connection,
        on_removed: Callable[[Dict[str, Any]], None],
    ) -> None:
        self.connection = connection
        self._on_removed = on_removed
        self._binding: Optional[WatcherBinding] = None
        self._listeners: Dict[str, Callable[[Any], None]] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def binding(self) -> Optional[WatcherBinding]:
        return self._binding

    def bind(self, binding: Optional[WatcherBinding]) -> None:
        self.unbind()
        if binding is None:
            return
        listeners = {event: self._listener_for(binding, event) for event in ENTITY_EVENTS}
        self._loop = _running_loop()
        for event, listener in listeners.items():
            binding.service.on(event, listener)
        self._binding = binding
        self._listeners = listeners
        logger.debug(
            "entity_watcher_bound",
            connection_id=self.connection.id,
            service=binding.service_path,
            entity=binding.entity,
        )

    def unbind(self) -> bool:
        binding, listeners = self._binding, self._listeners
        self._binding = None
        self._listeners = {}
        if binding is None:
            return False
        for event, listener in listeners.items():
            binding.service.remove_listener(event, listener)
        logger.debug(
            "entity_watcher_unbound",
            connection_id=self.connection.id,
            service=binding.service_path,
        )
        return True

    def _listener_for(self, binding: WatcherBinding, event: str) -> Callable[[Any], None]:
        def listener(record: Any) -> None:
            loop = self._loop
            if loop is None or _running_loop() is loop:
                self._deliver(binding, event, record)
                return
            try:
                loop.call_soon_threadsafe(self._deliver, binding, event, record)
            except RuntimeError:
                logger.warning(
                    "entity_event_dropped",
                    connection_id=self.connection.id,
                    change=event,
                    reason="loop_closed",
                )

        return listener

    def _deliver(self, binding: WatcherBinding, event: str, record: Any) -> None:
        # Events queued before a rebind belong to the old binding
        if self._binding is binding:
            self.handle(event, record)

    def handle(self, event: str, record: Any) -> None:
        binding = self._binding
        if binding is None or not isinstance(record, dict):
            return
        cached = self.connection.entity(binding.entity)
        if cached is None:
            return
        record_id = record.get(binding.id_field)
        if record_id is None or record_id != cached.get(binding.id_field):
            return
        if event == "updated":
            self.connection.set_entity(binding.entity, dict(record))
        elif event == "patched":
            self.connection.set_entity(binding.entity, {**cached, **record})
        elif event == "removed":
            logger.info(
                "entity_removed_forcing_logout",
                connection_id=self.connection.id,
                entity=binding.entity,
                entity_id=record_id,
            )
            self._on_removed(record)
            return
        logger.debug(
            "entity_refreshed",
            connection_id=self.connection.id,
            entity=binding.entity,
            entity_id=record_id,
            change=event,
        )
