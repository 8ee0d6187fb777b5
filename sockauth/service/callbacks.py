from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sockauth.logging import get_logger
from sockauth.service.errors import ServiceError, normalize_error

logger = get_logger(__name__)

T = TypeVar("T")

SocketCallback = Callable[[Optional[dict], Any], Any]


async def _invoke(callback: SocketCallback, error: Optional[dict], result: Any) -> None:
    try:
        outcome = callback(error, result)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception as exc:
        # Never re-invoked; the operation already completed
        logger.warning(
            "socket_callback_failed",
            error_type=type(exc).__name__,
            error=str(exc),
        )


async def handle_socket_callback(
    operation: Awaitable[T], callback: Optional[SocketCallback] = None
) -> T:
    """Await ``operation`` and report its outcome to ``callback`` exactly once.

    The callback receives ``(None, result)`` on success or
    ``(normalized_error, None)`` on failure. The original result is returned,
    and the original exception re-raised, so internal callers are unaffected.
    """
    try:
        result = await operation
    except Exception as exc:
        log_fn = (
            logger.warning
            if isinstance(exc, ServiceError) and exc.status_code < 500
            else logger.error
        )
        log_fn(
            "socket_authentication_error",
            error_type=type(exc).__name__,
            error=str(exc),
        )
        if callback is not None:
            await _invoke(callback, normalize_error(exc), None)
        raise
    if callback is not None:
        await _invoke(callback, None, result)
    return result
