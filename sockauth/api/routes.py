from __future__ import annotations

import json
from typing import Any, Dict, Optional, Union

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError as SchemaValidationError

from sockauth.api.schemas import SocketAck, SocketError, SocketMessage, SocketNotice
from sockauth.logging import get_logger, set_connection_id
from sockauth.service.callbacks import SocketCallback
from sockauth.service.errors import ValidationError, normalize_error
from sockauth.service.events import LoginContext
from sockauth.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter()


def _ack_callback(ws: WebSocket, ack: Union[int, str]) -> SocketCallback:
    async def callback(error: Optional[Dict[str, Any]], result: Any) -> None:
        reply = SocketAck(
            ack=ack,
            error=SocketError(**error) if error else None,
            data=result,
        )
        await ws.send_json(reply.model_dump())

    return callback


async def _send_error(ws: WebSocket, error: Exception, ack: Optional[Union[int, str]] = None) -> None:
    reply = SocketAck(ack=ack, error=SocketError(**normalize_error(error)))
    await ws.send_json(reply.model_dump())


@router.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report liveness and the strategies sockets can authenticate with."""
    runtime = get_runtime()
    return {
        "status": "ok",
        "strategies": list(runtime.registry.names()),
        "token_store": type(runtime.token_store).__name__,
    }


async def socket_endpoint(ws: WebSocket) -> None:
    """Serve authenticate/logout events for one socket until it disconnects."""
    runtime = get_runtime()
    await ws.accept()
    handler = runtime.new_session_handler(provider="websocket")
    connection_id = set_connection_id(handler.connection.id)

    async def forward_logout(token: Dict[str, Any], context: LoginContext) -> None:
        if context.connection_ref != connection_id:
            return
        await ws.send_json(SocketNotice(event="logout", data=token).model_dump())

    runtime.bus.on("logout", forward_logout)
    logger.info("socket_connected", connection_id=connection_id)
    try:
        while True:
            raw = await ws.receive_text()
            frame: Any = None
            try:
                frame = json.loads(raw)
                message = SocketMessage.model_validate(frame)
            except (json.JSONDecodeError, SchemaValidationError) as exc:
                logger.warning(
                    "socket_invalid_frame",
                    connection_id=connection_id,
                    error_type=type(exc).__name__,
                )
                ack = frame.get("ack") if isinstance(frame, dict) else None
                if not isinstance(ack, (int, str)):
                    ack = None
                await _send_error(ws, ValidationError("Invalid socket frame."), ack)
                continue
            callback = _ack_callback(ws, message.ack) if message.ack is not None else None
            await handler.handle_event(message.event, message.data, callback)
    except WebSocketDisconnect:
        pass
    except Exception as exc:
        logger.error(
            "unhandled_socket_error",
            connection_id=connection_id,
            error_type=type(exc).__name__,
        )
        try:
            await _send_error(ws, exc)
            await ws.close(code=1011)
        except Exception:
            pass  # Connection may already be closed
    finally:
        runtime.bus.remove_listener("logout", forward_logout)
        await handler.disconnect()
        logger.info("socket_disconnected", connection_id=connection_id)
