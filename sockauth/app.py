from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from sockauth.api.routes import router, socket_endpoint
from sockauth.config import get_settings
from sockauth.logging import get_logger

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release the token store on shutdown."""
    from sockauth.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("socket_auth_started", strategies=list(runtime.registry.names()))

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def create_app() -> FastAPI:
    settings = get_settings()
    application = FastAPI(title="sockauth", version=__version__, lifespan=lifespan)
    application.include_router(router)
    application.add_api_websocket_route(settings.socket_path, socket_endpoint)
    return application


app = create_app()
