"""FastAPI application factory."""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, Response

from konver.observability.correlation import (
    CORRELATION_ID_HEADER,
    bind_correlation_id,
    get_correlation_id,
    unbind_correlation_id,
)
from konver.observability.logging import get_logger
from konver.services.bridge import WhatsAppBridge

from .routers import public
from .routes import webhooks_whatsapp, whatsapp_bots

logger = get_logger(__name__)


def create_app(bridge: WhatsAppBridge | None = None) -> FastAPI:
    """Create the FastAPI app.

    Args:
        bridge: Pre-built bridge service (tests inject one with fakes). When
            omitted, the production bridge is built from the environment on
            startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if getattr(app.state, "bridge", None) is None:
            app.state.bridge = WhatsAppBridge.from_env()
            logger.info("whatsapp bridge initialised")
        yield

    app = FastAPI(
        title="Konver WhatsApp Bridge",
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.bridge = bridge

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next) -> Response:
        token = bind_correlation_id(request.headers.get(CORRELATION_ID_HEADER))
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = get_correlation_id()
            return response
        finally:
            unbind_correlation_id(token)

    app.include_router(public.router)
    app.include_router(webhooks_whatsapp.router)
    app.include_router(whatsapp_bots.router)

    return app
