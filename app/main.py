# app/main.py
from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response as StarletteResponse

from api.routers.stream import router as stream_router
from api.routers.tenants import router as tenants_router
from app.core.config import Settings, get_settings
from app.core.context import clear_connection_id, set_connection_id
from app.core.logging import configure_logging, get_logger
from services.feed_hub import FeedHub
from services.tenant_registry import SourceFactory

logger = get_logger()


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        req_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        set_connection_id(req_id)
        logger.debug("request_started", method=request.method, path=str(request.url.path))
        try:
            response: StarletteResponse = await call_next(request)
        except Exception as exc:
            logger.error("request_exception", error=str(exc.__class__.__name__))
            clear_connection_id()
            raise
        logger.debug("request_ended", status_code=response.status_code)
        response.headers["X-Request-Id"] = req_id
        clear_connection_id()
        return response


def create_app(
    settings: Optional[Settings] = None,
    *,
    store=None,
    source_factory: Optional[SourceFactory] = None,
) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        hub = FeedHub(settings, store=store, source_factory=source_factory)
        # restore persisted tenants before the first subscriber is accepted
        await hub.start()
        app.state.hub = hub
        try:
            yield
        finally:
            await hub.stop()

    app = FastAPI(
        title="feedcast",
        version="0.1.0",
        docs_url="/docs",
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.add_middleware(RequestIdMiddleware)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=exc.headers)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("unhandled_exception", path=str(request.url.path))
        return JSONResponse(status_code=500, content={"detail": "Internal Server Error"})

    # --- Health endpoints ---
    @app.get("/")
    async def root():
        return {"ok": True, "app": "feedcast", "message": "Up & running"}

    @app.head("/")
    async def root_head():
        return Response(status_code=200)

    @app.get("/healthz")
    async def healthz():
        return {"status": "healthy"}

    @app.get("/health")
    async def health():
        return {"ok": True}

    api_v1_router = APIRouter(prefix="/api/v1")
    api_v1_router.include_router(tenants_router)
    app.include_router(api_v1_router)

    # websocket routes at the root, where existing clients connect
    app.include_router(stream_router)

    return app


configure_logging(service_name="feedcast", level=get_settings().log_level_value)

app = create_app()


def main() -> None:
    import uvicorn

    settings = get_settings()
    logger.info("server_listening", host=settings.HOST, port=settings.PORT)
    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_config=None)


if __name__ == "__main__":
    main()
