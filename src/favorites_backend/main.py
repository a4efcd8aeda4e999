from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from typing import cast

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from favorites_backend.cache import QueryCache, build_query_cache
from favorites_backend.config import settings
from favorites_backend.db import dispose_engine
from favorites_backend.error_handlers import register_error_handlers
from favorites_backend.routers import collections as collections_router
from favorites_backend.routers import favorites as favorites_router
from favorites_backend.schemas_common import HealthResponse
from favorites_backend.services.collections_service import CollectionStore
from favorites_backend.services.saved_items_service import SavedItemStore

logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))

logger = logging.getLogger(__name__)


class RequestIdMiddleware:
    def __init__(self, app: ASGIApp) -> None:
        self.app: ASGIApp = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request_id_header: bytes | None = None
        inbound_headers = cast(list[tuple[bytes, bytes]], scope.get("headers") or [])
        for key, value in inbound_headers:
            if key.lower() == b"x-request-id":
                value = value.strip()
                if value:
                    request_id_header = value
                break

        if request_id_header is None:
            request_id = str(uuid.uuid4())
            request_id_header = request_id.encode("ascii")
        else:
            # latin-1 is a 1-1 mapping for bytes -> str.
            request_id = request_id_header.decode("latin-1")

        scope.setdefault("state", {})["request_id"] = request_id

        async def send_wrapper(message: Message) -> None:
            if message.get("type") == "http.response.start":
                headers = cast(list[tuple[bytes, bytes]], message.get("headers", []))
                headers = [(k, v) for (k, v) in headers if k.lower() != b"x-request-id"]
                headers.append((b"x-request-id", request_id_header))
                message["headers"] = headers
            await send(message)

        await self.app(scope, receive, send_wrapper)


@asynccontextmanager
async def _lifespan(_app: FastAPI):
    yield
    # Ensure aiosqlite worker threads don't keep the process alive.
    await dispose_engine()


def create_app(cache: QueryCache | None = None) -> FastAPI:
    """Build the HTTP app and the stores it serves.

    Stores live on app.state rather than being created in the lifespan hook so
    in-process test transports that skip lifespan still get them.
    """
    app = FastAPI(title=settings.app_name, lifespan=_lifespan)

    query_cache = cache if cache is not None else build_query_cache(settings)
    app.state.cache = query_cache
    app.state.saved_items = SavedItemStore(cache=query_cache)
    app.state.collections = CollectionStore(cache=query_cache)

    app.add_middleware(RequestIdMiddleware)

    origins = settings.cors_origins_list()
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            # The bearer header carries identity; no cookies cross origins.
            allow_credentials=False,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    register_error_handlers(app)

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:  # pyright: ignore[reportUnusedFunction]
        return HealthResponse()

    app.include_router(favorites_router.router, prefix=settings.api_prefix)
    app.include_router(collections_router.router, prefix=settings.api_prefix)
    return app


for msg in settings.security_warnings():
    logger.warning("SECURITY WARNING: %s", msg)

app = create_app()
