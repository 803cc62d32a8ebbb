"""FastAPI application factory — the composition root.

Learn: App factory pattern — create_app() wires every component by
constructor arguments: store → service, store → bus, and hangs them on
app.state for routes and the WebSocket handler. Lifespan manages
startup/shutdown: the store must be reachable at startup (a failure here
aborts the server with a non-zero exit), the bus runs until shutdown.
"""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from profilecast import __version__
from profilecast.api import api_router
from profilecast.config import Settings, settings as default_settings
from profilecast.middleware.case_insensitive import CaseInsensitivePathMiddleware
from profilecast.middleware.request_id import RequestIdMiddleware
from profilecast.realtime.bus import NotificationBus
from profilecast.realtime.websocket import router as ws_router
from profilecast.services.profile_service import ProfileService
from profilecast.store import ProfileStore, StoreError, build_store

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle.

    Learn: Anything before `yield` runs at startup, after `yield` runs at
    shutdown. Stopping the bus closes every subscription, which in turn
    ends every WebSocket session with close code 1001.
    """
    settings: Settings = app.state.settings
    store: ProfileStore = app.state.store
    bus: NotificationBus = app.state.bus

    logger.info(
        "profilecast.starting",
        version=__version__,
        environment=settings.environment,
        port=settings.http_port,
        store=store.name,
    )

    await store.connect()
    await bus.start()
    logger.info("profilecast.ready")

    yield

    # Shutdown
    logger.info("profilecast.shutdown")
    await bus.stop()
    await store.close()


async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    """A failed store call fails the request; nothing was committed."""
    settings: Settings = request.app.state.settings
    logger.error("profilecast.store_error", error=str(exc), path=request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": str(exc) if settings.debug else "Store error"},
    )


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[ProfileStore] = None,
) -> FastAPI:
    """Build and return the FastAPI application."""
    settings = settings or default_settings
    store = store or build_store(settings.store_uri, echo=settings.debug)
    bus = NotificationBus(
        store,
        default_capacity=settings.ws_queue_capacity,
        policy=settings.slow_policy,
        backoff_initial=settings.changes_backoff_initial_ms / 1000,
        backoff_max=settings.changes_backoff_max_ms / 1000,
        closing_grace=settings.closing_grace_ms / 1000,
    )

    app = FastAPI(
        title="profilecast",
        description="Profile records with live change notifications over WebSocket",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.bus = bus
    app.state.profile_service = ProfileService(store)

    # ── Middleware stack ──────────────────────────────────────
    # Starlette runs the last-registered middleware first.
    # Request flow: CaseInsensitivePath → RequestId → CORS → handler
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(CaseInsensitivePathMiddleware)

    app.add_exception_handler(StoreError, store_error_handler)

    app.include_router(api_router)
    app.include_router(ws_router)

    return app


# Default app instance (used by uvicorn: profilecast.main:app)
app = create_app()
