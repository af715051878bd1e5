"""Factory for the watch party sync FastAPI application."""

from __future__ import annotations

import json
import logging
import logging.config
import time
from contextlib import asynccontextmanager
from pathlib import Path
from uuid import uuid4

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from .api.routes import router
from .config import Settings, get_settings, package_version
from .hub import BroadcastHub
from .log_store import InMemoryLogStore, LogStore, RedisLogStore
from .observability import setup_observability
from .presence import PresenceTracker
from .redis_bus import RedisFactory
from .sequencer import PartySequencer
from .state_store import InMemoryPartyStateStore, PartyStateStore, RedisPartyStateStore

logger = logging.getLogger(__name__)


def build_stores(settings: Settings, redis_factory: RedisFactory) -> tuple[LogStore, PartyStateStore]:
    if settings.store_backend == "redis":
        return (
            RedisLogStore(redis_factory, page_size=settings.log_page_size),
            RedisPartyStateStore(redis_factory),
        )
    return InMemoryLogStore(page_size=settings.log_page_size), InMemoryPartyStateStore()


@asynccontextmanager
async def _lifespan(app: FastAPI):
    settings = get_settings()
    _setup_logging(settings)
    redis_factory = RedisFactory(settings.redis_url)
    log_store, state_store = build_stores(settings, redis_factory)
    presence = PresenceTracker(ttl_seconds=settings.presence_ttl_seconds)
    hub = BroadcastHub(settings, presence, redis_factory=redis_factory, log_reader=log_store.read_since)
    await hub.start()
    app.state.hub = hub
    app.state.sequencer = PartySequencer(
        settings=settings,
        log_store=log_store,
        state_store=state_store,
        hub=hub,
    )
    logger.info("Watch party sync started (store=%s)", settings.store_backend)
    try:
        yield
    finally:
        await hub.stop()


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""

    settings = get_settings()
    app = FastAPI(
        title="Watch Party Sync",
        version=package_version(),
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=_lifespan,
    )
    setup_observability(app, service_name="watchparty-sync")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)

    @app.middleware("http")
    async def http_logger(request: Request, call_next):  # type: ignore[override]
        """Log method, path, status and elapsedMs with traceId."""

        start = time.perf_counter()
        response: Response | None = None
        try:
            response = await call_next(request)
            return response
        finally:
            logging.getLogger("http").info(
                "method=%s path=%s status=%s elapsedMs=%s traceId=%s",
                request.method,
                request.url.path,
                response.status_code if response else 500,
                int((time.perf_counter() - start) * 1000),
                getattr(request.state, "trace_id", ""),
            )

    # registered last so it runs first and the trace id is set for the logger
    @app.middleware("http")
    async def inject_trace_id(request: Request, call_next):  # type: ignore[override]
        """Attach `trace_id` to request and response headers for correlation."""

        trace_id = request.headers.get("x-trace-id") or request.headers.get("x-request-id") or uuid4().hex
        request.state.trace_id = trace_id
        response: Response = await call_next(request)
        response.headers["X-Trace-Id"] = trace_id
        response.headers.setdefault("X-Request-Id", trace_id)
        return response

    @app.get("/config", tags=["system"])
    def read_config(request: Request) -> dict[str, str | int]:
        """Return service config snapshot for diagnostics."""

        return {
            "apiVersion": settings.api_version,
            "storeBackend": settings.store_backend,
            "maxConnectionsPerParty": settings.max_connections_per_party,
            "traceId": getattr(request.state, "trace_id", ""),
        }

    logger.info("Watch party sync initialised with API version %s", settings.api_version)
    return app


def _setup_logging(settings: Settings) -> None:
    """Load JSON logging config if present."""

    config_path = Path.cwd() / settings.log_config_path
    if not config_path.exists():
        return
    with config_path.open("r", encoding="utf-8") as fh:
        logging.config.dictConfig(json.load(fh))
