"""FastAPI application entrypoint.

Exposes the diagnostics and manual refresh routers plus a healthcheck. Store
and Redis clients are built once in the lifespan handler (or injected by
tests) and kept on app.state.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from sqlalchemy.orm import sessionmaker

from .config import get_settings
from .database import build_engine, build_session_factory
from .routers import diagnostics as diagnostics_router
from .routers import refresh as refresh_router
from .telemetry import init_observability
from .workers.arq_enqueue import RefreshQueue, create_arq_pool

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    init_observability()

    owned_engine = None
    owned_pool = None

    if app.state.session_factory is None:
        owned_engine = build_engine(settings.DATABASE_URL)
        app.state.session_factory = build_session_factory(owned_engine)

    if app.state.redis is None:
        try:
            owned_pool = await create_arq_pool(settings)
        except Exception as e:
            logger.warning("[QUEUE] Redis unavailable, queue diagnostics disabled: %s", e)
        app.state.redis = owned_pool
        app.state.refresh_queue = RefreshQueue(owned_pool, settings)

    yield

    if owned_pool is not None:
        await owned_pool.close()
    if owned_engine is not None:
        owned_engine.dispose()


def create_app(session_factory: Optional[sessionmaker] = None, redis=None) -> FastAPI:
    """Build the API. Clients passed in are used as-is and never closed here."""
    app = FastAPI(title="metricsync diagnostics", version="1.0.0", lifespan=lifespan)
    app.state.session_factory = session_factory
    app.state.redis = redis
    app.state.refresh_queue = RefreshQueue(redis)

    app.include_router(diagnostics_router.router)
    app.include_router(refresh_router.router)

    @app.get("/health", tags=["Health"])
    def health():
        return {"status": "ok"}

    return app


app = create_app()
