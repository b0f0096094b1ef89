"""FastAPI application wiring for the identity service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from psycopg_pool import ConnectionPool

from .api.routes import register_exception_handlers, router as auth_router
from .clock import SystemClock
from .config import get_settings
from .domain.service import AccountService
from .repository import AccountRepository

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise shared resources (Postgres pool, services) for the app lifecycle."""
    pool = ConnectionPool(settings.database_url, open=False)
    pool.open()
    app.state.pool = pool
    app.state.account_service = AccountService(
        AccountRepository(pool), clock=SystemClock(), settings=settings
    )
    logger.info("%s %s started", settings.app_name, settings.version)
    try:
        yield
    finally:
        pool.close()


app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in settings.cors_origins.split(",") if origin.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    max_age=600,
)


@app.get("/healthz", tags=["health"])
def healthz() -> dict[str, str]:
    """Return a minimal readiness indicator used by orchestration systems."""
    return {"status": "ok"}


@app.get("/metrics")
def metrics() -> Response:
    """Expose Prometheus counters for scraping."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(auth_router)
register_exception_handlers(app)


def run() -> None:
    """Console entry point serving the app with uvicorn."""
    import uvicorn

    uvicorn.run("recycle_identity.main:app", host=settings.http_host, port=settings.http_port)
