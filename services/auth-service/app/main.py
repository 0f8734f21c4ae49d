"""FastAPI application wiring for the auth service."""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from psycopg_pool import ConnectionPool

from .api.routes import router as v1_router
from .config import get_settings
from .domain.service import AccountService, AuthenticationService
from .logging_config import configure_logging
from .repository import AccountRepository
from .security.guard import AuthGuard
from .security.passwords import PasswordHasher
from .security.token_store import build_token_store
from .security.tokens import TokenIssuer

settings = get_settings()
configure_logging(settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise shared resources (Postgres pool, token store, services) for the app lifecycle."""
    pool = ConnectionPool(settings.database_url, open=False)
    pool.open()
    repository = AccountRepository(pool)
    issuer = TokenIssuer(settings)
    token_store = build_token_store(settings)
    hasher = PasswordHasher(settings.bcrypt_rounds)

    app.state.pool = pool
    app.state.auth_service = AuthenticationService(
        repository,
        hasher,
        issuer,
        token_store,
        settings,
    )
    app.state.account_service = AccountService(repository, hasher, token_store, settings)
    app.state.auth_guard = AuthGuard(issuer, repository)
    logger.info("%s %s started", settings.app_name, settings.version)
    try:
        yield
    finally:
        pool.close()


app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)

# CORS for local frontend dev
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
    max_age=600,
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    """Attach a correlation id to the request and echo it on the response."""
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.get("/healthz", tags=["health"])
def healthz() -> dict[str, str]:
    """Return a minimal readiness indicator used by orchestration systems."""
    return {"status": "ok"}


@app.get("/metrics", include_in_schema=False)
def metrics() -> Response:
    """Expose Prometheus metrics for scrapes."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


app.include_router(v1_router)
