"""
Visits FastAPI service: trip visit backfill from location history.

Entrypoint: uvicorn services.visits.main:app --host 0.0.0.0 --port 8000
"""

import logging
import uuid
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from sqlalchemy.ext.asyncio import async_sessionmaker
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse

from services.visits.config import settings
from services.visits.db.engine import create_engine as create_sa_engine
from services.visits.middleware.cors import setup_cors
from services.visits.middleware.rate_limit import RateLimitMiddleware
from services.visits.middleware.sentry import setup_sentry
from services.visits.routers import backfill, health

logger = logging.getLogger(__name__)

# Shared redis reference: set during lifespan, read by rate limiter
_redis_holder: dict = {"client": None}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle."""
    setup_sentry()

    # Redis for rate limiting
    redis_client = None
    if settings.redis_url:
        try:
            redis_client = aioredis.from_url(
                settings.redis_url,
                decode_responses=True,
                socket_connect_timeout=5,
            )
            await redis_client.ping()
        except Exception:
            # Rate limiting degrades gracefully: requests pass through
            logger.warning("Redis unavailable; rate limiting disabled")
            redis_client = None

    _redis_holder["client"] = redis_client
    app.state.redis = redis_client
    app.state.settings = settings

    sa_engine = None
    if settings.database_url:
        try:
            sa_engine = create_sa_engine()
            app.state.db_engine = sa_engine
            # expire_on_commit=False: NullPool returns connection after commit,
            # lazy load on closed connection would fail without this.
            app.state.db_session_factory = async_sessionmaker(
                sa_engine, expire_on_commit=False
            )
        except Exception as e:
            logger.warning("SA engine failed to init: %s", e)

    yield

    if sa_engine:
        await sa_engine.dispose()
    if redis_client:
        await redis_client.aclose()


app = FastAPI(
    title="Visits API",
    version=settings.app_version,
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url=None,
    lifespan=lifespan,
)

# -- Middleware (order matters: last added = outermost in Starlette) --

app.include_router(health.router)
app.include_router(backfill.router)

# CORS (needs to be outermost to handle preflight)
setup_cors(app)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next) -> Response:
    request_id = request.headers.get("x-request-id", str(uuid.uuid4()))
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# Rate limiting: uses lazy redis reference from lifespan
class _LazyRateLimitMiddleware(RateLimitMiddleware):
    """Rate limiter that picks up Redis client after lifespan init."""

    def __init__(self, app):
        super().__init__(app, redis_client=None)

    async def dispatch(self, request, call_next):
        self.redis = _redis_holder.get("client")
        return await super().dispatch(request, call_next)


app.add_middleware(_LazyRateLimitMiddleware)


# -- Exception Handlers --


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", str(uuid.uuid4()))


def _error(request: Request, status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": {"code": code, "message": message},
            "requestId": _request_id(request),
        },
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Routers raise HTTPException(detail={"code", "message"}); wrap it in the envelope."""
    if isinstance(exc.detail, dict) and "code" in exc.detail:
        return _error(request, exc.status_code, exc.detail["code"], exc.detail.get("message", ""))
    if exc.status_code == 404:
        return _error(request, 404, "NOT_FOUND", "Resource not found.")
    return _error(request, exc.status_code, "HTTP_ERROR", str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "Validation error.")
    return _error(
        request,
        422,
        "VALIDATION_ERROR",
        f"{location}: {message}" if location else message,
    )


@app.exception_handler(500)
async def internal_error_handler(request: Request, exc) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return _error(request, 500, "INTERNAL_ERROR", "An unexpected error occurred.")
