"""Main application entry point."""
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
import redis
import redis.asyncio as aioredis
import httpx
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

from config import API_VERSION, EXPOSE_ERROR_DETAILS, RATE_LIMIT_ENABLED, REDIS_URL
from database import init_db, engine
from errors import StorefrontError
from monitoring import init_profiling
from logging_config import setup_logging
from routers import admin, cart, orders, payments, products, auth as auth_router
from redis_rate_limiter import RedisRateLimiter
from services.token_cache import TokenCache

# Setup structured logging
setup_logging()
logger = logging.getLogger(__name__)


# Sync client for the rate limiter middleware
redis_client = redis.from_url(REDIS_URL, decode_responses=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    # Startup
    logger.info("Starting application...")

    init_db()

    RedisInstrumentor().instrument(redis_client=redis_client)
    app.state.redis_client = redis_client

    # Async client backs the guest carts
    async_redis_client = aioredis.from_url(REDIS_URL, decode_responses=True)
    RedisInstrumentor().instrument(redis_client=async_redis_client)
    app.state.async_redis_client = async_redis_client
    logger.info("Redis clients initialized (sync + async)")

    # Per-call timeouts are set by the gateway client
    http_client = httpx.AsyncClient(timeout=30.0)
    HTTPXClientInstrumentor().instrument_client(http_client)
    app.state.http_client = http_client
    app.state.token_cache = TokenCache()
    logger.info("HTTP client initialized")

    init_profiling()

    logger.info("Application startup complete")

    yield

    # Shutdown
    logger.info("Shutting down application...")
    await http_client.aclose()
    await async_redis_client.aclose()
    logger.info("Application shutdown complete")


app = FastAPI(
    title="Storefront Service",
    version=API_VERSION,
    lifespan=lifespan
)

if RATE_LIMIT_ENABLED:
    app.add_middleware(RedisRateLimiter, redis_client=redis_client)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

FastAPIInstrumentor.instrument_app(app)
SQLAlchemyInstrumentor().instrument(engine=engine)


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError):
    """Render domain errors; internal detail is hidden in production."""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log("Request failed", extra={
        "path": request.url.path,
        "method": request.method,
        "error_code": exc.code,
        "status_code": exc.status_code,
        "error": exc.message
    })
    detail = exc.message if EXPOSE_ERROR_DETAILS else exc.public_message
    return JSONResponse(status_code=exc.status_code, content={"detail": detail, "code": exc.code})


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    logger.warning("Request validation failed", extra={
        "path": request.url.path,
        "method": request.method,
        "error_count": len(exc.errors())
    })
    detail = jsonable_encoder(exc.errors()) if EXPOSE_ERROR_DETAILS else "Invalid request"
    return JSONResponse(status_code=400, content={"detail": detail, "code": "validation_error"})


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error("Database error", extra={
        "path": request.url.path,
        "method": request.method,
        "error": str(exc)
    })
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "code": "data_store_error"}
    )


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


app.include_router(auth_router.router)
app.include_router(products.router)
app.include_router(cart.router)
app.include_router(orders.router)
app.include_router(payments.router)
app.include_router(admin.router)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
