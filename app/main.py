"""Last Wish API application."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded

from app.api.router import api_router
from app.config import get_settings
from app.core.exceptions import LastWishError, last_wish_error_handler
from app.core.logging import get_logger, setup_logging
from app.core.rate_limit import limiter, rate_limit_exceeded_handler
from app.core.scheduler import start_scheduler, stop_scheduler

settings = get_settings()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    setup_logging()
    await start_scheduler()
    logger.bind(base_url=settings.base_url).info("api_started")
    try:
        yield
    finally:
        await stop_scheduler()


app = FastAPI(
    title="Last Wish",
    description="Check-in / dead-man's-switch API",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.debug else None,
    redoc_url=None,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)  # type: ignore[arg-type]
app.add_exception_handler(LastWishError, last_wish_error_handler)  # type: ignore[arg-type]

# The web client is served from base_url and authenticates with a cookie
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.base_url],
    allow_credentials=True,
    allow_methods=["GET", "PUT", "POST"],
    allow_headers=["*"],
)

app.include_router(api_router)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Load balancer health check; no database access."""
    return {"status": "healthy"}
