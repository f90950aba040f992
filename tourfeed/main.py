from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import uuid

import structlog

from tourfeed.core.config import settings
from tourfeed.logging import configure_logging
from tourfeed.api.routes import router as api_router
from tourfeed.middleware.logging import LoggingMiddleware
from tourfeed.services.cache import build_response_cache
from tourfeed.services.feed_registry import FeedRegistry
from tourfeed.services.tour_api import CachedSiteSearchProvider, TourAPIClient

configure_logging()
logger = structlog.get_logger(__name__)

# --- Application Lifecycle Management ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("application_startup", version=settings.VERSION, env=settings.ENV)
    if not settings.TOUR_API_SERVICE_KEY:
        logger.warning("tour_api_service_key_missing")

    client = TourAPIClient()
    cache = build_response_cache()
    provider = CachedSiteSearchProvider(client, cache) if cache is not None else client

    app.state.tour_api = client
    app.state.cache = cache
    app.state.feeds = FeedRegistry(provider)

    yield

    logger.info("application_shutdown", sessions=len(app.state.feeds))
    await app.state.feeds.close_all()
    await client.aclose()
    close_cache = getattr(cache, "close", None)
    if close_cache is not None:
        await close_cache()

# --- FastAPI Application Initialization ---
app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description=settings.BRIEF_DESCRIPTION,
    lifespan=lifespan,
)

app.add_middleware(LoggingMiddleware)
app.include_router(api_router, prefix="/api")

# --- Health Check Endpoint ---
@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check(request: Request):
    feeds = getattr(request.app.state, "feeds", None)
    return {
        "status": "ok",
        "version": settings.VERSION,
        "sessions": len(feeds) if feeds is not None else 0,
    }

# --- Global Exception Handler (for unhandled errors) ---
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    error_id = str(uuid.uuid4())
    logger.error("unhandled_exception", error_id=error_id, error=str(exc), exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "detail": {
                "error": "INTERNAL_SERVER_ERROR",
                "detail": "An unexpected error occurred. Please report this error ID.",
                "error_id": error_id
            }
        }
    )
