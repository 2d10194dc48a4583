"""
Availability & Scheduling Engine - Application Entry Point
Contractor availability, bookings and daily route optimization
"""

from contextlib import asynccontextmanager
from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
import logging
import time

from app.config import Settings, get_settings
from app.database import Database
from app.routers import availability, calendar, scheduling
from app.utils.exceptions import register_exception_handlers

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

settings = get_settings()

# Requests slower than this are logged at warning level
SLOW_REQUEST_MS = 1000


def log_scheduling_settings(config: Settings) -> None:
    """Write the tunables that shape booking and routing decisions to the log"""
    logger.info(
        "Slots every %d min, commit attempts %d, claim grace %ds, break buffer %s",
        config.SLOT_INCREMENT_MINUTES,
        config.COMMIT_MAX_ATTEMPTS,
        config.CLAIM_GRACE_SECONDS,
        "on" if config.BREAK_BUFFER_ENABLED else "off"
    )
    logger.info(
        "Routes start %s, accept below %.2f of naive, leg durations %s, routing via %s",
        config.ROUTE_DAY_START,
        config.ROUTE_IMPROVEMENT_THRESHOLD,
        "on" if config.ROUTE_USE_LEG_DURATIONS else "off",
        config.OSRM_BASE_URL
    )
    if not config.NOTIFICATION_SERVICE_URL:
        logger.info("Notification gateway not configured, messages will be skipped")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect storage on startup and release it on shutdown"""
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    for problem in settings.validate_production_settings():
        logger.warning(f"Configuration warning: {problem}")
    log_scheduling_settings(settings)

    await Database.connect()
    try:
        yield
    finally:
        logger.info("Shutting down")
        await Database.disconnect()


app = FastAPI(
    title=settings.APP_NAME,
    description="Contractor availability, booking and route scheduling API",
    version=settings.APP_VERSION,
    docs_url="/api/docs" if settings.DEBUG else None,
    redoc_url="/api/redoc" if settings.DEBUG else None,
    openapi_url="/api/openapi.json" if settings.DEBUG else None,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "OPTIONS"],
    allow_headers=["*"],
)


@app.middleware("http")
async def time_requests(request: Request, call_next):
    """Stamp each response with its handling time and log slow requests"""
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
    response.headers["X-Process-Time"] = str(elapsed_ms)

    if elapsed_ms >= SLOW_REQUEST_MS:
        logger.warning(
            f"Slow request: {request.method} {request.url.path} -> "
            f"{response.status_code} in {elapsed_ms}ms"
        )
    return response


register_exception_handlers(app)


@app.get("/health", tags=["Health"])
async def health_check():
    """Liveness check; reports whether storage is reachable without failing the check"""
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "database": await Database.status()
    }


@app.get("/", tags=["Health"])
async def root():
    """Service information"""
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "api_prefix": settings.API_V1_PREFIX,
        "docs": "/api/docs" if settings.DEBUG else None
    }


api_v1 = APIRouter(prefix=settings.API_V1_PREFIX)
api_v1.include_router(availability.router, prefix="/contractors", tags=["Availability"])
api_v1.include_router(scheduling.router, prefix="/jobs", tags=["Scheduling"])
api_v1.include_router(calendar.router, prefix="/calendar", tags=["Calendar"])
app.include_router(api_v1)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG)
