import logging
from contextlib import asynccontextmanager

try:
    import sentry_sdk
except ModuleNotFoundError:  # Sentry optional in local/test envs
    sentry_sdk = None
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse

try:
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration
except ModuleNotFoundError:  # Sentry optional during local dev/tests
    FastApiIntegration = None
    LoggingIntegration = None

from app.api.routes import health, screener
from app.config import settings
from app.services.screener.scheduler import DailyRefreshScheduler
from app.services.screener.snapshot import get_snapshot_service

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

HELP_PAGE = f"""
<h2>{settings.app_name}</h2>
<p>Daily EDGAR snapshot, refreshed at {settings.refresh_hour:02d}:{settings.refresh_minute:02d}
({settings.business_timezone}). Try:</p>
<ul>
  <li><a href="/api/health">/api/health</a></li>
  <li><a href="/api/search?exchanges=NYSE,NASDAQ,OTC">/api/search?exchanges=NYSE,NASDAQ,OTC</a></li>
  <li><a href="/api/search?exchanges=NASDAQ,OTC&revenue_min=10000000">/api/search with filters</a></li>
  <li><a href="/api/search?loan_size=3000000&max_payback_years=4">/api/search with loan terms</a></li>
</ul>
<p>POST /api/refresh forces a refresh (joins one already running).</p>
"""


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    if sentry_sdk and FastApiIntegration and LoggingIntegration and settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            integrations=[
                FastApiIntegration(auto_enabling_instrumentations=False),
                LoggingIntegration(level=logging.INFO),
            ],
            traces_sample_rate=0.1,
            environment=settings.environment,
        )
        logger.info("Sentry initialized")

    service = get_snapshot_service()
    service.trigger_background_refresh(reason="startup")

    scheduler: DailyRefreshScheduler | None = None
    if settings.scheduler_enabled:
        scheduler = DailyRefreshScheduler(
            service,
            timezone=settings.business_timezone,
            hour=settings.refresh_hour,
            minute=settings.refresh_minute,
        )
        scheduler.start()

    logger.info("Application startup complete")

    yield

    # Shutdown
    logger.info("Shutting down application")
    if scheduler is not None:
        await scheduler.stop()
    await service.aclose()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Daily EDGAR fundamentals snapshot with loan-eligibility screening",
    lifespan=lifespan,
    debug=settings.debug,
)

if settings.cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )


# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all requests."""
    logger.info(f"{request.method} {request.url.path}")
    response = await call_next(request)
    logger.info(f"Response status: {response.status_code}")
    return response


app.include_router(health.router, prefix="/api", tags=["health"])
app.include_router(screener.router, prefix="/api", tags=["screener"])


@app.get("/", response_class=HTMLResponse)
async def root() -> str:
    """Static help page."""
    return HELP_PAGE


def run() -> None:
    """Serve the API on the configured host and port."""
    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
