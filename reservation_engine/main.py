"""Main FastAPI application entry point."""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from reservation_engine.api.deps import get_notifier, get_status_cache
from reservation_engine.api.routes import router
from reservation_engine.database import Base, SessionLocal, engine
# Import models to register them with SQLAlchemy Base
from reservation_engine.models import audit, domain  # noqa: F401
from reservation_engine.services.scheduler import AutomationScheduler
from reservation_engine.settings import get_settings

settings = get_settings()

if settings.log_format == "json":
    log_format = '{"time": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s"}'
else:
    log_format = "%(asctime)s %(levelname)s %(name)s: %(message)s"

logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO), format=log_format)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables in development and own the automation scheduler task."""
    if settings.is_development:
        Base.metadata.create_all(bind=engine)

    app.state.scheduler = AutomationScheduler(
        SessionLocal,
        notifier=get_notifier(),
        cache=get_status_cache(),
        max_retries=settings.scheduler_max_retries,
        interval_seconds=settings.scheduler_interval_seconds
    )
    stop_event = asyncio.Event()
    task = None
    if settings.scheduler_enabled:
        task = asyncio.create_task(app.state.scheduler.run_forever(stop_event))

    logger.info("Reservation engine started (environment=%s)", settings.environment)
    yield

    stop_event.set()
    if task is not None:
        try:
            await asyncio.wait_for(task, timeout=30)
        except asyncio.TimeoutError:
            # Cancelling stops the loop; a scan already inside its worker thread runs to completion
            task.cancel()
            logger.warning(
                "Automation scheduler did not stop within 30s; loop cancelled, "
                "an in-flight property scan may still be finishing"
            )
    logger.info("Reservation engine stopped")


app = FastAPI(
    title="Reservation Lifecycle Engine",
    description="Reservation status state machine, automatic transitions, approvals and day-boundary checks.",
    version="0.1.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)

app.include_router(router, prefix="/api", tags=["Reservations"])


# Health check
@app.get("/health")
def health_check():
    return {
        "status": "healthy",
        "service": "Reservation Lifecycle Engine",
        "cache": get_status_cache().stats.to_dict(),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
