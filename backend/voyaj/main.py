from fastapi import FastAPI
from contextlib import asynccontextmanager
import logging

from voyaj import __version__
from voyaj.api import health, sms
from voyaj.config import get_settings
from voyaj.database import SessionLocal, init_db
from voyaj.engine import build_engine
from voyaj.scheduler import start_scheduler, stop_scheduler
from voyaj.services.ai_service import configure_ai_from_settings
from voyaj.services.notification import get_global_notifier, shutdown_notifier
from voyaj.store.sql import SqlStore

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"🚀 Starting Voyaj ({settings.env})")

    init_db()
    configure_ai_from_settings(settings)
    engine = build_engine(SqlStore(SessionLocal), get_global_notifier(), settings=settings)
    app.state.engine = engine

    if settings.scheduler_enabled:
        try:
            start_scheduler(engine.nudger)
            logger.info("✅ APScheduler started")
        except Exception as e:
            logger.error(f"❌ Scheduler failed to start: {e}")

    yield

    logger.info("🛑 Shutting down Voyaj")
    try:
        stop_scheduler()
        await engine.shutdown()
        await shutdown_notifier()
        logger.info("✅ Shutdown complete")
    except Exception as e:
        logger.error(f"❌ Shutdown error: {e}")
    app.state.engine = None


app = FastAPI(
    title="Voyaj",
    description="Group trip planning over SMS",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(health.router, tags=["health"])
app.include_router(sms.router, tags=["sms"])


@app.get("/ping")
async def ping():
    """Simple ping endpoint for health checks."""
    return {"status": "ok"}
