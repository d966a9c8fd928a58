import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from storydesk.config import get_settings
from storydesk.database import Base, SessionLocal, engine
from storydesk.dependencies import get_messenger, get_sources, get_text_generator
from storydesk.routes import cron, exemplars, stories, system
from storydesk.scheduler import PipelineScheduler

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # --- Startup ---
    logger.info("Creating database tables if they don't exist...")
    Base.metadata.create_all(bind=engine)

    settings = get_settings()
    if not settings.api_key:
        logger.warning("STORYDESK_API_KEY is not set; every endpoint will answer 401")

    task = None
    if settings.scheduler_enabled:
        logger.info("Starting in-process pipeline scheduler...")
        scheduler = PipelineScheduler(settings, get_sources(), get_text_generator(), get_messenger())
        task = asyncio.create_task(scheduler.run(SessionLocal))

    yield

    # --- Shutdown ---
    if task is not None:
        logger.info("Shutting down pipeline scheduler...")
        task.cancel()


app = FastAPI(
    title="Story Desk API",
    description="Finds, scores and enriches breaking-news candidates for the newsroom.",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(cron.router)
app.include_router(stories.router)
app.include_router(exemplars.router)
app.include_router(system.router)
