import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, List

from sqlalchemy.orm import Session

from storydesk.ai import run_story_ai_batch
from storydesk.alerts import run_dispatch_alerts
from storydesk.config import Settings
from storydesk.ingestion import run_ingest_stories
from storydesk.outcomes import run_evaluate_outcomes

logger = logging.getLogger(__name__)


@dataclass
class Job:
    name: str
    interval_seconds: int
    run: Callable[[Session], dict]


class PipelineScheduler:
    """
    In-process alternative to external cron: each job gets its own loop that
    runs it on a fresh session, then sleeps for its interval. A failed run is
    logged and the loop carries on.
    """

    def __init__(self, settings: Settings, sources, generator, messenger):
        self.jobs: List[Job] = [
            Job("ingest-stories", settings.ingest_interval_seconds, lambda db: run_ingest_stories(db, sources)),
            Job("story-intelligence-ai", settings.ai_interval_seconds, lambda db: run_story_ai_batch(db, generator, settings)),
            Job("evaluate-outcomes", settings.outcomes_interval_seconds, run_evaluate_outcomes),
            Job("alerts", settings.alerts_interval_seconds, lambda db: run_dispatch_alerts(db, messenger, settings)),
        ]

    def run_once(self, job: Job, db_factory) -> None:
        db: Session = db_factory()
        try:
            result = job.run(db)
            logger.info(f"[scheduler] {job.name}: {result}")
        except Exception as e:
            db.rollback()
            logger.exception(f"[scheduler] {job.name} failed: {e}")
        finally:
            db.close()

    async def _loop(self, job: Job, db_factory):
        logger.info(f"[scheduler] {job.name} every {job.interval_seconds}s")
        while True:
            # jobs are blocking (requests, SQLAlchemy); keep them off the event loop
            await asyncio.to_thread(self.run_once, job, db_factory)
            await asyncio.sleep(job.interval_seconds)

    async def run(self, db_factory):
        """Entry point for the background task. db_factory returns a new Session (e.g. SessionLocal)."""
        await asyncio.gather(*(self._loop(job, db_factory) for job in self.jobs))
