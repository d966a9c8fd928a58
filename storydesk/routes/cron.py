import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from storydesk.ai import TextGenerator, run_story_ai_batch
from storydesk.alerts import run_dispatch_alerts
from storydesk.config import Settings, get_settings
from storydesk.database import get_db
from storydesk.dependencies import get_messenger, get_sources, get_text_generator, require_api_key
from storydesk.ingestion import run_ingest_stories
from storydesk.outcomes import run_evaluate_outcomes
from storydesk.sources import BaseSource

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_api_key)])


def _job_failed(name: str, e: Exception) -> HTTPException:
    logger.exception(f"[{name}] job failed: {e}")
    return HTTPException(status_code=500, detail=f"{name} failed: {e}")


@router.post("/cron/ingest-stories")
def ingest_stories(db: Session = Depends(get_db), sources: List[BaseSource] = Depends(get_sources)):
    """Fetch every source, then score and store new candidates. Blocks until complete."""
    try:
        return run_ingest_stories(db, sources)
    except Exception as e:
        raise _job_failed("ingest-stories", e)


@router.post("/cron/story-intelligence-ai")
def story_intelligence_ai(
    db: Session = Depends(get_db),
    generator: TextGenerator = Depends(get_text_generator),
    settings: Settings = Depends(get_settings),
):
    """Enrich fresh candidates with angles and verification; runs the daily weight update."""
    try:
        return run_story_ai_batch(db, generator, settings)
    except Exception as e:
        raise _job_failed("story-intelligence-ai", e)


@router.post("/cron/evaluate-outcomes")
def evaluate_outcomes(db: Session = Depends(get_db)):
    try:
        return run_evaluate_outcomes(db)
    except Exception as e:
        raise _job_failed("evaluate-outcomes", e)


@router.post("/alerts/telegram")
def dispatch_alerts(
    db: Session = Depends(get_db),
    messenger=Depends(get_messenger),
    settings: Settings = Depends(get_settings),
):
    try:
        return run_dispatch_alerts(db, messenger, settings)
    except Exception as e:
        raise _job_failed("alerts", e)
