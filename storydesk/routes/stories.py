import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from storydesk import stories
from storydesk.database import get_db
from storydesk.dependencies import require_api_key
from storydesk.errors import StoryAlreadyClaimedError, StoryAlreadyResolvedError, StoryNotFoundError
from storydesk.models import AlertLevel
from storydesk.schemas import (
    ClaimRequest,
    FeedbackCreate,
    FeedbackResponse,
    FeedbackSummary,
    LearningExport,
    StoryResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/story-intelligence", dependencies=[Depends(require_api_key)])


def _not_found(story_id: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"Story {story_id} not found")


@router.get("", response_model=List[StoryResponse])
def story_feed(
    alert_level: Optional[AlertLevel] = None,
    include_dismissed: bool = False,
    limit: int = Query(default=10, ge=1, le=100),
    db: Session = Depends(get_db),
):
    """Candidates first seen in the last 24 hours, most relevant first."""
    result = stories.list_stories(db, alert_level=alert_level, include_dismissed=include_dismissed, limit=limit)
    logger.info(f"[/story-intelligence] Returning {len(result)} stories")
    return result


@router.get("/feedback", response_model=LearningExport)
def learning_export(db: Session = Depends(get_db)):
    """Thirty-day export of resolved stories, topic profiles and feedback."""
    return stories.learning_export(db)


@router.post("/{story_id}/claim", response_model=StoryResponse)
def claim(story_id: str, body: ClaimRequest, db: Session = Depends(get_db)):
    try:
        return stories.claim_story(db, story_id, body.user_id, body.article_id)
    except StoryNotFoundError:
        raise _not_found(story_id)
    except StoryAlreadyClaimedError:
        raise HTTPException(status_code=409, detail="Story already claimed")
    except StoryAlreadyResolvedError:
        raise HTTPException(status_code=409, detail="Story already resolved")


@router.post("/{story_id}/dismiss", response_model=StoryResponse)
def dismiss(story_id: str, db: Session = Depends(get_db)):
    try:
        return stories.dismiss_story(db, story_id)
    except StoryNotFoundError:
        raise _not_found(story_id)


@router.post("/{story_id}/feedback", response_model=FeedbackResponse, status_code=201)
def submit_feedback(story_id: str, body: FeedbackCreate, db: Session = Depends(get_db)):
    try:
        return stories.add_feedback(db, story_id, body)
    except StoryNotFoundError:
        raise _not_found(story_id)


@router.get("/{story_id}/feedback", response_model=FeedbackSummary)
def get_feedback(story_id: str, user_id: Optional[str] = None, db: Session = Depends(get_db)):
    try:
        return stories.feedback_summary(db, story_id, user_id=user_id)
    except StoryNotFoundError:
        raise _not_found(story_id)
