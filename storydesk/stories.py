import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from storydesk.errors import StoryAlreadyClaimedError, StoryAlreadyResolvedError, StoryNotFoundError
from storydesk.models import AlertLevel, Outcome, StoryCandidate, StoryFeedback, TopicProfile
from storydesk.schemas import FeedbackCreate

logger = logging.getLogger(__name__)

FEED_WINDOW = timedelta(hours=24)
EXPORT_WINDOW = timedelta(days=30)

FEEDBACK_TAGS = {
    "GREAT_ANGLE",
    "TIMELY",
    "WOULD_GO_VIRAL",
    "AUDIENCE_MATCH",
    "UNDERREPORTED",
    "WRONG_AUDIENCE",
    "ALREADY_COVERED",
    "TIMING_OFF",
    "LOW_QUALITY_SOURCE",
    "NOT_NEWSWORTHY",
    "CLICKBAIT",
}


def get_story(db: Session, story_id: str) -> StoryCandidate:
    story = db.get(StoryCandidate, story_id)
    if story is None:
        raise StoryNotFoundError(story_id)
    return story


def list_stories(
    db: Session,
    alert_level: Optional[AlertLevel] = None,
    include_dismissed: bool = False,
    limit: int = 10,
    now: Optional[datetime] = None,
) -> List[StoryCandidate]:
    """The desk's live feed: last 24h of candidates, most relevant first."""
    now = now or datetime.now(timezone.utc)
    query = db.query(StoryCandidate).filter(StoryCandidate.first_seen_at >= now - FEED_WINDOW)
    if not include_dismissed:
        query = query.filter(StoryCandidate.dismissed == False)
    if alert_level:
        query = query.filter(StoryCandidate.alert_level == alert_level)
    return (
        query.order_by(StoryCandidate.relevance_score.desc(), StoryCandidate.first_seen_at.desc())
        .limit(limit)
        .all()
    )


def claim_story(db: Session, story_id: str, user_id: str, article_id: Optional[str] = None) -> StoryCandidate:
    story = get_story(db, story_id)
    if story.claimed_by_id:
        raise StoryAlreadyClaimedError(story_id)
    if story.outcome is not None:
        raise StoryAlreadyResolvedError(story_id)

    story.claimed_by_id = user_id
    story.claimed_at = datetime.now(timezone.utc)
    story.outcome = Outcome.CLAIMED
    if article_id:
        story.article_id = article_id
    db.commit()
    db.refresh(story)
    logger.info(f"[stories] {story_id} claimed by {user_id}")
    return story


def dismiss_story(db: Session, story_id: str) -> StoryCandidate:
    story = get_story(db, story_id)
    story.dismissed = True
    # a resolved outcome is terminal; dismissing only hides the story
    if story.outcome is None:
        story.outcome = Outcome.IGNORED
    db.commit()
    db.refresh(story)
    logger.info(f"[stories] {story_id} dismissed")
    return story


def add_feedback(db: Session, story_id: str, payload: FeedbackCreate) -> StoryFeedback:
    """Append one feedback row. Unknown tags are dropped rather than rejected."""
    get_story(db, story_id)
    feedback = StoryFeedback(
        story_id=story_id,
        user_id=payload.user_id,
        rating=payload.rating,
        tags=[t for t in payload.tags if t in FEEDBACK_TAGS],
        action=payload.action,
    )
    db.add(feedback)
    db.commit()
    db.refresh(feedback)
    return feedback


def feedback_summary(db: Session, story_id: str, user_id: Optional[str] = None) -> dict:
    get_story(db, story_id)
    rows = (
        db.query(StoryFeedback)
        .filter(StoryFeedback.story_id == story_id)
        .order_by(StoryFeedback.created_at.desc())
        .all()
    )

    tag_counts = {}
    for row in rows:
        for tag in row.tags or []:
            tag_counts[tag] = tag_counts.get(tag, 0) + 1

    mine = next((row for row in rows if user_id and row.user_id == user_id), None)
    return {
        "total_ratings": len(rows),
        "avg_rating": sum(r.rating for r in rows) / len(rows) if rows else None,
        "tag_counts": tag_counts,
        "user_rating": mine.rating if mine else None,
        "user_tags": mine.tags if mine else [],
    }


def learning_export(db: Session, now: Optional[datetime] = None) -> dict:
    """Thirty days of resolved stories, every topic profile, and recent feedback, for offline analysis."""
    since = (now or datetime.now(timezone.utc)) - EXPORT_WINDOW
    stories = (
        db.query(StoryCandidate)
        .filter(StoryCandidate.outcome.isnot(None), StoryCandidate.first_seen_at >= since)
        .order_by(StoryCandidate.first_seen_at.desc())
        .all()
    )
    profiles = db.query(TopicProfile).order_by(TopicProfile.article_count.desc()).all()
    feedback = (
        db.query(StoryFeedback)
        .filter(StoryFeedback.created_at >= since)
        .order_by(StoryFeedback.created_at.desc())
        .all()
    )
    return {"stories": stories, "topic_profiles": profiles, "feedback": feedback}
