import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from storydesk.models import Article, Outcome, StoryCandidate

logger = logging.getLogger(__name__)

PUBLISHED_SETTLE_TIME = timedelta(hours=48)   # pageviews are judged this long after publish
IGNORE_AFTER = timedelta(hours=24)
HIGH_PERFORMER_MULTIPLIER = 1.5


def average_pageviews(db: Session) -> float:
    """Mean pageviews over published articles. AVG comes back as Decimal on some backends."""
    avg = db.query(func.avg(Article.total_pageviews)).filter(Article.status == "PUBLISHED").scalar()
    return float(avg) if avg is not None else 0.0


def run_evaluate_outcomes(db: Session, now: Optional[datetime] = None) -> dict:
    """
    Close the loop on candidates:
      1. CLAIMED stories whose article was published 48h+ ago become
         HIGH_PERFORMER or PUBLISHED, with a pageview snapshot.
      2. Untouched candidates older than 24h become IGNORED.

    Terminal outcomes are never revisited, so re-running is a no-op.
    """
    now = now or datetime.now(timezone.utc)
    settle_cutoff = now - PUBLISHED_SETTLE_TIME
    ignore_cutoff = now - IGNORE_AFTER

    avg_pageviews = average_pageviews(db)
    threshold = avg_pageviews * HIGH_PERFORMER_MULTIPLIER

    rows = (
        db.query(StoryCandidate, Article)
        .join(Article, StoryCandidate.article_id == Article.id)
        .filter(
            StoryCandidate.outcome == Outcome.CLAIMED,
            Article.status == "PUBLISHED",
            Article.published_at.isnot(None),
            Article.published_at <= settle_cutoff,
        )
        .all()
    )

    high_performers = 0
    published = 0
    for story, article in rows:
        pageviews = article.total_pageviews or 0
        if avg_pageviews > 0 and pageviews > threshold:
            story.outcome = Outcome.HIGH_PERFORMER
            high_performers += 1
        else:
            story.outcome = Outcome.PUBLISHED
            published += 1
        story.outcome_pageviews = pageviews
    db.commit()

    ignored = (
        db.query(StoryCandidate)
        .filter(
            StoryCandidate.outcome.is_(None),
            StoryCandidate.claimed_by_id.is_(None),
            StoryCandidate.dismissed == False,
            StoryCandidate.first_seen_at <= ignore_cutoff,
        )
        .update({"outcome": Outcome.IGNORED}, synchronize_session=False)
    )
    db.commit()

    evaluated = high_performers + published
    logger.info(
        f"[outcomes] evaluated={evaluated} high_performers={high_performers} published={published} ignored={ignored}"
    )
    return {
        "evaluated": evaluated,
        "high_performers": high_performers,
        "published": published,
        "ignored": ignored,
        "avg_pageviews": round(avg_pageviews),
        "high_performer_threshold": round(threshold),
    }
