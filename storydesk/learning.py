"""
Topic weight learning.

Keyword weights on TopicProfile rows move in three ways:
  - the daily reinforcement pass (update_topic_weights), driven by story
    outcomes and editor feedback
  - exemplar calibration when a reference article finishes deep analysis
    (apply_exemplar_boost) and its reversal on delete (rollback_exemplar_boost)
  - the one-off seed from historical article performance (seed_topic_profiles)

Every weight stays within [MIN_WEIGHT, MAX_WEIGHT] after any of them.
"""
import argparse
import logging
import re
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from storydesk.models import Article, Outcome, StoryCandidate, StoryFeedback, TopicProfile
from storydesk.schemas import DeepFingerprint

logger = logging.getLogger(__name__)

MIN_WEIGHT = 0.5
MAX_WEIGHT = 10.0

FEEDBACK_WINDOW = timedelta(days=30)
HIGH_PERFORMER_DELTA = 0.3
GOOD_RATING_DELTA = 0.1      # mean rating >= GOOD_RATING
POOR_RATING_DELTA = -0.1     # mean rating <= POOR_RATING
GOOD_RATING = 4.0
POOR_RATING = 2.0

EXEMPLAR_NEW_KEYWORD_WEIGHT = 1.5
EXEMPLAR_BOOST_FACTOR = 0.5
EXEMPLAR_ROLLBACK = 0.5

SEED_CATEGORIES: Dict[str, List[str]] = {
    "Immigration": ["border", "immigration", "migrant", "illegal", "deportation", "asylum", "wall", "cbp", "ice", "caravan"],
    "Second Amendment": ["gun", "firearm", "amendment", "shooting", "nra", "concealed", "carry", "rifle", "atf", "weapons"],
    "Election Integrity": ["election", "ballot", "voting", "voter", "fraud", "recount", "polling", "electoral", "vote", "registration"],
    "Economy": ["economy", "inflation", "jobs", "unemployment", "gdp", "market", "stock", "debt", "deficit", "tariff", "trade"],
    "National Security": ["military", "defense", "china", "russia", "nato", "pentagon", "intelligence", "threat", "security", "war"],
    "Culture War": ["woke", "trans", "gender", "dei", "cancel", "censorship", "speech", "religious", "liberty", "values"],
    "Crime": ["crime", "murder", "homicide", "arrest", "police", "prosecutor", "prison", "fbi", "doj", "cartel"],
    "Government Overreach": ["government", "regulation", "mandate", "federal", "irs", "bureaucracy", "executive", "congress", "senate", "supreme"],
    "Media": ["media", "cnn", "msnbc", "mainstream", "bias", "journalist", "coverage", "narrative", "misinformation"],
    "Energy": ["energy", "oil", "gas", "pipeline", "drill", "green", "climate", "electric", "nuclear", "solar"],
}
SEED_TOP_PERFORMERS = 5
COLD_START_WEIGHT = 1.0  # used for every keyword when there is no article history at all


def clamp_weight(value: float) -> float:
    return round(max(MIN_WEIGHT, min(MAX_WEIGHT, value)), 4)


def normalize_keyword(keyword: str) -> str:
    """'Border-Wall!' -> 'borderwall'. Lower-case, keep only a-z, 0-9 and spaces."""
    return re.sub(r"[^a-z0-9 ]", "", keyword.lower())


# ---------------------------------------------------------------------------
# Daily reinforcement
# ---------------------------------------------------------------------------

def _category_delta(has_high_performer: bool, ratings: List[int]) -> float:
    if has_high_performer:
        return HIGH_PERFORMER_DELTA
    if not ratings:
        return 0.0
    mean = sum(ratings) / len(ratings)
    if mean >= GOOD_RATING:
        return GOOD_RATING_DELTA
    if mean <= POOR_RATING:
        return POOR_RATING_DELTA
    return 0.0


def update_topic_weights(db: Session, now: Optional[datetime] = None) -> int:
    """
    Reinforce topic profiles from outcomes and recent feedback.

    One delta per category, applied to every keyword of that category's
    profile. All profile writes are committed together; on failure nothing
    is written and the exception propagates.

    Returns:
        number of profiles whose weights were changed
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - FEEDBACK_WINDOW

    high_performer_categories = {
        category
        for (category,) in db.query(StoryCandidate.category)
        .filter(StoryCandidate.category.isnot(None), StoryCandidate.outcome == Outcome.HIGH_PERFORMER)
        .distinct()
    }

    ratings: Dict[str, List[int]] = defaultdict(list)
    rows = (
        db.query(StoryCandidate.category, StoryFeedback.rating)
        .join(StoryFeedback, StoryFeedback.story_id == StoryCandidate.id)
        .filter(StoryCandidate.category.isnot(None), StoryFeedback.created_at >= cutoff)
        .all()
    )
    for category, rating in rows:
        ratings[category].append(rating)

    categories = high_performer_categories | set(ratings)
    if not categories:
        logger.info("[learning] No outcome or feedback signal; weights unchanged")
        return 0

    updated = 0
    try:
        profiles = db.query(TopicProfile).filter(TopicProfile.category.in_(categories)).all()
        for profile in profiles:
            delta = _category_delta(profile.category in high_performer_categories, ratings.get(profile.category, []))
            if delta == 0:
                continue
            # assign a new dict so the JSON column is flagged dirty
            profile.keyword_weights = {
                kw: clamp_weight(weight + delta) for kw, weight in (profile.keyword_weights or {}).items()
            }
            profile.last_updated = now
            updated += 1
            logger.info(f"[learning] {profile.category}: delta {delta:+.1f}")
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"[learning] Updated {updated} topic profiles")
    return updated


# ---------------------------------------------------------------------------
# Exemplar calibration
# ---------------------------------------------------------------------------

def _normalized_keywords(fingerprint: DeepFingerprint) -> Dict[str, float]:
    keywords: Dict[str, float] = {}
    for kw, weight in fingerprint.keywords.items():
        normalized = normalize_keyword(kw)
        if normalized:
            keywords[normalized] = max(keywords.get(normalized, 0.0), weight)
    return keywords


def _profiles_for(db: Session, categories: List[str]) -> List[TopicProfile]:
    # fingerprints use the lower-case exemplar vocabulary; profiles are title case
    wanted = {c.lower() for c in categories if c}
    if not wanted:
        return []
    return db.query(TopicProfile).filter(func.lower(TopicProfile.category).in_(wanted)).all()


def apply_exemplar_boost(db: Session, fingerprint: DeepFingerprint) -> int:
    """
    Seed or raise the fingerprint's keywords on every profile it is similar to.
    New keywords start at 1.5; existing ones gain half the fingerprint weight.
    Returns the number of profiles touched. Commits.
    """
    keywords = _normalized_keywords(fingerprint)
    if not keywords:
        return 0

    profiles = _profiles_for(db, fingerprint.similar_to_categories)
    for profile in profiles:
        weights = dict(profile.keyword_weights or {})
        for kw, delta in keywords.items():
            if kw in weights:
                weights[kw] = clamp_weight(weights[kw] + delta * EXEMPLAR_BOOST_FACTOR)
            else:
                weights[kw] = clamp_weight(EXEMPLAR_NEW_KEYWORD_WEIGHT)
        profile.keyword_weights = weights
    db.commit()

    logger.info(f"[learning] Exemplar boost applied to {len(profiles)} profiles ({len(keywords)} keywords)")
    return len(profiles)


def rollback_exemplar_boost(db: Session, fingerprint: DeepFingerprint) -> int:
    """
    Undo an exemplar's calibration by subtracting a flat 0.5 from each of its
    keywords still present on the similar profiles. This is not the exact
    inverse of apply_exemplar_boost. Does not commit; the caller deletes the
    exemplar in the same transaction.
    """
    keywords = _normalized_keywords(fingerprint)
    if not keywords:
        return 0

    profiles = _profiles_for(db, fingerprint.similar_to_categories)
    for profile in profiles:
        weights = dict(profile.keyword_weights or {})
        for kw in keywords:
            if kw in weights:
                weights[kw] = clamp_weight(weights[kw] - EXEMPLAR_ROLLBACK)
        profile.keyword_weights = weights

    logger.info(f"[learning] Exemplar rollback applied to {len(profiles)} profiles")
    return len(profiles)


# ---------------------------------------------------------------------------
# Seeding from article history
# ---------------------------------------------------------------------------

def _contains(headline: str, keyword: str) -> bool:
    return keyword.lower() in headline.lower()


def seed_topic_profiles(db: Session, now: Optional[datetime] = None) -> int:
    """
    Build (or rebuild) one TopicProfile per seed category from published
    articles with pageviews. Keyword weight is 1 + 4 * (keyword avg pageviews
    / best article's pageviews); keywords no article matched get the floor.
    Returns the number of profiles upserted.
    """
    now = now or datetime.now(timezone.utc)
    articles = (
        db.query(Article)
        .filter(Article.status == "PUBLISHED", Article.total_pageviews > 0)
        .order_by(Article.total_pageviews.desc())
        .all()
    )
    global_max = articles[0].total_pageviews if articles else 0
    logger.info(f"[learning] Seeding from {len(articles)} published articles (max pageviews {global_max})")

    upserted = 0
    for category, keywords in SEED_CATEGORIES.items():
        matching = [a for a in articles if any(_contains(a.headline, kw) for kw in keywords)]

        weights: Dict[str, float] = {}
        for kw in keywords:
            if not global_max:
                weights[kw] = COLD_START_WEIGHT
                continue
            kw_articles = [a for a in matching if _contains(a.headline, kw)]
            if not kw_articles:
                weights[kw] = MIN_WEIGHT
                continue
            kw_avg = sum(a.total_pageviews for a in kw_articles) / len(kw_articles)
            weights[kw] = clamp_weight(1 + 4 * min(kw_avg / global_max, 1.0))

        avg_engagement = sum(a.total_pageviews for a in matching) / len(matching) if matching else 0.0
        top_performers = [
            {"id": a.id, "headline": a.headline, "metric": a.total_pageviews}
            for a in matching[:SEED_TOP_PERFORMERS]
        ]

        profile = db.query(TopicProfile).filter(TopicProfile.category == category).first()
        if profile is None:
            profile = TopicProfile(category=category)
            db.add(profile)
        profile.keyword_weights = weights
        profile.avg_engagement = avg_engagement
        profile.article_count = len(matching)
        profile.top_performers = top_performers
        profile.last_updated = now
        upserted += 1

        top = sorted(weights.items(), key=lambda kv: kv[1], reverse=True)[:3]
        logger.info(
            f"[learning] [{category}] articles={len(matching)} avg_pageviews={round(avg_engagement)} "
            f"top_keywords={', '.join(f'{k}={w}' for k, w in top)}"
        )

    db.commit()
    logger.info(f"[learning] Seed complete: {upserted}/{len(SEED_CATEGORIES)} categories")
    return upserted


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="storydesk.learning", description="Topic profile maintenance")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("seed", help="Build topic profiles from published article history")
    sub.add_parser("update", help="Run the outcome/feedback reinforcement pass now")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    from storydesk.database import Base, SessionLocal, engine

    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        if args.command == "seed":
            seed_topic_profiles(db)
        else:
            update_topic_weights(db)
    finally:
        db.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
