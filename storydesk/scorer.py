"""
Relevance & velocity scoring for story candidates.

Everything here is a pure function of its arguments: topic profiles and
exemplar fingerprints are passed in as snapshots, and "now" is a parameter,
so the same inputs always give the same StoryScore.
"""
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from storydesk.models import AlertLevel, TopicProfile
from storydesk.schemas import DeepFingerprint, DiscussionSignals, SourceRef, TrendSignals

# ---------------------------------------------------------------------------
# Relevance components: maximum points each contributes (sum capped at 100)
# ---------------------------------------------------------------------------

CATEGORY_POINTS = 30        # best category's matched weight, saturating at CATEGORY_SATURATION
CATEGORY_SATURATION = 5.0
COVERAGE_POINTS = 25        # distinct matched keywords across all profiles
COVERAGE_SATURATION = 3
SOURCE_POINTS = 15          # corroborating sources, saturating at 3
SOURCE_SATURATION = 3
RECENCY_POINTS = 15         # linear decay to zero over RECENCY_WINDOW_HOURS
RECENCY_WINDOW_HOURS = 12
EXEMPLAR_MAX_BONUS = 15

# ---------------------------------------------------------------------------
# Velocity: blend weights for discussion metrics (sum to 1.0)
# ---------------------------------------------------------------------------

ENGAGEMENT_WEIGHT = 0.35    # log-scaled score, saturating at ENGAGEMENT_SATURATION
ENGAGEMENT_SATURATION = 5000
COMMENTS_WEIGHT = 0.20      # log-scaled comment count, saturating at COMMENTS_SATURATION
COMMENTS_SATURATION = 1000
DISCUSSION_WEIGHT = 0.25    # upvotes per minute, saturating at DISCUSSION_SATURATION
DISCUSSION_SATURATION = 10.0
FRESHNESS_WEIGHT = 0.20     # linear over RECENCY_WINDOW_HOURS

VELOCITY_BASELINE = 5       # no platform signals at all
TREND_VELOCITY_MILLIONS = 70
TREND_VELOCITY_THOUSANDS = 50
TREND_VELOCITY_OTHER = 30
TREND_VELOCITY_FLAG_ONLY = 35

# ---------------------------------------------------------------------------
# Alert tiers on relevance + velocity (0-200)
# ---------------------------------------------------------------------------

TELEGRAM_THRESHOLD = 120
QUEUE_THRESHOLD = 60


@dataclass(frozen=True)
class ProfileWeights:
    """Read-only snapshot of a TopicProfile, as the scorer sees it."""
    id: Optional[str]
    category: str
    keyword_weights: Dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_model(cls, profile: TopicProfile) -> "ProfileWeights":
        return cls(id=profile.id, category=profile.category, keyword_weights=dict(profile.keyword_weights or {}))


@dataclass(frozen=True)
class StoryScore:
    relevance_score: int
    velocity_score: int
    matched_category: Optional[str]
    topic_cluster_id: Optional[str]
    alert_level: AlertLevel


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _linear_decay(age_hours: float, window_hours: float) -> float:
    return clamp(1 - age_hours / window_hours, 0.0, 1.0)


def matched_keywords(headline: str, weights: Dict[str, float]) -> Dict[str, float]:
    """Keywords that occur (case-insensitive substring) in the headline, with their weights."""
    text = headline.lower()
    return {kw: w for kw, w in weights.items() if kw and kw.lower() in text}


# ---------------------------------------------------------------------------
# Relevance
# ---------------------------------------------------------------------------

def _category_score(headline: str, profiles: Sequence[ProfileWeights]) -> tuple:
    best_weight = 0.0
    best: Optional[ProfileWeights] = None
    for profile in profiles:
        weight = sum(matched_keywords(headline, profile.keyword_weights).values())
        if weight > best_weight:
            best_weight = weight
            best = profile

    if best is None:
        return 0, None, None
    points = round(min(best_weight / CATEGORY_SATURATION, 1.0) * CATEGORY_POINTS)
    return points, best.category, best.id


def _coverage_score(headline: str, profiles: Sequence[ProfileWeights]) -> int:
    matched = set()
    for profile in profiles:
        matched.update(kw.lower() for kw in matched_keywords(headline, profile.keyword_weights))
    return round(min(len(matched) / COVERAGE_SATURATION, 1.0) * COVERAGE_POINTS)


def _source_score(sources: Sequence[SourceRef]) -> int:
    return round(min(len(sources), SOURCE_SATURATION) / SOURCE_SATURATION * SOURCE_POINTS)


def _recency_score(published_at: Optional[datetime], now: datetime) -> int:
    if published_at is None:
        return RECENCY_POINTS  # treat as just seen
    if published_at.tzinfo is None:
        published_at = published_at.replace(tzinfo=timezone.utc)
    age_hours = max(0.0, (now - published_at).total_seconds() / 3600)
    return round(_linear_decay(age_hours, RECENCY_WINDOW_HOURS) * RECENCY_POINTS)


def exemplar_bonus(
    headline: str,
    matched_category: Optional[str],
    exemplars: Sequence[DeepFingerprint],
) -> float:
    """Best similarity bonus over analyzed exemplar fingerprints, capped at EXEMPLAR_MAX_BONUS."""
    text = headline.lower()
    best = 0.0
    for fp in exemplars:
        bonus = 0.0
        if matched_category and matched_category.lower() in {c.lower() for c in fp.similar_to_categories}:
            bonus += 3
        topic_hits = sum(1 for topic in fp.topics if topic and topic.lower() in text)
        bonus += min(topic_hits * 2, 8)
        keyword_bonus = sum(w * 0.2 for kw, w in fp.keywords.items() if kw and kw.lower() in text)
        bonus += min(keyword_bonus, 4)
        best = max(best, bonus)
    return min(best, EXEMPLAR_MAX_BONUS)


# ---------------------------------------------------------------------------
# Velocity
# ---------------------------------------------------------------------------

def _log_ratio(value: float, saturation: float) -> float:
    if value <= 0:
        return 0.0
    return min(math.log10(1 + value) / math.log10(1 + saturation), 1.0)


def _discussion_velocity(signals: DiscussionSignals) -> float:
    # measured upvotes/minute when available, else average rate since posting
    per_minute = signals.velocity
    if per_minute <= 0 and signals.age_minutes is not None:
        per_minute = signals.score / max(signals.age_minutes, 1.0)
    freshness = 0.5 if signals.age_minutes is None else _linear_decay(signals.age_minutes / 60, RECENCY_WINDOW_HOURS)

    raw = (
        ENGAGEMENT_WEIGHT * _log_ratio(signals.score, ENGAGEMENT_SATURATION)
        + COMMENTS_WEIGHT * _log_ratio(signals.num_comments, COMMENTS_SATURATION)
        + DISCUSSION_WEIGHT * min(max(per_minute, 0.0) / DISCUSSION_SATURATION, 1.0)
        + FRESHNESS_WEIGHT * freshness
    )
    return raw * 100


def _trend_velocity(signals: TrendSignals) -> float:
    volume = (signals.traffic_volume or "").upper()
    if "M" in volume:
        return TREND_VELOCITY_MILLIONS
    if "K" in volume:
        return TREND_VELOCITY_THOUSANDS
    if any(ch.isdigit() for ch in volume):
        return TREND_VELOCITY_OTHER
    if signals.trending:
        return TREND_VELOCITY_FLAG_ONLY
    return VELOCITY_BASELINE


def velocity_score(signals) -> int:
    """0-100 momentum score from whichever platform-signal variant the source supplied."""
    if isinstance(signals, DiscussionSignals):
        value = _discussion_velocity(signals)
    elif isinstance(signals, TrendSignals):
        value = _trend_velocity(signals)
    else:
        value = VELOCITY_BASELINE
    return int(round(clamp(value, 0, 100)))


# ---------------------------------------------------------------------------
# Alert tier
# ---------------------------------------------------------------------------

def alert_level_for(relevance: int, velocity: int) -> AlertLevel:
    total = relevance + velocity
    if total >= TELEGRAM_THRESHOLD:
        return AlertLevel.TELEGRAM
    if total >= QUEUE_THRESHOLD:
        return AlertLevel.QUEUE
    return AlertLevel.NONE


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def score_story(
    headline: str,
    sources: Sequence[SourceRef],
    platform_signals,
    profiles: Sequence[ProfileWeights],
    exemplars: Sequence[DeepFingerprint] = (),
    published_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> StoryScore:
    """
    Score a candidate headline against the current topic profiles.

    Args:
        headline: candidate headline text
        sources: corroborating sources for the candidate
        platform_signals: DiscussionSignals, TrendSignals, or None
        profiles: topic-profile snapshots (see ProfileWeights.from_model)
        exemplars: fingerprints of analyzed exemplars
        published_at: when the source published the item, if known
        now: reference time (defaults to the current UTC time)

    Returns:
        StoryScore with both scores in [0, 100] and the derived alert tier
    """
    now = now or datetime.now(timezone.utc)

    category_points, category, cluster_id = _category_score(headline, profiles)
    relevance = (
        category_points
        + _coverage_score(headline, profiles)
        + _source_score(sources)
        + _recency_score(published_at, now)
        + exemplar_bonus(headline, category, exemplars)
    )
    relevance = int(round(clamp(relevance, 0, 100)))
    velocity = velocity_score(platform_signals)

    return StoryScore(
        relevance_score=relevance,
        velocity_score=velocity,
        matched_category=category,
        topic_cluster_id=cluster_id,
        alert_level=alert_level_for(relevance, velocity),
    )


def load_profile_snapshots(profiles: List[TopicProfile]) -> List[ProfileWeights]:
    # stable order so ties between categories resolve the same way every run
    return [ProfileWeights.from_model(p) for p in sorted(profiles, key=lambda p: p.category)]
