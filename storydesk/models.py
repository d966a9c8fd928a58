import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Enum, Float, ForeignKey, Integer, String, Text

from storydesk.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class AlertLevel(str, enum.Enum):
    NONE = "NONE"
    QUEUE = "QUEUE"
    TELEGRAM = "TELEGRAM"


class VerificationStatus(str, enum.Enum):
    UNVERIFIED = "UNVERIFIED"
    PLAUSIBLE = "PLAUSIBLE"
    VERIFIED = "VERIFIED"
    DISPUTED = "DISPUTED"
    FLAGGED = "FLAGGED"


class Outcome(str, enum.Enum):
    CLAIMED = "CLAIMED"
    HIGH_PERFORMER = "HIGH_PERFORMER"
    PUBLISHED = "PUBLISHED"
    IGNORED = "IGNORED"


class ExemplarStatus(str, enum.Enum):
    PENDING = "PENDING"
    PREVIEW_READY = "PREVIEW_READY"
    ANALYZED = "ANALYZED"
    FAILED = "FAILED"


class FeedbackAction(str, enum.Enum):
    QUICK_RATE = "QUICK_RATE"
    CLAIM_FEEDBACK = "CLAIM_FEEDBACK"
    DISMISS_FEEDBACK = "DISMISS_FEEDBACK"


# ---------------------------------------------------------------------------
# Pipeline tables
# ---------------------------------------------------------------------------

class StoryCandidate(Base):
    __tablename__ = "story_candidates"

    id = Column(String, primary_key=True, default=new_id)

    # --- Identity ---
    # source_url is the dedup key; the unique constraint is what closes the ingest race
    source_url = Column(String, nullable=False, unique=True, index=True)
    headline = Column(String, nullable=False)
    sources = Column(JSON, nullable=False, default=list)  # [{"name": ..., "url": ...}]

    # --- Scoring (populated at ingestion time) ---
    relevance_score = Column(Integer, nullable=False, default=0)  # 0-100
    velocity_score = Column(Integer, nullable=False, default=0)   # 0-100
    category = Column(String, nullable=True)
    topic_cluster_id = Column(String, nullable=True)              # id of the matched TopicProfile
    alert_level = Column(Enum(AlertLevel, native_enum=False), nullable=False, default=AlertLevel.NONE)

    # --- AI enrichment (null until the batch processor has handled the story) ---
    suggested_angles = Column(JSON(none_as_null=True), nullable=True)
    verification_status = Column(
        Enum(VerificationStatus, native_enum=False), nullable=False, default=VerificationStatus.UNVERIFIED
    )
    verification_notes = Column(Text, nullable=True)

    platform_signals = Column(JSON(none_as_null=True), nullable=True)  # dump of a DiscussionSignals / TrendSignals variant

    # --- Lifecycle ---
    first_seen_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    last_updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    dismissed = Column(Boolean, nullable=False, default=False)
    claimed_by_id = Column(String, nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    article_id = Column(String, ForeignKey("articles.id"), nullable=True)
    outcome = Column(Enum(Outcome, native_enum=False), nullable=True)
    outcome_pageviews = Column(Integer, nullable=True)
    alert_sent_at = Column(DateTime(timezone=True), nullable=True)  # set once; never resent


class TopicProfile(Base):
    __tablename__ = "topic_profiles"

    id = Column(String, primary_key=True, default=new_id)
    category = Column(String, nullable=False, unique=True)
    keyword_weights = Column(JSON, nullable=False, default=dict)  # keyword -> weight in [0.5, 10]
    avg_engagement = Column(Float, nullable=False, default=0.0)
    article_count = Column(Integer, nullable=False, default=0)
    top_performers = Column(JSON, nullable=False, default=list)   # [{"id", "headline", "metric"}]
    last_updated = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class StoryFeedback(Base):
    __tablename__ = "story_feedback"

    id = Column(String, primary_key=True, default=new_id)
    story_id = Column(String, ForeignKey("story_candidates.id"), nullable=False, index=True)
    user_id = Column(String, nullable=True)
    rating = Column(Integer, nullable=False)  # 1-5
    tags = Column(JSON, nullable=False, default=list)
    action = Column(Enum(FeedbackAction, native_enum=False), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)


class ArticleExemplar(Base):
    __tablename__ = "article_exemplars"

    id = Column(String, primary_key=True, default=new_id)
    url = Column(String, nullable=False, unique=True)
    title = Column(String, nullable=True)
    source = Column(String, nullable=True)  # hostname without www.
    status = Column(Enum(ExemplarStatus, native_enum=False), nullable=False, default=ExemplarStatus.PENDING)
    raw_content = Column(Text, nullable=True)
    word_count = Column(Integer, nullable=True)

    # --- Quick preview ---
    category = Column(String, nullable=True)
    detected_topics = Column(JSON(none_as_null=True), nullable=True)
    quick_summary = Column(Text, nullable=True)

    # --- Deep analysis ---
    fingerprint = Column(JSON(none_as_null=True), nullable=True)
    error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    analyzed_at = Column(DateTime(timezone=True), nullable=True)


class SystemAlert(Base):
    __tablename__ = "system_alerts"

    id = Column(String, primary_key=True, default=new_id)
    type = Column(String, nullable=False, unique=True)  # one row per alert type
    message = Column(Text, nullable=False)
    severity = Column(String, nullable=False, default="error")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    resolved_at = Column(DateTime(timezone=True), nullable=True)


# ---------------------------------------------------------------------------
# External contract: owned by the article editor, read here only
# ---------------------------------------------------------------------------

class Article(Base):
    __tablename__ = "articles"

    id = Column(String, primary_key=True, default=new_id)
    headline = Column(String, nullable=False)
    status = Column(String, nullable=False, default="DRAFT")  # e.g. "DRAFT", "PUBLISHED"
    published_at = Column(DateTime(timezone=True), nullable=True)
    total_pageviews = Column(Integer, nullable=False, default=0)
