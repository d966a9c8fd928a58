from datetime import datetime
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from storydesk.models import AlertLevel, ExemplarStatus, FeedbackAction, Outcome, VerificationStatus


# ---------------------------------------------------------------------------
# Source collaborator shapes
# ---------------------------------------------------------------------------

class SourceRef(BaseModel):
    name: str
    url: str


class DiscussionSignals(BaseModel):
    """Community metrics from a discussion site (Reddit)."""
    kind: Literal["discussion"] = "discussion"
    score: int = 0
    num_comments: int = 0
    velocity: float = 0.0  # upvotes per minute since the previous snapshot; 0 when unknown
    age_minutes: Optional[float] = None
    subreddit: Optional[str] = None


class TrendSignals(BaseModel):
    """Search-trend or feed signals that carry no engagement count."""
    kind: Literal["trend"] = "trend"
    trending: bool = False
    traffic_volume: Optional[str] = None  # e.g. "500K+", "2M+"


PlatformSignals = Annotated[Union[DiscussionSignals, TrendSignals], Field(discriminator="kind")]


class SourceItem(BaseModel):
    """Uniform item returned by every source collaborator."""
    headline: str
    source_url: str
    sources: List[SourceRef] = []
    platform_signals: Optional[PlatformSignals] = None
    published_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# AI collaborator shapes
# ---------------------------------------------------------------------------

class FeedbackContext(BaseModel):
    high_performer_headlines: List[str] = []
    negative_tags: List[str] = []


class AIResult(BaseModel):
    suggested_angles: List[str]
    verification_status: VerificationStatus
    verification_notes: str = ""


class QuickPreview(BaseModel):
    category: str
    topics: List[str] = []
    quick_summary: str = ""


class DeepFingerprint(BaseModel):
    topics: List[str] = []
    keywords: Dict[str, float] = {}  # keyword -> weight in [1, 5]
    tone: str = ""
    headline_style: str = ""
    structure_notes: str = ""
    audience_alignment: int = 50     # 0-100
    strength_signals: List[str] = []
    similar_to_categories: List[str] = []


# ---------------------------------------------------------------------------
# API request bodies
# ---------------------------------------------------------------------------

class ClaimRequest(BaseModel):
    user_id: str
    article_id: Optional[str] = None


class FeedbackCreate(BaseModel):
    rating: int = Field(ge=1, le=5)
    tags: List[str] = []
    action: FeedbackAction
    user_id: Optional[str] = None


class ExemplarSubmit(BaseModel):
    url: str


# ---------------------------------------------------------------------------
# API responses
# ---------------------------------------------------------------------------

class StoryResponse(BaseModel):
    id: str
    headline: str
    source_url: str
    sources: List[SourceRef]
    relevance_score: int
    velocity_score: int
    category: Optional[str] = None
    alert_level: AlertLevel
    suggested_angles: Optional[List[str]] = None
    verification_status: VerificationStatus
    verification_notes: Optional[str] = None
    platform_signals: Optional[dict] = None
    first_seen_at: datetime
    dismissed: bool
    claimed_by_id: Optional[str] = None
    article_id: Optional[str] = None
    outcome: Optional[Outcome] = None
    outcome_pageviews: Optional[int] = None
    alert_sent_at: Optional[datetime] = None

    # Allows Pydantic to read data directly from SQLAlchemy model instances
    model_config = ConfigDict(from_attributes=True)


class TopicProfileResponse(BaseModel):
    category: str
    keyword_weights: Dict[str, float]
    avg_engagement: float
    article_count: int
    top_performers: List[dict]
    last_updated: datetime

    model_config = ConfigDict(from_attributes=True)


class FeedbackResponse(BaseModel):
    story_id: str
    rating: int
    tags: List[str]
    action: FeedbackAction
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ExemplarResponse(BaseModel):
    id: str
    url: str
    title: Optional[str] = None
    source: Optional[str] = None
    status: ExemplarStatus
    word_count: Optional[int] = None
    category: Optional[str] = None
    detected_topics: Optional[List[str]] = None
    quick_summary: Optional[str] = None
    fingerprint: Optional[dict] = None
    error: Optional[str] = None
    created_at: datetime
    analyzed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class LearningExport(BaseModel):
    stories: List[StoryResponse]
    topic_profiles: List[TopicProfileResponse]
    feedback: List[FeedbackResponse]


class ExemplarListResponse(BaseModel):
    exemplars: List[ExemplarResponse]
    total: int
    page: int
    pages: int


class FeedbackSummary(BaseModel):
    total_ratings: int
    avg_rating: Optional[float] = None
    tag_counts: Dict[str, int]
    user_rating: Optional[int] = None
    user_tags: List[str] = []


class SystemAlertResponse(BaseModel):
    type: str
    message: str
    severity: str
    is_active: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)
