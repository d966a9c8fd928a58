"""
Shared fixtures: an in-memory SQLite database per test and small factories
for inserting rows directly, bypassing the pipeline.
"""
from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from storydesk.config import Settings
from storydesk.database import Base
from storydesk.models import (
    AlertLevel,
    Article,
    ArticleExemplar,
    StoryCandidate,
    StoryFeedback,
    TopicProfile,
    VerificationStatus,
)

# Fixed reference time so windows (24h, 48h, 30d) are deterministic
NOW = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        api_key="test-key",
        openai_api_key="sk-test",
        telegram_bot_token="123:abc",
        telegram_chat_id="42",
        newsroom_base_url="https://newsroom.example.com",
        ai_max_workers=2,
    )


@pytest.fixture
def make_story(db):
    """Insert a StoryCandidate with sensible defaults, overridable via kwargs."""
    counter = {"n": 0}

    def _make(**kwargs) -> StoryCandidate:
        counter["n"] += 1
        defaults = {
            "source_url": f"https://example.com/story-{counter['n']}",
            "headline": f"Test headline {counter['n']}",
            "sources": [{"name": "Example", "url": f"https://example.com/story-{counter['n']}"}],
            "relevance_score": 50,
            "velocity_score": 20,
            "alert_level": AlertLevel.QUEUE,
            "verification_status": VerificationStatus.UNVERIFIED,
            "first_seen_at": NOW,
            "last_updated_at": NOW,
        }
        defaults.update(kwargs)
        story = StoryCandidate(**defaults)
        db.add(story)
        db.commit()
        return story

    return _make


@pytest.fixture
def make_profile(db):
    def _make(category: str, keyword_weights: dict, **kwargs) -> TopicProfile:
        defaults = {"last_updated": datetime(2026, 3, 1, 6, 0, 0, tzinfo=timezone.utc)}
        defaults.update(kwargs)
        profile = TopicProfile(category=category, keyword_weights=keyword_weights, **defaults)
        db.add(profile)
        db.commit()
        return profile

    return _make


@pytest.fixture
def make_feedback(db):
    def _make(story: StoryCandidate, rating: int, tags=None, created_at=NOW, action="QUICK_RATE") -> StoryFeedback:
        feedback = StoryFeedback(
            story_id=story.id, rating=rating, tags=tags or [], action=action, created_at=created_at
        )
        db.add(feedback)
        db.commit()
        return feedback

    return _make


@pytest.fixture
def make_article(db):
    counter = {"n": 0}

    def _make(**kwargs) -> Article:
        counter["n"] += 1
        defaults = {
            "id": f"article-{counter['n']}",
            "headline": f"Article {counter['n']}",
            "status": "PUBLISHED",
            "published_at": NOW,
            "total_pageviews": 1000,
        }
        defaults.update(kwargs)
        article = Article(**defaults)
        db.add(article)
        db.commit()
        return article

    return _make


@pytest.fixture
def make_exemplar(db):
    counter = {"n": 0}

    def _make(**kwargs) -> ArticleExemplar:
        counter["n"] += 1
        defaults = {
            "url": f"https://news.example.com/piece-{counter['n']}",
            "title": f"Piece {counter['n']}",
            "source": "news.example.com",
            "raw_content": "word " * 200,
            "word_count": 200,
        }
        defaults.update(kwargs)
        exemplar = ArticleExemplar(**defaults)
        db.add(exemplar)
        db.commit()
        return exemplar

    return _make
