"""
Unit tests for the API routes: mocked collaborators, in-memory SQLite database.
No network calls, no scheduler. Fast.

Run with: pytest tests/test_routes.py -v
"""
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from storydesk.config import Settings, get_settings
from storydesk.database import get_db
from storydesk.dependencies import get_messenger, get_session_factory, get_sources, get_text_generator
from storydesk.errors import ExemplarFetchError
from storydesk.models import AlertLevel, ExemplarStatus, Outcome, VerificationStatus
from storydesk.routes import cron, exemplars, stories, system
from storydesk.system_alerts import REDDIT_SCRAPER_DOWN, raise_alert

# Minimal test app: no lifespan, no scheduler
_app = FastAPI()
for _module in (cron, stories, exemplars, system):
    _app.include_router(_module.router)

HEADERS = {"x-api-key": "test-key"}

ARTICLE_TEXT = "The Senate advanced a border security bill on Tuesday. " * 10
PREVIEW = {"category": "immigration", "topics": ["border"], "quickSummary": "Senate moves border bill."}
FINGERPRINT = {"keywords": {"border": 3.0}, "similarToCategories": ["immigration"], "audienceAlignment": 70}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def generator():
    return MagicMock()


@pytest.fixture
def messenger():
    return MagicMock()


@pytest.fixture
def client(db, settings, session_factory, generator, messenger):
    _app.dependency_overrides[get_db] = lambda: db
    _app.dependency_overrides[get_settings] = lambda: settings
    _app.dependency_overrides[get_sources] = lambda: []
    _app.dependency_overrides[get_text_generator] = lambda: generator
    _app.dependency_overrides[get_messenger] = lambda: messenger
    _app.dependency_overrides[get_session_factory] = lambda: session_factory
    yield TestClient(_app)
    _app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

class TestAuth:
    @pytest.mark.parametrize("method,path", [
        ("post", "/cron/ingest-stories"),
        ("post", "/cron/story-intelligence-ai"),
        ("post", "/cron/evaluate-outcomes"),
        ("post", "/alerts/telegram"),
        ("get", "/story-intelligence"),
        ("get", "/exemplars"),
        ("get", "/system/scraper-health"),
    ])
    def test_missing_key_is_401(self, client, method, path):
        assert getattr(client, method)(path).status_code == 401

    def test_wrong_key_is_401(self, client):
        response = client.post("/cron/evaluate-outcomes", headers={"x-api-key": "nope"})
        assert response.status_code == 401

    def test_unconfigured_key_rejects_everything(self, client):
        _app.dependency_overrides[get_settings] = lambda: Settings(_env_file=None, api_key=None)
        response = client.post("/cron/evaluate-outcomes", headers=HEADERS)
        assert response.status_code == 401


# ---------------------------------------------------------------------------
# Batch triggers
# ---------------------------------------------------------------------------

class TestCronTriggers:
    def test_ingest_returns_summary(self, client):
        response = client.post("/cron/ingest-stories", headers=HEADERS)

        assert response.status_code == 200
        assert response.json() == {"created": {}, "skipped": 0, "total_created": 0}

    def test_ai_batch_with_nothing_to_do(self, client, generator):
        response = client.post("/cron/story-intelligence-ai", headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["total"] == 0
        generator.generate_json.assert_not_called()

    def test_evaluate_outcomes(self, client, make_story):
        make_story(first_seen_at=datetime(2020, 1, 1, tzinfo=timezone.utc))

        response = client.post("/cron/evaluate-outcomes", headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["ignored"] == 1

    def test_dispatch_alerts(self, client, messenger, make_story):
        make_story(alert_level=AlertLevel.TELEGRAM, verification_status=VerificationStatus.VERIFIED, relevance_score=90)

        response = client.post("/alerts/telegram", headers=HEADERS)

        assert response.status_code == 200
        assert response.json() == {"sent": 1}
        messenger.send.assert_called_once()

    def test_job_failure_is_500(self, client):
        with patch("storydesk.routes.cron.run_evaluate_outcomes", side_effect=RuntimeError("db gone")):
            response = client.post("/cron/evaluate-outcomes", headers=HEADERS)

        assert response.status_code == 500
        assert "db gone" in response.json()["detail"]


# ---------------------------------------------------------------------------
# /story-intelligence
# ---------------------------------------------------------------------------

class TestStoryRoutes:
    def test_feed(self, client, make_story):
        make_story(headline="Fresh story", first_seen_at=datetime.now(timezone.utc))

        response = client.get("/story-intelligence", headers=HEADERS)

        assert response.status_code == 200
        assert [s["headline"] for s in response.json()] == ["Fresh story"]

    def test_limit_is_validated(self, client):
        assert client.get("/story-intelligence?limit=0", headers=HEADERS).status_code == 422

    def test_claim_then_conflict(self, client, make_story):
        story = make_story()

        first = client.post(f"/story-intelligence/{story.id}/claim", json={"user_id": "editor-1"}, headers=HEADERS)
        second = client.post(f"/story-intelligence/{story.id}/claim", json={"user_id": "editor-2"}, headers=HEADERS)

        assert first.status_code == 200
        assert first.json()["outcome"] == Outcome.CLAIMED.value
        assert second.status_code == 409

    def test_claim_unknown_is_404(self, client):
        response = client.post("/story-intelligence/missing/claim", json={"user_id": "e"}, headers=HEADERS)
        assert response.status_code == 404

    def test_claim_ignored_story_is_409(self, client, make_story):
        story = make_story(outcome=Outcome.IGNORED)

        response = client.post(f"/story-intelligence/{story.id}/claim", json={"user_id": "editor-1"}, headers=HEADERS)

        assert response.status_code == 409
        assert response.json()["detail"] == "Story already resolved"

    def test_dismiss(self, client, make_story):
        story = make_story()
        response = client.post(f"/story-intelligence/{story.id}/dismiss", headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["dismissed"] is True

    def test_feedback_round(self, client, make_story):
        story = make_story()
        payload = {"rating": 4, "tags": ["TIMELY", "BOGUS"], "action": "QUICK_RATE", "user_id": "editor-1"}

        created = client.post(f"/story-intelligence/{story.id}/feedback", json=payload, headers=HEADERS)
        summary = client.get(f"/story-intelligence/{story.id}/feedback?user_id=editor-1", headers=HEADERS)

        assert created.status_code == 201
        assert created.json()["tags"] == ["TIMELY"]
        assert summary.json()["total_ratings"] == 1
        assert summary.json()["user_rating"] == 4

    def test_rating_out_of_range_is_422(self, client, make_story):
        story = make_story()
        payload = {"rating": 6, "action": "QUICK_RATE"}
        response = client.post(f"/story-intelligence/{story.id}/feedback", json=payload, headers=HEADERS)
        assert response.status_code == 422

    def test_learning_export_shape(self, client):
        response = client.get("/story-intelligence/feedback", headers=HEADERS)

        assert response.status_code == 200
        assert set(response.json()) == {"stories", "topic_profiles", "feedback"}


# ---------------------------------------------------------------------------
# /exemplars
# ---------------------------------------------------------------------------

class TestExemplarRoutes:
    def test_submit_runs_preview_then_deep_analysis(self, client, generator, make_profile):
        make_profile("Immigration", {"border": 2.0})
        generator.generate_json.side_effect = [PREVIEW, FINGERPRINT]

        with patch("storydesk.exemplars.fetch_article", return_value=("Border bill", ARTICLE_TEXT)):
            response = client.post("/exemplars", json={"url": "https://example.com/a"}, headers=HEADERS)

        assert response.status_code == 201
        assert response.json()["status"] == ExemplarStatus.PREVIEW_READY.value

        detail = client.get(f"/exemplars/{response.json()['id']}", headers=HEADERS)
        assert detail.json()["status"] == ExemplarStatus.ANALYZED.value

    def test_duplicate_is_409_with_existing_id(self, client, make_exemplar):
        existing = make_exemplar(url="https://example.com/a")

        response = client.post("/exemplars", json={"url": "https://example.com/a"}, headers=HEADERS)

        assert response.status_code == 409
        assert response.json()["id"] == existing.id

    def test_private_url_is_400(self, client):
        response = client.post("/exemplars", json={"url": "http://127.0.0.1/admin"}, headers=HEADERS)
        assert response.status_code == 400

    def test_fetch_failure_is_422(self, client):
        with patch("storydesk.exemplars.fetch_article", side_effect=ExemplarFetchError("Failed to fetch URL: HTTP 403")):
            response = client.post("/exemplars", json={"url": "https://example.com/a"}, headers=HEADERS)

        assert response.status_code == 422
        assert "HTTP 403" in response.json()["detail"]

    def test_list_pages(self, client, make_exemplar):
        for _ in range(21):
            make_exemplar()

        body = client.get("/exemplars?page=2", headers=HEADERS).json()

        assert body["total"] == 21
        assert body["pages"] == 2
        assert len(body["exemplars"]) == 1

    def test_get_and_delete_unknown_are_404(self, client):
        assert client.get("/exemplars/missing", headers=HEADERS).status_code == 404
        assert client.delete("/exemplars/missing", headers=HEADERS).status_code == 404

    def test_delete(self, client, make_exemplar):
        exemplar = make_exemplar()

        response = client.delete(f"/exemplars/{exemplar.id}", headers=HEADERS)

        assert response.json() == {"status": "ok"}
        assert client.get(f"/exemplars/{exemplar.id}", headers=HEADERS).status_code == 404


# ---------------------------------------------------------------------------
# /system
# ---------------------------------------------------------------------------

class TestSystemRoutes:
    def test_all_healthy(self, client):
        body = client.get("/system/scraper-health", headers=HEADERS).json()

        assert body["status"] == "ok"
        assert body["healthy_count"] == body["total_count"] == 3

    def test_degraded_when_a_source_is_down(self, client, db):
        raise_alert(db, REDDIT_SCRAPER_DOWN, "Reddit API returned 429")

        body = client.get("/system/scraper-health", headers=HEADERS).json()
        alerts = client.get("/system/alerts", headers=HEADERS).json()

        assert body["status"] == "degraded"
        assert body["scrapers"]["reddit"] == {"healthy": False, "alert": "Reddit API returned 429"}
        assert [a["type"] for a in alerts] == [REDDIT_SCRAPER_DOWN]
