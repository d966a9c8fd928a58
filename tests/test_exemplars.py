"""
Tests for exemplar intake: URL validation, fetch/extract, quick preview,
background deep analysis and delete-with-rollback. Network and the
text-generation collaborator are mocked.

Run with: pytest tests/test_exemplars.py -v
"""
from unittest.mock import MagicMock, patch

import pytest
import requests

from storydesk.errors import DuplicateExemplarError, ExemplarFetchError, ExemplarNotFoundError, InvalidExemplarUrlError
from storydesk.exemplars import (
    delete_exemplar,
    fetch_article,
    generate_quick_preview,
    list_exemplars,
    normalize_exemplar_url,
    run_deep_analysis,
    sanitize_fingerprint,
    source_host,
    submit_exemplar,
)
from storydesk.models import ArticleExemplar, ExemplarStatus, TopicProfile

ARTICLE_TEXT = "The Senate advanced a border security bill on Tuesday. " * 10

PREVIEW = {"category": "immigration", "topics": ["border", "senate"], "quickSummary": "Senate moves border bill."}
FINGERPRINT = {
    "topics": ["border"],
    "keywords": {"border": 3.0, "asylum": 9.0},
    "tone": "factual",
    "headlineStyle": "declarative",
    "structureNotes": "wire style",
    "audienceAlignment": 80,
    "strengthSignals": ["named sources"],
    "similarToCategories": ["immigration"],
}


def mock_response(status_code=200, body=b"<html><title>Hi</title></html>"):
    response = MagicMock()
    response.status_code = status_code
    response.is_redirect = False
    response.headers = {}
    response.encoding = "utf-8"
    response.iter_content.return_value = [body]
    return response


def redirect_to(location):
    response = MagicMock()
    response.is_redirect = True
    response.headers = {"location": location}
    return response


def generator_returning(*responses):
    generator = MagicMock()
    generator.generate_json.side_effect = list(responses)
    return generator


# ---------------------------------------------------------------------------
# URL validation
# ---------------------------------------------------------------------------

class TestNormalizeUrl:
    def test_lowercases_host_and_drops_fragment(self):
        assert normalize_exemplar_url(" https://WWW.Example.com/a?b=1#top ") == "https://www.example.com/a?b=1"

    def test_bare_host_gets_root_path(self):
        assert normalize_exemplar_url("https://example.com") == "https://example.com/"

    @pytest.mark.parametrize("url", [
        "",
        "ftp://example.com/file",
        "javascript:alert(1)",
        "http://localhost/admin",
        "http://127.0.0.1:8080/",
        "http://10.1.2.3/",
        "http://192.168.0.10/router",
        "http://[::1]/",
    ])
    def test_rejects_bad_or_private_urls(self, url):
        with pytest.raises(InvalidExemplarUrlError):
            normalize_exemplar_url(url)

    def test_source_host_strips_www(self):
        assert source_host("https://www.example.com/a") == "example.com"


# ---------------------------------------------------------------------------
# fetch_article
# ---------------------------------------------------------------------------

class TestFetchArticle:
    def test_returns_title_and_text(self, settings):
        with patch("storydesk.exemplars.requests.get", return_value=mock_response()), \
                patch("storydesk.exemplars.trafilatura.extract", return_value=ARTICLE_TEXT), \
                patch("storydesk.exemplars.trafilatura.extract_metadata", return_value=MagicMock(title="Border bill")):
            title, text = fetch_article("https://example.com/a", settings)

        assert title == "Border bill"
        assert text == ARTICLE_TEXT.strip()

    def test_title_falls_back_to_title_tag(self, settings):
        with patch("storydesk.exemplars.requests.get", return_value=mock_response()), \
                patch("storydesk.exemplars.trafilatura.extract", return_value=ARTICLE_TEXT), \
                patch("storydesk.exemplars.trafilatura.extract_metadata", return_value=None):
            title, _ = fetch_article("https://example.com/a", settings)

        assert title == "Hi"

    def test_http_error_status(self, settings):
        with patch("storydesk.exemplars.requests.get", return_value=mock_response(status_code=404)):
            with pytest.raises(ExemplarFetchError, match="HTTP 404"):
                fetch_article("https://example.com/a", settings)

    def test_network_error(self, settings):
        with patch("storydesk.exemplars.requests.get", side_effect=requests.Timeout("timed out")):
            with pytest.raises(ExemplarFetchError):
                fetch_article("https://example.com/a", settings)

    def test_short_content_rejected(self, settings):
        with patch("storydesk.exemplars.requests.get", return_value=mock_response()), \
                patch("storydesk.exemplars.trafilatura.extract", return_value="Too short."):
            with pytest.raises(ExemplarFetchError, match="too short"):
                fetch_article("https://example.com/a", settings)

    def test_redirect_to_private_host_is_refused(self, settings):
        with patch("storydesk.exemplars.requests.get", return_value=redirect_to("http://127.0.0.1/admin")) as get:
            with pytest.raises(ExemplarFetchError, match="unsafe redirect"):
                fetch_article("https://example.com/a", settings)

        assert get.call_count == 1

    def test_relative_redirect_is_followed(self, settings):
        responses = [redirect_to("/b"), mock_response()]
        with patch("storydesk.exemplars.requests.get", side_effect=responses) as get, \
                patch("storydesk.exemplars.trafilatura.extract", return_value=ARTICLE_TEXT), \
                patch("storydesk.exemplars.trafilatura.extract_metadata", return_value=None):
            fetch_article("https://example.com/a", settings)

        assert get.call_args_list[1].args[0] == "https://example.com/b"
        assert get.call_args.kwargs["allow_redirects"] is False

    def test_redirect_loop_gives_up(self, settings):
        with patch("storydesk.exemplars.requests.get", return_value=redirect_to("https://example.com/a")):
            with pytest.raises(ExemplarFetchError, match="too many redirects"):
                fetch_article("https://example.com/a", settings)


# ---------------------------------------------------------------------------
# AI analysis
# ---------------------------------------------------------------------------

class TestAnalysis:
    def test_unknown_preview_category_becomes_other(self):
        generator = generator_returning({**PREVIEW, "category": "sports"})
        assert generate_quick_preview(generator, "t", "c").category == "other"

    def test_fingerprint_is_clamped(self):
        fp = sanitize_fingerprint({**FINGERPRINT, "keywords": {"a": 9.0, "b": 0.2, "c": "high", "d": True}, "audienceAlignment": 140})

        assert fp.keywords == {"a": 5.0, "b": 1.0}
        assert fp.audience_alignment == 100

    def test_fingerprint_defaults_for_garbage(self):
        fp = sanitize_fingerprint({"topics": "not a list", "audienceAlignment": "high"})

        assert fp.topics == []
        assert fp.keywords == {}
        assert fp.audience_alignment == 50


# ---------------------------------------------------------------------------
# submit_exemplar
# ---------------------------------------------------------------------------

class TestSubmitExemplar:
    def test_preview_ready(self, db, settings):
        with patch("storydesk.exemplars.fetch_article", return_value=("Border bill", ARTICLE_TEXT)):
            exemplar = submit_exemplar(db, "https://www.example.com/a", generator_returning(PREVIEW), settings)

        assert exemplar.status == ExemplarStatus.PREVIEW_READY
        assert exemplar.source == "example.com"
        assert exemplar.category == "immigration"
        assert exemplar.detected_topics == ["border", "senate"]
        assert exemplar.word_count == len(ARTICLE_TEXT.split())

    def test_preview_failure_leaves_pending(self, db, settings):
        generator = MagicMock()
        generator.generate_json.side_effect = RuntimeError("model overloaded")
        with patch("storydesk.exemplars.fetch_article", return_value=("Border bill", ARTICLE_TEXT)):
            exemplar = submit_exemplar(db, "https://example.com/a", generator, settings)

        assert exemplar.status == ExemplarStatus.PENDING
        assert exemplar.category is None

    def test_duplicate_url(self, db, settings, make_exemplar):
        existing = make_exemplar(url="https://example.com/a")
        with pytest.raises(DuplicateExemplarError) as excinfo:
            submit_exemplar(db, "https://EXAMPLE.com/a#comments", MagicMock(), settings)

        assert excinfo.value.existing_id == existing.id

    def test_fetch_failure_creates_nothing(self, db, settings):
        with patch("storydesk.exemplars.fetch_article", side_effect=ExemplarFetchError("HTTP 500")):
            with pytest.raises(ExemplarFetchError):
                submit_exemplar(db, "https://example.com/a", MagicMock(), settings)

        assert db.query(ArticleExemplar).count() == 0


# ---------------------------------------------------------------------------
# run_deep_analysis
# ---------------------------------------------------------------------------

class TestDeepAnalysis:
    def test_success_analyzes_and_boosts(self, db, session_factory, make_exemplar, make_profile):
        profile = make_profile("Immigration", {"border": 2.0})
        exemplar = make_exemplar(status=ExemplarStatus.PREVIEW_READY)

        run_deep_analysis(exemplar.id, session_factory, generator_returning(FINGERPRINT))

        db.refresh(exemplar)
        db.refresh(profile)
        assert exemplar.status == ExemplarStatus.ANALYZED
        assert exemplar.analyzed_at is not None
        assert exemplar.fingerprint["keywords"] == {"border": 3.0, "asylum": 5.0}
        assert profile.keyword_weights == {"border": pytest.approx(3.5), "asylum": 1.5}

    def test_failure_marks_failed_with_error(self, db, session_factory, make_exemplar):
        exemplar = make_exemplar()
        generator = MagicMock()
        generator.generate_json.side_effect = RuntimeError("timeout")

        run_deep_analysis(exemplar.id, session_factory, generator)

        db.refresh(exemplar)
        assert exemplar.status == ExemplarStatus.FAILED
        assert "timeout" in exemplar.error
        assert exemplar.fingerprint is None

    def test_missing_exemplar_is_a_no_op(self, session_factory):
        generator = MagicMock()
        run_deep_analysis("nope", session_factory, generator)
        generator.generate_json.assert_not_called()


# ---------------------------------------------------------------------------
# list / delete
# ---------------------------------------------------------------------------

class TestListAndDelete:
    def test_list_filters_and_paginates(self, db, make_exemplar):
        for _ in range(25):
            make_exemplar(status=ExemplarStatus.ANALYZED, category="economy")
        make_exemplar(status=ExemplarStatus.FAILED)

        first_page, total = list_exemplars(db, status=ExemplarStatus.ANALYZED)
        second_page, _ = list_exemplars(db, status=ExemplarStatus.ANALYZED, page=2)

        assert total == 25
        assert len(first_page) == 20
        assert len(second_page) == 5

    def test_delete_analyzed_rolls_back_boost(self, db, make_exemplar, make_profile):
        profile = make_profile("Immigration", {"border": 3.5, "asylum": 1.5})
        exemplar = make_exemplar(
            status=ExemplarStatus.ANALYZED,
            fingerprint={"keywords": {"Border": 3.0}, "similar_to_categories": ["immigration"]},
        )

        delete_exemplar(db, exemplar.id)

        db.refresh(profile)
        assert profile.keyword_weights == {"border": pytest.approx(3.0), "asylum": 1.5}
        assert db.query(ArticleExemplar).count() == 0

    def test_delete_pending_leaves_weights(self, db, make_exemplar, make_profile):
        profile = make_profile("Immigration", {"border": 3.5})
        exemplar = make_exemplar(
            status=ExemplarStatus.FAILED,
            fingerprint={"keywords": {"border": 3.0}, "similar_to_categories": ["immigration"]},
        )

        delete_exemplar(db, exemplar.id)

        db.refresh(profile)
        assert profile.keyword_weights == {"border": 3.5}

    def test_delete_unknown(self, db):
        with pytest.raises(ExemplarNotFoundError):
            delete_exemplar(db, "missing")

    def test_profiles_untouched_without_similar_categories(self, db, make_exemplar, make_profile):
        make_profile("Immigration", {"border": 3.5})
        exemplar = make_exemplar(status=ExemplarStatus.ANALYZED, fingerprint={"keywords": {"border": 3.0}})

        delete_exemplar(db, exemplar.id)

        assert db.query(TopicProfile).one().keyword_weights == {"border": 3.5}
