"""
Exemplar intake: editors submit reference articles that represent the
coverage they want more of. Each one is fetched, previewed with the fast
model, then fingerprinted with the deep model in the background. A finished
fingerprint calibrates topic weights and feeds the scorer's similarity bonus.
"""
import ipaddress
import logging
import re
from datetime import datetime, timezone
from typing import List, Optional, Tuple
from urllib.parse import urljoin, urlparse, urlunparse

import requests
import trafilatura
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storydesk.ai import FAST_TIER, DEEP_TIER, TextGenerator
from storydesk.config import Settings
from storydesk.errors import DuplicateExemplarError, ExemplarFetchError, ExemplarNotFoundError, InvalidExemplarUrlError
from storydesk.learning import apply_exemplar_boost, rollback_exemplar_boost
from storydesk.models import ArticleExemplar, ExemplarStatus
from storydesk.schemas import DeepFingerprint, QuickPreview

logger = logging.getLogger(__name__)

FETCH_TIMEOUT_SECONDS = 15
MAX_REDIRECTS = 5
MAX_FETCH_BYTES = 2_000_000
MIN_CONTENT_CHARS = 100
PREVIEW_CONTENT_CHARS = 3000
DEEP_CONTENT_CHARS = 12000
PAGE_SIZE = 20

EXEMPLAR_CATEGORIES = [
    "politics", "economy", "culture", "immigration", "law-enforcement", "foreign-policy",
    "tech", "media", "health", "education", "energy", "military", "other",
]

_PRIVATE_NETS = [
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("169.254.0.0/16"),
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fc00::/7"),
    ipaddress.ip_network("fe80::/10"),
]


# ---------------------------------------------------------------------------
# URL handling + fetch
# ---------------------------------------------------------------------------

def _is_private_host(host: str) -> bool:
    if host in ("localhost", "localhost.localdomain"):
        return True
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return False
    return any(ip in net for net in _PRIVATE_NETS)


def normalize_exemplar_url(url: str) -> str:
    """Validate a submitted URL and return its canonical form (lower-case host, no fragment)."""
    url = (url or "").strip()
    if not url:
        raise InvalidExemplarUrlError("url is required")

    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise InvalidExemplarUrlError("Invalid URL format: only http and https are accepted")
    host = (parsed.hostname or "").lower()
    if not host:
        raise InvalidExemplarUrlError("Invalid URL format: missing host")
    if _is_private_host(host):
        raise InvalidExemplarUrlError("URL points to a private or local address")

    return urlunparse((parsed.scheme, parsed.netloc.lower(), parsed.path or "/", parsed.params, parsed.query, ""))


def source_host(url: str) -> str:
    host = (urlparse(url).hostname or "").lower()
    return host[4:] if host.startswith("www.") else host


def _extract_title(html: str) -> str:
    metadata = trafilatura.extract_metadata(html)
    if metadata is not None and metadata.title:
        return metadata.title.strip()
    match = re.search(r"<title[^>]*>(.*?)</title>", html, flags=re.IGNORECASE | re.DOTALL)
    return re.sub(r"\s+", " ", match.group(1)).strip() if match else ""


def _get_following_safe_redirects(url: str, settings: Settings) -> requests.Response:
    # redirects are followed by hand so every hop goes through the private-host check
    for _ in range(MAX_REDIRECTS + 1):
        response = requests.get(
            url,
            headers={"User-Agent": settings.user_agent},
            timeout=FETCH_TIMEOUT_SECONDS,
            allow_redirects=False,
            stream=True,
        )
        if not response.is_redirect:
            return response

        response.close()
        try:
            url = normalize_exemplar_url(urljoin(url, response.headers.get("location", "")))
        except InvalidExemplarUrlError as e:
            raise ExemplarFetchError(f"Failed to fetch URL: unsafe redirect ({e})") from e

    raise ExemplarFetchError("Failed to fetch URL: too many redirects")


def fetch_article(url: str, settings: Settings) -> Tuple[str, str]:
    """
    Download the page and pull out its title and main text.
    Raises ExemplarFetchError on HTTP failure, unsafe redirects, oversize pages, or too little text.
    """
    try:
        response = _get_following_safe_redirects(url, settings)
        if response.status_code >= 400:
            raise ExemplarFetchError(f"Failed to fetch URL: HTTP {response.status_code}")

        content = bytearray()
        for chunk in response.iter_content(chunk_size=64 * 1024):
            content.extend(chunk)
            if len(content) > MAX_FETCH_BYTES:
                raise ExemplarFetchError("Failed to fetch URL: page too large")
        html = content.decode(response.encoding or "utf-8", errors="replace")
    except requests.RequestException as e:
        logger.error(f"[exemplars] fetch error for {url}: {e}")
        raise ExemplarFetchError(f"Failed to scrape URL: {e}") from e

    text = trafilatura.extract(html, include_comments=False, include_tables=False) or ""
    text = re.sub(r"\s+", " ", text).strip()
    if len(text) < MIN_CONTENT_CHARS:
        raise ExemplarFetchError(f"Extracted content too short (< {MIN_CONTENT_CHARS} chars)")

    return _extract_title(html), text


# ---------------------------------------------------------------------------
# AI analysis
# ---------------------------------------------------------------------------

def _str_list(value) -> List[str]:
    return [v for v in value if isinstance(v, str)] if isinstance(value, list) else []


def _str(value) -> str:
    return value if isinstance(value, str) else ""


def generate_quick_preview(generator: TextGenerator, title: str, content: str) -> QuickPreview:
    system = (
        "You are a content classifier for a news operation. Given an article title and opening "
        "content, classify the piece and extract key topics.\n\n"
        f"Valid categories: {', '.join(EXEMPLAR_CATEGORIES)}.\n\n"
        "Respond only with a JSON object."
    )
    prompt = (
        "Classify this article and return a quick preview.\n\n"
        f"Title: {title}\n"
        f"Content: {content[:PREVIEW_CONTENT_CHARS]}\n\n"
        "Respond with JSON:\n"
        '{"category": "<one of the valid categories>", "topics": ["topic1", "topic2", "topic3"], '
        '"quickSummary": "<1-2 sentence summary>"}'
    )
    data = generator.generate_json(system, prompt, tier=FAST_TIER, max_tokens=512)

    category = data.get("category")
    return QuickPreview(
        category=category if category in EXEMPLAR_CATEGORIES else "other",
        topics=_str_list(data.get("topics")),
        quick_summary=_str(data.get("quickSummary")),
    )


def sanitize_fingerprint(data: dict) -> DeepFingerprint:
    """Coerce a raw fingerprint into range: keyword weights [1, 5], alignment [0, 100]."""
    raw_keywords = data.get("keywords")
    keywords = {}
    if isinstance(raw_keywords, dict):
        for kw, weight in raw_keywords.items():
            if isinstance(weight, (int, float)) and not isinstance(weight, bool):
                keywords[str(kw)] = min(5.0, max(1.0, float(weight)))

    alignment = data.get("audienceAlignment")
    if not isinstance(alignment, (int, float)) or isinstance(alignment, bool):
        alignment = 50

    return DeepFingerprint(
        topics=_str_list(data.get("topics")),
        keywords=keywords,
        tone=_str(data.get("tone")),
        headline_style=_str(data.get("headlineStyle")),
        structure_notes=_str(data.get("structureNotes")),
        audience_alignment=min(100, max(0, round(alignment))),
        strength_signals=_str_list(data.get("strengthSignals")),
        similar_to_categories=_str_list(data.get("similarToCategories")),
    )


def generate_deep_fingerprint(generator: TextGenerator, title: str, content: str, source: str) -> DeepFingerprint:
    system = (
        "You are an editorial intelligence analyst for a news operation. Given a full article, "
        "produce a detailed content fingerprint that captures its topical profile, style, and "
        "audience fit.\n\n"
        "Respond only with a JSON object."
    )
    prompt = (
        "Analyze this article and return a deep fingerprint.\n\n"
        f"Source: {source}\n"
        f"Title: {title}\n"
        f"Content: {content[:DEEP_CONTENT_CHARS]}\n\n"
        "Respond with JSON:\n"
        '{"topics": ["topic1", "topic2"], "keywords": {"keyword1": 3.5, "keyword2": 1.0}, '
        '"tone": "<e.g. factual, critical>", "headlineStyle": "<e.g. declarative, question-based>", '
        '"structureNotes": "<sourcing quality, narrative approach>", "audienceAlignment": 75, '
        '"strengthSignals": ["signal1"], "similarToCategories": ["politics", "economy"]}\n\n'
        f"similarToCategories must use these values: {', '.join(EXEMPLAR_CATEGORIES)}.\n"
        "keyword weights must be numbers between 1.0 and 5.0.\n"
        "audienceAlignment must be an integer between 0 and 100."
    )
    return sanitize_fingerprint(generator.generate_json(system, prompt, tier=DEEP_TIER, max_tokens=1024))


# ---------------------------------------------------------------------------
# Service operations
# ---------------------------------------------------------------------------

def submit_exemplar(db: Session, url: str, generator: TextGenerator, settings: Settings) -> ArticleExemplar:
    """
    Fetch and register a new exemplar, then attach the quick preview.
    A preview failure leaves the record PENDING; deep analysis still runs.
    """
    normalized = normalize_exemplar_url(url)

    existing = db.query(ArticleExemplar.id).filter(ArticleExemplar.url == normalized).first()
    if existing:
        raise DuplicateExemplarError(existing.id)

    title, text = fetch_article(normalized, settings)
    source = source_host(normalized)

    exemplar = ArticleExemplar(
        url=normalized,
        title=title or None,
        source=source,
        status=ExemplarStatus.PENDING,
        raw_content=text,
        word_count=len(text.split()),
    )
    db.add(exemplar)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = db.query(ArticleExemplar.id).filter(ArticleExemplar.url == normalized).first()
        raise DuplicateExemplarError(existing.id if existing else "")
    db.refresh(exemplar)

    try:
        preview = generate_quick_preview(generator, title or source, text)
    except Exception as e:
        logger.error(f"[exemplars] quick preview failed for {exemplar.id}: {e}")
        return exemplar

    exemplar.category = preview.category
    exemplar.detected_topics = preview.topics
    exemplar.quick_summary = preview.quick_summary
    exemplar.status = ExemplarStatus.PREVIEW_READY
    db.commit()
    db.refresh(exemplar)
    logger.info(f"[exemplars] {exemplar.id} preview ready ({preview.category})")
    return exemplar


def run_deep_analysis(exemplar_id: str, session_factory, generator: TextGenerator) -> None:
    """
    Background task: fingerprint the exemplar and calibrate topic weights.
    Runs on its own session. Any failure marks the exemplar FAILED.
    """
    db = session_factory()
    try:
        exemplar = db.get(ArticleExemplar, exemplar_id)
        if exemplar is None:
            logger.warning(f"[exemplars] {exemplar_id} vanished before deep analysis")
            return

        try:
            fingerprint = generate_deep_fingerprint(
                generator, exemplar.title or exemplar.source or "", exemplar.raw_content or "", exemplar.source or ""
            )
            exemplar.fingerprint = fingerprint.model_dump()
            exemplar.status = ExemplarStatus.ANALYZED
            exemplar.analyzed_at = datetime.now(timezone.utc)
            exemplar.error = None
            # commits the exemplar and the profile changes together
            apply_exemplar_boost(db, fingerprint)
            logger.info(f"[exemplars] {exemplar_id} analyzed")
        except Exception as e:
            db.rollback()
            logger.error(f"[exemplars] deep analysis failed for {exemplar_id}: {e}")
            exemplar = db.get(ArticleExemplar, exemplar_id)
            if exemplar is not None:
                exemplar.status = ExemplarStatus.FAILED
                exemplar.error = str(e)[:500]
                db.commit()
    finally:
        db.close()


def get_exemplar(db: Session, exemplar_id: str) -> ArticleExemplar:
    exemplar = db.get(ArticleExemplar, exemplar_id)
    if exemplar is None:
        raise ExemplarNotFoundError(exemplar_id)
    return exemplar


def list_exemplars(
    db: Session,
    status: Optional[ExemplarStatus] = None,
    category: Optional[str] = None,
    page: int = 1,
) -> Tuple[List[ArticleExemplar], int]:
    query = db.query(ArticleExemplar)
    if status:
        query = query.filter(ArticleExemplar.status == status)
    if category:
        query = query.filter(ArticleExemplar.category == category)

    total = query.count()
    items = (
        query.order_by(ArticleExemplar.created_at.desc())
        .offset((max(page, 1) - 1) * PAGE_SIZE)
        .limit(PAGE_SIZE)
        .all()
    )
    return items, total


def delete_exemplar(db: Session, exemplar_id: str) -> None:
    """Delete an exemplar, first rolling back its topic-weight boost if it was analyzed."""
    exemplar = get_exemplar(db, exemplar_id)

    if exemplar.status == ExemplarStatus.ANALYZED and exemplar.fingerprint:
        try:
            fingerprint = DeepFingerprint.model_validate(exemplar.fingerprint)
        except ValidationError as e:
            logger.warning(f"[exemplars] {exemplar_id} fingerprint unreadable, skipping rollback: {e}")
        else:
            rollback_exemplar_boost(db, fingerprint)

    db.delete(exemplar)
    db.commit()
    logger.info(f"[exemplars] {exemplar_id} deleted")
