import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storydesk import system_alerts
from storydesk.models import ArticleExemplar, ExemplarStatus, StoryCandidate, TopicProfile, VerificationStatus
from storydesk.schemas import DeepFingerprint, SourceItem, TrendSignals
from storydesk.scorer import ProfileWeights, load_profile_snapshots, score_story
from storydesk.sources import BaseSource

logger = logging.getLogger(__name__)


def load_exemplar_fingerprints(db: Session) -> List[DeepFingerprint]:
    """Fingerprints of every ANALYZED exemplar, for the scorer's similarity bonus."""
    fingerprints = []
    rows = (
        db.query(ArticleExemplar.id, ArticleExemplar.fingerprint)
        .filter(ArticleExemplar.status == ExemplarStatus.ANALYZED)
        .all()
    )
    for exemplar_id, fingerprint in rows:
        if not fingerprint:
            continue
        try:
            fingerprints.append(DeepFingerprint.model_validate(fingerprint))
        except ValidationError as e:
            logger.warning(f"[ingest] Ignoring unreadable fingerprint on exemplar {exemplar_id}: {e}")
    return fingerprints


def _fetch_source(source: BaseSource) -> List[SourceItem]:
    items = source.fetch()
    if source.max_items_per_run is not None:
        items = items[: source.max_items_per_run]
    return items


def fetch_all(sources: Sequence[BaseSource]) -> Dict[str, Optional[List[SourceItem]]]:
    """
    Fetch every source in parallel. A source that raises maps to None;
    its siblings are unaffected.
    """
    results: Dict[str, Optional[List[SourceItem]]] = {}
    if not sources:
        return results

    with ThreadPoolExecutor(max_workers=len(sources)) as pool:
        futures = {source.source_name: (source, pool.submit(_fetch_source, source)) for source in sources}
        for name, (source, future) in futures.items():
            try:
                results[name] = future.result()
            except Exception as e:
                source.last_error = str(e)
                logger.error(f"[ingest] Source '{name}' failed: {e}")
                results[name] = None
    return results


def _record_source_health(db: Session, source: BaseSource, items: Optional[List[SourceItem]]) -> None:
    if items:
        system_alerts.resolve_alert(db, source.alert_type)
        return
    reason = source.last_error or "returned 0 items"
    system_alerts.raise_alert(db, source.alert_type, f"{source.source_name} scraper failing: {reason[:200]}")


def _initial_verification(item: SourceItem) -> VerificationStatus:
    if isinstance(item.platform_signals, TrendSignals) and item.platform_signals.trending:
        return VerificationStatus.PLAUSIBLE
    return VerificationStatus.UNVERIFIED


def _insert_candidate(db: Session, item: SourceItem, profiles: List[ProfileWeights], exemplars, now: datetime) -> bool:
    """
    Score and insert one item. Returns False when the URL already exists,
    including when a concurrent run inserted it between our check and commit.
    """
    exists = db.query(StoryCandidate.id).filter(StoryCandidate.source_url == item.source_url).first()
    if exists:
        return False

    sources = item.sources
    scored = score_story(
        item.headline,
        sources,
        item.platform_signals,
        profiles,
        exemplars,
        published_at=item.published_at,
        now=now,
    )

    db.add(StoryCandidate(
        source_url=item.source_url,
        headline=item.headline,
        sources=[s.model_dump() for s in sources],
        relevance_score=scored.relevance_score,
        velocity_score=scored.velocity_score,
        category=scored.matched_category,
        topic_cluster_id=scored.topic_cluster_id,
        alert_level=scored.alert_level,
        verification_status=_initial_verification(item),
        platform_signals=item.platform_signals.model_dump() if item.platform_signals else None,
        first_seen_at=now,
        last_updated_at=now,
    ))
    try:
        db.commit()
    except IntegrityError:
        # lost the race on the unique source_url; the other run's row stands
        db.rollback()
        logger.info(f"[ingest] Duplicate insert skipped for {item.source_url}")
        return False
    return True


def run_ingest_stories(db: Session, sources: Sequence[BaseSource], now: Optional[datetime] = None) -> dict:
    """
    One ingestion cycle: fan out to every source, then dedup, score and
    insert new candidates. Existing rows are never updated.

    Returns:
        {"created": {source_name: n}, "skipped": n, "total_created": n}
    """
    now = now or datetime.now(timezone.utc)
    logger.info("[ingest] Starting ingestion cycle")

    results = fetch_all(sources)
    profiles = load_profile_snapshots(db.query(TopicProfile).all())
    exemplars = load_exemplar_fingerprints(db)

    created: Dict[str, int] = {}
    skipped = 0
    seen_this_run = set()

    for source in sources:
        items = results.get(source.source_name)
        _record_source_health(db, source, items)
        created[source.source_name] = 0

        for item in items or []:
            if item.source_url in seen_this_run:
                skipped += 1
                continue
            seen_this_run.add(item.source_url)

            if _insert_candidate(db, item, profiles, exemplars, now):
                created[source.source_name] += 1
            else:
                skipped += 1

    total = sum(created.values())
    logger.info(f"[ingest] Cycle complete: created={created} skipped={skipped}")
    return {"created": created, "skipped": skipped, "total_created": total}
