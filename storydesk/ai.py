import json
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from storydesk.config import Settings
from storydesk.learning import update_topic_weights
from storydesk.models import Outcome, StoryCandidate, StoryFeedback, TopicProfile, VerificationStatus, as_utc
from storydesk.schemas import AIResult, FeedbackContext

logger = logging.getLogger(__name__)

BATCH_LIMIT = 50                      # candidates enriched per run
ENRICH_WINDOW = timedelta(hours=24)   # older candidates are never enriched
FEEDBACK_WINDOW = timedelta(days=30)
NEGATIVE_TAG_MIN_COUNT = 3
HIGH_PERFORMER_SAMPLE = 20
DEEP_TIER_THRESHOLD = 70              # relevance + velocity above this gets the deep model

FAST_TIER = "fast"
DEEP_TIER = "deep"


class MalformedResponseError(ValueError):
    """The text-generation service answered with something we can't use."""


# ---------------------------------------------------------------------------
# Text-generation collaborator
# ---------------------------------------------------------------------------

def strip_markdown_fences(raw: str) -> str:
    text = re.sub(r"^```(?:json)?\s*", "", raw.strip(), flags=re.IGNORECASE)
    return re.sub(r"\s*```\s*$", "", text).strip()


def parse_json_object(raw: str) -> dict:
    try:
        data = json.loads(strip_markdown_fences(raw or ""))
    except json.JSONDecodeError as e:
        raise MalformedResponseError(f"response is not JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedResponseError("response is not a JSON object")
    return data


class TextGenerator:
    """
    Thin wrapper over the OpenAI chat completions API with two cost tiers.
    The client is created on first use so the service starts without credentials.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.models = {FAST_TIER: settings.fast_model, DEEP_TIER: settings.deep_model}
        self._client = None

    def _get_client(self):
        if self._client is None:
            from openai import OpenAI
            self._client = OpenAI(
                api_key=self.settings.openai_api_key,
                timeout=self.settings.ai_timeout_seconds,
                max_retries=1,
            )
        return self._client

    def generate_json(self, system: str, prompt: str, tier: str = FAST_TIER, max_tokens: int = 1024) -> dict:
        """Run one completion and return the parsed JSON object, or raise MalformedResponseError."""
        response = self._get_client().chat.completions.create(
            model=self.models[tier],
            max_tokens=max_tokens,
            response_format={"type": "json_object"},
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
        )
        return parse_json_object(response.choices[0].message.content or "")


# ---------------------------------------------------------------------------
# Prompt + response handling
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = (
    "You are an editorial intelligence assistant for a news desk. Evaluate breaking stories "
    "and suggest angles our audience will read.\n\n"
    "Be conservative in verification: only mark a story VERIFIED with strong multi-source "
    "corroboration. Use PLAUSIBLE for credible single-source stories and UNVERIFIED when "
    "sources are unclear. Use DISPUTED when sources contradict each other and FLAGGED for "
    "likely misinformation.\n\n"
    "Respond only with a JSON object."
)


def build_story_prompt(
    story: StoryCandidate,
    profile_weights: Optional[Dict[str, float]],
    context: FeedbackContext,
    deep: bool,
) -> str:
    lines = [
        "Evaluate this story and suggest editorial angles.",
        "",
        f"Headline: {story.headline}",
        f"Sources: {json.dumps(story.sources or [])}",
        f"Relevance Score: {story.relevance_score}",
        f"Velocity Score: {story.velocity_score}",
        f"Category: {story.category or 'uncategorized'}",
    ]
    if profile_weights:
        lines.append(f"Topic profile keyword weights: {json.dumps(profile_weights, sort_keys=True)}")
    if context.high_performer_headlines:
        lines.append("High-performing headlines (use as angle inspiration):")
        lines.extend(f"- {h}" for h in context.high_performer_headlines)
    if context.negative_tags:
        lines.append(f"Avoid angles associated with these feedback tags: {', '.join(context.negative_tags)}")
    if deep:
        lines.append(
            "This story has a high combined relevance and velocity score. Cross-reference the sources "
            "rigorously and note any inconsistencies in verificationNotes."
        )
    lines += [
        "",
        "Respond with JSON:",
        '{"suggestedAngles": ["angle 1", "angle 2", "angle 3"], '
        '"verificationStatus": "UNVERIFIED" | "PLAUSIBLE" | "VERIFIED" | "DISPUTED" | "FLAGGED", '
        '"verificationNotes": "brief explanation"}',
    ]
    return "\n".join(lines)


def parse_ai_result(data: dict) -> AIResult:
    """Validate the collaborator's JSON. Anything off-contract is a MalformedResponseError."""
    angles = data.get("suggestedAngles")
    if not isinstance(angles, list):
        raise MalformedResponseError("suggestedAngles missing or not a list")

    status = data.get("verificationStatus")
    try:
        verification = VerificationStatus(status)
    except ValueError:
        raise MalformedResponseError(f"unknown verificationStatus {status!r}")

    notes = data.get("verificationNotes")
    return AIResult(
        suggested_angles=[a.strip() for a in angles if isinstance(a, str) and a.strip()],
        verification_status=verification,
        verification_notes=notes if isinstance(notes, str) else "",
    )


# ---------------------------------------------------------------------------
# Batch processor
# ---------------------------------------------------------------------------

def select_unprocessed(db: Session, now: datetime) -> List[StoryCandidate]:
    return (
        db.query(StoryCandidate)
        .filter(
            StoryCandidate.suggested_angles.is_(None),
            StoryCandidate.dismissed == False,
            StoryCandidate.first_seen_at >= now - ENRICH_WINDOW,
        )
        .order_by(StoryCandidate.relevance_score.desc())
        .limit(BATCH_LIMIT)
        .all()
    )


def build_feedback_context(db: Session, now: datetime) -> FeedbackContext:
    """Recent winners to imitate and frequently used feedback tags to steer away from."""
    winners = (
        db.query(StoryCandidate.headline)
        .filter(StoryCandidate.outcome == Outcome.HIGH_PERFORMER)
        .order_by(StoryCandidate.last_updated_at.desc())
        .limit(HIGH_PERFORMER_SAMPLE)
        .all()
    )

    tag_counts: Dict[str, int] = {}
    for (tags,) in db.query(StoryFeedback.tags).filter(StoryFeedback.created_at >= now - FEEDBACK_WINDOW):
        for tag in tags or []:
            tag_counts[tag] = tag_counts.get(tag, 0) + 1

    return FeedbackContext(
        high_performer_headlines=[h for (h,) in winners],
        negative_tags=sorted(tag for tag, count in tag_counts.items() if count >= NEGATIVE_TAG_MIN_COUNT),
    )


def choose_tier(story: StoryCandidate) -> str:
    return DEEP_TIER if story.relevance_score + story.velocity_score > DEEP_TIER_THRESHOLD else FAST_TIER


def weights_updated_today(db: Session, now: datetime) -> bool:
    # not race-proof: two overlapping runs can both see "not yet today"
    latest = db.query(func.max(TopicProfile.last_updated)).scalar()
    return latest is not None and as_utc(latest).date() == now.date()


def _enrich(generator: TextGenerator, prompt: str, tier: str) -> AIResult:
    return parse_ai_result(generator.generate_json(SYSTEM_PROMPT, prompt, tier=tier))


def run_story_ai_batch(
    db: Session,
    generator: TextGenerator,
    settings: Settings,
    now: Optional[datetime] = None,
) -> dict:
    """
    Enrich up to BATCH_LIMIT fresh candidates with angles and a verification
    assessment, then run the daily topic-weight update if it hasn't run today.

    Returns:
        {"processed": n, "errors": n, "total": n, "weights_updated": bool}
    """
    now = now or datetime.now(timezone.utc)
    stories = select_unprocessed(db, now)
    profiles = {p.category: dict(p.keyword_weights or {}) for p in db.query(TopicProfile).all()}
    context = build_feedback_context(db, now)

    processed = 0
    errors = 0

    if stories:
        # prompts are built here; only the network call runs on the pool
        jobs = []
        for story in stories:
            tier = choose_tier(story)
            prompt = build_story_prompt(story, profiles.get(story.category), context, deep=tier == DEEP_TIER)
            jobs.append((story, tier, prompt))

        with ThreadPoolExecutor(max_workers=max(1, settings.ai_max_workers)) as pool:
            futures = [(story, tier, pool.submit(_enrich, generator, prompt, tier)) for story, tier, prompt in jobs]

            for story, tier, future in futures:
                try:
                    result = future.result()
                except Exception as e:
                    errors += 1
                    logger.error(f"[story-ai] Failed story {story.id} ({tier}): {e}")
                    continue

                story.suggested_angles = result.suggested_angles
                story.verification_status = result.verification_status
                story.verification_notes = result.verification_notes
                db.commit()
                processed += 1

    weights_updated = False
    if not weights_updated_today(db, now):
        try:
            weights_updated = update_topic_weights(db, now=now) > 0
        except Exception as e:
            db.rollback()
            logger.error(f"[story-ai] update_topic_weights failed: {e}")

    logger.info(
        f"[story-ai] total={len(stories)} processed={processed} errors={errors} weights_updated={weights_updated}"
    )
    return {"processed": processed, "errors": errors, "total": len(stories), "weights_updated": weights_updated}
