import html
import logging
import re
from datetime import datetime, timezone
from typing import List, Optional

import requests
from sqlalchemy.orm import Session

from storydesk.config import Settings
from storydesk.models import AlertLevel, StoryCandidate, VerificationStatus

logger = logging.getLogger(__name__)

ALERT_BATCH_LIMIT = 5
ALERT_SOURCES_SHOWN = 5
TELEGRAM_TIMEOUT_SECONDS = 10
TELEGRAM_MAX_MESSAGE_LENGTH = 4096

ALERTABLE_STATUSES = (VerificationStatus.VERIFIED, VerificationStatus.PLAUSIBLE)

VERIFICATION_LABELS = {
    VerificationStatus.VERIFIED: "✅ Verified",
    VerificationStatus.PLAUSIBLE: "🟡 Plausible",
    VerificationStatus.DISPUTED: "⚠️ Disputed",
    VerificationStatus.FLAGGED: "🚩 Flagged",
}


class MessengerError(RuntimeError):
    pass


class TelegramMessenger:
    """Sends HTML messages to one chat through the Telegram Bot API."""

    def __init__(self, settings: Settings):
        self.settings = settings

    @property
    def enabled(self) -> bool:
        return bool(self.settings.telegram_bot_token and self.settings.telegram_chat_id)

    def send(self, text: str) -> None:
        if not self.enabled:
            raise MessengerError("Telegram is not configured")

        url = f"https://api.telegram.org/bot{self.settings.telegram_bot_token}/sendMessage"
        try:
            response = requests.post(
                url,
                json={
                    "chat_id": self.settings.telegram_chat_id,
                    "text": text[:TELEGRAM_MAX_MESSAGE_LENGTH],
                    "parse_mode": "HTML",
                    "disable_web_page_preview": True,
                },
                timeout=TELEGRAM_TIMEOUT_SECONDS,
            )
        except requests.RequestException as e:
            raise MessengerError(f"Telegram request failed: {e}") from e

        if not response.ok:
            raise MessengerError(f"Telegram API error {response.status_code}: {response.text[:200]}")


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

def escape_html(text: str) -> str:
    return html.escape(text or "", quote=True)


def verification_label(status) -> str:
    return VERIFICATION_LABELS.get(status, "❓ Unverified")


def _alert_sources(story: StoryCandidate) -> List[dict]:
    sources = []
    for s in story.sources or []:
        if not isinstance(s, dict):
            continue
        sources.append({
            "name": s.get("name") if isinstance(s.get("name"), str) else "Source",
            "url": s.get("url") if isinstance(s.get("url"), str) else story.source_url,
        })
    if not sources:
        sources.append({"name": "Original Source", "url": story.source_url})
    return sources


def _first_angle(story: StoryCandidate) -> Optional[str]:
    angles = story.suggested_angles
    if isinstance(angles, list) and angles:
        return str(angles[0])
    return None


def format_story_alert(story: StoryCandidate, newsroom_base_url: str) -> str:
    sources = _alert_sources(story)
    source_lines = "\n".join(
        f'• <a href="{escape_html(s["url"])}">{escape_html(s["name"])}</a>' for s in sources[:ALERT_SOURCES_SHOWN]
    )
    angle = _first_angle(story)
    angle_line = f"\n💡 <b>Angle:</b> {escape_html(angle)}\n" if angle else ""
    newsroom_url = f"{newsroom_base_url.rstrip('/')}/story-intelligence"

    message = "\n".join([
        "📰 <b>STORY ALERT</b>",
        "",
        f"<b>{escape_html(story.headline)}</b>",
        "",
        f"📊 Relevance: {story.relevance_score}/100 | Velocity: {story.velocity_score}/100",
        f"{verification_label(story.verification_status)} ({len(sources)} sources)",
        angle_line,
        "📎 <b>Sources:</b>",
        source_lines,
        "",
        f'📝 <a href="{escape_html(newsroom_url)}">Claim in Newsroom</a>',
    ])
    return re.sub(r"\n{3,}", "\n\n", message)


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

def select_pending_alerts(db: Session) -> List[StoryCandidate]:
    return (
        db.query(StoryCandidate)
        .filter(
            StoryCandidate.alert_level == AlertLevel.TELEGRAM,
            StoryCandidate.alert_sent_at.is_(None),
            StoryCandidate.verification_status.in_(ALERTABLE_STATUSES),
            StoryCandidate.dismissed == False,
            StoryCandidate.claimed_by_id.is_(None),
        )
        .order_by(StoryCandidate.relevance_score.desc())
        .limit(ALERT_BATCH_LIMIT)
        .all()
    )


def run_dispatch_alerts(db: Session, messenger, settings: Settings, now: Optional[datetime] = None) -> dict:
    """
    Push up to ALERT_BATCH_LIMIT top-tier, verified-enough candidates to the
    alert channel. A story is stamped only after a successful send, so each
    one goes out at most once and failed sends are retried next run.

    Returns:
        {"sent": n} plus "errors": ["<story id>: <message>", ...] when any send failed
    """
    pending = select_pending_alerts(db)
    if not pending:
        logger.info("[alerts] No pending alerts")
        return {"sent": 0}

    sent = 0
    errors: List[str] = []
    for story in pending:
        try:
            messenger.send(format_story_alert(story, settings.newsroom_base_url))
        except Exception as e:
            logger.error(f"[alerts] Failed to send alert for story {story.id}: {e}")
            errors.append(f"{story.id}: {e}")
            continue

        story.alert_sent_at = now or datetime.now(timezone.utc)
        db.commit()
        sent += 1

    logger.info(f"[alerts] sent={sent} failed={len(errors)}")
    result = {"sent": sent}
    if errors:
        result["errors"] = errors
    return result
