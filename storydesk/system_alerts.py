"""
Named, idempotent system alerts. One row per alert type: raising upserts it,
resolving deactivates it. These feed the scraper-health endpoint.

Alert writes never propagate errors: a broken health channel must not break
the batch that is reporting through it.
"""
import logging
from typing import List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storydesk.models import SystemAlert, utcnow

logger = logging.getLogger(__name__)

# Alert types raised by the source collaborators
FEED_SCRAPER_DOWN = "feed_scraper_down"
REDDIT_SCRAPER_DOWN = "reddit_scraper_down"
GOOGLE_TRENDS_DOWN = "google_trends_down"


def raise_alert(db: Session, alert_type: str, message: str, severity: str = "error") -> None:
    """Create or re-activate the alert of this type with the latest message."""
    try:
        alert = db.query(SystemAlert).filter(SystemAlert.type == alert_type).first()
        if alert is None:
            db.add(SystemAlert(type=alert_type, message=message, severity=severity, is_active=True))
        else:
            alert.message = message
            alert.severity = severity
            alert.is_active = True
            alert.resolved_at = None
        db.commit()
        logger.warning(f"[system-alert] raised '{alert_type}': {message}")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"[system-alert] Failed to raise alert '{alert_type}': {e}")


def resolve_alert(db: Session, alert_type: str) -> None:
    """Deactivate the alert if it is active. No-op otherwise."""
    try:
        resolved = (
            db.query(SystemAlert)
            .filter(SystemAlert.type == alert_type, SystemAlert.is_active == True)
            .update({"is_active": False, "resolved_at": utcnow()}, synchronize_session=False)
        )
        db.commit()
        if resolved:
            logger.info(f"[system-alert] resolved '{alert_type}'")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"[system-alert] Failed to resolve alert '{alert_type}': {e}")


def get_active_alerts(db: Session) -> List[SystemAlert]:
    return (
        db.query(SystemAlert)
        .filter(SystemAlert.is_active == True)
        .order_by(SystemAlert.created_at.desc())
        .all()
    )


# source_name -> alert type, in the order the health report lists them
SCRAPER_ALERT_TYPES = {
    "rss_feeds": FEED_SCRAPER_DOWN,
    "reddit": REDDIT_SCRAPER_DOWN,
    "google_trends": GOOGLE_TRENDS_DOWN,
}


def scraper_health(db: Session) -> dict:
    """Per-source health derived from the active alerts."""
    active = {alert.type: alert for alert in get_active_alerts(db)}

    scrapers = {}
    for name, alert_type in SCRAPER_ALERT_TYPES.items():
        alert = active.get(alert_type)
        scrapers[name] = {"healthy": alert is None, "alert": alert.message if alert else None}

    healthy = sum(1 for s in scrapers.values() if s["healthy"])
    return {
        "status": "ok" if healthy == len(scrapers) else "degraded",
        "healthy_count": healthy,
        "total_count": len(scrapers),
        "down_count": len(scrapers) - healthy,
        "scrapers": scrapers,
    }
