from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from storydesk import system_alerts
from storydesk.database import get_db
from storydesk.dependencies import require_api_key
from storydesk.schemas import SystemAlertResponse

router = APIRouter(prefix="/system", dependencies=[Depends(require_api_key)])


@router.get("/scraper-health")
def scraper_health(db: Session = Depends(get_db)):
    """Per-source health for external monitoring: "ok" when every source is up, else "degraded"."""
    return system_alerts.scraper_health(db)


@router.get("/alerts", response_model=List[SystemAlertResponse])
def active_alerts(db: Session = Depends(get_db)):
    return system_alerts.get_active_alerts(db)
