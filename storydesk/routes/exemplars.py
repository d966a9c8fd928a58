import logging
import math
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from storydesk import exemplars
from storydesk.ai import TextGenerator
from storydesk.config import Settings, get_settings
from storydesk.database import get_db
from storydesk.dependencies import get_session_factory, get_text_generator, require_api_key
from storydesk.errors import DuplicateExemplarError, ExemplarFetchError, ExemplarNotFoundError, InvalidExemplarUrlError
from storydesk.models import ExemplarStatus
from storydesk.schemas import ExemplarListResponse, ExemplarResponse, ExemplarSubmit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/exemplars", dependencies=[Depends(require_api_key)])


@router.post("", response_model=ExemplarResponse, status_code=201)
def submit(
    body: ExemplarSubmit,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    generator: TextGenerator = Depends(get_text_generator),
    settings: Settings = Depends(get_settings),
    session_factory=Depends(get_session_factory),
):
    """
    Register a reference article. Returns once the quick preview is attached;
    the deep fingerprint is computed afterwards, so poll GET /exemplars/{id}.
    """
    try:
        exemplar = exemplars.submit_exemplar(db, body.url, generator, settings)
    except InvalidExemplarUrlError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except DuplicateExemplarError as e:
        return JSONResponse(status_code=409, content={"detail": str(e), "id": e.existing_id})
    except ExemplarFetchError as e:
        raise HTTPException(status_code=422, detail=str(e))

    background_tasks.add_task(exemplars.run_deep_analysis, exemplar.id, session_factory, generator)
    logger.info(f"[/exemplars] Queued deep analysis for {exemplar.id}")
    return exemplar


@router.get("", response_model=ExemplarListResponse)
def list_exemplars(
    status: Optional[ExemplarStatus] = None,
    category: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    db: Session = Depends(get_db),
):
    items, total = exemplars.list_exemplars(db, status=status, category=category, page=page)
    return {
        "exemplars": items,
        "total": total,
        "page": page,
        "pages": math.ceil(total / exemplars.PAGE_SIZE) if total else 0,
    }


@router.get("/{exemplar_id}", response_model=ExemplarResponse)
def get_exemplar(exemplar_id: str, db: Session = Depends(get_db)):
    try:
        return exemplars.get_exemplar(db, exemplar_id)
    except ExemplarNotFoundError:
        raise HTTPException(status_code=404, detail="Exemplar not found")


@router.delete("/{exemplar_id}")
def delete_exemplar(exemplar_id: str, db: Session = Depends(get_db)):
    """Delete an exemplar; an analyzed one first has its topic-weight boost rolled back."""
    try:
        exemplars.delete_exemplar(db, exemplar_id)
    except ExemplarNotFoundError:
        raise HTTPException(status_code=404, detail="Exemplar not found")
    return {"status": "ok"}
