"""FastAPI dependency providers. Tests swap any of these via app.dependency_overrides."""
import hmac
import logging
from functools import lru_cache
from typing import List, Optional

from fastapi import Depends, Header, HTTPException

from storydesk.ai import TextGenerator
from storydesk.alerts import TelegramMessenger
from storydesk.config import Settings, get_settings
from storydesk.database import SessionLocal
from storydesk.sources import BaseSource, build_sources

logger = logging.getLogger(__name__)


def require_api_key(
    x_api_key: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    """Shared-secret check on the x-api-key header. With no key configured, everything is rejected."""
    expected = settings.api_key
    if not expected or not x_api_key or not hmac.compare_digest(x_api_key.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")


@lru_cache
def get_sources() -> List[BaseSource]:
    # one set of instances per process so the Reddit snapshots survive between runs
    return build_sources(get_settings())


@lru_cache
def get_text_generator() -> TextGenerator:
    return TextGenerator(get_settings())


@lru_cache
def get_messenger() -> TelegramMessenger:
    return TelegramMessenger(get_settings())


def get_session_factory():
    """Session factory for background work that outlives the request's session."""
    return SessionLocal
