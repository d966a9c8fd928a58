from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Runtime configuration, read from the environment (prefix STORYDESK_) or a .env file.
    Every batch job receives an instance explicitly; nothing reads os.environ directly.
    """
    model_config = SettingsConfigDict(env_prefix="STORYDESK_", env_file=".env", extra="ignore", populate_by_name=True)

    # --- Storage ---
    database_url: str = "sqlite:///./storydesk.db"

    # --- Trigger auth (shared secret sent in the x-api-key header) ---
    api_key: Optional[str] = None

    # --- Text generation ---
    openai_api_key: Optional[str] = Field(default=None, validation_alias="OPENAI_API_KEY")
    fast_model: str = "gpt-4o-mini"
    deep_model: str = "gpt-4o"
    ai_timeout_seconds: float = 30.0
    ai_max_workers: int = 4

    # --- Alert channel ---
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    newsroom_base_url: str = "http://localhost:3000"

    # --- Source collaborators ---
    http_timeout_seconds: float = 10.0
    user_agent: str = "Mozilla/5.0 (compatible; StoryDesk/1.0)"
    feed_urls: List[str] = [
        "https://feeds.npr.org/1001/rss.xml",
        "https://www.whitehouse.gov/news/feed/",
        "https://moxie.foxnews.com/google-publisher/latest.xml",
    ]
    subreddits: List[str] = ["conservative", "Republican", "politics", "news"]
    trends_geo: str = "US"

    # --- In-process scheduler (intervals in seconds) ---
    scheduler_enabled: bool = False
    ingest_interval_seconds: int = 300
    ai_interval_seconds: int = 900
    outcomes_interval_seconds: int = 3600
    alerts_interval_seconds: int = 60


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance; also used as a FastAPI dependency."""
    return Settings()
