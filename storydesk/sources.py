import logging
import re
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional
from urllib.parse import quote_plus, urlparse

import feedparser
import requests

from storydesk import system_alerts
from storydesk.config import Settings
from storydesk.schemas import DiscussionSignals, SourceItem, SourceRef, TrendSignals

logger = logging.getLogger(__name__)

FEED_ITEMS_PER_FEED = 10
REDDIT_MIN_SCORE = 50
TRENDS_TOP_N = 20


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def strip_html(text: str) -> str:
    """Remove HTML tags from a string, returning clean plain text."""
    return re.sub(r"<[^>]+>", "", text or "").strip()


def parse_date(entry) -> Optional[datetime]:
    """
    Extract a UTC datetime from a feedparser entry.
    Returns None when the entry carries no date; the scorer treats that as fresh.
    """
    parsed = getattr(entry, "published_parsed", None) or getattr(entry, "updated_parsed", None)
    if parsed:
        return datetime(*parsed[:6], tzinfo=timezone.utc)
    return None


def source_label(url: str) -> str:
    """'https://www.foxnews.com/x' -> 'Foxnews'."""
    host = (urlparse(url).hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    name = host.split(".")[0] if host else ""
    return name.capitalize() or "Unknown"


# ---------------------------------------------------------------------------
# Base source: subclass this to add a new collaborator
# ---------------------------------------------------------------------------

class BaseSource(ABC):
    """
    Abstract base class for all candidate sources.
    fetch() never raises: failures are logged, recorded in last_error, and an
    empty list is returned so the aggregator can flag the source as down.
    """
    source_name: str  # slug used in ingest counts and the health endpoint
    alert_type: str   # system alert raised when the source yields nothing
    max_items_per_run: Optional[int] = None  # cap applied by the aggregator

    def __init__(self, settings: Settings):
        self.settings = settings
        self.last_error: Optional[str] = None

    @abstractmethod
    def fetch(self) -> List[SourceItem]:
        """Fetch candidate items and return them in the uniform SourceItem shape."""

    def _get(self, url: str, **kwargs) -> requests.Response:
        response = requests.get(
            url,
            headers={"User-Agent": self.settings.user_agent},
            timeout=self.settings.http_timeout_seconds,
            **kwargs,
        )
        response.raise_for_status()
        return response


# ---------------------------------------------------------------------------
# Feed / press-release source
# ---------------------------------------------------------------------------

class FeedSource(BaseSource):
    """RSS/Atom feeds (newswires, press-release pages). One bad feed doesn't sink the rest."""
    source_name = "rss_feeds"
    alert_type = system_alerts.FEED_SCRAPER_DOWN

    def fetch(self) -> List[SourceItem]:
        self.last_error = None
        items: List[SourceItem] = []

        for feed_url in self.settings.feed_urls:
            try:
                # fetched through requests so the timeout applies; feedparser only parses
                feed = feedparser.parse(self._get(feed_url).content)
            except Exception as e:
                self.last_error = f"{feed_url}: {e}"
                logger.error(f"[{self.source_name}] Failed to fetch {feed_url}: {e}")
                continue

            feed_title = (feed.feed.get("title") or "").strip()

            for entry in feed.entries[:FEED_ITEMS_PER_FEED]:
                link = entry.get("link")
                title = strip_html(entry.get("title", ""))
                if not link or not title:
                    logger.warning(f"[{self.source_name}] Skipping entry with no link or title")
                    continue

                items.append(SourceItem(
                    headline=title,
                    source_url=link,
                    sources=[SourceRef(name=feed_title or source_label(link), url=link)],
                    published_at=parse_date(entry),
                ))

        logger.info(f"[{self.source_name}] Fetched {len(items)} items from {len(self.settings.feed_urls)} feeds")
        return items


# ---------------------------------------------------------------------------
# Discussion source (Reddit)
# ---------------------------------------------------------------------------

class RedditSource(BaseSource):
    """
    Hot posts from a set of subreddits. Velocity (upvotes/minute) is measured
    against the previous snapshot held on this instance, so it is 0 on the
    first run after startup.
    """
    source_name = "reddit"
    alert_type = system_alerts.REDDIT_SCRAPER_DOWN
    max_items_per_run = 15

    def __init__(self, settings: Settings):
        super().__init__(settings)
        self._snapshots: Dict[str, tuple] = {}  # subreddit -> (timestamp, {post_id: score})

    def _fetch_subreddit(self, subreddit: str) -> List[dict]:
        try:
            data = self._get(f"https://old.reddit.com/r/{subreddit}/hot.json", params={"limit": 25}).json()
        except Exception as e:
            self.last_error = f"r/{subreddit}: {e}"
            logger.error(f"[{self.source_name}] Failed to fetch r/{subreddit}: {e}")
            return []

        posts = [child.get("data", {}) for child in data.get("data", {}).get("children", [])]
        posts = [p for p in posts if not p.get("stickied") and p.get("score", 0) >= REDDIT_MIN_SCORE]
        logger.info(f"[{self.source_name}] r/{subreddit}: {len(posts)} posts above threshold")
        return posts

    def _velocity(self, subreddit: str, post_id: str, score: int, now: float) -> float:
        snapshot = self._snapshots.get(subreddit)
        if not snapshot:
            return 0.0
        taken_at, scores = snapshot
        previous = scores.get(post_id)
        delta_minutes = (now - taken_at) / 60
        if previous is None or delta_minutes <= 0:
            return 0.0
        return (score - previous) / delta_minutes

    def fetch(self) -> List[SourceItem]:
        self.last_error = None
        now = time.time()
        results: List[SourceItem] = []
        seen = set()

        for subreddit in self.settings.subreddits:
            posts = self._fetch_subreddit(subreddit)

            for post in posts:
                reddit_url = f"https://www.reddit.com{post.get('permalink', '')}"
                if reddit_url in seen or not post.get("title"):
                    continue
                seen.add(reddit_url)

                score = int(post.get("score", 0))
                age_minutes = max(0.0, (now - float(post.get("created_utc", now))) / 60)
                results.append(SourceItem(
                    headline=post["title"].strip(),
                    source_url=reddit_url,
                    sources=[SourceRef(name=f"r/{subreddit}", url=reddit_url)],
                    platform_signals=DiscussionSignals(
                        score=score,
                        num_comments=int(post.get("num_comments", 0)),
                        velocity=round(self._velocity(subreddit, post.get("id", ""), score, now), 3),
                        age_minutes=round(age_minutes),
                        subreddit=subreddit,
                    ),
                ))

            # snapshot after velocity is calculated
            self._snapshots[subreddit] = (now, {p.get("id", ""): int(p.get("score", 0)) for p in posts})

        results.sort(key=lambda item: item.platform_signals.score, reverse=True)
        logger.info(f"[{self.source_name}] Found {len(results)} trending posts across {len(self.settings.subreddits)} subreddits")
        return results


# ---------------------------------------------------------------------------
# Search-trends source (Google Trends RSS)
# ---------------------------------------------------------------------------

class GoogleTrendsSource(BaseSource):
    """Daily trending searches. Each trend links to its top news item when one is attached."""
    source_name = "google_trends"
    alert_type = system_alerts.GOOGLE_TRENDS_DOWN

    @property
    def feed_url(self) -> str:
        return f"https://trends.google.com/trending/rss?geo={self.settings.trends_geo}"

    def fetch(self) -> List[SourceItem]:
        self.last_error = None
        try:
            feed = feedparser.parse(self._get(self.feed_url).content)
        except Exception as e:
            self.last_error = str(e)
            logger.error(f"[{self.source_name}] Failed to fetch: {e}")
            return []

        items: List[SourceItem] = []
        for entry in feed.entries[:TRENDS_TOP_N]:
            title = (entry.get("title") or "").strip()
            if not title:
                continue

            # feedparser flattens <ht:news_item> children into ht_news_item_* keys
            news_title = (entry.get("ht_news_item_title") or "").strip()
            news_url = (entry.get("ht_news_item_url") or "").strip()
            explore_url = (
                f"https://trends.google.com/trends/explore?q={quote_plus(title)}&geo={self.settings.trends_geo}"
            )
            source_url = news_url or explore_url
            sources = [SourceRef(name="Google Trends", url=explore_url)]
            if news_url:
                sources.append(SourceRef(name=source_label(news_url), url=news_url))

            items.append(SourceItem(
                headline=strip_html(news_title) or title,
                source_url=source_url,
                sources=sources,
                platform_signals=TrendSignals(
                    trending=True,
                    traffic_volume=(entry.get("ht_approx_traffic") or "").strip() or None,
                ),
                published_at=parse_date(entry),
            ))

        logger.info(f"[{self.source_name}] Found {len(items)} trending stories")
        return items


def build_sources(settings: Settings) -> List[BaseSource]:
    """Registry of active sources: add or remove entries here to enable/disable sources."""
    return [
        FeedSource(settings),
        RedditSource(settings),
        GoogleTrendsSource(settings),
    ]
