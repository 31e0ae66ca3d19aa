"""Curated RSS feed source."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path

import feedparser
import httpx

from newswire.models import Article, SourceKind, SourceRef, utcnow
from newswire.sources.base import (
    FetchOptions,
    SourceClient,
    SourceError,
    SourceUnavailableError,
    parse_published,
)
from newswire.text import extract_host, strip_html

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeedDefinition:
    name: str
    url: str
    category: str = "general"
    credibility: float = 0.75


DEFAULT_FEEDS: tuple[FeedDefinition, ...] = (
    FeedDefinition("BBC News", "http://feeds.bbci.co.uk/news/rss.xml", "general", 0.95),
    FeedDefinition("NPR News", "https://feeds.npr.org/1001/rss.xml", "general", 0.92),
    FeedDefinition("The Guardian World News", "https://www.theguardian.com/world/rss", "general", 0.9),
    FeedDefinition("TechCrunch", "https://techcrunch.com/feed/", "technology", 0.85),
    FeedDefinition("Ars Technica", "http://feeds.arstechnica.com/arstechnica/index", "technology", 0.9),
    FeedDefinition("The Verge", "https://www.theverge.com/rss/index.xml", "technology", 0.85),
    FeedDefinition("Hacker News", "https://news.ycombinator.com/rss", "technology", 0.8),
    FeedDefinition("Wired", "https://www.wired.com/feed/rss", "technology", 0.87),
    FeedDefinition("CNBC Top News", "https://www.cnbc.com/id/100003114/device/rss/rss.html", "business", 0.9),
    FeedDefinition("Financial Times", "https://www.ft.com/?format=rss", "business", 0.95),
    FeedDefinition("Science Daily", "https://www.sciencedaily.com/rss/all.xml", "science", 0.93),
)


def load_feed_urls(feeds_path: str) -> list[str]:
    """Load RSS feed URLs from a text file (one per line, # comments)."""
    path = Path(feeds_path)
    if not path.exists():
        return []
    urls = []
    for line in path.read_text(encoding="utf-8").splitlines():
        stripped = line.strip()
        if stripped and not stripped.startswith("#"):
            urls.append(stripped)
    return urls


def load_feeds(feeds_path: str) -> list[FeedDefinition]:
    """Extra feeds from ``feeds_path``: ``url`` or ``url | category`` per line."""
    feeds = []
    for line in load_feed_urls(feeds_path):
        url, _, category = (part.strip() for part in line.partition("|"))
        feeds.append(FeedDefinition(name=extract_host(url) or url, url=url, category=category or "general"))
    return feeds


def _entry_image(entry: dict) -> str | None:
    for enclosure in entry.get("enclosures") or []:
        if str(enclosure.get("type", "")).startswith("image") and enclosure.get("href"):
            return enclosure["href"]
    for key in ("media_thumbnail", "media_content"):
        media = entry.get(key) or []
        if media and media[0].get("url"):
            return media[0]["url"]
    return None


def _entry_published(entry: dict):
    for key in ("published_parsed", "updated_parsed"):
        parsed = entry.get(key)
        if parsed:
            try:
                return parse_published(f"{parsed[0]:04d}-{parsed[1]:02d}-{parsed[2]:02d}T"
                                       f"{parsed[3]:02d}:{parsed[4]:02d}:{parsed[5]:02d}Z")
            except (TypeError, IndexError):
                continue
    return parse_published(entry.get("published") or entry.get("updated"))


def normalize_entries(entries: list[dict], feed: FeedDefinition, feed_title: str = "") -> list[Article]:
    articles = []
    for entry in entries:
        title = strip_html(entry.get("title", ""))
        link = entry.get("link", "")
        if not title or not link:
            continue
        summary = strip_html(entry.get("summary", entry.get("description", "")))
        content_blocks = entry.get("content") or []
        content = strip_html(content_blocks[0].get("value", "")) if content_blocks else summary
        tags = tuple(t.get("term", "") for t in entry.get("tags") or [] if t.get("term"))
        articles.append(
            Article(
                title=title,
                url=link,
                description=summary,
                content=content,
                image_url=_entry_image(entry),
                published_at=_entry_published(entry) or utcnow(),
                author=entry.get("author") or None,
                source=SourceRef(
                    name=feed_title or feed.name,
                    url=feed.url,
                    credibility=feed.credibility,
                ),
                category=feed.category,
                tags=tags,
                provider="rss",
            )
        )
    return articles


class RssFeedClient(SourceClient):
    name = "rss"
    kind = SourceKind.RSS

    def __init__(
        self,
        feeds: list[FeedDefinition] | None = None,
        *,
        timeout: float = 10.0,
        max_workers: int = 8,
        http_client: httpx.Client | None = None,
    ) -> None:
        super().__init__(quota=None, timeout=timeout, http_client=http_client)
        self._feeds = list(feeds if feeds is not None else DEFAULT_FEEDS)
        self._max_workers = max_workers

    @property
    def feeds(self) -> list[FeedDefinition]:
        return list(self._feeds)

    def add_feed(self, feed: FeedDefinition) -> None:
        if not feed.url or not feed.name:
            raise ValueError("Feed must have url and name")
        self._feeds.append(feed)

    def parse_feed(self, feed: FeedDefinition) -> list[Article]:
        response = self._get(feed.url)
        parsed = feedparser.parse(response.text)
        if parsed.bozo and not parsed.entries:
            raise SourceError(f"rss: parse error for {feed.url}: {parsed.bozo_exception}")
        title = strip_html(parsed.feed.get("title", "")) if hasattr(parsed, "feed") else ""
        return normalize_entries(parsed.entries, feed, title)

    def fetch(self, options: FetchOptions) -> list[Article]:
        feeds = [f for f in self._feeds if not options.category or f.category == options.category]
        if not feeds:
            return []

        articles: list[Article] = []
        failures = 0
        with ThreadPoolExecutor(max_workers=min(self._max_workers, len(feeds))) as pool:
            futures = {pool.submit(self.parse_feed, feed): feed for feed in feeds}
            for future, feed in futures.items():
                try:
                    items = future.result()
                except Exception:
                    failures += 1
                    logger.warning("Failed to fetch RSS feed: %s", feed.url, exc_info=True)
                    continue
                logger.info("RSS %s: %d items", feed.url, len(items))
                articles.extend(items)

        if failures == len(feeds):
            raise SourceUnavailableError(f"rss: all {failures} feeds failed")

        seen: set[str] = set()
        unique = []
        for article in sorted(articles, key=lambda a: a.published_at or utcnow(), reverse=True):
            if article.fingerprint in seen:
                continue
            seen.add(article.fingerprint)
            unique.append(article)
        return unique[: options.limit]

    def health_check(self) -> bool:
        if not self._feeds:
            return False
        try:
            return bool(self.parse_feed(self._feeds[0]))
        except Exception:
            logger.warning("RSS health check failed", exc_info=True)
            return False
