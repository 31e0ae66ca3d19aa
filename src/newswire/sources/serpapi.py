"""SerpApi (Google News engine) source adapter."""

from __future__ import annotations

import logging

import httpx

from newswire.models import Article, SourceKind, SourceRef, utcnow
from newswire.sources.base import FetchOptions, SourceClient, SourceError, parse_published

logger = logging.getLogger(__name__)

_SERPAPI_URL = "https://serpapi.com/search.json"
_MAX_RESULTS = 100


class SerpApiClient(SourceClient):
    name = "serpapi"
    kind = SourceKind.API

    def __init__(
        self,
        api_key: str,
        *,
        quota: int | None = 100,
        timeout: float = 10.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        super().__init__(quota=quota, timeout=timeout, http_client=http_client)
        self._api_key = api_key

    def fetch(self, options: FetchOptions) -> list[Article]:
        self._quota.acquire()
        params = {
            "engine": "google_news",
            "q": options.query or options.category or "latest news",
            "gl": options.country or "us",
            "hl": options.language or "en",
            "num": min(options.limit, _MAX_RESULTS),
            "api_key": self._api_key,
        }
        try:
            response = self._get(_SERPAPI_URL, params=params)
        except SourceError:
            self._quota.release()
            raise
        try:
            data = response.json()
        except ValueError as exc:
            raise SourceError("serpapi: malformed JSON response") from exc
        if data.get("error"):
            raise SourceError(f"serpapi error: {data['error']}")

        articles = normalize_results(data.get("news_results") or [])
        logger.info("SerpApi: %d articles for query=%s", len(articles), params["q"])
        return articles[: options.limit]

    def health_check(self) -> bool:
        # The account endpoint is free and does not count against the search quota.
        try:
            self._get(
                "https://serpapi.com/account.json",
                params={"api_key": self._api_key},
                timeout=5.0,
            )
            return True
        except SourceError:
            logger.warning("SerpApi health check failed", exc_info=True)
            return False


def normalize_results(results: list[dict]) -> list[Article]:
    articles = []
    for item in results:
        # Story clusters nest the actual articles one level down.
        if "stories" in item and not item.get("link"):
            articles.extend(normalize_results(item["stories"]))
            continue

        title = item.get("title", "")
        link = item.get("link", "")
        if not title or not link:
            continue

        source = item.get("source") or {}
        source_name = source.get("name", "Unknown") if isinstance(source, dict) else str(source)
        snippet = item.get("snippet", "")
        authors = item.get("authors")
        articles.append(
            Article(
                title=title,
                url=link,
                description=snippet,
                content=snippet,
                image_url=item.get("thumbnail") or None,
                published_at=parse_published(item.get("date")) or utcnow(),
                author=authors[0] if isinstance(authors, list) and authors else None,
                source=SourceRef(name=source_name, url=link),
                provider="serpapi",
            )
        )
    return articles
