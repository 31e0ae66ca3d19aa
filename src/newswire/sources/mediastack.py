"""MediaStack news API source adapter."""

from __future__ import annotations

import logging

import httpx

from newswire.models import Article, SourceKind, SourceRef, utcnow
from newswire.sources.base import FetchOptions, SourceClient, SourceError, parse_published

logger = logging.getLogger(__name__)

_MEDIASTACK_URL = "http://api.mediastack.com/v1/news"
_MAX_RESULTS = 100


class MediaStackClient(SourceClient):
    name = "mediastack"
    kind = SourceKind.API

    def __init__(
        self,
        api_key: str,
        *,
        quota: int | None = 500,
        timeout: float = 10.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        super().__init__(quota=quota, timeout=timeout, http_client=http_client)
        self._api_key = api_key

    def fetch(self, options: FetchOptions, offset: int = 0) -> list[Article]:
        self._quota.acquire()
        params: dict[str, str | int] = {
            "access_key": self._api_key,
            "countries": options.country or "us",
            "languages": options.language or "en",
            "limit": min(options.limit, _MAX_RESULTS),
            "offset": offset,
            "sort": "published_desc",
        }
        if options.query:
            params["keywords"] = options.query
        if options.category:
            params["categories"] = options.category

        try:
            response = self._get(_MEDIASTACK_URL, params=params)
        except SourceError:
            self._quota.release()
            raise
        try:
            body = response.json()
        except ValueError as exc:
            raise SourceError("mediastack: malformed JSON response") from exc

        # MediaStack reports some failures in a 200 body.
        error = body.get("error")
        if error:
            message = error.get("message") or error.get("info") or error.get("code")
            raise SourceError(f"mediastack error: {message}")

        articles = normalize_results(body.get("data") or [])
        logger.info(
            "MediaStack: %d articles (category=%s query=%s)",
            len(articles),
            options.category,
            options.query,
        )
        return articles

    def health_check(self) -> bool:
        # Key check against the sources endpoint; search quota is untouched.
        try:
            self._get(
                "http://api.mediastack.com/v1/sources",
                params={"access_key": self._api_key, "limit": 1},
                timeout=5.0,
            )
            return True
        except SourceError:
            logger.warning("MediaStack health check failed", exc_info=True)
            return False


def normalize_results(results: list[dict]) -> list[Article]:
    articles = []
    for item in results:
        title = item.get("title") or ""
        url = item.get("url") or ""
        if not title or not url:
            continue
        description = item.get("description") or ""
        articles.append(
            Article(
                title=title,
                url=url,
                description=description,
                content=description,
                image_url=item.get("image") or None,
                published_at=parse_published(item.get("published_at")) or utcnow(),
                author=item.get("author") or None,
                source=SourceRef(name=item.get("source") or "Unknown", url=url),
                category=item.get("category") or None,
                provider="mediastack",
            )
        )
    return articles
