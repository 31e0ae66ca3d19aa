"""Common contract for news source adapters: options, quota, error mapping."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone

import httpx
from dateutil import parser as date_parser

from newswire.models import Article, SourceKind

logger = logging.getLogger(__name__)

USER_AGENT = "newswire/1.0 (news aggregator)"


class SourceError(RuntimeError):
    """A fetch from one provider failed. Never escapes the aggregator."""


class SourceTimeoutError(SourceError):
    pass


class QuotaExceededError(SourceError):
    pass


class SourceAuthError(SourceError):
    pass


class SourceUnavailableError(SourceError):
    pass


@dataclass(frozen=True)
class FetchOptions:
    query: str | None = None
    category: str | None = None
    country: str | None = "us"
    language: str | None = "en"
    limit: int = 10


class QuotaCounter:
    """Monthly request ceiling. Increments are serialized by a lock."""

    def __init__(self, provider: str, limit: int | None) -> None:
        self._provider = provider
        self._limit = limit
        self._used = 0
        self._lock = threading.Lock()

    def acquire(self) -> None:
        with self._lock:
            if self._limit is not None and self._used >= self._limit:
                raise QuotaExceededError(
                    f"{self._provider}: rate limit exceeded ({self._limit} requests/month)"
                )
            self._used += 1

    def release(self) -> None:
        """Give back a request that never reached the provider."""
        with self._lock:
            self._used = max(0, self._used - 1)

    @property
    def used(self) -> int:
        return self._used

    def remaining(self) -> int | None:
        if self._limit is None:
            return None
        with self._lock:
            return max(0, self._limit - self._used)

    def reset(self) -> None:
        with self._lock:
            self._used = 0


class SourceClient(ABC):
    """Base class for provider adapters.

    Subclasses implement ``fetch`` (returning normalized articles) and
    ``health_check`` (which must not consume quota).
    """

    name: str = ""
    kind: SourceKind = SourceKind.API

    def __init__(
        self,
        *,
        quota: int | None = None,
        timeout: float = 10.0,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._timeout = timeout
        self._quota = QuotaCounter(self.name, quota)
        self._http = http_client or httpx.Client(
            timeout=timeout,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        )

    @abstractmethod
    def fetch(self, options: FetchOptions) -> list[Article]: ...

    @abstractmethod
    def health_check(self) -> bool: ...

    def remaining_quota(self) -> int | None:
        return self._quota.remaining()

    def reset_quota(self) -> None:
        self._quota.reset()
        logger.info("%s: quota counter reset", self.name)

    def close(self) -> None:
        self._http.close()

    def _get(self, url: str, params: dict | None = None, timeout: float | None = None) -> httpx.Response:
        """GET with provider errors mapped into the ``SourceError`` taxonomy."""
        try:
            response = self._http.get(url, params=params, timeout=timeout or self._timeout)
            response.raise_for_status()
            return response
        except httpx.HTTPError as exc:
            raise map_http_error(self.name, exc) from exc


def map_http_error(provider: str, exc: httpx.HTTPError) -> SourceError:
    if isinstance(exc, httpx.TimeoutException):
        return SourceTimeoutError(f"{provider}: request timeout")
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in (401, 403):
            return SourceAuthError(f"{provider}: invalid API key")
        if status == 429:
            return QuotaExceededError(f"{provider}: rate limit exceeded")
        if status >= 500:
            return SourceUnavailableError(f"{provider}: service unavailable ({status})")
        return SourceError(f"{provider} error: HTTP {status}")
    return SourceUnavailableError(f"{provider}: {exc}")


def parse_published(value: object) -> datetime | None:
    """Parse provider date strings into aware UTC datetimes."""
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = date_parser.parse(str(value).replace(" UTC", ""))
        except (ValueError, OverflowError):
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)
