"""Multi-source aggregation: source selection, parallel fetch, reputation tracking."""

from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from newswire.cache import TTLCache, aggregation_cache_key
from newswire.config import Settings
from newswire.credibility import CredibilityScorer
from newswire.dedup import DuplicateDetector
from newswire.locks import KeyedLocks
from newswire.models import (
    AggregationMetadata,
    AggregationResult,
    Article,
    FetchStatus,
    Reputation,
    ReputationSnapshot,
    SourceErrorEntry,
    SourceKind,
    SourceStatus,
    utcnow,
)
from newswire.sources.base import FetchOptions, SourceClient, SourceTimeoutError
from newswire.sources.mediastack import MediaStackClient
from newswire.sources.rss_feeds import DEFAULT_FEEDS, RssFeedClient, load_feeds
from newswire.sources.serpapi import SerpApiClient
from newswire.text import extract_domain

logger = logging.getLogger(__name__)

STRATEGIES = frozenset({"balanced", "quality", "speed", "cost"})
SORT_KEYS = frozenset({"published_at", "quality", "relevance"})
BREAKER_THRESHOLD = 3


@dataclass
class SourceConfig:
    """Registry entry for one provider."""

    name: str
    client: SourceClient
    priority: float
    credibility: float
    cost_per_request: float = 0.0
    quota_limit: int | None = None
    enabled: bool = True
    categories: tuple[str, ...] = ()
    countries: tuple[str, ...] = ()
    languages: tuple[str, ...] = ()

    @property
    def kind(self) -> SourceKind:
        return self.client.kind

    def supports(self, category: str | None, country: str | None, language: str | None) -> bool:
        if category and self.categories and category not in self.categories:
            return False
        if (
            country
            and self.countries
            and country not in self.countries
            and "global" not in self.countries
        ):
            return False
        if language and self.languages and language not in self.languages:
            return False
        return True


SOURCE_PROFILES: dict[str, dict] = {
    "serpapi": dict(
        priority=90,
        credibility=0.85,
        cost_per_request=0.01,
        categories=("general", "business", "technology", "science", "health"),
        countries=("us", "uk", "ca", "au"),
        languages=("en",),
    ),
    "mediastack": dict(
        priority=80,
        credibility=0.80,
        cost_per_request=0.005,
        categories=(
            "general", "business", "technology", "entertainment", "sports", "science", "health",
        ),
        countries=("us", "gb", "ca", "au", "de", "fr"),
        languages=("en", "de", "fr"),
    ),
    "rss": dict(
        priority=70,
        credibility=0.90,
        cost_per_request=0.0,
        categories=("general", "business", "technology", "science", "health"),
        countries=("us", "uk", "global"),
        languages=("en",),
    ),
}


class ReputationStore:
    """Live per-source reputation. Updates to one source are serialized by its own lock."""

    def __init__(self, names: list[str] | None = None, clock: Callable[[], datetime] = utcnow) -> None:
        self._records: dict[str, Reputation] = {name: Reputation() for name in names or []}
        self._lock_for = KeyedLocks()
        self._clock = clock

    def get(self, name: str) -> Reputation:
        with self._lock_for(name):
            record = self._records.setdefault(name, Reputation())
            return record.model_copy()

    def record_success(self, name: str, response_time_ms: float, article_count: int) -> Reputation:
        with self._lock_for(name):
            rep = self._records.setdefault(name, Reputation())
            rep.total_requests += 1
            n = rep.total_requests
            rep.consecutive_failures = 0
            rep.success_rate = (rep.success_rate * (n - 1) + 1) / n
            if response_time_ms:
                rep.avg_response_time_ms = (rep.avg_response_time_ms * (n - 1) + response_time_ms) / n
            if article_count:
                quality = min(article_count / 10, 1.0)
                rep.avg_article_quality = (rep.avg_article_quality * (n - 1) + quality) / n
            return rep.model_copy()

    def record_failure(self, name: str) -> Reputation:
        with self._lock_for(name):
            rep = self._records.setdefault(name, Reputation())
            rep.total_requests += 1
            n = rep.total_requests
            rep.failed_requests += 1
            rep.consecutive_failures += 1
            rep.last_failure = self._clock()
            rep.success_rate = rep.success_rate * (n - 1) / n
            return rep.model_copy()

    def clear_stale_failures(self, max_age: timedelta) -> int:
        """Zero failure streaks whose last failure is older than ``max_age``."""
        cutoff = self._clock() - max_age
        cleared = 0
        for name in list(self._records):
            with self._lock_for(name):
                rep = self._records[name]
                if rep.consecutive_failures and rep.last_failure is not None and rep.last_failure < cutoff:
                    rep.consecutive_failures = 0
                    cleared += 1
        return cleared

    def reset(self, name: str | None = None) -> None:
        names = [name] if name else list(self._records)
        for key in names:
            with self._lock_for(key):
                self._records[key] = Reputation()
        logger.info("Reputation reset for %s", name or "all sources")

    def snapshot(self) -> ReputationSnapshot:
        return ReputationSnapshot(reputations={name: self.get(name) for name in list(self._records)})

    def load(self, snapshot: ReputationSnapshot) -> None:
        for name, rep in snapshot.reputations.items():
            with self._lock_for(name):
                self._records[name] = rep.model_copy()


def effective_priority(source: SourceConfig, rep: Reputation, strategy: str) -> float:
    if strategy == "quality":
        return (
            source.priority * 0.3
            + source.credibility * 50
            + rep.avg_article_quality * 30
            + rep.success_rate * 20
        )
    if strategy == "speed":
        return (
            source.priority * 0.4
            + (1000 / max(rep.avg_response_time_ms, 100)) * 40
            + rep.success_rate * 20
        )
    if strategy == "cost":
        cost_score = 50.0 if source.cost_per_request == 0 else 50 / (1 + source.cost_per_request * 100)
        return source.priority * 0.3 + cost_score + rep.success_rate * 20
    return (
        source.priority * 0.4
        + source.credibility * 20
        + rep.success_rate * 20
        + (20 if source.cost_per_request == 0 else 0)
    )


@dataclass
class SelectedSource:
    config: SourceConfig
    priority: float
    reputation: Reputation = field(default_factory=Reputation)


class FeedAggregator:
    def __init__(
        self,
        sources: list[SourceConfig],
        *,
        detector: DuplicateDetector | None = None,
        scorer: CredibilityScorer | None = None,
        reputations: ReputationStore | None = None,
        cache_ttl: float = 300,
        timeout: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._sources = {s.name: s for s in sources}
        self.detector = detector or DuplicateDetector()
        self.scorer = scorer or CredibilityScorer()
        self.reputations = reputations or ReputationStore(list(self._sources), clock=clock)
        self._cache: TTLCache[AggregationResult] = TTLCache(cache_ttl)
        self._timeout = timeout
        self._clock = clock
        self._stats = {
            "total_requests": 0,
            "successful_requests": 0,
            "failed_requests": 0,
            "total_articles": 0,
            "deduplicated_articles": 0,
        }
        self._source_usage: dict[str, dict[str, int]] = {}
        self._stats_lock = threading.Lock()

    @property
    def sources(self) -> dict[str, SourceConfig]:
        return dict(self._sources)

    # --- selection ---

    def is_tripped(self, rep: Reputation) -> bool:
        """Circuit open until a success, a reset or stale-failure cleanup zeroes the streak."""
        return rep.consecutive_failures >= BREAKER_THRESHOLD

    def select_sources(
        self,
        *,
        enabled_sources: list[str] | None = None,
        category: str | None = None,
        country: str | None = None,
        language: str | None = None,
        strategy: str = "balanced",
    ) -> list[SelectedSource]:
        if strategy not in STRATEGIES:
            raise ValueError(f"Unknown source strategy: {strategy!r}")
        selected = []
        for name, source in self._sources.items():
            if not source.enabled:
                continue
            if enabled_sources is not None and name not in enabled_sources:
                continue
            if not source.supports(category, country, language):
                continue
            rep = self.reputations.get(name)
            if self.is_tripped(rep):
                logger.warning(
                    "Skipping %s: circuit open after %d consecutive failures",
                    name,
                    rep.consecutive_failures,
                )
                continue
            selected.append(SelectedSource(source, effective_priority(source, rep, strategy), rep))
        selected.sort(key=lambda s: s.priority, reverse=True)
        return selected

    # --- aggregation ---

    def aggregate(
        self,
        *,
        query: str | None = None,
        category: str | None = None,
        country: str | None = "us",
        language: str | None = "en",
        limit: int = 50,
        strategy: str = "balanced",
        enabled_sources: list[str] | None = None,
        use_cache: bool = True,
        deduplicate: bool = True,
        min_credibility: float = 0.0,
        sort_by: str = "published_at",
    ) -> AggregationResult:
        if sort_by not in SORT_KEYS:
            raise ValueError(f"Unknown sort key: {sort_by!r}")
        started = time.perf_counter()
        cache_key = aggregation_cache_key(
            sources=enabled_sources,
            query=query,
            category=category,
            country=country,
            language=language,
            limit=limit,
            strategy=strategy,
            extra={"dedup": deduplicate, "min_credibility": min_credibility, "sort_by": sort_by},
        )
        if use_cache:
            cached = self._cache.get(cache_key)
            if cached is not None:
                logger.info("Aggregation cache hit: %s", cache_key)
                hit = cached.model_copy(deep=True)
                hit.metadata.from_cache = True
                return hit

        selected = self.select_sources(
            enabled_sources=enabled_sources,
            category=category,
            country=country,
            language=language,
            strategy=strategy,
        )
        logger.info(
            "Selected %d sources: %s",
            len(selected),
            ", ".join(f"{s.config.name} ({s.priority:.1f})" for s in selected),
        )
        metadata = AggregationMetadata(
            strategy=strategy,
            selected_sources=[s.config.name for s in selected],
        )

        articles: list[Article] = []
        if selected:
            options = FetchOptions(
                query=query,
                category=category,
                country=country,
                language=language,
                limit=math.ceil(limit / len(selected)),
            )
            articles = self._fetch_all(selected, options, metadata)
        metadata.total_fetched = len(articles)

        articles = [self._annotate(a) for a in articles]
        if deduplicate and articles:
            before = len(articles)
            articles = self.detector.deduplicate(articles)
            metadata.deduplicated_count = before - len(articles)

        if min_credibility > 0:
            before = len(articles)
            articles = [a for a in articles if (a.credibility or 0.0) >= min_credibility]
            metadata.filtered_count = before - len(articles)

        articles = self._sort(articles, sort_by)[:limit]
        metadata.aggregation_time_ms = round((time.perf_counter() - started) * 1000, 2)
        result = AggregationResult(articles=articles, metadata=metadata)

        self._update_stats(result)
        if use_cache:
            self._cache.set(cache_key, result.model_copy(deep=True))
        return result

    def _fetch_all(
        self,
        selected: list[SelectedSource],
        options: FetchOptions,
        metadata: AggregationMetadata,
    ) -> list[Article]:
        articles: list[Article] = []
        pool = ThreadPoolExecutor(max_workers=len(selected), thread_name_prefix="fetch")
        futures: dict[Future, SelectedSource] = {
            pool.submit(self._timed_fetch, s.config, options): s for s in selected
        }
        pending = set(futures)
        try:
            for future in as_completed(futures, timeout=self._timeout):
                pending.discard(future)
                source = futures[future]
                try:
                    items, latency_ms = future.result()
                except Exception as exc:
                    self._record_failure(source, exc, metadata)
                    continue
                self._record_success(source, items, latency_ms, metadata)
                articles.extend(items)
        except FuturesTimeout:
            for future in pending:
                future.cancel()
                source = futures[future]
                self._record_failure(
                    source,
                    SourceTimeoutError(f"{source.config.name}: no response within {self._timeout:g}s"),
                    metadata,
                )
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
        return articles

    @staticmethod
    def _timed_fetch(source: SourceConfig, options: FetchOptions) -> tuple[list[Article], float]:
        started = time.perf_counter()
        items = source.client.fetch(options)
        return items, (time.perf_counter() - started) * 1000

    def _record_success(
        self,
        source: SelectedSource,
        items: list[Article],
        latency_ms: float,
        metadata: AggregationMetadata,
    ) -> None:
        name = source.config.name
        self.reputations.record_success(name, latency_ms, len(items))
        metadata.per_source_status[name] = SourceStatus(
            count=len(items),
            status=FetchStatus.SUCCESS,
            latency_ms=round(latency_ms, 2),
            priority=round(source.priority, 2),
            credibility=source.config.credibility,
        )
        logger.info("%s: %d articles in %.0f ms", name, len(items), latency_ms)

    def _record_failure(self, source: SelectedSource, exc: BaseException, metadata: AggregationMetadata) -> None:
        name = source.config.name
        message = str(exc) or type(exc).__name__
        self.reputations.record_failure(name)
        metadata.per_source_status[name] = SourceStatus(
            count=0,
            status=FetchStatus.FAILED,
            error=message,
            priority=round(source.priority, 2),
            credibility=source.config.credibility,
        )
        metadata.errors.append(SourceErrorEntry(source=name, error=message, timestamp=self._clock()))
        logger.warning("Source %s failed: %s", name, message)

    def _annotate(self, article: Article) -> Article:
        result = self.scorer.evaluate(extract_domain(article.url), article.source.name)
        return article.model_copy(update={"credibility": result.score})

    def _sort(self, articles: list[Article], sort_by: str) -> list[Article]:
        oldest = datetime.min.replace(tzinfo=timezone.utc)
        if sort_by == "quality":
            scored = [a.model_copy(update={"quality_score": self.detector.quality_score(a)}) for a in articles]
            return sorted(scored, key=lambda a: a.quality_score or 0.0, reverse=True)
        if sort_by == "relevance":
            return sorted(
                articles,
                key=lambda a: (a.relevance_score or 0.0, a.published_at or oldest),
                reverse=True,
            )
        return sorted(articles, key=lambda a: a.published_at or oldest, reverse=True)

    # --- operations ---

    def _update_stats(self, result: AggregationResult) -> None:
        with self._stats_lock:
            self._record_stats(result.metadata)

    def _record_stats(self, meta: AggregationMetadata) -> None:
        self._stats["total_requests"] += 1
        if any(s.status is FetchStatus.SUCCESS for s in meta.per_source_status.values()):
            self._stats["successful_requests"] += 1
        elif meta.per_source_status:
            self._stats["failed_requests"] += 1
        self._stats["total_articles"] += meta.total_fetched
        self._stats["deduplicated_articles"] += meta.deduplicated_count
        for name, status in meta.per_source_status.items():
            usage = self._source_usage.setdefault(name, {"requests": 0, "articles": 0, "failures": 0})
            usage["requests"] += 1
            usage["articles"] += status.count
            if status.status is FetchStatus.FAILED:
                usage["failures"] += 1

    def stats(self) -> dict:
        with self._stats_lock:
            counters = dict(self._stats)
            usage = {k: dict(v) for k, v in self._source_usage.items()}
        return {
            **counters,
            "source_usage": usage,
            "reputations": {name: self.reputations.get(name).model_dump() for name in self._sources},
            "available_sources": [n for n, s in self._sources.items() if s.enabled],
            "cache_size": len(self._cache),
        }

    def source_info(self) -> list[dict]:
        return [
            {
                "name": name,
                "kind": s.kind.value,
                "enabled": s.enabled,
                "priority": s.priority,
                "credibility": s.credibility,
                "cost_per_request": s.cost_per_request,
                "quota_limit": s.quota_limit,
                "remaining_quota": s.client.remaining_quota(),
                "categories": list(s.categories),
                "countries": list(s.countries),
                "languages": list(s.languages),
                "reputation": self.reputations.get(name).model_dump(),
            }
            for name, s in self._sources.items()
        ]

    def reset_reputation(self, name: str | None = None) -> None:
        if name is not None and name not in self._sources:
            raise KeyError(name)
        self.reputations.reset(name)

    def reset_quotas(self) -> None:
        for source in self._sources.values():
            source.client.reset_quota()

    def clear_cache(self) -> int:
        return self._cache.clear()

    def health(self) -> dict[str, bool]:
        return {name: s.client.health_check() for name, s in self._sources.items() if s.enabled}

    def close(self) -> None:
        for source in self._sources.values():
            source.client.close()


def build_sources(settings: Settings) -> list[SourceConfig]:
    """Registry for the three built-in providers; API sources are enabled by their keys."""
    timeout = settings.fetch_timeout_seconds
    rss_feeds = list(DEFAULT_FEEDS) + load_feeds(settings.feeds_path)
    clients: list[tuple[SourceClient, bool, int | None]] = [
        (
            SerpApiClient(settings.serpapi_api_key, quota=settings.serpapi_quota, timeout=timeout),
            bool(settings.serpapi_api_key),
            settings.serpapi_quota,
        ),
        (
            MediaStackClient(settings.mediastack_api_key, quota=settings.mediastack_quota, timeout=timeout),
            bool(settings.mediastack_api_key),
            settings.mediastack_quota,
        ),
        (RssFeedClient(rss_feeds, timeout=timeout), True, None),
    ]
    return [
        SourceConfig(name=client.name, client=client, enabled=enabled, quota_limit=quota, **SOURCE_PROFILES[client.name])
        for client, enabled, quota in clients
    ]
