"""Source credibility scoring: tier classification blended with per-domain history.

Score bands:

- 0.90-1.00 tier 1 (wire services, papers of record, journals, official bodies)
- 0.70-0.89 tier 2 (reliable national and trade press)
- 0.50-0.69 tier 3 (platforms and self-published outlets)
- 0.00 blocked

Each evaluation blends five factors: tier base (40%), historical performance
(25%), content quality of recent articles (20%), recency of performance (10%)
and a community-trust placeholder (5%) that currently mirrors the tier base.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from pathlib import Path

from pydantic import BaseModel, Field

from newswire.cache import TTLCache
from newswire.locks import KeyedLocks
from newswire.models import (
    Article,
    ArticleOutcome,
    CredibilityFactors,
    CredibilityRecord,
    CredibilityResult,
    HistoricalData,
    Tier,
    utcnow,
)
from newswire.text import extract_domain

logger = logging.getLogger(__name__)

WEIGHTS = {
    "tier_classification": 0.4,
    "historical_performance": 0.25,
    "content_quality": 0.2,
    "recency": 0.1,
    "community_trust": 0.05,
}
MIN_ARTICLES_FOR_HISTORY = 5
PERFORMANCE_WINDOW = timedelta(days=30)
RECENT_WINDOW = timedelta(days=7)


class TierConfig(BaseModel):
    """Domain lists and name patterns that decide a source's tier."""

    base_scores: dict[Tier, float] = Field(
        default_factory=lambda: {
            Tier.TIER1: 0.95,
            Tier.TIER2: 0.80,
            Tier.TIER3: 0.60,
            Tier.UNKNOWN: 0.50,
            Tier.BLOCKED: 0.0,
        }
    )
    tier1: list[str] = Field(
        default_factory=lambda: [
            "reuters.com", "apnews.com", "ap.org", "bbc.com", "bbc.co.uk",
            "nytimes.com", "washingtonpost.com", "wsj.com", "ft.com", "economist.com",
            "theguardian.com", "nature.com", "sciencemag.org", "thelancet.com",
            "nejm.org", "science.org", "gov.uk", "whitehouse.gov", "who.int",
            "cdc.gov", "nasa.gov",
        ]
    )
    tier2: list[str] = Field(
        default_factory=lambda: [
            "techcrunch.com", "theverge.com", "arstechnica.com", "wired.com", "cnet.com",
            "npr.org", "pbs.org", "cbc.ca", "aljazeera.com", "dw.com", "bloomberg.com",
            "forbes.com", "businessinsider.com", "cnbc.com", "technologyreview.com",
            "scientificamerican.com", "newscientist.com",
        ]
    )
    tier3: list[str] = Field(
        default_factory=lambda: [
            "medium.com", "substack.com", "reddit.com", "twitter.com",
            "linkedin.com", "youtube.com",
        ]
    )
    blocked: list[str] = Field(
        default_factory=lambda: ["theonion.com", "clickhole.com", "infowars.com", "naturalnews.com"]
    )
    tier1_patterns: list[str] = Field(
        default_factory=lambda: ["reuters", "associated press", "bbc news", "new york times"]
    )
    tier2_patterns: list[str] = Field(
        default_factory=lambda: ["npr", "pbs", "guardian", "techcrunch", "bloomberg"]
    )
    tier3_patterns: list[str] = Field(default_factory=list)

    def classify(self, domain: str, name: str = "") -> Tier:
        domain = domain.lower().strip()
        name = name.lower().strip()
        if _matches_domain(domain, self.blocked):
            return Tier.BLOCKED
        for tier, domains, patterns in (
            (Tier.TIER1, self.tier1, self.tier1_patterns),
            (Tier.TIER2, self.tier2, self.tier2_patterns),
            (Tier.TIER3, self.tier3, self.tier3_patterns),
        ):
            if _matches_domain(domain, domains):
                return tier
            if name and any(p in name for p in patterns):
                return tier
        return Tier.UNKNOWN

    def base_score(self, tier: Tier) -> float:
        return self.base_scores.get(tier, 0.5)


def _matches_domain(domain: str, listed: Iterable[str]) -> bool:
    """Exact match or any parent domain (``edition.cnn.com`` matches ``cnn.com``)."""
    if not domain:
        return False
    labels = domain.split(".")
    candidates = {".".join(labels[i:]) for i in range(len(labels) - 1)}
    return any(d in candidates for d in listed)


def load_tier_config(path: str | None) -> TierConfig:
    if not path:
        return TierConfig()
    tiers_file = Path(path)
    if not tiers_file.exists():
        logger.warning("Tier config %s not found; using built-in tiers", path)
        return TierConfig()
    return TierConfig.model_validate_json(tiers_file.read_text(encoding="utf-8"))


def article_quality(article: Article) -> float:
    """Completeness heuristic in [0, 1] for a single article."""
    score = 0.5
    if 30 <= len(article.title) <= 150:
        score += 0.1
    body_length = len(article.body)
    if body_length >= 500:
        score += 0.15
    elif body_length >= 200:
        score += 0.1
    elif body_length >= 100:
        score += 0.05
    if article.image_url:
        score += 0.05
    if article.author and article.author != "Unknown":
        score += 0.05
    if article.published_at:
        score += 0.05
    if article.source.name and article.source.name != "Unknown":
        score += 0.05
    if article.url.startswith("http") and "utm_" not in article.url:
        score += 0.05
    return max(0.0, min(1.0, score))


def content_quality(articles: list[Article]) -> float:
    """Average article quality; earlier entries (most recent first) weigh more."""
    if not articles:
        return 0.5
    n = len(articles)
    weights = [(n - i) / n for i in range(n)]
    total = sum(w * article_quality(a) for w, a in zip(weights, articles))
    return total / sum(weights)


def historical_score(data: HistoricalData) -> float:
    if data.article_count < MIN_ARTICLES_FOR_HISTORY:
        return 0.5
    score = (
        data.success_rate * 0.4
        + data.avg_quality * 0.3
        + data.fact_check_score * 0.2
        + (1 - data.error_rate) * 0.1
    )
    return max(0.0, min(1.0, score))


class CredibilityScorer:
    def __init__(
        self,
        tiers: TierConfig | None = None,
        *,
        cache_ttl: float = 3600,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.tiers = tiers or TierConfig()
        self._clock = clock
        self._cache: TTLCache[CredibilityResult] = TTLCache(cache_ttl)
        self._records: dict[str, CredibilityRecord] = {}
        self._lock_for = KeyedLocks()
        self._stats_lock = threading.Lock()
        self._stats = {
            "evaluations": 0,
            "tier1": 0,
            "tier2": 0,
            "tier3": 0,
            "unknown": 0,
            "blocked": 0,
        }

    # --- evaluation ---

    def evaluate(
        self,
        domain: str = "",
        name: str = "",
        *,
        url: str = "",
        historical: HistoricalData | None = None,
        recent_articles: list[Article] | None = None,
    ) -> CredibilityResult:
        domain = (domain or extract_domain(url)).lower()
        recent_articles = recent_articles or []
        cacheable = historical is None and not recent_articles
        cache_key = f"credibility:{domain}|{name.lower()}"
        if cacheable:
            cached = self._cache.get(cache_key)
            if cached is not None:
                return cached

        tier = self.tiers.classify(domain, name)
        base = self.tiers.base_score(tier)

        record = self._snapshot_record(domain)
        if historical is not None and historical.article_count >= MIN_ARTICLES_FOR_HISTORY:
            history = historical_score(historical)
        elif record is not None and len(record.outcomes) >= MIN_ARTICLES_FOR_HISTORY:
            history = historical_score(self._historical_from(record))
        else:
            history = base

        quality = content_quality(recent_articles) if recent_articles else base
        recency = self._recency(record)

        factors = CredibilityFactors(
            tier_classification=round(base, 2),
            historical_performance=round(history, 2),
            content_quality=round(quality, 2),
            recency=round(recency, 2),
            community_trust=round(base, 2),
        )
        raw = (
            base * WEIGHTS["tier_classification"]
            + history * WEIGHTS["historical_performance"]
            + quality * WEIGHTS["content_quality"]
            + recency * WEIGHTS["recency"]
            + base * WEIGHTS["community_trust"]
        )
        if tier is Tier.BLOCKED:
            raw = 0.0
        result = CredibilityResult(
            score=round(max(0.0, min(1.0, raw)), 2),
            tier=tier,
            domain=domain,
            name=name or domain,
            confidence=self.confidence(domain, tier, len(recent_articles)),
            factors=factors,
            articles_analyzed=len(recent_articles),
            has_history=historical is not None or record is not None,
            evaluated_at=self._clock(),
        )
        with self._stats_lock:
            self._stats["evaluations"] += 1
            self._stats[tier.value] += 1
        if cacheable:
            self._cache.set(cache_key, result)
        return result

    def evaluate_url(self, url: str) -> CredibilityResult:
        return self.evaluate(url=url)

    def evaluate_article(self, article: Article) -> CredibilityResult:
        return self.evaluate(extract_domain(article.url), article.source.name)

    def batch_evaluate(self, sources: Iterable[dict]) -> list[CredibilityResult]:
        """Evaluate ``{"domain", "name", "url", "historical", "recent_articles"}`` mappings."""
        return [
            self.evaluate(
                s.get("domain", ""),
                s.get("name", ""),
                url=s.get("url", ""),
                historical=s.get("historical"),
                recent_articles=s.get("recent_articles"),
            )
            for s in sources
        ]

    def confidence(self, domain: str, tier: Tier | None = None, article_count: int = 0) -> float:
        tier = tier or self.tiers.classify(domain)
        if tier is Tier.BLOCKED:
            return 1.0
        if tier is Tier.TIER1:
            return 0.95
        if tier is Tier.TIER2:
            return 0.9
        if tier is Tier.TIER3:
            return 0.75
        record = self._snapshot_record(domain)
        total = article_count + (len(record.outcomes) if record else 0)
        if total >= 50:
            return 0.85
        if total >= 20:
            return 0.7
        if total >= 10:
            return 0.6
        if total >= 5:
            return 0.5
        return 0.3

    def _recency(self, record: CredibilityRecord | None) -> float:
        if record is None:
            return 0.5
        cutoff = self._clock() - RECENT_WINDOW
        recent = [o.quality for o in record.outcomes if o.timestamp > cutoff]
        if not recent:
            return 0.5
        return sum(recent) / len(recent)

    @staticmethod
    def _historical_from(record: CredibilityRecord) -> HistoricalData:
        count = len(record.outcomes)
        successes = sum(1 for o in record.outcomes if o.success)
        return HistoricalData(
            article_count=count,
            success_rate=successes / count if count else 1.0,
            avg_quality=record.avg_quality,
            error_rate=(count - successes) / count if count else 0.0,
        )

    def _snapshot_record(self, domain: str) -> CredibilityRecord | None:
        if not domain:
            return None
        with self._lock_for(domain):
            record = self._records.get(domain)
            return record.model_copy(deep=True) if record else None

    # --- history writes ---

    def record_outcome(
        self,
        domain: str,
        quality: float = 0.5,
        success: bool = True,
        timestamp: datetime | None = None,
    ) -> CredibilityRecord | None:
        """Append one article outcome to ``domain``'s rolling history."""
        domain = domain.lower()
        if not domain:
            return None
        now = self._clock()
        outcome = ArticleOutcome(
            timestamp=timestamp or now,
            quality=max(0.0, min(1.0, quality)),
            success=success,
        )
        with self._lock_for(domain):
            record = self._records.get(domain)
            if record is None:
                record = self._records[domain] = CredibilityRecord(domain=domain)
            record.outcomes.append(outcome)
            record.total_articles += 1
            if success:
                record.successful_articles += 1
            else:
                record.failed_articles += 1
            cutoff = now - PERFORMANCE_WINDOW
            record.outcomes = [o for o in record.outcomes if o.timestamp > cutoff]
            if record.outcomes:
                record.avg_quality = sum(o.quality for o in record.outcomes) / len(record.outcomes)
            record.last_updated = now
            snapshot = record.model_copy(deep=True)
        self._cache.delete_prefix(f"credibility:{domain}|")
        return snapshot

    def record_article(
        self, article: Article, quality: float | None = None, success: bool = True
    ) -> CredibilityRecord | None:
        return self.record_outcome(
            extract_domain(article.url),
            article_quality(article) if quality is None else quality,
            success,
        )

    def record(self, domain: str) -> CredibilityRecord | None:
        return self._snapshot_record(domain.lower())

    # --- persistence & maintenance ---

    def export_history(self) -> list[CredibilityRecord]:
        domains = list(self._records)
        return [r for r in (self._snapshot_record(d) for d in domains) if r is not None]

    def import_history(self, records: Iterable[CredibilityRecord]) -> int:
        count = 0
        for record in records:
            with self._lock_for(record.domain):
                self._records[record.domain] = record.model_copy(deep=True)
            self._cache.delete_prefix(f"credibility:{record.domain}|")
            count += 1
        logger.info("Imported credibility history for %d domains", count)
        return count

    def clear_history(self) -> None:
        self._records.clear()
        self._cache.clear()

    def clear_cache(self) -> int:
        return self._cache.clear()

    def stats(self) -> dict:
        with self._stats_lock:
            stats = dict(self._stats)
        stats.update(
            sources_tracked=len(self._records),
            cache_size=len(self._cache),
            tier1_sources=len(self.tiers.tier1),
            tier2_sources=len(self.tiers.tier2),
            tier3_sources=len(self.tiers.tier3),
            blocked_sources=len(self.tiers.blocked),
        )
        return stats
