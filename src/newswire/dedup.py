"""Duplicate detection: an exact pass over URLs/fingerprints, then a fuzzy pass.

The fuzzy pass blends five weighted signals (title, content, URL, image,
metadata). A signal that cannot be computed for a pair is left out and the
remaining weights are renormalized.
"""

from __future__ import annotations

import hashlib
import logging
import math
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from rapidfuzz.distance import Levenshtein

from newswire.models import (
    Article,
    DedupMetadata,
    DedupResult,
    DuplicateGroup,
    DuplicateKind,
    DuplicateRecord,
    utcnow,
)
from newswire.text import extract_domain, normalize_text, normalize_url

logger = logging.getLogger(__name__)

DEFAULT_WEIGHTS = {
    "title": 0.35,
    "content": 0.30,
    "url": 0.15,
    "image": 0.10,
    "metadata": 0.10,
}

# Bodies shorter than this are compared like titles.
MIN_VECTOR_LENGTH = 50

STOP_WORDS = frozenset(
    """
    the and for are but not you all can her was one our out day get has him his
    how man new now old see two way who boy did its let put say she too use this
    that with from have they said what when your will been
    """.split()
)

_TIER1_NAMES = ("reuters", "ap", "bbc", "nytimes", "wsj")
_TIER2_NAMES = ("techcrunch", "theverge", "npr", "guardian")


def tokenize(text: str) -> list[str]:
    return [w for w in normalize_text(text).split() if len(w) > 2 and w not in STOP_WORDS]


def term_vector(text: str) -> dict[str, float]:
    """Term frequencies normalized by document length."""
    words = tokenize(text)
    if not words:
        return {}
    counts: dict[str, float] = {}
    for word in words:
        counts[word] = counts.get(word, 0) + 1
    return {term: freq / len(words) for term, freq in counts.items()}


def cosine_similarity(v1: dict[str, float], v2: dict[str, float]) -> float:
    dot = sum(value * v2.get(term, 0.0) for term, value in v1.items())
    mag1 = math.sqrt(sum(v * v for v in v1.values()))
    mag2 = math.sqrt(sum(v * v for v in v2.values()))
    if mag1 == 0 or mag2 == 0:
        return 0.0
    return min(1.0, dot / (mag1 * mag2))


def title_similarity(title1: str, title2: str) -> float:
    t1 = normalize_text(title1)
    t2 = normalize_text(title2)
    if t1 == t2:
        return 1.0
    if not t1 or not t2:
        return 0.0
    if t1 in t2 or t2 in t1:
        shorter, longer = sorted((len(t1), len(t2)))
        return 0.8 + 0.2 * shorter / longer

    tokens1 = t1.split()
    tokens2 = t2.split()
    common = [t for t in tokens1 if t in tokens2]
    token_sim = 2 * len(common) / (len(tokens1) + len(tokens2))
    return token_sim * 0.6 + Levenshtein.normalized_similarity(t1, t2) * 0.4


def url_similarity(url1: str, url2: str) -> float | None:
    """Same-site path comparison; ``None`` for different domains."""
    u1 = normalize_url(url1)
    u2 = normalize_url(url2)
    if u1 == u2:
        return 1.0
    d1 = extract_domain(url1)
    if not d1 or d1 != extract_domain(url2):
        return None
    path1 = u1.split("/", 1)[1] if "/" in u1 else ""
    path2 = u2.split("/", 1)[1] if "/" in u2 else ""
    return 0.5 + 0.5 * title_similarity(path1.replace("/", " "), path2.replace("/", " "))


def image_similarity(image1: str, image2: str) -> float:
    img1 = normalize_url(image1)
    img2 = normalize_url(image2)
    if img1 == img2:
        return 1.0
    if img1.rsplit("/", 1)[-1] == img2.rsplit("/", 1)[-1]:
        return 0.9
    return 0.0


def metadata_similarity(a: Article, b: Article) -> float | None:
    score = 0.0
    factors = 0
    if a.source.name and b.source.name and "Unknown" not in (a.source.name, b.source.name):
        score += 1.0 if a.source.name.lower() == b.source.name.lower() else 0.0
        factors += 1
    if a.author and b.author:
        score += 1.0 if a.author.lower() == b.author.lower() else 0.0
        factors += 1
    if a.published_at and b.published_at:
        hours = abs((a.published_at - b.published_at).total_seconds()) / 3600
        score += max(0.0, 1 - hours / 24)
        factors += 1
    return score / factors if factors else None


@dataclass
class _Group:
    articles: list[Article]
    similarities: list[float] = field(default_factory=list)

    @property
    def avg_similarity(self) -> float:
        if not self.similarities:
            return 1.0
        return sum(self.similarities) / len(self.similarities)


class DuplicateDetector:
    def __init__(
        self,
        *,
        near_threshold: float = 0.85,
        similar_threshold: float = 0.70,
        syndication_threshold: float = 0.90,
        weights: dict[str, float] | None = None,
        vector_cache_size: int = 1000,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._thresholds = {
            "near_duplicate": near_threshold,
            "similar": similar_threshold,
            "syndication": syndication_threshold,
        }
        self._weights = dict(DEFAULT_WEIGHTS)
        if weights:
            self._weights.update(weights)
        self._clock = clock
        self._vector_cache: OrderedDict[str, dict[str, float]] = OrderedDict()
        self._cache_size = vector_cache_size
        self._cache_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self.reset_stats()

    # --- configuration ---

    @property
    def thresholds(self) -> dict[str, float]:
        return dict(self._thresholds)

    def set_thresholds(self, **thresholds: float) -> None:
        unknown = set(thresholds) - set(self._thresholds)
        if unknown:
            raise ValueError(f"Unknown thresholds: {sorted(unknown)}")
        self._thresholds.update(thresholds)

    @property
    def weights(self) -> dict[str, float]:
        return dict(self._weights)

    def set_weights(self, **weights: float) -> None:
        unknown = set(weights) - set(self._weights)
        if unknown:
            raise ValueError(f"Unknown weights: {sorted(unknown)}")
        self._weights.update(weights)

    # --- detection ---

    def detect(
        self,
        articles: list[Article],
        *,
        threshold: float | None = None,
        include_similar: bool = False,
        return_groups: bool = True,
    ) -> DedupResult:
        started = time.perf_counter()
        threshold = self._thresholds["near_duplicate"] if threshold is None else threshold
        result = DedupResult(metadata=DedupMetadata(original=len(articles), threshold=threshold))

        remaining, exact = self.exact_duplicates(articles)
        result.duplicates.extend(exact)
        result.metadata.exact_matches = len(exact)

        for group in self.group(remaining, threshold):
            if len(group.articles) == 1:
                result.unique.append(group.articles[0])
                continue
            best = self.select_best(group.articles)
            members = [a for a in group.articles if a is not best]
            avg = group.avg_similarity
            kind = DuplicateKind.NEAR if avg >= self._thresholds["near_duplicate"] else DuplicateKind.SIMILAR
            result.unique.append(best)
            result.duplicates.extend(
                DuplicateRecord(article=a, duplicate_of=best, similarity=round(avg, 4), kind=kind)
                for a in members
            )
            if kind is DuplicateKind.NEAR:
                result.metadata.near_matches += len(members)
            else:
                result.metadata.similar_matches += len(members)
            if return_groups:
                result.groups.append(
                    DuplicateGroup(best=best, members=members, avg_similarity=round(avg, 4), kind=kind)
                )

        if include_similar:
            similar = self._thresholds["similar"]
            for group in self.group(result.unique, similar):
                if len(group.articles) < 2:
                    continue
                best = self.select_best(group.articles)
                result.related.append(
                    DuplicateGroup(
                        best=best,
                        members=[a for a in group.articles if a is not best],
                        avg_similarity=round(group.avg_similarity, 4),
                        kind=DuplicateKind.SIMILAR,
                    )
                )

        result.metadata.processing_time_ms = round((time.perf_counter() - started) * 1000, 2)
        self._update_stats(result)
        logger.info(
            "Dedup: %d -> %d articles (%d exact, %d near, %d similar)",
            len(articles),
            len(result.unique),
            result.metadata.exact_matches,
            result.metadata.near_matches,
            result.metadata.similar_matches,
        )
        return result

    def deduplicate(self, articles: list[Article]) -> list[Article]:
        return self.detect(articles, return_groups=False).unique

    def exact_duplicates(self, articles: list[Article]) -> tuple[list[Article], list[DuplicateRecord]]:
        seen_urls: dict[str, Article] = {}
        seen_fingerprints: dict[str, Article] = {}
        unique: list[Article] = []
        duplicates: list[DuplicateRecord] = []
        for article in articles:
            url = normalize_url(article.url)
            if url in seen_urls:
                duplicates.append(
                    DuplicateRecord(
                        article=article,
                        duplicate_of=seen_urls[url],
                        similarity=1.0,
                        kind=DuplicateKind.EXACT_URL,
                    )
                )
                continue
            if article.fingerprint in seen_fingerprints:
                duplicates.append(
                    DuplicateRecord(
                        article=article,
                        duplicate_of=seen_fingerprints[article.fingerprint],
                        similarity=1.0,
                        kind=DuplicateKind.EXACT_FINGERPRINT,
                    )
                )
                continue
            seen_urls[url] = article
            seen_fingerprints[article.fingerprint] = article
            unique.append(article)
        return unique, duplicates

    def group(self, articles: list[Article], threshold: float) -> list[_Group]:
        """Greedy single pass: each ungrouped article collects every later match."""
        groups: list[_Group] = []
        grouped: set[int] = set()
        comparisons = 0
        for i, anchor in enumerate(articles):
            if i in grouped:
                continue
            grouped.add(i)
            group = _Group(articles=[anchor])
            for j in range(i + 1, len(articles)):
                if j in grouped:
                    continue
                similarity = self.similarity(anchor, articles[j])
                comparisons += 1
                if similarity >= threshold:
                    group.articles.append(articles[j])
                    group.similarities.append(similarity)
                    grouped.add(j)
            groups.append(group)
        with self._stats_lock:
            self._stats["total_comparisons"] += comparisons
        return groups

    # --- similarity ---

    def similarity(self, a: Article, b: Article) -> float:
        total = 0.0
        weight = 0.0

        if a.title and b.title:
            total += title_similarity(a.title, b.title) * self._weights["title"]
            weight += self._weights["title"]

        cosine = None
        body_a, body_b = a.body, b.body
        if body_a and body_b:
            content_sim, cosine = self._content_similarity(body_a, body_b)
            total += content_sim * self._weights["content"]
            weight += self._weights["content"]

        if a.url and b.url:
            url_sim = url_similarity(a.url, b.url)
            if url_sim is not None:
                total += url_sim * self._weights["url"]
                weight += self._weights["url"]

        if a.image_url and b.image_url:
            total += image_similarity(a.image_url, b.image_url) * self._weights["image"]
            weight += self._weights["image"]

        meta_sim = metadata_similarity(a, b)
        if meta_sim is not None:
            total += meta_sim * self._weights["metadata"]
            weight += self._weights["metadata"]

        score = total / weight if weight > 0 else 0.0
        # Syndicated wire copy: same body under a different headline and domain.
        if cosine is not None and cosine >= self._thresholds["syndication"]:
            score = max(score, cosine)
        return min(1.0, score)

    def content_similarity(self, text1: str, text2: str) -> float:
        return self._content_similarity(text1, text2)[0]

    def _content_similarity(self, text1: str, text2: str) -> tuple[float, float | None]:
        """Return (similarity, cosine); cosine is ``None`` for short bodies."""
        c1 = normalize_text(text1)
        c2 = normalize_text(text2)
        if len(c1) < MIN_VECTOR_LENGTH or len(c2) < MIN_VECTOR_LENGTH:
            return title_similarity(c1, c2), None
        cosine = cosine_similarity(self._vector(c1), self._vector(c2))
        return cosine, cosine

    def _vector(self, normalized: str) -> dict[str, float]:
        key = hashlib.md5(normalized.encode()).hexdigest()
        with self._cache_lock:
            vector = self._vector_cache.get(key)
            if vector is not None:
                self._vector_cache.move_to_end(key)
                return vector
        vector = term_vector(normalized)
        with self._cache_lock:
            self._vector_cache[key] = vector
            while len(self._vector_cache) > self._cache_size:
                self._vector_cache.popitem(last=False)
        return vector

    # --- best-article selection ---

    def quality_score(self, article: Article) -> float:
        """0-100 points used to pick the article kept for a duplicate group."""
        score = 0.0
        if article.credibility is not None:
            score += article.credibility * 30
        else:
            source = article.source.name.lower()
            if any(s in source for s in _TIER1_NAMES):
                score += 27
            elif any(s in source for s in _TIER2_NAMES):
                score += 23
            else:
                score += 15

        length = len(article.body)
        if length > 2000:
            score += 20
        elif length > 1000:
            score += 15
        elif length > 500:
            score += 10
        else:
            score += 5

        title_length = len(article.title)
        if 30 <= title_length <= 100:
            score += 10
        elif title_length >= 20:
            score += 7
        else:
            score += 3

        if article.image_url:
            score += 10
        if article.author and article.author != "Unknown":
            score += 10

        if article.published_at:
            hours = (self._clock() - article.published_at).total_seconds() / 3600
            if hours <= 6:
                score += 10
            elif hours <= 24:
                score += 8
            elif hours <= 72:
                score += 5
            else:
                score += 2

        if article.url.startswith("http") and "utm_" not in article.url:
            score += 5
        if article.category or article.tags:
            score += 5
        return score

    def select_best(self, articles: list[Article]) -> Article:
        # max() keeps the first of equal scores.
        return max(articles, key=self.quality_score)

    # --- statistics ---

    def _update_stats(self, result: DedupResult) -> None:
        with self._stats_lock:
            self._stats["unique_articles"] += len(result.unique)
            for dup in result.duplicates:
                if dup.kind in (DuplicateKind.EXACT_URL, DuplicateKind.EXACT_FINGERPRINT):
                    self._stats["exact_duplicates"] += 1
                elif dup.kind is DuplicateKind.NEAR:
                    self._stats["near_duplicates"] += 1
                else:
                    self._stats["similar_articles"] += 1
                self._similarity_sum += dup.similarity
                self._similarity_count += 1

    def stats(self) -> dict:
        with self._stats_lock:
            stats = dict(self._stats)
            count = self._similarity_count
            stats["avg_similarity"] = round(self._similarity_sum / count, 4) if count else 0.0
        with self._cache_lock:
            stats["cache_size"] = len(self._vector_cache)
        stats["cache_max_size"] = self._cache_size
        return stats

    def reset_stats(self) -> None:
        with self._stats_lock:
            self._stats = {
                "total_comparisons": 0,
                "exact_duplicates": 0,
                "near_duplicates": 0,
                "similar_articles": 0,
                "unique_articles": 0,
            }
            self._similarity_sum = 0.0
            self._similarity_count = 0

    def clear_cache(self) -> int:
        with self._cache_lock:
            count = len(self._vector_cache)
            self._vector_cache.clear()
        return count
