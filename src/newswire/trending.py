"""Trending topic detection with velocity scoring and lifecycle classification."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta

from rapidfuzz.distance import Levenshtein

from newswire.locks import KeyedLocks
from newswire.models import (
    Article,
    ArticleRef,
    Lifecycle,
    LifecycleStage,
    Mention,
    TimeDistribution,
    TopicCluster,
    TrendingMetadata,
    TrendingResult,
    TrendPoint,
    TrendScores,
    TrendSnapshot,
    TrendTopic,
    utcnow,
)

logger = logging.getLogger(__name__)

STOP_WORDS = frozenset(
    """
    the a an and or but in on at to for of with by from as is was are be been has
    have had do does did will would could should may might can this that these
    those it its their them they we you he she said says about after also more
    when where which while who into than just over
    """.split()
)

_WORD = re.compile(r"^[a-z]+$")
_NON_WORD = re.compile(r"[^\w\s]")

# Velocity (mentions/hour) that saturates the normalized velocity score.
VELOCITY_SATURATION = 5.0
# Mention count that saturates the volume score.
VOLUME_SATURATION = 10


@dataclass(frozen=True)
class TrendConfig:
    min_mentions: int = 3
    min_velocity: float = 0.5
    short_window: timedelta = timedelta(hours=1)
    medium_window: timedelta = timedelta(hours=4)
    long_window: timedelta = timedelta(hours=24)
    velocity_weight: float = 0.4
    volume_weight: float = 0.3
    recency_weight: float = 0.2
    credibility_weight: float = 0.1
    similarity_threshold: float = 0.6
    max_cluster_size: int = 10
    min_keyword_length: int = 2
    max_keyword_length: int = 20
    history_points: int = 24
    history_ttl: timedelta = timedelta(hours=24)


def extract_keywords(text: str, min_length: int = 2, max_length: int = 20) -> list[str]:
    """Lowercase alphabetic tokens within the length band, stop words removed."""
    if not text:
        return []
    words = _NON_WORD.sub(" ", text.lower()).split()
    return [
        w
        for w in words
        if min_length <= len(w) <= max_length and w not in STOP_WORDS and _WORD.match(w)
    ]


def keyword_similarity(k1: str, k2: str) -> float:
    k1, k2 = k1.lower(), k2.lower()
    if k1 == k2:
        return 1.0
    if k1 in k2 or k2 in k1:
        shorter, longer = sorted((len(k1), len(k2)))
        return shorter / longer
    return Levenshtein.normalized_similarity(k1, k2)


def classify_lifecycle(current: float, history: list[TrendPoint]) -> Lifecycle:
    """Compare ``current`` velocity with the most recent recorded velocity."""
    if not history:
        return Lifecycle(
            stage=LifecycleStage.EMERGING,
            confidence=0.5,
            description="Newly detected trend",
        )

    previous = history[-1].velocity
    change = current - previous
    if previous > 0:
        percent = change / previous * 100
    else:
        percent = 100.0 if current > 0 else 0.0

    if percent > 50:
        stage, confidence, description = (
            LifecycleStage.EMERGING, 0.8, f"Rapidly rising (+{percent:.0f}%)"
        )
    elif percent > 10:
        stage, confidence, description = (
            LifecycleStage.RISING, 0.9, f"Gaining momentum (+{percent:.0f}%)"
        )
    elif percent >= -10:
        stage, confidence, description = LifecycleStage.PEAK, 0.9, "At peak popularity"
    elif percent >= -50:
        stage, confidence, description = (
            LifecycleStage.DECLINING, 0.8, f"Losing momentum ({percent:.0f}%)"
        )
    else:
        stage, confidence, description = (
            LifecycleStage.FADING, 0.7, f"Rapidly declining ({percent:.0f}%)"
        )
    return Lifecycle(
        stage=stage,
        confidence=confidence,
        description=description,
        velocity_change=round(change, 4),
        velocity_change_percent=round(percent, 2),
        history_length=len(history),
    )


class TrendingAnalyzer:
    def __init__(
        self,
        config: TrendConfig | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config or TrendConfig()
        self._clock = clock
        self._history: dict[str, list[TrendPoint]] = {}
        self._lock_for = KeyedLocks()
        self._analyses = 0
        self._cluster_count = 0

    def analyze(
        self,
        articles: Iterable[Article],
        *,
        limit: int = 20,
        include_lifecycle: bool = True,
        include_clusters: bool = True,
        now: datetime | None = None,
    ) -> TrendingResult:
        now = now or self._clock()
        topics = [self._score(keyword, data, now) for keyword, data in self._collect(articles, now).items()]

        trending = [
            t
            for t in topics
            if t.mention_count >= self.config.min_mentions and t.velocity >= self.config.min_velocity
        ]
        trending.sort(key=lambda t: t.trend_score, reverse=True)
        trending = trending[:limit]

        if include_lifecycle:
            for topic in trending:
                topic.lifecycle = classify_lifecycle(topic.velocity, self.history(topic.keyword))

        clusters = self.cluster(trending) if include_clusters else []
        self._record(topics, now)
        self._analyses += 1
        self._cluster_count = len(clusters)

        logger.info(
            "Trending: %d candidate topics, %d trending, %d clusters",
            len(topics),
            len(trending),
            len(clusters),
        )
        return TrendingResult(
            trending=trending,
            clusters=clusters,
            metadata=TrendingMetadata(
                total_topics=len(topics),
                trending_count=len(trending),
                short_window_seconds=self.config.short_window.total_seconds(),
                medium_window_seconds=self.config.medium_window.total_seconds(),
                long_window_seconds=self.config.long_window.total_seconds(),
                analyzed_at=now,
            ),
        )

    def _collect(self, articles: Iterable[Article], now: datetime) -> dict[str, tuple[list[Mention], list[ArticleRef]]]:
        topics: dict[str, tuple[list[Mention], list[ArticleRef]]] = {}
        for article in articles:
            timestamp = article.published_at or now
            credibility = article.credibility
            if credibility is None:
                credibility = article.source.credibility if article.source.credibility is not None else 0.5
            ref = ArticleRef(
                title=article.title,
                url=article.url,
                source=article.source.name,
                published_at=article.published_at,
                credibility=credibility,
            )
            keywords = extract_keywords(
                f"{article.title} {article.description}",
                self.config.min_keyword_length,
                self.config.max_keyword_length,
            )
            # One mention per article, however often the word appears in it.
            for keyword in dict.fromkeys(keywords):
                mentions, refs = topics.setdefault(keyword, ([], []))
                mentions.append(Mention(timestamp=timestamp, credibility=credibility))
                refs.append(ref)
        return topics

    def _score(self, keyword: str, data: tuple[list[Mention], list[ArticleRef]], now: datetime) -> TrendTopic:
        mentions, refs = data
        cfg = self.config
        ages = [(now - m.timestamp).total_seconds() for m in mentions]
        short_s = cfg.short_window.total_seconds()
        medium_s = cfg.medium_window.total_seconds()

        short_count = sum(1 for a in ages if a <= short_s)
        medium_count = sum(1 for a in ages if a <= medium_s)
        velocity = short_count / (short_s / 3600)
        medium_velocity = medium_count / (medium_s / 3600)
        acceleration = velocity / medium_velocity if medium_velocity > 0 else 1.0
        velocity_norm = min(velocity * acceleration / VELOCITY_SATURATION, 1.0)

        volume = min(len(mentions) / VOLUME_SATURATION, 1.0)
        recency = max(0.0, 1 - (sum(ages) / len(ages)) / medium_s) if ages else 0.0
        credibility = sum(m.credibility for m in mentions) / len(mentions) if mentions else 0.0
        score = (
            velocity_norm * cfg.velocity_weight
            + volume * cfg.volume_weight
            + recency * cfg.recency_weight
            + credibility * cfg.credibility_weight
        )

        timestamps = [m.timestamp for m in mentions]
        return TrendTopic(
            keyword=keyword,
            mentions=mentions,
            velocity=velocity,
            velocity_normalized=round(velocity_norm, 4),
            acceleration=round(acceleration, 4),
            trend_score=round(score, 4),
            scores=TrendScores(
                velocity=round(velocity_norm, 4),
                volume=round(volume, 4),
                recency=round(recency, 4),
                credibility=round(credibility, 4),
            ),
            distribution=TimeDistribution(
                last_hour=sum(1 for a in ages if a <= 3600),
                last_4_hours=sum(1 for a in ages if a <= 4 * 3600),
                last_24_hours=sum(1 for a in ages if a <= 24 * 3600),
            ),
            articles=sorted(refs, key=lambda r: r.published_at or now, reverse=True),
            first_seen=min(timestamps) if timestamps else None,
            last_seen=max(timestamps) if timestamps else None,
        )

    def cluster(self, topics: list[TrendTopic]) -> list[TopicCluster]:
        """Greedy single-pass grouping by keyword similarity."""
        clusters: list[TopicCluster] = []
        taken: set[str] = set()
        for topic in topics:
            if topic.keyword in taken:
                continue
            taken.add(topic.keyword)
            members = [topic]
            for other in topics:
                if other.keyword in taken:
                    continue
                if keyword_similarity(topic.keyword, other.keyword) >= self.config.similarity_threshold:
                    members.append(other)
                    taken.add(other.keyword)

            members.sort(key=lambda t: t.trend_score, reverse=True)
            members = members[: self.config.max_cluster_size]
            cluster_id = f"cluster_{len(clusters) + 1}"
            for member in members:
                member.cluster_id = cluster_id
            clusters.append(
                TopicCluster(
                    id=cluster_id,
                    main_topic=topic.keyword,
                    keywords=[m.keyword for m in members],
                    total_mentions=sum(m.mention_count for m in members),
                    avg_trend_score=round(sum(m.trend_score for m in members) / len(members), 4),
                )
            )
        return sorted(clusters, key=lambda c: c.total_mentions, reverse=True)

    # --- history ---

    def _record(self, topics: list[TrendTopic], now: datetime) -> None:
        for topic in topics:
            point = TrendPoint(
                timestamp=now,
                mentions=topic.mention_count,
                velocity=topic.velocity,
                trend_score=topic.trend_score,
            )
            with self._lock_for(topic.keyword):
                points = self._history.setdefault(topic.keyword, [])
                points.append(point)
                del points[: -self.config.history_points]
        self.prune(now)

    def prune(self, now: datetime | None = None) -> int:
        """Forget keywords not seen within ``history_ttl``."""
        cutoff = (now or self._clock()) - self.config.history_ttl
        removed = 0
        for keyword in list(self._history):
            with self._lock_for(keyword):
                points = self._history.get(keyword)
                if points is not None and (not points or points[-1].timestamp < cutoff):
                    del self._history[keyword]
                    removed += 1
        if removed:
            logger.debug("Pruned %d stale trend histories", removed)
        return removed

    def history(self, keyword: str) -> list[TrendPoint]:
        with self._lock_for(keyword):
            return list(self._history.get(keyword, []))

    def clear_history(self) -> None:
        self._history.clear()
        self._cluster_count = 0

    def export_history(self) -> TrendSnapshot:
        return TrendSnapshot(history={k: self.history(k) for k in list(self._history)})

    def import_history(self, snapshot: TrendSnapshot) -> int:
        for keyword, points in snapshot.history.items():
            with self._lock_for(keyword):
                self._history[keyword] = list(points)[-self.config.history_points :]
        return len(snapshot.history)

    def stats(self) -> dict:
        return {
            "tracked_topics": len(self._history),
            "clusters": self._cluster_count,
            "analyses": self._analyses,
            "min_mentions": self.config.min_mentions,
            "min_velocity": self.config.min_velocity,
        }
