"""Tests for trending topic detection."""

from datetime import timedelta

import pytest

from conftest import NOW, make_article
from newswire.models import LifecycleStage, TrendPoint
from newswire.trending import (
    TrendConfig,
    TrendingAnalyzer,
    classify_lifecycle,
    extract_keywords,
    keyword_similarity,
)


@pytest.fixture
def analyzer(clock) -> TrendingAnalyzer:
    return TrendingAnalyzer(clock=clock)


def _articles(title: str, count: int, *, at=NOW, prefix: str = "x", **kwargs):
    return [
        make_article(title, f"https://news.example.com/{prefix}/{i}", published_at=at, **kwargs)
        for i in range(count)
    ]


def _point(velocity: float) -> TrendPoint:
    return TrendPoint(timestamp=NOW - timedelta(hours=1), mentions=1, velocity=velocity)


def _topic(result, keyword):
    return next(t for t in result.trending if t.keyword == keyword)


def test_extract_keywords():
    assert extract_keywords("The AI boom: Nvidia's 3rd record!") == ["ai", "boom", "nvidia", "record"]
    assert extract_keywords("") == []
    assert extract_keywords("a supercalifragilisticexpialidocious word") == ["word"]


def test_keyword_similarity():
    assert keyword_similarity("AI", "ai") == 1.0
    assert keyword_similarity("chip", "chips") == pytest.approx(0.8)
    assert keyword_similarity("rates", "storm") < 0.6


@pytest.mark.parametrize(
    ("current", "stage"),
    [
        (20.0, LifecycleStage.EMERGING),
        (12.0, LifecycleStage.RISING),
        (10.5, LifecycleStage.PEAK),
        (8.0, LifecycleStage.DECLINING),
        (2.0, LifecycleStage.FADING),
    ],
)
def test_classify_lifecycle_buckets(current, stage):
    lifecycle = classify_lifecycle(current, [_point(10.0)])
    assert lifecycle.stage is stage
    assert lifecycle.history_length == 1


def test_classify_lifecycle_without_history():
    lifecycle = classify_lifecycle(5.0, [])
    assert lifecycle.stage is LifecycleStage.EMERGING
    assert lifecycle.confidence == 0.5


def test_classify_lifecycle_from_zero():
    lifecycle = classify_lifecycle(3.0, [_point(0.0)])
    assert lifecycle.stage is LifecycleStage.EMERGING
    assert lifecycle.velocity_change_percent == 100.0


def test_scores_for_a_fresh_burst(analyzer):
    result = analyzer.analyze(_articles("Quantum", 5, credibility=0.8))
    topic = _topic(result, "quantum")
    assert topic.mention_count == 5
    assert topic.velocity == 5.0
    assert topic.acceleration == 4.0
    assert topic.scores.velocity == 1.0
    assert topic.scores.volume == 0.5
    assert topic.scores.recency == 1.0
    assert topic.scores.credibility == 0.8
    assert topic.trend_score == pytest.approx(0.4 + 0.15 + 0.2 + 0.08)
    assert topic.distribution.last_hour == 5
    assert topic.first_seen == NOW
    assert len(topic.articles) == 5


def test_naive_publish_times_are_treated_as_utc(analyzer):
    result = analyzer.analyze(_articles("Quantum", 3, at=NOW.replace(tzinfo=None)))
    assert _topic(result, "quantum").first_seen == NOW


def test_one_mention_per_article(analyzer):
    result = analyzer.analyze(_articles("Quantum quantum QUANTUM", 3))
    assert _topic(result, "quantum").mention_count == 3


def test_mention_credibility_falls_back(analyzer):
    articles = _articles("Quantum", 2, source_credibility=0.9) + _articles("Quantum", 2, prefix="y")
    topic = _topic(analyzer.analyze(articles), "quantum")
    assert sorted(m.credibility for m in topic.mentions) == [0.5, 0.5, 0.9, 0.9]


def test_thresholds_filter_topics(analyzer):
    articles = _articles("Quantum", 3) + _articles("Fusion", 2, prefix="y")
    articles += _articles("Archive", 5, at=NOW - timedelta(hours=3), prefix="z")
    result = analyzer.analyze(articles)
    keywords = {t.keyword for t in result.trending}
    assert "quantum" in keywords
    # Too few mentions.
    assert "fusion" not in keywords
    # Enough mentions but none in the last hour.
    assert "archive" not in keywords
    assert result.metadata.total_topics == 3
    assert result.metadata.trending_count == 1


def test_results_sorted_and_limited(analyzer):
    articles = _articles("Quantum", 8) + _articles("Fusion", 4, prefix="y")
    result = analyzer.analyze(articles, limit=1)
    assert [t.keyword for t in result.trending] == ["quantum"]

    scores = [t.trend_score for t in analyzer.analyze(articles).trending]
    assert scores == sorted(scores, reverse=True)


def test_ai_burst_classified_as_rising_momentum(analyzer):
    earlier = NOW - timedelta(hours=1)
    old = _articles("AI", 2, at=earlier - timedelta(minutes=30), prefix="old")
    analyzer.analyze(old, now=earlier)
    assert analyzer.history("ai")[-1].velocity == 2.0

    new = _articles("AI", 10, at=NOW - timedelta(minutes=10), prefix="new")
    result = analyzer.analyze(new + old, now=NOW)
    topic = _topic(result, "ai")
    assert topic.velocity == 10.0
    assert topic.lifecycle.stage in (LifecycleStage.EMERGING, LifecycleStage.RISING)
    assert topic.lifecycle.velocity_change_percent == 400.0


def test_lifecycle_can_be_skipped(analyzer):
    result = analyzer.analyze(_articles("Quantum", 3), include_lifecycle=False)
    assert _topic(result, "quantum").lifecycle is None


def test_clusters_group_similar_keywords(analyzer):
    articles = _articles("Chip supply", 3) + _articles("Chips demand", 3, prefix="y")
    result = analyzer.analyze(articles)
    top = result.clusters[0]
    assert set(top.keywords) == {"chip", "chips"}
    assert top.total_mentions == 6
    assert top.id.startswith("cluster_")
    assert _topic(result, "chip").cluster_id == _topic(result, "chips").cluster_id
    assert [c.total_mentions for c in result.clusters] == sorted(
        (c.total_mentions for c in result.clusters), reverse=True
    )


def test_cluster_size_is_capped():
    analyzer = TrendingAnalyzer(TrendConfig(max_cluster_size=2))
    articles = (
        _articles("Rate", 3, prefix="a")
        + _articles("Rates", 3, prefix="b")
        + _articles("Rated", 3, prefix="c")
    )
    result = analyzer.analyze(articles, now=NOW)
    assert max(len(c.keywords) for c in result.clusters) == 2


def test_clusters_can_be_skipped(analyzer):
    result = analyzer.analyze(_articles("Quantum", 3), include_clusters=False)
    assert result.clusters == []


def test_history_is_capped(analyzer, clock):
    for _ in range(30):
        clock.advance(60)
        analyzer.analyze(_articles("Quantum", 3, at=clock.now))
    assert len(analyzer.history("quantum")) == 24


def test_history_recorded_for_non_trending_topics(analyzer):
    analyzer.analyze(_articles("Fusion", 1))
    assert len(analyzer.history("fusion")) == 1


def test_unseen_history_is_pruned(analyzer):
    analyzer.analyze(_articles("Quantum", 3), now=NOW)
    later = NOW + timedelta(hours=25)
    analyzer.analyze(_articles("Fusion", 3, at=later), now=later)
    assert analyzer.history("quantum") == []
    assert analyzer.history("fusion")


def test_export_import_history(analyzer, clock):
    analyzer.analyze(_articles("Quantum", 3))
    restored = TrendingAnalyzer(clock=clock)
    assert restored.import_history(analyzer.export_history()) == 1
    assert restored.history("quantum") == analyzer.history("quantum")


def test_stats_and_clear(analyzer):
    analyzer.analyze(_articles("Chip supply", 3) + _articles("Chips demand", 3, prefix="y"))
    stats = analyzer.stats()
    assert stats["analyses"] == 1
    assert stats["tracked_topics"] == 4
    assert stats["clusters"] >= 1

    analyzer.clear_history()
    assert analyzer.stats()["tracked_topics"] == 0
