"""Pipeline orchestrator: aggregate, score, detect trends, persist, and schedule."""

from __future__ import annotations

import argparse
import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from newswire.aggregator import FeedAggregator, ReputationStore, build_sources
from newswire.config import Settings
from newswire.credibility import CredibilityScorer, load_tier_config
from newswire.dedup import DuplicateDetector
from newswire.models import (
    Article,
    CategoryBatch,
    CredibilitySnapshot,
    MessageType,
    PipelineRun,
    Priority,
    TaskMessage,
    utcnow,
)
from newswire.scheduler import Scheduler
from newswire.state import StateDirectory
from newswire.taskqueue import TaskQueue
from newswire.trending import TrendConfig, TrendingAnalyzer

logger = logging.getLogger(__name__)

FETCH_RECEIVER = "news-fetcher"
MAINTENANCE_RECEIVER = "maintenance"
FETCH_TIMEOUT = 300.0
MAINTENANCE_TIMEOUT = 60.0
STALE_FAILURE_AGE = timedelta(hours=24)

LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"


class Pipeline:
    """The long-lived services for one process, wired by hand."""

    def __init__(
        self,
        settings: Settings,
        *,
        aggregator: FeedAggregator,
        trending: TrendingAnalyzer,
        state: StateDirectory | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.aggregator = aggregator
        self.trending = trending
        self.state = state
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> Pipeline:
        sources = build_sources(settings)
        detector = DuplicateDetector(
            near_threshold=settings.dedup_near_threshold,
            similar_threshold=settings.dedup_similar_threshold,
            vector_cache_size=settings.vector_cache_size,
        )
        scorer = CredibilityScorer(
            load_tier_config(settings.tiers_path or None),
            cache_ttl=settings.credibility_cache_ttl,
        )
        aggregator = FeedAggregator(
            sources,
            detector=detector,
            scorer=scorer,
            reputations=ReputationStore([s.name for s in sources]),
            cache_ttl=settings.aggregation_cache_ttl,
            timeout=settings.fetch_timeout_seconds,
        )
        trending = TrendingAnalyzer(
            TrendConfig(
                min_mentions=settings.trend_min_mentions,
                min_velocity=settings.trend_min_velocity,
            )
        )
        return cls(
            settings,
            aggregator=aggregator,
            trending=trending,
            state=StateDirectory(settings.state_dir),
        )

    @property
    def scorer(self) -> CredibilityScorer:
        return self.aggregator.scorer

    # --- state ---

    def load_state(self) -> None:
        if self.state is None:
            return
        self.aggregator.reputations.load(self.state.reputation.load())
        self.scorer.import_history(self.state.credibility.load().records)
        self.trending.import_history(self.state.trends.load())

    def save_state(self) -> None:
        if self.state is None:
            return
        self.state.reputation.save(self.aggregator.reputations.snapshot())
        self.state.credibility.save(CredibilitySnapshot(records=self.scorer.export_history()))
        self.state.trends.save(self.trending.export_history())
        logger.debug("Saved pipeline state")

    # --- runs ---

    def run(
        self,
        categories: Iterable[str | None] | None = None,
        *,
        query: str | None = None,
        limit: int | None = None,
    ) -> PipelineRun:
        """Aggregate each category, feed fresh articles to the scorer, then analyze trends once."""
        targets = list(categories) if categories is not None else list(self.settings.pipeline_categories)
        if not targets:
            targets = [None]
        limit = limit or self.settings.pipeline_limit
        run_at = self._clock()

        batches: list[CategoryBatch] = []
        unique: dict[str, Article] = {}
        recorded = 0
        for category in targets:
            logger.info("=== Aggregating %s ===", category or "all categories")
            result = self.aggregator.aggregate(query=query, category=category, limit=limit)
            batches.append(CategoryBatch(category=category, query=query, aggregation=result))
            meta = result.metadata
            logger.info(
                "%s: %d fetched, %d duplicates removed, %d kept%s",
                category or "all",
                meta.total_fetched,
                meta.deduplicated_count,
                len(result.articles),
                " (cached)" if meta.from_cache else "",
            )
            for article in result.articles:
                if article.fingerprint in unique:
                    continue
                unique[article.fingerprint] = article
                # Cached batches were already counted when first fetched.
                if not meta.from_cache and self.scorer.record_article(article) is not None:
                    recorded += 1

        logger.info("=== Trending analysis over %d articles ===", len(unique))
        trending = self.trending.analyze(list(unique.values()), now=run_at)
        self.save_state()
        return PipelineRun(run_at=run_at, batches=batches, trending=trending, articles_recorded=recorded)

    def write_output(self, run: PipelineRun) -> Path:
        output_path = Path(self.settings.output_path)
        output_dir = output_path.parent
        output_dir.mkdir(parents=True, exist_ok=True)

        run_json = run.model_dump_json(indent=2) + "\n"
        output_path.write_text(run_json, encoding="utf-8")

        # Timestamped copy next to latest.json
        dated_path = output_dir / f"{run.run_at:%Y-%m-%dT%H%M}.json"
        dated_path.write_text(run_json, encoding="utf-8")

        logger.info(
            "Wrote run to %s and %s (%d articles, %d trending topics)",
            output_path,
            dated_path,
            run.article_count,
            len(run.trending.trending),
        )
        return output_path

    # --- maintenance ---

    def cleanup(self) -> dict[str, int]:
        counts = {
            "aggregation_cache": self.aggregator.clear_cache(),
            "credibility_cache": self.scorer.clear_cache(),
            "vector_cache": self.aggregator.detector.clear_cache(),
            "trend_histories": self.trending.prune(self._clock()),
            "stale_failures": self.aggregator.reputations.clear_stale_failures(STALE_FAILURE_AGE),
        }
        self.save_state()
        logger.info("Cleanup: %s", ", ".join(f"{k}={v}" for k, v in counts.items()))
        return counts

    def reset_quotas(self) -> None:
        self.aggregator.reset_quotas()
        logger.info("API quotas reset for the new month")

    def close(self) -> None:
        self.aggregator.close()

    # --- queue handlers ---

    def handle_fetch(self, message: TaskMessage) -> dict[str, Any]:
        run = self.run(
            message.payload.get("categories"),
            query=message.payload.get("query"),
            limit=message.payload.get("limit"),
        )
        self.write_output(run)
        return {
            "articles": run.article_count,
            "recorded": run.articles_recorded,
            "trending": [t.keyword for t in run.trending.trending],
        }

    def handle_maintenance(self, message: TaskMessage) -> dict[str, Any]:
        action = message.payload.get("action")
        if action == "cache-cleanup":
            return self.cleanup()
        if action == "quota-reset":
            self.reset_quotas()
            return {"quotas_reset": True}
        raise ValueError(f"Unknown maintenance action: {action!r}")


def build_queue(pipeline: Pipeline, **kwargs: Any) -> TaskQueue:
    snapshot = pipeline.state.queue if pipeline.state is not None else None
    queue = TaskQueue(snapshot=snapshot, **kwargs)
    queue.register(FETCH_RECEIVER, pipeline.handle_fetch)
    queue.register(MAINTENANCE_RECEIVER, pipeline.handle_maintenance)
    return queue


def _submitter(queue: TaskQueue, receiver: str, priority: Priority, timeout: float, payload: dict) -> Callable[[], str]:
    def submit() -> str:
        handle = queue.submit(
            TaskMessage(
                sender="scheduler",
                receiver=receiver,
                type=MessageType.TASK,
                priority=priority,
                payload=dict(payload),
                timeout=timeout,
            )
        )
        return handle.job_id

    return submit


def build_scheduler(queue: TaskQueue, *, clock: Callable[[], datetime] = utcnow) -> Scheduler:
    """The three recurring jobs; each one enqueues a task rather than doing the work inline."""
    scheduler = Scheduler(clock=clock)
    scheduler.add_job(
        "news-fetch",
        "0 * * * *",
        _submitter(queue, FETCH_RECEIVER, Priority.HIGH, FETCH_TIMEOUT, {}),
        "Fetch, deduplicate and analyze news for every configured category",
    )
    scheduler.add_job(
        "cache-cleanup",
        "0 3 * * *",
        _submitter(queue, MAINTENANCE_RECEIVER, Priority.LOW, MAINTENANCE_TIMEOUT, {"action": "cache-cleanup"}),
        "Clear caches, prune trend history, clear stale failure streaks and persist state",
    )
    scheduler.add_job(
        "quota-reset",
        "0 0 1 * *",
        _submitter(queue, MAINTENANCE_RECEIVER, Priority.MEDIUM, MAINTENANCE_TIMEOUT, {"action": "quota-reset"}),
        "Reset monthly API quotas",
    )
    return scheduler


def run_pipeline(settings: Settings) -> PipelineRun:
    """Execute one fetch cycle and write the result."""
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)

    pipeline = Pipeline.from_settings(settings)
    pipeline.load_state()
    try:
        run = pipeline.run()
        pipeline.write_output(run)
    finally:
        pipeline.close()
    return run


def main() -> None:
    """CLI entry point."""
    run_pipeline(Settings.from_env())


def scheduler_main(argv: list[str] | None = None) -> None:
    """Scheduler daemon entry point, or a one-off job with ``--trigger``."""
    parser = argparse.ArgumentParser(description="Run the news pipeline on its cron schedule")
    parser.add_argument(
        "--trigger",
        choices=["news-fetch", "cache-cleanup", "quota-reset"],
        help="Run one job now, wait for it to finish, and exit",
    )
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)

    pipeline = Pipeline.from_settings(settings)
    pipeline.load_state()
    queue = build_queue(pipeline)
    queue.load()
    scheduler = build_scheduler(queue)

    if args.trigger:
        try:
            job_id = scheduler.trigger(args.trigger)
            queue.run_until_idle()
            status = queue.get_status(job_id)
        finally:
            queue.close()
            pipeline.close()
        if status is not None and status.state == "failed":
            raise SystemExit(f"Job {args.trigger} failed: {status.failure_reason}")
        logger.info("Job %s finished: %s", args.trigger, status.result if status else None)
        return

    queue.start()
    try:
        scheduler.run_forever()
    except KeyboardInterrupt:
        logger.info("Interrupted; shutting down")
    finally:
        scheduler.stop()
        queue.close()
        pipeline.save_state()
        pipeline.close()
