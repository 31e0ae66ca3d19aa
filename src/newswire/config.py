"""Configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field


def _split_csv(raw: str) -> list[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    serpapi_api_key: str = ""
    mediastack_api_key: str = ""
    serpapi_quota: int = 100
    mediastack_quota: int = 500
    fetch_timeout_seconds: float = 10.0
    aggregation_cache_ttl: int = 300
    credibility_cache_ttl: int = 3600
    dedup_near_threshold: float = 0.85
    dedup_similar_threshold: float = 0.70
    vector_cache_size: int = 1000
    trend_min_mentions: int = 3
    trend_min_velocity: float = 0.5
    pipeline_categories: list[str] = field(
        default_factory=lambda: ["technology", "business", "science"]
    )
    pipeline_limit: int = 50
    feeds_path: str = "data/feeds.txt"
    tiers_path: str = ""
    state_dir: str = "data/state"
    output_path: str = "output/latest.json"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> Settings:
        return cls(
            serpapi_api_key=os.environ.get("SERPAPI_API_KEY", ""),
            mediastack_api_key=os.environ.get("MEDIASTACK_API_KEY", ""),
            serpapi_quota=int(os.environ.get("SERPAPI_QUOTA", "100")),
            mediastack_quota=int(os.environ.get("MEDIASTACK_QUOTA", "500")),
            fetch_timeout_seconds=float(os.environ.get("FETCH_TIMEOUT_SECONDS", "10")),
            aggregation_cache_ttl=int(os.environ.get("AGGREGATION_CACHE_TTL", "300")),
            credibility_cache_ttl=int(os.environ.get("CREDIBILITY_CACHE_TTL", "3600")),
            dedup_near_threshold=float(os.environ.get("DEDUP_NEAR_THRESHOLD", "0.85")),
            dedup_similar_threshold=float(os.environ.get("DEDUP_SIMILAR_THRESHOLD", "0.70")),
            vector_cache_size=int(os.environ.get("VECTOR_CACHE_SIZE", "1000")),
            trend_min_mentions=int(os.environ.get("TREND_MIN_MENTIONS", "3")),
            trend_min_velocity=float(os.environ.get("TREND_MIN_VELOCITY", "0.5")),
            pipeline_categories=_split_csv(
                os.environ.get("PIPELINE_CATEGORIES", "technology,business,science")
            ),
            pipeline_limit=int(os.environ.get("PIPELINE_LIMIT", "50")),
            feeds_path=os.environ.get("FEEDS_PATH", "data/feeds.txt"),
            tiers_path=os.environ.get("TIERS_PATH", ""),
            state_dir=os.environ.get("STATE_DIR", "data/state"),
            output_path=os.environ.get("OUTPUT_PATH", "output/latest.json"),
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )
