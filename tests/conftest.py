"""Shared test fixtures."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from newswire.config import Settings
from newswire.models import Article, SourceKind, SourceRef
from newswire.sources.base import FetchOptions, SourceClient

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock; ``advance`` doubles as an injected ``sleep``."""

    def __init__(self, start: datetime = NOW) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


class FakeSource(SourceClient):
    """In-memory source; ``error`` makes every fetch raise it."""

    def __init__(
        self,
        name: str,
        articles: list[Article] | None = None,
        *,
        kind: SourceKind = SourceKind.API,
        error: Exception | None = None,
        gate: threading.Event | None = None,
    ) -> None:
        self.name = name
        self.kind = kind
        super().__init__(quota=None)
        self.articles = list(articles or [])
        self.error = error
        self.gate = gate
        self.calls: list[FetchOptions] = []
        self.quota_resets = 0

    def fetch(self, options: FetchOptions) -> list[Article]:
        self.calls.append(options)
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.error is not None:
            raise self.error
        return self.articles[: options.limit]

    def health_check(self) -> bool:
        return self.error is None

    def reset_quota(self) -> None:
        self.quota_resets += 1
        super().reset_quota()


def make_article(
    title: str,
    url: str,
    *,
    description: str = "",
    content: str = "",
    source: str = "Unknown",
    published_at: datetime | None = NOW,
    image_url: str | None = None,
    author: str | None = None,
    credibility: float | None = None,
    source_credibility: float | None = None,
    category: str | None = None,
) -> Article:
    return Article(
        title=title,
        url=url,
        description=description,
        content=content,
        source=SourceRef(name=source, url=url, credibility=source_credibility),
        published_at=published_at,
        image_url=image_url,
        author=author,
        credibility=credibility,
        category=category,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sample_settings(tmp_path: Path) -> Settings:
    return Settings(
        pipeline_categories=["technology"],
        pipeline_limit=20,
        feeds_path=str(tmp_path / "feeds.txt"),
        state_dir=str(tmp_path / "state"),
        output_path=str(tmp_path / "output" / "latest.json"),
    )


@pytest.fixture
def sample_articles() -> list[Article]:
    return [
        make_article(
            "Federal Reserve raises interest rates by a quarter point",
            "https://www.reuters.com/markets/fed-raises-rates",
            description="The Federal Reserve raised its benchmark rate on Wednesday.",
            source="Reuters",
            image_url="https://img.reuters.com/fed.jpg",
            author="Jane Doe",
        ),
        make_article(
            "SpaceX launches new batch of Starlink satellites",
            "https://techcrunch.com/2026/03/02/spacex-starlink",
            description="Another Falcon 9 launch carried satellites into orbit.",
            source="TechCrunch",
        ),
        make_article(
            "Researchers unveil faster battery chemistry",
            "https://www.sciencedaily.com/releases/2026/03/battery.htm",
            description="A new sodium-ion design charges in minutes.",
            source="Science Daily",
        ),
    ]
