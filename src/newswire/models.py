"""Pydantic data models for the entire pipeline."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from newswire.text import compute_fingerprint


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Naive datetimes are taken to be UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# --- Articles ---


class SourceRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = "Unknown"
    url: str = ""
    credibility: float | None = None


class Article(BaseModel):
    """A normalized article. Frozen: transformations go through ``model_copy``."""

    model_config = ConfigDict(frozen=True)

    title: str
    url: str
    description: str = ""
    content: str = ""
    image_url: str | None = None
    published_at: datetime | None = None
    author: str | None = None
    source: SourceRef = Field(default_factory=SourceRef)
    category: str | None = None
    tags: tuple[str, ...] = ()
    provider: str = ""
    fingerprint: str = ""
    credibility: float | None = None
    quality_score: float | None = None
    relevance_score: float | None = None

    @field_validator("published_at")
    @classmethod
    def _aware_published(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)

    @model_validator(mode="before")
    @classmethod
    def _fill_fingerprint(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("fingerprint"):
            data = {
                **data,
                "fingerprint": compute_fingerprint(data.get("title", ""), data.get("url", "")),
            }
        return data

    @property
    def body(self) -> str:
        """Content, falling back to the description."""
        return self.content or self.description


# --- Aggregation ---


class SourceKind(str, Enum):
    API = "api"
    RSS = "rss"


class Reputation(BaseModel):
    success_rate: float = 1.0
    avg_response_time_ms: float = 1000.0
    avg_article_quality: float = 0.8
    total_requests: int = 0
    failed_requests: int = 0
    consecutive_failures: int = 0
    last_failure: datetime | None = None


class FetchStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class SourceStatus(BaseModel):
    count: int = 0
    status: FetchStatus = FetchStatus.SUCCESS
    latency_ms: float | None = None
    error: str | None = None
    priority: float = 0.0
    credibility: float = 0.0


class SourceErrorEntry(BaseModel):
    source: str
    error: str
    timestamp: datetime = Field(default_factory=utcnow)


class AggregationMetadata(BaseModel):
    total_fetched: int = 0
    per_source_status: dict[str, SourceStatus] = Field(default_factory=dict)
    errors: list[SourceErrorEntry] = Field(default_factory=list)
    deduplicated_count: int = 0
    filtered_count: int = 0
    aggregation_time_ms: float = 0.0
    from_cache: bool = False
    strategy: str = "balanced"
    selected_sources: list[str] = Field(default_factory=list)


class AggregationResult(BaseModel):
    articles: list[Article] = Field(default_factory=list)
    metadata: AggregationMetadata = Field(default_factory=AggregationMetadata)


# --- Duplicate detection ---


class DuplicateKind(str, Enum):
    EXACT_URL = "exact-url"
    EXACT_FINGERPRINT = "exact-fingerprint"
    NEAR = "near-duplicate"
    SIMILAR = "similar"


class DuplicateRecord(BaseModel):
    article: Article
    duplicate_of: Article
    similarity: float
    kind: DuplicateKind


class DuplicateGroup(BaseModel):
    best: Article
    members: list[Article] = Field(default_factory=list)
    avg_similarity: float = 1.0
    kind: DuplicateKind = DuplicateKind.NEAR

    @property
    def size(self) -> int:
        return len(self.members) + 1


class DedupMetadata(BaseModel):
    original: int = 0
    threshold: float = 0.85
    exact_matches: int = 0
    near_matches: int = 0
    similar_matches: int = 0
    processing_time_ms: float = 0.0


class DedupResult(BaseModel):
    unique: list[Article] = Field(default_factory=list)
    duplicates: list[DuplicateRecord] = Field(default_factory=list)
    groups: list[DuplicateGroup] = Field(default_factory=list)
    related: list[DuplicateGroup] = Field(default_factory=list)
    metadata: DedupMetadata = Field(default_factory=DedupMetadata)

    def duplicate_map(self) -> dict[str, str]:
        """Map each dropped article's URL to the URL of the article kept in its place."""
        return {d.article.url: d.duplicate_of.url for d in self.duplicates}


# --- Credibility ---


class Tier(str, Enum):
    TIER1 = "tier1"
    TIER2 = "tier2"
    TIER3 = "tier3"
    UNKNOWN = "unknown"
    BLOCKED = "blocked"


class ArticleOutcome(BaseModel):
    timestamp: datetime
    quality: float = 0.5
    success: bool = True


class CredibilityRecord(BaseModel):
    domain: str
    outcomes: list[ArticleOutcome] = Field(default_factory=list)
    total_articles: int = 0
    successful_articles: int = 0
    failed_articles: int = 0
    avg_quality: float = 0.5
    last_updated: datetime | None = None


class HistoricalData(BaseModel):
    article_count: int = 0
    success_rate: float = 1.0
    avg_quality: float = 0.5
    fact_check_score: float = 0.5
    error_rate: float = 0.0


class CredibilityFactors(BaseModel):
    tier_classification: float = 0.5
    historical_performance: float = 0.5
    content_quality: float = 0.5
    recency: float = 0.5
    community_trust: float = 0.5


class CredibilityResult(BaseModel):
    score: float = Field(ge=0.0, le=1.0)
    tier: Tier
    domain: str = ""
    name: str = ""
    confidence: float = Field(ge=0.0, le=1.0)
    factors: CredibilityFactors = Field(default_factory=CredibilityFactors)
    articles_analyzed: int = 0
    has_history: bool = False
    evaluated_at: datetime = Field(default_factory=utcnow)


# --- Trending ---


class Mention(BaseModel):
    timestamp: datetime
    credibility: float = 0.5

    @field_validator("timestamp")
    @classmethod
    def _aware_timestamp(cls, value: datetime) -> datetime:
        return as_utc(value)


class ArticleRef(BaseModel):
    title: str
    url: str
    source: str = "Unknown"
    published_at: datetime | None = None
    credibility: float = 0.5

    @field_validator("published_at")
    @classmethod
    def _aware_published(cls, value: datetime | None) -> datetime | None:
        return as_utc(value)


class TrendScores(BaseModel):
    velocity: float = 0.0
    volume: float = 0.0
    recency: float = 0.0
    credibility: float = 0.0


class TimeDistribution(BaseModel):
    last_hour: int = 0
    last_4_hours: int = 0
    last_24_hours: int = 0


class LifecycleStage(str, Enum):
    EMERGING = "emerging"
    RISING = "rising"
    PEAK = "peak"
    DECLINING = "declining"
    FADING = "fading"


class Lifecycle(BaseModel):
    stage: LifecycleStage = LifecycleStage.EMERGING
    confidence: float = 0.5
    description: str = ""
    velocity_change: float = 0.0
    velocity_change_percent: float = 0.0
    history_length: int = 0


class TrendTopic(BaseModel):
    keyword: str
    mentions: list[Mention] = Field(default_factory=list)
    velocity: float = 0.0
    velocity_normalized: float = 0.0
    acceleration: float = 1.0
    trend_score: float = 0.0
    scores: TrendScores = Field(default_factory=TrendScores)
    distribution: TimeDistribution = Field(default_factory=TimeDistribution)
    articles: list[ArticleRef] = Field(default_factory=list)
    first_seen: datetime | None = None
    last_seen: datetime | None = None
    lifecycle: Lifecycle | None = None
    cluster_id: str | None = None

    @property
    def mention_count(self) -> int:
        return len(self.mentions)


class TopicCluster(BaseModel):
    id: str
    main_topic: str
    keywords: list[str] = Field(default_factory=list)
    total_mentions: int = 0
    avg_trend_score: float = 0.0


class TrendPoint(BaseModel):
    timestamp: datetime
    mentions: int = 0
    velocity: float = 0.0
    trend_score: float = 0.0


class TrendingMetadata(BaseModel):
    total_topics: int = 0
    trending_count: int = 0
    short_window_seconds: float = 3600.0
    medium_window_seconds: float = 14400.0
    long_window_seconds: float = 86400.0
    analyzed_at: datetime = Field(default_factory=utcnow)


class TrendingResult(BaseModel):
    trending: list[TrendTopic] = Field(default_factory=list)
    clusters: list[TopicCluster] = Field(default_factory=list)
    metadata: TrendingMetadata = Field(default_factory=TrendingMetadata)


# --- Task queue ---


class MessageType(str, Enum):
    TASK = "task"
    RESPONSE = "response"
    ALERT = "alert"
    HEARTBEAT = "heartbeat"
    ERROR = "error"


class Priority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class TaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.TIMEOUT})


class TaskMessage(BaseModel):
    """A unit of work exchanged between agents through the task queue."""

    model_config = ConfigDict(str_strip_whitespace=True, validate_assignment=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    sender: str = Field(min_length=1)
    receiver: str = Field(min_length=1)
    type: MessageType
    priority: Priority = Priority.MEDIUM
    payload: dict[str, Any] = Field(default_factory=dict)
    correlation_id: str | None = None
    timeout: float = Field(default=30.0, gt=0)  # seconds
    status: TaskStatus = TaskStatus.PENDING
    retry_count: int = Field(default=0, ge=0)
    max_retries: int | None = Field(default=None, ge=0)
    error: str | None = None
    result: Any = None
    created_at: datetime = Field(default_factory=utcnow)
    processed_at: datetime | None = None
    completed_at: datetime | None = None

    def mark_processing(self, now: datetime | None = None) -> None:
        self.status = TaskStatus.PROCESSING
        self.processed_at = now or utcnow()

    def mark_completed(self, result: Any = None, now: datetime | None = None) -> None:
        self.status = TaskStatus.COMPLETED
        self.completed_at = now or utcnow()
        self.result = result
        self.error = None

    def mark_failed(self, error: BaseException | str, now: datetime | None = None) -> None:
        self.status = TaskStatus.FAILED
        self.completed_at = now or utcnow()
        self.error = str(error) or type(error).__name__

    def mark_timeout(self, now: datetime | None = None) -> None:
        self.status = TaskStatus.TIMEOUT
        self.completed_at = now or utcnow()
        self.error = f"Task exceeded its {self.timeout:g}s timeout"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_retry(self) -> bool:
        limit = self.max_retries if self.max_retries is not None else 0
        return self.status in (TaskStatus.FAILED, TaskStatus.TIMEOUT) and self.retry_count < limit

    def reset_for_retry(self) -> None:
        """Return a failed/timed-out message to pending with one more retry used."""
        self.retry_count += 1
        self.status = TaskStatus.PENDING
        self.processed_at = None
        self.completed_at = None

    def retry_delay(self, base_delay: float) -> float:
        """Exponential backoff: ``base``, ``2*base``, ``4*base`` ... for retries 1, 2, 3."""
        return base_delay * 2 ** max(self.retry_count - 1, 0)

    def create_response(self, sender: str, payload: dict[str, Any]) -> TaskMessage:
        return TaskMessage(
            sender=sender,
            receiver=self.sender,
            type=MessageType.RESPONSE,
            priority=self.priority,
            payload=payload,
            correlation_id=self.id,
        )

    def create_error_response(self, sender: str, error: BaseException | str) -> TaskMessage:
        return TaskMessage(
            sender=sender,
            receiver=self.sender,
            type=MessageType.ERROR,
            priority=Priority.HIGH,
            payload={
                "original_message_id": self.id,
                "error": str(error),
                "original_payload": self.payload,
            },
            correlation_id=self.id,
        )


class AttemptRecord(BaseModel):
    attempt: int
    started_at: datetime
    finished_at: datetime | None = None
    status: TaskStatus = TaskStatus.PROCESSING
    error: str | None = None
    retry_delay: float | None = None


class JobRecord(BaseModel):
    message: TaskMessage
    lane: Priority
    available_at: datetime = Field(default_factory=utcnow)
    attempts: list[AttemptRecord] = Field(default_factory=list)


class JobHandle(BaseModel):
    job_id: str
    lane: Priority
    queue_name: str


class JobStatus(BaseModel):
    job_id: str
    lane: Priority
    state: str
    attempts_made: int = 0
    result: Any = None
    failure_reason: str | None = None
    attempts: list[AttemptRecord] = Field(default_factory=list)
    created_at: datetime | None = None
    processed_at: datetime | None = None
    completed_at: datetime | None = None


class QueueSnapshot(BaseModel):
    jobs: list[JobRecord] = Field(default_factory=list)
    paused: list[Priority] = Field(default_factory=list)
    saved_at: datetime | None = None


# --- Persisted state ---


class ReputationSnapshot(BaseModel):
    reputations: dict[str, Reputation] = Field(default_factory=dict)
    saved_at: datetime | None = None


class CredibilitySnapshot(BaseModel):
    records: list[CredibilityRecord] = Field(default_factory=list)
    saved_at: datetime | None = None


class TrendSnapshot(BaseModel):
    history: dict[str, list[TrendPoint]] = Field(default_factory=dict)
    saved_at: datetime | None = None


# --- Pipeline output ---


class CategoryBatch(BaseModel):
    category: str | None = None
    query: str | None = None
    aggregation: AggregationResult = Field(default_factory=AggregationResult)


class PipelineRun(BaseModel):
    """One fetch cycle: an aggregation per category and a trending pass over all of them."""

    run_at: datetime = Field(default_factory=utcnow)
    batches: list[CategoryBatch] = Field(default_factory=list)
    trending: TrendingResult = Field(default_factory=TrendingResult)
    articles_recorded: int = 0

    @property
    def article_count(self) -> int:
        return sum(len(b.aggregation.articles) for b in self.batches)
