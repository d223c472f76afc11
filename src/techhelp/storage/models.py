"""SQLModel database models.

The relational store doubles as the job log: pipeline runs, queue items,
nightly runs and audit runs are rows polled by clients, not in-memory state.
"""

from __future__ import annotations

import json
from datetime import date, datetime, timezone
from enum import Enum

from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, SQLModel

from techhelp.utils import utcnow


class UTCDateTime(TypeDecorator):
    """Aware UTC datetimes in Python, naive UTC in SQLite."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class ArticleStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    NEEDS_REVIEW = "needs_review"


class RunStatus(str, Enum):
    PENDING = "pending"
    CHECKING = "checking"
    RESEARCHING = "researching"
    OUTLINING = "outlining"
    WRITING = "writing"
    VERIFYING = "verifying"
    OPTIMIZING = "optimizing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


STAGE_ORDER = [
    RunStatus.PENDING,
    RunStatus.CHECKING,
    RunStatus.RESEARCHING,
    RunStatus.OUTLINING,
    RunStatus.WRITING,
    RunStatus.VERIFYING,
    RunStatus.OPTIMIZING,
]
TERMINAL_STATUSES = {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.SKIPPED}


class RunMode(str, Enum):
    MANUAL = "manual"
    BATCH = "batch"
    SCHEDULED = "scheduled"
    NIGHTLY = "nightly"


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


class JobStatus(str, Enum):
    """Status of a batch, nightly or audit run."""

    RUNNING = "running"
    RESEARCHING = "researching"
    GENERATING = "generating"
    COMPLETED = "completed"
    STOPPED = "stopped"
    FAILED = "failed"
    SKIPPED = "skipped"


class FindingType(str, Enum):
    DUPLICATE = "duplicate"
    GRAMMAR = "grammar"
    WORDING = "wording"
    SEO = "seo"
    FACTUAL = "factual"
    QUALITY = "quality"
    FORMATTING = "formatting"
    AUTO_FIX = "auto_fix"
    AUTO_ACTION = "auto_action"


class FindingStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class Category(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    name: str
    slug: str = Field(unique=True, index=True)
    description: str = ""
    icon: str = "Lightbulb"
    sort_order: int = 0
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class Article(SQLModel, table=True):
    """A knowledge-base article, human or machine written."""

    id: int | None = Field(default=None, primary_key=True)
    title: str
    slug: str = Field(unique=True, index=True)
    excerpt: str = ""
    content: str = ""  # markdown
    category_id: int | None = Field(default=None, foreign_key="category.id")
    status: str = ArticleStatus.DRAFT.value
    featured: bool = False
    read_time: int = 5
    tags_json: str = "[]"
    seo_title: str = ""
    seo_description: str = ""
    ai_generated: bool = False
    sources_json: str = "[]"  # [{"title": ..., "url": ...}]
    view_count: int = 0
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    published_at: datetime | None = Field(default=None, sa_type=UTCDateTime)

    @property
    def tags(self) -> list[str]:
        return json.loads(self.tags_json)

    @property
    def sources(self) -> list[dict]:
        return json.loads(self.sources_json)


class PipelineRun(SQLModel, table=True):
    """One topic attempt through the six-stage pipeline."""

    id: int | None = Field(default=None, primary_key=True)
    topic: str
    mode: str = RunMode.MANUAL.value
    status: str = Field(default=RunStatus.PENDING.value, index=True)
    current_step: int = 0
    total_steps: int = 6
    research_notes: str = ""
    research_sources_json: str = "[]"
    generated_outline: str = ""
    metrics_json: str = "{}"  # quality_score, factual_score, sources_count
    article_id: int | None = Field(default=None, foreign_key="article.id")
    error_message: str | None = None
    started_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    completed_at: datetime | None = Field(default=None, sa_type=UTCDateTime)

    @property
    def metrics(self) -> dict:
        return json.loads(self.metrics_json)

    @property
    def research_sources(self) -> list[dict]:
        return json.loads(self.research_sources_json)


class AgentLog(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    action: str
    status: str = "success"
    article_id: int | None = None
    details_json: str = "{}"
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class QueueItem(SQLModel, table=True):
    """Deferred pipeline work for one (run_date, batch_number) slot.

    The manual queue uses ``run_date=None`` and ``batch_number=None``.
    """

    id: int | None = Field(default=None, primary_key=True)
    run_date: date | None = Field(default=None, index=True)
    batch_number: int | None = Field(default=None, index=True)
    topic: str
    category_id: int | None = None
    priority: int = 0  # lower = sooner
    status: str = Field(default=QueueStatus.PENDING.value, index=True)
    article_id: int | None = None
    error_message: str | None = None
    leased_at: datetime | None = Field(default=None, sa_type=UTCDateTime)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    processed_at: datetime | None = Field(default=None, sa_type=UTCDateTime)


class BatchRun(SQLModel, table=True):
    """Durable handle for an ad-hoc, scheduled or queue-draining batch."""

    id: int | None = Field(default=None, primary_key=True)
    mode: str = RunMode.BATCH.value
    status: str = JobStatus.RUNNING.value
    articles_generated: int = 0
    articles_published: int = 0
    articles_failed: int = 0
    articles_skipped: int = 0
    stop_requested: bool = False
    error_message: str | None = None
    started_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    completed_at: datetime | None = Field(default=None, sa_type=UTCDateTime)


class NightlyRun(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    batch_number: int = 1
    status: str = JobStatus.RUNNING.value
    categories_processed: int = 0
    categories_created: int = 0
    topics_found: int = 0
    topics_after_dedup: int = 0
    articles_generated: int = 0
    articles_published: int = 0
    articles_failed: int = 0
    articles_skipped: int = 0
    details_json: str = "{}"  # per-category outcome keyed by category name
    stop_requested: bool = False
    error_message: str | None = None
    started_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    completed_at: datetime | None = Field(default=None, sa_type=UTCDateTime)

    @property
    def details(self) -> dict:
        return json.loads(self.details_json)


class AuditRun(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    status: str = JobStatus.RUNNING.value
    auto_fix: bool = False
    articles_scanned: int = 0
    issues_found: int = 0
    auto_fixed: int = 0
    duplicates_found: int = 0
    set_to_draft: int = 0
    batches_failed: int = 0
    fix_all_status: str | None = None  # fixing | fixed
    error_message: str | None = None
    started_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    completed_at: datetime | None = Field(default=None, sa_type=UTCDateTime)


class AuditFinding(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    audit_run_id: int = Field(foreign_key="auditrun.id", index=True)
    article_id: int | None = None
    article_title: str = ""
    related_article_id: int | None = None
    related_article_title: str | None = None
    type: str
    severity: str = "warning"  # critical | warning | info
    description: str = ""
    suggestion: str = ""
    auto_fixable: bool = False
    status: str = FindingStatus.OPEN.value
    fix_applied: str | None = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    resolved_at: datetime | None = Field(default=None, sa_type=UTCDateTime)


class AutomationSettings(SQLModel, table=True):
    """Singleton settings for the periodic discover-and-generate runner."""

    id: int | None = Field(default=None, primary_key=True)
    enabled: bool = False
    frequency: str = "daily"
    articles_per_run: int = 5
    min_quality_score: int = 7
    min_factual_score: int = 7
    target_categories_json: str = "[]"
    stop_requested: bool = False
    last_run_at: datetime | None = Field(default=None, sa_type=UTCDateTime)
    next_run_at: datetime | None = Field(default=None, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)

    @property
    def target_categories(self) -> list[int]:
        return json.loads(self.target_categories_json)


class NightlyBuilderSettings(SQLModel, table=True):
    """Singleton settings for the nightly research-and-build run."""

    id: int | None = Field(default=None, primary_key=True)
    enabled: bool = False
    topics_per_category: int = 50
    min_quality_score: int = 7
    min_factual_score: int = 7
    allow_category_creation: bool = True
    target_categories_json: str = "[]"
    stop_requested: bool = False
    last_run_at: datetime | None = Field(default=None, sa_type=UTCDateTime)
    next_run_at: datetime | None = Field(default=None, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)

    @property
    def target_categories(self) -> list[int]:
        return json.loads(self.target_categories_json)
