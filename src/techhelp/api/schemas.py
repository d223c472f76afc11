"""Request and response bodies for the trigger surface."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from techhelp.llm.schemas import DiscoveredTopic
from techhelp.storage.models import Article


class GenerateRequest(BaseModel):
    topic: str = Field(..., min_length=3, max_length=300)
    category_id: int | None = None
    mode: Literal["manual", "batch", "scheduled", "nightly"] = "manual"
    background: bool = False


class ArticleOut(BaseModel):
    id: int
    title: str
    slug: str
    excerpt: str
    status: str
    category_id: int | None
    tags: list[str]
    sources: list[dict]
    read_time: int
    seo_title: str
    seo_description: str
    published_at: datetime | None = None

    @classmethod
    def from_row(cls, article: Article) -> ArticleOut:
        return cls(
            id=article.id,
            title=article.title,
            slug=article.slug,
            excerpt=article.excerpt,
            status=article.status,
            category_id=article.category_id,
            tags=article.tags,
            sources=article.sources,
            read_time=article.read_time,
            seo_title=article.seo_title,
            seo_description=article.seo_description,
            published_at=article.published_at,
        )


class GenerateResponse(BaseModel):
    run_id: int
    status: str
    skipped: bool = False
    reason: str | None = None
    article: ArticleOut | None = None
    quality_score: int | None = None
    factual_score: int | None = None


class DiscoverRequest(BaseModel):
    count: int = Field(5, ge=1, le=20)
    target_categories: list[int] = Field(default_factory=list)
    auto_make: bool = False


class DiscoverResponse(BaseModel):
    topics: list[DiscoveredTopic]
    queued: int = 0
    batch_run_id: int | None = None


class AuditRequest(BaseModel):
    auto_fix: bool = True


class NightlyRequest(BaseModel):
    batch: Literal[1, 2, 3] = 1
    manual: bool = True


class SchedulerRequest(BaseModel):
    manual: bool = True


class Accepted(BaseModel):
    """Acknowledgement for work continuing in the background."""

    run_id: int
    kind: str
    message: str = "Started in background"


class FixResponse(BaseModel):
    finding_id: int
    fixed: bool
    description: str
    already_resolved: bool = False


class StopResponse(BaseModel):
    kind: str
    run_id: int | None = None
    stop_requested: bool = True


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str = Field(..., max_length=4000)


class AskRequest(BaseModel):
    question: str = Field(..., max_length=2000)
    history: list[ChatMessage] = Field(default_factory=list)


class RecommendedArticle(BaseModel):
    title: str
    slug: str


class AskResponse(BaseModel):
    answer: str
    has_relevant_articles: bool
    recommended_articles: list[RecommendedArticle]
    article_generation_triggered: bool
