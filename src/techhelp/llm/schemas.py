"""Typed shapes for structured extraction.

Model output is untrusted. Every model here coerces or defaults its fields so
that a sloppy but recognisable payload still validates, and a payload that
cannot be repaired raises ``ValidationError`` at the client boundary.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

FALLBACK_SCORE = 7


def _bounded_int(value: object, low: int, high: int, fallback: int) -> int:
    try:
        number = round(float(value))
    except (TypeError, ValueError):
        return fallback
    return max(low, min(high, number))


def _optional_id(value: object) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class DuplicateVerdict(BaseModel):
    """Whether a proposed topic duplicates an existing article."""

    is_duplicate: bool = False
    similarity_score: int = Field(0, description="0-100 similarity to the closest title")
    closest_title: str = ""

    @field_validator("similarity_score", mode="before")
    @classmethod
    def _clamp(cls, v: object) -> int:
        return _bounded_int(v, 0, 100, 0)


class ArticleDraft(BaseModel):
    """A complete help article ready to be stored."""

    title: str
    slug: str = ""
    excerpt: str = ""
    content: str = Field(description="Full article body in markdown")
    category_id: int | None = None
    tags: list[str] = Field(default_factory=list)
    read_time: int = Field(5, description="Estimated minutes to read")
    seo_title: str = ""
    seo_description: str = ""

    @field_validator("category_id", mode="before")
    @classmethod
    def _category(cls, v: object) -> int | None:
        return _optional_id(v)

    @field_validator("read_time", mode="before")
    @classmethod
    def _read_time(cls, v: object) -> int:
        return _bounded_int(v, 1, 120, 5)

    @field_validator("tags", mode="before")
    @classmethod
    def _tags(cls, v: object) -> list[str]:
        if not isinstance(v, list):
            return []
        return [str(t).strip() for t in v if str(t).strip()]


class FactualScore(BaseModel):
    """Factual accuracy of an article on a 0-10 scale."""

    factual_score: int = FALLBACK_SCORE
    summary: str = ""

    @field_validator("factual_score", mode="before")
    @classmethod
    def _clamp(cls, v: object) -> int:
        return _bounded_int(v, 0, 10, FALLBACK_SCORE)


class QualityReview(BaseModel):
    """Editorial quality score and optional SEO improvements."""

    quality_score: int = FALLBACK_SCORE
    improved_seo_title: str | None = None
    improved_seo_description: str | None = None
    additional_tags: list[str] = Field(default_factory=list)
    feedback: str = ""

    @field_validator("quality_score", mode="before")
    @classmethod
    def _clamp(cls, v: object) -> int:
        return _bounded_int(v, 0, 10, FALLBACK_SCORE)


class TopicList(BaseModel):
    """Article topics extracted from research prose."""

    topics: list[str] = Field(default_factory=list)

    @field_validator("topics", mode="before")
    @classmethod
    def _meaningful(cls, v: object) -> list[str]:
        if not isinstance(v, list):
            return []
        cleaned = (str(t).strip() for t in v if t is not None)
        return [t for t in cleaned if len(t) > 10]


class KeepIndices(BaseModel):
    """Zero-based indices of the candidate topics to keep."""

    keep: list[int]


class CategorySuggestion(BaseModel):
    name: str
    slug: str = ""
    description: str = ""
    icon: str = "Lightbulb"


class CategorySuggestions(BaseModel):
    """New categories the site is missing."""

    categories: list[CategorySuggestion] = Field(default_factory=list)


class DiscoveredTopic(BaseModel):
    topic: str
    category_id: int | None = None
    priority: Literal["high", "medium", "low"] = "medium"
    reasoning: str = ""
    search_keywords: list[str] = Field(default_factory=list)

    @field_validator("category_id", mode="before")
    @classmethod
    def _category(cls, v: object) -> int | None:
        return _optional_id(v)

    @field_validator("priority", mode="before")
    @classmethod
    def _priority(cls, v: object) -> str:
        v = str(v).lower()
        return v if v in ("high", "medium", "low") else "medium"


class DiscoveredTopics(BaseModel):
    """Trending tech-help topics found through web search."""

    topics: list[DiscoveredTopic] = Field(default_factory=list)


class Issue(BaseModel):
    type: Literal["grammar", "wording", "seo", "factual", "quality", "formatting"]
    severity: Literal["critical", "warning", "info"] = "warning"
    description: str
    suggestion: str = ""
    auto_fixable: bool = False

    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, v: object) -> str:
        v = str(v).lower()
        known = ("grammar", "wording", "seo", "factual", "quality", "formatting")
        return v if v in known else "quality"

    @field_validator("severity", mode="before")
    @classmethod
    def _severity(cls, v: object) -> str:
        v = str(v).lower()
        return v if v in ("critical", "warning", "info") else "warning"

    @model_validator(mode="after")
    def _quality_needs_a_human(self) -> Issue:
        if self.type == "quality":
            self.auto_fixable = False
        return self


class ArticleIssues(BaseModel):
    article_id: int
    issues: list[Issue] = Field(default_factory=list)


class AuditReport(BaseModel):
    """Per-article issues found in one batch of articles."""

    articles: list[ArticleIssues] = Field(default_factory=list)


class AutoFixResult(BaseModel):
    """Corrected article fields after applying the listed fixes."""

    title: str | None = None
    excerpt: str | None = None
    content: str | None = None
    fixes_applied: list[str] = Field(default_factory=list)


class AskAnswer(BaseModel):
    """Answer to a reader's question with related article suggestions."""

    answer: str
    has_relevant_articles: bool = False
    recommended_slugs: list[str] = Field(default_factory=list)
    should_create_article: bool = False
    suggested_topic: str | None = None


class FindingFix(BaseModel):
    """Corrected article fields after fixing one reported issue."""

    title: str | None = None
    excerpt: str | None = None
    content: str | None = None
    fix_description: str = ""
