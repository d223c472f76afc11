"""Shared test fixtures."""

from __future__ import annotations

import re
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from pydantic import BaseModel

from techhelp.config import Settings
from techhelp.errors import CapabilityError
from techhelp.llm.client import CapabilityClient, GroundedText
from techhelp.llm.schemas import ArticleDraft, DuplicateVerdict, FactualScore, QualityReview
from techhelp.pipeline.engine import PipelineEngine
from techhelp.storage.models import Article, ArticleStatus
from techhelp.storage.repository import ContentStore
from techhelp.utils import slugify

ADMIN_TOKEN = "test-admin-token"


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Create test settings with a temporary database."""
    return Settings(
        anthropic_api_key="test-key-not-real",
        model="claude-sonnet-4-20250514",
        max_tokens=1024,
        temperature=0.7,
        db_path=tmp_path / "test.db",
        admin_token=ADMIN_TOKEN,
    )


@pytest.fixture
def store(settings: Settings) -> ContentStore:
    return ContentStore(settings.db_path)


@pytest.fixture
def sleeps() -> list[float]:
    """Collects every delay requested through an injected ``sleep``."""
    return []


@pytest.fixture
def mock_client(settings: Settings, sleeps: list[float]) -> CapabilityClient:
    """Create a CapabilityClient with a mocked Anthropic SDK."""
    client = CapabilityClient(settings, sleep=sleeps.append)
    # Replace the internal Anthropic client with a mock
    client._client = MagicMock()
    return client


@pytest.fixture
def fake_client() -> FakeCapability:
    return FakeCapability()


@pytest.fixture
def engine(
    fake_client: FakeCapability, store: ContentStore, settings: Settings, sleeps: list[float]
) -> PipelineEngine:
    return PipelineEngine(fake_client, store, settings, sleep=sleeps.append)


def make_mock_response(text: str, input_tokens: int = 100, output_tokens: int = 200):
    """Helper to create a mock Anthropic API response."""
    mock_response = MagicMock()
    mock_response.content = [MagicMock(type="text", text=text, citations=None)]
    mock_response.usage.input_tokens = input_tokens
    mock_response.usage.output_tokens = output_tokens
    return mock_response


def make_tool_response(payload: dict, name: str = "record_result"):
    """Helper to create a mock response carrying one tool_use block."""
    block = MagicMock(type="tool_use", input=payload)
    # ``name`` is reserved by the MagicMock constructor
    block.name = name
    mock_response = MagicMock()
    mock_response.content = [block]
    mock_response.usage.input_tokens = 100
    mock_response.usage.output_tokens = 50
    return mock_response


def add_article(
    store: ContentStore,
    title: str,
    *,
    status: str = ArticleStatus.PUBLISHED.value,
    slug: str | None = None,
    **fields: object,
) -> Article:
    fields.setdefault("content", f"## Overview\n\nEverything about {title.lower()}.")
    fields.setdefault("excerpt", f"Learn {title.lower()}.")
    return store.insert_article(title=title, slug=slug or slugify(title), status=status, **fields)


_TOPIC_RE = re.compile(r"on the topic: (.+)")


def draft_for(prompt: str) -> ArticleDraft:
    """Build an article draft whose title is the topic named in the prompt."""
    match = _TOPIC_RE.search(prompt)
    topic = match.group(1).strip() if match else "Untitled topic"
    return ArticleDraft(
        title=topic,
        slug=slugify(topic),
        excerpt=f"Learn {topic.lower()}.",
        content=f"## Overview\n\nStep-by-step help for {topic.lower()}.",
        tags=["howto"],
        read_time=4,
        seo_title=topic[:60],
        seo_description=f"A beginner guide: {topic.lower()}",
    )


class FakeCapability:
    """Scripted stand-in for :class:`CapabilityClient`.

    ``structured`` maps an output schema to a model instance, an exception,
    a callable taking the prompt, or a list of those consumed in order.
    Any prompt containing one of ``fail_markers`` raises a 500.
    """

    def __init__(self) -> None:
        self.structured: dict[type[BaseModel], object] = {
            DuplicateVerdict: DuplicateVerdict(is_duplicate=False, similarity_score=10),
            ArticleDraft: draft_for,
            FactualScore: FactualScore(factual_score=9, summary="Accurate."),
            QualityReview: QualityReview(
                quality_score=8,
                improved_seo_title="Improved SEO title",
                additional_tags=["beginners"],
            ),
        }
        self.text: str = "## Outline\n\n- Step one\n- Step two"
        self.grounded = GroundedText(
            text="Research notes with current steps.",
            sources=[{"title": "Official docs", "url": "https://example.com/docs"}],
        )
        self.long_running_result = "1. How to do the first thing\n2. How to do the second thing"
        self.fail_markers: set[str] = set()
        self.calls: list[tuple[str, object, dict]] = []

    def _maybe_fail(self, prompt: str) -> None:
        if any(marker in prompt for marker in self.fail_markers):
            raise CapabilityError(500, "scripted failure")

    def complete(self, prompt: str, system: str | None = None, **kwargs: object) -> str:
        self.calls.append(("complete", prompt, {"system": system, **kwargs}))
        self._maybe_fail(prompt)
        return self.text

    def complete_grounded(self, prompt: str, system: str | None = None, **kwargs: object):
        self.calls.append(("complete_grounded", prompt, kwargs))
        self._maybe_fail(prompt)
        return self.grounded

    def extract_structured(
        self, prompt: str, schema: type[BaseModel], system: str | None = None, **kwargs: object
    ):
        self.calls.append(("extract_structured", schema, {"prompt": prompt, **kwargs}))
        self._maybe_fail(prompt)
        value = self.structured[schema]
        if isinstance(value, list):
            value = value.pop(0)
        if isinstance(value, BaseException):
            raise value
        if isinstance(value, BaseModel):
            return value.model_copy(deep=True)
        return value(prompt)

    def start_long_running(self, prompt: str, system: str | None = None, **kwargs: object) -> str:
        self.calls.append(("start_long_running", prompt, kwargs))
        self._maybe_fail(prompt)
        return "job-1"

    def wait_for(self, job_id: str, **kwargs: object) -> str:
        self.calls.append(("wait_for", job_id, kwargs))
        return self.long_running_result

    @property
    def usage_summary(self) -> dict:
        return {"total_input_tokens": 0, "total_output_tokens": 0}

    def schemas_called(self) -> list[type[BaseModel]]:
        return [schema for method, schema, _ in self.calls if method == "extract_structured"]
