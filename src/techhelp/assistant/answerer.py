"""Answer reader questions from the published corpus, or from the model itself."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field

from pydantic import ValidationError

from techhelp.config import Settings
from techhelp.llm.client import CapabilityClient
from techhelp.llm.prompts import render
from techhelp.llm.schemas import AskAnswer
from techhelp.storage.repository import ContentStore

logger = logging.getLogger(__name__)

MAX_QUESTION_CHARS = 500
MIN_QUESTION_CHARS = 3
MAX_SEARCH_TERMS = 8
MAX_HISTORY_MESSAGES = 10
FALLBACK_ANSWER = "I couldn't process your question right now. Please try again."

_PUNCTUATION_RE = re.compile(r"[^\w\s]")
_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def search_terms(question: str) -> list[str]:
    """Significant words of a question (longer than two characters)."""
    words = _PUNCTUATION_RE.sub(" ", question.lower()).split()
    return [w for w in words if len(w) > 2][:MAX_SEARCH_TERMS]


@dataclass
class AskResult:
    answer: str
    has_relevant_articles: bool = False
    recommended_articles: list[dict] = field(default_factory=list)
    # Topic worth generating in the background, already checked for active runs
    generation_topic: str | None = None


class QuestionAnswerer:
    def __init__(self, client: CapabilityClient, store: ContentStore, settings: Settings) -> None:
        self._client = client
        self._store = store
        self._settings = settings

    def ask(self, question: str, history: list[dict] | None = None) -> AskResult:
        question = question.strip()[:MAX_QUESTION_CHARS]
        if len(question) < MIN_QUESTION_CHARS:
            raise ValueError("Question is too short")

        articles = self._store.search_published(search_terms(question), limit=10)
        turns = [
            {"role": m["role"], "content": str(m["content"])}
            for m in (history or [])[-MAX_HISTORY_MESSAGES:]
            if m.get("role") in ("user", "assistant") and m.get("content")
        ]
        raw = self._client.complete(
            render("ask.j2", question=question, articles=articles),
            system=render("ask_system.j2", site_name=self._settings.site_name),
            history=turns,
            model=self._settings.model_lite,
            temperature=0.4,
            max_tokens=1500,
        )
        parsed = self._parse(raw)

        by_slug = {a.slug: a for a in articles}
        recommended = [
            {"title": by_slug[s].title, "slug": s}
            for s in parsed.recommended_slugs[:3]
            if s in by_slug
        ]

        topic = None
        if parsed.should_create_article and parsed.suggested_topic:
            candidate = parsed.suggested_topic.strip()
            if candidate and not self._store.has_active_run_like(candidate):
                topic = candidate
            else:
                logger.info("Skipping generation for %r: similar run active", candidate)

        return AskResult(
            answer=parsed.answer,
            has_relevant_articles=parsed.has_relevant_articles,
            recommended_articles=recommended,
            generation_topic=topic,
        )

    @staticmethod
    def _parse(raw: str) -> AskAnswer:
        match = _JSON_OBJECT_RE.search(raw)
        try:
            if match is None:
                raise ValueError("no JSON object")
            return AskAnswer.model_validate(json.loads(match.group(0)))
        except (ValueError, ValidationError):
            return AskAnswer(answer=raw.strip() or FALLBACK_ANSWER)
