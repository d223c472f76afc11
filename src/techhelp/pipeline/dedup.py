"""Duplicate detection against the existing corpus.

Three passes live here:

* ``find_corpus_duplicates`` - pairwise title/slug comparison used by the audit
* ``DuplicateDetector.check_topic`` - substring match, then a model judgement,
  for one candidate topic entering the pipeline
* ``DuplicateDetector.filter_topics`` - substring filter followed by a
  batched "which indices should we KEEP" model pass for nightly research
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Sequence

from techhelp.config import Settings
from techhelp.errors import CapabilityError, StructuredOutputError
from techhelp.llm.client import CapabilityClient
from techhelp.llm.prompts import render
from techhelp.llm.schemas import DuplicateVerdict, KeepIndices

logger = logging.getLogger(__name__)

_PUNCTUATION_RE = re.compile(r"[^a-z0-9\s]")
_SPACES_RE = re.compile(r"\s+")


def normalize_title(title: str) -> str:
    """Lower-case, drop punctuation, collapse whitespace."""
    stripped = _PUNCTUATION_RE.sub("", title.lower())
    return _SPACES_RE.sub(" ", stripped).strip()


def contains(a: str, b: str) -> bool:
    """Either normalized string contains the other."""
    if not a or not b:
        return False
    return a in b or b in a


def titles_overlap(a: str, b: str) -> bool:
    """Equal normalized titles, or containment when both are substantive."""
    if not a or not b:
        return False
    if a == b:
        return True
    return len(a) > 10 and len(b) > 10 and (a in b or b in a)


def substring_match(topic: str, titles: Sequence[str]) -> str | None:
    """Return the first existing title that contains ``topic`` or is contained by it."""
    candidate = normalize_title(topic)
    for title in titles:
        if contains(candidate, normalize_title(title)):
            return title
    return None


@dataclass
class DuplicatePair:
    original: object
    duplicate: object
    reason: str  # title | slug


def find_corpus_duplicates(articles: Sequence) -> list[DuplicatePair]:
    """Pairwise O(n^2) scan; ``articles`` must be ordered oldest first.

    Each article is reported at most once, as the newer member of a pair.
    """
    pairs: list[DuplicatePair] = []
    normalized = [normalize_title(a.title) for a in articles]
    flagged: set[int] = set()
    for i, older in enumerate(articles):
        if i in flagged:
            continue
        for j in range(i + 1, len(articles)):
            if j in flagged:
                continue
            newer = articles[j]
            if titles_overlap(normalized[i], normalized[j]):
                reason = "title"
            elif older.slug and older.slug == newer.slug:
                reason = "slug"
            else:
                continue
            pairs.append(DuplicatePair(original=older, duplicate=newer, reason=reason))
            flagged.add(j)
    return pairs


@dataclass
class DuplicateCheck:
    is_duplicate: bool
    similarity: int
    matched_title: str | None = None


class DuplicateDetector:
    """Model-assisted duplicate checks for topics that have no article yet."""

    def __init__(
        self,
        client: CapabilityClient,
        settings: Settings,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._client = client
        self._settings = settings
        self._sleep = sleep

    def check_topic(self, topic: str, titles: Sequence[str]) -> DuplicateCheck:
        match = substring_match(topic, titles)
        if match is not None:
            return DuplicateCheck(is_duplicate=True, similarity=100, matched_title=match)
        if not titles:
            return DuplicateCheck(is_duplicate=False, similarity=0)

        try:
            verdict = self._client.extract_structured(
                render("duplicate_check.j2", topic=topic, titles=titles),
                DuplicateVerdict,
                model=self._settings.model_lite,
                max_tokens=300,
            )
        except StructuredOutputError as exc:
            logger.warning("Duplicate verdict unparseable for %r, keeping topic: %s", topic, exc)
            return DuplicateCheck(is_duplicate=False, similarity=0)
        is_duplicate = verdict.similarity_score >= self._settings.duplicate_similarity_threshold
        return DuplicateCheck(
            is_duplicate=is_duplicate,
            similarity=verdict.similarity_score,
            matched_title=verdict.closest_title or None,
        )

    def filter_topics(self, topics: list[str], titles: Sequence[str]) -> list[str]:
        """Drop topics already covered by ``titles`` or repeated within ``topics``."""
        existing = [normalize_title(t) for t in titles]
        survivors: list[str] = []
        seen: set[str] = set()
        for topic in topics:
            key = normalize_title(topic)
            if key in seen or any(contains(key, title) for title in existing):
                continue
            seen.add(key)
            survivors.append(topic)
        logger.info("Substring filter kept %d of %d topics", len(survivors), len(topics))
        if len(survivors) <= self._settings.ai_dedup_min_topics or not titles:
            return survivors

        kept: list[str] = []
        size = self._settings.dedup_batch_size
        for start in range(0, len(survivors), size):
            if start:
                self._sleep(self._settings.dedup_batch_delay_seconds)
            kept.extend(self._keep_batch(survivors[start : start + size], titles))
        logger.info("Model dedup kept %d of %d topics", len(kept), len(survivors))
        return kept

    def _keep_batch(self, batch: list[str], titles: Sequence[str]) -> list[str]:
        try:
            result = self._client.extract_structured(
                render("dedup_keep.j2", topics=batch, titles=titles),
                KeepIndices,
                model=self._settings.model_lite,
                max_tokens=1000,
            )
        except (StructuredOutputError, CapabilityError) as exc:
            logger.warning("Dedup batch unparseable, keeping all %d: %s", len(batch), exc)
            return batch
        indices = sorted({i for i in result.keep if 0 <= i < len(batch)})
        return [batch[i] for i in indices]
