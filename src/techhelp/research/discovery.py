"""Discover trending tech-help topics with web search."""

from __future__ import annotations

import logging

from techhelp.config import Settings
from techhelp.llm.client import CapabilityClient
from techhelp.llm.prompts import render
from techhelp.llm.schemas import DiscoveredTopic, DiscoveredTopics
from techhelp.storage.models import QueueItem
from techhelp.storage.repository import ContentStore

logger = logging.getLogger(__name__)

PRIORITY_RANK = {"high": 0, "medium": 1, "low": 2}


class TopicDiscoverer:
    """Search the web for what people need help with, then parse it into topics."""

    def __init__(self, client: CapabilityClient, store: ContentStore, settings: Settings) -> None:
        self._client = client
        self._store = store
        self._settings = settings

    def discover(
        self, count: int = 5, target_categories: list[int] | None = None
    ) -> list[DiscoveredTopic]:
        """Return up to ``count`` new topics.

        Search and parsing are separate calls because a grounded response
        cannot also be forced into a schema.
        """
        categories = self._store.list_categories()
        focus = [c for c in categories if c.id in (target_categories or [])]
        titles = self._store.list_article_titles()[-200:]

        grounded = self._client.complete_grounded(
            render(
                "discover_topics.j2",
                count=count,
                focus=[c.name for c in focus],
                titles=titles,
                site_name=self._settings.site_name,
            )
        )
        parsed = self._client.extract_structured(
            render(
                "discover_parse.j2",
                count=count,
                categories=categories,
                research=grounded.text,
            ),
            DiscoveredTopics,
            model=self._settings.model_lite,
        )

        known = {c.id for c in categories}
        topics = parsed.topics[:count]
        for topic in topics:
            if topic.category_id not in known:
                topic.category_id = None

        logger.info("Discovered %d topics", len(topics))
        self._store.log_action(
            "discover_topics",
            details={"requested": count, "topics": [t.topic for t in topics]},
        )
        return topics

    def enqueue(self, topics: list[DiscoveredTopic]) -> int:
        """Add topics to the manual queue (no run date, no batch number)."""
        items = [
            QueueItem(
                topic=t.topic,
                category_id=t.category_id,
                priority=PRIORITY_RANK[t.priority],
            )
            for t in topics
        ]
        return self._store.enqueue(items)
