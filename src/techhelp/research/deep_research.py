"""Per-category deep research used by the nightly builder."""

from __future__ import annotations

import logging

from techhelp.config import Settings
from techhelp.errors import CapabilityError
from techhelp.llm.client import CapabilityClient
from techhelp.llm.prompts import render
from techhelp.llm.schemas import CategorySuggestion, CategorySuggestions, TopicList
from techhelp.storage.models import Category

logger = logging.getLogger(__name__)

SAFE_ICONS = [
    "Smartphone",
    "Tablet",
    "Monitor",
    "AppWindow",
    "Youtube",
    "Share2",
    "KeyRound",
    "FileText",
    "Lightbulb",
    "Wifi",
    "Shield",
    "Mail",
    "Camera",
    "Headphones",
    "Gamepad2",
    "Globe",
    "Tv",
    "Printer",
    "Cloud",
]
DEFAULT_ICON = "Lightbulb"


class CategoryResearcher:
    """Turn long-running web research into typed topic and category lists."""

    def __init__(self, client: CapabilityClient, settings: Settings) -> None:
        self._client = client
        self._settings = settings

    def _research(self, prompt: str) -> str:
        """Run ``prompt`` as a long-running job.

        If the job cannot even be started, a single grounded completion is used
        instead. Failures and timeouts of a started job propagate.
        """
        try:
            job_id = self._client.start_long_running(prompt)
        except CapabilityError as exc:
            logger.warning("Deep research unavailable (%s), using grounded completion", exc)
            return self._client.complete_grounded(prompt).text
        return self._client.wait_for(
            job_id, timeout_minutes=self._settings.deep_research_timeout_minutes
        )

    def research_topics(
        self,
        category_name: str,
        description: str,
        existing_titles: list[str],
        count: int,
    ) -> list[str]:
        prose = self._research(
            render(
                "category_research.j2",
                category=category_name,
                description=description or "tech help",
                existing_titles=existing_titles[:100],
                count=count,
            )
        )
        topics = self._client.extract_structured(
            render("topic_extract.j2", research=prose, count=count),
            TopicList,
            model=self._settings.model_lite,
        ).topics
        logger.info("Research for %s produced %d topics", category_name, len(topics))
        return topics

    def suggest_missing_categories(self, categories: list[Category]) -> list[CategorySuggestion]:
        prose = self._research(
            render(
                "missing_categories.j2",
                categories=[c.name for c in categories],
                site_name=self._settings.site_name,
                limit=self._settings.max_new_categories,
            )
        )
        suggestions = self._client.extract_structured(
            render("category_extract.j2", research=prose, icons=SAFE_ICONS),
            CategorySuggestions,
            model=self._settings.model_lite,
        ).categories
        for suggestion in suggestions:
            if suggestion.icon not in SAFE_ICONS:
                suggestion.icon = DEFAULT_ICON
        return suggestions[: self._settings.max_new_categories]
