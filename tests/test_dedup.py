"""Tests for duplicate detection."""

from __future__ import annotations

from types import SimpleNamespace

from techhelp.config import Settings
from techhelp.errors import StructuredOutputError
from techhelp.llm.schemas import DuplicateVerdict, KeepIndices
from techhelp.pipeline.dedup import (
    DuplicateDetector,
    find_corpus_duplicates,
    normalize_title,
    contains,
    substring_match,
    titles_overlap,
)
from tests.conftest import FakeCapability


def _article(article_id: int, title: str, slug: str = "") -> SimpleNamespace:
    return SimpleNamespace(id=article_id, title=title, slug=slug or f"slug-{article_id}")


def test_normalize_title() -> None:
    assert normalize_title("  How to Fix   Wi-Fi?! ") == "how to fix wifi"


def test_corpus_overlap_needs_substantive_titles() -> None:
    assert titles_overlap("wifi", "wifi")
    assert not titles_overlap("wifi", "fix wifi fast")
    assert not titles_overlap("", "anything at all")


def test_contains_has_no_length_floor() -> None:
    assert contains("wifi", "how to fix wifi")
    assert contains("how to fix wifi", "wifi")
    assert not contains("", "how to fix wifi")
    assert not contains("printer", "how to fix wifi")


def test_substring_match_finds_containing_title() -> None:
    titles = ["Speed up WiFi", "How to reset an iPhone to factory settings"]

    assert substring_match("How to reset an iPhone", titles) == titles[1]
    assert substring_match("Set up a printer", titles) is None
    assert substring_match("WiFi", titles) == titles[0]


class TestCorpusDuplicates:
    def test_title_match_reports_newer_article(self) -> None:
        older = _article(1, "How to Reset iPhone")
        newer = _article(2, "How to reset iPhone!")

        pairs = find_corpus_duplicates([older, newer])

        assert len(pairs) == 1
        assert pairs[0].original is older
        assert pairs[0].duplicate is newer
        assert pairs[0].reason == "title"

    def test_each_article_flagged_once(self) -> None:
        articles = [
            _article(1, "Fix slow WiFi connection"),
            _article(2, "Fix slow WiFi connection"),
            _article(3, "Fix slow WiFi connection"),
        ]

        pairs = find_corpus_duplicates(articles)

        assert [(p.original.id, p.duplicate.id) for p in pairs] == [(1, 2), (1, 3)]

    def test_slug_match(self) -> None:
        pairs = find_corpus_duplicates(
            [_article(1, "Printer offline", "printer-help"), _article(2, "Scanner", "printer-help")]
        )

        assert [p.reason for p in pairs] == ["slug"]

    def test_distinct_articles(self) -> None:
        assert find_corpus_duplicates([_article(1, "Printer offline"), _article(2, "Reset iPhone")]) == []


class TestCheckTopic:
    def test_substring_hit_skips_model(self, fake_client: FakeCapability, settings: Settings) -> None:
        detector = DuplicateDetector(fake_client, settings)

        check = detector.check_topic("Reset iPhone", ["Reset iPhone", "Fix WiFi"])

        assert check.is_duplicate
        assert check.similarity == 100
        assert check.matched_title == "Reset iPhone"
        assert fake_client.calls == []

    def test_empty_corpus_is_never_duplicate(
        self, fake_client: FakeCapability, settings: Settings
    ) -> None:
        check = DuplicateDetector(fake_client, settings).check_topic("Reset iPhone", [])

        assert not check.is_duplicate
        assert fake_client.calls == []

    def test_model_score_at_threshold_is_duplicate(
        self, fake_client: FakeCapability, settings: Settings
    ) -> None:
        fake_client.structured[DuplicateVerdict] = DuplicateVerdict(
            is_duplicate=False, similarity_score=80, closest_title="Speed up a Windows laptop"
        )

        check = DuplicateDetector(fake_client, settings).check_topic(
            "Make my Windows PC faster", ["Speed up a Windows laptop"]
        )

        assert check.is_duplicate
        assert check.matched_title == "Speed up a Windows laptop"
        _, _, kwargs = fake_client.calls[0]
        assert kwargs["model"] == settings.model_lite

    def test_model_score_below_threshold(
        self, fake_client: FakeCapability, settings: Settings
    ) -> None:
        fake_client.structured[DuplicateVerdict] = DuplicateVerdict(similarity_score=79)

        check = DuplicateDetector(fake_client, settings).check_topic(
            "Make my Windows PC faster", ["Speed up a Windows laptop"]
        )

        assert not check.is_duplicate
        assert check.similarity == 79

    def test_unparseable_verdict_keeps_topic(
        self, fake_client: FakeCapability, settings: Settings
    ) -> None:
        fake_client.structured[DuplicateVerdict] = StructuredOutputError("garbled")

        check = DuplicateDetector(fake_client, settings).check_topic(
            "Make my Windows PC faster", ["Speed up a Windows laptop"]
        )

        assert not check.is_duplicate
        assert check.similarity == 0

    def test_short_topic_inside_existing_title_is_duplicate(
        self, fake_client: FakeCapability, settings: Settings
    ) -> None:
        check = DuplicateDetector(fake_client, settings).check_topic("WiFi", ["How to fix WiFi"])

        assert check.is_duplicate
        assert check.matched_title == "How to fix WiFi"
        assert fake_client.calls == []


class TestFilterTopics:
    def test_substring_filter_and_in_batch_repeats(
        self, fake_client: FakeCapability, settings: Settings
    ) -> None:
        detector = DuplicateDetector(fake_client, settings)
        topics = [
            "How to reset an iPhone",
            "Fix Bluetooth pairing on Mac",
            "Fix bluetooth pairing on Mac!",
            "Set up parental controls",
        ]

        kept = detector.filter_topics(topics, ["How to reset an iPhone to factory settings"])

        assert kept == ["Fix Bluetooth pairing on Mac", "Set up parental controls"]
        assert fake_client.calls == []

    def test_model_pass_runs_in_batches(
        self, fake_client: FakeCapability, settings: Settings, sleeps: list[float]
    ) -> None:
        settings.dedup_batch_size = 5
        topics = [f"Troubleshooting guide number {n} for printers" for n in range(12)]
        fake_client.structured[KeepIndices] = [
            KeepIndices(keep=[0, 2, 99]),
            KeepIndices(keep=[4, 4]),
            KeepIndices(keep=[1]),
        ]
        detector = DuplicateDetector(fake_client, settings, sleep=sleeps.append)

        kept = detector.filter_topics(topics, ["Reset iPhone"])

        assert kept == [topics[0], topics[2], topics[9], topics[11]]
        assert fake_client.schemas_called() == [KeepIndices] * 3
        assert sleeps == [settings.dedup_batch_delay_seconds] * 2

    def test_unparseable_batch_keeps_everything(
        self, fake_client: FakeCapability, settings: Settings
    ) -> None:
        topics = [f"Troubleshooting guide number {n} for printers" for n in range(11)]
        fake_client.structured[KeepIndices] = StructuredOutputError("no payload")

        kept = DuplicateDetector(fake_client, settings).filter_topics(topics, ["Reset iPhone"])

        assert kept == topics

    def test_small_candidate_sets_skip_model(
        self, fake_client: FakeCapability, settings: Settings
    ) -> None:
        topics = [f"Troubleshooting guide number {n} for printers" for n in range(10)]

        kept = DuplicateDetector(fake_client, settings).filter_topics(topics, ["Reset iPhone"])

        assert kept == topics
        assert fake_client.calls == []

    def test_short_topics_inside_existing_titles_are_dropped(
        self, fake_client: FakeCapability, settings: Settings
    ) -> None:
        kept = DuplicateDetector(fake_client, settings).filter_topics(
            ["WiFi", "Set up parental controls"], ["How to fix WiFi"]
        )

        assert kept == ["Set up parental controls"]
