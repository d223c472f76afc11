"""Tests for the capability client wrapper and prompt rendering."""

from __future__ import annotations

from unittest.mock import MagicMock

import httpx
import pytest
from anthropic import InternalServerError, RateLimitError

from techhelp.errors import (
    CapabilityError,
    LongRunningJobError,
    LongRunningTimeout,
    StructuredOutputError,
)
from techhelp.llm.client import CapabilityClient
from techhelp.llm.prompts import render, template_names
from techhelp.llm.schemas import ArticleDraft, DuplicateVerdict, Issue, QualityReview
from tests.conftest import make_mock_response, make_tool_response

_REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


def _rate_limited() -> RateLimitError:
    return RateLimitError(
        message="rate limited", response=httpx.Response(429, request=_REQUEST), body=None
    )


def _server_error(body: object) -> InternalServerError:
    return InternalServerError(
        message="boom", response=httpx.Response(500, request=_REQUEST), body=body
    )


# ---------------------------------------------------------------------------
# completion and retry
# ---------------------------------------------------------------------------


def test_complete_returns_text(mock_client: CapabilityClient) -> None:
    """Test that complete() returns the text from the response."""
    mock_client._client.messages.create.return_value = make_mock_response("Hello there.")

    result = mock_client.complete("Say hello", system="You are a test assistant.")

    assert result == "Hello there."
    kwargs = mock_client._client.messages.create.call_args.kwargs
    assert kwargs["system"] == "You are a test assistant."
    assert kwargs["messages"] == [{"role": "user", "content": "Say hello"}]
    assert mock_client._total_input_tokens == 100
    assert mock_client._total_output_tokens == 200


def test_complete_appends_prompt_after_history(mock_client: CapabilityClient) -> None:
    mock_client._client.messages.create.return_value = make_mock_response("ok")
    history = [
        {"role": "user", "content": "My wifi is slow"},
        {"role": "assistant", "content": "Which device?"},
    ]

    mock_client.complete("A Windows laptop", history=history)

    messages = mock_client._client.messages.create.call_args.kwargs["messages"]
    assert messages[:2] == history
    assert messages[-1] == {"role": "user", "content": "A Windows laptop"}


def test_usage_summary_accumulates(mock_client: CapabilityClient) -> None:
    """Test that token usage accumulates across calls."""
    mock_client._client.messages.create.return_value = make_mock_response(
        "Response 1", input_tokens=50, output_tokens=100
    )
    mock_client.complete("1")
    mock_client._client.messages.create.return_value = make_mock_response(
        "Response 2", input_tokens=75, output_tokens=150
    )
    mock_client.complete("2")

    summary = mock_client.usage_summary
    assert summary["total_input_tokens"] == 125
    assert summary["total_output_tokens"] == 250


def test_rate_limit_retried_once_after_backoff(
    mock_client: CapabilityClient, sleeps: list[float]
) -> None:
    """Test that a 429 is retried exactly once after the fixed backoff."""
    mock_client._client.messages.create.side_effect = [
        _rate_limited(),
        make_mock_response("second time lucky"),
    ]

    assert mock_client.complete("hi") == "second time lucky"
    assert mock_client._client.messages.create.call_count == 2
    assert sleeps == [30]


def test_second_rate_limit_surfaces_as_capability_error(
    mock_client: CapabilityClient, sleeps: list[float]
) -> None:
    mock_client._client.messages.create.side_effect = [_rate_limited(), _rate_limited()]

    with pytest.raises(CapabilityError) as excinfo:
        mock_client.complete("hi")

    assert excinfo.value.status_code == 429
    assert mock_client._client.messages.create.call_count == 2
    assert sleeps == [30]


def test_server_error_not_retried_and_body_truncated(
    mock_client: CapabilityClient, sleeps: list[float]
) -> None:
    mock_client._client.messages.create.side_effect = _server_error({"error": "x" * 500})

    with pytest.raises(CapabilityError) as excinfo:
        mock_client.complete("hi")

    assert excinfo.value.status_code == 500
    assert len(excinfo.value.body) == 200
    assert mock_client._client.messages.create.call_count == 1
    assert sleeps == []


# ---------------------------------------------------------------------------
# grounded completion
# ---------------------------------------------------------------------------


def test_grounded_completion_collects_unique_sources(mock_client: CapabilityClient) -> None:
    search = MagicMock(type="web_search_tool_result")
    search.content = [
        MagicMock(url="https://support.apple.com/reset", title="Apple Support"),
        MagicMock(url="https://example.com/guide", title="A guide"),
    ]
    text = MagicMock(type="text", text="Hold the side button.")
    text.citations = [MagicMock(url="https://support.apple.com/reset", title="Apple Support")]
    response = make_mock_response("")
    response.content = [search, text]
    mock_client._client.messages.create.return_value = response

    grounded = mock_client.complete_grounded("How do I reset an iPhone?")

    assert grounded.text == "Hold the side button."
    assert grounded.sources == [
        {"title": "Apple Support", "url": "https://support.apple.com/reset"},
        {"title": "A guide", "url": "https://example.com/guide"},
    ]
    tools = mock_client._client.messages.create.call_args.kwargs["tools"]
    assert tools[0]["type"] == "web_search_20250305"


# ---------------------------------------------------------------------------
# structured extraction
# ---------------------------------------------------------------------------


def test_extract_structured_forces_tool_and_validates(mock_client: CapabilityClient) -> None:
    mock_client._client.messages.create.return_value = make_tool_response(
        {"is_duplicate": True, "similarity_score": "92", "closest_title": "Reset iPhone"}
    )

    verdict = mock_client.extract_structured("Is this a duplicate?", DuplicateVerdict)

    assert verdict.similarity_score == 92
    assert verdict.closest_title == "Reset iPhone"
    kwargs = mock_client._client.messages.create.call_args.kwargs
    assert kwargs["tool_choice"] == {"type": "tool", "name": "record_result"}
    assert kwargs["tools"][0]["input_schema"]["title"] == "DuplicateVerdict"
    assert kwargs["temperature"] == 0


def test_extract_structured_without_tool_block_raises(mock_client: CapabilityClient) -> None:
    mock_client._client.messages.create.return_value = make_mock_response("I refuse.")

    with pytest.raises(StructuredOutputError):
        mock_client.extract_structured("Write it", ArticleDraft)


def test_extract_structured_invalid_payload_raises(mock_client: CapabilityClient) -> None:
    mock_client._client.messages.create.return_value = make_tool_response({"slug": "no-title"})

    with pytest.raises(StructuredOutputError):
        mock_client.extract_structured("Write it", ArticleDraft)


def test_schemas_repair_sloppy_values() -> None:
    review = QualityReview.model_validate({"quality_score": "not a number"})
    assert review.quality_score == 7

    clamped = QualityReview.model_validate({"quality_score": 14})
    assert clamped.quality_score == 10

    issue = Issue.model_validate(
        {"type": "Truncation", "severity": "URGENT", "description": "Cuts off", "auto_fixable": True}
    )
    assert issue.type == "quality"
    assert issue.severity == "warning"
    assert issue.auto_fixable is False

    draft = ArticleDraft.model_validate(
        {"title": "T", "content": "C", "category_id": "abc", "read_time": 0}
    )
    assert draft.category_id is None
    assert draft.read_time == 1


# ---------------------------------------------------------------------------
# long-running jobs
# ---------------------------------------------------------------------------


def _batch(processing_status: str) -> MagicMock:
    batch = MagicMock(id="msgbatch_1")
    batch.processing_status = processing_status
    return batch


def _succeeded(text: str) -> MagicMock:
    entry = MagicMock()
    entry.result.type = "succeeded"
    entry.result.message = make_mock_response(text)
    return entry


def test_wait_for_polls_until_completed(mock_client: CapabilityClient, sleeps: list[float]) -> None:
    batches = mock_client._client.messages.batches
    batches.retrieve.side_effect = [_batch("in_progress"), _batch("in_progress"), _batch("ended")]
    batches.results.return_value = iter([_succeeded("Deep research prose")])

    result = mock_client.wait_for("msgbatch_1", timeout_minutes=10, poll_interval=15)

    assert result == "Deep research prose"
    assert sleeps == [15, 15]


def test_wait_for_raises_when_job_fails(mock_client: CapabilityClient) -> None:
    entry = MagicMock()
    entry.result.type = "errored"
    entry.result.error = "invalid_request"
    batches = mock_client._client.messages.batches
    batches.retrieve.return_value = _batch("ended")
    batches.results.return_value = iter([entry])

    with pytest.raises(LongRunningJobError, match="invalid_request"):
        mock_client.wait_for("msgbatch_1", timeout_minutes=10)


def test_wait_for_times_out(settings, sleeps: list[float]) -> None:
    ticks = iter([0, 100, 400, 700])
    client = CapabilityClient(settings, sleep=sleeps.append, clock=lambda: next(ticks))
    client._client = MagicMock()
    client._client.messages.batches.retrieve.return_value = _batch("in_progress")

    with pytest.raises(LongRunningTimeout):
        client.wait_for("msgbatch_1", timeout_minutes=10, poll_interval=300)

    assert sleeps == [300, 300]


def test_start_long_running_is_never_retried(
    mock_client: CapabilityClient, sleeps: list[float]
) -> None:
    mock_client._client.messages.batches.create.side_effect = _rate_limited()

    with pytest.raises(CapabilityError) as excinfo:
        mock_client.start_long_running("Research phones")

    assert excinfo.value.status_code == 429
    assert mock_client._client.messages.batches.create.call_count == 1
    assert sleeps == []


# ---------------------------------------------------------------------------
# templates
# ---------------------------------------------------------------------------


def test_render_template() -> None:
    """Test that Jinja2 templates render correctly."""
    rendered = render(
        "dedup_keep.j2",
        topics=["How to fix slow WiFi", "Reset a forgotten Gmail password"],
        titles=["Speed up your home network"],
    )

    assert "0. How to fix slow WiFi" in rendered
    assert "1. Reset a forgotten Gmail password" in rendered
    assert "Speed up your home network" in rendered


def test_render_ask_without_articles() -> None:
    rendered = render("ask.j2", question="Why is my printer offline?", articles=[])

    assert "Why is my printer offline?" in rendered
    assert "No articles found" in rendered


def test_suffix_is_optional() -> None:
    assert render("audit_system") == render("audit_system.j2")


def test_every_prompt_ships_as_package_data() -> None:
    names = template_names()

    assert len(names) == 21
    assert {"write_article.j2", "verify_facts.j2", "ask_system.j2"} <= set(names)
