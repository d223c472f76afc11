"""Wrapper around the Anthropic SDK exposing the four generation capabilities.

* plain completion
* web-grounded completion (server-side web search tool)
* structured extraction (forced tool use validated by a pydantic model)
* long-running jobs (Message Batches API) with polling
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from anthropic import Anthropic, APIStatusError, RateLimitError
from pydantic import BaseModel, ValidationError
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from techhelp.config import Settings
from techhelp.errors import (
    CapabilityError,
    LongRunningJobError,
    LongRunningTimeout,
    StructuredOutputError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

_STRUCTURED_TOOL = "record_result"


@dataclass
class GroundedText:
    text: str
    sources: list[dict] = field(default_factory=list)


@dataclass
class LongRunningStatus:
    job_id: str
    status: str  # running | completed | failed
    result: str = ""
    error: str = ""


def _error_body(exc: APIStatusError) -> str:
    if exc.body is not None:
        return str(exc.body)
    return exc.message


def _text_of(message: object) -> str:
    return "".join(
        block.text for block in message.content if getattr(block, "type", None) == "text"
    )


def _sources_of(message: object) -> list[dict]:
    """Collect unique {title, url} pairs from search results and citations."""
    seen: dict[str, dict] = {}

    def add(url: str | None, title: str | None) -> None:
        if url and url not in seen:
            seen[url] = {"title": title or url, "url": url}

    for block in message.content:
        block_type = getattr(block, "type", None)
        if block_type == "web_search_tool_result" and isinstance(block.content, list):
            for item in block.content:
                add(getattr(item, "url", None), getattr(item, "title", None))
        elif block_type == "text":
            for citation in getattr(block, "citations", None) or []:
                add(getattr(citation, "url", None), getattr(citation, "title", None))
    return list(seen.values())


class CapabilityClient:
    """Thin wrapper providing rate-limit retry, error mapping and token tracking."""

    def __init__(
        self,
        settings: Settings,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        # The single retry policy lives here, not in the SDK
        self._client = Anthropic(api_key=settings.anthropic_api_key, max_retries=0)
        self._model = settings.model
        self._max_tokens = settings.max_tokens
        self._temperature = settings.temperature
        self._search_max_uses = settings.web_search_max_uses
        self._backoff = settings.rate_limit_backoff_seconds
        self._poll_interval = settings.long_running_poll_seconds
        self._sleep = sleep
        self._clock = clock
        self._total_input_tokens = 0
        self._total_output_tokens = 0

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------

    def _with_retry(self, fn: Callable, *args: object, **kwargs: object):
        """Call ``fn``; on HTTP 429 wait a fixed backoff and try exactly once more."""
        retrying = Retrying(
            retry=retry_if_exception_type(RateLimitError),
            stop=stop_after_attempt(2),
            wait=wait_fixed(self._backoff),
            sleep=self._sleep,
            before_sleep=lambda state: logger.warning(
                "Rate limited, retrying in %ss", self._backoff
            ),
            reraise=True,
        )
        try:
            return retrying(fn, *args, **kwargs)
        except APIStatusError as exc:
            raise CapabilityError(exc.status_code, _error_body(exc)) from exc

    def _track(self, usage: object) -> None:
        self._total_input_tokens += usage.input_tokens
        self._total_output_tokens += usage.output_tokens

    def _request(
        self,
        prompt: str,
        system: str | None,
        *,
        history: list[dict] | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> dict:
        params: dict = {
            "model": model or self._model,
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": temperature if temperature is not None else self._temperature,
            "messages": [*(history or []), {"role": "user", "content": prompt}],
        }
        if system:
            params["system"] = system
        return params

    def _web_search_tool(self) -> dict:
        return {
            "type": "web_search_20250305",
            "name": "web_search",
            "max_uses": self._search_max_uses,
        }

    def _create(self, params: dict):
        response = self._with_retry(self._client.messages.create, **params)
        self._track(response.usage)
        return response

    # ------------------------------------------------------------------
    # capabilities
    # ------------------------------------------------------------------

    def complete(
        self,
        prompt: str,
        system: str | None = None,
        *,
        history: list[dict] | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str:
        """Plain generation; returns the concatenated text blocks."""
        params = self._request(
            prompt,
            system,
            history=history,
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
        )
        return _text_of(self._create(params))

    def complete_grounded(
        self,
        prompt: str,
        system: str | None = None,
        *,
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> GroundedText:
        """Generation augmented with live web search.

        Grounding and forced tool output cannot be combined in one request, so
        callers needing typed data follow this with :meth:`extract_structured`.
        """
        params = self._request(
            prompt, system, model=model, max_tokens=max_tokens, temperature=temperature
        )
        params["tools"] = [self._web_search_tool()]
        response = self._create(params)
        return GroundedText(text=_text_of(response), sources=_sources_of(response))

    def extract_structured(
        self,
        prompt: str,
        schema: type[T],
        system: str | None = None,
        *,
        model: str | None = None,
        max_tokens: int | None = None,
    ) -> T:
        """Force the model to answer through a tool whose input is ``schema``."""
        params = self._request(prompt, system, model=model, max_tokens=max_tokens, temperature=0)
        params["tools"] = [
            {
                "name": _STRUCTURED_TOOL,
                "description": (schema.__doc__ or schema.__name__).strip(),
                "input_schema": schema.model_json_schema(),
            }
        ]
        params["tool_choice"] = {"type": "tool", "name": _STRUCTURED_TOOL}
        response = self._create(params)

        for block in response.content:
            if getattr(block, "type", None) == "tool_use" and block.name == _STRUCTURED_TOOL:
                try:
                    return schema.model_validate(block.input)
                except ValidationError as exc:
                    raise StructuredOutputError(
                        f"{schema.__name__} failed validation: {exc}"
                    ) from exc
        raise StructuredOutputError(f"Model returned no {schema.__name__} payload")

    def start_long_running(
        self,
        prompt: str,
        system: str | None = None,
        *,
        model: str | None = None,
        max_tokens: int | None = None,
    ) -> str:
        """Submit a grounded research request as a batch job; returns its id.

        Never retried: resubmitting would restart the expensive job.
        """
        params = self._request(prompt, system, model=model, max_tokens=max_tokens)
        params["tools"] = [self._web_search_tool()]
        try:
            batch = self._client.messages.batches.create(
                requests=[{"custom_id": "research", "params": params}]
            )
        except APIStatusError as exc:
            raise CapabilityError(exc.status_code, _error_body(exc)) from exc
        logger.info("Started long-running job %s", batch.id)
        return batch.id

    def poll(self, job_id: str) -> LongRunningStatus:
        batch = self._with_retry(self._client.messages.batches.retrieve, job_id)
        if batch.processing_status != "ended":
            return LongRunningStatus(job_id=job_id, status="running")

        for entry in self._with_retry(self._client.messages.batches.results, job_id):
            result = entry.result
            if result.type == "succeeded":
                self._track(result.message.usage)
                return LongRunningStatus(
                    job_id=job_id, status="completed", result=_text_of(result.message)
                )
            error = getattr(result, "error", None)
            return LongRunningStatus(
                job_id=job_id, status="failed", error=str(error) if error else result.type
            )
        return LongRunningStatus(job_id=job_id, status="failed", error="no results")

    def wait_for(
        self,
        job_id: str,
        *,
        timeout_minutes: float,
        poll_interval: float | None = None,
    ) -> str:
        """Poll until the job finishes; return its text or raise."""
        interval = self._poll_interval if poll_interval is None else poll_interval
        deadline = self._clock() + timeout_minutes * 60
        while True:
            status = self.poll(job_id)
            if status.status == "completed":
                return status.result
            if status.status == "failed":
                raise LongRunningJobError(f"Job {job_id} failed: {status.error}")
            if self._clock() >= deadline:
                raise LongRunningTimeout(
                    f"Job {job_id} still running after {timeout_minutes} minutes"
                )
            self._sleep(interval)

    @property
    def usage_summary(self) -> dict:
        return {
            "total_input_tokens": self._total_input_tokens,
            "total_output_tokens": self._total_output_tokens,
        }
