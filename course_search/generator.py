"""
Explanation generation module.

Takes the user's query and one retrieved course, formats an advisor prompt,
and calls an OpenAI-compatible chat completion API (Cerebras by default) to
explain why the course fits the query.

Two modes:
    explain()  — blocking, retried with linear backoff, returns None on failure
    stream()   — yields text fragments as they arrive, no retries

Explanations depend on the query, so nothing here is cached.
"""

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import AsyncExitStack

import httpx
import openai
from openai import AsyncOpenAI

from course_search.config import Settings
from course_search.errors import ExplanationUnavailable

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Prompt builder
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = (
    "You are an experienced academic advisor helping a student choose courses. "
    "You receive the student's free-text query plus a course title and its official description. "
    "Write a short explanation in TWO parts:\n"
    "1. FIRST PART (about 20 words): connect the course to the student's query. Start with "
    "\"This course is a good fit for your interests in [concepts from the query] because...\" "
    "and reuse the student's own words.\n"
    "2. SECOND PART (about 40 words): describe what the course covers and its key features.\n"
    "Keep the whole explanation at or under 60 words, not counting prerequisites.\n"
    "Always finish with a blank line followed by a line starting with \"Prerequisites: \". "
    "Wrap prerequisite course codes in <u></u> tags, or write \"Prerequisites: None mentioned\" "
    "when the description lists none.\n"
    "Be professional and advisor-like. Never mention word counts or that you are an AI."
)


def build_user_message(query: str, course_title: str | None, course_descr: str | None) -> str:
    return (
        "Write the two-part explanation described above, 60 words max, "
        "with prerequisites on their own line at the end.\n\n"
        f'Student query: "{query}"\n'
        f"Course title: {course_title or 'N/A'}\n"
        f"Course description:\n{course_descr or 'N/A'}"
    )


def build_messages(query: str, course_title: str | None, course_descr: str | None) -> list[dict]:
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": build_user_message(query, course_title, course_descr)},
    ]


# ---------------------------------------------------------------------------
# Stream decoding
# ---------------------------------------------------------------------------

DONE_SENTINEL = "[DONE]"


def parse_sse_line(line: str) -> str | None:
    """Text delta carried by one `data: {...}` line, or None for anything else."""
    if not line.startswith("data: "):
        return None
    data = line[len("data: "):].strip()
    if not data or data == DONE_SENTINEL:
        return None
    try:
        content = json.loads(data)["choices"][0]["delta"].get("content")
    except (ValueError, KeyError, IndexError, TypeError, AttributeError):
        # skip malformed chunks
        return None
    return content or None


async def iter_sse_content(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Decode chat-completion SSE lines into text fragments until `[DONE]`."""
    async for line in lines:
        if line.strip() == f"data: {DONE_SENTINEL}":
            return
        content = parse_sse_line(line)
        if content:
            yield content


# ---------------------------------------------------------------------------
# Generator
# ---------------------------------------------------------------------------


def completion_text(completion) -> str:
    """First choice's text, or "" when any part of the reply is missing."""
    choices = getattr(completion, "choices", None) or []
    if not choices:
        return ""
    message = getattr(choices[0], "message", None)
    content = getattr(message, "content", None)
    return content.strip() if isinstance(content, str) else ""


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, openai.APIStatusError):
        return exc.status_code == 429 or not 400 <= exc.status_code < 500
    return True


class ExplanationGenerator:
    """Produces query-specific course explanations through a chat completion API."""

    def __init__(
        self,
        settings: Settings,
        client: AsyncOpenAI | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings
        self.client = client
        self.sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings, http: httpx.AsyncClient | None = None):
        """Build with an SDK client, or without one when no API key is configured."""
        client = None
        if settings.cerebras_api_key:
            client = AsyncOpenAI(
                api_key=settings.cerebras_api_key,
                base_url=settings.cerebras_base_url,
                timeout=settings.request_timeout,
                max_retries=0,  # retries are handled in explain()
                http_client=http,
            )
        return cls(settings, client)

    @property
    def configured(self) -> bool:
        return self.client is not None

    def _params(self, query: str, course_title: str | None, course_descr: str | None) -> dict:
        return {
            "model": self.settings.cerebras_model,
            "messages": build_messages(query, course_title, course_descr),
            "temperature": self.settings.explain_temperature,
            "max_tokens": self.settings.explain_max_tokens,
        }

    async def explain(
        self, query: str, course_title: str | None, course_descr: str | None
    ) -> str | None:
        """
        Complete explanation text, or None once retries are exhausted.

        Client errors (4xx other than 429) are not retried. Attempt n is
        followed by a pause of n * explain_backoff_ms before attempt n + 1.
        """
        if self.client is None:
            log.warning("CEREBRAS_API_KEY not configured; skipping explanation")
            return None

        params = self._params(query, course_title, course_descr)
        max_attempts = self.settings.explain_max_attempts

        for attempt in range(1, max_attempts + 1):
            try:
                completion = await self.client.chat.completions.create(**params, stream=False)
                text = completion_text(completion)
                if text:
                    return text
                log.warning("Empty explanation for %r (attempt %d)", course_title, attempt)
            except (openai.OpenAIError, httpx.HTTPError, IndexError, TypeError, AttributeError) as exc:
                if not _is_retryable(exc):
                    log.warning(
                        "Explanation for %r rejected (%s); not retrying", course_title, exc
                    )
                    return None
                log.warning(
                    "Explanation for %r failed (attempt %d/%d): %r",
                    course_title, attempt, max_attempts, exc,
                )

            if attempt < max_attempts:
                delay = attempt * self.settings.explain_backoff_ms / 1000
                log.info("  retrying in %.1fs", delay)
                await self.sleep(delay)

        log.warning("Giving up on explanation for %r after %d attempts", course_title, max_attempts)
        return None

    async def stream(
        self, query: str, course_title: str | None, course_descr: str | None
    ) -> AsyncIterator[str]:
        """
        Yield explanation fragments in arrival order.

        Raises ExplanationUnavailable if the stream cannot be opened. A failure
        after that ends the iteration early; fragments already yielded stand.
        """
        if self.client is None:
            raise ExplanationUnavailable("CEREBRAS_API_KEY not configured", status_code=500)

        params = self._params(query, course_title, course_descr)
        t0 = time.perf_counter()
        log.info("Explain - calling %s for %s", self.settings.cerebras_model, course_title or "course")

        async with AsyncExitStack() as stack:
            try:
                response = await stack.enter_async_context(
                    self.client.chat.completions.with_streaming_response.create(
                        **params, stream=True
                    )
                )
            except openai.APIStatusError as exc:
                raise ExplanationUnavailable(str(exc.message), status_code=exc.status_code) from exc
            except (openai.OpenAIError, httpx.HTTPError) as exc:
                raise ExplanationUnavailable(f"Explanation stream failed: {exc!r}") from exc

            log.info("Explain - connected in %.2fs", time.perf_counter() - t0)
            first = True
            try:
                async for fragment in iter_sse_content(response.iter_lines()):
                    if first:
                        log.info("Explain - first token in %.2fs", time.perf_counter() - t0)
                        first = False
                    yield fragment
            except (openai.OpenAIError, httpx.HTTPError) as exc:
                log.warning("Explain stream for %r interrupted: %r", course_title, exc)
                return

        log.info("Explain - stream complete in %.2fs", time.perf_counter() - t0)
