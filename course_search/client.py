"""
Async client for the course search API, used by the Streamlit frontend.

Explanations are fetched after a page is shown: one stream per course, all
running at once. Each stream builds its own text and writes the whole
snapshot into the session after every chunk, so arrivals from different
courses never interleave into one another.
"""

import asyncio
import logging
from collections.abc import Callable, Iterable

import httpx

from course_search.errors import CourseSearchError, ExplanationUnavailable
from course_search.models import CourseRecord, Leaderboard, SearchPage
from course_search.session import SearchSession

log = logging.getLogger(__name__)

OnUpdate = Callable[[int, str], None]


def _error_message(response: httpx.Response, default: str) -> str:
    try:
        return response.json().get("error") or default
    except (ValueError, AttributeError):
        return default


class CourseSearchClient:
    def __init__(self, base_url: str, http: httpx.AsyncClient | None = None, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.http = http or httpx.AsyncClient(timeout=timeout)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.http.aclose()

    async def _fetch_page(self, session: SearchSession, default_error: str) -> list[CourseRecord]:
        response = await self.http.post(f"{self.base_url}/api/search", json=session.next_request())
        if response.is_error:
            raise CourseSearchError(_error_message(response, default_error), response.status_code)
        page = SearchPage.model_validate(response.json())
        return session.apply_page(page)

    async def search(self, session: SearchSession, query: str) -> list[CourseRecord]:
        """Start a fresh search in `session` and fetch its first page."""
        session.start(query)
        return await self._fetch_page(session, "Search failed")

    async def load_more(self, session: SearchSession) -> list[CourseRecord]:
        if not session.started or not session.has_more:
            return []
        return await self._fetch_page(session, "Load more failed")

    async def stream_explanation(
        self,
        session: SearchSession,
        record: CourseRecord,
        on_update: OnUpdate | None = None,
    ) -> str:
        """Stream one course's explanation into the session; returns the final text."""
        body = {
            "query": session.query,
            "courseTitle": record.course_title,
            "courseDescr": record.course_descr,
        }
        text = ""
        async with self.http.stream("POST", f"{self.base_url}/api/explain", json=body) as response:
            if response.is_error:
                await response.aread()
                raise ExplanationUnavailable(
                    _error_message(response, "Explain failed"), response.status_code
                )
            try:
                async for chunk in response.aiter_text():
                    if not chunk:
                        continue
                    text += chunk
                    session.merge_explanation(record.id, text)
                    if on_update:
                        on_update(record.id, text)
            except httpx.HTTPError as exc:
                log.warning("Explanation stream for course %d cut short: %r", record.id, exc)
        return text

    async def explain_all(
        self,
        session: SearchSession,
        records: Iterable[CourseRecord],
        on_update: OnUpdate | None = None,
    ) -> dict[int, str]:
        """Stream explanations for `records` concurrently; failures are skipped."""
        records = list(records)
        outcomes = await asyncio.gather(
            *(self.stream_explanation(session, r, on_update) for r in records),
            return_exceptions=True,
        )
        finished = {}
        for record, outcome in zip(records, outcomes):
            if isinstance(outcome, BaseException):
                log.warning("No explanation for course %d: %r", record.id, outcome)
                continue
            finished[record.id] = outcome
        return finished

    async def leaderboard(self) -> Leaderboard:
        response = await self.http.get(f"{self.base_url}/api/leaderboard")
        if response.is_error:
            raise CourseSearchError(_error_message(response, "Leaderboard failed"), response.status_code)
        return Leaderboard.model_validate(response.json())
