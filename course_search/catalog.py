"""
Catalog store client.

The course catalog, its vector index and the popularity counters live in an
external Postgres behind PostgREST. Everything here is a POST to
`/rest/v1/rpc/<function>`:

    search_courses[_spring26]_by_embedding_paginated  ranked page for a vector
    increment_course_popularity                       bump counters for ids
    get_leaderboard                                   most searched courses
    get_popularity_count                              rows in course_popularity

Which search function is called is fixed at construction from
Settings.search_term.
"""

import logging
from collections.abc import Iterable, Sequence
from typing import Any

import httpx
import numpy as np
from pydantic import ValidationError

from course_search.config import Settings
from course_search.errors import PopularityUpdateFailed, SearchUnavailable
from course_search.models import CourseRecord, Cursor, LeaderboardEntry

log = logging.getLogger(__name__)


def sort_by_similarity(records: Iterable[CourseRecord]) -> list[CourseRecord]:
    """Descending similarity, id descending on ties (the cursor's order)."""
    return sorted(records, key=lambda r: (r.similarity, r.id), reverse=True)


def drop_repeated_ids(records: Iterable[CourseRecord]) -> list[CourseRecord]:
    """Keep the first record seen for each id."""
    seen: set[int] = set()
    unique = []
    for record in records:
        if record.id in seen:
            log.warning("Catalog returned course %d more than once; dropping repeat", record.id)
            continue
        seen.add(record.id)
        unique.append(record)
    return unique


class CatalogClient:
    def __init__(self, settings: Settings, http: httpx.AsyncClient):
        self.settings = settings
        self.http = http
        self.search_rpc = settings.search_rpc
        log.info("Catalog search RPC: %s (term=%s)", self.search_rpc, settings.search_term)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _url(self, function: str) -> str:
        return f"{self.settings.supabase_url.rstrip('/')}/rest/v1/rpc/{function}"

    def _headers(self) -> dict[str, str]:
        key = self.settings.supabase_anon_key
        return {"apikey": key, "Authorization": f"Bearer {key}"}

    async def _rpc(self, function: str, body: dict[str, Any]) -> httpx.Response:
        return await self.http.post(
            self._url(function),
            headers=self._headers(),
            json=body,
            timeout=self.settings.request_timeout,
        )

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(
        self,
        vector: np.ndarray,
        limit: int = 3,
        cursor: Cursor | None = None,
        exclude_ids: Sequence[int] | None = None,
    ) -> list[CourseRecord]:
        """
        Fetch one page of courses ranked against `vector`.

        The store applies the cursor boundary and the exclusion filter; the
        returned page is de-duplicated by id and re-sorted here because its
        order is not trusted.
        """
        if not self.settings.catalog_configured:
            raise SearchUnavailable("Supabase credentials are not set")

        cursor = cursor or Cursor()
        body = {
            "query_embedding": [float(x) for x in vector],
            "limit_count": limit,
            "last_score": cursor.last_score,
            "last_id": cursor.last_id,
            "exclude_ids": list(exclude_ids) if exclude_ids else None,
        }

        try:
            response = await self._rpc(self.search_rpc, body)
        except httpx.HTTPError as exc:
            raise SearchUnavailable(f"Supabase request failed: {exc!r}") from exc

        if response.is_error:
            raise SearchUnavailable(
                f"Supabase request failed: {response.status_code} {response.reason_phrase}"
                f" - {response.text}",
                status_code=response.status_code,
            )

        try:
            rows = response.json()
        except ValueError as exc:
            raise SearchUnavailable("Supabase response is not JSON") from exc
        if not isinstance(rows, list):
            raise SearchUnavailable("Supabase search did not return a list")

        try:
            records = [CourseRecord.model_validate(row) for row in rows]
        except ValidationError as exc:
            raise SearchUnavailable(f"Malformed course record: {exc}") from exc

        return sort_by_similarity(drop_repeated_ids(records))

    # ------------------------------------------------------------------
    # Popularity
    # ------------------------------------------------------------------

    async def increment_popularity(self, course_ids: Sequence[int]) -> None:
        if not self.settings.catalog_configured:
            raise PopularityUpdateFailed("Supabase credentials are not set")
        try:
            response = await self._rpc("increment_course_popularity", {"course_ids": list(course_ids)})
        except httpx.HTTPError as exc:
            raise PopularityUpdateFailed(repr(exc)) from exc
        if response.is_error:
            raise PopularityUpdateFailed(
                f"{response.status_code} {response.text}", status_code=response.status_code
            )

    async def leaderboard(self, limit: int) -> list[LeaderboardEntry]:
        if not self.settings.catalog_configured:
            raise SearchUnavailable("Supabase not configured")
        try:
            response = await self._rpc("get_leaderboard", {"limit_count": limit})
        except httpx.HTTPError as exc:
            raise SearchUnavailable(f"Leaderboard request failed: {exc!r}") from exc
        if response.is_error:
            raise SearchUnavailable(response.text, status_code=response.status_code)

        try:
            rows = response.json() or []
            return [LeaderboardEntry.model_validate(row) for row in rows]
        except (ValueError, TypeError, ValidationError) as exc:
            raise SearchUnavailable(f"Malformed leaderboard: {exc}") from exc

    async def popularity_count(self) -> int:
        """Total rows in the popularity table; 0 when it cannot be read."""
        if not self.settings.catalog_configured:
            return 0
        try:
            response = await self._rpc("get_popularity_count", {})
            if response.is_error:
                log.warning("Popularity count RPC failed: %s", response.status_code)
                return 0
            count = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            log.warning("Popularity count RPC failed: %r", exc)
            return 0
        return count if isinstance(count, int) and not isinstance(count, bool) else 0
