"""
Result pipeline: embed the query, fetch one ranked page from the catalog,
record popularity, and attach explanations.

    1. validate the query
    2. embed + normalise
    3. fetch a page (cursor + exclusions applied by the store)
    4. drop repeated ids (first occurrence wins), re-sort by similarity, descending
    5. fire-and-forget popularity increment for every returned id
    6. next cursor from the last record of the sorted page
    7. enrich according to the configured strategy

Enrichment strategies:
    EAGER     explain each course in turn, pausing between calls; courses whose
              explanation fails are left out of the page
    DEFERRED  return every record untouched; the caller streams explanations
              per course afterwards

Public API:
    CoursePipeline(embedder, catalog, generator, popularity, settings)
    CoursePipeline.search(query, limit, cursor, exclude_ids) → SearchPage
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence

from course_search.catalog import CatalogClient, drop_repeated_ids, sort_by_similarity
from course_search.config import EnrichmentStrategy, Settings
from course_search.embedder import EmbeddingClient
from course_search.errors import QueryValidationError
from course_search.generator import ExplanationGenerator
from course_search.models import CourseRecord, Cursor, Pagination, SearchPage
from course_search.popularity import PopularityCounter

log = logging.getLogger(__name__)


def validate_query(query: object) -> str:
    """Return the trimmed query or raise QueryValidationError."""
    if not isinstance(query, str) or not query.strip():
        raise QueryValidationError("Query is required and must be a non-empty string")
    return query.strip()


def next_pagination(records: list[CourseRecord], limit: int) -> Pagination:
    """
    A full page is taken to mean more results exist. This is a heuristic: when
    exactly `limit` candidates remained, hasMore is True and the following
    page comes back empty.
    """
    cursor = Cursor.after(records)
    return Pagination(
        has_more=len(records) == limit,
        last_score=cursor.last_score,
        last_id=cursor.last_id,
    )


class CoursePipeline:
    def __init__(
        self,
        embedder: EmbeddingClient,
        catalog: CatalogClient,
        generator: ExplanationGenerator,
        popularity: PopularityCounter,
        settings: Settings,
        strategy: EnrichmentStrategy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.embedder = embedder
        self.catalog = catalog
        self.generator = generator
        self.popularity = popularity
        self.settings = settings
        self.strategy = strategy or settings.enrichment
        self.sleep = sleep

    async def search(
        self,
        query: str,
        limit: int | None = None,
        cursor: Cursor | None = None,
        exclude_ids: Sequence[int] | None = None,
    ) -> SearchPage:
        """
        Fetch and enrich one page of results.

        Each call is independent: "load more" passes the previous cursor and
        every id already shown, nothing is kept between calls.
        """
        text = validate_query(query)
        limit = limit or self.settings.search_limit
        t0 = time.perf_counter()

        log.info("Searching: q=%r  limit=%d  cursor=%s  excluded=%d",
                 text, limit, cursor, len(exclude_ids or ()))
        vector = await self.embedder.embed(text)

        t_search = time.perf_counter()
        records = await self.catalog.search(vector, limit, cursor, exclude_ids)
        records = sort_by_similarity(drop_repeated_ids(records))
        log.info("  Search done in %.2fs, results: %d", time.perf_counter() - t_search, len(records))
        log.info("  Course titles: %s", [r.course_title for r in records])

        self.popularity.record([r.id for r in records])
        pagination = next_pagination(records, limit)

        if self.strategy is EnrichmentStrategy.EAGER:
            records = await self._enrich_eager(text, records)

        log.info("query=%r  hits=%d  has_more=%s  %.2fs",
                 text, len(records), pagination.has_more, time.perf_counter() - t0)
        return SearchPage(results=records, pagination=pagination)

    async def _enrich_eager(self, query: str, records: list[CourseRecord]) -> list[CourseRecord]:
        """Explain one course at a time; keep only those that got an explanation."""
        enriched: list[CourseRecord] = []
        for i, record in enumerate(records):
            if i > 0 and self.settings.eager_delay_ms:
                await self.sleep(self.settings.eager_delay_ms / 1000)

            explanation = await self.generator.explain(
                query, record.course_title, record.course_descr
            )
            if explanation is None:
                log.info("  No explanation for course %d; omitting", record.id)
                continue
            enriched.append(record.model_copy(update={"explanation": explanation}))
        return enriched
