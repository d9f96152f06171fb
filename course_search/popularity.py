"""
Per-course search popularity.

`record()` fires an increment for every course shown and returns at once; the
detached task swallows and logs its own failure. The read side backs the
leaderboard.
"""

import asyncio
import logging
from collections.abc import Sequence

from course_search.catalog import CatalogClient
from course_search.errors import PopularityUpdateFailed
from course_search.models import Leaderboard

log = logging.getLogger(__name__)


class PopularityCounter:
    def __init__(self, catalog: CatalogClient):
        self.catalog = catalog
        self._pending: set[asyncio.Task] = set()

    def record(self, course_ids: Sequence[int]) -> asyncio.Task | None:
        """Schedule an increment for `course_ids` without waiting for it."""
        if not course_ids:
            return None
        task = asyncio.create_task(self._increment(list(course_ids)))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _increment(self, course_ids: list[int]) -> None:
        try:
            await self.catalog.increment_popularity(course_ids)
        except PopularityUpdateFailed as exc:
            log.warning("Course popularity RPC failed: %s", exc.message)
        except Exception as exc:  # noqa: BLE001 - never escapes a detached task
            log.warning("Failed to increment course popularity: %r", exc)

    async def drain(self) -> None:
        """Wait for increments still in flight (used at shutdown)."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    async def leaderboard(self, limit: int) -> Leaderboard:
        entries = await self.catalog.leaderboard(limit)
        total = await self.catalog.popularity_count()
        return Leaderboard(leaderboard=entries, total_rows=total)
