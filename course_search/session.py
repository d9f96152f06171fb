"""
Caller-side search state: the query, the pagination cursor, the ids already
shown, and explanation text merged in as it streams.

One SearchSession belongs to one user interaction and must not be shared
between unrelated sessions. A new query resets everything.
"""

from dataclasses import dataclass, field

from course_search.models import CourseRecord, Cursor, SearchPage
from course_search.search import validate_query


@dataclass
class SearchSession:
    query: str = ""
    limit: int = 3
    cursor: Cursor = field(default_factory=Cursor)
    has_more: bool = False
    seen_ids: set[int] = field(default_factory=set)
    results: list[CourseRecord] = field(default_factory=list)
    explanations: dict[int, str] = field(default_factory=dict)

    def start(self, query: str) -> None:
        """Begin a new search; cursor, exclusions and results are cleared."""
        self.query = validate_query(query)
        self.cursor = Cursor()
        self.has_more = False
        self.seen_ids = set()
        self.results = []
        self.explanations = {}

    @property
    def started(self) -> bool:
        return bool(self.query)

    def next_request(self) -> dict:
        """Payload for the next `/api/search` call."""
        body: dict = {"query": self.query, "limit": self.limit}
        if self.results:
            body["lastScore"] = self.cursor.last_score
            body["lastId"] = self.cursor.last_id
            body["excludeIds"] = sorted(self.seen_ids)
        return body

    def apply_page(self, page: SearchPage) -> list[CourseRecord]:
        """Append a fetched page; returns the records that were new."""
        added = []
        for record in page.results:
            if record.id in self.seen_ids:
                continue
            self.seen_ids.add(record.id)
            self.results.append(record)
            added.append(record)
            if record.explanation:
                self.explanations[record.id] = record.explanation

        self.cursor = Cursor(
            last_score=page.pagination.last_score, last_id=page.pagination.last_id
        )
        self.has_more = page.pagination.has_more
        return added

    def merge_explanation(self, course_id: int, text: str) -> bool:
        """Replace the stored explanation for `course_id` (last write wins)."""
        if course_id not in self.seen_ids:
            return False
        self.explanations[course_id] = text
        return True

    def display_text(self, record: CourseRecord) -> str:
        """Generated explanation if any, else the catalog description."""
        return self.explanations.get(record.id) or record.course_descr or ""
