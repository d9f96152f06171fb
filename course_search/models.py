"""Records exchanged between the pipeline, the HTTP layer and the caller's session."""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CourseRecord(BaseModel):
    """One catalog course as returned for a query.

    `similarity` is computed per query by the catalog; `explanation` only ever
    lives in the in-memory response.
    """

    model_config = ConfigDict(extra="ignore")

    id: int
    course_codes: str
    course_title: str | None = None
    course_descr: str | None = None
    instructors: str | None = None
    similarity: float = 0.0
    explanation: str | None = None

    @field_validator("similarity", mode="before")
    @classmethod
    def _missing_similarity(cls, value):
        return 0.0 if value is None else value

    @property
    def codes(self) -> list[str]:
        """Individual course codes from the slash-delimited field."""
        return [c.strip() for c in self.course_codes.split("/") if c.strip()]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Cursor(_CamelModel):
    """Strict (similarity, id) boundary for the next page."""

    last_score: float | None = None
    last_id: int | None = None

    @classmethod
    def after(cls, records: list[CourseRecord]) -> "Cursor":
        """Cursor positioned after the last record of an already sorted page."""
        if not records:
            return cls()
        last = records[-1]
        return cls(last_score=last.similarity, last_id=last.id)


class Pagination(Cursor):
    has_more: bool = False


class SearchRequest(_CamelModel):
    query: str
    limit: int | None = Field(default=None, ge=1, le=50)
    last_score: float | None = None
    last_id: int | None = None
    exclude_ids: list[int] | None = None

    @property
    def cursor(self) -> Cursor:
        return Cursor(last_score=self.last_score, last_id=self.last_id)


class SearchPage(BaseModel):
    results: list[CourseRecord]
    pagination: Pagination


class ExplainRequest(_CamelModel):
    query: str
    course_title: str | None = None
    course_descr: str | None = None


class LeaderboardEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    course_id: int
    course_codes: str
    course_title: str | None = None
    search_count: int = 0


class Leaderboard(_CamelModel):
    leaderboard: list[LeaderboardEntry]
    total_rows: int = 0
