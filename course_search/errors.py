"""Error kinds raised by the search core and translated to `{"error": ...}` at the HTTP boundary."""


class CourseSearchError(Exception):
    """Base class for all course-search failures"""

    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class QueryValidationError(CourseSearchError):
    """The query is empty or malformed; the user can fix it."""


class UpstreamUnavailable(CourseSearchError):
    """Embedding or catalog collaborator failed; no results can be produced."""


class EmbeddingUnavailable(UpstreamUnavailable):
    pass


class SearchUnavailable(UpstreamUnavailable):
    pass


class ExplanationUnavailable(CourseSearchError):
    """Explanation for one course could not be produced. Never fatal to a search."""


class PopularityUpdateFailed(CourseSearchError):
    """Popularity counter could not be updated. Logged only."""
