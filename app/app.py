"""
FastAPI application — HTTP surface of the course search pipeline.

Run as a script:
    python app/app.py

Or as a module:
    uvicorn app.app:app --reload

Collaborators (all external, configured from the environment / .env):
    embedding service      DEEPINFRA_API_KEY, EMBEDDING_MODEL
    catalog store          SUPABASE_URL, SUPABASE_ANON_KEY, SEARCH_TERM
    text generation        CEREBRAS_API_KEY, CEREBRAS_MODEL

Endpoints:
    POST /api/search
        body:    {"query": "...", "limit": 3, "lastScore": .., "lastId": .., "excludeIds": [..]}
        returns: {"results": [...], "pagination": {"hasMore", "lastScore", "lastId"}}
    POST /api/explain
        body:    {"query": "...", "courseTitle": "...", "courseDescr": "..."}
        returns: chunked text/plain explanation
    GET  /api/leaderboard
        returns: {"leaderboard": [...], "totalRows": int}

Failures answer {"error": message} with a non-2xx status. Logs go to stdout
and logs/app.log (rotating, 5 MB max, 3 backups).
"""

import asyncio
import logging
import logging.handlers
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

import httpx
import uvicorn
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse

# Ensure project root is on sys.path when running as a script (python app/app.py)
sys.path.insert(0, str(Path(__file__).parent.parent))

from course_search.catalog import CatalogClient
from course_search.config import Settings, load_settings
from course_search.embedder import EmbeddingClient
from course_search.errors import (
    CourseSearchError,
    ExplanationUnavailable,
    QueryValidationError,
    UpstreamUnavailable,
)
from course_search.generator import ExplanationGenerator
from course_search.models import ExplainRequest, Leaderboard, SearchPage, SearchRequest
from course_search.popularity import PopularityCounter
from course_search.search import CoursePipeline, validate_query

load_dotenv()

log = logging.getLogger("api")


def _setup_logging(log_dir: str) -> None:
    root = logging.getLogger()
    if root.handlers:
        return
    path = Path(log_dir)
    path.mkdir(exist_ok=True)
    fmt = logging.Formatter("%(asctime)s  %(levelname)s  %(message)s")

    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(fmt)

    # Rotate at 5 MB, keep 3 backups
    rotating = logging.handlers.RotatingFileHandler(
        path / "app.log", maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"
    )
    rotating.setFormatter(fmt)

    root.setLevel(logging.INFO)
    root.addHandler(stream)
    root.addHandler(rotating)


# ---------------------------------------------------------------------------
# App + lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = load_settings()
    _setup_logging(settings.log_dir)

    http = httpx.AsyncClient(timeout=settings.request_timeout)
    catalog = CatalogClient(settings, http)
    popularity = PopularityCounter(catalog)
    generator = ExplanationGenerator.from_settings(settings)
    pipeline = CoursePipeline(
        EmbeddingClient(settings, http), catalog, generator, popularity, settings
    )

    app.state.settings = settings
    app.state.pipeline = pipeline
    app.state.generator = generator
    app.state.popularity = popularity
    log.info("Pipeline ready (enrichment=%s, search rpc=%s).",
             settings.enrichment.value, catalog.search_rpc)
    if not settings.deepinfra_api_key:
        log.warning("  DEEPINFRA_API_KEY is not set; searches will fail.")
    if not settings.catalog_configured:
        log.warning("  Supabase credentials are not set; searches will fail.")
    if not generator.configured:
        log.warning("  CEREBRAS_API_KEY is not set; explanations disabled.")

    yield  # server runs here

    await popularity.drain()
    if generator.client is not None:
        await generator.client.close()
    await http.aclose()


app = FastAPI(title="Course Search", lifespan=lifespan)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_pipeline(request: Request) -> CoursePipeline:
    return request.app.state.pipeline


def get_generator(request: Request) -> ExplanationGenerator:
    return request.app.state.generator


def get_popularity(request: Request) -> PopularityCounter:
    return request.app.state.popularity


# ---------------------------------------------------------------------------
# Error shape
# ---------------------------------------------------------------------------

def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


@app.exception_handler(RequestValidationError)
async def _invalid_body(_: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ())[1:]) or "body"
    return _error(f"Invalid request: {field}: {first.get('msg', 'malformed')}", 400)


@app.exception_handler(QueryValidationError)
async def _invalid_query(_: Request, exc: QueryValidationError) -> JSONResponse:
    return _error(exc.message, 400)


@app.exception_handler(UpstreamUnavailable)
async def _upstream(_: Request, exc: UpstreamUnavailable) -> JSONResponse:
    log.error("Upstream failure: %s", exc.message)
    return _error(exc.message, 500)


@app.exception_handler(CourseSearchError)
async def _other(_: Request, exc: CourseSearchError) -> JSONResponse:
    log.error("Request failed: %s", exc.message)
    return _error(exc.message, 500)


@app.exception_handler(Exception)
async def _unexpected(request: Request, exc: Exception) -> JSONResponse:
    log.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error(str(exc) or "An error occurred", 500)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.post("/api/search", response_model=SearchPage)
async def search(
    req: SearchRequest, pipeline: CoursePipeline = Depends(get_pipeline)
) -> SearchPage:
    return await pipeline.search(req.query, req.limit, req.cursor, req.exclude_ids)


async def _prepend(first: str, rest: AsyncIterator[str]) -> AsyncIterator[str]:
    yield first
    async for fragment in rest:
        yield fragment


@app.post("/api/explain")
async def explain(
    req: ExplainRequest, generator: ExplanationGenerator = Depends(get_generator)
):
    query = validate_query(req.query)
    fragments = generator.stream(query, req.course_title, req.course_descr)

    # Open the upstream stream before committing to a 200.
    try:
        first = await anext(fragments)
    except StopAsyncIteration:
        first = ""
    except ExplanationUnavailable as exc:
        status = exc.status_code if exc.status_code and exc.status_code >= 400 else 500
        log.warning("Explain error for %r: %s", req.course_title, exc.message)
        return _error(exc.message, status)

    return StreamingResponse(
        _prepend(first, fragments), media_type="text/plain; charset=utf-8"
    )


@app.get("/api/leaderboard", response_model=Leaderboard)
async def leaderboard(
    settings: Settings = Depends(get_settings),
    popularity: PopularityCounter = Depends(get_popularity),
):
    try:
        return await popularity.leaderboard(settings.leaderboard_limit)
    except UpstreamUnavailable as exc:
        log.error("Leaderboard error: %s", exc.message)
        status = exc.status_code if exc.status_code and exc.status_code >= 400 else 500
        return _error(exc.message, status)


@app.get("/health")
async def health(settings: Settings = Depends(get_settings)) -> dict:
    return {
        "status": "ok",
        "embedding": bool(settings.deepinfra_api_key),
        "catalog": settings.catalog_configured,
        "explanations": bool(settings.cerebras_api_key),
        "enrichment": settings.enrichment.value,
    }


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def _launch_server() -> None:
    config = uvicorn.Config(app, host="0.0.0.0", port=8000, reload=False)
    server = uvicorn.Server(config)

    try:
        asyncio.get_running_loop()
    except RuntimeError:
        uvicorn.run(app, host="0.0.0.0", port=8000, reload=False)
        return

    log.warning(
        "Detected an existing asyncio event loop; serving with create_task() instead of asyncio.run()."
    )
    asyncio.create_task(server.serve())


if __name__ == "__main__":
    log.info("=== Course Search — launching server on http://0.0.0.0:8000 ===")
    _launch_server()
