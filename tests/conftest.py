import json

import httpx
import pytest
from openai import AsyncOpenAI

from course_search.catalog import CatalogClient
from course_search.config import EnrichmentStrategy, Settings
from course_search.embedder import EmbeddingClient
from course_search.generator import ExplanationGenerator
from course_search.popularity import PopularityCounter
from course_search.search import CoursePipeline

CATALOG_URL = "https://catalog.test"
LLM_URL = "https://llm.test/v1"


@pytest.fixture
def settings():
    """Settings with every collaborator configured and no .env lookup."""
    return Settings(
        _env_file=None,
        deepinfra_api_key="test-embed",
        supabase_url=CATALOG_URL,
        supabase_anon_key="anon-key",
        search_term="spring26",
        cerebras_api_key="test-llm",
    )


@pytest.fixture
def sample_courses():
    return [
        {
            "id": 101,
            "course_codes": "CS 182/ETHICSOC 182",
            "course_title": "Ethics, Public Policy, and Technological Change",
            "course_descr": "Examines the ethical and policy questions raised by AI. Prerequisites: CS 106A.",
            "instructors": "Reich, R.; Sahami, M.",
            "similarity": 0.81,
        },
        {
            "id": 102,
            "course_codes": "CS 229",
            "course_title": "Machine Learning",
            "course_descr": "Topics: supervised learning, unsupervised learning, learning theory.",
            "instructors": "Ng, A.",
            "similarity": 0.74,
        },
        {
            "id": 103,
            "course_codes": "PHIL 20N",
            "course_title": "Philosophy of Artificial Intelligence",
            "course_descr": "Can machines think? Introductory seminar.",
            "instructors": None,
            "similarity": 0.62,
        },
        {
            "id": 104,
            "course_codes": "STATS 202",
            "course_title": "Data Mining and Analysis",
            "course_descr": "Data mining for prediction and discovery.",
            "instructors": "Taylor, J.",
            "similarity": 0.55,
        },
        {
            "id": 105,
            "course_codes": "MS&E 254",
            "course_title": "The Ethical Analyst",
            "course_descr": None,
            "instructors": None,
            "similarity": 0.55,
        },
        {
            "id": 106,
            "course_codes": "COMM 124",
            "course_title": "Media and Society",
            "course_descr": "How media shape public life.",
            "instructors": "Bailenson, J.",
            "similarity": 0.31,
        },
    ]


class FakeCatalog:
    """In-memory stand-in for the PostgREST RPC endpoints."""

    def __init__(self, rows, order_rows=True):
        self.rows = rows
        self.order_rows = order_rows
        self.search_calls = []
        self.popularity_calls = []
        self.fail_popularity = False

    def _page(self, body):
        excluded = set(body.get("exclude_ids") or [])
        last_score, last_id = body.get("last_score"), body.get("last_id")
        candidates = [r for r in self.rows if r["id"] not in excluded]
        if last_score is not None and last_id is not None:
            candidates = [
                r for r in candidates if (r["similarity"], r["id"]) < (last_score, last_id)
            ]
        if self.order_rows:
            candidates.sort(key=lambda r: (r["similarity"], r["id"]), reverse=True)
        return candidates[: body["limit_count"]]

    def handler(self, request: httpx.Request) -> httpx.Response:
        function = request.url.path.rsplit("/", 1)[-1]
        body = json.loads(request.content or b"{}")

        if function.startswith("search_courses"):
            self.search_calls.append((function, body))
            return httpx.Response(200, json=self._page(body))
        if function == "increment_course_popularity":
            self.popularity_calls.append(body["course_ids"])
            if self.fail_popularity:
                return httpx.Response(500, text="counter table locked")
            return httpx.Response(204)
        if function == "get_leaderboard":
            board = [
                {"course_id": r["id"], "course_codes": r["course_codes"],
                 "course_title": r["course_title"], "search_count": 10 - i}
                for i, r in enumerate(self.rows[: body["limit_count"]])
            ]
            return httpx.Response(200, json=board)
        if function == "get_popularity_count":
            return httpx.Response(200, json=len(self.rows))
        return httpx.Response(404, json={"message": f"unknown function {function}"})


def embedding_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"data": [{"embedding": [3.0, 4.0, 0.0]}]})


def routing_transport(catalog: FakeCatalog, embed=embedding_handler) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "catalog.test":
            return catalog.handler(request)
        return embed(request)

    return httpx.MockTransport(handler)


def completion(text: str) -> dict:
    return {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "created": 0,
        "model": "llama3.1-8b",
        "choices": [
            {"index": 0, "message": {"role": "assistant", "content": text}, "finish_reason": "stop"}
        ],
    }


def sse_body(*fragments: str) -> bytes:
    lines = []
    for fragment in fragments:
        chunk = {"choices": [{"index": 0, "delta": {"content": fragment}}]}
        lines.append(f"data: {json.dumps(chunk)}\n\n")
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def make_generator(settings, handler, delays=None) -> ExplanationGenerator:
    """Generator whose SDK client talks to `handler`; sleeps are recorded, not slept."""
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = AsyncOpenAI(api_key="test-llm", base_url=LLM_URL, max_retries=0, http_client=http)

    async def fake_sleep(seconds):
        if delays is not None:
            delays.append(seconds)

    return ExplanationGenerator(settings, client, sleep=fake_sleep)


def make_pipeline(settings, catalog, generator, strategy=EnrichmentStrategy.DEFERRED, sleeps=None):
    http = httpx.AsyncClient(transport=routing_transport(catalog))
    catalog_client = CatalogClient(settings, http)

    async def fake_sleep(seconds):
        if sleeps is not None:
            sleeps.append(seconds)

    return CoursePipeline(
        EmbeddingClient(settings, http),
        catalog_client,
        generator,
        PopularityCounter(catalog_client),
        settings,
        strategy=strategy,
        sleep=fake_sleep,
    )


@pytest.fixture
def fake_catalog(sample_courses):
    return FakeCatalog(sample_courses)


@pytest.fixture
def explaining_generator(settings):
    """Generator that explains every course by echoing its title."""

    def handler(request):
        body = json.loads(request.content)
        title = body["messages"][1]["content"].split("Course title: ")[1].split("\n")[0]
        if body.get("stream"):
            return httpx.Response(
                200,
                content=sse_body("Fits your query. ", f"{title} covers it."),
                headers={"content-type": "text/event-stream"},
            )
        return httpx.Response(200, json=completion(f"Explanation for {title}"))

    return make_generator(settings, handler)
