"""
Streamlit frontend for Course Search.

Calls the FastAPI backend (POST /api/search, POST /api/explain,
GET /api/leaderboard). Results render as cards straight away; each card's
explanation then streams in on its own, falling back to the catalog
description when none arrives.

    streamlit run frontend/ui.py
"""

import asyncio
import sys
from pathlib import Path

import httpx
import streamlit as st

# Ensure project root is on sys.path when launched via `streamlit run`
sys.path.insert(0, str(Path(__file__).parent.parent))

from course_search.client import CourseSearchClient
from course_search.config import load_settings
from course_search.errors import CourseSearchError
from course_search.models import CourseRecord
from course_search.session import SearchSession

settings = load_settings()
API_URL = settings.api_url

st.set_page_config(page_title="Course Search", layout="centered")
st.title("Course Search")

st.markdown(
    """
Describe the course you are looking for, in your own words.

### Quick start
1. Start backend API in another terminal: `python app/app.py`
2. Enter a query below (example: *ethics of machine learning*)
3. Click **Search**, then **Load more** for further results

### Notes
- Each result gets a short explanation of why it matches your query.
- If the API is not running, you'll see a connection error.
"""
)

if "session" not in st.session_state:
    st.session_state.session = SearchSession(limit=settings.search_limit)
    st.session_state.pending = []
session: SearchSession = st.session_state.session


def _run(coro):
    return asyncio.run(coro)


async def _search(query: str) -> list[CourseRecord]:
    async with CourseSearchClient(API_URL) as client:
        return await client.search(session, query)


async def _load_more() -> list[CourseRecord]:
    async with CourseSearchClient(API_URL) as client:
        return await client.load_more(session)


async def _explain(records: list[CourseRecord], slots: dict) -> None:
    def on_update(course_id: int, text: str) -> None:
        if course_id in slots:
            slots[course_id].markdown(text, unsafe_allow_html=True)

    async with CourseSearchClient(API_URL, timeout=60.0) as client:
        await client.explain_all(session, records, on_update)


async def _leaderboard():
    async with CourseSearchClient(API_URL) as client:
        return await client.leaderboard()


def _fetch(action, *args) -> None:
    with st.spinner("Searching…"):
        try:
            st.session_state.pending = _run(action(*args))
        except httpx.ConnectError:
            st.error("Cannot reach the API. Start it with: python app/app.py")
            st.stop()
        except CourseSearchError as exc:
            st.error(f"API error: {exc.message}")
            st.stop()


tab_search, tab_leaderboard = st.tabs(["Search", "Leaderboard"])

with tab_search:
    query = st.text_input("What do you want to learn?", placeholder="e.g. ethics of machine learning")
    submitted = st.button("Search")

    if submitted:
        if not query.strip():
            st.warning("Please enter a search query.")
        else:
            _fetch(_search, query)

    slots = {}
    for record in session.results:
        with st.container(border=True):
            st.markdown(f"**{' · '.join(record.codes)}** — {record.course_title or 'Untitled'}")
            meta = f"Similarity {record.similarity:.3f}"
            if record.instructors:
                meta += f" · {record.instructors}"
            st.caption(meta)
            slots[record.id] = st.empty()
            slots[record.id].markdown(session.display_text(record), unsafe_allow_html=True)

    if session.started and not session.results:
        st.info("No courses returned for this query.")

    pending = [r for r in st.session_state.pending if r.id not in session.explanations]
    st.session_state.pending = []
    if pending:
        _run(_explain(pending, slots))

    if session.has_more and st.button("Load more"):
        _fetch(_load_more)
        st.rerun()

with tab_leaderboard:
    if st.button("Refresh leaderboard"):
        try:
            board = _run(_leaderboard())
        except (httpx.HTTPError, CourseSearchError) as exc:
            st.error(f"Leaderboard unavailable: {exc}")
        else:
            st.caption(f"{board.total_rows} courses searched so far")
            rows = [
                {
                    "Codes": e.course_codes,
                    "Title": e.course_title or "",
                    "Searches": e.search_count,
                }
                for e in board.leaderboard
            ]
            st.dataframe(rows, use_container_width=True, hide_index=True)
