import copy

import pytest

from movie_chat.core.cache import CacheClient
from movie_chat.core.catalog import CatalogCallError, Movie, SearchHit
from movie_chat.core.context_store import ContextStore
from movie_chat.core.llm_client import LlmCallError
from movie_chat.core.metrics import metrics


def _movie(movie_id, title, genres=(), year="2020", vote=7.0, status="published", original_title=None):
    return Movie(
        id=str(movie_id),
        title=title,
        original_title=original_title,
        release_date=f"{year}-01-01" if year else None,
        genres=list(genres),
        overview=f"{title} overview",
        vote_average=vote,
        status=status,
    )


class FakeCatalog:
    def __init__(self, movies=(), fail=False):
        self.movies = list(movies)
        self.fail = fail
        self.title_lookups = []
        self.random_calls = []

    async def find_published(self, filters=None):
        if self.fail:
            raise CatalogCallError("catalog_unavailable", "down")
        return [movie for movie in self.movies if movie.is_published]

    async def find_random(self, limit, exclude_ids=()):
        if self.fail:
            raise CatalogCallError("catalog_unavailable", "down")
        excluded = set(exclude_ids)
        self.random_calls.append((limit, excluded))
        return [movie for movie in self.movies if movie.is_published and movie.id not in excluded][:limit]

    async def find_by_title_like(self, fragment):
        self.title_lookups.append(fragment)
        if self.fail:
            raise CatalogCallError("catalog_unavailable", "down")
        needle = fragment.lower()
        matches = [
            movie
            for movie in self.movies
            if movie.is_published and (needle in movie.title.lower() or needle in (movie.original_title or "").lower())
        ]
        matches.sort(key=lambda movie: movie.vote_average or 0.0, reverse=True)
        return matches[0] if matches else None


class FakeSearch:
    def __init__(self, hits=(), similar=None, fail_ids=(), fail=False):
        self.hits = list(hits)
        self.similar = dict(similar or {})
        self.fail_ids = set(fail_ids)
        self.fail = fail
        self.queries = []
        self.similar_calls = []

    async def semantic_search(self, query, top_k, min_similarity):
        self.queries.append(query)
        if self.fail:
            raise CatalogCallError("catalog_unavailable", "down")
        return [SearchHit(movie=movie, similarity=0.9) for movie in self.hits][:top_k]

    async def similar_by_movie_id(self, movie_id, top_k):
        self.similar_calls.append(movie_id)
        if movie_id in self.fail_ids:
            raise CatalogCallError("catalog_unavailable", f"similar {movie_id} failed")
        return [SearchHit(movie=movie, similarity=0.8) for movie in self.similar.get(movie_id, [])][:top_k]


class FakeLlm:
    def __init__(self, enabled=True, analysis=None, completion=None, fail=False):
        self.enabled = enabled
        self.analysis = analysis
        self.completion = completion
        self.fail = fail
        self.calls = []

    async def analyze_message(self, text, context=None):
        self.calls.append(("analyze", text))
        if self.fail or self.analysis is None:
            raise LlmCallError("llm_unavailable", "no analysis")
        return dict(self.analysis)

    async def chat_completion(self, messages, model=None, temperature=None, max_tokens=None, trace_id=None):
        self.calls.append(("complete", messages))
        if self.fail or self.completion is None:
            raise LlmCallError("llm_unavailable", "no completion")
        return {"content": self.completion, "provider": "primary"}


class FakeSessionStore:
    def __init__(self):
        self.sessions = {}
        self.messages = {}
        self.upserts = 0
        self.fail_writes = False

    def get_session(self, session_id, history_limit=10):
        record = self.sessions.get(session_id)
        if record is None:
            return None
        record = copy.deepcopy(record)
        since = record.get("history_since") or 0
        visible = [item for item in self.messages.get(session_id, []) if not since or item.get("ts", 0) > since]
        record["message_history"] = copy.deepcopy(visible[-history_limit:])
        return record

    def upsert_session(self, record):
        if self.fail_writes:
            return False
        self.upserts += 1
        stored = copy.deepcopy(record)
        stored.pop("message_history", None)
        previous = self.sessions.get(record["session_id"]) or {}
        stored["history_since"] = max(previous.get("history_since") or 0, record.get("history_since") or 0)
        self.sessions[record["session_id"]] = stored
        return True

    def append_messages(self, session_id, messages):
        if self.fail_writes:
            return False
        self.messages.setdefault(session_id, []).extend(copy.deepcopy(messages))
        return True


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def make_movie():
    return _movie


@pytest.fixture
def fake_store():
    return FakeSessionStore()


@pytest.fixture
def memory_cache():
    return CacheClient(None)


@pytest.fixture
def context_store(memory_cache, fake_store):
    return ContextStore(cache=memory_cache, store=fake_store, ttl_sec=1800, max_history=10)


@pytest.fixture
def fakes():
    class _Fakes:
        Catalog = FakeCatalog
        Search = FakeSearch
        Llm = FakeLlm
        SessionStore = FakeSessionStore

    return _Fakes
