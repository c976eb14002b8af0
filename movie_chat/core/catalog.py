from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Iterable

import httpx

from movie_chat.core.metrics import metrics
from movie_chat.core.settings import SETTINGS

logger = logging.getLogger(__name__)

STATUS_PUBLISHED = "published"


class CatalogCallError(Exception):
    def __init__(self, code: str, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code


@dataclass
class Movie:
    """Read-only projection of a catalog movie. Only ``id`` and ``title`` are guaranteed."""

    id: str
    title: str
    original_title: str | None = None
    release_date: str | None = None
    genres: list[str] = field(default_factory=list)
    cast: list[str] = field(default_factory=list)
    directors: list[str] = field(default_factory=list)
    overview: str | None = None
    vote_average: float | None = None
    status: str | None = None

    @property
    def year(self) -> str | None:
        if self.release_date and len(self.release_date) >= 4 and self.release_date[:4].isdigit():
            return self.release_date[:4]
        return None

    @property
    def is_published(self) -> bool:
        # Embedding hits carry no status; the index only holds published titles.
        return self.status is None or self.status.lower() in {STATUS_PUBLISHED, "public"}

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Movie | None":
        if not isinstance(payload, dict):
            return None
        movie_id = payload.get("id") or payload.get("movie_id")
        title = payload.get("title")
        if movie_id is None or not isinstance(title, str) or not title.strip():
            return None
        vote = payload.get("vote_average")
        try:
            vote_average = float(vote) if vote is not None else None
        except (TypeError, ValueError):
            vote_average = None
        return cls(
            id=str(movie_id),
            title=title.strip(),
            original_title=payload.get("original_title") or None,
            release_date=str(payload["release_date"])[:10] if payload.get("release_date") else None,
            genres=_names(payload.get("genres")),
            cast=_names(payload.get("cast"))[:5],
            directors=_names(payload.get("directors") or payload.get("crew"))[:3],
            overview=payload.get("overview") or None,
            vote_average=vote_average,
            status=payload.get("status") or None,
        )


def _names(raw: Any) -> list[str]:
    if not isinstance(raw, list):
        return []
    names: list[str] = []
    for item in raw:
        if isinstance(item, str):
            name = item
        elif isinstance(item, dict):
            name = item.get("name") or ""
            if not name and isinstance(item.get("names"), list) and item["names"]:
                first = item["names"][0]
                name = first.get("name", "") if isinstance(first, dict) else str(first)
        else:
            continue
        name = str(name).strip()
        if name and name not in names:
            names.append(name)
    return names


def _parse_movies(items: Iterable[Any]) -> list[Movie]:
    movies: list[Movie] = []
    for item in items:
        movie = Movie.from_payload(item)
        if movie is not None:
            movies.append(movie)
    return movies


async def _request_json(
    client_factory,
    method: str,
    url: str,
    *,
    timeout: float,
    params: dict[str, Any] | None = None,
    payload: dict[str, Any] | None = None,
    op: str,
) -> Any:
    started = time.perf_counter()
    try:
        async with client_factory() as client:
            response = await client.request(method, url, params=params, json=payload, timeout=timeout)
    except (httpx.TimeoutException, httpx.NetworkError) as exc:
        metrics.inc("chat_catalog_call_total", {"op": op, "result": "timeout"})
        raise CatalogCallError("catalog_unavailable", f"{op} failed: {exc}") from exc
    except httpx.HTTPError as exc:
        metrics.inc("chat_catalog_call_total", {"op": op, "result": "error"})
        raise CatalogCallError("catalog_unavailable", f"{op} failed: {exc}") from exc
    metrics.observe_ms("chat_catalog_latency_ms", (time.perf_counter() - started) * 1000.0, {"op": op})
    if response.status_code == 404:
        metrics.inc("chat_catalog_call_total", {"op": op, "result": "not_found"})
        return None
    if response.status_code >= 400:
        metrics.inc("chat_catalog_call_total", {"op": op, "result": f"http_{response.status_code}"})
        raise CatalogCallError("catalog_error", f"{op} returned {response.status_code}", response.status_code)
    try:
        data = response.json()
    except ValueError as exc:
        metrics.inc("chat_catalog_call_total", {"op": op, "result": "invalid_json"})
        raise CatalogCallError("catalog_invalid_json", f"{op} returned invalid json") from exc
    metrics.inc("chat_catalog_call_total", {"op": op, "result": "ok"})
    return data


def _items(data: Any) -> list[Any]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in ("items", "results", "data"):
            if isinstance(data.get(key), list):
                return data[key]
    return []


class CatalogClient:
    """Movie lookup against the catalog service. Always restricted to published titles."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout_sec: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or SETTINGS.catalog_url).rstrip("/")
        self.timeout_sec = timeout_sec or SETTINGS.catalog_timeout_sec
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport)

    async def find_published(self, filters: dict[str, Any] | None = None) -> list[Movie]:
        params = {key: value for key, value in (filters or {}).items() if value is not None}
        params["status"] = STATUS_PUBLISHED
        data = await _request_json(
            self._client, "GET", f"{self.base_url}/movies", timeout=self.timeout_sec, params=params, op="find_published"
        )
        return [movie for movie in _parse_movies(_items(data)) if movie.is_published]

    async def find_random(self, limit: int, exclude_ids: Iterable[str] = ()) -> list[Movie]:
        excluded = [str(movie_id) for movie_id in exclude_ids]
        data = await _request_json(
            self._client,
            "POST",
            f"{self.base_url}/movies/random",
            timeout=self.timeout_sec,
            payload={"limit": max(0, limit), "status": STATUS_PUBLISHED, "exclude_ids": excluded},
            op="find_random",
        )
        skip = set(excluded)
        movies = [movie for movie in _parse_movies(_items(data)) if movie.is_published and movie.id not in skip]
        return movies[:limit]

    async def find_by_title_like(self, fragment: str) -> Movie | None:
        fragment = (fragment or "").strip()
        if not fragment:
            return None
        data = await _request_json(
            self._client,
            "GET",
            f"{self.base_url}/movies/search",
            timeout=self.timeout_sec,
            params={"title": fragment, "status": STATUS_PUBLISHED, "order": "vote_average:desc", "limit": 1},
            op="find_by_title_like",
        )
        if isinstance(data, dict) and "id" in data:
            candidates = _parse_movies([data])
        else:
            candidates = _parse_movies(_items(data))
        for movie in candidates:
            if movie.is_published:
                return movie
        return None


@dataclass
class SearchHit:
    movie: Movie
    similarity: float


class EmbeddingSearchClient:
    """Vector similarity search over movie embeddings."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout_sec: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or SETTINGS.embedding_url).rstrip("/")
        self.timeout_sec = timeout_sec or SETTINGS.embedding_timeout_sec
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport)

    async def semantic_search(self, query: str, top_k: int, min_similarity: float) -> list[SearchHit]:
        if not query:
            return []
        data = await _request_json(
            self._client,
            "POST",
            f"{self.base_url}/v1/movies/search",
            timeout=self.timeout_sec,
            payload={"query": query, "top_k": top_k, "min_similarity": min_similarity},
            op="semantic_search",
        )
        return _parse_hits(_items(data), min_similarity)[:top_k]

    async def similar_by_movie_id(self, movie_id: str, top_k: int) -> list[SearchHit]:
        data = await _request_json(
            self._client,
            "GET",
            f"{self.base_url}/v1/movies/{movie_id}/similar",
            timeout=self.timeout_sec,
            params={"top_k": top_k},
            op="similar_by_movie_id",
        )
        hits = [hit for hit in _parse_hits(_items(data), None) if hit.movie.id != str(movie_id)]
        return hits[:top_k]


def _parse_hits(items: list[Any], min_similarity: float | None) -> list[SearchHit]:
    hits: list[SearchHit] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        movie = Movie.from_payload(item.get("movie") if isinstance(item.get("movie"), dict) else item)
        if movie is None:
            continue
        try:
            similarity = float(item.get("similarity", item.get("score", 0.0)))
        except (TypeError, ValueError):
            similarity = 0.0
        if min_similarity is not None and similarity < min_similarity:
            continue
        hits.append(SearchHit(movie=movie, similarity=similarity))
    hits.sort(key=lambda hit: hit.similarity, reverse=True)
    return hits
