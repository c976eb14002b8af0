from __future__ import annotations

import asyncio
import hashlib
import logging
import re
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Iterable, List, Optional

from movie_chat.core.cache import CacheClient
from movie_chat.core.catalog import CatalogCallError, CatalogClient, EmbeddingSearchClient, Movie, SearchHit
from movie_chat.core.context_store import ConversationContext, add_suggested_movie
from movie_chat.core.intent import (
    INTENT_COMPARISON,
    INTENT_FAREWELL,
    INTENT_FOLLOW_UP,
    INTENT_GREETING,
    INTENT_OFF_TOPIC,
    INTENT_RANDOM,
    INTENT_RECOMMENDATION,
)
from movie_chat.core.messages import follow_up_keywords, template
from movie_chat.core.metrics import metrics
from movie_chat.core.settings import SETTINGS
from movie_chat.core.text import normalize_title, preprocess_for_embedding, sanitize_user_input

logger = logging.getLogger(__name__)

FOLLOW_UP_SEED_COUNT = 3
FOLLOW_UP_SIMILAR_PER_SEED = 2
MAX_COMPARED_MOVIES = 3

_QUOTED_RE = re.compile(r"[\"“«]([^\"”»]+)[\"”»]|(?:^|\s)[‘']([^‘’']+)[’'](?=\s|$|[,.!?])")
_COMPARE_LEAD_RE = re.compile(r"\b(?:so\s+sánh|compare|giữa|between)\b", re.IGNORECASE)
_COMPARE_SPLIT_RE = re.compile(
    r"\s*(?:,|;|&|\bvà\b|\bvới\b|\band\b|\bvs\b\.?|\bversus\b|\bhay\b|\bhoặc\b|\bor\b|\bwith\b)\s*",
    re.IGNORECASE,
)
_COMPARE_TAIL_RE = re.compile(
    r"[?!]|\b(?:cái\s+nào|phim\s+nào|nào\s+hay|which|what|who)\b.*$",
    re.IGNORECASE,
)
_COMPARE_PREFIX_RE = re.compile(r"^(?:hai\s+phim|các\s+phim|phim|the\s+movies?|movies?|films?)\s+", re.IGNORECASE)


@dataclass
class StrategyInput:
    message: str
    intent: str
    context: ConversationContext
    movie_names: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)

    @property
    def language(self) -> str:
        return self.context.language or SETTINGS.default_language


@dataclass
class StrategyOutput:
    movies: List[Movie] = field(default_factory=list)
    assistant_text: str = ""
    follow_up_keywords: List[str] = field(default_factory=list)


@dataclass
class StrategyServices:
    catalog: CatalogClient
    search: EmbeddingSearchClient
    top_k: int = field(default_factory=lambda: SETTINGS.search_top_k)
    min_similarity: float = field(default_factory=lambda: SETTINGS.search_min_similarity)
    max_suggestions: int = field(default_factory=lambda: SETTINGS.max_suggestions)
    min_suggestions: int = field(default_factory=lambda: SETTINGS.min_suggestions)
    cache: Optional[CacheClient] = None
    search_cache_ttl_sec: int = field(default_factory=lambda: SETTINGS.search_cache_ttl_sec)


def _search_cache_key(query: str, top_k: int, min_similarity: float) -> str:
    normalized = " ".join(query.lower().split())
    digest = hashlib.sha256(f"{normalized}|{top_k}|{min_similarity}".encode("utf-8")).hexdigest()[:16]
    return f"search:v1:{digest}"


async def _semantic_hits(services: StrategyServices, query: str) -> List[SearchHit]:
    """Embedding search with a short-lived result cache in front of it."""
    cache = services.cache if services.search_cache_ttl_sec > 0 else None
    key = _search_cache_key(query, services.top_k, services.min_similarity)
    if cache is not None:
        cached = await cache.get_json(key)
        if isinstance(cached, list):
            hits = []
            for item in cached:
                movie = Movie.from_payload(item.get("movie")) if isinstance(item, dict) else None
                if movie is not None:
                    hits.append(SearchHit(movie=movie, similarity=float(item.get("similarity") or 0.0)))
            metrics.inc("chat_search_cache_total", {"result": "hit"})
            return hits
        metrics.inc("chat_search_cache_total", {"result": "miss"})

    hits = await services.search.semantic_search(query, services.top_k, services.min_similarity)
    if cache is not None and hits:
        payload = [{"movie": hit.movie.to_dict(), "similarity": hit.similarity} for hit in hits]
        await cache.set_json(key, payload, services.search_cache_ttl_sec)
    return hits


StrategyFn = Callable[[StrategyInput, StrategyServices], Awaitable[StrategyOutput]]


@dataclass(frozen=True)
class Strategy:
    name: str
    intents: frozenset
    execute: StrategyFn

    def can_handle(self, intent: str) -> bool:
        return intent in self.intents


def _mark_suggested(context: ConversationContext, movies: Iterable[Movie]) -> None:
    for movie in movies:
        add_suggested_movie(context, movie.id)


def _append_unique(target: List[Movie], candidates: Iterable[Movie], excluded: set[str]) -> None:
    seen = {movie.id for movie in target} | excluded
    for movie in candidates:
        if movie.id in seen or not movie.is_published:
            continue
        seen.add(movie.id)
        target.append(movie)


async def greeting(data: StrategyInput, services: StrategyServices) -> StrategyOutput:
    return StrategyOutput(
        movies=[],
        assistant_text=template("greeting", data.language),
        follow_up_keywords=follow_up_keywords(INTENT_GREETING, data.language),
    )


async def semantic_search(data: StrategyInput, services: StrategyServices) -> StrategyOutput:
    language = data.language
    query = " ".join(keyword for keyword in data.keywords if keyword).strip()
    if not query:
        sanitized = sanitize_user_input(data.message)
        if not sanitized.is_valid:
            return StrategyOutput(assistant_text=template("generic_error", language))
        query = preprocess_for_embedding(sanitized.text)
    if not query:
        return StrategyOutput(assistant_text=template("no_results", language))

    excluded = set(data.context.suggested_movie_ids)
    try:
        hits = await _semantic_hits(services, query)
    except CatalogCallError as exc:
        logger.warning("semantic search failed, continuing with random backfill: %s", exc)
        hits = []

    movies: List[Movie] = []
    _append_unique(movies, (hit.movie for hit in hits), excluded)
    if len(movies) < services.min_suggestions:
        wanted = services.max_suggestions - len(movies)
        try:
            backfill = await services.catalog.find_random(wanted, excluded | {movie.id for movie in movies})
        except CatalogCallError as exc:
            logger.warning("random backfill failed: %s", exc)
            backfill = []
        _append_unique(movies, backfill, excluded)
        metrics.inc("chat_search_backfill_total", {"result": "ok" if backfill else "empty"})
    movies = movies[: services.max_suggestions]

    if not movies:
        return StrategyOutput(assistant_text=template("exhausted" if hits else "no_results", language))
    _mark_suggested(data.context, movies)
    return StrategyOutput(
        movies=movies,
        follow_up_keywords=follow_up_keywords(INTENT_RECOMMENDATION, language, data.keywords),
    )


async def random_suggestion(data: StrategyInput, services: StrategyServices) -> StrategyOutput:
    language = data.language
    excluded = set(data.context.suggested_movie_ids)
    try:
        candidates = await services.catalog.find_random(services.max_suggestions, excluded)
    except CatalogCallError as exc:
        logger.warning("random suggestion lookup failed: %s", exc)
        return StrategyOutput(assistant_text=template("no_results", language))

    movies: List[Movie] = []
    _append_unique(movies, candidates, excluded)
    movies = movies[: services.max_suggestions]
    if not movies:
        return StrategyOutput(assistant_text=template("exhausted" if excluded else "no_results", language))
    _mark_suggested(data.context, movies)
    return StrategyOutput(movies=movies, follow_up_keywords=follow_up_keywords(INTENT_RANDOM, language))


async def follow_up(data: StrategyInput, services: StrategyServices) -> StrategyOutput:
    context = data.context
    if not context.suggested_movie_ids:
        return await _follow_up_fallback(data, services)

    seeds = context.suggested_movie_ids[-FOLLOW_UP_SEED_COUNT:]
    results = await asyncio.gather(
        *(services.search.similar_by_movie_id(seed, FOLLOW_UP_SIMILAR_PER_SEED) for seed in seeds),
        return_exceptions=True,
    )
    similar: List[Movie] = []
    excluded = set(context.suggested_movie_ids)
    for seed, result in zip(seeds, results):
        if isinstance(result, BaseException):
            logger.warning("similar lookup for movie %s failed: %s", seed, result)
            metrics.inc("chat_similar_lookup_total", {"result": "error"})
            continue
        metrics.inc("chat_similar_lookup_total", {"result": "ok"})
        _append_unique(similar, (hit.movie for hit in result), excluded)

    similar = similar[: services.max_suggestions]
    if not similar:
        return await _follow_up_fallback(data, services)
    _mark_suggested(context, similar)
    return StrategyOutput(
        movies=similar,
        follow_up_keywords=follow_up_keywords(INTENT_FOLLOW_UP, data.language, data.keywords),
    )


async def _follow_up_fallback(data: StrategyInput, services: StrategyServices) -> StrategyOutput:
    output = await semantic_search(replace(data, keywords=[]), services)
    if not output.movies and data.context.suggested_movie_ids:
        output.assistant_text = template("exhausted_similar", data.language)
    output.follow_up_keywords = follow_up_keywords(INTENT_FOLLOW_UP, data.language, data.keywords)
    return output


def extract_comparison_names(message: str, entity_names: Optional[List[str]] = None) -> List[str]:
    """Titles to compare, from quotes or from "so sánh A và B" / "compare A and B" phrasing."""
    names: List[str] = []

    def _add(candidate: str) -> None:
        candidate = _COMPARE_PREFIX_RE.sub("", candidate.strip(" \t\"'“”‘’«»")).strip()
        if candidate and normalize_title(candidate) not in {normalize_title(name) for name in names}:
            names.append(candidate)

    for name in entity_names or []:
        _add(name)
    if len(names) >= 2:
        return names[:MAX_COMPARED_MOVIES]

    for match in _QUOTED_RE.finditer(message):
        _add(match.group(1) or match.group(2) or "")
    if len(names) >= 2:
        return names[:MAX_COMPARED_MOVIES]

    parts = _COMPARE_LEAD_RE.split(message)
    if len(parts) > 1:
        tail = parts[-1]
        tail = _COMPARE_TAIL_RE.split(tail, maxsplit=1)[0]
        for piece in _COMPARE_SPLIT_RE.split(tail.strip(" .")):
            _add(piece)
    return names[:MAX_COMPARED_MOVIES]


def _genre_key(genre: str) -> str:
    return genre.strip().lower()


def build_comparison_text(movies: List[Movie], language: str) -> str:
    vi = language == "vi"
    lines = []
    for index, movie in enumerate(movies, start=1):
        year = movie.year or "N/A"
        genres = ", ".join(movie.genres) or "N/A"
        rating = f"{movie.vote_average:g}/10" if movie.vote_average is not None else "N/A"
        if vi:
            lines.append(f"{index}. {movie.title} ({year}) - Thể loại: {genres} - Điểm: {rating}")
        else:
            lines.append(f"{index}. {movie.title} ({year}) - Genres: {genres} - Rating: {rating}")

    genre_sets = [{_genre_key(genre) for genre in movie.genres} for movie in movies]
    shared_keys = set.intersection(*genre_sets) if genre_sets else set()
    shared = [genre for genre in movies[0].genres if _genre_key(genre) in shared_keys]
    notes = []
    if shared:
        notes.append(("Thể loại chung: " if vi else "Shared genres: ") + ", ".join(shared) + ".")
    else:
        notes.append("Các phim không có thể loại chung." if vi else "These movies share no genres.")
    for index, movie in enumerate(movies):
        others = set().union(*(genre_sets[:index] + genre_sets[index + 1 :]))
        distinct = [genre for genre in movie.genres if _genre_key(genre) not in others]
        if distinct:
            label = f"{movie.title} có thêm: " if vi else f"Only {movie.title}: "
            notes.append(label + ", ".join(distinct) + ".")
    if len(notes) == 1 and shared:
        notes.append(
            "Khác biệt chủ yếu nằm ở dàn diễn viên và đạo diễn."
            if vi
            else "The differences are mostly in cast and direction."
        )

    header = "So sánh các phim:" if vi else "Comparison of movies:"
    footer = "Điểm khác biệt: " if vi else "Key differences: "
    return f"{header}\n" + "\n".join(lines) + f"\n\n{footer}" + " ".join(notes)


async def comparison(data: StrategyInput, services: StrategyServices) -> StrategyOutput:
    language = data.language
    names = extract_comparison_names(data.message, data.movie_names)
    if len(names) < 2:
        return StrategyOutput(assistant_text=template("comparison_need_more", language))

    resolved: List[Movie] = []
    for name in names:
        try:
            movie = await services.catalog.find_by_title_like(name)
        except CatalogCallError as exc:
            logger.warning("title lookup for comparison failed: %s", exc)
            continue
        if movie is not None and movie.is_published and all(movie.id != item.id for item in resolved):
            resolved.append(movie)

    if len(resolved) < 2:
        return StrategyOutput(assistant_text=template("comparison_not_found", language))
    resolved = resolved[:MAX_COMPARED_MOVIES]
    _mark_suggested(data.context, resolved)
    return StrategyOutput(
        movies=resolved,
        assistant_text=build_comparison_text(resolved, language),
        follow_up_keywords=follow_up_keywords(INTENT_COMPARISON, language, data.keywords),
    )


async def off_topic(data: StrategyInput, services: StrategyServices) -> StrategyOutput:
    if data.intent == INTENT_FAREWELL:
        return StrategyOutput(
            assistant_text=template("farewell", data.language),
            follow_up_keywords=follow_up_keywords(INTENT_FAREWELL, data.language),
        )
    return StrategyOutput(
        assistant_text=template("no_results", data.language),
        follow_up_keywords=follow_up_keywords(INTENT_OFF_TOPIC, data.language),
    )


OFF_TOPIC_STRATEGY = Strategy("off_topic", frozenset({INTENT_OFF_TOPIC, INTENT_FAREWELL}), off_topic)

ROUTES = (
    Strategy("greeting", frozenset({INTENT_GREETING}), greeting),
    Strategy("semantic_search", frozenset({INTENT_RECOMMENDATION}), semantic_search),
    Strategy("random_suggestion", frozenset({INTENT_RANDOM}), random_suggestion),
    Strategy("follow_up", frozenset({INTENT_FOLLOW_UP}), follow_up),
    Strategy("comparison", frozenset({INTENT_COMPARISON}), comparison),
    OFF_TOPIC_STRATEGY,
)


def resolve_strategy(intent: str) -> Strategy:
    for strategy in ROUTES:
        if strategy.can_handle(intent):
            return strategy
    return OFF_TOPIC_STRATEGY


async def run_strategy(data: StrategyInput, services: StrategyServices) -> tuple[Strategy, StrategyOutput]:
    strategy = resolve_strategy(data.intent)
    metrics.inc("chat_strategy_total", {"strategy": strategy.name})
    try:
        output = await strategy.execute(data, services)
    except Exception:
        logger.exception("strategy %s failed", strategy.name)
        metrics.inc("chat_strategy_error_total", {"strategy": strategy.name})
        output = StrategyOutput(assistant_text=template("generic_error", data.language))
    return strategy, output
