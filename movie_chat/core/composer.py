from __future__ import annotations

import logging
import re
from typing import Dict, List, Optional, Sequence

from movie_chat.core.catalog import CatalogCallError, CatalogClient, Movie
from movie_chat.core.context_store import ConversationContext
from movie_chat.core.llm_client import LlmClient, get_llm_client
from movie_chat.core.messages import follow_up_keywords, template
from movie_chat.core.metrics import metrics
from movie_chat.core.settings import SETTINGS
from movie_chat.core.text import normalize_title

logger = logging.getLogger(__name__)

_MENTION_PATTERNS = (
    re.compile(r"\"([^\"\n]{1,150})\""),
    re.compile(r"“([^”\n]{1,150})”"),
    re.compile(r"«([^»\n]{1,150})»"),
    re.compile(r"\*\*([^*\n]{1,150})\*\*"),
)
_TRAILING_YEAR_RE = re.compile(r"\s*\((?:19|20)\d{2}\)\s*$")

_SYSTEM_PROMPTS = {
    "vi": (
        "Bạn là trợ lý xem phim thân thiện. Viết câu trả lời bằng tiếng Việt theo 5 phần:\n"
        "1. Ghi nhận tâm trạng hoặc mong muốn của người dùng.\n"
        "2. Giải thích vì sao các phim này phù hợp.\n"
        "3. Giới thiệu sâu hơn 2-3 phim trong danh sách.\n"
        "4. So sánh nhẹ nhàng hoặc gợi ý cách xem.\n"
        "5. Kết thúc bằng một câu hỏi mở, không ép người dùng chọn giữa các phương án.\n"
        "Chỉ dùng các phim trong danh sách được cung cấp, không bịa thông tin. "
        "Luôn đặt tên phim trong dấu ngoặc kép, ví dụ \"Tên phim\"."
    ),
    "en": (
        "You are a friendly movie assistant. Write the reply in English in 5 parts:\n"
        "1. Acknowledge the user's mood or request.\n"
        "2. Explain why these movies fit.\n"
        "3. Go deeper on 2-3 of the listed movies.\n"
        "4. Offer a soft comparison or viewing advice.\n"
        "5. End with an open-ended question; never ask the user to pick between fixed options.\n"
        "Only mention movies from the provided list and do not invent facts. "
        "Always put movie titles in double quotes, for example \"Title\"."
    ),
}


def extract_mentioned_titles(text: str) -> List[str]:
    mentions: List[str] = []
    for pattern in _MENTION_PATTERNS:
        for match in pattern.finditer(text or ""):
            title = _TRAILING_YEAR_RE.sub("", match.group(1)).strip()
            if title and title not in mentions:
                mentions.append(title)
    return mentions


def _movie_keys(movie: Movie) -> set[str]:
    keys = {normalize_title(movie.title)}
    if movie.original_title:
        keys.add(normalize_title(movie.original_title))
    keys.discard("")
    return keys


def build_movie_context(movies: Sequence[Movie]) -> str:
    lines = []
    for index, movie in enumerate(movies, start=1):
        genres = ", ".join(movie.genres) or "N/A"
        rating = f"{movie.vote_average:g}/10" if movie.vote_average is not None else "N/A"
        line = f"{index}. \"{movie.title}\" ({movie.year or 'N/A'}) - {genres} - Rating: {rating}"
        if movie.overview:
            line += f"\n   {movie.overview[:300]}"
        lines.append(line)
    return "\n".join(lines)


def fallback_response(movies: Sequence[Movie], language: str) -> str:
    """Deterministic reply naming only the given candidates."""
    if not movies:
        return template("no_results", language)
    if len(movies) == 1:
        movie = movies[0]
        year = movie.year or "N/A"
        if language == "vi":
            return f"Mình gợi ý phim \"{movie.title}\" ({year}) - một lựa chọn tuyệt vời! Bạn muốn biết thêm gì về phim này không?"
        return f"I recommend \"{movie.title}\" ({year}) - a great choice! What would you like to know about it?"
    titles = ", ".join(f"\"{movie.title}\"" for movie in movies)
    if language == "vi":
        return f"Mình gợi ý các phim: {titles}. Bạn muốn xem thông tin chi tiết về phim nào không?"
    return f"I recommend: {titles}. Would you like details about any of these movies?"


class ResponseComposer:
    def __init__(self, llm: LlmClient | None = None, catalog: CatalogClient | None = None) -> None:
        self._llm = llm
        self.catalog = catalog if catalog is not None else CatalogClient()

    @property
    def llm(self) -> LlmClient:
        return self._llm if self._llm is not None else get_llm_client()

    async def compose(
        self,
        intent: str,
        movies: Sequence[Movie],
        draft_text: str,
        context: ConversationContext,
    ) -> str:
        language = context.language or SETTINGS.default_language
        if draft_text and draft_text.strip():
            return draft_text
        if not movies:
            return template("no_results", language)

        llm = self.llm
        if not llm.enabled:
            metrics.inc("chat_guard_total", {"result": "llm_disabled"})
            return fallback_response(movies, language)
        try:
            generated = await self._compose_with_llm(llm, intent, movies, context, language)
        except Exception as exc:
            logger.warning("response composition failed, using template: %s", exc)
            metrics.inc("chat_guard_total", {"result": "llm_error"})
            return fallback_response(movies, language)
        if not generated.strip():
            metrics.inc("chat_guard_total", {"result": "empty"})
            return fallback_response(movies, language)

        unverified = await self.find_unverified_titles(generated, movies)
        if unverified:
            logger.warning("composed reply mentions unverified titles %s, using template", unverified)
            metrics.inc("chat_guard_total", {"result": "rejected"})
            return fallback_response(movies, language)
        metrics.inc("chat_guard_total", {"result": "pass"})
        return generated.strip()

    async def _compose_with_llm(
        self,
        llm: LlmClient,
        intent: str,
        movies: Sequence[Movie],
        context: ConversationContext,
        language: str,
    ) -> str:
        last_user = next(
            (item.get("text") for item in reversed(context.message_history) if item.get("role") == "user"),
            "",
        )
        user_prompt = f"Intent: {intent}\nUser message: {last_user}\nMovies:\n{build_movie_context(movies)}"
        messages: List[Dict[str, str]] = [
            {"role": "system", "content": _SYSTEM_PROMPTS.get(language, _SYSTEM_PROMPTS["en"])},
            {"role": "user", "content": user_prompt},
        ]
        result = await llm.chat_completion(
            messages,
            model=SETTINGS.llm_compose_model,
            temperature=SETTINGS.llm_compose_temperature,
        )
        return str(result.get("content") or "")

    async def find_unverified_titles(self, text: str, movies: Sequence[Movie]) -> List[str]:
        """Titles mentioned in ``text`` that match neither a candidate nor a published catalog entry."""
        known: set[str] = set()
        for movie in movies:
            known |= _movie_keys(movie)

        unverified = []
        for title in extract_mentioned_titles(text):
            key = normalize_title(title)
            if not key or key in known:
                continue
            if await self._exists_in_catalog(title, key):
                known.add(key)
                continue
            unverified.append(title)
        return unverified

    async def _exists_in_catalog(self, title: str, key: str) -> bool:
        try:
            match: Optional[Movie] = await self.catalog.find_by_title_like(title)
        except CatalogCallError as exc:
            logger.warning("catalog title check failed for %r: %s", title, exc)
            return False
        return match is not None and match.is_published and key in _movie_keys(match)

    def get_follow_up_keywords(self, intent: str, language: str, keywords: Optional[List[str]] = None) -> List[str]:
        return follow_up_keywords(intent, language, keywords)
