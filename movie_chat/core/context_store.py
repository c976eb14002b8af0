from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from movie_chat.core import session_store
from movie_chat.core.cache import CacheClient, get_cache
from movie_chat.core.language import coerce_language
from movie_chat.core.settings import SETTINGS

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "conv:"
MAX_PREFERENCE_VALUES = 10


def _now_ms() -> int:
    return int(time.time() * 1000)


def cache_key(session_id: str) -> str:
    return f"{CACHE_KEY_PREFIX}{session_id}"


@dataclass
class ConversationContext:
    session_id: str
    user_id: Optional[str] = None
    language: str = "vi"
    message_history: List[Dict[str, Any]] = field(default_factory=list)
    suggested_movie_ids: List[str] = field(default_factory=list)
    preferences: Dict[str, List[str]] = field(default_factory=dict)
    last_intent: Optional[str] = None
    # Durable messages at or before this timestamp belong to a reset conversation.
    history_since: int = 0
    created_at: int = 0
    updated_at: int = 0
    # Messages added this turn that have not reached the durable log yet.
    pending_messages: List[Dict[str, Any]] = field(default_factory=list, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "language": self.language,
            "message_history": [dict(item) for item in self.message_history],
            "suggested_movie_ids": list(self.suggested_movie_ids),
            "preferences": {key: list(value) for key, value in self.preferences.items()},
            "last_intent": self.last_intent,
            "history_since": self.history_since,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], max_history: int = 10) -> "ConversationContext":
        history = []
        for item in data.get("message_history") or []:
            if not isinstance(item, dict) or item.get("role") not in {"user", "assistant"}:
                continue
            history.append({"role": item["role"], "text": str(item.get("text") or ""), "ts": int(item.get("ts") or 0)})
        suggested: List[str] = []
        for movie_id in data.get("suggested_movie_ids") or []:
            if str(movie_id) not in suggested:
                suggested.append(str(movie_id))
        preferences = {}
        raw_preferences = data.get("preferences") if isinstance(data.get("preferences"), dict) else {}
        for key in ("genres", "actors"):
            values = raw_preferences.get(key)
            if isinstance(values, list):
                preferences[key] = [str(value) for value in values]
        return cls(
            session_id=str(data.get("session_id")),
            user_id=data.get("user_id") or None,
            language=coerce_language(data.get("language")),
            message_history=history[-max_history:],
            suggested_movie_ids=suggested,
            preferences=preferences,
            last_intent=data.get("last_intent") or None,
            history_since=int(data.get("history_since") or 0),
            created_at=int(data.get("created_at") or 0),
            updated_at=int(data.get("updated_at") or 0),
        )


def add_suggested_movie(context: ConversationContext, movie_id: str) -> None:
    movie_id = str(movie_id)
    if movie_id not in context.suggested_movie_ids:
        context.suggested_movie_ids.append(movie_id)


class ContextStore:
    """Session context over a fast cache and a durable store.

    Reads go cache first, then the durable store (write-through on hit).
    Writes go to the durable store first, then refresh the cache. Neither
    tier can fail a turn: cache errors are no-ops inside ``CacheClient``
    and durable errors are logged by ``session_store`` and ignored here.
    """

    def __init__(
        self,
        cache: CacheClient | None = None,
        store: Any = session_store,
        ttl_sec: int | None = None,
        max_history: int | None = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.cache = cache if cache is not None else get_cache()
        self.store = store
        self.ttl_sec = ttl_sec or SETTINGS.context_ttl_sec
        self.max_history = max_history or SETTINGS.context_max_history
        self._clock = clock

    async def get_or_create(self, session_id: Optional[str], user_id: Optional[str] = None) -> ConversationContext:
        session_id = session_id or str(uuid.uuid4())

        cached = await self.cache.get_json(cache_key(session_id))
        if isinstance(cached, dict) and cached.get("session_id") == session_id:
            logger.debug("context cache hit for session %s", session_id)
            context = ConversationContext.from_dict(cached, self.max_history)
            if not context.user_id and user_id:
                context.user_id = user_id
            return context

        record = await asyncio.to_thread(self.store.get_session, session_id, self.max_history)
        if isinstance(record, dict):
            context = ConversationContext.from_dict(record, self.max_history)
            if not context.user_id and user_id:
                context.user_id = user_id
            await self.cache.set_json(cache_key(session_id), context.to_dict(), self.ttl_sec)
            logger.debug("context loaded from durable store for session %s", session_id)
            return context

        now = self._clock()
        context = ConversationContext(
            session_id=session_id,
            user_id=user_id,
            language=SETTINGS.default_language,
            created_at=now,
            updated_at=now,
        )
        await asyncio.to_thread(self.store.upsert_session, context.to_dict())
        await self.cache.set_json(cache_key(session_id), context.to_dict(), self.ttl_sec)
        logger.debug("context created for session %s", session_id)
        return context

    async def update(self, context: ConversationContext) -> None:
        context.updated_at = self._clock()
        await asyncio.to_thread(self.store.upsert_session, context.to_dict())
        if context.pending_messages:
            pending = list(context.pending_messages)
            context.pending_messages.clear()
            await asyncio.to_thread(self.store.append_messages, context.session_id, pending)
        await self.cache.set_json(cache_key(context.session_id), context.to_dict(), self.ttl_sec)

    def add_message(self, context: ConversationContext, role: str, text: str) -> None:
        if role not in {"user", "assistant"}:
            raise ValueError(f"unsupported role: {role}")
        message = {"role": role, "text": text, "ts": self._clock()}
        context.message_history.append(message)
        if len(context.message_history) > self.max_history:
            del context.message_history[: len(context.message_history) - self.max_history]
        context.pending_messages.append(dict(message))

    def add_suggested_movie(self, context: ConversationContext, movie_id: str) -> None:
        add_suggested_movie(context, movie_id)

    def update_preferences(self, context: ConversationContext, genres: List[str] = (), actors: List[str] = ()) -> None:
        for key, values in (("genres", genres), ("actors", actors)):
            if not values:
                continue
            current = context.preferences.setdefault(key, [])
            for value in values:
                value = str(value).strip().lower()
                if value and value not in current:
                    current.append(value)
            if len(current) > MAX_PREFERENCE_VALUES:
                del current[: len(current) - MAX_PREFERENCE_VALUES]

    async def cleanup(self, session_id: str) -> None:
        """Evict the cached context. The durable record is kept."""
        await self.cache.delete(cache_key(session_id))

    async def reset(self, session_id: str) -> bool:
        """Start the conversation over: evict the cache and clear the durable record.

        The durable row keeps its identity and user, but history, suggestions,
        preferences and the last intent are dropped. Older log rows stay in
        ``conversation_message`` and are hidden by ``history_since``. Returns
        False only when a durable record exists and could not be rewritten.
        """
        await self.cleanup(session_id)
        record = await asyncio.to_thread(self.store.get_session, session_id, self.max_history)
        if not isinstance(record, dict):
            return True
        previous = ConversationContext.from_dict(record, self.max_history)
        now = self._clock()
        context = ConversationContext(
            session_id=session_id,
            user_id=previous.user_id,
            language=previous.language,
            history_since=now,
            created_at=previous.created_at or now,
            updated_at=now,
        )
        applied = bool(await asyncio.to_thread(self.store.upsert_session, context.to_dict()))
        if not applied:
            logger.warning("durable reset failed for session %s", session_id)
        return applied

    async def snapshot(self, session_id: str) -> Optional[Dict[str, Any]]:
        cached = await self.cache.get_json(cache_key(session_id))
        if isinstance(cached, dict):
            return {"source": "cache", "context": cached}
        record = await asyncio.to_thread(self.store.get_session, session_id, self.max_history)
        if isinstance(record, dict):
            return {"source": "durable", "context": ConversationContext.from_dict(record, self.max_history).to_dict()}
        return None


_store: ContextStore | None = None


def get_context_store() -> ContextStore:
    global _store
    if _store is None:
        _store = ContextStore()
    return _store
