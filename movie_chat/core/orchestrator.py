from __future__ import annotations

import asyncio
import logging
import time
import uuid
import weakref
from typing import Any, Dict, List, Optional, Sequence

from movie_chat.core.cache import get_cache
from movie_chat.core.catalog import CatalogClient, EmbeddingSearchClient, Movie
from movie_chat.core.composer import ResponseComposer
from movie_chat.core.context_store import ContextStore, ConversationContext, get_context_store
from movie_chat.core.intent import INTENT_GREETING, INTENT_RECOMMENDATION, IntentClassifier, IntentResult
from movie_chat.core.language import SUPPORTED_LANGUAGES, detect_language
from movie_chat.core.messages import default_keywords, template
from movie_chat.core.metrics import metrics
from movie_chat.core.rate_limiter import RateLimiter
from movie_chat.core.settings import SETTINGS
from movie_chat.core.strategies import StrategyInput, StrategyServices, run_strategy

logger = logging.getLogger(__name__)


def _response(
    message: str,
    session_id: str,
    keywords: List[str],
    movies: Sequence[Movie] = (),
    language: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "botMessage": {"message": message},
        "sessionId": session_id,
        "suggestedKeywords": list(keywords),
        "movies": [movie.to_dict() for movie in movies],
        "language": language or SETTINGS.default_language,
    }


def _message_language(message: Any) -> str:
    if not isinstance(message, str):
        return SETTINGS.default_language
    return detect_language(message)["language"]


class Orchestrator:
    """Runs one chat turn: rate gate, context, intent, strategy, compose, persist."""

    def __init__(
        self,
        rate_limiter: RateLimiter | None = None,
        context_store: ContextStore | None = None,
        classifier: IntentClassifier | None = None,
        composer: ResponseComposer | None = None,
        services: StrategyServices | None = None,
        serialize_turns: bool | None = None,
    ) -> None:
        self.rate_limiter = rate_limiter or RateLimiter(
            SETTINGS.rate_limit_max_requests,
            SETTINGS.rate_limit_window_ms,
        )
        self.context_store = context_store or get_context_store()
        self.classifier = classifier or IntentClassifier(cache=get_cache())
        if services is None:
            services = StrategyServices(catalog=CatalogClient(), search=EmbeddingSearchClient(), cache=get_cache())
        self.services = services
        self.composer = composer or ResponseComposer(catalog=services.catalog)
        self.serialize_turns = SETTINGS.serialize_session_turns if serialize_turns is None else serialize_turns
        self._session_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._session_locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._session_locks[session_id] = lock
        return lock

    async def process(
        self,
        message: str,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        started = time.perf_counter()
        metrics.inc("chat_turn_total")
        try:
            session_id = session_id or str(uuid.uuid4())
            if self.rate_limiter.is_rate_limited(session_id):
                language = _message_language(message)
                return _response(template("rate_limited", language), session_id, [], language=language)
            if not self.serialize_turns:
                return await self._run_turn(message, session_id, user_id)
            lock = self._lock_for(session_id)
            async with lock:
                return await self._run_turn(message, session_id, user_id)
        except Exception:
            logger.exception("chat turn failed")
            metrics.inc("chat_turn_error_total")
            language = _message_language(message)
            return _response(
                template("apology", language),
                str(uuid.uuid4()),
                default_keywords(INTENT_GREETING, language),
                language=language,
            )
        finally:
            metrics.observe_ms("chat_stage_latency_ms", (time.perf_counter() - started) * 1000.0, {"stage": "total"})

    async def _run_turn(self, message: str, session_id: str, user_id: Optional[str]) -> Dict[str, Any]:
        with metrics.timed("chat_stage_latency_ms", {"stage": "context_load"}):
            context = await self.context_store.get_or_create(session_id, user_id)

        with metrics.timed("chat_stage_latency_ms", {"stage": "classify"}):
            detected = _message_language(message)
            intent = await self.classifier.detect_intent(message, self._classifier_context(context), detected)
        language = intent.language if intent.language in SUPPORTED_LANGUAGES else detected
        context.language = language
        self.context_store.add_message(context, "user", message)

        data = StrategyInput(
            message=message,
            intent=intent.intent,
            context=context,
            movie_names=list(intent.movie_names),
            keywords=list(intent.keywords),
        )
        with metrics.timed("chat_stage_latency_ms", {"stage": "strategy"}):
            strategy, output = await run_strategy(data, self.services)
        with metrics.timed("chat_stage_latency_ms", {"stage": "compose"}):
            reply = await self.composer.compose(intent.intent, output.movies, output.assistant_text, context)

        self._record_turn(context, intent, reply)
        with metrics.timed("chat_stage_latency_ms", {"stage": "context_save"}):
            await self.context_store.update(context)

        keywords = output.follow_up_keywords or self.composer.get_follow_up_keywords(
            intent.intent, language, intent.keywords
        )
        logger.info(
            "chat turn session=%s intent=%s source=%s strategy=%s movies=%d",
            session_id,
            intent.intent,
            intent.source,
            strategy.name,
            len(output.movies),
        )
        return _response(reply, session_id, keywords, output.movies, language=language)

    @staticmethod
    def _classifier_context(context: ConversationContext) -> Dict[str, Any]:
        return {
            "last_intent": context.last_intent,
            "suggested_movie_ids": list(context.suggested_movie_ids),
            "history": list(context.message_history),
        }

    def _record_turn(self, context: ConversationContext, intent: IntentResult, reply: str) -> None:
        self.context_store.add_message(context, "assistant", reply)
        context.last_intent = intent.intent
        if intent.intent == INTENT_RECOMMENDATION:
            genres = [keyword for keyword in intent.keywords if not keyword.isdigit()]
            self.context_store.update_preferences(context, genres=genres)

    async def session_state(self, session_id: str) -> Optional[Dict[str, Any]]:
        snapshot = await self.context_store.snapshot(session_id)
        if snapshot is None:
            return None
        snapshot["rate_limit_remaining"] = self.rate_limiter.remaining(session_id)
        return snapshot

    async def reset_session(self, session_id: str) -> bool:
        """Clear the conversation in both tiers and the rate window. False when the durable rewrite failed."""
        applied = await self.context_store.reset(session_id)
        self.rate_limiter.clear_session(session_id)
        return applied


_orchestrator: Orchestrator | None = None


def get_orchestrator() -> Orchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = Orchestrator()
    return _orchestrator
