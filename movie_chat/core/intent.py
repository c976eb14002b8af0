from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from movie_chat.core.cache import CacheClient
from movie_chat.core.language import SUPPORTED_LANGUAGES, coerce_language, detect_language
from movie_chat.core.llm_client import LlmClient, get_llm_client
from movie_chat.core.metrics import metrics
from movie_chat.core.settings import SETTINGS

logger = logging.getLogger(__name__)

INTENT_GREETING = "greeting"
INTENT_FAREWELL = "farewell"
INTENT_FOLLOW_UP = "follow_up"
INTENT_RECOMMENDATION = "recommendation"
INTENT_RANDOM = "random"
INTENT_COMPARISON = "comparison"
INTENT_OFF_TOPIC = "off_topic"

INTENTS = (
    INTENT_GREETING,
    INTENT_FAREWELL,
    INTENT_FOLLOW_UP,
    INTENT_RECOMMENDATION,
    INTENT_RANDOM,
    INTENT_COMPARISON,
    INTENT_OFF_TOPIC,
)

_LABEL_MAP = {
    "greeting": INTENT_GREETING,
    "greet": INTENT_GREETING,
    "hello": INTENT_GREETING,
    "farewell": INTENT_FAREWELL,
    "goodbye": INTENT_FAREWELL,
    "bye": INTENT_FAREWELL,
    "thanks": INTENT_FAREWELL,
    "follow_up": INTENT_FOLLOW_UP,
    "followup": INTENT_FOLLOW_UP,
    "follow-up": INTENT_FOLLOW_UP,
    "more": INTENT_FOLLOW_UP,
    "similar": INTENT_FOLLOW_UP,
    "recommendation": INTENT_RECOMMENDATION,
    "recommend": INTENT_RECOMMENDATION,
    "search": INTENT_RECOMMENDATION,
    "movie_search": INTENT_RECOMMENDATION,
    "semantic_search": INTENT_RECOMMENDATION,
    "random": INTENT_RANDOM,
    "random_suggestion": INTENT_RANDOM,
    "surprise": INTENT_RANDOM,
    "comparison": INTENT_COMPARISON,
    "compare": INTENT_COMPARISON,
    "off_topic": INTENT_OFF_TOPIC,
    "offtopic": INTENT_OFF_TOPIC,
    "other": INTENT_OFF_TOPIC,
    "unknown": INTENT_OFF_TOPIC,
}

# Order matters: on equal scores the earlier intent wins.
_RULES: Dict[str, Dict[str, List[str]]] = {
    "vi": {
        INTENT_GREETING: [
            r"xin\s+chào|chào\s+bạn|hello|hi|chào|chao",
            r"có\s+thể\s+giúp|có\s+thể\s+hỏi|có\s+thể\s+gợi\s+ý",
            r"bạn\s+có\s+thể|bạn\s+có\s+khả\s+năng",
        ],
        INTENT_FAREWELL: [
            r"tạm\s+biệt|goodbye|bye|cảm\s+ơn|cám\s+ơn|thank\s+you|ok|oke",
            r"không\s+cần|không\s+muốn|đủ\s+rồi",
        ],
        INTENT_FOLLOW_UP: [
            r"còn\s+gì|khác|tiếp|thêm|và|hoặc",
            r"giống\s+phim|tương\s+tự|như\s+phim",
            r"có\s+gì|có\s+khác|có\s+gợi\s+ý",
        ],
        INTENT_RECOMMENDATION: [
            r"gợi\s+ý|recommend|recommendation|đề\s+xuất",
            r"có\s+gợi\s+ý|có\s+phim|có\s+một\s+phim",
            r"tôi\s+muốn|tôi\s+cần|tôi\s+đang\s+tìm|mình\s+muốn",
            r"tìm\s+phim|tìm\s+một\s+phim|tìm\s+gì",
        ],
        INTENT_RANDOM: [
            r"ngẫu\s+nhiên|random|bất\s+kỳ|gì\s+cũng\s+được",
            r"có\s+gì|có\s+gì\s+đó|có\s+gì\s+khác",
        ],
        INTENT_COMPARISON: [
            r"so\s+sánh|compare|giữa\s+.+\s+và",
            r"cái\s+nào|nào\s+tốt|nào\s+hơn",
        ],
    },
    "en": {
        INTENT_GREETING: [
            r"hello|hi|hey|greetings",
            r"can\s+you\s+help|can\s+you\s+recommend|can\s+you\s+suggest",
            r"are\s+you\s+able|are\s+you\s+capable",
        ],
        INTENT_FAREWELL: [
            r"goodbye|bye|thank\s+you|thanks|ok|oke",
            r"no\s+thanks|no\s+need|enough|done",
        ],
        INTENT_FOLLOW_UP: [
            r"what\s+else|anything\s+else|more|another|also|or",
            r"similar\s+to|like\s+the\s+movie|like\s+that",
            r"any\s+other|any\s+different|any\s+suggestions",
        ],
        INTENT_RECOMMENDATION: [
            r"recommend|recommendation|suggest|suggest\s+me|suggest\s+a\s+movie",
            r"can\s+you\s+recommend|can\s+you\s+suggest|do\s+you\s+recommend",
            r"i\s+want|i\s+need|i\s+am\s+looking\s+for|i'm\s+looking\s+for",
            r"looking\s+for|find\s+a\s+movie|find\s+something",
        ],
        INTENT_RANDOM: [
            r"random|anything|whatever|any\s+movie",
            r"got\s+anything|got\s+something|got\s+any",
        ],
        INTENT_COMPARISON: [
            r"compare|compare\s+between|between\s+.+\s+and",
            r"which\s+one|which\s+is|which\s+better",
        ],
    },
}

_COMPILED_RULES: Dict[str, Dict[str, List[re.Pattern[str]]]] = {
    language: {
        intent: [re.compile(rf"\b(?:{pattern})\b", re.IGNORECASE) for pattern in patterns]
        for intent, patterns in table.items()
    }
    for language, table in _RULES.items()
}

_GENRE_KEYWORDS = {
    "vi": ["hành động", "tình cảm", "hài", "kinh dị", "viễn tưởng", "phiêu lưu", "tâm lý", "hoạt hình", "trinh thám"],
    "en": ["action", "romance", "comedy", "horror", "sci-fi", "adventure", "drama", "animation", "thriller"],
}
_QUOTED_NAME_RE = re.compile(r"[\"“«]([^\"”»]{1,120})[\"”»]|(?:^|\s)[‘']([^‘’']{1,120})[’'](?=\s|$|[,.!?])")
_NAMED_MOVIE_RE = re.compile(r"\b(?:phim|movie|film)\s+(\w[^,.;!?\"“”]{0,80})", re.IGNORECASE)
_YEAR_RE = re.compile(r"\b(?:19|20)\d{2}\b")

MAX_MOVIE_NAMES = 3
MAX_KEYWORDS = 5


@dataclass
class IntentResult:
    intent: str
    confidence: float
    language: Optional[str] = None
    movie_names: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    source: str = "rules"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intent": self.intent,
            "confidence": self.confidence,
            "language": self.language,
            "extracted_entities": {"movie_names": list(self.movie_names), "keywords": list(self.keywords)},
            "source": self.source,
        }


def map_intent_label(label: Any) -> str:
    key = str(label or "").strip().lower().replace(" ", "_")
    return _LABEL_MAP.get(key, INTENT_OFF_TOPIC)


def extract_entities(message: str, language: str) -> tuple[List[str], List[str]]:
    """Pull candidate movie names and search keywords out of ``message``."""
    names: List[str] = []
    for match in _QUOTED_NAME_RE.finditer(message):
        candidate = (match.group(1) or match.group(2) or "").strip()
        if candidate and candidate not in names:
            names.append(candidate)
    for match in _NAMED_MOVIE_RE.finditer(message):
        candidate = match.group(1).strip()
        # Titles are written capitalized; "phim hành động" is a genre, not a name.
        if not candidate or not (candidate[0].isupper() or candidate[0].isdigit()):
            continue
        if candidate not in names and not any(candidate in name for name in names):
            names.append(candidate)

    lowered = message.lower()
    keywords: List[str] = []
    for genre in _GENRE_KEYWORDS.get(language, _GENRE_KEYWORDS["en"]):
        if re.search(rf"(?<!\w){re.escape(genre)}(?!\w)", lowered) and genre not in keywords:
            keywords.append(genre)
    for year in _YEAR_RE.findall(message):
        if year not in keywords:
            keywords.append(year)
    return names[:MAX_MOVIE_NAMES], keywords[:MAX_KEYWORDS]


def classify_by_rules(message: str, language: str) -> IntentResult:
    rules = _COMPILED_RULES.get(language) or _COMPILED_RULES["en"]
    normalized = " ".join((message or "").lower().split())

    best_intent = INTENT_OFF_TOPIC
    best_score = 0.0
    for intent, patterns in rules.items():
        matched = sum(1 for pattern in patterns if pattern.search(normalized))
        score = min(matched / len(patterns), 1.0)
        if score > best_score:
            best_score = score
            best_intent = intent

    result = IntentResult(intent=best_intent, confidence=round(best_score, 3), language=language, source="rules")
    if best_intent in {INTENT_RECOMMENDATION, INTENT_COMPARISON}:
        result.movie_names, result.keywords = extract_entities(message, language)
    return result


class IntentClassifier:
    def __init__(
        self,
        llm: LlmClient | None = None,
        cache: CacheClient | None = None,
        cache_ttl_sec: int | None = None,
    ) -> None:
        self._llm = llm
        self.cache = cache
        self.cache_ttl_sec = SETTINGS.intent_cache_ttl_sec if cache_ttl_sec is None else cache_ttl_sec

    @property
    def llm(self) -> LlmClient:
        return self._llm if self._llm is not None else get_llm_client()

    async def detect_intent(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        language: Optional[str] = None,
    ) -> IntentResult:
        """LLM classification first, rule tables when the LLM is unavailable. Never raises.

        ``language`` is the already detected message language; it is only
        detected here when the caller has not done so.
        """
        try:
            if language not in SUPPORTED_LANGUAGES:
                language = detect_language(message)["language"]
            result = await self._classify_by_llm(message, language, context)
            if result is None:
                result = classify_by_rules(message, language)
            metrics.inc("chat_intent_total", {"intent": result.intent, "source": result.source})
            return result
        except Exception:
            logger.exception("intent classification failed")
            metrics.inc("chat_intent_total", {"intent": INTENT_OFF_TOPIC, "source": "error"})
            return IntentResult(intent=INTENT_OFF_TOPIC, confidence=0.5, source="error")

    def _cache_key(self, message: str, language: str, context: Optional[Dict[str, Any]]) -> str:
        normalized = " ".join((message or "").lower().split())
        last_intent = (context or {}).get("last_intent") or ""
        digest = hashlib.sha256(f"{normalized}|{language}|{last_intent}".encode("utf-8")).hexdigest()[:16]
        return f"intent:v1:{digest}"

    async def _analyze(
        self,
        llm: LlmClient,
        message: str,
        language: str,
        context: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        cache = self.cache if self.cache_ttl_sec > 0 else None
        if cache is None:
            return await llm.analyze_message(message, context)
        key = self._cache_key(message, language, context)
        cached = await cache.get_json(key)
        if isinstance(cached, dict) and cached.get("intent"):
            metrics.inc("chat_intent_cache_total", {"result": "hit"})
            return cached
        metrics.inc("chat_intent_cache_total", {"result": "miss"})
        analysis = await llm.analyze_message(message, context)
        await cache.set_json(key, analysis, self.cache_ttl_sec)
        return analysis

    async def _classify_by_llm(
        self,
        message: str,
        language: str,
        context: Optional[Dict[str, Any]],
    ) -> Optional[IntentResult]:
        llm = self.llm
        if not llm.enabled:
            return None
        try:
            analysis = await self._analyze(llm, message, language, context)
        except Exception as exc:
            logger.warning("llm intent analysis failed, using rules: %s", exc)
            return None

        intent = map_intent_label(analysis.get("intent"))
        result = IntentResult(
            intent=intent,
            confidence=float(analysis.get("confidence") or 0.0),
            language=coerce_language(analysis.get("language"), language),
            source="llm",
        )
        if intent in {INTENT_RECOMMENDATION, INTENT_COMPARISON, INTENT_FOLLOW_UP}:
            names, keywords = extract_entities(message, result.language)
            merged: List[str] = []
            for keyword in list(analysis.get("keywords") or []) + keywords:
                if keyword and keyword not in merged:
                    merged.append(keyword)
            result.movie_names = names
            result.keywords = merged[:MAX_KEYWORDS]
        return result
