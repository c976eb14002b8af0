from __future__ import annotations

import re

from movie_chat.core.settings import SETTINGS

SUPPORTED_LANGUAGES = ("vi", "en")

_VI_VOWELS = re.compile(
    r"[àáảãạăằắẳẵặâầấẩẫậđèéẻẽẹêềếểễệìíỉĩịòóỏõọôồốổỗộơờớởỡợùúủũụưừứửữựỳýỷỹỵ]"
)
_VI_COMBINING_TONES = re.compile(r"[\u0300\u0301\u0303\u0309\u0323]")
_VI_COMMON_WORDS = re.compile(
    r"\b(?:xin|chào|chao|nhé|nhe|ơi|phim|tôi|toi|của|là|không|khong|có|co|được|và|trong|với|để|bạn|ban|hay|về|này|cho|mình|minh|xem|gì|gi)\b",
    re.IGNORECASE,
)


def detect_language(text: str | None) -> dict:
    """Heuristic vi/en detection. Confidence never drops below 0.5."""
    if not text or not text.strip():
        return {"language": SETTINGS.default_language, "confidence": 0.5, "method": "default"}

    lowered = text.lower()
    vowel_count = len(_VI_VOWELS.findall(lowered))
    tone_count = len(_VI_COMBINING_TONES.findall(lowered))
    word_count = len(_VI_COMMON_WORDS.findall(lowered))
    total_words = len([w for w in lowered.split() if w])

    score = 0.0
    if vowel_count:
        score += min(vowel_count * 0.3, 0.6)
    if tone_count:
        score += min(tone_count * 0.1, 0.2)
    if word_count and total_words:
        score += min(word_count / total_words * 0.2, 0.2)
    score = min(score, 1.0)

    if score > 0.3:
        return {"language": "vi", "confidence": round(max(0.5, min(score, 0.95)), 3), "method": "heuristic"}
    return {"language": "en", "confidence": round(max(0.5, 1.0 - score), 3), "method": "heuristic"}


def coerce_language(value: object, default: str | None = None) -> str:
    candidate = str(value or "").strip().lower()[:2]
    if candidate in SUPPORTED_LANGUAGES:
        return candidate
    return default or SETTINGS.default_language
