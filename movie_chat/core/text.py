from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass

logger = logging.getLogger(__name__)

MAX_INPUT_CHARS = 2000
_MAX_EMBED_CHARS = 8192 * 4
_CONTROL_WHITESPACE = {"\t", "\n", "\r", "\v", "\f"}

_INJECTION_PATTERNS = [
    re.compile(r"ignore\s+(?:all\s+)?previous\s+instructions?", re.IGNORECASE),
    re.compile(r"forget\s+everything\s+(?:before|above)", re.IGNORECASE),
    re.compile(r"system\s+prompt\s+is", re.IGNORECASE),
    re.compile(r"you\s+are\s+(?:actually\s+)?(?:chat)?gpt", re.IGNORECASE),
    re.compile(r"act\s+as\s+(?:an?\s+)?(?:ai|assistant|expert|system|administrator)", re.IGNORECASE),
    re.compile(r"pretend\s+(?:you\s+)?(?:are|to\s+be|that\s+you)", re.IGNORECASE),
    re.compile(r"tell\s+me\s+(?:the\s+)?(?:system\s+)?prompt", re.IGNORECASE),
    re.compile(r"\b(?:jailbreak|bypass)\b", re.IGNORECASE),
    re.compile(r"';\s*(?:drop|delete|update)\b", re.IGNORECASE),
    re.compile(r"\b(?:javascript|vbscript):", re.IGNORECASE),
    re.compile(r"bỏ\s+qua\s+(?:mọi\s+|tất\s+cả\s+)?(?:hướng\s+dẫn|chỉ\s+dẫn)\s+trước", re.IGNORECASE),
]
_REPEATED_CHARS = re.compile(r"(.)\1{50,}")

_EMAIL_RE = re.compile(r"\b[A-Z0-9._%+\-]+@[A-Z0-9.\-]+\.[A-Z]{2,}\b", flags=re.IGNORECASE)
_PHONE_RE = re.compile(r"(?<!\d)(?:\+?84[-.\s]?|0)(?:\d[-.\s]?){8,9}\d(?!\d)")
_PAYMENT_TOKEN_RE = re.compile(r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{3,4}\b")


@dataclass(frozen=True)
class SanitizedInput:
    is_valid: bool
    text: str
    reason: str | None = None


def sanitize_user_input(raw: str | None) -> SanitizedInput:
    if not isinstance(raw, str) or not raw:
        return SanitizedInput(False, "", "empty")
    if len(raw) > MAX_INPUT_CHARS:
        return SanitizedInput(False, "", "too_long")
    for pattern in _INJECTION_PATTERNS:
        if pattern.search(raw):
            logger.warning("prompt injection pattern rejected: %s", pattern.pattern)
            return SanitizedInput(False, "", "injection")
    if _REPEATED_CHARS.search(raw):
        logger.warning("character explosion rejected")
        return SanitizedInput(False, "", "repeated_chars")
    cleaned = _strip_control_chars(unicodedata.normalize("NFC", raw)).strip()
    if not cleaned:
        return SanitizedInput(False, "", "empty")
    return SanitizedInput(True, cleaned)


def preprocess_for_embedding(text: str | None) -> str:
    """Turn free text into the normalized form the embedding index was built with."""
    if not isinstance(text, str) or not text:
        return ""
    processed = unicodedata.normalize("NFKC", text)
    processed = re.sub(r"<[^>]*>", " ", processed)
    processed = re.sub(r"#+\s", "", processed)
    processed = re.sub(r"[*_]{1,2}([^*_]+)[*_]{1,2}", r"\1", processed)
    processed = re.sub(r"\[([^\]]+)\]\([^)]+\)", r"\1", processed)
    processed = re.sub(r"`([^`]+)`", r"\1", processed)
    processed = re.sub(r"[{}\[\]\"'“”‘’]", " ", processed)
    processed = re.sub(r"\s+", " ", processed)
    processed = re.sub(r"([.!?,;:\-])\1+", r"\1", processed)
    processed = re.sub(r"[.!?,;:\-\s]+$", "", processed)
    processed = processed.lower().strip()
    return _truncate(processed, _MAX_EMBED_CHARS)


def normalize_title(value: str | None) -> str:
    """Case- and punctuation-insensitive key for comparing movie titles."""
    if not value:
        return ""
    text = unicodedata.normalize("NFKC", str(value)).casefold()
    text = re.sub(r"[\"'“”‘’`´:;,.!?()\[\]\-–—_/\\]+", " ", text)
    return " ".join(text.split())


def redact_text(raw: str | None) -> str:
    text = str(raw or "")
    text = _EMAIL_RE.sub("[REDACTED:EMAIL]", text)
    text = _PAYMENT_TOKEN_RE.sub("[REDACTED:PAYMENT_ID]", text)
    text = _PHONE_RE.sub("[REDACTED:PHONE]", text)
    return text


def _truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    truncated = text[:max_chars]
    sentence_end = max(truncated.rfind("."), truncated.rfind("?"), truncated.rfind("!"))
    if sentence_end > max_chars * 0.7:
        return truncated[: sentence_end + 1]
    last_space = truncated.rfind(" ")
    if last_space > 0:
        return truncated[:last_space]
    return truncated


def _strip_control_chars(value: str) -> str:
    cleaned = []
    for ch in value:
        code = ord(ch)
        if code < 32 or code == 127:
            if ch in _CONTROL_WHITESPACE:
                cleaned.append(" ")
            continue
        cleaned.append(ch)
    return "".join(cleaned)
