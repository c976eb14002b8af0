from __future__ import annotations

from typing import Dict, List

from movie_chat.core.language import coerce_language

_TEMPLATES: Dict[str, Dict[str, str]] = {
    "vi": {
        "greeting": "Chào bạn! Mình là trợ lý xem phim của bạn. Bạn muốn mình giúp gì hôm nay?",
        "farewell": "Cảm ơn bạn đã trò chuyện! Chúc bạn xem phim vui vẻ, hẹn gặp lại nhé.",
        "no_results": "Xin lỗi, mình không tìm thấy phim nào phù hợp với yêu cầu của bạn.",
        "generic_error": "Có lỗi xảy ra, vui lòng thử lại sau.",
        "apology": "Xin lỗi, có lỗi xảy ra. Vui lòng thử lại sau.",
        "rate_limited": "Bạn đã gửi quá nhiều yêu cầu. Vui lòng đợi một chút trước khi thử lại.",
        "exhausted": "Mình đã gợi ý hết các phim phù hợp rồi. Bạn muốn thử chủ đề khác không?",
        "exhausted_similar": "Mình đã gợi ý hết các phim tương tự rồi. Bạn muốn thử chủ đề khác không?",
        "comparison_need_more": "Bạn hãy cho mình biết ít nhất 2 phim để so sánh nhé.",
        "comparison_not_found": "Mình không tìm đủ phim để so sánh. Bạn kiểm tra lại tên phim giúp mình nhé.",
    },
    "en": {
        "greeting": "Hello! I'm your movie assistant. How can I help you today?",
        "farewell": "Thanks for chatting! Enjoy your movies and see you next time.",
        "no_results": "Sorry, I couldn't find any movies matching your request.",
        "generic_error": "An error occurred, please try again later.",
        "apology": "Sorry, something went wrong. Please try again later.",
        "rate_limited": "You are sending too many messages. Please wait a moment before trying again.",
        "exhausted": "I've suggested all matching movies. Would you like to try a different topic?",
        "exhausted_similar": "I've suggested all similar movies. Would you like to try a different topic?",
        "comparison_need_more": "Please provide at least 2 movies to compare.",
        "comparison_not_found": "I could not find enough movies to compare. Please check the titles.",
    },
}

_FOLLOW_UP_KEYWORDS: Dict[str, Dict[str, List[str]]] = {
    "vi": {
        "greeting": ["gợi ý phim", "phim mới", "phim hay"],
        "recommendation": ["xem thêm", "gợi ý khác", "phim tương tự"],
        "random": ["ngẫu nhiên", "gợi ý khác", "phim mới"],
        "follow_up": ["xem thêm", "gợi ý khác", "phim tương tự"],
        "comparison": ["so sánh khác", "gợi ý phim", "phim tương tự"],
        "off_topic": ["gợi ý phim", "phim hay", "phim mới"],
        "farewell": ["gợi ý phim", "phim mới", "phim hay"],
    },
    "en": {
        "greeting": ["suggest movies", "new movies", "good movies"],
        "recommendation": ["see more", "other suggestions", "similar movies"],
        "random": ["random", "other suggestions", "new movies"],
        "follow_up": ["see more", "other suggestions", "similar movies"],
        "comparison": ["compare others", "suggest movies", "similar movies"],
        "off_topic": ["suggest movies", "good movies", "new movies"],
        "farewell": ["suggest movies", "new movies", "good movies"],
    },
}


def template(name: str, language: str | None) -> str:
    table = _TEMPLATES[coerce_language(language)]
    return table.get(name) or table["generic_error"]


def default_keywords(intent: str, language: str | None) -> List[str]:
    table = _FOLLOW_UP_KEYWORDS[coerce_language(language)]
    return list(table.get(intent) or table["off_topic"])


def follow_up_keywords(intent: str, language: str | None, keywords: List[str] | None = None) -> List[str]:
    """Three suggestion chips: the first extracted keyword, then the intent defaults."""
    chips: List[str] = []
    for keyword in list(keywords or [])[:1] + default_keywords(intent, language):
        keyword = str(keyword).strip()
        if keyword and keyword.lower() not in {chip.lower() for chip in chips}:
            chips.append(keyword)
    return chips[:3]
