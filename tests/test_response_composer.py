import asyncio

from movie_chat.core.composer import ResponseComposer, extract_mentioned_titles, fallback_response
from movie_chat.core.context_store import ConversationContext
from movie_chat.core.messages import template
from movie_chat.core.metrics import metrics


def _context(language="en"):
    return ConversationContext(
        session_id="s1",
        language=language,
        message_history=[{"role": "user", "text": "something funny please", "ts": 1}],
    )


def _candidates(make_movie):
    return [
        make_movie(1, "Paddington 2", genres=["Comedy"], year="2017", vote=7.8),
        make_movie(2, "The Grand Budapest Hotel", genres=["Comedy"], year="2014", vote=8.1),
    ]


def test_extract_mentioned_titles_handles_quote_styles():
    text = 'Try "Up" (2009), “Coco”, «Amélie» or **Inside Out**. Also "Up".'

    assert extract_mentioned_titles(text) == ["Up", "Coco", "Amélie", "Inside Out"]


def test_extract_mentioned_titles_strips_trailing_year():
    assert extract_mentioned_titles('"Heat (1995)"') == ["Heat"]


def test_fallback_response_single_and_multiple(make_movie):
    movies = _candidates(make_movie)

    assert fallback_response(movies[:1], "vi") == (
        'Mình gợi ý phim "Paddington 2" (2017) - một lựa chọn tuyệt vời! Bạn muốn biết thêm gì về phim này không?'
    )
    assert fallback_response(movies, "en") == (
        'I recommend: "Paddington 2", "The Grand Budapest Hotel". Would you like details about any of these movies?'
    )
    assert fallback_response([], "en") == template("no_results", "en")


def test_draft_text_is_returned_unchanged(fakes, make_movie):
    llm = fakes.Llm(enabled=True, completion="should not be used")
    composer = ResponseComposer(llm=llm, catalog=fakes.Catalog())

    reply = asyncio.run(composer.compose("comparison", _candidates(make_movie), "Prepared text", _context()))

    assert reply == "Prepared text"
    assert llm.calls == []


def test_no_movies_yields_no_results(fakes):
    composer = ResponseComposer(llm=fakes.Llm(enabled=True, completion="x"), catalog=fakes.Catalog())

    reply = asyncio.run(composer.compose("recommendation", [], "", _context("vi")))

    assert reply == template("no_results", "vi")


def test_guard_passes_reply_naming_only_candidates(fakes, make_movie):
    completion = 'You might enjoy "Paddington 2" and "The Grand Budapest Hotel (2014)". What mood are you in?'
    llm = fakes.Llm(enabled=True, completion=completion)
    composer = ResponseComposer(llm=llm, catalog=fakes.Catalog())

    reply = asyncio.run(composer.compose("recommendation", _candidates(make_movie), "", _context()))

    assert reply == completion
    assert metrics.snapshot()["chat_guard_total{result=pass}"] == 1
    messages = llm.calls[0][1]
    assert messages[0]["role"] == "system"
    assert "something funny please" in messages[1]["content"]
    assert '"Paddington 2" (2017)' in messages[1]["content"]


def test_guard_rejects_reply_with_unknown_third_title(fakes, make_movie):
    movies = _candidates(make_movie)
    completion = 'Watch "Paddington 2", "The Grand Budapest Hotel" and the classic "Made Up Movie".'
    catalog = fakes.Catalog(movies)
    composer = ResponseComposer(llm=fakes.Llm(enabled=True, completion=completion), catalog=catalog)

    reply = asyncio.run(composer.compose("recommendation", movies, "", _context()))

    assert reply == fallback_response(movies, "en")
    assert catalog.title_lookups == ["Made Up Movie"]
    assert metrics.snapshot()["chat_guard_total{result=rejected}"] == 1


def test_guard_accepts_title_verified_in_catalog(fakes, make_movie):
    movies = _candidates(make_movie)
    catalog = fakes.Catalog(movies + [make_movie(3, "Paddington", year="2014", vote=9.0)])
    completion = 'If you liked "Paddington", try "Paddington 2".'
    composer = ResponseComposer(llm=fakes.Llm(enabled=True, completion=completion), catalog=catalog)

    reply = asyncio.run(composer.compose("recommendation", movies, "", _context()))

    assert reply == completion


def test_guard_rejects_partial_catalog_match(fakes, make_movie):
    movies = _candidates(make_movie)
    completion = 'Try "Paddington" tonight.'
    composer = ResponseComposer(llm=fakes.Llm(enabled=True, completion=completion), catalog=fakes.Catalog(movies))

    reply = asyncio.run(composer.compose("recommendation", movies, "", _context()))

    assert reply == fallback_response(movies, "en")


def test_guard_treats_catalog_errors_as_unverified(fakes, make_movie):
    movies = _candidates(make_movie)
    completion = 'Try "Something Else".'
    composer = ResponseComposer(
        llm=fakes.Llm(enabled=True, completion=completion),
        catalog=fakes.Catalog(movies, fail=True),
    )

    reply = asyncio.run(composer.compose("recommendation", movies, "", _context()))

    assert reply == fallback_response(movies, "en")


def test_llm_disabled_error_and_empty_fall_back(fakes, make_movie):
    movies = _candidates(make_movie)
    catalog = fakes.Catalog(movies)

    disabled = ResponseComposer(llm=fakes.Llm(enabled=False), catalog=catalog)
    failing = ResponseComposer(llm=fakes.Llm(enabled=True, fail=True), catalog=catalog)
    empty = ResponseComposer(llm=fakes.Llm(enabled=True, completion="   "), catalog=catalog)

    for composer in (disabled, failing, empty):
        reply = asyncio.run(composer.compose("random", movies, "", _context()))
        assert reply == fallback_response(movies, "en")

    snapshot = metrics.snapshot()
    assert snapshot["chat_guard_total{result=llm_disabled}"] == 1
    assert snapshot["chat_guard_total{result=llm_error}"] == 1
    assert snapshot["chat_guard_total{result=empty}"] == 1


def test_get_follow_up_keywords_delegates_to_messages(fakes):
    composer = ResponseComposer(llm=fakes.Llm(enabled=False), catalog=fakes.Catalog())

    assert composer.get_follow_up_keywords("random", "vi") == ["ngẫu nhiên", "gợi ý khác", "phim mới"]
