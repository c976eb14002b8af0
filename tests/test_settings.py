from movie_chat.core.settings import load_settings


def test_load_settings_reads_environment(monkeypatch):
    monkeypatch.setenv("MC_RATE_LIMIT_MAX_REQUESTS", "3")
    monkeypatch.setenv("MC_LLM_FALLBACK_URLS", "http://a/, http://b ,")
    monkeypatch.setenv("MC_DEFAULT_LANGUAGE", "EN")
    monkeypatch.setenv("MC_SERIALIZE_SESSION_TURNS", "off")
    monkeypatch.setenv("MC_SEARCH_CACHE_TTL_SEC", "0")

    settings = load_settings()

    assert settings.rate_limit_max_requests == 3
    assert settings.search_cache_ttl_sec == 0
    assert settings.intent_cache_ttl_sec == 300
    assert settings.llm_fallback_urls == ("http://a", "http://b")
    assert settings.default_language == "en"
    assert settings.serialize_session_turns is False


def test_load_settings_clamps_invalid_values(monkeypatch):
    monkeypatch.setenv("MC_RATE_LIMIT_WINDOW_MS", "not-a-number")
    monkeypatch.setenv("MC_CONTEXT_MAX_HISTORY", "-4")
    monkeypatch.setenv("MC_DEFAULT_LANGUAGE", "fr")

    settings = load_settings()

    assert settings.rate_limit_window_ms == 30000
    assert settings.context_max_history == 1
    assert settings.default_language == "vi"
