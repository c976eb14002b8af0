import os
from dataclasses import dataclass, field


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: str, minimum: int = 0) -> int:
    try:
        return max(minimum, int(os.getenv(name, default)))
    except ValueError:
        return max(minimum, int(default))


def _env_float(name: str, default: str, minimum: float = 0.0) -> float:
    try:
        return max(minimum, float(os.getenv(name, default)))
    except ValueError:
        return max(minimum, float(default))


def _env_list(name: str) -> tuple[str, ...]:
    return tuple(item.strip().rstrip("/") for item in os.getenv(name, "").split(",") if item.strip())


def _default_language() -> str:
    value = os.getenv("MC_DEFAULT_LANGUAGE", "vi").strip().lower()
    return value if value in {"vi", "en"} else "vi"


@dataclass
class Settings:
    env: str = field(default_factory=lambda: os.getenv("MC_ENV", "dev"))
    log_level: str = field(default_factory=lambda: os.getenv("MC_LOG_LEVEL", "INFO").upper())
    default_language: str = field(default_factory=_default_language)

    rate_limit_max_requests: int = field(default_factory=lambda: _env_int("MC_RATE_LIMIT_MAX_REQUESTS", "10", 1))
    rate_limit_window_ms: int = field(default_factory=lambda: _env_int("MC_RATE_LIMIT_WINDOW_MS", "30000", 1))

    context_ttl_sec: int = field(default_factory=lambda: _env_int("MC_CONTEXT_TTL_SEC", "1800", 1))
    context_max_history: int = field(default_factory=lambda: _env_int("MC_CONTEXT_MAX_HISTORY", "10", 1))
    serialize_session_turns: bool = field(default_factory=lambda: _env_bool("MC_SERIALIZE_SESSION_TURNS", "true"))
    redis_url: str = field(default_factory=lambda: os.getenv("REDIS_URL", "").strip())

    session_db_enabled: bool = field(default_factory=lambda: _env_bool("MC_SESSION_DB_ENABLED", "false"))
    session_db_host: str = field(default_factory=lambda: os.getenv("MC_SESSION_DB_HOST", "127.0.0.1").strip())
    session_db_port: int = field(default_factory=lambda: _env_int("MC_SESSION_DB_PORT", "3306", 1))
    session_db_name: str = field(default_factory=lambda: os.getenv("MC_SESSION_DB_NAME", "movies").strip())
    session_db_user: str = field(default_factory=lambda: os.getenv("MC_SESSION_DB_USER", "movies").strip())
    session_db_password: str = field(default_factory=lambda: os.getenv("MC_SESSION_DB_PASSWORD", "movies"))
    session_db_connect_timeout_ms: int = field(
        default_factory=lambda: _env_int("MC_SESSION_DB_CONNECT_TIMEOUT_MS", "500", 50)
    )

    llm_enabled: bool = field(default_factory=lambda: _env_bool("MC_LLM_ENABLED", "true"))
    llm_url: str = field(default_factory=lambda: os.getenv("MC_LLM_URL", "http://localhost:8010").rstrip("/"))
    llm_fallback_urls: tuple[str, ...] = field(default_factory=lambda: _env_list("MC_LLM_FALLBACK_URLS"))
    llm_timeout_sec: float = field(default_factory=lambda: _env_float("MC_LLM_TIMEOUT_SEC", "8.0", 0.1))
    llm_intent_model: str = field(default_factory=lambda: os.getenv("MC_LLM_INTENT_MODEL", "gpt-4o-mini"))
    llm_compose_model: str = field(default_factory=lambda: os.getenv("MC_LLM_COMPOSE_MODEL", "gpt-4o-mini"))
    llm_compose_temperature: float = field(default_factory=lambda: _env_float("MC_LLM_COMPOSE_TEMPERATURE", "0.7"))
    llm_max_tokens: int = field(default_factory=lambda: _env_int("MC_LLM_MAX_TOKENS", "600", 32))

    catalog_url: str = field(default_factory=lambda: os.getenv("MC_CATALOG_URL", "http://localhost:8080/api/v1").rstrip("/"))
    catalog_timeout_sec: float = field(default_factory=lambda: _env_float("MC_CATALOG_TIMEOUT_SEC", "2.5", 0.1))
    embedding_url: str = field(default_factory=lambda: os.getenv("MC_EMBEDDING_URL", "http://localhost:8005").rstrip("/"))
    embedding_timeout_sec: float = field(default_factory=lambda: _env_float("MC_EMBEDDING_TIMEOUT_SEC", "3.0", 0.1))

    search_top_k: int = field(default_factory=lambda: _env_int("MC_SEARCH_TOP_K", "8", 1))
    search_min_similarity: float = field(default_factory=lambda: _env_float("MC_SEARCH_MIN_SIMILARITY", "0.5"))
    max_suggestions: int = field(default_factory=lambda: _env_int("MC_MAX_SUGGESTIONS", "5", 1))
    min_suggestions: int = field(default_factory=lambda: _env_int("MC_MIN_SUGGESTIONS", "3", 0))
    search_cache_ttl_sec: int = field(default_factory=lambda: _env_int("MC_SEARCH_CACHE_TTL_SEC", "300", 0))
    intent_cache_ttl_sec: int = field(default_factory=lambda: _env_int("MC_INTENT_CACHE_TTL_SEC", "300", 0))


def load_settings() -> Settings:
    return Settings()


SETTINGS = load_settings()
