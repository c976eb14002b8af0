from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from threading import Lock
from typing import Any, Dict, List, Optional

import pymysql

from movie_chat.core.metrics import metrics
from movie_chat.core.settings import SETTINGS
from movie_chat.core.text import redact_text

logger = logging.getLogger(__name__)
_lock = Lock()

# conversation_session: one row per session, upserted every turn.
# conversation_message: append-only log; only the newest rows after history_since_ms are read back.
SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS conversation_session (
      session_id VARCHAR(128) NOT NULL PRIMARY KEY,
      user_id VARCHAR(64) NULL,
      language VARCHAR(8) NOT NULL DEFAULT 'vi',
      suggested_movie_ids_json TEXT NULL,
      preferences_json TEXT NULL,
      last_intent VARCHAR(32) NULL,
      history_since_ms BIGINT NOT NULL DEFAULT 0,
      created_at_ms BIGINT NOT NULL,
      updated_at_ms BIGINT NOT NULL
    ) DEFAULT CHARSET=utf8mb4
    """,
    """
    CREATE TABLE IF NOT EXISTS conversation_message (
      id BIGINT NOT NULL AUTO_INCREMENT PRIMARY KEY,
      session_id VARCHAR(128) NOT NULL,
      role VARCHAR(16) NOT NULL,
      message_text TEXT NOT NULL,
      created_at_ms BIGINT NOT NULL,
      KEY idx_conversation_message_session (session_id, id)
    ) DEFAULT CHARSET=utf8mb4
    """,
)


@dataclass
class SessionStoreSettings:
    enabled: bool
    host: str
    port: int
    database: str
    user: str
    password: str
    connect_timeout_ms: int


def _load_settings() -> SessionStoreSettings:
    return SessionStoreSettings(
        enabled=SETTINGS.session_db_enabled,
        host=SETTINGS.session_db_host,
        port=SETTINGS.session_db_port,
        database=SETTINGS.session_db_name,
        user=SETTINGS.session_db_user,
        password=SETTINGS.session_db_password,
        connect_timeout_ms=SETTINGS.session_db_connect_timeout_ms,
    )


_SETTINGS = _load_settings()


def _safe_str(value: Any, max_len: int) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if len(text) > max_len:
        return text[:max_len]
    return text


def _safe_int(value: Any, minimum: int = 0) -> int:
    try:
        return max(minimum, int(value))
    except (TypeError, ValueError):
        return minimum


def _parse_json(value: Any, expected: type) -> Any:
    if isinstance(value, expected):
        return value
    if isinstance(value, (str, bytes)):
        try:
            parsed = json.loads(value)
        except ValueError:
            return None
        if isinstance(parsed, expected):
            return parsed
    return None


def _redact(value: str) -> str:
    redacted = redact_text(value)
    if redacted != value:
        metrics.inc("chat_pii_redaction_total")
    return redacted


def _enabled() -> bool:
    return _SETTINGS.enabled


def _connect():
    timeout = max(0.05, _SETTINGS.connect_timeout_ms / 1000.0)
    return pymysql.connect(
        host=_SETTINGS.host,
        port=_SETTINGS.port,
        user=_SETTINGS.user,
        password=_SETTINGS.password,
        database=_SETTINGS.database,
        charset="utf8mb4",
        autocommit=True,
        cursorclass=pymysql.cursors.DictCursor,
        connect_timeout=timeout,
        read_timeout=timeout,
        write_timeout=timeout,
    )


def _select_recent_messages(cursor, session_id: str, since_ms: int, limit: int) -> List[Dict[str, Any]]:
    cursor.execute(
        """
        SELECT role, message_text, created_at_ms
        FROM conversation_message
        WHERE session_id=%s AND created_at_ms > %s
        ORDER BY id DESC
        LIMIT %s
        """,
        (session_id, since_ms, limit),
    )
    rows = cursor.fetchall() or []
    messages = []
    for row in reversed(list(rows)):
        if not isinstance(row, dict):
            continue
        role = row.get("role")
        if role not in {"user", "assistant"}:
            continue
        messages.append(
            {
                "role": role,
                "text": str(row.get("message_text") or ""),
                "ts": _safe_int(row.get("created_at_ms")),
            }
        )
    return messages


def get_session(session_id: str, history_limit: int = 10) -> Optional[Dict[str, Any]]:
    """Point lookup of a session plus its newest ``history_limit`` messages, oldest first."""
    if not _enabled():
        return None
    session = _safe_str(session_id, 128)
    if not session:
        return None

    try:
        with _lock:
            connection = _connect()
            try:
                with connection.cursor() as cursor:
                    cursor.execute(
                        """
                        SELECT
                          session_id,
                          user_id,
                          language,
                          suggested_movie_ids_json,
                          preferences_json,
                          last_intent,
                          history_since_ms,
                          created_at_ms,
                          updated_at_ms
                        FROM conversation_session
                        WHERE session_id=%s
                        LIMIT 1
                        """,
                        (session,),
                    )
                    row = cursor.fetchone()
                    messages = []
                    if isinstance(row, dict):
                        messages = _select_recent_messages(
                            cursor, session, _safe_int(row.get("history_since_ms")), max(1, history_limit)
                        )
            finally:
                connection.close()
    except Exception as exc:
        metrics.inc("chat_session_store_total", {"op": "read", "result": "error"})
        logger.warning("conversation session read failed: %s", exc)
        return None

    if not isinstance(row, dict):
        metrics.inc("chat_session_store_total", {"op": "read", "result": "miss"})
        return None

    metrics.inc("chat_session_store_total", {"op": "read", "result": "hit"})
    suggested = _parse_json(row.get("suggested_movie_ids_json"), list) or []
    return {
        "session_id": str(row.get("session_id") or session),
        "user_id": _safe_str(row.get("user_id"), 64),
        "language": _safe_str(row.get("language"), 8),
        "suggested_movie_ids": [str(item) for item in suggested],
        "preferences": _parse_json(row.get("preferences_json"), dict) or {},
        "last_intent": _safe_str(row.get("last_intent"), 32),
        "history_since": _safe_int(row.get("history_since_ms")),
        "created_at": _safe_int(row.get("created_at_ms")),
        "updated_at": _safe_int(row.get("updated_at_ms")),
        "message_history": messages,
    }


def upsert_session(record: Dict[str, Any]) -> bool:
    if not _enabled():
        return False
    session = _safe_str(record.get("session_id"), 128)
    if not session:
        return False

    suggested = [str(item) for item in record.get("suggested_movie_ids") or []]
    preferences = record.get("preferences") if isinstance(record.get("preferences"), dict) else {}
    params = (
        session,
        _safe_str(record.get("user_id"), 64),
        _safe_str(record.get("language"), 8) or SETTINGS.default_language,
        json.dumps(suggested, ensure_ascii=False),
        json.dumps(preferences, ensure_ascii=False),
        _safe_str(record.get("last_intent"), 32),
        _safe_int(record.get("history_since")),
        _safe_int(record.get("created_at")),
        _safe_int(record.get("updated_at")),
    )
    try:
        with _lock:
            connection = _connect()
            try:
                with connection.cursor() as cursor:
                    cursor.execute(
                        """
                        INSERT INTO conversation_session
                          (session_id, user_id, language, suggested_movie_ids_json, preferences_json,
                           last_intent, history_since_ms, created_at_ms, updated_at_ms)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                        ON DUPLICATE KEY UPDATE
                          user_id=COALESCE(VALUES(user_id), user_id),
                          language=VALUES(language),
                          suggested_movie_ids_json=VALUES(suggested_movie_ids_json),
                          preferences_json=VALUES(preferences_json),
                          last_intent=VALUES(last_intent),
                          history_since_ms=GREATEST(history_since_ms, VALUES(history_since_ms)),
                          updated_at_ms=VALUES(updated_at_ms)
                        """,
                        params,
                    )
            finally:
                connection.close()
    except Exception as exc:
        metrics.inc("chat_session_store_total", {"op": "upsert", "result": "error"})
        logger.warning("conversation session upsert failed: %s", exc)
        return False
    metrics.inc("chat_session_store_total", {"op": "upsert", "result": "ok"})
    return True


def append_messages(session_id: str, messages: List[Dict[str, Any]]) -> bool:
    if not _enabled():
        return False
    session = _safe_str(session_id, 128)
    rows = []
    for message in messages or []:
        role = message.get("role")
        text = message.get("text")
        if role not in {"user", "assistant"} or not isinstance(text, str):
            continue
        rows.append((session, role, _redact(text), _safe_int(message.get("ts"))))
    if not session or not rows:
        return False

    try:
        with _lock:
            connection = _connect()
            try:
                with connection.cursor() as cursor:
                    for row in rows:
                        cursor.execute(
                            """
                            INSERT INTO conversation_message (session_id, role, message_text, created_at_ms)
                            VALUES (%s, %s, %s, %s)
                            """,
                            row,
                        )
            finally:
                connection.close()
    except Exception as exc:
        metrics.inc("chat_session_store_total", {"op": "append", "result": "error"})
        logger.warning("conversation message append failed: %s", exc)
        return False
    metrics.inc("chat_session_store_total", {"op": "append", "result": "ok"})
    return True


def ensure_schema() -> bool:
    if not _enabled():
        return False
    try:
        with _lock:
            connection = _connect()
            try:
                with connection.cursor() as cursor:
                    for statement in SCHEMA_STATEMENTS:
                        cursor.execute(statement)
            finally:
                connection.close()
    except Exception as exc:
        logger.warning("conversation schema setup failed: %s", exc)
        return False
    return True
