import json

from movie_chat.core import session_store
from movie_chat.core.metrics import metrics


class _FakeCursor:
    def __init__(self, steps, executed):
        self._steps = steps
        self._executed = executed
        self._fetchone = None
        self._fetchall = None

    def execute(self, sql, params=None):
        self._executed.append((str(sql), params))
        if not self._steps:
            raise AssertionError("unexpected SQL execution")
        step = self._steps.pop(0)
        if isinstance(step, Exception):
            raise step
        self._fetchone = step.get("fetchone")
        self._fetchall = step.get("fetchall")
        return 1

    def fetchone(self):
        return self._fetchone

    def fetchall(self):
        return self._fetchall

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


class _FakeConnection:
    def __init__(self, steps, executed):
        self._steps = steps
        self._executed = executed
        self.closed = False

    def cursor(self):
        return _FakeCursor(self._steps, self._executed)

    def close(self):
        self.closed = True


def _enable(monkeypatch, steps, executed):
    connections = []

    def _connect():
        connection = _FakeConnection(steps, executed)
        connections.append(connection)
        return connection

    monkeypatch.setattr(session_store._SETTINGS, "enabled", True)
    monkeypatch.setattr(session_store, "_connect", _connect)
    return connections


def test_store_is_noop_when_disabled(monkeypatch):
    monkeypatch.setattr(session_store._SETTINGS, "enabled", False)

    def _fail():
        raise AssertionError("must not connect")

    monkeypatch.setattr(session_store, "_connect", _fail)

    assert session_store.get_session("s1") is None
    assert session_store.upsert_session({"session_id": "s1"}) is False
    assert session_store.append_messages("s1", [{"role": "user", "text": "hi", "ts": 1}]) is False
    assert session_store.ensure_schema() is False


def test_get_session_returns_newest_messages_oldest_first(monkeypatch):
    executed = []
    steps = [
        {
            "fetchone": {
                "session_id": "s1",
                "user_id": "u1",
                "language": "en",
                "suggested_movie_ids_json": json.dumps([11, "12"]),
                "preferences_json": json.dumps({"genres": ["horror"]}),
                "last_intent": "recommendation",
                "created_at_ms": 100,
                "updated_at_ms": 200,
            }
        },
        {
            "fetchall": [
                {"role": "assistant", "message_text": "third", "created_at_ms": 3},
                {"role": "user", "message_text": "second", "created_at_ms": 2},
                {"role": "system", "message_text": "ignored", "created_at_ms": 1},
            ]
        },
    ]
    connections = _enable(monkeypatch, steps, executed)

    record = session_store.get_session("s1", history_limit=10)

    assert record["language"] == "en"
    assert record["suggested_movie_ids"] == ["11", "12"]
    assert record["preferences"] == {"genres": ["horror"]}
    assert [item["text"] for item in record["message_history"]] == ["second", "third"]
    assert "ORDER BY id DESC" in executed[1][0]
    assert executed[1][1] == ("s1", 0, 10)
    assert connections[0].closed is True
    assert metrics.snapshot()["chat_session_store_total{op=read,result=hit}"] == 1


def test_get_session_miss_skips_message_query(monkeypatch):
    executed = []
    _enable(monkeypatch, [{"fetchone": None}], executed)

    assert session_store.get_session("unknown") is None
    assert len(executed) == 1
    assert metrics.snapshot()["chat_session_store_total{op=read,result=miss}"] == 1


def test_get_session_tolerates_corrupt_json_columns(monkeypatch):
    steps = [
        {
            "fetchone": {
                "session_id": "s1",
                "suggested_movie_ids_json": "{broken",
                "preferences_json": "[]",
                "created_at_ms": "x",
                "updated_at_ms": None,
            }
        },
        {"fetchall": []},
    ]
    _enable(monkeypatch, steps, [])

    record = session_store.get_session("s1")

    assert record["suggested_movie_ids"] == []
    assert record["preferences"] == {}
    assert record["created_at"] == 0


def test_store_errors_are_logged_and_swallowed(monkeypatch):
    _enable(monkeypatch, [RuntimeError("db gone")] * 3, [])

    assert session_store.get_session("s1") is None
    assert session_store.upsert_session({"session_id": "s1"}) is False
    assert session_store.append_messages("s1", [{"role": "user", "text": "hi", "ts": 1}]) is False

    snapshot = metrics.snapshot()
    assert snapshot["chat_session_store_total{op=read,result=error}"] == 1
    assert snapshot["chat_session_store_total{op=upsert,result=error}"] == 1
    assert snapshot["chat_session_store_total{op=append,result=error}"] == 1


def test_connect_failure_is_swallowed(monkeypatch):
    monkeypatch.setattr(session_store._SETTINGS, "enabled", True)

    def _connect():
        raise OSError("connection refused")

    monkeypatch.setattr(session_store, "_connect", _connect)

    assert session_store.get_session("s1") is None
    assert session_store.upsert_session({"session_id": "s1"}) is False
    assert session_store.append_messages("s1", [{"role": "user", "text": "hi", "ts": 1}]) is False
    assert session_store.ensure_schema() is False


def test_upsert_session_serializes_lists_as_json(monkeypatch):
    executed = []
    _enable(monkeypatch, [{}], executed)

    ok = session_store.upsert_session(
        {
            "session_id": "s1",
            "user_id": "u1",
            "language": "vi",
            "suggested_movie_ids": [1, 2],
            "preferences": {"genres": ["hài"]},
            "last_intent": "random",
            "history_since": 5,
            "created_at": 10,
            "updated_at": 20,
        }
    )

    assert ok is True
    sql, params = executed[0]
    assert "ON DUPLICATE KEY UPDATE" in sql
    assert params[3] == '["1", "2"]'
    assert params[4] == '{"genres": ["hài"]}'
    assert params[-3:] == (5, 10, 20)
    assert "GREATEST(history_since_ms" in sql


def test_append_messages_redacts_pii_and_skips_invalid_rows(monkeypatch):
    executed = []
    _enable(monkeypatch, [{}, {}], executed)

    ok = session_store.append_messages(
        "s1",
        [
            {"role": "user", "text": "email me at fan@movies.com", "ts": 5},
            {"role": "tool", "text": "skip", "ts": 6},
            {"role": "assistant", "text": "Sure!", "ts": 7},
        ],
    )

    assert ok is True
    assert len(executed) == 2
    assert executed[0][1][2] == "email me at [REDACTED:EMAIL]"
    assert executed[1][1] == ("s1", "assistant", "Sure!", 7)
    assert metrics.snapshot()["chat_pii_redaction_total"] == 1


def test_ensure_schema_creates_both_tables(monkeypatch):
    executed = []
    _enable(monkeypatch, [{}, {}], executed)

    assert session_store.ensure_schema() is True
    assert "conversation_session" in executed[0][0]
    assert "conversation_message" in executed[1][0]


def test_get_session_hides_messages_before_history_since(monkeypatch):
    executed = []
    steps = [
        {"fetchone": {"session_id": "s1", "history_since_ms": 500, "created_at_ms": 100, "updated_at_ms": 500}},
        {"fetchall": [{"role": "user", "message_text": "after reset", "created_at_ms": 600}]},
    ]
    _enable(monkeypatch, steps, executed)

    record = session_store.get_session("s1", history_limit=4)

    assert record["history_since"] == 500
    assert "created_at_ms > %s" in executed[1][0]
    assert executed[1][1] == ("s1", 500, 4)
    assert [item["text"] for item in record["message_history"]] == ["after reset"]
