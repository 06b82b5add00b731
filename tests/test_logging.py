"""Unit tests for docvault.engine.logging — FileLogger, AsyncLogQueue, entry builders."""

import json
import logging
from datetime import date

import pytest

import docvault.engine.logging as log_mod
from docvault.engine.logging import (
    STREAM_CATEGORIES,
    AsyncLogQueue,
    FileLogger,
    LogEntry,
    init_logging,
    log,
    log_document_event,
    log_security_event,
    log_session_event,
    log_system_event,
    log_user_event,
    shutdown_logging,
)


@pytest.fixture(autouse=True)
def _reset_queue():
    yield
    shutdown_logging()


class TestStreamCategories:

    def test_streams(self):
        assert set(STREAM_CATEGORIES) == {"sessions", "documents", "users", "system"}

    def test_every_stream_has_security(self):
        for categories in STREAM_CATEGORIES.values():
            assert "security" in categories


class TestLogEntry:

    def test_to_json_compact(self):
        entry = LogEntry("sessions", "execution", {"event": "login", "n": 1})
        assert entry.to_json() == '{"event":"login","n":1}'


class TestFileLogger:
    """JSONL files under {stream}/{category}/{date}.jsonl."""

    def test_creates_directories(self, tmp_path):
        FileLogger(log_dir=str(tmp_path))
        for stream, categories in STREAM_CATEGORIES.items():
            for cat in categories:
                assert (tmp_path / stream / cat).is_dir()

    def test_write_and_query(self, tmp_path):
        fl = FileLogger(log_dir=str(tmp_path))
        fl.write(log_session_event("login", "u1", "rt1"))
        fl.write(log_session_event("login", "u2", "rt2", success=False, error="invalid_password"))

        path = tmp_path / "sessions" / "execution" / f"{date.today().isoformat()}.jsonl"
        lines = path.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 2
        assert json.loads(lines[1])["level"] == "WARNING"

        rows = fl.query("sessions", "execution", filters={"user_id": "u1"})
        assert len(rows) == 1
        assert rows[0]["refresh_token_id"] == "rt1"

    def test_unknown_stream_goes_to_system(self, tmp_path):
        fl = FileLogger(log_dir=str(tmp_path))
        fl.write(LogEntry("nope", "weird", {"event": "x"}))
        assert fl.query("system", "execution")[0]["event"] == "x"

    def test_query_missing_stream(self, tmp_path):
        fl = FileLogger(log_dir=str(tmp_path))
        assert fl.query("sessions", "security") == []

    def test_query_limit(self, tmp_path):
        fl = FileLogger(log_dir=str(tmp_path))
        fl.write_batch([log_system_event(f"e{i}") for i in range(10)])
        assert len(fl.query("system", "execution", limit=3)) == 3


class TestEntryBuilders:

    def test_session_event_drops_none(self):
        entry = log_session_event("logout", None, "rt1")
        assert entry.stream == "sessions"
        assert "user_id" not in entry.data
        assert "user_agent" not in entry.data
        assert entry.data["refresh_token_id"] == "rt1"

    def test_security_event(self):
        entry = log_security_event("refresh_token_reused", user_id="u1", refresh_token_id="rt1")
        assert entry.category == "security"
        assert entry.stream == "sessions"
        assert entry.data["level"] == "WARNING"

    def test_security_event_unknown_stream(self):
        assert log_security_event("x", stream="bogus").stream == "system"

    def test_document_event_error_level(self):
        ok = log_document_event("document_read", "d1", "u1", cached=True)
        bad = log_document_event("document_object_orphaned", "d1", error="down")
        assert ok.data["level"] == "INFO"
        assert ok.data["cached"] is True
        assert bad.data["level"] == "ERROR"

    def test_user_event(self):
        entry = log_user_event("user_deleted", "u1", actor_id="admin")
        assert entry.stream == "users"
        assert entry.data["actor_id"] == "admin"

    def test_system_event_details(self):
        assert log_system_event("runtime_started", details={"a": 1}).data["details"] == {"a": 1}


class TestAsyncLogQueue:

    def test_stop_drains(self, tmp_path):
        fl = FileLogger(log_dir=str(tmp_path))
        queue = AsyncLogQueue(fl, flush_interval_ms=10)
        queue.start()
        for i in range(5):
            assert queue.push(log_system_event(f"e{i}"))
        queue.stop()
        assert len(fl.query("system", "execution")) == 5
        assert queue.pending_count == 0

    def test_full_queue_drops(self, tmp_path):
        queue = AsyncLogQueue(FileLogger(log_dir=str(tmp_path)), max_queue_size=1)
        assert queue.push(log_system_event("a")) is True
        assert queue.push(log_system_event("b")) is False
        assert queue.dropped_count == 1


class TestGlobalQueue:

    def test_log_before_init_is_noop(self):
        assert log(log_system_event("early")) is False

    def test_init_and_shutdown(self, tmp_path):
        queue = init_logging(log_dir=str(tmp_path), level="debug", flush_interval_ms=10)
        assert log_mod.get_log_queue() is queue
        assert logging.getLogger("docvault").level == logging.DEBUG
        assert log(log_system_event("hello")) is True
        shutdown_logging()
        assert log_mod.get_log_queue() is None
        assert FileLogger(log_dir=str(tmp_path)).query("system", "execution")[0]["event"] == "hello"
