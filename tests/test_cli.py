"""Tests for the command line interface."""

import json
import logging
import sys

import pytest
from conftest import make_message

from atrium_sync.__main__ import JSONFormatter, format_message, main
from atrium_sync.storage import USER_KEY, LocalStorage, MessageCache


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    """Point the CLI at a throwaway database and an unreachable server."""
    path = tmp_path / "client.db"
    monkeypatch.setenv("ATRIUM_DB_PATH", str(path))
    monkeypatch.setenv("ATRIUM_SERVER_URL", "http://127.0.0.1:1/api/v1")
    monkeypatch.setenv("ATRIUM_SERVER_TIMEOUT", "1")
    return path


def seed(path, message_ids) -> None:
    store = LocalStorage(path)
    store.connect()
    MessageCache(store).save([make_message(i) for i in message_ids])
    store.close()


class TestCli:
    """Tests for CLI commands that work offline."""

    def test_no_command(self, capsys):
        """Test running without a command prints help."""
        assert main([]) == 1
        assert "usage" in capsys.readouterr().out

    def test_messages_empty(self, db_path, capsys):
        assert main(["messages"]) == 0
        assert "No cached messages" in capsys.readouterr().out

    def test_messages_prints_newest(self, db_path, capsys):
        """Test the newest cached messages are printed oldest first."""
        seed(db_path, range(1, 6))

        assert main(["messages", "-n", "2"]) == 0

        lines = capsys.readouterr().out.strip().splitlines()
        assert len(lines) == 2
        assert lines[0].startswith("[4]")
        assert lines[1].startswith("[5]")

    def test_status_offline(self, db_path, capsys):
        """Test status reports an unreachable server and cached data."""
        seed(db_path, range(1, 4))

        assert main(["status", "--json"]) == 0

        status = json.loads(capsys.readouterr().out)
        assert status["reachable"] is False
        assert status["user"] is None
        assert status["cached_messages"] == 3
        assert status["latest_cached_id"] == 3

    def test_send_requires_login(self, db_path, capsys):
        assert main(["send", "hello"]) == 1
        assert "Not logged in" in capsys.readouterr().err

    def test_logout_clears_storage(self, db_path, capsys):
        """Test logout erases stored identity and messages."""
        seed(db_path, range(1, 4))
        store = LocalStorage(db_path)
        store.set(USER_KEY, json.dumps({"name": "alice"}))
        store.close()

        assert main(["logout"]) == 0

        store = LocalStorage(db_path)
        assert store.keys() == []
        store.close()


class TestFormatting:
    """Tests for output formatting."""

    def test_format_message(self):
        line = format_message(make_message(7, sender="bob"))

        assert line == "[7] 2026-01-01 12:00:07 bob: message 7"

    def test_json_formatter(self):
        """Test log records render as one JSON object."""
        record = logging.LogRecord(
            name="atrium_sync.sync",
            level=logging.WARNING,
            pathname=__file__,
            lineno=1,
            msg="Poll failed: %s",
            args=("timeout",),
            exc_info=None,
        )

        data = json.loads(JSONFormatter().format(record))

        assert data["level"] == "WARNING"
        assert data["component"] == "atrium_sync.sync"
        assert data["message"] == "Poll failed: timeout"

    def test_json_formatter_exception(self):
        """Test tracebacks are included when a record carries one."""
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord(
                name="atrium_sync",
                level=logging.ERROR,
                pathname=__file__,
                lineno=1,
                msg="failed",
                args=(),
                exc_info=sys.exc_info(),
            )

        data = json.loads(JSONFormatter().format(record))

        assert "RuntimeError: boom" in data["exception"]
