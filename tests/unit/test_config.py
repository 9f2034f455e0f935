"""
Unit tests for server configuration and the server entrypoint arguments.
"""

import logging

from agg_server import config
from agg_server.__main__ import apply_overrides, parse_args


class TestSettings:
    """Test suite for environment-driven settings."""

    def test_defaults(self, monkeypatch):
        for name in (
            "AGG_DB_PATH",
            "AGG_REMOTE_TIMEOUT",
            "AGG_VIEW_CACHE_TTL",
            "AGG_POLL_CACHE_TTL",
            "AGG_JANITOR_INTERVAL",
        ):
            monkeypatch.delenv(name, raising=False)

        settings = config.load_settings()

        assert settings == config.Settings()

    def test_environment_values(self, monkeypatch):
        monkeypatch.setenv("AGG_DB_PATH", "/tmp/nodes.db")
        monkeypatch.setenv("AGG_REMOTE_TIMEOUT", "2.5")
        monkeypatch.setenv("AGG_POLL_CACHE_TTL", "1")

        settings = config.load_settings()

        assert settings.db_path == "/tmp/nodes.db"
        assert settings.remote_timeout == 2.5
        assert settings.poll_cache_ttl == 1.0

    def test_invalid_values_fall_back(self, monkeypatch, caplog):
        monkeypatch.setenv("AGG_REMOTE_TIMEOUT", "soon")
        monkeypatch.setenv("AGG_VIEW_CACHE_TTL", "-3")

        with caplog.at_level(logging.WARNING):
            assert config.get_remote_timeout() == 10.0
            assert config.get_view_cache_ttl() == 30.0

        assert "AGG_REMOTE_TIMEOUT" in caplog.text
        assert "AGG_VIEW_CACHE_TTL" in caplog.text


class TestEntrypoint:
    """Test suite for agg-server command-line handling."""

    def test_parse_defaults(self):
        args = parse_args([])

        assert args.host == "127.0.0.1"
        assert args.port == 8000
        assert args.db_path is None
        assert args.log_level == "INFO"

    def test_overrides_exported(self, monkeypatch):
        monkeypatch.setenv("AGG_DB_PATH", "agg_nodes.db")
        monkeypatch.setenv("AGG_REMOTE_TIMEOUT", "10")

        apply_overrides(parse_args(["--db-path", "/tmp/x.db", "--remote-timeout", "4"]))

        assert config.get_database_path() == "/tmp/x.db"
        assert config.get_remote_timeout() == 4.0

    def test_non_positive_timeout_ignored(self, monkeypatch):
        monkeypatch.setenv("AGG_REMOTE_TIMEOUT", "10")

        apply_overrides(parse_args(["--remote-timeout", "0"]))

        assert config.get_remote_timeout() == 10.0
