"""Unit tests for settings loading."""

import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../'))

from config.settings import LoggingSettings, Settings, StreamSettings, WatchSettings, reload_settings


class TestSettings:
    """Test Settings and sub-settings."""

    def test_defaults(self, monkeypatch):
        for name in ("MONGO_CONNECTION_STRING", "STREAM_MAX_AWAIT_TIME_MS", "STREAM_FULL_DOCUMENT", "ENVIRONMENT"):
            monkeypatch.delenv(name, raising=False)
        settings = Settings(_env_file=None)
        assert settings.environment == "development"
        assert settings.mongo.connect_timeout == 10
        assert settings.stream.max_await_time_ms == 1000
        assert settings.stream.full_document is None
        assert settings.logging.json_format is True

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("MONGO_CONNECTION_STRING", "mongodb://db:27017")
        monkeypatch.setenv("STREAM_FULL_DOCUMENT", "updateLookup")
        settings = reload_settings()
        assert settings.mongo.connection_string == "mongodb://db:27017"
        assert settings.stream.full_document == "updateLookup"

    def test_invalid_environment(self):
        with pytest.raises(ValueError, match="Environment must be one of"):
            Settings(environment="qa", _env_file=None)

    def test_environment_normalized(self):
        settings = Settings(environment="Production", _env_file=None)
        assert settings.is_production

    def test_invalid_await_time(self):
        with pytest.raises(ValueError, match="max_await_time_ms must be positive"):
            StreamSettings(max_await_time_ms=0, _env_file=None)

    def test_log_level_uppercased(self):
        assert LoggingSettings(level="debug", _env_file=None).level == "DEBUG"

    def test_invalid_log_level(self):
        with pytest.raises(ValueError, match="Log level must be one of"):
            LoggingSettings(level="chatty", _env_file=None)

    def test_watch_operation_types_from_env(self, monkeypatch):
        monkeypatch.setenv("WATCH_OPERATION_TYPES", '["insert", "delete"]')
        assert WatchSettings(_env_file=None).operation_types == ["insert", "delete"]
