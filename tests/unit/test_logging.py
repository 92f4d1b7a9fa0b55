"""Unit tests for structured logging."""

import json
import logging

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../'))

from src.utils.logging import (
    JSONFormatter,
    WatchContext,
    configure_logging,
    get_watch_id,
)


def make_record(**extra):
    logger = logging.getLogger("tests.logging")
    return logger.makeRecord(
        "tests.logging", logging.INFO, __file__, 10, "Watching %s", ("shop.orders",), None, extra=extra
    )


class TestJSONFormatter:
    """Test JSONFormatter."""

    def test_basic_fields(self):
        data = json.loads(JSONFormatter().format(make_record()))
        assert data["level"] == "INFO"
        assert data["logger"] == "tests.logging"
        assert data["message"] == "Watching shop.orders"
        assert data["timestamp"].endswith("Z")
        assert "watch_id" not in data

    def test_extra_fields(self):
        data = json.loads(JSONFormatter().format(make_record(collection="orders", stages=2)))
        assert data["collection"] == "orders"
        assert data["stages"] == 2

    def test_watch_id_from_context(self):
        with WatchContext("watch-123"):
            data = json.loads(JSONFormatter().format(make_record()))
        assert data["watch_id"] == "watch-123"

    def test_non_serializable_extra(self):
        data = json.loads(JSONFormatter().format(make_record(client=object())))
        assert data["client"].startswith("<object")


class TestWatchContext:
    """Test WatchContext."""

    def test_restores_previous(self):
        with WatchContext("outer"):
            with WatchContext("inner") as inner:
                assert inner == "inner"
                assert get_watch_id() == "inner"
            assert get_watch_id() == "outer"
        assert get_watch_id() is None

    def test_generates_id(self):
        with WatchContext() as watch_id:
            assert watch_id
            assert get_watch_id() == watch_id


class TestConfigureLogging:
    """Test configure_logging."""

    def test_does_not_stack_handlers(self):
        root = logging.getLogger()
        before = len(root.handlers)
        configure_logging("DEBUG")
        configure_logging("INFO", json_format=False)
        ours = [h for h in root.handlers if getattr(h, '_mongo_trigger_handler', False)]
        try:
            assert len(ours) == 1
            assert len(root.handlers) == before + 1
            assert root.level == logging.INFO
            assert not isinstance(ours[0].formatter, JSONFormatter)
        finally:
            for handler in ours:
                root.removeHandler(handler)
