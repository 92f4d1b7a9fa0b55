"""Unit tests for the change stream controller."""

import pytest
from unittest.mock import MagicMock, Mock
from types import SimpleNamespace
import threading
import time

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../'))

from bson.errors import InvalidBSON
from prometheus_client import REGISTRY
from pymongo.errors import ConnectionFailure, OperationFailure

from src.connectors.cdc.models import WatchConfig
from src.connectors.cdc.mongo_changestream import ChangeStreamController, WatchState
from src.core.errors import (
    CollectionNotFoundError,
    StreamFailureError,
    TriggerConnectionError,
    TriggerError,
)
from src.mongodb.connection import ConnectionManager


class FakeChangeStream:
    """Stand-in for pymongo's ChangeStream driven through try_next()."""

    def __init__(self, changes=None, error=None):
        self._changes = list(changes or [])
        self._error = error
        self.alive = True
        self.close_calls = 0

    def try_next(self):
        if self._changes:
            return self._changes.pop(0)
        if self._error is not None:
            error, self._error = self._error, None
            raise error
        time.sleep(0.01)
        return None

    def close(self):
        self.close_calls += 1
        self.alive = False


def update_event(doc_id, **changed):
    return {
        "operationType": "update",
        "documentKey": {"_id": doc_id},
        "ns": {"db": "shop", "coll": "orders"},
        "updateDescription": {"updatedFields": changed, "removedFields": []},
    }


def insert_event(doc_id):
    return {
        "operationType": "insert",
        "documentKey": {"_id": doc_id},
        "fullDocument": {"_id": doc_id},
        "ns": {"db": "shop", "coll": "orders"},
    }


@pytest.fixture
def stream_settings():
    return SimpleNamespace(
        max_await_time_ms=100,
        batch_size=None,
        full_document=None,
        thread_join_timeout=2.0
    )


@pytest.fixture
def config():
    return WatchConfig(
        database="shop",
        collection="orders",
        operation_types=["insert", "update"],
        filters=[{"field": "status", "operator": "equal", "value": "done"}]
    )


@pytest.fixture
def mock_client():
    return MagicMock()


@pytest.fixture
def mock_manager(mock_client):
    manager = Mock(spec=ConnectionManager)
    manager.open.return_value = mock_client
    return manager


def make_controller(config, manager, stream_settings, emit=None, on_error=None):
    return ChangeStreamController(
        config=config,
        connection_string="mongodb://localhost:27017",
        emit=emit or Mock(),
        on_error=on_error,
        connection_manager=manager,
        stream_settings=stream_settings
    )


def attach_stream(client, stream):
    collection = client.__getitem__.return_value.__getitem__.return_value
    collection.watch.return_value = stream
    return collection


class TestInit:
    """Test ChangeStreamController construction."""

    def test_requires_watch_config(self, mock_manager, stream_settings):
        with pytest.raises(TypeError, match="config must be a WatchConfig"):
            make_controller({"database": "shop"}, mock_manager, stream_settings)

    def test_requires_callable_emit(self, config, mock_manager, stream_settings):
        with pytest.raises(TypeError, match="emit must be callable"):
            ChangeStreamController(
                config=config,
                connection_string="mongodb://localhost",
                emit="not callable",
                connection_manager=mock_manager,
                stream_settings=stream_settings
            )

    def test_starts_idle_with_fallback_names(self, config, mock_manager, stream_settings):
        controller = make_controller(config, mock_manager, stream_settings)
        assert controller.state == WatchState.IDLE
        assert controller.database == "shop"
        assert controller.collection == "orders"
        mock_manager.open.assert_not_called()


class TestStart:
    """Test startup and validation."""

    def test_start_opens_stream_with_pipeline(self, config, mock_manager, mock_client, stream_settings):
        stream = FakeChangeStream()
        collection = attach_stream(mock_client, stream)
        controller = make_controller(config, mock_manager, stream_settings)

        teardown = controller.start()
        try:
            assert controller.state == WatchState.WATCHING
            mock_manager.open.assert_called_once_with("mongodb://localhost:27017")
            mock_manager.validate.assert_called_once_with(mock_client, "shop", "orders")
            collection.watch.assert_called_once_with(
                pipeline=[{"$match": {"operationType": {"$in": ["insert", "update"]}}}],
                max_await_time_ms=100
            )
        finally:
            teardown()
            controller.wait_closed()

    def test_full_document_option(self, mock_manager, mock_client, stream_settings):
        config = WatchConfig(database="shop", collection="orders", full_document="updateLookup")
        collection = attach_stream(mock_client, FakeChangeStream())
        controller = make_controller(config, mock_manager, stream_settings)

        teardown = controller.start()
        teardown()
        controller.wait_closed()

        assert collection.watch.call_args.kwargs["full_document"] == "updateLookup"

    def test_missing_collection_creates_no_subscription(self, config, mock_manager, mock_client, stream_settings):
        """Test validation failure is fatal and nothing is watched."""
        collection = attach_stream(mock_client, FakeChangeStream())
        mock_manager.validate.side_effect = CollectionNotFoundError(
            'Collection "orders" does not exist in database "shop".',
            database="shop",
            collection="orders"
        )
        controller = make_controller(config, mock_manager, stream_settings)

        with pytest.raises(CollectionNotFoundError, match='"orders"'):
            controller.start()

        collection.watch.assert_not_called()
        mock_manager.close.assert_called_once_with(mock_client)
        assert controller.state == WatchState.CLOSED

    def test_connection_failure(self, config, mock_manager, stream_settings):
        mock_manager.open.side_effect = TriggerConnectionError("Failed to connect to MongoDB")
        controller = make_controller(config, mock_manager, stream_settings)

        with pytest.raises(TriggerConnectionError):
            controller.start()
        assert controller.state == WatchState.CLOSED
        mock_manager.validate.assert_not_called()

    def test_watch_refused(self, config, mock_manager, mock_client, stream_settings):
        """Test a server error opening the stream (e.g. standalone server) is wrapped."""
        collection = mock_client.__getitem__.return_value.__getitem__.return_value
        collection.watch.side_effect = OperationFailure(
            "The $changeStream stage is only supported on replica sets", code=40573
        )
        controller = make_controller(config, mock_manager, stream_settings)

        with pytest.raises(StreamFailureError, match="replica sets"):
            controller.start()
        assert controller.state == WatchState.CLOSED
        mock_manager.close.assert_called_once_with(mock_client)

    def test_cannot_start_twice(self, config, mock_manager, mock_client, stream_settings):
        attach_stream(mock_client, FakeChangeStream())
        controller = make_controller(config, mock_manager, stream_settings)
        teardown = controller.start()
        try:
            with pytest.raises(TriggerError, match="Cannot start a watch that is watching"):
                controller.start()
        finally:
            teardown()
            controller.wait_closed()


class TestProcessChange:
    """Test per-event normalization, filtering and emission."""

    @pytest.fixture
    def emitted(self):
        return []

    @pytest.fixture
    def controller(self, config, mock_manager, stream_settings, emitted):
        return make_controller(config, mock_manager, stream_settings, emit=emitted.append)

    def test_filtered_update_not_emitted(self, controller, emitted):
        assert controller.process_change(update_event(1, status="pending")) is None
        assert emitted == []

    def test_matching_update_emitted_once(self, controller, emitted):
        output = controller.process_change(update_event(1, status="done"))
        assert len(emitted) == 1
        assert emitted[0] == [output]
        assert output["modifiedFields"] == {"status": "done"}

    def test_non_update_bypasses_filters(self, controller, emitted):
        controller.process_change(insert_event(2))
        assert len(emitted) == 1
        assert emitted[0][0]["operation"] == "insert"

    def test_malformed_event_dropped(self, controller, emitted):
        assert controller.process_change("garbage") is None
        assert emitted == []

    def test_emit_failure_drops_only_that_event(self, config, mock_manager, stream_settings):
        emit = Mock(side_effect=[RuntimeError("sink unavailable"), None])
        controller = make_controller(config, mock_manager, stream_settings, emit=emit)

        assert controller.process_change(insert_event(1)) is None
        assert controller.process_change(insert_event(2)) is not None
        assert emit.call_count == 2
        assert controller.events_emitted == 1

    def test_filtered_metric(self, mock_manager, stream_settings):
        config = WatchConfig(
            database="shop",
            collection="metrics_orders",
            filters=[{"field": "status", "value": "done"}]
        )
        controller = make_controller(config, mock_manager, stream_settings)
        before = REGISTRY.get_sample_value(
            'mongo_trigger_events_filtered_total', {'collection': 'metrics_orders'}
        ) or 0.0

        controller.process_change(update_event(1, status="pending"))

        after = REGISTRY.get_sample_value(
            'mongo_trigger_events_filtered_total', {'collection': 'metrics_orders'}
        )
        assert after == before + 1


class TestListening:
    """Test the background listener and teardown."""

    def test_events_emitted_in_order(self, config, mock_manager, mock_client, stream_settings):
        changes = [
            insert_event(1),
            update_event(2, status="pending"),
            update_event(3, status="done"),
            insert_event(4),
        ]
        attach_stream(mock_client, FakeChangeStream(changes))
        emitted = []
        done = threading.Event()

        def emit(batch):
            emitted.append(batch)
            if len(emitted) == 3:
                done.set()

        controller = make_controller(config, mock_manager, stream_settings, emit=emit)
        teardown = controller.start()
        assert done.wait(2.0)
        teardown()
        assert controller.wait_closed()

        assert [batch[0]["documentId"] for batch in emitted] == ["1", "3", "4"]
        assert all(len(batch) == 1 for batch in emitted)

    def test_teardown_is_idempotent(self, config, mock_manager, mock_client, stream_settings):
        stream = FakeChangeStream()
        attach_stream(mock_client, stream)
        controller = make_controller(config, mock_manager, stream_settings)

        teardown = controller.start()
        teardown()
        teardown()

        assert controller.state == WatchState.CLOSED
        assert stream.close_calls == 1
        mock_manager.close.assert_called_once_with(mock_client)
        assert controller.wait_closed()

    def test_client_closed_even_if_stream_close_fails(self, config, mock_manager, mock_client, stream_settings):
        stream = FakeChangeStream()
        stream.close = Mock(side_effect=OperationFailure("cursor not found", code=43))
        attach_stream(mock_client, stream)
        controller = make_controller(config, mock_manager, stream_settings)

        teardown = controller.start()
        teardown()

        stream.close.assert_called_once()
        mock_manager.close.assert_called_once_with(mock_client)
        assert controller.state == WatchState.CLOSED
        stream.alive = False
        controller.wait_closed()

    def test_no_callback_after_close(self, config, mock_manager, mock_client, stream_settings):
        """Test closing during a callback lets it finish but starts no new one."""
        attach_stream(mock_client, FakeChangeStream([insert_event(1), insert_event(2), insert_event(3)]))
        calls = []
        controller = None

        def emit(batch):
            calls.append(batch)
            controller.close()

        controller = make_controller(config, mock_manager, stream_settings, emit=emit)
        controller.start()
        assert controller.wait_closed()

        assert len(calls) == 1
        assert controller.state == WatchState.CLOSED

    def test_transport_failure_is_reported(self, config, mock_manager, mock_client, stream_settings):
        stream = FakeChangeStream([insert_event(1)], error=ConnectionFailure("connection reset by peer"))
        attach_stream(mock_client, stream)
        failures = []
        failed = threading.Event()

        def on_error(error):
            failures.append(error)
            failed.set()

        controller = make_controller(config, mock_manager, stream_settings, on_error=on_error)
        controller.start()

        assert failed.wait(2.0)
        assert controller.wait_closed()
        assert isinstance(failures[0], StreamFailureError)
        assert "connection reset by peer" in str(failures[0])
        assert isinstance(failures[0].__cause__, ConnectionFailure)
        assert controller.state == WatchState.CLOSED
        assert stream.close_calls == 1
        mock_manager.close.assert_called_once_with(mock_client)

    def test_decode_failure_is_reported(self, config, mock_manager, mock_client, stream_settings):
        """Test a non-driver error from try_next() still ends the watch."""
        stream = FakeChangeStream([insert_event(1)], error=InvalidBSON("invalid utf-8"))
        attach_stream(mock_client, stream)
        failures = []
        failed = threading.Event()

        def on_error(error):
            failures.append(error)
            failed.set()

        controller = make_controller(config, mock_manager, stream_settings, on_error=on_error)
        controller.start()

        assert failed.wait(2.0)
        assert controller.wait_closed()
        assert isinstance(failures[0], StreamFailureError)
        assert isinstance(failures[0].__cause__, InvalidBSON)
        assert controller.state == WatchState.CLOSED
        assert stream.close_calls == 1
        mock_manager.close.assert_called_once_with(mock_client)

    def test_server_closed_stream_is_reported(self, config, mock_manager, mock_client, stream_settings):
        """Test an invalidated stream (collection dropped) ends the watch."""
        stream = FakeChangeStream([{"operationType": "invalidate"}])
        original_try_next = stream.try_next

        def try_next():
            change = original_try_next()
            if change is not None:
                stream.alive = False
            return change

        stream.try_next = try_next
        attach_stream(mock_client, stream)
        failed = threading.Event()
        config = WatchConfig(
            database="shop",
            collection="orders",
            operation_types=["insert", "update", "replace", "delete", "drop", "rename"]
        )
        emitted = []
        controller = make_controller(
            config, mock_manager, stream_settings,
            emit=emitted.append,
            on_error=lambda error: failed.set()
        )
        controller.start()

        assert failed.wait(2.0)
        assert controller.wait_closed()
        assert emitted[0][0]["operation"] == "invalidate"
        assert emitted[0][0]["details"] == {"operationType": "invalidate"}
