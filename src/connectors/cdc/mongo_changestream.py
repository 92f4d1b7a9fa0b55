"""
MongoDB change stream controller.

Owns one watch from start to teardown:
1. Open the connection and validate the target database/collection
2. Build the server-side pipeline and open the change stream
3. Read events on a background thread, normalize, filter and emit them in order
4. Close the stream and then the connection, exactly once, on request or on failure
"""

from pymongo.errors import PyMongoError
from typing import Any, Callable, Optional, Dict, List, Mapping
from enum import Enum
import logging
import threading
import uuid

from prometheus_client import Counter, Gauge

from ...core.errors import StreamFailureError, TriggerError
from ...mongodb.connection import ConnectionManager
from ...utils.logging import WatchContext
from .filters import ClientFilterEngine
from .models import WatchConfig
from .normalizer import EventNormalizer
from .pipeline import PipelineBuilder

logger = logging.getLogger(__name__)

# Prometheus metrics
events_received_total = Counter(
    'mongo_trigger_events_received_total',
    'Change events read from the stream',
    ['collection', 'operation']
)

events_emitted_total = Counter(
    'mongo_trigger_events_emitted_total',
    'Normalized events delivered to the sink',
    ['collection', 'operation']
)

events_filtered_total = Counter(
    'mongo_trigger_events_filtered_total',
    'Update events rejected by client-side filters',
    ['collection']
)

event_errors_total = Counter(
    'mongo_trigger_event_errors_total',
    'Change events dropped because processing failed',
    ['collection', 'error_type']
)

active_watches = Gauge(
    'mongo_trigger_active_watches',
    'Change streams currently being read'
)

EmitFunction = Callable[[List[Dict[str, Any]]], None]
ErrorCallback = Callable[[Exception], None]


class WatchState(str, Enum):
    """Lifecycle of a ChangeStreamController."""
    IDLE = "idle"
    VALIDATING = "validating"
    WATCHING = "watching"
    CLOSING = "closing"
    CLOSED = "closed"


class ChangeStreamController:
    """
    Watch one collection and push matching, normalized changes to a sink.

    Events are processed one at a time on a single listener thread, in the
    order the server delivered them. Each emission is a batch of one record.

    Shutdown is cooperative: close() flags the listener, closes the stream and
    then the client. A callback already running is allowed to finish, and no
    new one starts afterwards. close() may be called any number of times.

    Thread Safety: start() once; close() from any thread.

    Example:
        >>> controller = ChangeStreamController(
        ...     config=WatchConfig(database="shop", collection="orders"),
        ...     connection_string="mongodb://localhost:27017",
        ...     emit=lambda batch: print(batch[0])
        ... )
        >>> teardown = controller.start()
        >>> teardown()
    """

    def __init__(
        self,
        config: WatchConfig,
        connection_string: str,
        emit: EmitFunction,
        on_error: Optional[ErrorCallback] = None,
        connection_manager: Optional[ConnectionManager] = None,
        stream_settings: Optional[Any] = None,
        watch_id: Optional[str] = None
    ):
        """
        Initialize the controller. Nothing touches the network until start().

        Args:
            config: What to watch and which events to forward
            connection_string: Already-resolved MongoDB URI
            emit: Sink called with a one-record list per matching event
            on_error: Called with a StreamFailureError if the stream dies
            connection_manager: Connection lifecycle helper (built from settings if omitted)
            stream_settings: StreamSettings (loaded from the environment if omitted)
            watch_id: Identifier attached to every log line of this watch

        Raises:
            TypeError: If emit or on_error is not callable
        """
        if not isinstance(config, WatchConfig):
            raise TypeError("config must be a WatchConfig instance")
        if not callable(emit):
            raise TypeError("emit must be callable")
        if on_error is not None and not callable(on_error):
            raise TypeError("on_error must be callable")

        if connection_manager is None or stream_settings is None:
            from config.settings import get_settings
            settings = get_settings()
            if connection_manager is None:
                connection_manager = ConnectionManager(
                    connect_timeout=settings.mongo.connect_timeout,
                    server_selection_timeout=settings.mongo.server_selection_timeout,
                    app_name=settings.mongo.app_name
                )
            if stream_settings is None:
                stream_settings = settings.stream

        self.config = config
        self.connection_string = connection_string
        self.emit = emit
        self.on_error = on_error
        self.connection_manager = connection_manager
        self.stream_settings = stream_settings
        self.watch_id = watch_id or str(uuid.uuid4())

        # Fallbacks for events that carry no namespace
        self.database = config.database
        self.collection = config.collection

        self.pipeline_builder = PipelineBuilder()
        self.normalizer = EventNormalizer()
        self.filter_engine = ClientFilterEngine()

        # State management
        self.state = WatchState.IDLE
        self.client = None
        self.stream = None
        self.pipeline: List[Dict[str, Any]] = []
        self.events_emitted: int = 0
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def _log_extra(self) -> Dict[str, Any]:
        return {
            "watch_id": self.watch_id,
            "database": self.database,
            "collection": self.collection
        }

    def start(self) -> Callable[[], None]:
        """
        Validate the target, open the change stream and start listening.

        Returns once the stream is open, not after the first event.

        Returns:
            Teardown handle; calling it closes the stream, then the connection

        Raises:
            TriggerError: If already started, or any connection/validation error
            StreamFailureError: If the server refuses to open the change stream
        """
        with self._lock:
            if self.state != WatchState.IDLE:
                raise TriggerError(
                    f"Cannot start a watch that is {self.state.value}",
                    database=self.database,
                    collection=self.collection
                )
            self.state = WatchState.VALIDATING

        logger.info(
            f"Starting change stream watch on {self.database}.{self.collection}",
            extra=self._log_extra
        )

        try:
            self.client = self.connection_manager.open(self.connection_string)
            self.connection_manager.validate(self.client, self.database, self.collection)
            self.pipeline = self.pipeline_builder.build(self.config)
            self.stream = self.client[self.database][self.collection].watch(
                pipeline=self.pipeline,
                **self._stream_options()
            )
        except PyMongoError as e:
            self._abort_start(e)
            raise StreamFailureError(
                f'Failed to open change stream on "{self.database}.{self.collection}": {e}',
                database=self.database,
                collection=self.collection
            ) from e
        except Exception as e:
            self._abort_start(e)
            raise

        with self._lock:
            closed_during_start = self._stop_event.is_set()
            if not closed_during_start:
                self.state = WatchState.WATCHING

        if closed_during_start:
            # close() ran while we were validating; release what start() opened
            self._release_resources()
            return self.close

        self._thread = threading.Thread(
            target=self._listen,
            args=(self.stream,),
            name=f"change-stream-{self.database}.{self.collection}",
            daemon=True
        )
        self._thread.start()

        logger.info(
            f"Watching {self.database}.{self.collection}",
            extra={**self._log_extra, "pipeline_stages": len(self.pipeline)}
        )
        return self.close

    def _stream_options(self) -> Dict[str, Any]:
        options: Dict[str, Any] = {
            "max_await_time_ms": self.stream_settings.max_await_time_ms
        }
        full_document = self.config.full_document or self.stream_settings.full_document
        if full_document:
            options["full_document"] = full_document
        if self.stream_settings.batch_size:
            options["batch_size"] = self.stream_settings.batch_size
        return options

    def _abort_start(self, error: Exception) -> None:
        logger.error(
            f"Failed to start watch: {error}",
            extra={**self._log_extra, "error": str(error), "error_type": type(error).__name__}
        )
        self._stop_event.set()
        self._release_resources()
        with self._lock:
            self.state = WatchState.CLOSED

    def _listen(self, stream) -> None:
        """Listener thread body: read until stopped or the stream fails."""
        with WatchContext(self.watch_id):
            active_watches.inc()
            try:
                while not self._stop_event.is_set():
                    try:
                        change = stream.try_next()
                    except PyMongoError as e:
                        if self._stop_event.is_set():
                            # Expected when close() shuts the cursor under us
                            break
                        self._fail(e)
                        return
                    except Exception as e:
                        # Decode errors (e.g. InvalidBSON) are not PyMongoErrors
                        if self._stop_event.is_set():
                            break
                        self._fail(e)
                        return

                    if change is None:
                        if not stream.alive and not self._stop_event.is_set():
                            self._fail(PyMongoError("change stream was closed by the server"))
                            return
                        continue

                    if self._stop_event.is_set():
                        break
                    self.process_change(change)
            finally:
                active_watches.dec()

            logger.info("Listener stopped", extra=self._log_extra)

    def process_change(self, change: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Normalize, filter and emit a single raw change event.

        A failure here drops only this event; the watch keeps running.

        Returns:
            The emitted record, or None if the event was filtered out or dropped
        """
        operation = change.get("operationType", "unknown") if isinstance(change, Mapping) else "unknown"
        events_received_total.labels(collection=self.collection, operation=operation).inc()

        try:
            output = self.normalizer.normalize(change, self.database, self.collection)

            if self.filter_engine.applies_to(output["operation"]) and not self.filter_engine.matches(
                self.config.filters, output["modifiedFields"]
            ):
                events_filtered_total.labels(collection=self.collection).inc()
                logger.debug(
                    "Update did not match filters",
                    extra={**self._log_extra, "document_id": output.get("documentId")}
                )
                return None

            self.emit([output])

        except Exception as e:
            event_errors_total.labels(
                collection=self.collection,
                error_type=type(e).__name__
            ).inc()
            logger.warning(
                f"Dropped change event: {e}",
                extra={
                    **self._log_extra,
                    "operation": operation,
                    "error": str(e),
                    "error_type": type(e).__name__
                },
                exc_info=True
            )
            return None

        self.events_emitted += 1
        events_emitted_total.labels(collection=self.collection, operation=output["operation"]).inc()
        return output

    def _fail(self, error: Exception) -> None:
        failure = StreamFailureError(
            f'Change stream on "{self.database}.{self.collection}" failed: {error}',
            database=self.database,
            collection=self.collection
        )
        failure.__cause__ = error

        logger.error(
            str(failure),
            extra={**self._log_extra, "error": str(error), "error_type": type(error).__name__}
        )
        self.close()

        if self.on_error is None:
            return
        try:
            self.on_error(failure)
        except Exception as e:
            logger.error(f"Error callback raised: {e}", extra=self._log_extra)

    def close(self) -> None:
        """
        Stop watching: close the stream, then the connection.

        Idempotent. Does not wait for an in-flight callback.
        """
        with self._lock:
            if self.state in (WatchState.CLOSING, WatchState.CLOSED):
                return
            self.state = WatchState.CLOSING

        logger.info(
            f"Stopping change stream watch on {self.database}.{self.collection}",
            extra=self._log_extra
        )
        self._stop_event.set()
        self._release_resources()

        with self._lock:
            self.state = WatchState.CLOSED

        logger.info(
            f"Watch closed for {self.database}.{self.collection}",
            extra={**self._log_extra, "events_emitted": self.events_emitted}
        )

    def _release_resources(self) -> None:
        """Close stream then client; each step runs even if the other fails."""
        stream, self.stream = self.stream, None
        if stream is not None:
            try:
                stream.close()
            except Exception as e:
                logger.warning(
                    f"Error closing change stream: {e}",
                    extra={**self._log_extra, "error": str(e)}
                )

        client, self.client = self.client, None
        self.connection_manager.close(client)

    def wait_closed(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the listener thread has exited.

        Returns:
            True if the listener is gone (or never started)
        """
        thread = self._thread
        if thread is None or thread is threading.current_thread():
            return True
        if timeout is None:
            timeout = self.stream_settings.thread_join_timeout
        thread.join(timeout)
        return not thread.is_alive()
