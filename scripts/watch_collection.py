#!/usr/bin/env python3
"""
Watch a MongoDB collection and print every matching change as a JSON line.

Runs the same controller a workflow host would, with stdout as the sink.
Stops on Ctrl+C / SIGTERM.
"""

import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from config.settings import get_settings
from src.connectors.cdc import ChangeStreamController, WatchConfig
from src.core.errors import TriggerError
from src.core.utils import bson_safe
from src.mongodb.connection import ConnectionManager
from src.utils.logging import configure_logging

logger = logging.getLogger(__name__)


def parse_filter(expression: str) -> Dict[str, str]:
    """Parse ``field=value`` or ``field!=value`` into a filter condition dict."""
    if "!=" in expression:
        field, value = expression.split("!=", 1)
        operator = "notEqual"
    elif "=" in expression:
        field, value = expression.split("=", 1)
        operator = "equal"
    else:
        raise ValueError(f"Filter must look like field=value or field!=value: {expression!r}")
    return {"field": field.strip(), "operator": operator, "value": value}


def print_batch(batch: List[Dict[str, Any]]) -> None:
    for record in batch:
        print(json.dumps(bson_safe(record)), flush=True)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    import argparse

    settings = get_settings()

    parser = argparse.ArgumentParser(description="Print MongoDB change stream events as JSON lines")
    parser.add_argument(
        "--connection-string",
        default=settings.mongo.connection_string,
        help="MongoDB connection string (default: MONGO_CONNECTION_STRING)"
    )
    parser.add_argument(
        "--database",
        default=settings.watch.database,
        help="Database name"
    )
    parser.add_argument(
        "--collection",
        default=settings.watch.collection,
        help="Collection name"
    )
    parser.add_argument(
        "--fields",
        default=settings.watch.fields,
        help='"*" or comma-separated fields an update must touch'
    )
    parser.add_argument(
        "--operation-types",
        default=",".join(settings.watch.operation_types),
        help="Comma-separated operation types (insert,update,replace,delete,drop,rename)"
    )
    parser.add_argument(
        "--filter",
        action="append",
        default=[],
        dest="filters",
        help="Update filter, field=value or field!=value (repeatable)"
    )
    parser.add_argument(
        "--full-document",
        default=None,
        help="fullDocument mode, e.g. updateLookup"
    )
    args = parser.parse_args(argv)

    configure_logging(settings.logging.level, settings.logging.json_format)

    try:
        config = WatchConfig.from_parameters({
            "database": args.database or "",
            "collection": args.collection or "",
            "fields": args.fields,
            "operationTypes": args.operation_types,
            "filters.filterValues": [parse_filter(f) for f in args.filters],
            "fullDocument": args.full_document,
        })
    except (TriggerError, ValueError) as e:
        parser.error(str(e))

    failed = threading.Event()

    def on_error(error: Exception) -> None:
        logger.error(f"Watch failed: {error}")
        failed.set()

    controller = ChangeStreamController(
        config=config,
        connection_string=args.connection_string or "",
        emit=print_batch,
        on_error=on_error,
        connection_manager=ConnectionManager(
            connect_timeout=settings.mongo.connect_timeout,
            server_selection_timeout=settings.mongo.server_selection_timeout,
            app_name=settings.mongo.app_name
        ),
        stream_settings=settings.stream
    )

    try:
        teardown = controller.start()
    except TriggerError as e:
        logger.error(str(e))
        return 1

    stopped = threading.Event()

    def signal_handler(signum, frame):
        logger.info(f"Received shutdown signal {signum}")
        stopped.set()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    while not stopped.is_set() and not failed.is_set():
        stopped.wait(0.5)

    teardown()
    controller.wait_closed()
    return 1 if failed.is_set() else 0


if __name__ == "__main__":
    sys.exit(main())
