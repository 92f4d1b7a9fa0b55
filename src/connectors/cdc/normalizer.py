"""
Map heterogeneous change stream events onto one output record shape.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from .models import (
    ChangeEvent,
    DeleteEvent,
    DropEvent,
    InsertEvent,
    RenameEvent,
    ReplaceEvent,
    UpdateEvent,
    parse_change_event,
)


def to_iso8601(value: datetime) -> str:
    """Render a datetime as UTC ISO-8601 with millisecond precision and a Z suffix.

    Naive datetimes are taken to be UTC, which is how pymongo decodes BSON dates.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class EventNormalizer:
    """
    Turn a raw change event into a NormalizedOutput dict.

    Every output carries operation, timestamp, database, collection and, when
    the event has a primary key, documentId. Per-operation keys:

    - insert: document
    - update: modifiedFields, removedFields, documentAfterUpdate (if supplied)
    - replace: documentAfterReplace
    - delete, drop: nothing extra
    - rename: newCollection
    - anything else: details (the raw event, untouched)
    """

    def normalize(
        self,
        raw: Mapping[str, Any],
        fallback_database: str,
        fallback_collection: str
    ) -> Dict[str, Any]:
        return self.normalize_event(
            parse_change_event(raw), fallback_database, fallback_collection
        )

    def normalize_event(
        self,
        event: ChangeEvent,
        fallback_database: str,
        fallback_collection: str
    ) -> Dict[str, Any]:
        output: Dict[str, Any] = {
            "operation": event.operation,
            "timestamp": self._timestamp(event),
            "database": event.database or fallback_database,
            "collection": event.collection or fallback_collection,
        }
        if event.document_id is not None:
            output["documentId"] = event.document_id

        if isinstance(event, InsertEvent):
            output["document"] = event.full_document or {}

        elif isinstance(event, UpdateEvent):
            output["modifiedFields"] = event.updated_fields
            output["removedFields"] = event.removed_fields
            if event.full_document is not None:
                output["documentAfterUpdate"] = event.full_document

        elif isinstance(event, ReplaceEvent):
            output["documentAfterReplace"] = event.full_document or {}

        elif isinstance(event, (DeleteEvent, DropEvent)):
            pass

        elif isinstance(event, RenameEvent):
            output["newCollection"] = event.new_collection

        else:
            output["details"] = event.raw

        return output

    @staticmethod
    def _timestamp(event: ChangeEvent, now: Optional[datetime] = None) -> str:
        if event.wall_time is not None:
            return to_iso8601(event.wall_time)
        return to_iso8601(now or datetime.now(timezone.utc))
