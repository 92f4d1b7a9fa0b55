"""
BSON to JSON-serializable converter utility.

Normalized change records keep the driver's BSON values (ObjectId, datetime,
Decimal128...) so filters compare the real values. Sinks that write JSON run
records through bson_safe first.
"""

from bson import ObjectId, Decimal128, Timestamp
from bson.binary import Binary
from datetime import datetime, timezone
import base64
from typing import Any


def bson_safe(value: Any) -> Any:
    """
    Recursively convert BSON types to JSON-serializable Python types.

    Handles:
    - ObjectId -> str
    - datetime -> ISO string (naive values are UTC)
    - Timestamp -> ISO string of its seconds part
    - Decimal128 -> str
    - bytes / Binary -> base64 string
    - Nested dicts, lists, tuples and sets

    Example:
        >>> from bson import ObjectId
        >>> doc = {"_id": ObjectId(), "name": "test"}
        >>> safe = bson_safe(doc)
        >>> isinstance(safe["_id"], str)
        True
    """
    if value is None:
        return None

    if isinstance(value, ObjectId):
        return str(value)

    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()

    if isinstance(value, Timestamp):
        return value.as_datetime().isoformat()

    if isinstance(value, Decimal128):
        return str(value)

    if isinstance(value, (bytes, Binary)):
        return base64.b64encode(bytes(value)).decode('ascii')

    if isinstance(value, dict):
        return {str(k): bson_safe(v) for k, v in value.items()}

    if isinstance(value, (list, tuple, set, frozenset)):
        return [bson_safe(v) for v in value]

    return value
