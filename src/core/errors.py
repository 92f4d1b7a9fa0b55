"""
Error taxonomy for the change-stream trigger.

Every error raised towards the host derives from TriggerError so a caller can
catch the whole family, while the connection and permission errors also derive
from the matching builtins.
"""

from typing import Optional


class TriggerError(Exception):
    """Base exception for change-stream trigger errors."""

    def __init__(
        self,
        message: str,
        database: Optional[str] = None,
        collection: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.database = database
        self.collection = collection


class TriggerConnectionError(TriggerError, ConnectionError):
    """Transport-level connect failure (bad URI, unreachable host, auth handshake)."""
    pass


class TriggerPermissionError(TriggerError, PermissionError):
    """Authorization denied on a database or collection probe."""
    pass


class AccessError(TriggerError):
    """Database or collection could not be reached for a non-authorization reason."""
    pass


class CollectionNotFoundError(TriggerError):
    """Target collection does not exist in the database."""
    pass


class ConfigError(TriggerError, ValueError):
    """Watch configuration or credentials are malformed."""
    pass


class StreamFailureError(TriggerError):
    """The live change stream failed while watching."""
    pass
