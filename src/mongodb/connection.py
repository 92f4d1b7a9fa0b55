"""
MongoDB connection lifecycle and target validation.
"""

import logging
from typing import Any, Optional

import pymongo
from pymongo.errors import ConfigurationError, OperationFailure, PyMongoError

from ..core.errors import (
    AccessError,
    CollectionNotFoundError,
    ConfigError,
    TriggerConnectionError,
    TriggerPermissionError,
)

logger = logging.getLogger(__name__)

UNAUTHORIZED_CODE = 13


def _get_client(mongo_uri: str, **options: Any) -> pymongo.MongoClient:
    """Create a MongoClient from a URI. Caller is responsible for closing it.

    Resolving pymongo.MongoClient at call time allows tests to monkeypatch
    `pymongo.MongoClient` and have our code pick it up.
    """
    return pymongo.MongoClient(mongo_uri, **options)


def is_unauthorized(error: Exception) -> bool:
    """Whether a server error means the credentials lack a privilege."""
    if isinstance(error, OperationFailure):
        if error.code == UNAUTHORIZED_CODE:
            return True
        if (error.details or {}).get("codeName") == "Unauthorized":
            return True
    return "not authorized" in str(error)


class ConnectionManager:
    """
    Open, validate and close the client connection a watch runs on.

    Validation works under least-privilege credentials: database reachability
    is probed with ping, and the collection is looked up by name instead of
    listing every collection.
    """

    def __init__(
        self,
        connect_timeout: int = 10,
        server_selection_timeout: int = 10,
        app_name: Optional[str] = None
    ):
        self.connect_timeout = connect_timeout
        self.server_selection_timeout = server_selection_timeout
        self.app_name = app_name

    def open(self, connection_string: str) -> pymongo.MongoClient:
        """
        Connect and complete the server handshake.

        Raises:
            ConfigError: If no connection string was given
            TriggerConnectionError: If the URI is invalid or the server cannot
                be reached or authenticated against
        """
        if not connection_string or not connection_string.strip():
            raise ConfigError("No connection string was provided in the credentials.")

        options: dict = {
            "connectTimeoutMS": self.connect_timeout * 1000,
            "serverSelectionTimeoutMS": self.server_selection_timeout * 1000,
        }
        if self.app_name:
            options["appname"] = self.app_name

        try:
            client = _get_client(connection_string, **options)
        except ConfigurationError as e:
            raise TriggerConnectionError(
                f"Failed to connect to MongoDB: invalid connection string ({e}). "
                "Please check your credentials and connection settings."
            ) from e

        try:
            # MongoClient connects lazily; force the handshake so bad hosts
            # and bad credentials fail here rather than on the first watch
            client.admin.command("ping")
        except PyMongoError as e:
            self.close(client)
            raise TriggerConnectionError(
                f"Failed to connect to MongoDB: {e}. "
                "Please check your credentials and connection settings."
            ) from e

        logger.info("Connected to MongoDB", extra={"app_name": self.app_name})
        return client

    def validate(self, client: pymongo.MongoClient, database: str, collection: str) -> None:
        """
        Check that the database answers and the collection exists.

        Raises:
            TriggerPermissionError: If either probe is refused for lack of privileges
            AccessError: If either probe fails for any other reason
            CollectionNotFoundError: If the database has no such collection
        """
        db = client[database]

        try:
            db.command("ping")
        except PyMongoError as e:
            if is_unauthorized(e):
                raise TriggerPermissionError(
                    f'Not authorized to access database "{database}". Check if the database '
                    "exists and your credentials have sufficient permissions.",
                    database=database
                ) from e
            raise AccessError(
                f'Database "{database}" could not be accessed: {e}',
                database=database
            ) from e

        try:
            names = db.list_collection_names(
                filter={"name": collection},
                authorizedCollections=True
            )
        except PyMongoError as e:
            if is_unauthorized(e):
                raise TriggerPermissionError(
                    f'Not authorized to list collections in "{database}". Check if your '
                    "credentials have sufficient permissions.",
                    database=database,
                    collection=collection
                ) from e
            raise AccessError(
                f'Failed to verify if collection "{collection}" exists in database '
                f'"{database}": {e}',
                database=database,
                collection=collection
            ) from e

        if not names:
            raise CollectionNotFoundError(
                f'Collection "{collection}" does not exist in database "{database}".',
                database=database,
                collection=collection
            )

        logger.info(
            f"Validated {database}.{collection}",
            extra={"database": database, "collection": collection}
        )

    def close(self, client: Optional[pymongo.MongoClient]) -> None:
        """Close the client. Safe to call repeatedly; never raises."""
        if client is None:
            return
        try:
            client.close()
        except Exception as e:
            logger.warning(f"Error closing MongoDB client: {e}", extra={"error": str(e)})
