"""
Host-facing trigger entry point.

The workflow host hands over resolved credentials and the node parameters,
gets back a TriggerResponse whose close_function tears the watch down.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional
import logging

from ...core.errors import ConfigError
from .models import WatchConfig
from .mongo_changestream import ChangeStreamController, EmitFunction, ErrorCallback

logger = logging.getLogger(__name__)

CREDENTIALS_TYPE = "mongoDbTriggerApi"


@dataclass
class TriggerResponse:
    """What the host keeps for a running trigger."""
    close_function: Callable[[], None]
    controller: ChangeStreamController


class MongoChangeTrigger:
    """Triggers a workflow on changes in a MongoDB collection that match specified filters."""

    display_name = "Mongo Change Trigger"
    name = "mongoChangeTrigger"

    def __init__(self, **controller_options: Any):
        """
        Args:
            controller_options: Passed through to every ChangeStreamController
                (connection_manager, stream_settings)
        """
        self.controller_options = controller_options

    def trigger(
        self,
        credentials: Optional[Mapping[str, Any]],
        parameters: Mapping[str, Any],
        emit: EmitFunction,
        on_error: Optional[ErrorCallback] = None
    ) -> TriggerResponse:
        """
        Start watching and return the teardown handle.

        Raises:
            ConfigError: If credentials or parameters are missing or malformed
            TriggerError: If connecting or validating the target fails
        """
        if not credentials:
            raise ConfigError("No credentials were returned!")

        connection_string = credentials.get("connectionString")
        if not isinstance(connection_string, str) or not connection_string.strip():
            raise ConfigError(
                f'Credentials of type "{CREDENTIALS_TYPE}" must contain a connectionString.'
            )

        config = WatchConfig.from_parameters(parameters)
        controller = ChangeStreamController(
            config=config,
            connection_string=connection_string,
            emit=emit,
            on_error=on_error,
            **self.controller_options
        )
        close_function = controller.start()
        logger.info(
            f"{self.display_name} started for {config.database}.{config.collection}",
            extra={"watch_id": controller.watch_id}
        )
        return TriggerResponse(close_function=close_function, controller=controller)

    @classmethod
    def describe(cls) -> Dict[str, Any]:
        """Parameter description consumed by the host's configuration UI."""
        operation_options: List[Dict[str, str]] = [
            {"name": "Delete", "value": "delete", "description": "Trigger on document deletions"},
            {"name": "Drop", "value": "drop", "description": "Trigger when collection is dropped"},
            {"name": "Insert", "value": "insert", "description": "Trigger on document insertions"},
            {"name": "Rename", "value": "rename", "description": "Trigger when collection is renamed"},
            {"name": "Replace", "value": "replace", "description": "Trigger on document replacements"},
            {"name": "Update", "value": "update", "description": "Trigger on document updates"},
        ]
        return {
            "displayName": cls.display_name,
            "name": cls.name,
            "group": ["trigger"],
            "version": 1,
            "description": cls.__doc__,
            "credentials": [{"name": CREDENTIALS_TYPE, "required": True}],
            "properties": [
                {
                    "displayName": "Database Name",
                    "name": "database",
                    "type": "string",
                    "default": "",
                    "placeholder": "myDatabase",
                },
                {
                    "displayName": "Collection Name",
                    "name": "collection",
                    "type": "string",
                    "default": "",
                    "placeholder": "myCollection",
                },
                {
                    "displayName": "Fields to Monitor",
                    "name": "fields",
                    "type": "string",
                    "default": "*",
                    "placeholder": "* or a comma-separated list (e.g. status,priority)",
                },
                {
                    "displayName": "Filters",
                    "name": "filters",
                    "type": "fixedCollection",
                    "typeOptions": {"multipleValues": True},
                    "default": {},
                    "options": [
                        {
                            "name": "filterValues",
                            "displayName": "Filter",
                            "values": [
                                {"displayName": "Field", "name": "field", "type": "string", "default": ""},
                                {
                                    "displayName": "Operator",
                                    "name": "operator",
                                    "type": "options",
                                    "options": [
                                        {"name": "Equal To", "value": "equal"},
                                        {"name": "Not Equal To", "value": "notEqual"},
                                    ],
                                    "default": "equal",
                                },
                                {"displayName": "Value", "name": "value", "type": "string", "default": ""},
                            ],
                        }
                    ],
                },
                {
                    "displayName": "Operation Types",
                    "name": "operationTypes",
                    "type": "multiOptions",
                    "options": operation_options,
                    "default": ["update"],
                },
            ],
        }
