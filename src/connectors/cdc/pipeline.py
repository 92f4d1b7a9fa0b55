"""
Server-side change stream pipeline construction.
"""

import logging
from typing import Any, Dict, List

from .models import ALL_OPERATION_TYPES, OperationType, WatchConfig

logger = logging.getLogger(__name__)

UPDATED_FIELDS_PATH = "updateDescription.updatedFields"


class PipelineBuilder:
    """
    Translate a WatchConfig into $match stages for collection.watch().

    Stages narrow the stream one after another:
    1. Operation types, only when a strict subset is selected
    2. Monitored fields, only for update events and only when not "*"
    """

    def build(self, config: WatchConfig) -> List[Dict[str, Any]]:
        pipeline: List[Dict[str, Any]] = []

        operation_stage = self._operation_type_stage(config)
        if operation_stage:
            pipeline.append(operation_stage)

        field_stage = self._monitored_fields_stage(config)
        if field_stage:
            pipeline.append(field_stage)

        logger.debug(
            f"Built change stream pipeline with {len(pipeline)} stage(s)",
            extra={
                "database": config.database,
                "collection": config.collection,
                "pipeline": pipeline
            }
        )
        return pipeline

    def _operation_type_stage(self, config: WatchConfig) -> Dict[str, Any]:
        if not config.operation_types or config.watches_all_operations:
            return {}

        selected = [op.value for op in ALL_OPERATION_TYPES if op in config.operation_types]
        return {"$match": {"operationType": {"$in": selected}}}

    def _monitored_fields_stage(self, config: WatchConfig) -> Dict[str, Any]:
        if config.monitors_all_fields or OperationType.UPDATE not in config.operation_types:
            return {}

        return {
            "$match": {
                "$or": [
                    {"operationType": {"$ne": OperationType.UPDATE.value}},
                    {
                        "$and": [
                            {"operationType": OperationType.UPDATE.value},
                            {UPDATED_FIELDS_PATH: {"$exists": True}},
                            {
                                "$or": [
                                    {f"{UPDATED_FIELDS_PATH}.{name}": {"$exists": True}}
                                    for name in sorted(config.monitored_fields)
                                ]
                            },
                        ]
                    },
                ]
            }
        }


def build_pipeline(config: WatchConfig) -> List[Dict[str, Any]]:
    """Shortcut for PipelineBuilder().build(config)."""
    return PipelineBuilder().build(config)
