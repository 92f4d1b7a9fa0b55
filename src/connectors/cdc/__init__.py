"""
CDC (Change Data Capture) module: MongoDB change stream trigger.
"""

from .models import (
    ALL_OPERATION_TYPES,
    ChangeEvent,
    FilterCondition,
    FilterOperator,
    OperationType,
    WatchConfig,
    parse_change_event,
)
from .pipeline import PipelineBuilder, build_pipeline
from .normalizer import EventNormalizer
from .filters import ClientFilterEngine
from .mongo_changestream import ChangeStreamController, WatchState
from .trigger import MongoChangeTrigger, TriggerResponse

__all__ = [
    "ALL_OPERATION_TYPES",
    "ChangeEvent",
    "FilterCondition",
    "FilterOperator",
    "OperationType",
    "WatchConfig",
    "parse_change_event",
    "PipelineBuilder",
    "build_pipeline",
    "EventNormalizer",
    "ClientFilterEngine",
    "ChangeStreamController",
    "WatchState",
    "MongoChangeTrigger",
    "TriggerResponse",
]
