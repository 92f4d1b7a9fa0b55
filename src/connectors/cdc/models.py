"""
Watch configuration and change event models.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Literal, Mapping, Optional, Union

from bson import Timestamp
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ...core.errors import ConfigError


WILDCARD = "*"


class OperationType(str, Enum):
    """Change stream operation types the trigger can watch."""
    INSERT = "insert"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    DROP = "drop"
    RENAME = "rename"


ALL_OPERATION_TYPES = (
    OperationType.INSERT,
    OperationType.UPDATE,
    OperationType.REPLACE,
    OperationType.DELETE,
    OperationType.DROP,
    OperationType.RENAME,
)

FULL_DOCUMENT_MODES = {"default", "updateLookup", "whenAvailable", "required"}


class FilterOperator(str, Enum):
    """Comparison operators for client-side filters."""
    EQUAL = "equal"
    NOT_EQUAL = "notEqual"


class FilterCondition(BaseModel):
    """A single field/value condition checked against an update's changed fields."""
    model_config = ConfigDict(frozen=True)

    field: str = Field(..., description="Key in updateDescription.updatedFields")
    operator: FilterOperator = Field(default=FilterOperator.EQUAL, description="Comparison operator")
    value: str = Field(default="", description="Value the changed field is compared to")

    @field_validator("field", mode="before")
    @classmethod
    def validate_field(cls, v: Any) -> str:
        if not isinstance(v, str) or not v.strip():
            raise ValueError("filter field must be a non-empty string")
        return v.strip()

    @field_validator("value", mode="before")
    @classmethod
    def coerce_value(cls, v: Any) -> str:
        # Filter values always arrive from the UI as text
        if v is None:
            return ""
        return v if isinstance(v, str) else str(v)


class WatchConfig(BaseModel):
    """What to watch and which events to forward."""
    model_config = ConfigDict(frozen=True)

    database: str = Field(..., description="Database name")
    collection: str = Field(..., description="Collection to watch")
    monitored_fields: Union[Literal["*"], FrozenSet[str]] = Field(
        default=WILDCARD,
        description='"*" for any change, or the field names an update must touch'
    )
    operation_types: FrozenSet[OperationType] = Field(
        default_factory=lambda: frozenset({OperationType.UPDATE}),
        description="Operation types that trigger an emission"
    )
    filters: List[FilterCondition] = Field(
        default_factory=list,
        description="Conditions that must all hold for update events"
    )
    full_document: Optional[str] = Field(
        default=None,
        description="fullDocument option passed to watch(), e.g. updateLookup"
    )

    @field_validator("database", "collection", mode="before")
    @classmethod
    def validate_name(cls, v: Any, info) -> str:
        if not isinstance(v, str) or not v.strip():
            raise ValueError(f"{info.field_name} name must be a non-empty string")
        return v.strip()

    @field_validator("monitored_fields", mode="before")
    @classmethod
    def parse_monitored_fields(cls, v: Any) -> Union[str, FrozenSet[str]]:
        if v is None:
            return WILDCARD
        if isinstance(v, str):
            if v.strip() == WILDCARD:
                return WILDCARD
            names = v.split(",")
        else:
            names = list(v)
        cleaned = [n.strip() for n in names if isinstance(n, str) and n.strip()]
        if cleaned == [WILDCARD]:
            return WILDCARD
        if not cleaned:
            raise ValueError(
                'monitored_fields must be "*" or a non-empty list of field names'
            )
        return frozenset(cleaned)

    @field_validator("operation_types", mode="before")
    @classmethod
    def parse_operation_types(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = [part.strip() for part in v.split(",") if part.strip()]
        if v is None or len(v) == 0:
            raise ValueError("at least one operation type must be selected")
        return v

    @field_validator("full_document")
    @classmethod
    def validate_full_document(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in FULL_DOCUMENT_MODES:
            raise ValueError(f"full_document must be one of: {sorted(FULL_DOCUMENT_MODES)}")
        return v

    @property
    def monitors_all_fields(self) -> bool:
        return self.monitored_fields == WILDCARD

    @property
    def watches_all_operations(self) -> bool:
        return self.operation_types >= set(ALL_OPERATION_TYPES)

    @classmethod
    def from_parameters(cls, parameters: Mapping[str, Any]) -> "WatchConfig":
        """Build a config from the host's node parameters.

        Accepts the node's parameter names (``database``, ``collection``,
        ``fields``, ``operationTypes``, ``filters.filterValues``) and applies
        the node's defaults. Validation failures are raised as ConfigError.
        """
        filters = parameters.get("filters") or {}
        if isinstance(filters, Mapping):
            filters = filters.get("filterValues", [])
        filters = parameters.get("filters.filterValues", filters) or []

        database = parameters.get("database", "")
        collection = parameters.get("collection", "")
        try:
            return cls(
                database=database,
                collection=collection,
                monitored_fields=parameters.get("fields", WILDCARD),
                operation_types=parameters.get("operationTypes", [OperationType.UPDATE.value]),
                filters=filters,
                full_document=parameters.get("fullDocument"),
            )
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
                for err in e.errors()
            )
            raise ConfigError(
                f"Invalid watch configuration: {problems}",
                database=database or None,
                collection=collection or None
            ) from e


@dataclass(frozen=True)
class ChangeEvent:
    """Fields every change event may carry, whatever its operation."""
    operation: str
    raw: Mapping[str, Any] = field(repr=False, compare=False)
    database: Optional[str] = None
    collection: Optional[str] = None
    document_id: Optional[str] = None
    wall_time: Optional[datetime] = None
    cluster_time: Optional[Timestamp] = None


@dataclass(frozen=True)
class InsertEvent(ChangeEvent):
    full_document: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class UpdateEvent(ChangeEvent):
    updated_fields: Dict[str, Any] = field(default_factory=dict)
    removed_fields: List[str] = field(default_factory=list)
    full_document: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class ReplaceEvent(ChangeEvent):
    full_document: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class DeleteEvent(ChangeEvent):
    pass


@dataclass(frozen=True)
class DropEvent(ChangeEvent):
    pass


@dataclass(frozen=True)
class RenameEvent(ChangeEvent):
    new_collection: Optional[str] = None


@dataclass(frozen=True)
class UnknownEvent(ChangeEvent):
    """Any operation this trigger does not model (invalidate, dropDatabase, DDL events...)."""
    pass


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def parse_change_event(raw: Mapping[str, Any]) -> ChangeEvent:
    """
    Parse a raw change stream document into its typed event.

    Never fails on an unrecognized operation: those become UnknownEvent.

    Raises:
        TypeError: If raw is not a mapping
    """
    if not isinstance(raw, Mapping):
        raise TypeError(f"change event must be a mapping, got {type(raw).__name__}")

    operation = raw.get("operationType")
    ns = _mapping(raw.get("ns"))
    document_key = raw.get("documentKey")

    document_id = None
    if isinstance(document_key, Mapping) and document_key.get("_id") is not None:
        document_id = str(document_key["_id"])

    wall_time = raw.get("wallTime")
    cluster_time = raw.get("clusterTime")
    common = dict(
        operation=str(operation) if operation is not None else "unknown",
        raw=raw,
        database=ns.get("db") or None,
        collection=ns.get("coll") or None,
        document_id=document_id,
        wall_time=wall_time if isinstance(wall_time, datetime) else None,
        cluster_time=cluster_time if isinstance(cluster_time, Timestamp) else None,
    )

    if operation == OperationType.INSERT.value:
        return InsertEvent(full_document=raw.get("fullDocument"), **common)

    if operation == OperationType.UPDATE.value:
        description = _mapping(raw.get("updateDescription"))
        return UpdateEvent(
            updated_fields=dict(description.get("updatedFields") or {}),
            removed_fields=list(description.get("removedFields") or []),
            full_document=raw.get("fullDocument"),
            **common
        )

    if operation == OperationType.REPLACE.value:
        return ReplaceEvent(full_document=raw.get("fullDocument"), **common)

    if operation == OperationType.DELETE.value:
        return DeleteEvent(**common)

    if operation == OperationType.DROP.value:
        return DropEvent(**common)

    if operation == OperationType.RENAME.value:
        return RenameEvent(new_collection=_mapping(raw.get("to")).get("coll"), **common)

    return UnknownEvent(**common)
