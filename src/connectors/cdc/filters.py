"""
Client-side field/value filters for update events.
"""

from typing import Any, Mapping, Sequence

from .models import FilterCondition, FilterOperator, OperationType


class ClientFilterEngine:
    """
    Evaluate filter conditions against an update event's changed fields.

    All conditions must hold. A condition on a field the update did not change
    fails regardless of operator. Values are compared literally against the
    condition's string value, so a numeric 5 never equals "5".
    """

    @staticmethod
    def applies_to(operation: str) -> bool:
        return operation == OperationType.UPDATE.value

    def matches(
        self,
        filters: Sequence[FilterCondition],
        changed_fields: Mapping[str, Any]
    ) -> bool:
        return all(self._condition_holds(condition, changed_fields) for condition in filters)

    @staticmethod
    def _condition_holds(condition: FilterCondition, changed_fields: Mapping[str, Any]) -> bool:
        if condition.field not in changed_fields:
            return False

        actual = changed_fields[condition.field]
        if condition.operator == FilterOperator.EQUAL:
            return actual == condition.value
        if condition.operator == FilterOperator.NOT_EQUAL:
            return actual != condition.value
        return False
