"""Translate client-style filters into the adapter filter dialect."""

import re
from datetime import date, datetime
from typing import Any

_OPERATORS = {
    "eq": "$eq",
    "lt": "$lt",
    "lte": "$lte",
    "gt": "$gt",
    "gte": "$gte",
}


def _convert(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def build_filter(filters: Any) -> dict[str, Any]:
    """Build an adapter filter from ``{field: value | {operator: value}}``.

    Supported operators: contains (case-insensitive substring), eq, lt, lte,
    gt, gte and exists. ``None`` values are dropped; anything that is not a
    mapping yields an empty filter.

    Example:
        build_filter({"title": {"contains": "py"}, "year": {"gte": 2000}})
        -> {"title": {"$regex": "py", "$options": "i"}, "year": {"$gte": 2000}}
    """
    if not filters or not isinstance(filters, dict):
        return {}

    result: dict[str, Any] = {}
    for field_name, value in filters.items():
        if value is None:
            continue
        if not isinstance(value, dict):
            result[field_name] = _convert(value)
            continue

        operators: dict[str, Any] = {}
        if value.get("contains") is not None:
            operators["$regex"] = re.escape(str(value["contains"]))
            operators["$options"] = "i"
        for key, op in _OPERATORS.items():
            if value.get(key) is not None:
                operators[op] = _convert(value[key])
        if value.get("exists") is not None:
            operators["$exists"] = bool(value["exists"])
        if not operators:
            continue

        existing = result.get(field_name)
        result[field_name] = {**existing, **operators} if isinstance(existing, dict) else operators
    return result
